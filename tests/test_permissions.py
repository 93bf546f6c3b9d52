"""Tests for the derived permission cache and the mutations that invalidate it."""

import pytest

from identity_core.service.errors import NotFoundError
from identity_core.service.permissions import PermissionCache
from identity_core.storage.cache import MemoryCache


class RacingCache(MemoryCache):
    """MemoryCache that runs a hook right after each ``set``."""

    def __init__(self, clock):
        super().__init__(clock=clock)
        self.after_set = None

    async def set(self, key, value, ttl_seconds):
        await super().set(key, value, ttl_seconds)
        if self.after_set is not None:
            hook, self.after_set = self.after_set, None
            await hook()


@pytest.fixture
def catalog(runtime, make_user):
    store = runtime.store
    user = make_user()
    editor = store.create_role("EDITOR", "Editor")
    viewer = store.create_role("VIEWER", "Viewer")
    read = store.create_permission("DOC_READ", "Read documents")
    write = store.create_permission("DOC_WRITE", "Write documents")
    store.add_role_permission(editor.id, read.id)
    store.add_role_permission(editor.id, write.id)
    store.add_role_permission(viewer.id, read.id)
    return {"user": user, "editor": editor, "viewer": viewer, "read": read, "write": write}


class TestGetPermissions:
    async def test_loads_and_caches(self, runtime, catalog):
        perms = runtime.permissions
        user = catalog["user"]
        await perms.assign_role(user.id, catalog["editor"].id)

        granted = await perms.get_permissions(user.id)

        assert granted.roles == ["EDITOR"]
        assert granted.permissions == ["DOC_READ", "DOC_WRITE"]
        assert await runtime.cache.get(perms.key(user.id)) == {
            "roles": ["EDITOR"],
            "permissions": ["DOC_READ", "DOC_WRITE"],
        }

    async def test_cache_entry_served_until_evicted(self, runtime, catalog):
        perms = runtime.permissions
        user = catalog["user"]
        await perms.assign_role(user.id, catalog["editor"].id)
        await perms.get_permissions(user.id)

        # a write that bypasses the cache is not seen
        runtime.store.remove_user_role(user.id, catalog["editor"].id)
        assert (await perms.get_permissions(user.id)).roles == ["EDITOR"]

        await perms.evict_user(user.id)
        assert (await perms.get_permissions(user.id)).roles == []

    async def test_cache_expires_after_ttl(self, runtime, catalog, clock):
        perms = runtime.permissions
        user = catalog["user"]
        await perms.get_permissions(user.id)

        clock.advance(hours=6)

        assert await runtime.cache.get(perms.key(user.id)) is None

    async def test_user_without_roles(self, runtime, catalog):
        granted = await runtime.permissions.get_permissions(catalog["user"].id)

        assert granted.roles == []
        assert granted.permissions == []


class TestInvalidation:
    async def test_revoke_role_evicts_user(self, runtime, catalog):
        perms = runtime.permissions
        user = catalog["user"]
        await perms.assign_role(user.id, catalog["editor"].id)
        await perms.get_permissions(user.id)

        assert await perms.revoke_role(user.id, catalog["editor"].id) is True

        assert (await perms.get_permissions(user.id)).permissions == []

    async def test_replace_role_permissions_evicts_every_holder(self, runtime, catalog, make_user):
        perms = runtime.permissions
        alice = catalog["user"]
        bob = make_user(username="bob", email="bob@example.com")
        await perms.assign_role(alice.id, catalog["editor"].id)
        await perms.assign_role(bob.id, catalog["editor"].id)
        await perms.get_permissions(alice.id)
        await perms.get_permissions(bob.id)

        assigned = await perms.replace_role_permissions(catalog["editor"].id, [catalog["read"].id])

        assert assigned == 1
        assert (await perms.get_permissions(alice.id)).permissions == ["DOC_READ"]
        assert (await perms.get_permissions(bob.id)).permissions == ["DOC_READ"]

    async def test_revocation_during_load_is_not_cached(self, runtime, catalog, clock):
        cache = RacingCache(clock)
        perms = PermissionCache(runtime.store, cache, runtime.config)
        user = catalog["user"]
        await perms.assign_role(user.id, catalog["editor"].id)

        async def revoke_mid_write():
            await perms.revoke_role(user.id, catalog["editor"].id)

        cache.after_set = revoke_mid_write
        stale = await perms.get_permissions(user.id)

        assert stale.roles == ["EDITOR"]
        assert await cache.get(perms.key(user.id)) is None
        assert (await perms.get_permissions(user.id)).roles == []

    async def test_refresh_all_resets_user_counters_and_guards_reads(self, runtime, catalog, clock):
        cache = RacingCache(clock)
        perms = PermissionCache(runtime.store, cache, runtime.config)
        user = catalog["user"]
        await perms.assign_role(user.id, catalog["editor"].id)
        assert perms._user_generations == {user.id: 1}

        async def refresh_mid_write():
            await perms.refresh_all()

        cache.after_set = refresh_mid_write
        await perms.get_permissions(user.id)

        assert perms._user_generations == {}
        assert await cache.get(perms.key(user.id)) is None

    async def test_noop_mutation_keeps_cache(self, runtime, catalog):
        perms = runtime.permissions
        user = catalog["user"]
        await perms.assign_role(user.id, catalog["editor"].id)
        await perms.get_permissions(user.id)

        assert await perms.assign_role(user.id, catalog["editor"].id) is False
        assert await perms.revoke_role(user.id, catalog["viewer"].id) is False

        assert await runtime.cache.get(perms.key(user.id)) is not None

    async def test_refresh_all_clears_every_entry(self, runtime, catalog, make_user):
        perms = runtime.permissions
        bob = make_user(username="bob", email="bob@example.com")
        await perms.get_permissions(catalog["user"].id)
        await perms.get_permissions(bob.id)

        await perms.refresh_all()

        assert await runtime.cache.get(perms.key(catalog["user"].id)) is None
        assert await runtime.cache.get(perms.key(bob.id)) is None


class TestBulkMutations:
    async def test_assign_roles_dedupes_and_counts(self, runtime, catalog):
        perms = runtime.permissions
        user = catalog["user"]
        await perms.assign_role(user.id, catalog["viewer"].id)

        assigned = await perms.assign_roles(
            user.id, [catalog["editor"].id, catalog["editor"].id, catalog["viewer"].id]
        )

        assert assigned == 1
        assert (await perms.get_permissions(user.id)).roles == ["EDITOR", "VIEWER"]

    async def test_replace_roles(self, runtime, catalog):
        perms = runtime.permissions
        user = catalog["user"]
        await perms.assign_role(user.id, catalog["editor"].id)

        assert await perms.replace_roles(user.id, [catalog["viewer"].id]) == 1
        assert (await perms.get_permissions(user.id)).roles == ["VIEWER"]

        assert await perms.replace_roles(user.id, []) == 0
        assert (await perms.get_permissions(user.id)).roles == []

    async def test_assign_permissions_to_role(self, runtime, catalog):
        perms = runtime.permissions
        viewer = catalog["viewer"]

        granted = await perms.assign_permissions_to_role(
            viewer.id, [catalog["read"].id, catalog["write"].id]
        )

        assert granted == 1
        assert perms.role_has_permission(viewer.id, catalog["write"].id)

    async def test_single_permission_grant_and_revoke(self, runtime, catalog):
        perms = runtime.permissions
        viewer = catalog["viewer"]
        write = catalog["write"]

        assert await perms.assign_permission_to_role(viewer.id, write.id) is True
        assert await perms.assign_permission_to_role(viewer.id, write.id) is False
        assert await perms.revoke_permission_from_role(viewer.id, write.id) is True
        assert perms.role_has_permission(viewer.id, write.id) is False


class TestNotFound:
    async def test_unknown_user(self, runtime, catalog):
        with pytest.raises(NotFoundError) as exc_info:
            await runtime.permissions.assign_role("missing", catalog["editor"].id)

        assert exc_info.value.message == "User not found: missing"
        assert exc_info.value.status_code == 404

    async def test_unknown_role(self, runtime, catalog):
        with pytest.raises(NotFoundError) as exc_info:
            await runtime.permissions.assign_role(catalog["user"].id, "missing")

        assert exc_info.value.message == "Role not found: missing"

    async def test_unknown_permission(self, runtime, catalog):
        with pytest.raises(NotFoundError) as exc_info:
            await runtime.permissions.assign_permission_to_role(catalog["editor"].id, "missing")

        assert exc_info.value.message == "Permission not found: missing"

    async def test_bulk_with_unknown_ids_changes_nothing(self, runtime, catalog):
        perms = runtime.permissions
        user = catalog["user"]

        with pytest.raises(NotFoundError) as exc_info:
            await perms.assign_roles(user.id, [catalog["editor"].id, "missing"])
        assert exc_info.value.message == "One or more roles not found."
        assert perms.user_has_role(user.id, catalog["editor"].id) is False

        with pytest.raises(NotFoundError) as exc_info:
            await perms.replace_role_permissions(catalog["viewer"].id, ["missing"])
        assert exc_info.value.message == "One or more permissions not found."
        assert perms.role_has_permission(catalog["viewer"].id, catalog["read"].id)
