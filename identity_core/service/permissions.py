from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Dict, Iterable, List, Tuple

from identity_core.config import ConfigProvider
from identity_core.logging import get_logger
from identity_core.service.errors import NotFoundError
from identity_core.storage.cache import Cache

logger = get_logger(__name__)

PERMISSIONS_PREFIX = "user:permissions:"
DEFAULT_CACHE_TTL_HOURS = 6


@dataclass
class UserPermissions:
    roles: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)


def _unique(ids: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(ids or []))


class PermissionCache:
    """Derived ``user -> {roles, permissions}`` cache and the admin mutations
    that must keep it honest.

    User-role changes evict that user's entry; role-permission changes evict
    every entry because any holder of the role is affected. Each mutation bumps
    a generation counter before evicting, and a read only populates the cache
    when no generation moved while it was loading, so a slow reader cannot put
    back grants that were revoked under it.
    """

    def __init__(self, store, cache: Cache, config: ConfigProvider) -> None:
        self.store = store
        self.cache = cache
        self.config = config
        self._global_generation = 0
        self._user_generations: Dict[str, int] = {}

    @staticmethod
    def key(user_id: str) -> str:
        return f"{PERMISSIONS_PREFIX}{user_id}"

    @property
    def ttl_seconds(self) -> int:
        hours = self.config.get_int("PERMISSIONS_CACHE_TTL_HOURS", DEFAULT_CACHE_TTL_HOURS)
        return hours * 3600

    def _generation(self, user_id: str) -> Tuple[int, int]:
        return self._global_generation, self._user_generations.get(user_id, 0)

    def _load(self, user_id: str) -> UserPermissions:
        role_ids = self.store.find_role_ids_by_user(user_id)
        roles = self.store.find_roles(role_ids)
        permission_ids = self.store.find_permission_ids_by_roles(role_ids)
        permissions = self.store.find_permissions(permission_ids)
        return UserPermissions(
            roles=sorted(role.code for role in roles),
            permissions=sorted(perm.code for perm in permissions),
        )

    async def get_permissions(self, user_id: str) -> UserPermissions:
        key = self.key(user_id)
        cached = await self.cache.get(key)
        if isinstance(cached, dict):
            return UserPermissions(
                roles=list(cached.get("roles", [])),
                permissions=list(cached.get("permissions", [])),
            )
        generation = self._generation(user_id)
        loaded = self._load(user_id)
        if self._generation(user_id) != generation:
            return loaded
        await self.cache.set(key, asdict(loaded), self.ttl_seconds)
        if self._generation(user_id) != generation:
            # invalidated while the write was in flight
            await self.cache.evict(key)
        return loaded

    # invalidation
    async def evict_user(self, user_id: str) -> None:
        self._user_generations[user_id] = self._user_generations.get(user_id, 0) + 1
        await self.cache.evict(self.key(user_id))
        logger.info("permissions_cache_evicted", user_id=user_id)

    async def evict_all(self) -> None:
        self._global_generation += 1
        # the global bump already invalidates every in-flight per-user read
        self._user_generations.clear()
        removed = await self.cache.evict_all(PERMISSIONS_PREFIX)
        logger.info("permissions_cache_evicted_all", removed=removed)

    async def refresh_all(self) -> None:
        await self.evict_all()

    # validation helpers, called inside store transactions
    def _require_user(self, user_id: str) -> None:
        if self.store.find_user_by_id(user_id) is None:
            raise NotFoundError(f"User not found: {user_id}")

    def _require_role(self, role_id: str):
        role = self.store.find_role(role_id)
        if role is None:
            raise NotFoundError(f"Role not found: {role_id}")
        return role

    def _require_permission(self, permission_id: str):
        permission = self.store.find_permission(permission_id)
        if permission is None:
            raise NotFoundError(f"Permission not found: {permission_id}")
        return permission

    def _require_roles(self, role_ids: List[str]) -> None:
        if len(self.store.find_roles(role_ids)) != len(role_ids):
            raise NotFoundError("One or more roles not found.")

    def _require_permissions(self, permission_ids: List[str]) -> None:
        if len(self.store.find_permissions(permission_ids)) != len(permission_ids):
            raise NotFoundError("One or more permissions not found.")

    # user <-> role
    async def assign_role(self, user_id: str, role_id: str) -> bool:
        with self.store.transaction():
            self._require_user(user_id)
            role = self._require_role(role_id)
            changed = self.store.add_user_role(user_id, role_id)
        if not changed:
            logger.warning("role_already_assigned", user_id=user_id, role=role.code)
            return False
        await self.evict_user(user_id)
        logger.info("role_assigned", user_id=user_id, role=role.code)
        return True

    async def revoke_role(self, user_id: str, role_id: str) -> bool:
        with self.store.transaction():
            self._require_user(user_id)
            role = self._require_role(role_id)
            changed = self.store.remove_user_role(user_id, role_id)
        if not changed:
            logger.warning("role_not_assigned", user_id=user_id, role=role.code)
            return False
        await self.evict_user(user_id)
        logger.info("role_revoked", user_id=user_id, role=role.code)
        return True

    async def assign_roles(self, user_id: str, role_ids: Iterable[str]) -> int:
        ids = _unique(role_ids)
        with self.store.transaction():
            self._require_user(user_id)
            self._require_roles(ids)
            assigned = sum(1 for role_id in ids if self.store.add_user_role(user_id, role_id))
        if assigned:
            await self.evict_user(user_id)
        logger.info("roles_assigned", user_id=user_id, assigned=assigned)
        return assigned

    async def replace_roles(self, user_id: str, role_ids: Iterable[str]) -> int:
        ids = _unique(role_ids)
        with self.store.transaction():
            self._require_user(user_id)
            if ids:
                self._require_roles(ids)
            removed = self.store.replace_user_roles(user_id, ids)
        await self.evict_user(user_id)
        logger.info("roles_replaced", user_id=user_id, removed=removed, assigned=len(ids))
        return len(ids)

    # role <-> permission
    async def assign_permission_to_role(self, role_id: str, permission_id: str) -> bool:
        with self.store.transaction():
            role = self._require_role(role_id)
            permission = self._require_permission(permission_id)
            changed = self.store.add_role_permission(role_id, permission_id)
        if not changed:
            logger.warning(
                "permission_already_granted", role=role.code, permission=permission.code
            )
            return False
        await self.evict_all()
        logger.info("permission_granted", role=role.code, permission=permission.code)
        return True

    async def revoke_permission_from_role(self, role_id: str, permission_id: str) -> bool:
        with self.store.transaction():
            role = self._require_role(role_id)
            permission = self._require_permission(permission_id)
            changed = self.store.remove_role_permission(role_id, permission_id)
        if not changed:
            logger.warning(
                "permission_not_granted", role=role.code, permission=permission.code
            )
            return False
        await self.evict_all()
        logger.info("permission_revoked", role=role.code, permission=permission.code)
        return True

    async def assign_permissions_to_role(
        self, role_id: str, permission_ids: Iterable[str]
    ) -> int:
        ids = _unique(permission_ids)
        with self.store.transaction():
            role = self._require_role(role_id)
            self._require_permissions(ids)
            granted = sum(
                1 for permission_id in ids if self.store.add_role_permission(role_id, permission_id)
            )
        if granted:
            await self.evict_all()
        logger.info("permissions_granted", role=role.code, granted=granted)
        return granted

    async def replace_role_permissions(
        self, role_id: str, permission_ids: Iterable[str]
    ) -> int:
        ids = _unique(permission_ids)
        with self.store.transaction():
            role = self._require_role(role_id)
            if ids:
                self._require_permissions(ids)
            removed = self.store.replace_role_permissions(role_id, ids)
        await self.evict_all()
        logger.info(
            "role_permissions_replaced", role=role.code, removed=removed, assigned=len(ids)
        )
        return len(ids)

    # queries
    def user_has_role(self, user_id: str, role_id: str) -> bool:
        return role_id in self.store.find_role_ids_by_user(user_id)

    def role_has_permission(self, role_id: str, permission_id: str) -> bool:
        return permission_id in self.store.find_permission_ids_by_roles([role_id])
