"""Tests for session lifecycle and single-session enforcement."""

import asyncio
from datetime import timedelta

from identity_core.service.sessions import SessionRegistry, SessionSweeper
from identity_core.storage.models import TerminationReason


async def _login(runtime, user, n):
    return await runtime.sessions.create_session(
        user, f"access-{n}", f"refresh-{n}", ip_address="10.0.0.1", device_type="web"
    )


class TestCreateSession:
    async def test_successive_logins_leave_one_active_session(self, runtime, make_user):
        user = make_user()

        created = [await _login(runtime, user, n) for n in range(4)]

        active = runtime.sessions.active_sessions(user.id)
        assert [s.session_id for s in active] == [created[-1].session_id]
        for old in created[:-1]:
            stored = runtime.sessions.get_session(old.session_id)
            assert stored.is_active is False
            assert stored.termination_reason == TerminationReason.DUPLICATE_LOGIN
            assert stored.terminated_at == runtime.clock()
            assert await runtime.sessions.validate(old.session_id) is False
        assert runtime.store.find_user_by_id(user.id).current_session_id == created[-1].session_id

    async def test_multiple_sessions_allowed_when_enforcement_disabled(self, runtime, make_user):
        runtime.store.set_runtime_config("SESSION_SINGLE_ENFORCEMENT", "false")
        user = make_user()

        await _login(runtime, user, 1)
        await _login(runtime, user, 2)

        assert len(runtime.sessions.active_sessions(user.id)) == 2

    async def test_new_session_expires_after_inactivity_window(self, runtime, make_user, clock):
        user = make_user()

        session = await _login(runtime, user, 1)

        assert session.expires_at == clock.now + timedelta(minutes=15)
        assert session.session_id.startswith("sess-")
        assert session.ip_address == "10.0.0.1"


class TestValidate:
    async def test_validate_slides_expiry(self, runtime, make_user, clock):
        user = make_user()
        session = await _login(runtime, user, 1)

        clock.advance(minutes=10)
        assert await runtime.sessions.validate(session.session_id) is True

        stored = runtime.sessions.get_session(session.session_id)
        assert stored.last_activity_at == clock.now
        assert stored.expires_at == clock.now + timedelta(minutes=15)

        clock.advance(minutes=10)
        assert await runtime.sessions.validate(session.session_id) is True

    async def test_inactive_session_times_out(self, runtime, make_user, clock):
        user = make_user()
        session = await _login(runtime, user, 1)

        clock.advance(minutes=15)

        assert await runtime.sessions.validate(session.session_id) is False
        stored = runtime.sessions.get_session(session.session_id)
        assert stored.is_active is False
        assert stored.termination_reason == TerminationReason.TIMEOUT
        assert runtime.store.find_user_by_id(user.id).current_session_id is None

    async def test_stale_cache_entry_does_not_revive_session(self, runtime, make_user):
        user = make_user()
        session = await _login(runtime, user, 1)
        assert await runtime.registry.lookup(session.session_id) is not None

        # terminated behind the cache's back
        stored = runtime.store.find_session_by_id(session.session_id)
        stored.is_active = False
        runtime.store.save_session(stored)

        assert await runtime.sessions.validate(session.session_id) is False
        assert await runtime.registry.lookup(session.session_id) is None
        assert runtime.store.find_session_by_id(session.session_id).is_active is False

    async def test_cache_miss_falls_back_to_store(self, runtime, make_user):
        user = make_user()
        session = await _login(runtime, user, 1)
        await runtime.registry.forget(session.session_id)

        assert await runtime.sessions.validate(session.session_id) is True
        assert await runtime.registry.lookup(session.session_id) is not None

    async def test_unknown_or_empty_session(self, runtime):
        assert await runtime.sessions.validate("sess-missing") is False
        assert await runtime.sessions.validate("") is False


class TestTerminate:
    async def test_terminate_is_idempotent(self, runtime, make_user, clock):
        user = make_user()
        session = await _login(runtime, user, 1)

        first = await runtime.sessions.terminate(session.session_id, TerminationReason.LOGOUT)
        clock.advance(minutes=1)
        second = await runtime.sessions.terminate(
            session.session_id, TerminationReason.ADMIN_ACTION
        )

        assert first.termination_reason == TerminationReason.LOGOUT
        assert second.termination_reason == TerminationReason.LOGOUT
        assert second.terminated_at == first.terminated_at
        assert runtime.store.find_user_by_id(user.id).current_session_id is None

    async def test_terminate_unknown_returns_none(self, runtime):
        assert await runtime.sessions.terminate("sess-missing", TerminationReason.LOGOUT) is None

    async def test_terminate_all(self, runtime, make_user):
        runtime.store.set_runtime_config("SESSION_SINGLE_ENFORCEMENT", False)
        user = make_user()
        await _login(runtime, user, 1)
        await _login(runtime, user, 2)

        closed = await runtime.sessions.terminate_all(user.id, TerminationReason.ADMIN_ACTION)

        assert len(closed) == 2
        assert runtime.sessions.active_sessions(user.id) == []
        assert all(s.termination_reason == TerminationReason.ADMIN_ACTION for s in closed)

    async def test_update_access_token_only_on_active_session(self, runtime, make_user):
        user = make_user()
        session = await _login(runtime, user, 1)

        updated = runtime.sessions.update_access_token(session.session_id, "access-new")
        assert updated.access_token == "access-new"
        assert runtime.sessions.find_by_access_token("access-new").session_id == session.session_id

        await runtime.sessions.terminate(session.session_id, TerminationReason.LOGOUT)
        assert runtime.sessions.update_access_token(session.session_id, "access-newer") is None


class TestSweep:
    async def test_sweep_terminates_expired_sessions(self, runtime, make_user, clock):
        alice = make_user()
        bob = make_user(username="bob", email="bob@example.com")
        stale = await _login(runtime, alice, 1)
        clock.advance(minutes=10)
        fresh = await _login(runtime, bob, 2)

        clock.advance(minutes=6)
        swept = await runtime.sessions.sweep()

        assert swept == 1
        assert runtime.sessions.get_session(stale.session_id).termination_reason == (
            TerminationReason.TIMEOUT
        )
        assert runtime.sessions.get_session(fresh.session_id).is_active is True
        assert await runtime.sessions.sweep() == 0

    async def test_sweeper_start_and_stop(self, runtime, make_user, clock):
        user = make_user()
        session = await _login(runtime, user, 1)
        clock.advance(minutes=20)
        sweeper = SessionSweeper(runtime.sessions, interval=3600)

        await sweeper.start()
        assert sweeper.running is True
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        await sweeper.stop()

        assert sweeper.running is False
        assert runtime.sessions.get_session(session.session_id).is_active is False


class TestSessionRegistry:
    async def test_remember_lookup_forget(self, cache, clock):
        registry = SessionRegistry(cache, clock=clock)
        expires_at = clock.now + timedelta(minutes=15)

        await registry.remember("sess-1", "user-1", expires_at)
        entry = await registry.lookup("sess-1")
        assert entry == {"user_id": "user-1", "expires_at": expires_at}

        await registry.forget("sess-1")
        assert await registry.lookup("sess-1") is None

    async def test_entry_expires_with_session(self, cache, clock):
        registry = SessionRegistry(cache, clock=clock)
        await registry.remember("sess-1", "user-1", clock.now + timedelta(minutes=15))

        clock.advance(minutes=15)

        assert await registry.lookup("sess-1") is None

    async def test_already_expired_session_is_not_cached(self, cache, clock):
        registry = SessionRegistry(cache, clock=clock)

        await registry.remember("sess-1", "user-1", clock.now - timedelta(seconds=1))

        assert await registry.lookup("sess-1") is None
