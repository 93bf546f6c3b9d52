from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from identity_core.config import ConfigProvider
from identity_core.logging import get_logger
from identity_core.storage.cache import Cache
from identity_core.storage.models import Session, TerminationReason, User, utcnow

logger = get_logger(__name__)

SESSION_PREFIX = "session:"
DEFAULT_INACTIVITY_MINUTES = 15
DEFAULT_SWEEP_INTERVAL_SECONDS = 300


class SessionRegistry:
    """Cache of active sessions keyed by session id.

    Entries only ever describe active sessions; a miss means "ask the store".
    """

    def __init__(self, cache: Cache, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.cache = cache
        self._clock = clock

    @staticmethod
    def key(session_id: str) -> str:
        return f"{SESSION_PREFIX}{session_id}"

    async def remember(self, session_id: str, user_id: str, expires_at: datetime) -> None:
        ttl = int((expires_at - self._clock()).total_seconds())
        if ttl <= 0:
            await self.forget(session_id)
            return
        await self.cache.set(
            self.key(session_id),
            {"user_id": user_id, "expires_at": expires_at.isoformat()},
            ttl,
        )

    async def lookup(self, session_id: str) -> Optional[dict]:
        entry = await self.cache.get(self.key(session_id))
        if not isinstance(entry, dict):
            return None
        try:
            entry["expires_at"] = datetime.fromisoformat(entry["expires_at"])
        except (KeyError, TypeError, ValueError):
            await self.forget(session_id)
            return None
        return entry

    async def forget(self, session_id: str) -> None:
        await self.cache.evict(self.key(session_id))

    async def forget_all(self) -> int:
        return await self.cache.evict_all(SESSION_PREFIX)


class SessionManager:
    """Session lifecycle with single-active-session enforcement.

    Store writes for one operation happen inside one ``store.transaction()``
    with no awaits in between; cache maintenance follows the commit.
    """

    def __init__(
        self,
        store,
        registry: SessionRegistry,
        config: ConfigProvider,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.registry = registry
        self.config = config
        self._clock = clock

    @property
    def inactivity_timeout(self) -> timedelta:
        return timedelta(
            minutes=self.config.get_int(
                "SESSION_INACTIVITY_TIMEOUT_MINUTES", DEFAULT_INACTIVITY_MINUTES
            )
        )

    @property
    def single_session(self) -> bool:
        return self.config.get_bool("SESSION_SINGLE_ENFORCEMENT", True)

    def _close(self, session: Session, reason: TerminationReason, now: datetime) -> None:
        session.is_active = False
        session.terminated_at = now
        session.termination_reason = reason
        self.store.save_session(session)

    async def create_session(
        self,
        user: User,
        access_token: str,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_type: Optional[str] = None,
    ) -> Session:
        now = self._clock()
        session = Session.new(
            user.id,
            access_token,
            refresh_token,
            ttl_minutes=int(self.inactivity_timeout.total_seconds() // 60),
            now=now,
            ip_address=ip_address,
            user_agent=user_agent,
            device_type=device_type,
        )
        displaced: List[Session] = []
        with self.store.transaction():
            # the user row lock serialises concurrent logins for one user
            current = self.store.find_user_by_id(user.id, for_update=True) or user
            if self.single_session:
                for existing in self.store.find_active_sessions_by_user(user.id):
                    self._close(existing, TerminationReason.DUPLICATE_LOGIN, now)
                    displaced.append(existing)
            self.store.save_session(session)
            current.current_session_id = session.session_id
            self.store.save_user(current)
        user.current_session_id = session.session_id

        for old in displaced:
            await self.registry.forget(old.session_id)
            logger.info(
                "session_terminated",
                session_id=old.session_id,
                user_id=user.id,
                reason=TerminationReason.DUPLICATE_LOGIN.value,
            )
        await self.registry.remember(session.session_id, user.id, session.expires_at)
        logger.info(
            "session_created",
            session_id=session.session_id,
            user_id=user.id,
            device_type=device_type,
            displaced=len(displaced),
        )
        return session

    async def validate(self, session_id: str) -> bool:
        """True when the session is active; slides its expiry on success."""
        if not session_id:
            return False
        now = self._clock()
        cached = await self.registry.lookup(session_id)
        if cached is not None and cached["expires_at"] > now:
            user_id = cached["user_id"]
        else:
            session = self.store.find_session_by_id(session_id)
            if session is None or not session.is_active:
                if cached is not None:
                    await self.registry.forget(session_id)
                return False
            if session.expires_at <= now:
                await self.terminate(session_id, TerminationReason.TIMEOUT)
                return False
            user_id = session.user_id

        expires_at = now + self.inactivity_timeout
        if not self.store.touch_session(session_id, now, expires_at):
            # terminated elsewhere after the cache entry was written
            await self.registry.forget(session_id)
            return False
        await self.registry.remember(session_id, user_id, expires_at)
        return True

    async def terminate(
        self, session_id: str, reason: TerminationReason
    ) -> Optional[Session]:
        """Terminate one session. Repeat calls are no-ops; unknown ids give None."""
        now = self._clock()
        changed = False
        with self.store.transaction():
            session = self.store.find_session_by_id(session_id)
            if session is None:
                return None
            if session.is_active:
                self._close(session, reason, now)
                user = self.store.find_user_by_id(session.user_id, for_update=True)
                if user is not None and user.current_session_id == session_id:
                    user.current_session_id = None
                    self.store.save_user(user)
                changed = True
        await self.registry.forget(session_id)
        if changed:
            logger.info(
                "session_terminated",
                session_id=session_id,
                user_id=session.user_id,
                reason=reason.value,
            )
        return session

    async def terminate_all(
        self, user_id: str, reason: TerminationReason
    ) -> List[Session]:
        now = self._clock()
        with self.store.transaction():
            user = self.store.find_user_by_id(user_id, for_update=True)
            sessions = self.store.find_active_sessions_by_user(user_id)
            for session in sessions:
                self._close(session, reason, now)
            if user is not None and user.current_session_id is not None:
                user.current_session_id = None
                self.store.save_user(user)
        for session in sessions:
            await self.registry.forget(session.session_id)
        logger.info(
            "sessions_terminated_all",
            user_id=user_id,
            reason=reason.value,
            count=len(sessions),
        )
        return sessions

    async def sweep(self) -> int:
        """Terminate every active session past its expiry."""
        now = self._clock()
        with self.store.transaction():
            expired = self.store.find_expired_active_sessions(now)
            for session in expired:
                self._close(session, TerminationReason.TIMEOUT, now)
                user = self.store.find_user_by_id(session.user_id, for_update=True)
                if user is not None and user.current_session_id == session.session_id:
                    user.current_session_id = None
                    self.store.save_user(user)
        await self.registry.forget_all()
        if expired:
            logger.info("sessions_swept", count=len(expired))
        return len(expired)

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.store.find_session_by_id(session_id)

    def find_by_access_token(self, access_token: str) -> Optional[Session]:
        return self.store.find_session_by_access_token(access_token)

    def find_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        return self.store.find_session_by_refresh_token(refresh_token)

    def active_sessions(self, user_id: str) -> List[Session]:
        return self.store.find_active_sessions_by_user(user_id)

    def update_access_token(self, session_id: str, access_token: str) -> Optional[Session]:
        with self.store.transaction():
            session = self.store.find_session_by_id(session_id)
            if session is None or not session.is_active:
                return None
            session.access_token = access_token
            self.store.save_session(session)
        return session


class SessionSweeper:
    """Background task that periodically runs ``SessionManager.sweep``."""

    def __init__(
        self,
        manager: SessionManager,
        *,
        interval: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self.manager = manager
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("session_sweeper_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("session_sweeper_started", interval=self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("session_sweeper_stopped")

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.manager.sweep()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "session_sweeper_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(3600, self.interval * (2 ** (consecutive_errors - 3)))
                    logger.warning(
                        "session_sweeper_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue
            await asyncio.sleep(self.interval)
