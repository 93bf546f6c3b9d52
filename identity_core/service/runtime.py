from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from identity_core.config import ConfigProvider, Settings, get_settings, reset_settings_cache
from identity_core.logging import get_logger
from identity_core.service.auth import AuthenticationFacade
from identity_core.service.notifier import LoggingNotifier, Msg91Notifier
from identity_core.service.otp import OtpChallenge, OtpLedger
from identity_core.service.password_policy import PasswordPolicy
from identity_core.service.permissions import PermissionCache
from identity_core.service.sessions import SessionManager, SessionRegistry, SessionSweeper
from identity_core.service.tokens import RevocationList, TokenIssuer
from identity_core.storage.cache import MemoryCache, RedisCache, SyncRedisCache
from identity_core.storage.memory import MemoryStore
from identity_core.storage.postgres import PostgresStore
from identity_core.storage.models import utcnow

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the process-wide store, cache and service instances."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = self._build_cache()
        self.config = ConfigProvider(self.settings, self.store)

        if self.settings.msg91_auth_key:
            self.notifier = Msg91Notifier(
                self.settings.msg91_auth_key,
                base_url=self.settings.msg91_base_url,
                from_name=self.settings.msg91_from_name,
                from_email=self.settings.msg91_from_email,
                timeout=self.settings.msg91_timeout_seconds,
            )
        else:
            self.notifier = LoggingNotifier()

        self.policy = PasswordPolicy(self.store, self.config, clock=clock)
        self.issuer = TokenIssuer(self.settings, self.config, clock=clock)
        self.revocations = RevocationList(self.cache, self.config, clock=clock)
        self.ledger = OtpLedger(self.store)
        self.otp = OtpChallenge(
            self.store,
            self.ledger,
            self.policy,
            self.issuer,
            self.notifier,
            self.config,
            clock=clock,
        )
        self.registry = SessionRegistry(self.cache, clock=clock)
        self.sessions = SessionManager(self.store, self.registry, self.config, clock=clock)
        self.sweeper = SessionSweeper(
            self.sessions, interval=self.settings.session_sweep_interval_seconds
        )
        self.permissions = PermissionCache(self.store, self.cache, self.config)
        self.auth = AuthenticationFacade(
            self.store,
            self.policy,
            self.otp,
            self.sessions,
            self.issuer,
            self.revocations,
            self.permissions,
            clock=clock,
        )
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            cache_type=type(self.cache).__name__,
            notifier=type(self.notifier).__name__,
        )

    def _build_cache(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions, token revocation and permission caches; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode=fallback_mode,
        )
        return MemoryCache(clock=self.clock)

    async def start(self) -> None:
        await self.sweeper.start()

    async def shutdown(self) -> None:
        await self.sweeper.stop()
        await self.otp.drain()
        await self.notifier.close()
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()
        logger.info("runtime_shutdown")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh environment read. TEST_MODE only."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache._sync_client.close()
            elif isinstance(runtime.cache, RedisCache):
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
