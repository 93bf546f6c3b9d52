from __future__ import annotations

import contextlib
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from identity_core.logging import get_logger

logger = get_logger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process settings for the identity core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/identity", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/identity-core", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (in-memory cache fallback).",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("identity-core", "JWT_ISSUER")
    jwt_audience: str = env_field("identity-clients", "JWT_AUDIENCE")
    jwt_access_token_expiration_minutes: int = env_field(
        15, "JWT_ACCESS_TOKEN_EXPIRATION_MINUTES"
    )
    jwt_refresh_token_expiration_days: int = env_field(
        7, "JWT_REFRESH_TOKEN_EXPIRATION_DAYS"
    )
    jwt_reset_token_expiration_minutes: int = env_field(
        10, "JWT_RESET_TOKEN_EXPIRATION_MINUTES"
    )
    revocation_fallback_ttl_hours: int = env_field(
        24,
        "REVOCATION_FALLBACK_TTL_HOURS",
        description="Denylist TTL used when a revoked token's expiry cannot be read",
    )

    # Lockout and password policy
    security_max_failed_login_attempts: int = env_field(
        5, "SECURITY_MAX_FAILED_LOGIN_ATTEMPTS"
    )
    security_account_lockout_duration_minutes: int = env_field(
        30, "SECURITY_ACCOUNT_LOCKOUT_DURATION_MINUTES"
    )
    password_special_characters: str = env_field("@$!%*?&", "PASSWORD_SPECIAL_CHARACTERS")

    # OTP
    otp_length: int = env_field(6, "OTP_LENGTH")
    otp_expiry_minutes: int = env_field(5, "OTP_EXPIRY_MINUTES")
    otp_max_attempts: int = env_field(3, "OTP_MAX_ATTEMPTS")

    # Sessions
    session_inactivity_timeout_minutes: int = env_field(
        15, "SESSION_INACTIVITY_TIMEOUT_MINUTES"
    )
    session_single_enforcement: bool = env_field(True, "SESSION_SINGLE_ENFORCEMENT")
    session_sweep_interval_seconds: int = env_field(
        300,
        "SESSION_SWEEP_INTERVAL_SECONDS",
        description="How often the background sweeper terminates expired sessions",
    )

    # Permission cache
    permissions_cache_ttl_hours: int = env_field(6, "PERMISSIONS_CACHE_TTL_HOURS")

    # MSG91 notification gateway (log-only delivery when the auth key is unset)
    msg91_auth_key: str | None = env_field(None, "MSG91_AUTH_KEY")
    msg91_base_url: str = env_field("https://control.msg91.com/api/v5", "MSG91_BASE_URL")
    msg91_otp_template_id: str = env_field("global_otp", "MSG91_OTP_TEMPLATE_ID")
    msg91_from_name: str = env_field("Identity Core", "MSG91_FROM_NAME")
    msg91_from_email: str = env_field("no-reply@identity.local", "MSG91_FROM_EMAIL")
    msg91_timeout_seconds: float = env_field(10.0, "MSG91_TIMEOUT_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name in cls.model_fields:
            env_name = cls.env_name(name)
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @classmethod
    def env_name(cls, field_name: str) -> str:
        field = cls.model_fields[field_name]
        extra = field.json_schema_extra or {}
        env_key = extra.get("env") if isinstance(extra, dict) else None
        return env_key or field_name.upper()

    @classmethod
    def field_for_env(cls, env_name: str) -> Optional[str]:
        """Return the settings attribute declared for ``env_name``, if any."""
        for name in cls.model_fields:
            if cls.env_name(name) == env_name:
                return name
        return None

    @field_validator(
        "jwt_access_token_expiration_minutes",
        "jwt_refresh_token_expiration_days",
        "jwt_reset_token_expiration_minutes",
        "security_max_failed_login_attempts",
        "security_account_lockout_duration_minutes",
        "otp_length",
        "otp_expiry_minutes",
        "otp_max_attempts",
        "session_inactivity_timeout_minutes",
        "session_sweep_interval_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/identity-core"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: Optional[str] = None
        try:
            # Atomic write: temp file then rename
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


class RuntimeConfigSource(Protocol):
    def get_runtime_config(self) -> dict: ...


class ConfigProvider:
    """Typed lookups for tunables keyed by their environment names.

    Resolution order: the store's runtime config (organization overrides),
    then the ``Settings`` field declared for the key, then the caller default.
    Values are re-read on every call so admin changes apply without restart.
    """

    def __init__(
        self,
        settings: Settings,
        source: Optional[RuntimeConfigSource] = None,
    ) -> None:
        self.settings = settings
        self.source = source

    def _lookup(self, key: str) -> Any:
        if self.source is not None:
            overrides = self.source.get_runtime_config() or {}
            if key in overrides and overrides[key] is not None:
                return overrides[key]
        field_name = Settings.field_for_env(key)
        if field_name is not None:
            return getattr(self.settings, field_name)
        return None

    def _typed(self, key: str, default: Any, convert: Callable[[Any], Any]) -> Any:
        raw = self._lookup(key)
        if raw is None:
            return default
        try:
            return convert(raw)
        except (TypeError, ValueError):
            logger.warning("config_value_invalid", key=key, value=str(raw))
            return default

    def get_int(self, key: str, default: int) -> int:
        return self._typed(key, default, int)

    def get_bool(self, key: str, default: bool) -> bool:
        def _to_bool(raw: Any) -> bool:
            if isinstance(raw, bool):
                return raw
            text = str(raw).strip().lower()
            if text in _TRUTHY:
                return True
            if text in _FALSY:
                return False
            raise ValueError(text)

        return self._typed(key, default, _to_bool)

    def get_string(self, key: str, default: str) -> str:
        return self._typed(key, default, str)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
