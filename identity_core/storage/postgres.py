from __future__ import annotations

import contextlib
import json
import threading
import uuid
from datetime import datetime
from typing import Any, Iterable, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from identity_core.logging import get_logger
from identity_core.storage.errors import ConstraintViolation, RecordNotFound
from identity_core.storage.models import (
    DeliveryStatus,
    OtpChallengeRecord,
    OtpStatus,
    Permission,
    Role,
    Session,
    TerminationReason,
    User,
    UserStatus,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS identity_user (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        account_locked_until TIMESTAMPTZ,
        first_login BOOLEAN NOT NULL DEFAULT FALSE,
        current_session_id TEXT,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS identity_user_email_idx ON identity_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        session_id TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES identity_user(id) ON DELETE CASCADE,
        access_token TEXT NOT NULL,
        refresh_token TEXT NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        device_type TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL,
        last_activity_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        terminated_at TIMESTAMPTZ,
        termination_reason TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_active_idx ON auth_session (user_id) WHERE is_active",
    "CREATE INDEX IF NOT EXISTS auth_session_access_idx ON auth_session (access_token)",
    "CREATE INDEX IF NOT EXISTS auth_session_refresh_idx ON auth_session (refresh_token)",
    """
    CREATE TABLE IF NOT EXISTS otp_challenge (
        request_id TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES identity_user(id) ON DELETE CASCADE,
        otp_hash TEXT NOT NULL,
        purpose TEXT NOT NULL,
        status TEXT NOT NULL,
        attempt_count INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        destination TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        verified_at TIMESTAMPTZ,
        delivery_status TEXT NOT NULL,
        delivery_id TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS otp_challenge_pending_idx ON otp_challenge (user_id, purpose) WHERE status = 'PENDING'",
    """
    CREATE TABLE IF NOT EXISTS auth_role (
        id UUID PRIMARY KEY,
        code TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        description TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_permission (
        id UUID PRIMARY KEY,
        code TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        description TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_role (
        user_id UUID NOT NULL REFERENCES identity_user(id) ON DELETE CASCADE,
        role_id UUID NOT NULL REFERENCES auth_role(id) ON DELETE CASCADE,
        assigned_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, role_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_permission (
        role_id UUID NOT NULL REFERENCES auth_role(id) ON DELETE CASCADE,
        permission_id UUID NOT NULL REFERENCES auth_permission(id) ON DELETE CASCADE,
        granted_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (role_id, permission_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS instance_config (
        name TEXT PRIMARY KEY,
        value JSONB NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)



def _uuids(raw_ids: Iterable[str]) -> List[str]:
    """Canonical UUID strings; malformed ids cannot match a UUID column."""
    valid = set()
    for raw in raw_ids:
        try:
            valid.add(str(uuid.UUID(str(raw))))
        except ValueError:
            continue
    return sorted(valid)

class PostgresStore:
    """Postgres-backed store for identity records.

    ``transaction()`` pins one pooled connection to the calling thread so every
    store call inside the block shares it; nested calls become savepoints.
    ``independent_transaction()`` checks out a separate connection, so its
    writes commit on their own regardless of the enclosing transaction.
    Transaction blocks must not ``await``.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._local = threading.local()
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @contextlib.contextmanager
    def _connect(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            yield conn
            return
        with self.pool.connection() as conn:
            yield conn

    @contextlib.contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            with conn.transaction():
                yield self
            return
        with self.pool.connection() as conn:
            self._local.conn = conn
            try:
                with conn.transaction():
                    yield self
            finally:
                self._local.conn = None

    @contextlib.contextmanager
    def independent_transaction(self) -> Iterator["PostgresStore"]:
        outer = getattr(self._local, "conn", None)
        self._local.conn = None
        try:
            with self.transaction():
                yield self
        finally:
            self._local.conn = outer

    # users
    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        first_login: bool = False,
        status: UserStatus = UserStatus.ACTIVE,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            username=username,
            email=email,
            password_hash=password_hash,
            status=status,
            first_login=first_login,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO identity_user (id, username, email, password_hash, status, first_login, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        username,
                        email,
                        password_hash,
                        status.value,
                        first_login,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "username or email already exists", {"field": "username"}
            )
        return user

    def _user_from_row(self, row) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            status=UserStatus(row["status"]),
            failed_login_attempts=row["failed_login_attempts"],
            account_locked_until=row.get("account_locked_until"),
            first_login=row["first_login"],
            current_session_id=row.get("current_session_id"),
            last_login_at=row.get("last_login_at"),
            created_at=row["created_at"],
        )

    def find_user_by_id(
        self, user_id: str, *, for_update: bool = False
    ) -> Optional[User]:
        if not _uuids([user_id]):
            return None
        sql = "SELECT * FROM identity_user WHERE id = %s"
        if for_update:
            sql += " FOR UPDATE"
        with self._connect() as conn:
            row = conn.execute(sql, (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def find_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM identity_user WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def find_user_by_username_or_email(self, identifier: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM identity_user
                WHERE username = %s OR lower(email) = lower(%s)
                ORDER BY (username = %s) DESC
                LIMIT 1
                """,
                (identifier, identifier, identifier),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_user(self, user: User) -> User:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE identity_user
                SET username = %s, email = %s, password_hash = %s, status = %s,
                    failed_login_attempts = %s, account_locked_until = %s,
                    first_login = %s, current_session_id = %s, last_login_at = %s
                WHERE id = %s
                """,
                (
                    user.username,
                    user.email,
                    user.password_hash,
                    user.status.value,
                    user.failed_login_attempts,
                    user.account_locked_until,
                    user.first_login,
                    user.current_session_id,
                    user.last_login_at,
                    user.id,
                ),
            )
            if result.rowcount == 0:
                raise RecordNotFound("user not found", {"user_id": user.id})
        return user

    # sessions
    def _session_from_row(self, row) -> Session:
        reason = row.get("termination_reason")
        return Session(
            session_id=row["session_id"],
            user_id=str(row["user_id"]),
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            created_at=row["created_at"],
            last_activity_at=row["last_activity_at"],
            expires_at=row["expires_at"],
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            device_type=row.get("device_type"),
            is_active=row["is_active"],
            terminated_at=row.get("terminated_at"),
            termination_reason=TerminationReason(reason) if reason else None,
        )

    def save_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (session_id, user_id, access_token, refresh_token, ip_address,
                        user_agent, device_type, is_active, created_at, last_activity_at, expires_at,
                        terminated_at, termination_reason)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (session_id) DO UPDATE
                    SET access_token = EXCLUDED.access_token,
                        refresh_token = EXCLUDED.refresh_token,
                        is_active = EXCLUDED.is_active,
                        last_activity_at = EXCLUDED.last_activity_at,
                        expires_at = EXCLUDED.expires_at,
                        terminated_at = EXCLUDED.terminated_at,
                        termination_reason = EXCLUDED.termination_reason
                    """,
                    (
                        session.session_id,
                        session.user_id,
                        session.access_token,
                        session.refresh_token,
                        session.ip_address,
                        session.user_agent,
                        session.device_type,
                        session.is_active,
                        session.created_at,
                        session.last_activity_at,
                        session.expires_at,
                        session.terminated_at,
                        session.termination_reason.value
                        if session.termination_reason
                        else None,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        return session

    def _find_session(self, column: str, value: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM auth_session WHERE {column} = %s", (value,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def find_session_by_id(self, session_id: str) -> Optional[Session]:
        return self._find_session("session_id", session_id)

    def find_session_by_access_token(self, access_token: str) -> Optional[Session]:
        return self._find_session("access_token", access_token)

    def find_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        return self._find_session("refresh_token", refresh_token)

    def find_active_sessions_by_user(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND is_active
                ORDER BY created_at
                FOR UPDATE
                """,
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def find_expired_active_sessions(self, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE is_active AND expires_at <= %s",
                (now,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def touch_session(
        self, session_id: str, last_activity_at: datetime, expires_at: datetime
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET last_activity_at = %s, expires_at = %s
                WHERE session_id = %s AND is_active
                """,
                (last_activity_at, expires_at, session_id),
            )
            return result.rowcount > 0

    # otp challenges
    def _otp_from_row(self, row) -> OtpChallengeRecord:
        return OtpChallengeRecord(
            request_id=row["request_id"],
            user_id=str(row["user_id"]),
            otp_hash=row["otp_hash"],
            purpose=row["purpose"],
            expires_at=row["expires_at"],
            max_attempts=row["max_attempts"],
            destination=row["destination"],
            status=OtpStatus(row["status"]),
            attempt_count=row["attempt_count"],
            created_at=row["created_at"],
            verified_at=row.get("verified_at"),
            delivery_status=DeliveryStatus(row["delivery_status"]),
            delivery_id=row.get("delivery_id"),
        )

    def save_otp_record(self, record: OtpChallengeRecord) -> OtpChallengeRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO otp_challenge (request_id, user_id, otp_hash, purpose, status, attempt_count,
                        max_attempts, expires_at, destination, created_at, verified_at, delivery_status, delivery_id)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (request_id) DO UPDATE
                    SET otp_hash = EXCLUDED.otp_hash,
                        status = EXCLUDED.status,
                        attempt_count = EXCLUDED.attempt_count,
                        expires_at = EXCLUDED.expires_at,
                        verified_at = EXCLUDED.verified_at,
                        delivery_status = EXCLUDED.delivery_status,
                        delivery_id = EXCLUDED.delivery_id
                    """,
                    (
                        record.request_id,
                        record.user_id,
                        record.otp_hash,
                        record.purpose,
                        record.status.value,
                        record.attempt_count,
                        record.max_attempts,
                        record.expires_at,
                        record.destination,
                        record.created_at,
                        record.verified_at,
                        record.delivery_status.value,
                        record.delivery_id,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("otp user missing", {"user_id": record.user_id})
        return record

    def find_otp_by_request_id(
        self, request_id: str, *, for_update: bool = False
    ) -> Optional[OtpChallengeRecord]:
        sql = "SELECT * FROM otp_challenge WHERE request_id = %s"
        if for_update:
            sql += " FOR UPDATE"
        with self._connect() as conn:
            row = conn.execute(sql, (request_id,)).fetchone()
        return self._otp_from_row(row) if row else None

    def find_pending_otp(self, user_id: str, purpose: str) -> Optional[OtpChallengeRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp_challenge
                WHERE user_id = %s AND purpose = %s AND status = 'PENDING'
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (user_id, purpose),
            ).fetchone()
        return self._otp_from_row(row) if row else None

    # roles / permissions
    def create_role(self, code: str, name: str, description: str | None = None) -> Role:
        role = Role(id=str(uuid.uuid4()), code=code, name=name, description=description)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO auth_role (id, code, name, description) VALUES (%s, %s, %s, %s)",
                    (role.id, code, name, description),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("role code already exists", {"field": "code"})
        return role

    def create_permission(
        self, code: str, name: str, description: str | None = None
    ) -> Permission:
        perm = Permission(id=str(uuid.uuid4()), code=code, name=name, description=description)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO auth_permission (id, code, name, description) VALUES (%s, %s, %s, %s)",
                    (perm.id, code, name, description),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("permission code already exists", {"field": "code"})
        return perm

    @staticmethod
    def _role_from_row(row) -> Role:
        return Role(
            id=str(row["id"]),
            code=row["code"],
            name=row["name"],
            description=row.get("description"),
        )

    @staticmethod
    def _permission_from_row(row) -> Permission:
        return Permission(
            id=str(row["id"]),
            code=row["code"],
            name=row["name"],
            description=row.get("description"),
        )

    def find_role(self, role_id: str) -> Optional[Role]:
        if not _uuids([role_id]):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM auth_role WHERE id = %s", (role_id,)).fetchone()
        return self._role_from_row(row) if row else None

    def find_role_by_code(self, code: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM auth_role WHERE code = %s", (code,)).fetchone()
        return self._role_from_row(row) if row else None

    def find_permission(self, permission_id: str) -> Optional[Permission]:
        if not _uuids([permission_id]):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_permission WHERE id = %s", (permission_id,)
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def find_permission_by_code(self, code: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_permission WHERE code = %s", (code,)
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def find_roles(self, role_ids: Iterable[str]) -> List[Role]:
        ids = _uuids(role_ids)
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_role WHERE id = ANY(%s::uuid[])", (ids,)
            ).fetchall()
        return [self._role_from_row(row) for row in rows]

    def find_permissions(self, permission_ids: Iterable[str]) -> List[Permission]:
        ids = _uuids(permission_ids)
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_permission WHERE id = ANY(%s::uuid[])", (ids,)
            ).fetchall()
        return [self._permission_from_row(row) for row in rows]

    def find_role_ids_by_user(self, user_id: str) -> List[str]:
        if not _uuids([user_id]):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT role_id FROM user_role WHERE user_id = %s ORDER BY role_id",
                (user_id,),
            ).fetchall()
        return [str(row["role_id"]) for row in rows]

    def find_permission_ids_by_roles(self, role_ids: Iterable[str]) -> List[str]:
        ids = _uuids(role_ids)
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT permission_id FROM role_permission
                WHERE role_id = ANY(%s::uuid[])
                ORDER BY permission_id
                """,
                (ids,),
            ).fetchall()
        return [str(row["permission_id"]) for row in rows]

    def add_user_role(self, user_id: str, role_id: str) -> bool:
        try:
            with self._connect() as conn:
                result = conn.execute(
                    """
                    INSERT INTO user_role (user_id, role_id) VALUES (%s, %s)
                    ON CONFLICT (user_id, role_id) DO NOTHING
                    """,
                    (user_id, role_id),
                )
                return result.rowcount > 0
        except errors.ForeignKeyViolation:
            raise RecordNotFound("user or role not found", {"user_id": user_id})

    def remove_user_role(self, user_id: str, role_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM user_role WHERE user_id = %s AND role_id = %s",
                (user_id, role_id),
            )
            return result.rowcount > 0

    def replace_user_roles(self, user_id: str, role_ids: Iterable[str]) -> int:
        with self.transaction():
            with self._connect() as conn:
                removed = conn.execute(
                    "DELETE FROM user_role WHERE user_id = %s", (user_id,)
                ).rowcount
                for role_id in set(role_ids):
                    try:
                        conn.execute(
                            "INSERT INTO user_role (user_id, role_id) VALUES (%s, %s)",
                            (user_id, role_id),
                        )
                    except errors.ForeignKeyViolation:
                        raise RecordNotFound("user or role not found", {"user_id": user_id})
        return removed

    def add_role_permission(self, role_id: str, permission_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s)
                ON CONFLICT (role_id, permission_id) DO NOTHING
                """,
                (role_id, permission_id),
            )
            return result.rowcount > 0

    def remove_role_permission(self, role_id: str, permission_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM role_permission WHERE role_id = %s AND permission_id = %s",
                (role_id, permission_id),
            )
            return result.rowcount > 0

    def replace_role_permissions(self, role_id: str, permission_ids: Iterable[str]) -> int:
        with self.transaction():
            with self._connect() as conn:
                removed = conn.execute(
                    "DELETE FROM role_permission WHERE role_id = %s", (role_id,)
                ).rowcount
                for permission_id in set(permission_ids):
                    conn.execute(
                        "INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s)",
                        (role_id, permission_id),
                    )
        return removed

    # runtime config
    def get_runtime_config(self) -> dict:
        with self._connect() as conn:
            rows = conn.execute("SELECT name, value FROM instance_config").fetchall()
        config: dict[str, Any] = {}
        for row in rows:
            value = row["value"]
            if isinstance(value, str):
                try:
                    value = json.loads(value)
                except json.JSONDecodeError:
                    pass
            config[row["name"]] = value
        return config

    def set_runtime_config(self, key: str, value: Any) -> None:
        with self._connect() as conn:
            if value is None:
                conn.execute("DELETE FROM instance_config WHERE name = %s", (key,))
                return
            conn.execute(
                """
                INSERT INTO instance_config (name, value, updated_at)
                VALUES (%s, %s, now())
                ON CONFLICT (name) DO UPDATE
                SET value = EXCLUDED.value, updated_at = now()
                """,
                (key, json.dumps(value)),
            )

    def close(self) -> None:
        self.pool.close()
