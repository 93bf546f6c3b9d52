from __future__ import annotations

import contextlib
import copy
import json
import threading
import uuid
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

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

# Every table is a dict keyed by primary key so snapshots and write journals
# can treat them uniformly.
_TABLES = (
    "users",
    "sessions",
    "otp_records",
    "roles",
    "permissions",
    "user_roles",
    "role_permissions",
    "runtime_config",
)


class MemoryStore:
    """In-memory store with snapshot transactions.

    ``transaction()`` snapshots every table and restores it if the block raises.
    ``independent_transaction()`` commits its writes even when an enclosing
    transaction later rolls back: on success the written rows are copied into
    every suspended outer snapshot. Transaction blocks hold the data lock and
    must not ``await``.

    When ``fs_root`` is given, committed state is mirrored to
    ``<fs_root>/state/identity_store.json`` and reloaded on start.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.otp_records: Dict[str, OtpChallengeRecord] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        self.user_roles: Dict[str, Set[str]] = {}
        self.role_permissions: Dict[str, Set[str]] = {}
        self.runtime_config: Dict[str, Any] = {}
        # RLock so store methods can be called from inside transaction blocks
        self._data_lock = threading.RLock()
        self._snapshots: List[Dict[str, dict]] = []
        self._suspended: List[List[Dict[str, dict]]] = []
        self._journal: Set[tuple[str, str]] = set()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # transactions
    def _snapshot(self) -> Dict[str, dict]:
        return {name: copy.deepcopy(getattr(self, name)) for name in _TABLES}

    def _restore(self, snapshot: Dict[str, dict]) -> None:
        for name in _TABLES:
            setattr(self, name, snapshot[name])

    def _mark(self, table: str, key: str) -> None:
        if self._snapshots:
            self._journal.add((table, key))
        else:
            self._persist_state()

    @contextlib.contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            snapshot = self._snapshot()
            self._snapshots.append(snapshot)
            try:
                yield self
            except BaseException:
                self._snapshots.pop()
                self._restore(snapshot)
                raise
            self._snapshots.pop()
            if not self._snapshots:
                self._journal = set()
                if not self._suspended:
                    self._persist_state()

    @contextlib.contextmanager
    def independent_transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            outer_snapshots = self._snapshots
            outer_journal = self._journal
            self._suspended.append(outer_snapshots)
            self._snapshots = []
            self._journal = set()
            written: Set[tuple[str, str]] = set()
            try:
                with self.transaction():
                    yield self
                    written = set(self._journal)
            finally:
                self._suspended.pop()
                self._snapshots = outer_snapshots
                self._journal = outer_journal
            for snapshot in outer_snapshots:
                for table, key in written:
                    live = getattr(self, table)
                    if key in live:
                        snapshot[table][key] = copy.deepcopy(live[key])
                    else:
                        snapshot[table].pop(key, None)
            if outer_snapshots:
                self._journal |= written
            self._persist_state()

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
        with self._data_lock:
            lowered = email.lower()
            for existing in self.users.values():
                if existing.username == username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
                if existing.email.lower() == lowered:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                password_hash=password_hash,
                status=status,
                first_login=first_login,
            )
            self.users[user.id] = replace(user)
            self._mark("users", user.id)
            return user

    def find_user_by_id(
        self, user_id: str, *, for_update: bool = False
    ) -> Optional[User]:
        # transactions hold the store lock, so row locking is implied
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def find_user_by_email(self, email: str) -> Optional[User]:
        lowered = email.lower()
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.email.lower() == lowered), None
            )
            return replace(user) if user else None

    def find_user_by_username_or_email(self, identifier: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.username == identifier), None
            )
            if user:
                return replace(user)
        return self.find_user_by_email(identifier)

    def save_user(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise RecordNotFound("user not found", {"user_id": user.id})
            self.users[user.id] = replace(user)
            self._mark("users", user.id)
            return user

    # sessions
    def save_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "session user missing", {"user_id": session.user_id}
                )
            self.sessions[session.session_id] = replace(session)
            self._mark("sessions", session.session_id)
            return session

    def find_session_by_id(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def find_session_by_access_token(self, access_token: str) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (s for s in self.sessions.values() if s.access_token == access_token),
                None,
            )
            return replace(sess) if sess else None

    def find_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (s for s in self.sessions.values() if s.refresh_token == refresh_token),
                None,
            )
            return replace(sess) if sess else None

    def find_active_sessions_by_user(self, user_id: str) -> List[Session]:
        with self._data_lock:
            active = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_active
            ]
            return [replace(s) for s in sorted(active, key=lambda s: s.created_at)]

    def find_expired_active_sessions(self, now: datetime) -> List[Session]:
        with self._data_lock:
            return [
                replace(s)
                for s in self.sessions.values()
                if s.is_active and s.expires_at <= now
            ]

    def touch_session(
        self, session_id: str, last_activity_at: datetime, expires_at: datetime
    ) -> bool:
        """Slide an active session's window; returns False if it is not active."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            self.sessions[session_id] = replace(
                sess, last_activity_at=last_activity_at, expires_at=expires_at
            )
            self._mark("sessions", session_id)
            return True

    # otp challenges
    def save_otp_record(self, record: OtpChallengeRecord) -> OtpChallengeRecord:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation(
                    "otp user missing", {"user_id": record.user_id}
                )
            self.otp_records[record.request_id] = replace(record)
            self._mark("otp_records", record.request_id)
            return record

    def find_otp_by_request_id(
        self, request_id: str, *, for_update: bool = False
    ) -> Optional[OtpChallengeRecord]:
        with self._data_lock:
            record = self.otp_records.get(request_id)
            return replace(record) if record else None

    def find_pending_otp(
        self, user_id: str, purpose: str
    ) -> Optional[OtpChallengeRecord]:
        with self._data_lock:
            pending = [
                r
                for r in self.otp_records.values()
                if r.user_id == user_id
                and r.purpose == purpose
                and r.status == OtpStatus.PENDING
            ]
            if not pending:
                return None
            return replace(max(pending, key=lambda r: r.created_at))

    # roles / permissions
    def create_role(self, code: str, name: str, description: str | None = None) -> Role:
        with self._data_lock:
            if any(r.code == code for r in self.roles.values()):
                raise ConstraintViolation("role code already exists", {"field": "code"})
            role = Role(id=str(uuid.uuid4()), code=code, name=name, description=description)
            self.roles[role.id] = replace(role)
            self._mark("roles", role.id)
            return role

    def create_permission(
        self, code: str, name: str, description: str | None = None
    ) -> Permission:
        with self._data_lock:
            if any(p.code == code for p in self.permissions.values()):
                raise ConstraintViolation(
                    "permission code already exists", {"field": "code"}
                )
            perm = Permission(
                id=str(uuid.uuid4()), code=code, name=name, description=description
            )
            self.permissions[perm.id] = replace(perm)
            self._mark("permissions", perm.id)
            return perm

    def find_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return replace(role) if role else None

    def find_role_by_code(self, code: str) -> Optional[Role]:
        with self._data_lock:
            role = next((r for r in self.roles.values() if r.code == code), None)
            return replace(role) if role else None

    def find_permission(self, permission_id: str) -> Optional[Permission]:
        with self._data_lock:
            perm = self.permissions.get(permission_id)
            return replace(perm) if perm else None

    def find_permission_by_code(self, code: str) -> Optional[Permission]:
        with self._data_lock:
            perm = next((p for p in self.permissions.values() if p.code == code), None)
            return replace(perm) if perm else None

    def find_roles(self, role_ids: Iterable[str]) -> List[Role]:
        with self._data_lock:
            return [replace(self.roles[rid]) for rid in set(role_ids) if rid in self.roles]

    def find_permissions(self, permission_ids: Iterable[str]) -> List[Permission]:
        with self._data_lock:
            return [
                replace(self.permissions[pid])
                for pid in set(permission_ids)
                if pid in self.permissions
            ]

    def find_role_ids_by_user(self, user_id: str) -> List[str]:
        with self._data_lock:
            return sorted(self.user_roles.get(user_id, set()))

    def find_permission_ids_by_roles(self, role_ids: Iterable[str]) -> List[str]:
        with self._data_lock:
            found: Set[str] = set()
            for role_id in role_ids:
                found |= self.role_permissions.get(role_id, set())
            return sorted(found)

    def add_user_role(self, user_id: str, role_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                raise RecordNotFound("user not found", {"user_id": user_id})
            held = self.user_roles.setdefault(user_id, set())
            if role_id in held:
                return False
            held.add(role_id)
            self._mark("user_roles", user_id)
            return True

    def remove_user_role(self, user_id: str, role_id: str) -> bool:
        with self._data_lock:
            held = self.user_roles.get(user_id, set())
            if role_id not in held:
                return False
            held.discard(role_id)
            self._mark("user_roles", user_id)
            return True

    def replace_user_roles(self, user_id: str, role_ids: Iterable[str]) -> int:
        """Swap the user's role set; returns how many prior assignments were removed."""
        with self._data_lock:
            if user_id not in self.users:
                raise RecordNotFound("user not found", {"user_id": user_id})
            removed = len(self.user_roles.get(user_id, set()))
            self.user_roles[user_id] = set(role_ids)
            self._mark("user_roles", user_id)
            return removed

    def add_role_permission(self, role_id: str, permission_id: str) -> bool:
        with self._data_lock:
            granted = self.role_permissions.setdefault(role_id, set())
            if permission_id in granted:
                return False
            granted.add(permission_id)
            self._mark("role_permissions", role_id)
            return True

    def remove_role_permission(self, role_id: str, permission_id: str) -> bool:
        with self._data_lock:
            granted = self.role_permissions.get(role_id, set())
            if permission_id not in granted:
                return False
            granted.discard(permission_id)
            self._mark("role_permissions", role_id)
            return True

    def replace_role_permissions(self, role_id: str, permission_ids: Iterable[str]) -> int:
        with self._data_lock:
            removed = len(self.role_permissions.get(role_id, set()))
            self.role_permissions[role_id] = set(permission_ids)
            self._mark("role_permissions", role_id)
            return removed

    # runtime config
    def get_runtime_config(self) -> dict:
        with self._data_lock:
            return dict(self.runtime_config)

    def set_runtime_config(self, key: str, value: Any) -> None:
        with self._data_lock:
            if value is None:
                self.runtime_config.pop(key, None)
            else:
                self.runtime_config[key] = value
            self._mark("runtime_config", key)

    # persistence
    def _state_path(self) -> Optional[Path]:
        if self.fs_root is None:
            return None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    def _committed_view(self) -> Dict[str, Any]:
        # The oldest open snapshot is the last committed state
        for stack in (*self._suspended, self._snapshots):
            if stack:
                return stack[0]
        return {name: getattr(self, name) for name in _TABLES}

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        view = self._committed_view()
        state = {
            "users": [_serialize(u) for u in view["users"].values()],
            "sessions": [_serialize(s) for s in view["sessions"].values()],
            "otp_records": [_serialize(r) for r in view["otp_records"].values()],
            "roles": [_serialize(r) for r in view["roles"].values()],
            "permissions": [_serialize(p) for p in view["permissions"].values()],
            "user_roles": {k: sorted(v) for k, v in view["user_roles"].items()},
            "role_permissions": {
                k: sorted(v) for k, v in view["role_permissions"].items()
            },
            "runtime_config": view["runtime_config"],
        }
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        # Read directly instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: _deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["session_id"]: _deserialize_session(s) for s in data.get("sessions", [])
        }
        self.otp_records = {
            r["request_id"]: _deserialize_otp(r) for r in data.get("otp_records", [])
        }
        self.roles = {r["id"]: Role(**r) for r in data.get("roles", [])}
        self.permissions = {p["id"]: Permission(**p) for p in data.get("permissions", [])}
        self.user_roles = {k: set(v) for k, v in data.get("user_roles", {}).items()}
        self.role_permissions = {
            k: set(v) for k, v in data.get("role_permissions", {}).items()
        }
        self.runtime_config = data.get("runtime_config", {})
        self.logger.info(
            "memory_store_state_loaded", users=len(self.users), sessions=len(self.sessions)
        )
        return True


def _serialize(record: Any) -> dict:
    data = asdict(record)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = value.isoformat()
        elif hasattr(value, "value"):
            data[key] = value.value
    return data


def _parse_ts(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


def _deserialize_user(data: dict) -> User:
    return User(
        id=data["id"],
        username=data["username"],
        email=data["email"],
        password_hash=data["password_hash"],
        status=UserStatus(data.get("status", UserStatus.ACTIVE.value)),
        failed_login_attempts=int(data.get("failed_login_attempts", 0)),
        account_locked_until=_parse_ts(data.get("account_locked_until")),
        first_login=bool(data.get("first_login", False)),
        current_session_id=data.get("current_session_id"),
        last_login_at=_parse_ts(data.get("last_login_at")),
        created_at=_parse_ts(data["created_at"]),
    )


def _deserialize_session(data: dict) -> Session:
    reason = data.get("termination_reason")
    return Session(
        session_id=data["session_id"],
        user_id=data["user_id"],
        access_token=data["access_token"],
        refresh_token=data["refresh_token"],
        created_at=_parse_ts(data["created_at"]),
        last_activity_at=_parse_ts(data["last_activity_at"]),
        expires_at=_parse_ts(data["expires_at"]),
        ip_address=data.get("ip_address"),
        user_agent=data.get("user_agent"),
        device_type=data.get("device_type"),
        is_active=bool(data.get("is_active", False)),
        terminated_at=_parse_ts(data.get("terminated_at")),
        termination_reason=TerminationReason(reason) if reason else None,
    )


def _deserialize_otp(data: dict) -> OtpChallengeRecord:
    return OtpChallengeRecord(
        request_id=data["request_id"],
        user_id=data["user_id"],
        otp_hash=data["otp_hash"],
        purpose=data["purpose"],
        expires_at=_parse_ts(data["expires_at"]),
        max_attempts=int(data["max_attempts"]),
        destination=data.get("destination", ""),
        status=OtpStatus(data.get("status", OtpStatus.PENDING.value)),
        attempt_count=int(data.get("attempt_count", 0)),
        created_at=_parse_ts(data["created_at"]),
        verified_at=_parse_ts(data.get("verified_at")),
        delivery_status=DeliveryStatus(
            data.get("delivery_status", DeliveryStatus.QUEUED.value)
        ),
        delivery_id=data.get("delivery_id"),
    )
