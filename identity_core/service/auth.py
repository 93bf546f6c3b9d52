from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional

from identity_core.logging import get_logger
from identity_core.service.errors import (
    AccountLockedError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    SessionInactiveError,
    SessionNotFoundError,
    ValidationError,
)
from identity_core.service.otp import OtpChallenge, OtpRequestResult, OtpVerifyResult
from identity_core.service.password_policy import LockoutStatus, PasswordPolicy
from identity_core.service.permissions import PermissionCache, UserPermissions
from identity_core.service.sessions import SessionManager
from identity_core.service.tokens import ACCESS, REFRESH, RESET, RevocationList, TokenIssuer
from identity_core.storage.errors import ConstraintViolation
from identity_core.storage.models import (
    OtpStatus,
    Permission,
    Role,
    Session,
    TerminationReason,
    User,
    UserStatus,
    utcnow,
)

logger = get_logger(__name__)

RESET_PASSWORD = "RESET_PASSWORD"


@dataclass
class LoginResult:
    user_id: str
    username: str
    email: str
    roles: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    session_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    refresh_expires_at: Optional[datetime] = None
    requires_otp: bool = False
    message: str = "Login successful"


@dataclass
class RefreshResult:
    access_token: str
    expires_at: datetime
    session_id: str


@dataclass
class AuthContext:
    user_id: str
    username: str
    session_id: str
    roles: List[str]
    permissions: List[str]
    claims: dict[str, Any]


class AuthenticationFacade:
    """Entry point for login, OTP, password reset, sessions and authorization.

    Composes the password policy, OTP challenge, session manager, token issuer,
    revocation list and permission cache. Transport layers call this class and
    map ``ServiceError`` subclasses to responses.
    """

    def __init__(
        self,
        store,
        policy: PasswordPolicy,
        otp: OtpChallenge,
        sessions: SessionManager,
        issuer: TokenIssuer,
        revocations: RevocationList,
        permissions: PermissionCache,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.policy = policy
        self.otp = otp
        self.sessions = sessions
        self.issuer = issuer
        self.revocations = revocations
        self.permissions = permissions
        self._clock = clock
        self.logger = logger

    def _find_user(self, username_or_email: str) -> User:
        user = (
            self.store.find_user_by_username_or_email(username_or_email.strip())
            if username_or_email
            else None
        )
        if user is None:
            raise InvalidCredentialsError()
        return user

    def _get_user(self, user_id: str) -> User:
        user = self.store.find_user_by_id(user_id)
        if user is None:
            raise NotFoundError(f"User not found: {user_id}")
        return user

    # login
    async def login(
        self,
        username_or_email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_type: Optional[str] = None,
    ) -> LoginResult:
        try:
            user = self._find_user(username_or_email)
        except InvalidCredentialsError:
            self.logger.warning("login_unknown_user")
            raise
        if self.policy.is_locked(user):
            minutes = self.policy.remaining_lockout_minutes(user)
            self.logger.warning("login_account_locked", user_id=user.id, remaining_minutes=minutes)
            raise AccountLockedError(minutes)
        if not self.policy.verify(password or "", user.password_hash):
            remaining = self.policy.handle_failed_login(user)
            if remaining == 0:
                raise AccountLockedError(self.policy.remaining_lockout_minutes(user))
            raise InvalidCredentialsError(remaining)

        if user.first_login:
            self.policy.reset_failed_attempts(user)
            self.logger.info("login_requires_otp", user_id=user.id)
            return LoginResult(
                user_id=user.id,
                username=user.username,
                email=user.email,
                requires_otp=True,
                message="First login detected. Please reset your password via OTP.",
            )

        with self.store.transaction():
            self.policy.reset_failed_attempts(user)
            user.last_login_at = self._clock()
            self.store.save_user(user)

        granted = await self.permissions.get_permissions(user.id)
        access = self.issuer.issue_access(user, granted.roles, granted.permissions)
        refresh = self.issuer.issue_refresh(user)
        session = await self.sessions.create_session(
            user,
            access.token,
            refresh.token,
            ip_address=ip_address,
            user_agent=user_agent,
            device_type=device_type,
        )
        self.logger.info("login_succeeded", user_id=user.id, session_id=session.session_id)
        return LoginResult(
            user_id=user.id,
            username=user.username,
            email=user.email,
            roles=granted.roles,
            permissions=granted.permissions,
            access_token=access.token,
            refresh_token=refresh.token,
            session_id=session.session_id,
            expires_at=access.expires_at,
            refresh_expires_at=refresh.expires_at,
        )

    # otp and password reset
    async def request_otp(
        self, username_or_email: str, purpose: str = RESET_PASSWORD
    ) -> OtpRequestResult:
        user = self._find_user(username_or_email)
        return await self.otp.request(user, purpose)

    async def resend_otp(self, request_id: str) -> OtpRequestResult:
        return await self.otp.resend(request_id)

    async def verify_otp(self, request_id: str, code: str) -> OtpVerifyResult:
        return await self.otp.verify(request_id, code)

    async def reset_password(
        self, reset_token: str, new_password: str, confirm_password: str
    ) -> None:
        if await self.revocations.is_revoked(reset_token):
            raise InvalidTokenError()
        claims = self.issuer.decode(reset_token, RESET)
        if claims is None:
            raise InvalidTokenError()
        self.policy.validate_strength(new_password)
        if new_password != confirm_password:
            raise ValidationError("Passwords do not match")

        with self.store.transaction():
            user = self.store.find_user_by_id(str(claims.get("sub")), for_update=True)
            record = self.store.find_otp_by_request_id(
                str(claims.get("request_id")), for_update=True
            )
            if (
                user is None
                or record is None
                or record.user_id != user.id
                or record.status != OtpStatus.VERIFIED
            ):
                raise InvalidTokenError()
            user.password_hash = self.policy.hash(new_password)
            user.first_login = False
            user.status = UserStatus.ACTIVE
            user.failed_login_attempts = 0
            user.account_locked_until = None
            self.store.save_user(user)
        await self.revocations.revoke(reset_token)
        self.logger.info("password_reset_completed", user_id=user.id)

    # tokens and sessions
    async def refresh(self, refresh_token: str) -> RefreshResult:
        if await self.revocations.is_revoked(refresh_token):
            raise InvalidTokenError()
        claims = self.issuer.decode(refresh_token, REFRESH)
        if claims is None:
            raise InvalidTokenError()
        session = self.sessions.find_by_refresh_token(refresh_token)
        if session is None or session.user_id != claims.get("sub"):
            raise InvalidTokenError()
        if not await self.sessions.validate(session.session_id):
            raise SessionInactiveError()
        user = self.store.find_user_by_id(session.user_id)
        if user is None:
            raise InvalidTokenError()

        granted = await self.permissions.get_permissions(user.id)
        access = self.issuer.issue_access(user, granted.roles, granted.permissions)
        updated = self.sessions.update_access_token(session.session_id, access.token)
        if updated is None:
            raise SessionInactiveError()
        await self.revocations.revoke(session.access_token)
        self.logger.info("access_token_refreshed", user_id=user.id, session_id=session.session_id)
        return RefreshResult(
            access_token=access.token,
            expires_at=access.expires_at,
            session_id=session.session_id,
        )

    async def _revoke_session_tokens(self, session: Session) -> None:
        await self.revocations.revoke(session.access_token)
        await self.revocations.revoke(session.refresh_token)

    async def terminate_session(
        self,
        session_id: str,
        reason: TerminationReason = TerminationReason.ADMIN_ACTION,
    ) -> Session:
        session = await self.sessions.terminate(session_id, reason)
        if session is None:
            raise SessionNotFoundError()
        await self._revoke_session_tokens(session)
        return session

    async def logout(self, session_id: str) -> Session:
        return await self.terminate_session(session_id, TerminationReason.LOGOUT)

    async def terminate_all_sessions(
        self,
        user_id: str,
        reason: TerminationReason = TerminationReason.ADMIN_ACTION,
    ) -> int:
        terminated = await self.sessions.terminate_all(user_id, reason)
        for session in terminated:
            await self._revoke_session_tokens(session)
        return len(terminated)

    async def validate_session(self, session_id: str) -> bool:
        return await self.sessions.validate(session_id)

    async def is_token_revoked(self, token: str) -> bool:
        return await self.revocations.is_revoked(token)

    def get_active_sessions(self, user_id: str) -> List[Session]:
        return self.sessions.active_sessions(user_id)

    # authorization
    async def authenticate(self, access_token: str) -> AuthContext:
        if await self.revocations.is_revoked(access_token):
            raise InvalidTokenError()
        claims = self.issuer.decode(access_token, ACCESS)
        if claims is None:
            raise InvalidTokenError()
        session = self.sessions.find_by_access_token(access_token)
        if session is None or session.user_id != claims.get("sub"):
            raise InvalidTokenError()
        if not await self.sessions.validate(session.session_id):
            raise SessionInactiveError()
        granted = await self.permissions.get_permissions(session.user_id)
        return AuthContext(
            user_id=session.user_id,
            username=str(claims.get("username", "")),
            session_id=session.session_id,
            roles=granted.roles,
            permissions=granted.permissions,
            claims=claims,
        )

    async def authorize(self, access_token: str, permission: str) -> AuthContext:
        context = await self.authenticate(access_token)
        if permission not in context.permissions:
            self.logger.warning(
                "authorization_denied", user_id=context.user_id, permission=permission
            )
            raise ForbiddenError("Insufficient permissions")
        return context

    async def get_permissions(self, user_id: str) -> UserPermissions:
        return await self.permissions.get_permissions(user_id)

    async def assign_role(self, user_id: str, role_id: str) -> bool:
        return await self.permissions.assign_role(user_id, role_id)

    async def revoke_role(self, user_id: str, role_id: str) -> bool:
        return await self.permissions.revoke_role(user_id, role_id)

    async def assign_roles(self, user_id: str, role_ids: Iterable[str]) -> int:
        return await self.permissions.assign_roles(user_id, role_ids)

    async def replace_roles(self, user_id: str, role_ids: Iterable[str]) -> int:
        return await self.permissions.replace_roles(user_id, role_ids)

    async def assign_permission_to_role(self, role_id: str, permission_id: str) -> bool:
        return await self.permissions.assign_permission_to_role(role_id, permission_id)

    async def revoke_permission_from_role(self, role_id: str, permission_id: str) -> bool:
        return await self.permissions.revoke_permission_from_role(role_id, permission_id)

    async def assign_permissions_to_role(
        self, role_id: str, permission_ids: Iterable[str]
    ) -> int:
        return await self.permissions.assign_permissions_to_role(role_id, permission_ids)

    async def replace_role_permissions(
        self, role_id: str, permission_ids: Iterable[str]
    ) -> int:
        return await self.permissions.replace_role_permissions(role_id, permission_ids)

    async def refresh_permissions(self) -> None:
        await self.permissions.refresh_all()

    # lockout administration
    def unlock_account(self, user_id: str) -> None:
        self.policy.unlock_account(self._get_user(user_id))

    def get_lockout_status(self, user_id: str) -> LockoutStatus:
        return self.policy.lockout_status(self._get_user(user_id))

    # provisioning
    async def create_user(
        self,
        username: str,
        email: str,
        password: str,
        *,
        first_login: bool = True,
        role_codes: Iterable[str] = (),
    ) -> User:
        if not username or not email or "@" not in email:
            raise ValidationError("A username and a valid email are required")
        self.policy.validate_strength(password)
        password_hash = self.policy.hash(password)
        codes = list(role_codes)
        with self.store.transaction():
            roles = [self.store.find_role_by_code(code) for code in codes]
            missing = [code for code, role in zip(codes, roles) if role is None]
            if missing:
                raise NotFoundError(f"Role not found: {missing[0]}")
            try:
                user = self.store.create_user(
                    username, email, password_hash, first_login=first_login
                )
            except ConstraintViolation as exc:
                raise ConflictError("Username or email already exists", detail=exc.detail)
            for role in roles:
                self.store.add_user_role(user.id, role.id)
        self.logger.info("user_created", user_id=user.id, roles=codes)
        return user

    def create_role(self, code: str, name: str, description: Optional[str] = None) -> Role:
        try:
            return self.store.create_role(code, name, description)
        except ConstraintViolation as exc:
            raise ConflictError(f"Role already exists: {code}", detail=exc.detail)

    def create_permission(
        self, code: str, name: str, description: Optional[str] = None
    ) -> Permission:
        try:
            return self.store.create_permission(code, name, description)
        except ConstraintViolation as exc:
            raise ConflictError(f"Permission already exists: {code}", detail=exc.detail)
