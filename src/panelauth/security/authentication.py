"""
PanelAuth Authentication Service
Login state machine, password lifecycle, MFA, API keys and account administration.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError
from sqlalchemy import case, delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from panelauth.core.config import Settings, get_settings
from panelauth.core.logging import LoggerMixin
from panelauth.database.models import (
    ADMIN_ROLE, DEFAULT_ROLE, APIKey, AuditAction, AuditStatus, IPBlacklist, PasswordResetRequest,
    User, UserSession, UserStatus, utcnow,
)
from . import mfa
from .audit import AuditLogger
from .crypto import generate_api_key, hash_password, secure_token, verify_password
from .errors import (
    AccountInactiveError,
    AccountLockedError,
    APIKeyExpiredError,
    APIKeyNotFoundError,
    InvalidInputError,
    InvalidMFACodeError,
    InvalidPasswordError,
    InvalidResetTokenError,
    InvalidTokenError,
    IPBlacklistedError,
    MFAAlreadyEnabledError,
    MFANotEnabledError,
    MFASetupRequiredError,
    PanelAuthError,
    PasswordExpiredError,
    RateLimitExceeded,
    ResetTokenExpiredError,
    StateConflictError,
    UserAlreadyExistsError,
    UserNotFoundError,
)
from .password_policy import PasswordPolicy
from .rate_limiter import RateLimiter, rate_limit_key
from .rbac import AuthorizationResolver, PermissionSet
from .schemas import (
    AdminUserUpdate, APIKeyInfo, CreateAPIKeyRequest, CreatedAPIKey, LoginResult,
    RegisterRequest, SafeUser, SessionInfo, UpdateProfileRequest,
)
from .sessions import SessionManager
from .tokens import TokenService

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass
class AuthContext:
    """Authenticated principal attached to a request"""
    user_id: str
    username: str
    role: str
    permissions: List[str] = field(default_factory=list)
    session_id: Optional[str] = None
    auth_method: str = "token"
    api_key_id: Optional[str] = None
    rate_limit: Optional[int] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    def has_permission(self, permission: str) -> bool:
        return self.is_admin or PermissionSet.of(self.permissions).allows(permission)


class AuthenticationService(LoggerMixin):
    """
    Orchestrates every identity operation against the store.

    Each public method is one unit of work: it commits once on success and
    rolls back on any error. Audit records are written afterwards and can
    never undo the primary change.
    """

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        *,
        audit: Optional[AuditLogger] = None,
        tokens: Optional[TokenService] = None,
        policy: Optional[PasswordPolicy] = None,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock
        self.audit = audit or AuditLogger(db, clock=clock)
        self.tokens = tokens or TokenService(self.settings)
        self.policy = policy or PasswordPolicy.from_settings(self.settings)
        self.rate_limiter = rate_limiter
        self.sessions = SessionManager(db, self.tokens, self.settings, clock=clock)
        self.authorization = AuthorizationResolver(db, audit=self.audit)

        self.max_login_attempts = self.settings.MAX_LOGIN_ATTEMPTS
        self.lockout_duration = timedelta(minutes=self.settings.LOCKOUT_DURATION_MINUTES)

    @contextmanager
    def _unit_of_work(self) -> Iterator[None]:
        try:
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def _hash(self, password: str) -> str:
        return hash_password(password, rounds=self.settings.BCRYPT_ROUNDS)

    def _permissions_for(self, user: User) -> List[str]:
        return self.authorization.effective_permissions(user).to_list()

    @staticmethod
    def _parse(model: Type[ModelT], data: Dict[str, Any]) -> ModelT:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            first = e.errors()[0]
            field_name = ".".join(str(part) for part in first["loc"])
            raise InvalidInputError(
                f"{field_name}: {first['msg']}",
                errors=e.errors(include_url=False, include_context=False, include_input=False),
            ) from e

    def _identity_taken(
        self,
        username: Optional[str] = None,
        email: Optional[str] = None,
        exclude_user_id: Optional[str] = None,
    ) -> bool:
        """Whether either value is already some account's username or email"""
        values = [v for v in (username, email) if v]
        query = select(func.count(User.id)).where(
            or_(User.username.in_(values), User.email.in_(values))
        )
        if exclude_user_id is not None:
            query = query.where(User.id != exclude_user_id)
        return bool(self.db.scalar(query))

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.perf_counter() - started) * 1000)

    # =========================================================================
    # Login
    # =========================================================================

    def login(
        self,
        username: str,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        mfa_code: Optional[str] = None,
        remember_me: bool = False,
        request_id: Optional[str] = None,
    ) -> LoginResult:
        """
        Authenticate with username-or-email and password.

        Checks run in a fixed order and stop at the first failure; every
        failure writes a LoginAttempt. When MFA is enabled and no code is
        given the result has mfa_required set and carries no tokens.
        """
        started = time.perf_counter()
        try:
            result = self._login(username, password, ip_address, user_agent, mfa_code, remember_me)
        except PanelAuthError as e:
            self.db.rollback()
            self.audit.record_login_attempt(
                username, False, ip_address, user_agent,
                user_id=e.details.get("user_id"), reason=e.code,
            )
            raise
        except Exception:
            self.db.rollback()
            raise

        if result.mfa_required:
            return result

        self.audit.record_login_attempt(
            username, True, ip_address, user_agent, user_id=result.user.id
        )
        self.audit.record(
            AuditAction.LOGIN, "auth",
            user_id=result.user.id, username=result.user.username,
            resource_id=result.session_id, ip_address=ip_address, user_agent=user_agent,
            details={"remember_me": remember_me},
            duration_ms=self._elapsed_ms(started), request_id=request_id,
        )
        self.logger.info(f"User {result.user.username} logged in from {ip_address}")
        return result

    def _login(
        self,
        identifier: str,
        password: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        mfa_code: Optional[str],
        remember_me: bool,
    ) -> LoginResult:
        if self.rate_limiter is not None:
            key = rate_limit_key(ip_address or identifier)
            if not self.rate_limiter.allow(key):
                raise RateLimitExceeded(retry_after=self.rate_limiter.retry_after(key))

        if ip_address and self.is_ip_blacklisted(ip_address):
            self.logger.warning(f"Login from blacklisted IP {ip_address} rejected")
            raise IPBlacklistedError()

        # An email match wins over a username match
        user = self.db.scalar(
            select(User)
            .where(or_(User.username == identifier, User.email == identifier))
            .order_by(case((User.email == identifier, 0), else_=1))
            .limit(1)
            .with_for_update()
        )
        if user is None:
            raise UserNotFoundError()

        now = self.clock()
        if user.is_locked(now):
            raise AccountLockedError(user_id=user.id)
        # A locked status whose lockout window has passed is cleared by this login
        if user.status not in (UserStatus.ACTIVE.value, UserStatus.LOCKED.value):
            raise AccountInactiveError(user_id=user.id)

        if not verify_password(password, user.password_hash):
            self._register_failed_password(user, now, ip_address, user_agent)
            raise InvalidPasswordError(user_id=user.id)

        if user.password_expires_at is not None and now > user.password_expires_at:
            raise PasswordExpiredError(user_id=user.id)

        recovery_code_used = False
        if user.mfa_enabled:
            if not mfa_code:
                self.db.rollback()
                return LoginResult(mfa_required=True)
            if not mfa.validate_code(user.mfa_secret or "", mfa_code, now):
                remaining, matched = mfa.consume_recovery_code(mfa_code, user.mfa_recovery_codes or [])
                if not matched:
                    raise InvalidMFACodeError(user_id=user.id)
                user.mfa_recovery_codes = remaining
                recovery_code_used = True

        if user.status == UserStatus.LOCKED.value:
            user.status = UserStatus.ACTIVE.value
            self.logger.info(f"Expired lockout of {user.username} cleared on login")
        user.failed_login_attempts = 0
        user.locked_until = None

        session, pair = self.sessions.create(
            user, ip_address, user_agent,
            remember_me=remember_me, permissions=self._permissions_for(user),
        )
        user.last_login_at = now
        user.last_login_ip = ip_address
        self.db.commit()

        if recovery_code_used:
            self.logger.warning(
                f"User {user.username} logged in with a recovery code, "
                f"{len(user.mfa_recovery_codes)} remaining"
            )

        return LoginResult(
            user=SafeUser.model_validate(user),
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=self.settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
            session_id=session.id,
        )

    def _register_failed_password(
        self,
        user: User,
        now: datetime,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        """
        Count a wrong password, locking the account at the threshold.

        The lock only becomes visible on the next attempt; this attempt still
        reports an invalid password.
        """
        user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
        locked = user.failed_login_attempts >= self.max_login_attempts
        if locked:
            user.locked_until = now + self.lockout_duration
            user.status = UserStatus.LOCKED.value
        self.db.commit()

        if locked:
            self.log_with_context(
                logging.WARNING,
                f"Account {user.username} locked after {user.failed_login_attempts} failed attempts",
                {
                    "user_id": user.id,
                    "failed_attempts": user.failed_login_attempts,
                    "locked_until": user.locked_until.isoformat(),
                    "ip_address": ip_address,
                },
            )
            self.audit.record(
                AuditAction.ACCOUNT_LOCKED, "user",
                user_id=user.id, username=user.username, resource_id=user.id,
                ip_address=ip_address, user_agent=user_agent, status=AuditStatus.WARNING,
                details={"failed_attempts": user.failed_login_attempts},
            )

    # =========================================================================
    # Token and session validation
    # =========================================================================

    def validate_token(self, token: str) -> AuthContext:
        """Verify an access token and the session it is bound to"""
        claims = self.tokens.verify_access_token(token)
        session = self.sessions.validate(claims.session_id)

        if not session.token or session.token != token:
            raise InvalidTokenError("Token has been superseded")

        user = self.db.get(User, claims.user_id)
        if user is None:
            raise UserNotFoundError()
        if not user.is_active():
            raise AccountInactiveError(user_id=user.id)

        return AuthContext(
            user_id=user.id,
            username=user.username,
            role=claims.role or user.role,
            permissions=claims.permissions,
            session_id=session.id,
        )

    def validate_session(self, session_id: str) -> UserSession:
        return self.sessions.validate(session_id)

    def refresh_token(self, refresh_token: str) -> LoginResult:
        session, pair = self.sessions.refresh(refresh_token, permissions_for=self._permissions_for)
        user = self.db.get(User, session.user_id)

        self.audit.record(
            AuditAction.TOKEN_REFRESH, "auth",
            user_id=user.id, username=user.username, resource_id=session.id,
        )
        return LoginResult(
            user=SafeUser.model_validate(user),
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=self.settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
            session_id=session.id,
        )

    def logout(self, access_token: str, user_id: str) -> bool:
        revoked = self.sessions.revoke_by_token(access_token, user_id)
        if revoked:
            self.audit.record(AuditAction.LOGOUT, "auth", user_id=user_id)
        return revoked

    def logout_all(self, user_id: str, except_session_id: Optional[str] = None) -> int:
        count = self.sessions.revoke_all(user_id, except_session_id)
        self.audit.record(
            AuditAction.SESSION_REVOKE, "session",
            user_id=user_id, details={"revoked": count, "kept": except_session_id},
        )
        return count

    def revoke_session(self, user_id: str, session_id: str) -> None:
        self.sessions.revoke(session_id, user_id=user_id)
        self.audit.record(AuditAction.SESSION_REVOKE, "session", user_id=user_id, resource_id=session_id)

    def get_active_sessions(self, user_id: str, current_session_id: Optional[str] = None) -> List[SessionInfo]:
        return self.sessions.list_active(user_id, current_session_id)

    # =========================================================================
    # Users
    # =========================================================================

    def get_user(self, user_id: str, for_update: bool = False) -> User:
        if for_update:
            user = self.db.scalar(select(User).where(User.id == user_id).with_for_update())
        else:
            user = self.db.get(User, user_id)
        if user is None:
            raise UserNotFoundError()
        return user

    def get_user_by_username(self, username: str) -> User:
        user = self.db.scalar(select(User).where(User.username == username))
        if user is None:
            raise UserNotFoundError()
        return user

    def register(
        self,
        username: str,
        email: str,
        password: str,
        display_name: Optional[str] = None,
        role: str = DEFAULT_ROLE,
        actor_id: Optional[str] = None,
    ) -> User:
        started = time.perf_counter()
        request = self._parse(RegisterRequest, {
            "username": username, "email": email,
            "password": password, "display_name": display_name,
        })
        username, email = request.username, request.email
        if self._identity_taken(username, email):
            raise UserAlreadyExistsError()

        self.policy.validate(password, username, email)

        now = self.clock()
        password_hash = self._hash(password)
        user = User(
            username=username,
            email=email,
            password_hash=password_hash,
            display_name=request.display_name or username,
            role=role,
            status=UserStatus.ACTIVE.value,
            last_password_change=now,
            password_expires_at=self.policy.password_expiry(now),
            password_history=[password_hash],
            permissions=[],
            preferences={},
            mfa_recovery_codes=[],
            created_at=now,
            updated_at=now,
        )
        try:
            with self._unit_of_work():
                self.db.add(user)
        except IntegrityError:
            raise UserAlreadyExistsError()

        self.logger.info(f"User registered: {username}")
        self.audit.record(
            AuditAction.USER_CREATE, "user",
            user_id=actor_id or user.id, username=username, resource_id=user.id,
            new_value={"username": username, "email": email, "role": role},
            duration_ms=self._elapsed_ms(started),
        )
        return user

    def update_profile(
        self,
        user_id: str,
        display_name: Optional[str] = None,
        email: Optional[str] = None,
        avatar: Optional[str] = None,
        preferences: Optional[Dict[str, Any]] = None,
    ) -> User:
        request = self._parse(UpdateProfileRequest, {
            "display_name": display_name, "email": email,
            "avatar": avatar, "preferences": preferences,
        })
        display_name, email = request.display_name, request.email
        avatar, preferences = request.avatar, request.preferences

        with self._unit_of_work():
            user = self.get_user(user_id, for_update=True)
            old_value: Dict[str, Any] = {}
            new_value: Dict[str, Any] = {}

            if email is not None and email != user.email:
                if self._identity_taken(email=email, exclude_user_id=user.id):
                    raise UserAlreadyExistsError("Email already in use")
                old_value["email"], new_value["email"] = user.email, email
                user.email = email
                user.email_verified = False
            if display_name is not None:
                old_value["display_name"], new_value["display_name"] = user.display_name, display_name
                user.display_name = display_name
            if avatar is not None:
                user.avatar = avatar
                new_value["avatar"] = avatar
            if preferences is not None:
                user.preferences = dict(preferences)
                new_value["preferences"] = preferences

        self.audit.record(
            AuditAction.PROFILE_UPDATE, "user",
            user_id=user.id, username=user.username, resource_id=user.id,
            old_value=old_value or None, new_value=new_value or None,
        )
        return user

    # =========================================================================
    # Password lifecycle
    # =========================================================================

    def change_password(
        self,
        user_id: str,
        old_password: str,
        new_password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        started = time.perf_counter()
        with self._unit_of_work():
            user = self.get_user(user_id, for_update=True)
            if not verify_password(old_password, user.password_hash):
                raise InvalidPasswordError("Current password is incorrect", user_id=user.id)

            self.policy.validate(new_password, user.username, user.email, user.password_history or [])
            self._set_password(user, new_password)

        self.logger.info(f"Password changed for {user.username}")
        self.audit.record(
            AuditAction.PASSWORD_CHANGE, "user",
            user_id=user.id, username=user.username, resource_id=user.id,
            ip_address=ip_address, user_agent=user_agent,
            duration_ms=self._elapsed_ms(started),
        )

    def _set_password(self, user: User, new_password: str) -> None:
        now = self.clock()
        password_hash = self._hash(new_password)
        user.password_hash = password_hash
        user.password_history = self.policy.push_history(user.password_history or [], password_hash)
        user.last_password_change = now
        user.password_expires_at = self.policy.password_expiry(now)

    def _clear_lock(self, user: User) -> None:
        user.failed_login_attempts = 0
        user.locked_until = None
        if user.status == UserStatus.LOCKED.value:
            user.status = UserStatus.ACTIVE.value

    def admin_reset_password(self, user_id: str, new_password: str, actor_id: Optional[str] = None) -> None:
        """Set a password on behalf of a user; also clears any lockout"""
        with self._unit_of_work():
            user = self.get_user(user_id, for_update=True)
            self.policy.validate(new_password, user.username, user.email)
            self._set_password(user, new_password)
            self._clear_lock(user)

        self.audit.record(
            AuditAction.PASSWORD_RESET, "user",
            user_id=actor_id, resource_id=user.id, details={"by_admin": True},
        )

    def request_password_reset(self, email: str, ip_address: Optional[str] = None) -> Optional[str]:
        """
        Start a password reset.

        Returns the one-time token for delivery, or None when no account has
        that email. Callers must answer identically in both cases.
        """
        user = self.db.scalar(select(User).where(User.email == email))
        if user is None:
            self.logger.info("Password reset requested for unknown email")
            return None

        now = self.clock()
        token = secure_token(32)
        with self._unit_of_work():
            self.db.execute(
                delete(PasswordResetRequest).where(
                    PasswordResetRequest.user_id == user.id,
                    PasswordResetRequest.used_at.is_(None),
                )
            )
            self.db.add(PasswordResetRequest(
                user_id=user.id,
                token=token,
                ip_address=ip_address,
                expires_at=now + timedelta(minutes=self.settings.PASSWORD_RESET_EXPIRE_MINUTES),
                created_at=now,
                updated_at=now,
            ))

        self.audit.record(
            AuditAction.PASSWORD_RESET_REQUEST, "user",
            user_id=user.id, username=user.username, resource_id=user.id, ip_address=ip_address,
        )
        return token

    def reset_password(self, token: str, new_password: str, ip_address: Optional[str] = None) -> None:
        """Complete a reset: set the password, clear any lock and end every session"""
        started = time.perf_counter()
        with self._unit_of_work():
            request = self.db.scalar(
                select(PasswordResetRequest).where(PasswordResetRequest.token == token).with_for_update()
            )
            if request is None or request.used_at is not None:
                raise InvalidResetTokenError()

            now = self.clock()
            if now > request.expires_at:
                raise ResetTokenExpiredError()

            user = self.get_user(request.user_id, for_update=True)
            self.policy.validate(new_password, user.username, user.email, user.password_history or [])
            self._set_password(user, new_password)
            self._clear_lock(user)
            request.used_at = now
            revoked = self.sessions.revoke_all(user.id, commit=False)

        self.logger.info(f"Password reset completed for {user.username}, {revoked} sessions revoked")
        self.audit.record(
            AuditAction.PASSWORD_RESET, "user",
            user_id=user.id, username=user.username, resource_id=user.id,
            ip_address=ip_address, details={"sessions_revoked": revoked},
            duration_ms=self._elapsed_ms(started),
        )

    # =========================================================================
    # MFA
    # =========================================================================

    def setup_mfa(self, user_id: str, with_qr_code: bool = True) -> mfa.MFASetup:
        """Generate and store a pending TOTP secret; MFA stays off until enable_mfa"""
        with self._unit_of_work():
            user = self.get_user(user_id, for_update=True)
            if user.mfa_enabled:
                raise MFAAlreadyEnabledError()

            setup = mfa.generate_mfa_setup(
                self.settings.MFA_ISSUER, user.username,
                recovery_code_count=0, with_qr_code=with_qr_code,
            )
            user.mfa_secret = setup.secret
        return setup

    def enable_mfa(self, user_id: str, code: str) -> List[str]:
        """Confirm the pending secret with a code; returns fresh recovery codes"""
        with self._unit_of_work():
            user = self.get_user(user_id, for_update=True)
            if user.mfa_enabled:
                raise MFAAlreadyEnabledError()
            if not user.mfa_secret:
                raise MFASetupRequiredError()
            if not mfa.validate_code(user.mfa_secret, code, self.clock()):
                raise InvalidMFACodeError()

            recovery_codes = mfa.generate_recovery_codes(self.settings.RECOVERY_CODE_COUNT)
            user.mfa_enabled = True
            user.mfa_recovery_codes = recovery_codes

        self.logger.info(f"MFA enabled for {user.username}")
        self.audit.record(AuditAction.MFA_ENABLE, "user", user_id=user.id, username=user.username, resource_id=user.id)
        return recovery_codes

    def disable_mfa(self, user_id: str, password: str) -> None:
        with self._unit_of_work():
            user = self.get_user(user_id, for_update=True)
            if not user.mfa_enabled:
                raise MFANotEnabledError()
            if not verify_password(password, user.password_hash):
                raise InvalidPasswordError(user_id=user.id)
            self._clear_mfa(user)

        self.logger.info(f"MFA disabled for {user.username}")
        self.audit.record(AuditAction.MFA_DISABLE, "user", user_id=user.id, username=user.username, resource_id=user.id)

    def regenerate_recovery_codes(self, user_id: str, password: str) -> List[str]:
        with self._unit_of_work():
            user = self.get_user(user_id, for_update=True)
            if not user.mfa_enabled:
                raise MFANotEnabledError()
            if not verify_password(password, user.password_hash):
                raise InvalidPasswordError(user_id=user.id)
            codes = mfa.generate_recovery_codes(self.settings.RECOVERY_CODE_COUNT)
            user.mfa_recovery_codes = codes

        self.audit.record(
            AuditAction.RECOVERY_CODES_REGENERATE, "user",
            user_id=user.id, username=user.username, resource_id=user.id,
        )
        return codes

    @staticmethod
    def _clear_mfa(user: User) -> None:
        user.mfa_enabled = False
        user.mfa_secret = None
        user.mfa_recovery_codes = []

    def admin_enable_mfa(self, user_id: str, actor_id: Optional[str] = None) -> mfa.MFASetup:
        """Enroll a user directly; the returned setup must be handed to them"""
        with self._unit_of_work():
            user = self.get_user(user_id, for_update=True)
            if user.mfa_enabled:
                raise MFAAlreadyEnabledError()
            setup = mfa.generate_mfa_setup(
                self.settings.MFA_ISSUER, user.username,
                recovery_code_count=self.settings.RECOVERY_CODE_COUNT,
            )
            user.mfa_secret = setup.secret
            user.mfa_recovery_codes = list(setup.recovery_codes)
            user.mfa_enabled = True

        self.audit.record(
            AuditAction.MFA_ENABLE, "user",
            user_id=actor_id, resource_id=user.id, details={"by_admin": True},
        )
        return setup

    def admin_disable_mfa(self, user_id: str, actor_id: Optional[str] = None) -> None:
        with self._unit_of_work():
            user = self.get_user(user_id, for_update=True)
            if not user.mfa_enabled:
                raise MFANotEnabledError()
            self._clear_mfa(user)

        self.logger.warning(f"MFA disabled for {user.username} by administrator {actor_id}")
        self.audit.record(
            AuditAction.MFA_DISABLE, "user",
            user_id=actor_id, resource_id=user.id, details={"by_admin": True},
        )

    def admin_reset_mfa(self, user_id: str, actor_id: Optional[str] = None) -> mfa.MFASetup:
        """Replace the secret with a new pending one; the user must re-enroll"""
        with self._unit_of_work():
            user = self.get_user(user_id, for_update=True)
            self._clear_mfa(user)
            setup = mfa.generate_mfa_setup(self.settings.MFA_ISSUER, user.username, recovery_code_count=0)
            user.mfa_secret = setup.secret

        self.audit.record(
            AuditAction.MFA_RESET, "user",
            user_id=actor_id, resource_id=user.id, details={"by_admin": True},
        )
        return setup

    # =========================================================================
    # API keys
    # =========================================================================

    def create_api_key(
        self,
        user_id: str,
        name: str,
        permissions: Optional[List[str]] = None,
        expires_at: Optional[datetime] = None,
        rate_limit: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreatedAPIKey:
        """Issue an API key; the plaintext secret is only ever returned here"""
        request = self._parse(CreateAPIKeyRequest, {
            "name": name, "permissions": permissions or [], "expires_at": expires_at,
            "rate_limit": rate_limit, "metadata": metadata or {},
        })
        user = self.get_user(user_id)
        key, prefix = generate_api_key(self.settings.API_KEY_PREFIX_LENGTH)

        api_key = APIKey(
            user_id=user.id,
            name=request.name,
            key_hash=self._hash(key),
            key_prefix=prefix,
            permissions=PermissionSet.of(request.permissions).to_list(),
            expires_at=request.expires_at,
            is_active=True,
            rate_limit=request.rate_limit or self.settings.API_KEY_DEFAULT_RATE_LIMIT,
            metadata_=dict(request.metadata),
        )
        with self._unit_of_work():
            self.db.add(api_key)

        self.audit.record(
            AuditAction.API_KEY_CREATE, "api_key",
            user_id=user.id, username=user.username, resource_id=api_key.id,
            details={"name": request.name, "prefix": prefix},
        )
        return CreatedAPIKey(**APIKeyInfo.model_validate(api_key).model_dump(), key=key)

    def validate_api_key(self, key: str, ip_address: Optional[str] = None) -> AuthContext:
        prefix_length = self.settings.API_KEY_PREFIX_LENGTH
        if not key or len(key) < prefix_length:
            raise APIKeyNotFoundError()

        candidates = self.db.scalars(
            select(APIKey).where(APIKey.key_prefix == key[:prefix_length], APIKey.is_active.is_(True))
        ).all()
        api_key = next((c for c in candidates if verify_password(key, c.key_hash)), None)
        if api_key is None:
            raise APIKeyNotFoundError()

        now = self.clock()
        if api_key.is_expired(now):
            raise APIKeyExpiredError()

        user = self.get_user(api_key.user_id)
        if not user.is_active():
            raise AccountInactiveError(user_id=user.id)

        with self._unit_of_work():
            api_key.last_used_at = now
            api_key.last_used_ip = ip_address

        # A key never grants more than its owner currently holds
        owner_permissions = self.authorization.effective_permissions(user)
        key_permissions = api_key.permissions or []
        if key_permissions:
            granted = [p for p in key_permissions if owner_permissions.allows(p)]
        else:
            granted = owner_permissions.to_list()

        return AuthContext(
            user_id=user.id,
            username=user.username,
            role=user.role,
            permissions=granted,
            auth_method="api_key",
            api_key_id=api_key.id,
            rate_limit=api_key.rate_limit,
        )

    def list_api_keys(self, user_id: str) -> List[APIKeyInfo]:
        keys = self.db.scalars(
            select(APIKey).where(APIKey.user_id == user_id).order_by(APIKey.created_at.desc())
        )
        return [APIKeyInfo.model_validate(k) for k in keys]

    def delete_api_key(self, user_id: str, key_id: str) -> None:
        with self._unit_of_work():
            api_key = self.db.scalar(select(APIKey).where(APIKey.id == key_id, APIKey.user_id == user_id))
            if api_key is None:
                raise APIKeyNotFoundError()
            self.db.delete(api_key)

        self.audit.record(AuditAction.API_KEY_DELETE, "api_key", user_id=user_id, resource_id=key_id)

    # =========================================================================
    # Administration
    # =========================================================================

    def list_users(
        self,
        page: int = 1,
        page_size: int = 20,
        search: Optional[str] = None,
        role: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Tuple[List[User], int]:
        query = select(User)
        if search:
            escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            pattern = f"%{escaped}%"
            query = query.where(or_(
                User.username.ilike(pattern, escape="\\"),
                User.email.ilike(pattern, escape="\\"),
                User.display_name.ilike(pattern, escape="\\"),
            ))
        if role:
            query = query.where(User.role == role)
        if status:
            query = query.where(User.status == status)

        total = self.db.scalar(select(func.count()).select_from(query.subquery())) or 0
        page = max(page, 1)
        page_size = max(1, min(page_size, 100))
        users = self.db.scalars(
            query.order_by(User.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
        ).all()
        return list(users), total

    def admin_create_user(
        self,
        actor_id: Optional[str],
        username: str,
        email: str,
        password: str,
        role: str = DEFAULT_ROLE,
        display_name: Optional[str] = None,
    ) -> User:
        self.authorization.get_role_by_name(role)
        return self.register(username, email, password, display_name=display_name, role=role, actor_id=actor_id)

    def admin_update_user(
        self,
        actor_id: Optional[str],
        user_id: str,
        updates: Union[AdminUserUpdate, Dict[str, Any]],
    ) -> User:
        """Apply whitelisted changes (display name, email, role, status, permissions)"""
        started = time.perf_counter()
        if not isinstance(updates, AdminUserUpdate):
            updates = self._parse(AdminUserUpdate, updates)
        changes = updates.model_dump(exclude_unset=True, exclude_none=True)

        if "role" in changes:
            self.authorization.get_role_by_name(changes["role"])

        revoked = 0
        with self._unit_of_work():
            user = self.get_user(user_id, for_update=True)

            if "email" in changes and changes["email"] != user.email:
                if self._identity_taken(email=changes["email"], exclude_user_id=user.id):
                    raise UserAlreadyExistsError("Email already in use")
                user.email_verified = False

            old_value = {key: getattr(user, key) for key in changes}
            for key, value in changes.items():
                setattr(user, key, list(value) if isinstance(value, list) else value)

            if changes.get("status") == UserStatus.ACTIVE.value:
                user.failed_login_attempts = 0
                user.locked_until = None
            elif "status" in changes:
                if changes["status"] == UserStatus.LOCKED.value:
                    user.locked_until = None
                revoked = self.sessions.revoke_all(user.id, commit=False)

        self.audit.record(
            AuditAction.USER_UPDATE, "user",
            user_id=actor_id, resource_id=user.id,
            old_value=old_value, new_value=changes,
            details={"sessions_revoked": revoked} if revoked else None,
            duration_ms=self._elapsed_ms(started),
        )
        return user

    def admin_delete_user(self, actor_id: Optional[str], user_id: str) -> None:
        """Hard delete, cascading to the user's sessions, API keys and reset requests"""
        if actor_id is not None and actor_id == user_id:
            raise StateConflictError("Administrators cannot delete their own account")

        with self._unit_of_work():
            user = self.get_user(user_id, for_update=True)
            username = user.username
            self.db.execute(delete(PasswordResetRequest).where(PasswordResetRequest.user_id == user.id))
            self.db.delete(user)

        self.logger.warning(f"User {username} deleted by {actor_id}")
        self.audit.record(
            AuditAction.USER_DELETE, "user",
            user_id=actor_id, resource_id=user_id, details={"username": username},
        )

    def unlock_user(self, user_id: str, actor_id: Optional[str] = None) -> User:
        with self._unit_of_work():
            user = self.get_user(user_id, for_update=True)
            self._clear_lock(user)

        self.audit.record(AuditAction.ACCOUNT_UNLOCKED, "user", user_id=actor_id, resource_id=user.id)
        return user

    # =========================================================================
    # IP blacklist
    # =========================================================================

    def is_ip_blacklisted(self, ip_address: str) -> bool:
        entry = self.db.scalar(select(IPBlacklist).where(IPBlacklist.ip_address == ip_address))
        return entry is not None and entry.is_blocking(self.clock())

    def block_ip(
        self,
        ip_address: str,
        reason: Optional[str] = None,
        created_by: Optional[str] = None,
        duration: Optional[timedelta] = None,
    ) -> IPBlacklist:
        expires_at = self.clock() + duration if duration else None
        with self._unit_of_work():
            entry = self.db.scalar(select(IPBlacklist).where(IPBlacklist.ip_address == ip_address))
            if entry is None:
                entry = IPBlacklist(ip_address=ip_address)
                self.db.add(entry)
            entry.reason = reason
            entry.expires_at = expires_at
            entry.created_by = created_by

        self.logger.warning(f"IP {ip_address} blocked: {reason or 'no reason given'}")
        self.audit.record(
            AuditAction.IP_BLOCK, "ip",
            user_id=created_by, resource_id=ip_address,
            details={"reason": reason, "expires_at": expires_at.isoformat() if expires_at else None},
        )
        return entry

    def unblock_ip(self, ip_address: str, actor_id: Optional[str] = None) -> bool:
        with self._unit_of_work():
            result = self.db.execute(delete(IPBlacklist).where(IPBlacklist.ip_address == ip_address))

        if result.rowcount:
            self.audit.record(AuditAction.IP_UNBLOCK, "ip", user_id=actor_id, resource_id=ip_address)
        return result.rowcount > 0
