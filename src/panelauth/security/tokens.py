"""
PanelAuth Token Service
Signed access/refresh tokens bound to a server-side session.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import jwt

from panelauth.core.config import Settings, get_settings
from panelauth.core.logging import LoggerMixin
from panelauth.database.models import User
from .errors import ConfigurationError, InvalidTokenError, TokenExpiredError

# Only ever used outside production, and always with a warning
DEFAULT_JWT_SECRET = "panelauth-development-secret-change-me"

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "Bearer"

    @property
    def expires_in(self) -> int:
        """Access token lifetime in seconds"""
        return int((self.access_expires_at - datetime.now(timezone.utc)).total_seconds())


@dataclass
class TokenClaims:
    """Verified token contents"""
    user_id: str
    session_id: str
    token_type: str
    issued_at: datetime
    expires_at: datetime
    username: Optional[str] = None
    role: Optional[str] = None
    permissions: List[str] = field(default_factory=list)
    jti: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class TokenService(LoggerMixin):
    """HS256 token issuance and verification"""

    def __init__(self, settings: Optional[Settings] = None, secret: Optional[str] = None):
        self.settings = settings or get_settings()
        self.algorithm = self.settings.JWT_ALGORITHM
        self.issuer = self.settings.JWT_ISSUER
        self.refresh_issuer = f"{self.issuer}-refresh"
        self.access_token_expire = timedelta(minutes=self.settings.ACCESS_TOKEN_EXPIRE_MINUTES)
        self.refresh_token_expire = timedelta(days=self.settings.REFRESH_TOKEN_EXPIRE_DAYS)
        self.secret_key = self._resolve_secret(secret or self.settings.JWT_SECRET)

    def _resolve_secret(self, secret: Optional[str]) -> str:
        if secret:
            return secret
        if self.settings.is_production:
            raise ConfigurationError("JWT_SECRET must be configured in production")
        self.logger.warning(
            "JWT_SECRET is not configured; signing tokens with the built-in development "
            "secret. Set JWT_SECRET before exposing this service."
        )
        return DEFAULT_JWT_SECRET

    def create_access_token(
        self,
        user: User,
        session_id: str,
        permissions: Optional[List[str]] = None,
    ) -> Tuple[str, datetime]:
        now = datetime.now(timezone.utc)
        expires_at = now + self.access_token_expire
        claims = {
            "sub": user.id,
            "user_id": user.id,
            "username": user.username,
            "role": user.role,
            "session_id": session_id,
            "permissions": list(permissions if permissions is not None else user.permissions or []),
            "type": ACCESS_TOKEN,
            "iss": self.issuer,
            "iat": now,
            "nbf": now,
            "exp": expires_at,
            "jti": str(uuid.uuid4()),
        }
        return jwt.encode(claims, self.secret_key, algorithm=self.algorithm), expires_at

    def create_refresh_token(
        self,
        user: User,
        session_id: str,
        expires_delta: Optional[timedelta] = None,
    ) -> Tuple[str, datetime]:
        # Minimal claims: a leaked refresh token only names a user and a session
        now = datetime.now(timezone.utc)
        expires_at = now + (expires_delta or self.refresh_token_expire)
        claims = {
            "sub": user.id,
            "user_id": user.id,
            "session_id": session_id,
            "type": REFRESH_TOKEN,
            "iss": self.refresh_issuer,
            "iat": now,
            "nbf": now,
            "exp": expires_at,
            "jti": str(uuid.uuid4()),
        }
        return jwt.encode(claims, self.secret_key, algorithm=self.algorithm), expires_at

    def create_token_pair(
        self,
        user: User,
        session_id: str,
        permissions: Optional[List[str]] = None,
        refresh_expires_delta: Optional[timedelta] = None,
    ) -> TokenPair:
        access_token, access_expires_at = self.create_access_token(user, session_id, permissions)
        refresh_token, refresh_expires_at = self.create_refresh_token(
            user, session_id, refresh_expires_delta
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
        )

    def verify(self, token: str, expected_type: Optional[str] = None) -> TokenClaims:
        """
        Verify signature and expiry together.

        An expired but correctly signed token raises TokenExpiredError so the
        client can refresh silently; anything else raises InvalidTokenError.
        """
        if not token:
            raise InvalidTokenError("Missing token")

        issuer = self.refresh_issuer if expected_type == REFRESH_TOKEN else self.issuer
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                issuer=issuer if expected_type else None,
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            raise TokenExpiredError()
        except jwt.InvalidTokenError as e:
            raise InvalidTokenError(f"Invalid token: {e}")

        token_type = payload.get("type")
        if expected_type and token_type != expected_type:
            raise InvalidTokenError(f"Invalid token type: {token_type}")
        if not payload.get("session_id") or not payload.get("user_id"):
            raise InvalidTokenError("Token is not bound to a session")

        return TokenClaims(
            user_id=payload["user_id"],
            session_id=payload["session_id"],
            token_type=token_type,
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            username=payload.get("username"),
            role=payload.get("role"),
            permissions=list(payload.get("permissions") or []),
            jti=payload.get("jti"),
            raw=payload,
        )

    def verify_access_token(self, token: str) -> TokenClaims:
        return self.verify(token, ACCESS_TOKEN)

    def verify_refresh_token(self, token: str) -> TokenClaims:
        return self.verify(token, REFRESH_TOKEN)
