"""
PanelAuth Session Manager
Server-side sessions: the single source of truth for token revocation.
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from panelauth.core.config import Settings, get_settings
from panelauth.core.logging import LoggerMixin
from panelauth.database.models import User, UserSession, utcnow
from .crypto import constant_time_equals
from .errors import (
    AccountInactiveError,
    InvalidTokenError,
    SessionExpiredError,
    SessionNotFoundError,
    UserNotFoundError,
)
from .schemas import SessionInfo
from .tokens import TokenPair, TokenService


def parse_device_info(user_agent: Optional[str]) -> str:
    """Coarse "<OS> / <Browser>" label derived from a user agent"""
    ua = (user_agent or "").lower()

    if "android" in ua:
        os_name = "Android"
    elif "iphone" in ua or "ipad" in ua:
        os_name = "iOS"
    elif "windows" in ua:
        os_name = "Windows"
    elif "mac" in ua:
        os_name = "macOS"
    elif "linux" in ua:
        os_name = "Linux"
    else:
        os_name = "Unknown"

    if "edg" in ua:
        browser = "Edge"
    elif "chrome" in ua or "crios" in ua:
        browser = "Chrome"
    elif "firefox" in ua or "fxios" in ua:
        browser = "Firefox"
    elif "safari" in ua:
        browser = "Safari"
    else:
        browser = "Unknown"

    return f"{os_name} / {browser}"


class SessionManager(LoggerMixin):
    """Creates, validates, rotates and revokes login sessions"""

    def __init__(
        self,
        db: Session,
        tokens: Optional[TokenService] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.tokens = tokens or TokenService(self.settings)
        self.clock = clock
        self.activity_interval = timedelta(seconds=self.settings.SESSION_ACTIVITY_INTERVAL_SECONDS)
        self.refresh_lifetime = timedelta(days=self.settings.REFRESH_TOKEN_EXPIRE_DAYS)

    def create(
        self,
        user: User,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        remember_me: bool = False,
        permissions: Optional[List[str]] = None,
    ) -> Tuple[UserSession, TokenPair]:
        """
        Open a session and mint its token pair.

        The row is flushed first so the tokens can carry its id. The caller
        owns the transaction and commits it.
        """
        now = self.clock()
        lifetime = self.refresh_lifetime
        if remember_me:
            lifetime *= self.settings.REMEMBER_ME_MULTIPLIER

        session = UserSession(
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            device_info=parse_device_info(user_agent),
            expires_at=now + lifetime,
            last_activity=now,
            is_active=True,
        )
        self.db.add(session)
        self.db.flush()

        pair = self.tokens.create_token_pair(
            user, session.id, permissions=permissions, refresh_expires_delta=lifetime
        )
        session.token = pair.access_token
        session.refresh_token = pair.refresh_token
        self.db.flush()

        self.logger.debug(f"Session {session.id} created for {user.username}")
        return session, pair

    def get_active(self, session_id: str) -> UserSession:
        session = self.db.scalar(
            select(UserSession).where(UserSession.id == session_id, UserSession.is_active.is_(True))
        )
        if session is None:
            raise SessionNotFoundError()
        return session

    def validate(self, session_id: str) -> UserSession:
        """
        Return the active session, deactivating it if it has expired.

        last_activity is only written when the previous write is older than
        the activity interval; concurrent callers may both write, which is harmless.
        """
        session = self.get_active(session_id)
        now = self.clock()

        if session.is_expired(now):
            session.is_active = False
            self.db.commit()
            self.logger.info(f"Session {session_id} expired")
            raise SessionExpiredError()

        if now - session.last_activity > self.activity_interval:
            session.last_activity = now
            self.db.commit()

        return session

    def refresh(
        self,
        refresh_token: str,
        permissions_for: Optional[Callable[[User], List[str]]] = None,
    ) -> Tuple[UserSession, TokenPair]:
        """
        Rotate both tokens of a session.

        The stored refresh token is replaced, so the presented one can never
        be used again.
        """
        claims = self.tokens.verify_refresh_token(refresh_token)

        session = self.db.scalar(
            select(UserSession)
            .where(UserSession.id == claims.session_id, UserSession.is_active.is_(True))
            .with_for_update()
        )
        if session is None:
            raise SessionNotFoundError()
        if not session.refresh_token or not constant_time_equals(session.refresh_token, refresh_token):
            self.db.rollback()
            raise InvalidTokenError("Refresh token has been rotated or revoked")

        now = self.clock()
        if session.is_expired(now):
            session.is_active = False
            self.db.commit()
            raise SessionExpiredError()

        user = self.db.get(User, session.user_id)
        if user is None:
            self.db.rollback()
            raise UserNotFoundError()
        if not user.is_active():
            self.db.rollback()
            raise AccountInactiveError(user_id=user.id)

        permissions = permissions_for(user) if permissions_for else None
        pair = self.tokens.create_token_pair(
            user, session.id, permissions=permissions, refresh_expires_delta=self.refresh_lifetime
        )
        session.token = pair.access_token
        session.refresh_token = pair.refresh_token
        session.last_activity = now
        session.expires_at = now + self.refresh_lifetime
        self.db.commit()

        self.logger.debug(f"Session {session.id} tokens rotated")
        return session, pair

    def revoke(self, session_id: str, user_id: Optional[str] = None) -> None:
        stmt = update(UserSession).where(
            UserSession.id == session_id, UserSession.is_active.is_(True)
        )
        if user_id is not None:
            stmt = stmt.where(UserSession.user_id == user_id)

        result = self.db.execute(stmt.values(is_active=False))
        if result.rowcount == 0:
            self.db.rollback()
            raise SessionNotFoundError()
        self.db.commit()
        self.logger.info(f"Session {session_id} revoked")

    def revoke_all(self, user_id: str, except_session_id: Optional[str] = None, commit: bool = True) -> int:
        stmt = update(UserSession).where(
            UserSession.user_id == user_id, UserSession.is_active.is_(True)
        )
        if except_session_id:
            stmt = stmt.where(UserSession.id != except_session_id)

        result = self.db.execute(stmt.values(is_active=False))
        if commit:
            self.db.commit()
        if result.rowcount:
            self.logger.info(f"Revoked {result.rowcount} sessions of user {user_id}")
        return result.rowcount

    def revoke_by_token(self, access_token: str, user_id: str) -> bool:
        result = self.db.execute(
            update(UserSession)
            .where(
                UserSession.token == access_token,
                UserSession.user_id == user_id,
                UserSession.is_active.is_(True),
            )
            .values(is_active=False)
        )
        self.db.commit()
        return result.rowcount > 0

    def list_active(self, user_id: str, current_session_id: Optional[str] = None) -> List[SessionInfo]:
        now = self.clock()
        sessions = self.db.scalars(
            select(UserSession)
            .where(
                UserSession.user_id == user_id,
                UserSession.is_active.is_(True),
                UserSession.expires_at > now,
            )
            .order_by(UserSession.last_activity.desc())
        )
        result = []
        for session in sessions:
            info = SessionInfo.model_validate(session)
            info.is_current = session.id == current_session_id
            result.append(info)
        return result
