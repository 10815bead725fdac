"""
PanelAuth Database Package
Declarative models and engine/session helpers for the identity store.
"""

from .models import (
    Base, User, UserSession, APIKey, Role, Permission, LoginAttempt, AuditLog,
    IPBlacklist, PasswordResetRequest, UserStatus, AuditAction, AuditStatus,
    ADMIN_ROLE, DEFAULT_ROLE,
)
from .connection import create_engine_from_settings, create_session_factory, init_db, session_scope

__all__ = [
    "Base",
    "User",
    "UserSession",
    "APIKey",
    "Role",
    "Permission",
    "LoginAttempt",
    "AuditLog",
    "IPBlacklist",
    "PasswordResetRequest",
    "UserStatus",
    "AuditAction",
    "AuditStatus",
    "ADMIN_ROLE",
    "DEFAULT_ROLE",
    "create_engine_from_settings",
    "create_session_factory",
    "init_db",
    "session_scope",
]
