"""
PanelAuth Security Module
Authentication, sessions, MFA, password policy and role-based authorization.
"""

from .audit import AuditLogger, AuditStats
from .authentication import AuthContext, AuthenticationService
from .errors import PanelAuthError
from .mfa import MFASetup
from .password_policy import PasswordPolicy
from .rate_limiter import RateLimiter
from .rbac import AuthorizationResolver, PermissionSet, seed_default_data
from .sessions import SessionManager
from .tokens import TokenClaims, TokenPair, TokenService

__all__ = [
    "AuditLogger",
    "AuditStats",
    "AuthContext",
    "AuthenticationService",
    "AuthorizationResolver",
    "MFASetup",
    "PanelAuthError",
    "PasswordPolicy",
    "PermissionSet",
    "RateLimiter",
    "SessionManager",
    "TokenClaims",
    "TokenPair",
    "TokenService",
    "seed_default_data",
]
