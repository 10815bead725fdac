"""
PanelAuth Security Errors
Typed outcomes returned to callers of the authentication and authorization services.
"""

from typing import Any, Optional


class PanelAuthError(Exception):
    """Base class for every expected identity/access failure"""

    code = "error"
    default_message = "Request failed"
    # Message safe to show to an end user; falls back to the message itself
    public_message: Optional[str] = None

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    @property
    def public(self) -> str:
        return self.public_message or self.message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.public}


class ConfigurationError(PanelAuthError):
    code = "configuration_error"
    default_message = "Invalid configuration"


# Categories

class NotFoundError(PanelAuthError):
    code = "not_found"
    default_message = "Resource not found"


class ExpiredError(PanelAuthError):
    code = "expired"
    default_message = "Credential has expired"


class InvalidError(PanelAuthError):
    code = "invalid"
    default_message = "Invalid credential"


class StateConflictError(PanelAuthError):
    code = "state_conflict"
    default_message = "Operation conflicts with current state"


class PolicyViolationError(PanelAuthError):
    code = "policy_violation"
    default_message = "Password does not satisfy the password policy"


class PermissionDeniedError(PanelAuthError):
    code = "permission_denied"
    default_message = "Permission denied"


class RateLimitExceeded(PanelAuthError):
    code = "rate_limited"
    default_message = "Too many requests"

    def __init__(self, message: Optional[str] = None, retry_after: float = 0.0, **details: Any):
        super().__init__(message, **details)
        self.retry_after = retry_after


# Not found

class UserNotFoundError(NotFoundError):
    code = "user_not_found"
    default_message = "User not found"
    public_message = "Invalid credentials"


class SessionNotFoundError(NotFoundError):
    code = "session_not_found"
    default_message = "Session not found"


class RoleNotFoundError(NotFoundError):
    code = "role_not_found"
    default_message = "Role not found"


class APIKeyNotFoundError(NotFoundError):
    code = "api_key_not_found"
    default_message = "API key not found"
    public_message = "Invalid API key"


# Expired

class TokenExpiredError(ExpiredError):
    code = "token_expired"
    default_message = "Token has expired"


class SessionExpiredError(ExpiredError):
    code = "session_expired"
    default_message = "Session has expired"


class ResetTokenExpiredError(ExpiredError):
    code = "reset_token_expired"
    default_message = "Password reset token has expired"


class APIKeyExpiredError(ExpiredError):
    code = "api_key_expired"
    default_message = "API key has expired"


class PasswordExpiredError(ExpiredError):
    code = "password_expired"
    default_message = "Password has expired"


# Invalid

class InvalidTokenError(InvalidError):
    code = "invalid_token"
    default_message = "Invalid token"


class InvalidPasswordError(InvalidError):
    code = "invalid_password"
    default_message = "Invalid password"
    public_message = "Invalid credentials"


class InvalidMFACodeError(InvalidError):
    code = "invalid_mfa_code"
    default_message = "Invalid MFA code"


class InvalidInputError(InvalidError):
    code = "invalid_input"
    default_message = "Invalid input"


class InvalidResetTokenError(InvalidError):
    code = "invalid_reset_token"
    default_message = "Invalid or already used password reset token"


# State conflicts

class AccountLockedError(StateConflictError):
    code = "account_locked"
    default_message = "Account is locked"


class AccountInactiveError(StateConflictError):
    code = "account_inactive"
    default_message = "Account is not active"


class IPBlacklistedError(StateConflictError):
    code = "ip_blacklisted"
    default_message = "IP address is blocked"


class MFAAlreadyEnabledError(StateConflictError):
    code = "mfa_already_enabled"
    default_message = "MFA is already enabled"


class MFANotEnabledError(StateConflictError):
    code = "mfa_not_enabled"
    default_message = "MFA is not enabled"


class MFASetupRequiredError(StateConflictError):
    code = "mfa_setup_required"
    default_message = "MFA setup has not been started"


class UserAlreadyExistsError(StateConflictError):
    code = "user_exists"
    default_message = "Username or email already exists"


class RoleAlreadyExistsError(StateConflictError):
    code = "role_exists"
    default_message = "Role already exists"


class SystemRoleModificationError(StateConflictError):
    code = "system_role_modify"
    default_message = "Cannot modify permissions of a system role"


class RoleInUseError(StateConflictError):
    code = "role_in_use"
    default_message = "Role is assigned to one or more users"


# Password policy, one per rule

class PasswordTooShortError(PolicyViolationError):
    code = "password_too_short"
    default_message = "Password is too short"


class PasswordTooLongError(PolicyViolationError):
    code = "password_too_long"
    default_message = "Password is too long"


class PasswordMissingUppercaseError(PolicyViolationError):
    code = "password_no_uppercase"
    default_message = "Password must contain at least one uppercase letter"


class PasswordMissingLowercaseError(PolicyViolationError):
    code = "password_no_lowercase"
    default_message = "Password must contain at least one lowercase letter"


class PasswordMissingDigitError(PolicyViolationError):
    code = "password_no_digit"
    default_message = "Password must contain at least one digit"


class PasswordMissingSpecialError(PolicyViolationError):
    code = "password_no_special"
    default_message = "Password must contain at least one special character"


class PasswordTooCommonError(PolicyViolationError):
    code = "password_common"
    default_message = "Password is too common or follows a simple pattern"


class PasswordContainsUserInfoError(PolicyViolationError):
    code = "password_contains_user_info"
    default_message = "Password must not contain your username or email"


class PasswordRecentlyUsedError(PolicyViolationError):
    code = "password_recently_used"
    default_message = "Password was used recently"
