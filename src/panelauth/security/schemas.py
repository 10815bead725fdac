"""
PanelAuth Schemas
Pydantic request models and sanitized views returned to callers.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from panelauth.database.models import UserStatus


# =============================================================================
# VIEWS
# =============================================================================

class SafeUser(BaseModel):
    """User projection without password hash, MFA secret, recovery codes or lock bookkeeping"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str
    email: str
    display_name: Optional[str] = None
    avatar: Optional[str] = None
    role: str
    status: str
    mfa_enabled: bool = False
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    last_password_change: Optional[datetime] = None
    permissions: List[str] = Field(default_factory=list)
    preferences: Dict[str, Any] = Field(default_factory=dict)
    email_verified: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SessionInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Optional[str] = None
    location: Optional[str] = None
    last_activity: datetime
    created_at: Optional[datetime] = None
    expires_at: datetime
    is_current: bool = False


class APIKeyInfo(BaseModel):
    """API key metadata; never carries the secret or its hash"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    key_prefix: str
    permissions: List[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    last_used_ip: Optional[str] = None
    is_active: bool = True
    rate_limit: int
    created_at: Optional[datetime] = None


class CreatedAPIKey(APIKeyInfo):
    """Returned exactly once, at creation"""
    key: str


class LoginResult(BaseModel):
    """
    Outcome of a login or refresh.

    When mfa_required is set the caller must resubmit with a code; no
    tokens are issued in that case.
    """
    user: Optional[SafeUser] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_in: int = 0
    session_id: Optional[str] = None
    mfa_required: bool = False


# =============================================================================
# REQUESTS
# =============================================================================

class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=256)
    display_name: Optional[str] = Field(default=None, max_length=200)

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        v = v.strip()
        if not all(ch.isalnum() or ch in "_-." for ch in v):
            raise ValueError("Username may only contain letters, digits, '_', '-' and '.'")
        return v


class UpdateProfileRequest(BaseModel):
    display_name: Optional[str] = Field(default=None, max_length=200)
    email: Optional[EmailStr] = None
    avatar: Optional[str] = Field(default=None, max_length=500)
    preferences: Optional[Dict[str, Any]] = None


class AdminUserUpdate(BaseModel):
    """Fields an administrator may change on another account"""
    model_config = ConfigDict(extra="ignore")

    display_name: Optional[str] = Field(default=None, max_length=200)
    email: Optional[EmailStr] = None
    role: Optional[str] = Field(default=None, max_length=50)
    status: Optional[str] = None
    permissions: Optional[List[str]] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in {s.value for s in UserStatus}:
            raise ValueError(f"Unknown status: {v}")
        return v


class CreateAPIKeyRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    permissions: List[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
    rate_limit: Optional[int] = Field(default=None, ge=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)
