from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=256)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    phone: str | None = None
    organization_id: UUID | None = None
    role: Literal["manager", "sales_rep", "viewer"] = "sales_rep"

    @field_validator("first_name", "last_name")
    @classmethod
    def _strip(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("must not be blank")
        return stripped


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)
    mfa_code: str | None = None


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class PasswordResetRequest(BaseModel):
    email: EmailStr


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=1, max_length=256)


class PasswordStrengthRequest(BaseModel):
    password: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None


class MfaCodeRequest(BaseModel):
    code: str = Field(min_length=6, max_length=10)


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    session_id: UUID
    expires_at: datetime
    refresh_expires_at: datetime


class UserProfile(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    first_name: str
    last_name: str
    phone: str | None
    organization_id: UUID | None
    is_active: bool
    email_verified: bool
    mfa_enabled: bool
    last_login_at: datetime | None
    login_count: int
    roles: list[str] = Field(default_factory=list)
    permissions: list[str] = Field(default_factory=list)


class RegistrationResponse(BaseModel):
    user: UserProfile
    email_verification_required: bool


class LoginResponse(BaseModel):
    mfa_required: bool = False
    user: UserProfile | None = None
    tokens: TokenPair | None = None


class PasswordStrengthRead(BaseModel):
    is_valid: bool
    errors: list[str]
    score: int


class MfaSetupResponse(BaseModel):
    secret: str
    provisioning_uri: str


class MfaVerifyResponse(BaseModel):
    valid: bool


class SessionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    ip_address: str | None
    user_agent: str | None
    device_type: str | None
    created_at: datetime
    expires_at: datetime
    refresh_expires_at: datetime
    last_activity_at: datetime
    is_active: bool
    is_current: bool = False


class SessionActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    session_id: UUID | None
    activity: str
    ip_address: str | None
    details: dict[str, Any] | None
    created_at: datetime


class SessionAnalytics(BaseModel):
    total_sessions: int
    active_sessions: int
    expired_sessions: int
    average_session_duration_minutes: float
    unique_devices: int
    unique_ip_addresses: int


class LogoutAllResponse(BaseModel):
    invalidated_sessions: int
