"""Request/response schemas for authentication endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Login with the institution identifier (or its derived email) + password."""

    identifier: str = Field(..., min_length=1, max_length=320)
    password: str = Field(..., min_length=1, max_length=256)

    @field_validator("identifier")
    @classmethod
    def normalize_identifier(cls, v: str) -> str:
        """Strip surrounding whitespace."""
        return v.strip()


class VerifyMfaRequest(BaseModel):
    """Second login step: the code delivered over Telegram."""

    identifier: str = Field(..., min_length=1, max_length=320)
    code: str = Field(..., min_length=1, max_length=16)

    @field_validator("identifier")
    @classmethod
    def normalize_identifier(cls, v: str) -> str:
        """Strip surrounding whitespace."""
        return v.strip()


class AccountResponse(BaseModel):
    """Public account fields. Never includes the password hash."""

    id: int
    identifier: str
    email: str
    role: str
    email_verified: bool
    telegram_linked: bool
    created_at: datetime | None = None
    last_login: datetime | None = None


class LoginResponse(BaseModel):
    """Either a pending-MFA acknowledgement or an issued session."""

    status: str
    message: str | None = None
    access_token: str | None = None
    token_type: str | None = None
    expires_in: int | None = None
    account: AccountResponse | None = None


# ---------------------------------------------------------------------------
# Password flows
# ---------------------------------------------------------------------------


class ForgotPasswordRequest(BaseModel):
    """Request a temporary password over Telegram."""

    identifier: str = Field(..., min_length=1, max_length=320)


class ResetPasswordRequest(BaseModel):
    """Reset password with a token from a reset link."""

    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., min_length=1, max_length=256)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., min_length=1, max_length=256)


class AdminResetPasswordRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=320)


class MessageResponse(BaseModel):
    message: str
