from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Request bodies stay loose: shape and length only. Semantic checks run in the
# service layer so rate limits are charged before input is judged.
MAX_EMAIL_LENGTH = 320
MAX_PASSWORD_LENGTH = 1024

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class SignUpRequest(BaseModel):
    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    username: Optional[str] = Field(default=None, max_length=64)


class SignInRequest(BaseModel):
    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class EmailVerificationRequest(BaseModel):
    code: str = Field(..., max_length=64)


class EmailChangeRequest(BaseModel):
    new_email: str = Field(..., max_length=MAX_EMAIL_LENGTH)


class PasswordForgotRequest(BaseModel):
    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)


class PasswordResetRequest(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class CredentialCreateRequest(BaseModel):
    name: str = Field(..., max_length=128)


class UserResponse(BaseModel):
    id: str
    email: str
    username: Optional[str] = None
    email_verified: bool = False
    created_at: datetime


class AuthResponse(BaseModel):
    user: UserResponse
    session_expires_at: Optional[datetime] = None


class PasswordChangeResponse(BaseModel):
    other_sessions_revoked: int


class CredentialResponse(BaseModel):
    id: str
    organization_id: str
    name: str
    created_at: datetime
    last_used: Optional[datetime] = None
    revoked_at: Optional[datetime] = None


class CredentialCreateResponse(CredentialResponse):
    secret: str = Field(..., description="Shown once; only its hash is stored.")


class CredentialListResponse(BaseModel):
    items: List[CredentialResponse]


class TicketDeleteResponse(BaseModel):
    id: str
    deleted: bool = True
