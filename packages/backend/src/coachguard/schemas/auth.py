"""Pydantic schemas for sign-up, sign-in, refresh and the session endpoint.

Learn: Input validation happens here, at the boundary: a malformed body
is rejected with VALIDATION_ERROR before any session resolution or
provider call. Emails are lower-cased so "Ada@X.io" and "ada@x.io" are
one identity.
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from coachguard.config import settings


class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=settings.password_min_length)
    first_name: str = Field(..., min_length=1, max_length=settings.name_max_length)
    last_name: str = Field(..., min_length=1, max_length=settings.name_max_length)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("first_name", "last_name", mode="before")
    @classmethod
    def strip_names(cls, value):
        return value.strip() if isinstance(value, str) else value


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=settings.password_min_length)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class RefreshRequest(BaseModel):
    """Body is optional: the cookie or X-Refresh-Token header also works."""

    refresh_token: Optional[str] = None


class UserSummary(BaseModel):
    id: uuid.UUID
    email: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    role: str


class AuthResponse(BaseModel):
    user: Optional[UserSummary] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_at: Optional[datetime] = None
    requires_email_verification: bool = False


class SessionRead(BaseModel):
    identity_id: uuid.UUID
    email: Optional[str] = None
    role: str
    issued_at: datetime
    expires_at: datetime


class SessionEnvelope(BaseModel):
    """GET /session — session is null without a valid session."""

    session: Optional[SessionRead] = None
