from datetime import datetime
from typing import List, Optional

from pydantic import AnyUrl, BaseModel, ConfigDict, Field, TypeAdapter, field_validator

MIN_PASSWORD_LENGTH = 6


_URL_ADAPTER = TypeAdapter(AnyUrl)


def is_valid_url(value: str) -> bool:
    """True for absolute URLs carrying both a scheme and a host."""
    try:
        parsed = _URL_ADAPTER.validate_python(value)
    except ValueError:
        return False
    return bool(parsed.host)


def _reject_nul(value: str) -> str:
    # bcrypt cannot hash passwords containing NUL bytes.
    if "\x00" in value:
        raise ValueError("Password must not contain NUL characters")
    return value


class APIMessage(BaseModel):
    message: str = Field(..., description="Human readable message")


class ErrorResponse(BaseModel):
    error: str
    code: Optional[str] = None
    details: Optional[str] = None


class StatusMessage(BaseModel):
    message: str
    status: str
    timestamp: datetime


class HealthStatus(BaseModel):
    status: str
    database: str
    missing_tables: List[str] = Field(default_factory=list)
    timestamp: datetime


class UserPublic(BaseModel):
    id: int
    email: str
    name: str


class AuthResponse(BaseModel):
    token: str = Field(..., description="JWT bearer token, valid for 7 days")
    user: UserPublic


class VerifyResponse(BaseModel):
    user: UserPublic


class RegisterRequest(BaseModel):
    email: str = Field(..., min_length=1, description="User email address (stored as given)")
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH, description="Password (min 6 chars)")
    name: str = Field(..., min_length=1, description="Display name")

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _reject_nul(value)


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class ForgotPasswordRequest(BaseModel):
    email: str = Field(..., min_length=1)


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: str = Field(..., min_length=1, description="Token previously issued by the API")
    new_password: str = Field(
        ..., alias="newPassword", min_length=MIN_PASSWORD_LENGTH, description="New password (min 6 chars)"
    )

    @field_validator("new_password")
    @classmethod
    def _check_new_password(cls, value: str) -> str:
        return _reject_nul(value)


class LinkWrite(BaseModel):
    """Body of link create and update requests."""

    title: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1, description="Absolute URL (scheme and host)")
    description: Optional[str] = ""
    tags: Optional[str] = Field("", description="Free-text tags")

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        if not is_valid_url(value):
            raise ValueError("Invalid URL")
        return value

    @field_validator("description", "tags")
    @classmethod
    def _none_to_empty(cls, value: Optional[str]) -> str:
        return value or ""


class Link(BaseModel):
    id: int
    title: str
    url: str
    description: str
    tags: str
    user_id: int
    created_at: datetime
