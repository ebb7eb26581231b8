from __future__ import annotations

from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from idbadge.service.badges import UserPrivilege

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})

MAX_SCOPE_LENGTH = 255


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

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


class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RegisterRequest(_Request):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)
    name: Optional[str] = Field(default=None, min_length=1, max_length=1023)


class LoginRequest(_Request):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)


class MfaCompleteRequest(_Request):
    code: str = Field(..., min_length=1, max_length=32)
    trust_this_device: bool = False


class MfaSmsStartRequest(_Request):
    device: str = Field(..., min_length=5, max_length=32)

    @field_validator("device")
    @classmethod
    def _validate_device(cls, value: str) -> str:
        digits = value.strip()
        if not digits.startswith("+") or not digits[1:].isdigit():
            raise ValueError("device must be a phone number in E.164 format, e.g. +15551234567")
        return digits


class MfaCodeRequest(_Request):
    code: str = Field(..., min_length=1, max_length=32)


class ForgotPasswordRequest(_Request):
    email: str = Field(..., max_length=320)


class CompleteForgotPasswordRequest(_Request):
    token: str = Field(..., min_length=1, max_length=256)
    password: str = Field(..., max_length=1024)


class ChangePasswordRequest(_Request):
    old_password: str = Field(..., min_length=1, max_length=1024)
    new_password: str = Field(..., max_length=1024)


class InvitationRequest(_Request):
    email: str = Field(..., max_length=320)
    user_privilege_type: Optional[UserPrivilege] = None
    roles: Optional[List[str]] = None
    scopes: Optional[List[str]] = None

    @field_validator("roles", "scopes")
    @classmethod
    def _validate_names(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return value
        for item in value:
            if not item or len(item) > MAX_SCOPE_LENGTH:
                raise ValueError(f"entries must be 1-{MAX_SCOPE_LENGTH} characters")
        return value

    @model_validator(mode="after")
    def _privilege_or_roles(self) -> "InvitationRequest":
        if self.user_privilege_type is not None and self.roles is not None:
            raise ValueError("specify either user_privilege_type or roles, not both")
        return self


class CreateAccountRequest(_Request):
    name: str = Field(..., min_length=1, max_length=1024)


class UpdateAccountRequest(_Request):
    name: Optional[str] = Field(default=None, min_length=1, max_length=1023)
    require_mfa: Optional[bool] = None
    max_password_age: Optional[int] = Field(default=None, ge=7, le=999)
    max_inactive_days: Optional[int] = Field(default=None, ge=7, le=999)


class SwitchAccountRequest(_Request):
    account_id: Optional[str] = Field(default=None, min_length=1, max_length=128)
    mode: Literal["live", "test"]
