from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MAX_TOKEN_LENGTH = 2048

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "rate_limited",
    "server_error",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


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
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    success: bool = True
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))

    @model_validator(mode="after")
    def _sync_success(self):
        self.success = self.status == "ok"
        if self.error is not None and self.message is None:
            self.message = self.error.message
        return self


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# -- auth --------------------------------------------------------------


class RegisterRequest(_CamelModel):
    email: str
    password: str
    confirm_password: str = Field(..., alias="confirmPassword")

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("passwords do not match")
        return self


class LoginRequest(_CamelModel):
    email: str
    # Existing passwords are checked, not re-validated against current strength rules
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshTokenRequest(_CamelModel):
    refresh_token: str = Field(
        ..., alias="refreshToken", min_length=1, max_length=MAX_TOKEN_LENGTH
    )


class LogoutRequest(_CamelModel):
    refresh_token: Optional[str] = Field(
        default=None, alias="refreshToken", max_length=MAX_TOKEN_LENGTH
    )


class ChangePasswordRequest(_CamelModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., alias="currentPassword", min_length=1, max_length=128)
    new_password: str = Field(..., alias="newPassword")
    confirm_password: str = Field(..., alias="confirmPassword")

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.new_password != self.confirm_password:
            raise ValueError("passwords do not match")
        return self


class VerifyTokenRequest(_CamelModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


# -- countries ---------------------------------------------------------


class CountryCreateRequest(_CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    code: str = Field(..., min_length=2, max_length=3)
    currency_code: Optional[str] = Field(
        default=None, alias="currencyCode", min_length=3, max_length=3
    )
    status: Literal["active", "inactive"] = "active"


class CountryUpdateRequest(_CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    code: Optional[str] = Field(default=None, min_length=2, max_length=3)
    currency_code: Optional[str] = Field(
        default=None, alias="currencyCode", min_length=3, max_length=3
    )
    status: Optional[Literal["active", "inactive"]] = None

    @model_validator(mode="after")
    def _require_change(self):
        if not self.model_fields_set:
            raise ValueError("at least one field must be provided")
        return self


# -- menus -------------------------------------------------------------


class MenuCreateRequest(_CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    route: str = Field(..., min_length=1, max_length=255)
    icon: Optional[str] = Field(default=None, max_length=100)
    parent_id: Optional[str] = Field(default=None, alias="parentId", max_length=64)
    sort_order: int = Field(default=0, alias="sortOrder", ge=0)
    is_active: bool = Field(default=True, alias="isActive")


class MenuUpdateRequest(_CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    route: Optional[str] = Field(default=None, min_length=1, max_length=255)
    icon: Optional[str] = Field(default=None, max_length=100)
    parent_id: Optional[str] = Field(default=None, alias="parentId", max_length=64)
    sort_order: Optional[int] = Field(default=None, alias="sortOrder", ge=0)
    is_active: Optional[bool] = Field(default=None, alias="isActive")

    @model_validator(mode="after")
    def _require_change(self):
        if not self.model_fields_set:
            raise ValueError("at least one field must be provided")
        return self


class MenuOrderItem(_CamelModel):
    id: str = Field(..., min_length=1, max_length=64)
    sort_order: int = Field(..., alias="sortOrder", ge=0)


class MenuReorderRequest(_CamelModel):
    items: List[MenuOrderItem] = Field(..., min_length=1, max_length=500)
