from __future__ import annotations

import re
import time
import unicodedata
from datetime import datetime, timezone
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from eduauth.config import SELF_SERVICE_ROLES, Role
from eduauth.logging import get_correlation_id


class Meta(BaseModel):
    requestId: str
    executionTime: str
    timestamp: str


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    success: bool
    message: str
    code: str
    data: Optional[Any] = None
    errors: Optional[List[Any]] = None
    meta: Meta


def build_meta(request=None, **extra: Any) -> dict:
    started = getattr(getattr(request, "state", None), "started_at", None)
    elapsed_ms = (time.perf_counter() - started) * 1000 if started else 0.0
    meta = Meta(
        requestId=get_correlation_id() or str(uuid4()),
        executionTime=f"{elapsed_ms:.0f}ms",
        timestamp=datetime.now(timezone.utc).isoformat(),
    ).model_dump()
    meta.update(extra)
    return meta


def envelope(
    *,
    success: bool,
    message: str,
    code: str,
    request=None,
    data: Any = None,
    errors: Optional[list] = None,
    meta: Optional[dict] = None,
) -> dict:
    body = Envelope(
        success=success,
        message=message,
        code=code,
        data=data,
        errors=errors,
        meta=build_meta(request),
    ).model_dump(exclude_none=True)
    if meta:
        body["meta"].update(meta)
    return body


def field_errors(exc: PydanticValidationError) -> list[dict]:
    """Flatten pydantic errors into ``[{field, message}]``."""
    errors = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path", "form")]
        message = str(error.get("msg", "invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        errors.append({"field": ".".join(loc) or None, "message": message})
    return errors


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_NAME_PATTERN = re.compile(r"^[^\W\d_]+(?:[ '\-][^\W\d_]+)*$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("Please provide a valid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Please provide a valid email address")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Please provide a valid email address")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Please provide a valid email address")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("Password must be at most 128 characters")
    if not (
        re.search(r"[a-z]", value) and re.search(r"[A-Z]", value) and re.search(r"\d", value)
    ):
        raise ValueError(
            "Password must contain at least one uppercase letter, one lowercase letter and one number"
        )
    return value


def _validate_name(value: str, label: str) -> str:
    cleaned = _normalize_unicode(value or "").strip()
    if len(cleaned) < 2 or len(cleaned) > 50:
        raise ValueError(f"{label} must be between 2 and 50 characters")
    if not _NAME_PATTERN.match(cleaned):
        raise ValueError(f"{label} can only contain letters, spaces, hyphens and apostrophes")
    return cleaned


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class RegisterRequest(_CamelModel):
    first_name: str = Field(..., alias="firstName")
    last_name: str = Field(..., alias="lastName")
    email: str
    password: str
    role: str = Role.STUDENT.value

    @field_validator("first_name")
    @classmethod
    def _validate_first_name(cls, value: str) -> str:
        return _validate_name(value, "First name")

    @field_validator("last_name")
    @classmethod
    def _validate_last_name(cls, value: str) -> str:
        return _validate_name(value, "Last name")

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("role")
    @classmethod
    def _validate_role(cls, value: str) -> str:
        normalized = (value or Role.STUDENT.value).upper()
        if normalized not in SELF_SERVICE_ROLES:
            raise ValueError("Role must be STUDENT or INSTRUCTOR")
        return normalized


class LoginRequest(_CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyRequest(_CamelModel):
    token: Optional[str] = Field(default=None, max_length=256)
    email: Optional[str] = None
    otp: Optional[str] = Field(default=None, max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_verify_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value else None


class PasswordResetRequest(_CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(_CamelModel):
    email: str
    otp: str = Field(..., max_length=16)
    new_password: str = Field(..., alias="newPassword")

    @field_validator("email")
    @classmethod
    def _validate_confirm_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ResendOTPRequest(_CamelModel):
    email: str
    type: Literal["verification", "password_reset"] = "verification"

    @field_validator("email")
    @classmethod
    def _validate_resend_email(cls, value: str) -> str:
        return _validate_email(value)


class ExchangeCodeRequest(_CamelModel):
    code: Optional[str] = Field(default=None, max_length=256)


class InvalidateSessionsRequest(_CamelModel):
    keep_current: bool = Field(default=True, alias="keepCurrent")
    reason: Optional[str] = Field(default=None, max_length=200)


class ReactivationRequestBody(_CamelModel):
    email: Optional[str] = None
    user_id: Optional[str] = Field(default=None, alias="userId", max_length=64)
    reason: str = Field(..., min_length=10, max_length=1000)
    additional_info: Optional[str] = Field(default=None, alias="additionalInfo", max_length=2000)

    @field_validator("email")
    @classmethod
    def _validate_reactivation_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value else None

    @model_validator(mode="after")
    def _require_identity(self):
        if not self.email and not self.user_id:
            raise ValueError("Either email or userId is required")
        return self


class DeleteAccountRequest(_CamelModel):
    password: str = Field(..., min_length=1, max_length=128)
    reason: str = Field(..., min_length=10, max_length=1000)
    confirm_deletion: str = Field(..., alias="confirmDeletion")
