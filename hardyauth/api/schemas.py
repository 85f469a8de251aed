from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Upper bound on submitted passwords; the policy engine applies the real limits
MAX_PASSWORD_INPUT = 1024

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then apply NFKC."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
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


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_INPUT)
    name: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_INPUT)
    otp_code: Optional[str] = Field(default=None, max_length=10)
    backup_code: Optional[str] = Field(default=None, max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class SessionResponse(BaseModel):
    principal_id: str
    session_token: str
    session_expires_at: datetime


class PrincipalResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    organization_id: Optional[str] = None
    role: Optional[str] = None
    is_system_admin: bool = False
    organizations: List[str] = Field(default_factory=list)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_INPUT)
    new_password: str = Field(..., max_length=MAX_PASSWORD_INPUT)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetComplete(BaseModel):
    """Finish a reset with the token delivered out of band."""
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=MAX_PASSWORD_INPUT)


class TOTPSetupResponse(BaseModel):
    secret: str
    provisioning_uri: str


class TOTPVerifyRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=10)


class TOTPDisableRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_INPUT)


class TwoFactorStatusResponse(BaseModel):
    enabled: bool = Field(..., description="Whether two-factor authentication is active")
    pending: bool = Field(..., description="Whether an enrollment awaits confirmation")
    backup_codes_remaining: int = 0


class BackupCodesResponse(BaseModel):
    codes: List[str]


class MembershipRequest(BaseModel):
    principal_id: str = Field(..., max_length=128)
    organization_id: str = Field(..., max_length=128)
    role: str = Field(..., max_length=32)


class MembershipResponse(BaseModel):
    principal_id: str
    organization_id: str
    role: str
    status: str
    joined_at: datetime


class AuditEntryResponse(BaseModel):
    id: str
    action: str
    outcome: str
    severity: str
    reason: Optional[str] = None
    actor_id: Optional[str] = None
    organization_id: Optional[str] = None
    ip_address: Optional[str] = None
    request_id: Optional[str] = None
    timestamp: datetime
    details: Optional[Dict[str, Any]] = None
