from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


MEMBERSHIP_PENDING = "pending"
MEMBERSHIP_ACTIVE = "active"
MEMBERSHIP_SUSPENDED = "suspended"
MEMBERSHIP_STATUSES = (MEMBERSHIP_PENDING, MEMBERSHIP_ACTIVE, MEMBERSHIP_SUSPENDED)

TOTP_PENDING = "pending"
TOTP_CONFIRMED = "confirmed"

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"
OUTCOME_CANCELLED = "cancelled"

SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"


@dataclass
class Principal:
    id: str
    email: str
    name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True


@dataclass
class Credential:
    principal_id: str
    password_hash: str
    password_algo: str = "argon2id"
    failed_attempts: int = 0
    locked_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: datetime, lock_window: timedelta) -> bool:
        return self.locked_at is not None and now < self.locked_at + lock_window


@dataclass
class PasswordHistoryEntry:
    principal_id: str
    password_hash: str
    created_at: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class PasswordResetToken:
    token_digest: str
    principal_id: str
    created_at: datetime
    expires_at: datetime
    consumed_at: Optional[datetime] = None

    def usable(self, now: datetime) -> bool:
        return self.consumed_at is None and now < self.expires_at


@dataclass
class TOTPSecret:
    principal_id: str
    secret: str
    status: str = TOTP_PENDING
    created_at: datetime = field(default_factory=utcnow)
    confirmed_at: Optional[datetime] = None

    @property
    def confirmed(self) -> bool:
        return self.status == TOTP_CONFIRMED


@dataclass
class BackupCode:
    principal_id: str
    code_digest: str
    created_at: datetime
    consumed_at: Optional[datetime] = None

    @property
    def consumed(self) -> bool:
        return self.consumed_at is not None


@dataclass(frozen=True)
class Session:
    token: str
    principal_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass
class TenantMembership:
    principal_id: str
    organization_id: str
    role: str
    status: str = MEMBERSHIP_ACTIVE
    joined_at: datetime = field(default_factory=utcnow)

    @property
    def active(self) -> bool:
        return self.status == MEMBERSHIP_ACTIVE


@dataclass(frozen=True)
class RateLimitCounter:
    key: str
    count: int
    reset_at: datetime


@dataclass(frozen=True)
class AuditLogEntry:
    action: str
    outcome: str
    timestamp: datetime
    actor_id: Optional[str] = None
    organization_id: Optional[str] = None
    reason: Optional[str] = None
    severity: str = SEVERITY_INFO
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None
    session_id: Optional[str] = None
    details: Dict | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
