from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol, Sequence

from hardyauth.storage.models import (
    AuditLogEntry,
    Credential,
    PasswordHistoryEntry,
    PasswordResetToken,
    Principal,
    RateLimitCounter,
    Session,
    TenantMembership,
    TOTPSecret,
)


class PrincipalStore(Protocol):
    def create_principal(self, email: str, name: Optional[str] = None) -> Principal: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def get_principal_by_email(self, email: str) -> Optional[Principal]: ...

    def save_credential(
        self, principal_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_credential(self, principal_id: str) -> Optional[Credential]: ...

    def record_failed_login(
        self, principal_id: str, *, max_attempts: int, now: datetime
    ) -> Credential: ...

    def reset_failed_logins(self, principal_id: str) -> None: ...

    def set_totp_secret(
        self, principal_id: str, secret: str, now: datetime
    ) -> TOTPSecret: ...

    def get_totp_secret(self, principal_id: str) -> Optional[TOTPSecret]: ...

    def confirm_totp_secret(
        self, principal_id: str, now: datetime
    ) -> Optional[TOTPSecret]: ...

    def delete_totp_secret(self, principal_id: str) -> None: ...

    def replace_backup_codes(
        self, principal_id: str, code_digests: Sequence[str], now: datetime
    ) -> None: ...

    def consume_backup_code(
        self, principal_id: str, code_digest: str, now: datetime
    ) -> bool: ...

    def count_unused_backup_codes(self, principal_id: str) -> int: ...


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, token: str) -> Optional[Session]: ...

    def delete_session(self, token: str) -> None: ...

    def delete_principal_sessions(self, principal_id: str) -> int: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...


class MembershipStore(Protocol):
    def add_membership(self, membership: TenantMembership) -> TenantMembership: ...

    def list_memberships(self, principal_id: str) -> List[TenantMembership]: ...


class HistoryStore(Protocol):
    def list_password_history(
        self, principal_id: str, limit: int
    ) -> List[PasswordHistoryEntry]: ...

    def append_password_history(
        self, principal_id: str, password_hash: str, *, keep: int, now: datetime
    ) -> int: ...


class ResetTokenStore(Protocol):
    def create_reset_token(self, record: PasswordResetToken) -> PasswordResetToken: ...

    def get_reset_token(self, token_digest: str) -> Optional[PasswordResetToken]: ...

    def consume_reset_token(
        self, token_digest: str, now: datetime
    ) -> Optional[PasswordResetToken]: ...


class CounterStore(Protocol):
    def increment_counter(
        self, key: str, window_seconds: float, now: datetime
    ) -> RateLimitCounter: ...


class AsyncCounterStore(Protocol):
    async def increment_counter(
        self, key: str, window_seconds: float, now: datetime
    ) -> RateLimitCounter: ...


class AuditStore(Protocol):
    def append_audit(self, entry: AuditLogEntry) -> None: ...

    def list_audit(
        self,
        *,
        organization_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        action: Optional[str] = None,
        outcome: Optional[str] = None,
        severity: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditLogEntry]: ...


class AuthStore(
    PrincipalStore,
    SessionStore,
    MembershipStore,
    HistoryStore,
    ResetTokenStore,
    CounterStore,
    AuditStore,
    Protocol,
):
    """Everything a single backing store provides to the core."""
