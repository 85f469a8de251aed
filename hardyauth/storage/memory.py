from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from hardyauth.logging import get_logger
from hardyauth.storage.errors import ConstraintViolation
from hardyauth.storage.models import (
    TOTP_CONFIRMED,
    AuditLogEntry,
    BackupCode,
    Credential,
    PasswordHistoryEntry,
    PasswordResetToken,
    Principal,
    RateLimitCounter,
    Session,
    TenantMembership,
    TOTPSecret,
)
from hardyauth.storage.secrets import SecretCipher


class MemoryStore:
    """In-process backing store for tests and single-worker development."""

    def __init__(self, *, cipher: Optional[SecretCipher] = None) -> None:
        self.logger = get_logger(__name__)
        self.cipher = cipher or SecretCipher.ephemeral()
        self.principals: Dict[str, Principal] = {}
        self.credentials: Dict[str, Credential] = {}
        self.password_history: Dict[str, List[PasswordHistoryEntry]] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self.totp_secrets: Dict[str, TOTPSecret] = {}
        self.backup_codes: Dict[str, List[BackupCode]] = {}
        self.sessions: Dict[str, Session] = {}
        self.memberships: Dict[str, List[TenantMembership]] = {}
        self.counters: Dict[str, RateLimitCounter] = {}
        self.audit_log: List[AuditLogEntry] = []
        # RLock so compound operations can call other locked helpers
        self._data_lock = threading.RLock()

    # principals and credentials

    def create_principal(self, email: str, name: Optional[str] = None) -> Principal:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(p.email == normalized for p in self.principals.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            principal = Principal(id=str(uuid.uuid4()), email=normalized, name=name)
            self.principals[principal.id] = principal
            return replace(principal)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            return replace(principal) if principal else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        normalized = email.strip().lower()
        with self._data_lock:
            for principal in self.principals.values():
                if principal.email == normalized:
                    return replace(principal)
        return None

    def set_principal_active(self, principal_id: str, is_active: bool) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if principal:
                principal.is_active = is_active

    def _require_principal(self, principal_id: str, what: str) -> None:
        if principal_id not in self.principals:
            raise ConstraintViolation(
                f"principal not found for {what}", {"principal_id": principal_id}
            )

    def save_credential(
        self, principal_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            self._require_principal(principal_id, "credentials")
            self.credentials[principal_id] = Credential(
                principal_id=principal_id,
                password_hash=password_hash,
                password_algo=password_algo,
            )

    def get_credential(self, principal_id: str) -> Optional[Credential]:
        with self._data_lock:
            credential = self.credentials.get(principal_id)
            return replace(credential) if credential else None

    def record_failed_login(
        self, principal_id: str, *, max_attempts: int, now: datetime
    ) -> Credential:
        with self._data_lock:
            credential = self.credentials.get(principal_id)
            if credential is None:
                raise ConstraintViolation(
                    "credential not found", {"principal_id": principal_id}
                )
            credential.failed_attempts += 1
            if credential.failed_attempts >= max_attempts and credential.locked_at is None:
                credential.locked_at = now
            credential.updated_at = now
            return replace(credential)

    def reset_failed_logins(self, principal_id: str) -> None:
        with self._data_lock:
            credential = self.credentials.get(principal_id)
            if credential:
                credential.failed_attempts = 0
                credential.locked_at = None

    # second factor

    def _decrypted(self, record: TOTPSecret) -> TOTPSecret:
        return replace(record, secret=self.cipher.decrypt(record.secret))

    def set_totp_secret(self, principal_id: str, secret: str, now: datetime) -> TOTPSecret:
        with self._data_lock:
            self._require_principal(principal_id, "totp")
            record = TOTPSecret(
                principal_id=principal_id,
                secret=self.cipher.encrypt(secret),
                created_at=now,
            )
            self.totp_secrets[principal_id] = record
            return replace(record, secret=secret)

    def get_totp_secret(self, principal_id: str) -> Optional[TOTPSecret]:
        with self._data_lock:
            record = self.totp_secrets.get(principal_id)
            return self._decrypted(record) if record else None

    def confirm_totp_secret(self, principal_id: str, now: datetime) -> Optional[TOTPSecret]:
        with self._data_lock:
            record = self.totp_secrets.get(principal_id)
            if not record:
                return None
            if not record.confirmed:
                record.status = TOTP_CONFIRMED
                record.confirmed_at = now
            return self._decrypted(record)

    def delete_totp_secret(self, principal_id: str) -> None:
        with self._data_lock:
            self.totp_secrets.pop(principal_id, None)
            self.backup_codes.pop(principal_id, None)

    def replace_backup_codes(
        self, principal_id: str, code_digests: Sequence[str], now: datetime
    ) -> None:
        with self._data_lock:
            self._require_principal(principal_id, "backup codes")
            self.backup_codes[principal_id] = [
                BackupCode(principal_id=principal_id, code_digest=digest, created_at=now)
                for digest in code_digests
            ]

    def consume_backup_code(self, principal_id: str, code_digest: str, now: datetime) -> bool:
        with self._data_lock:
            for code in self.backup_codes.get(principal_id, []):
                if code.code_digest == code_digest and not code.consumed:
                    code.consumed_at = now
                    return True
        return False

    def count_unused_backup_codes(self, principal_id: str) -> int:
        with self._data_lock:
            return sum(1 for c in self.backup_codes.get(principal_id, []) if not c.consumed)

    # sessions

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            self._require_principal(session.principal_id, "session")
            if session.token in self.sessions:
                raise ConstraintViolation("session token collision")
            self.sessions[session.token] = session
            return session

    def get_session(self, token: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(token)

    def delete_session(self, token: str) -> None:
        with self._data_lock:
            self.sessions.pop(token, None)

    def delete_principal_sessions(self, principal_id: str) -> int:
        with self._data_lock:
            stale = [t for t, s in self.sessions.items() if s.principal_id == principal_id]
            for token in stale:
                self.sessions.pop(token, None)
            return len(stale)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [t for t, s in self.sessions.items() if not s.is_valid(now)]
            for token in stale:
                self.sessions.pop(token, None)
            return len(stale)

    # memberships

    def add_membership(self, membership: TenantMembership) -> TenantMembership:
        with self._data_lock:
            self._require_principal(membership.principal_id, "membership")
            existing = self.memberships.setdefault(membership.principal_id, [])
            if any(m.organization_id == membership.organization_id for m in existing):
                raise ConstraintViolation(
                    "membership already exists",
                    {"organization_id": membership.organization_id},
                )
            existing.append(membership)
            return replace(membership)

    def list_memberships(self, principal_id: str) -> List[TenantMembership]:
        with self._data_lock:
            rows = self.memberships.get(principal_id, [])
            return [replace(m) for m in sorted(rows, key=lambda m: m.joined_at)]

    # password history

    def list_password_history(
        self, principal_id: str, limit: int
    ) -> List[PasswordHistoryEntry]:
        with self._data_lock:
            entries = self.password_history.get(principal_id, [])
            return list(entries[:limit])

    def append_password_history(
        self, principal_id: str, password_hash: str, *, keep: int, now: datetime
    ) -> int:
        with self._data_lock:
            entries = self.password_history.setdefault(principal_id, [])
            entries.insert(
                0,
                PasswordHistoryEntry(
                    principal_id=principal_id, password_hash=password_hash, created_at=now
                ),
            )
            pruned = max(0, len(entries) - keep)
            del entries[keep:]
            return pruned

    # password reset

    def create_reset_token(self, record: PasswordResetToken) -> PasswordResetToken:
        """Store a reset token, superseding any the principal still holds."""
        with self._data_lock:
            self._require_principal(record.principal_id, "password reset")
            stale = [
                digest
                for digest, existing in self.reset_tokens.items()
                if existing.principal_id == record.principal_id and existing.consumed_at is None
            ]
            for digest in stale:
                self.reset_tokens.pop(digest, None)
            self.reset_tokens[record.token_digest] = replace(record)
            return replace(record)

    def get_reset_token(self, token_digest: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            record = self.reset_tokens.get(token_digest)
            return replace(record) if record else None

    def consume_reset_token(
        self, token_digest: str, now: datetime
    ) -> Optional[PasswordResetToken]:
        with self._data_lock:
            record = self.reset_tokens.get(token_digest)
            if record is None or not record.usable(now):
                return None
            record.consumed_at = now
            return replace(record)

    # counters

    def increment_counter(
        self, key: str, window_seconds: float, now: datetime
    ) -> RateLimitCounter:
        with self._data_lock:
            current = self.counters.get(key)
            if current is None or now >= current.reset_at:
                counter = RateLimitCounter(
                    key=key, count=1, reset_at=now + timedelta(seconds=window_seconds)
                )
            else:
                counter = replace(current, count=current.count + 1)
            self.counters[key] = counter
            return counter

    # audit

    def append_audit(self, entry: AuditLogEntry) -> None:
        with self._data_lock:
            self.audit_log.append(entry)

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
    ) -> List[AuditLogEntry]:
        with self._data_lock:
            rows = list(self.audit_log)
        filters = (
            ("organization_id", organization_id),
            ("actor_id", actor_id),
            ("action", action),
            ("outcome", outcome),
            ("severity", severity),
        )
        for attr, wanted in filters:
            if wanted is not None:
                rows = [r for r in rows if getattr(r, attr) == wanted]
        if since is not None:
            rows = [r for r in rows if r.timestamp >= since]
        if until is not None:
            rows = [r for r in rows if r.timestamp <= until]
        # newest first; insertion order breaks timestamp ties
        ordered = [r for _, r in sorted(enumerate(rows), key=lambda p: (p[1].timestamp, p[0]), reverse=True)]
        return ordered[offset : offset + limit]
