from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from hardyauth.logging import get_logger
from hardyauth.service.clock import Clock, SystemClock
from hardyauth.storage.errors import StorageError
from hardyauth.storage.interfaces import AuditStore, CounterStore
from hardyauth.storage.models import (
    OUTCOME_CANCELLED,
    OUTCOME_SUCCESS,
    SEVERITY_CRITICAL,
    SEVERITY_INFO,
    SEVERITY_WARNING,
    AuditLogEntry,
)

logger = get_logger(__name__)

REDACTED = "[REDACTED]"
_SENSITIVE_KEY_PARTS = ("password", "token", "secret", "code", "authorization", "cookie")

AUTH_FAILURE_REASONS = frozenset(
    {
        "unauthenticated",
        "session_missing",
        "session_not_found",
        "session_expired",
        "session_store_unavailable",
        "invalid_credentials",
        "account_locked",
        "account_disabled",
        "mfa_required",
        "invalid_second_factor",
    }
)
RATE_LIMIT_REASONS = frozenset({"rate_limited", "rate_limit_unavailable"})

MAX_QUERY_LIMIT = 500


def sanitize_metadata(value: Any) -> Any:
    """Copy ``value`` with secret-looking mapping keys replaced by a marker."""
    if isinstance(value, Mapping):
        cleaned: Dict[str, Any] = {}
        for key, item in value.items():
            lowered = str(key).lower()
            if any(part in lowered for part in _SENSITIVE_KEY_PARTS):
                cleaned[str(key)] = REDACTED
            else:
                cleaned[str(key)] = sanitize_metadata(item)
        return cleaned
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


class AuditLedger:
    """Append-only record of security-relevant events.

    Writes never raise: a failed append is logged as ``audit_write_failed``
    and the caller's outcome stands. Repeated authentication failures by the
    same actor inside the escalation window are promoted to ``critical``.
    """

    def __init__(
        self,
        store: AuditStore,
        *,
        counters: Optional[CounterStore] = None,
        clock: Optional[Clock] = None,
        escalation_threshold: int = 3,
        escalation_window_seconds: int = 900,
    ) -> None:
        self.store = store
        self.counters = counters
        self.clock = clock or SystemClock()
        self.escalation_threshold = escalation_threshold
        self.escalation_window_seconds = escalation_window_seconds

    def record(self, entry: AuditLogEntry) -> AuditLogEntry:
        try:
            self.store.append_audit(entry)
        except Exception as exc:  # best effort
            logger.error(
                "audit_write_failed",
                action=entry.action,
                outcome=entry.outcome,
                actor_id=entry.actor_id,
                error=str(exc),
            )
        return entry

    def log_event(
        self,
        action: str,
        outcome: str,
        *,
        actor_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        reason: Optional[str] = None,
        severity: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        request_id: Optional[str] = None,
        session_id: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> AuditLogEntry:
        now = self.clock.now()
        if severity is None:
            severity = self.severity_for(
                outcome, reason, actor_key=actor_id or ip_address, now=now
            )
        entry = AuditLogEntry(
            action=action,
            outcome=outcome,
            timestamp=now,
            actor_id=actor_id,
            organization_id=organization_id,
            reason=reason,
            severity=severity,
            ip_address=ip_address,
            user_agent=user_agent,
            request_id=request_id,
            session_id=session_id,
            details=sanitize_metadata(details) if details else None,
        )
        return self.record(entry)

    def severity_for(
        self,
        outcome: str,
        reason: Optional[str],
        *,
        actor_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> str:
        if outcome == OUTCOME_SUCCESS:
            return SEVERITY_INFO
        if outcome == OUTCOME_CANCELLED:
            return SEVERITY_WARNING
        if reason in RATE_LIMIT_REASONS:
            return SEVERITY_CRITICAL
        if reason in AUTH_FAILURE_REASONS and actor_key and self._escalated(
            actor_key, now or self.clock.now()
        ):
            return SEVERITY_CRITICAL
        return SEVERITY_WARNING

    def _escalated(self, actor_key: str, now: datetime) -> bool:
        if self.counters is None:
            return False
        try:
            counter = self.counters.increment_counter(
                f"audit:auth_failure:{actor_key}",
                self.escalation_window_seconds,
                now,
            )
        except StorageError as exc:
            logger.warning("audit_escalation_counter_failed", error=str(exc))
            return False
        return counter.count >= self.escalation_threshold

    def query(
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
        return self.store.list_audit(
            organization_id=organization_id,
            actor_id=actor_id,
            action=action,
            outcome=outcome,
            severity=severity,
            since=since,
            until=until,
            limit=max(1, min(limit, MAX_QUERY_LIMIT)),
            offset=max(0, offset),
        )
