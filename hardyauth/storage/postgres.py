from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Sequence

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from hardyauth.logging import get_logger
from hardyauth.storage.errors import ConstraintViolation, StorageError
from hardyauth.storage.models import (
    TOTP_CONFIRMED,
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
from hardyauth.storage.secrets import SecretCipher

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS principal (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS principal_credential (
        principal_id TEXT PRIMARY KEY REFERENCES principal(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        locked_at TIMESTAMPTZ,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_history (
        id TEXT PRIMARY KEY,
        principal_id TEXT NOT NULL REFERENCES principal(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS password_history_principal_idx ON password_history (principal_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        token_digest TEXT PRIMARY KEY,
        principal_id TEXT NOT NULL REFERENCES principal(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        consumed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS totp_secret (
        principal_id TEXT PRIMARY KEY REFERENCES principal(id) ON DELETE CASCADE,
        secret TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        confirmed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS backup_code (
        principal_id TEXT NOT NULL REFERENCES principal(id) ON DELETE CASCADE,
        code_digest TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        consumed_at TIMESTAMPTZ,
        PRIMARY KEY (principal_id, code_digest)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        token TEXT PRIMARY KEY,
        principal_id TEXT NOT NULL REFERENCES principal(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        user_agent TEXT,
        ip_addr TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_expiry_idx ON auth_session (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS tenant_membership (
        principal_id TEXT NOT NULL REFERENCES principal(id) ON DELETE CASCADE,
        organization_id TEXT NOT NULL,
        role TEXT NOT NULL,
        status TEXT NOT NULL,
        joined_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (principal_id, organization_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rate_limit_counter (
        key TEXT PRIMARY KEY,
        count INTEGER NOT NULL,
        reset_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id TEXT PRIMARY KEY,
        action TEXT NOT NULL,
        outcome TEXT NOT NULL,
        severity TEXT NOT NULL,
        reason TEXT,
        actor_id TEXT,
        organization_id TEXT,
        ip_address TEXT,
        user_agent TEXT,
        request_id TEXT,
        session_id TEXT,
        details JSONB,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_log_org_idx ON audit_log (organization_id, created_at DESC)",
)

# Increment-or-reset in one statement so concurrent workers never lose counts
_INCREMENT_COUNTER_SQL = """
INSERT INTO rate_limit_counter AS c (key, count, reset_at)
VALUES (%(key)s, 1, %(reset_at)s)
ON CONFLICT (key) DO UPDATE
SET count = CASE WHEN c.reset_at <= %(now)s THEN 1 ELSE c.count + 1 END,
    reset_at = CASE WHEN c.reset_at <= %(now)s THEN %(reset_at)s ELSE c.reset_at END
RETURNING count, reset_at
"""


class PostgresStore:
    """Postgres-backed store for every persistent authentication record."""

    def __init__(
        self,
        dsn: str,
        *,
        cipher: SecretCipher,
        pool: Optional[ConnectionPool] = None,
    ) -> None:
        self.dsn = dsn
        self.cipher = cipher
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.UniqueViolation, errors.ForeignKeyViolation) as exc:
            raise ConstraintViolation(str(exc).strip() or "constraint violated") from exc
        except psycopg.Error as exc:
            self.logger.error("postgres_operation_failed", error=str(exc))
            raise StorageError("database unavailable") from exc

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    # principals and credentials

    @staticmethod
    def _principal(row: Dict[str, Any]) -> Principal:
        return Principal(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name"),
            created_at=row["created_at"],
            is_active=bool(row.get("is_active", True)),
        )

    @staticmethod
    def _credential(row: Dict[str, Any]) -> Credential:
        return Credential(
            principal_id=str(row["principal_id"]),
            password_hash=row["password_hash"],
            password_algo=row["password_algo"],
            failed_attempts=int(row.get("failed_attempts") or 0),
            locked_at=row.get("locked_at"),
            updated_at=row["updated_at"],
        )

    def create_principal(self, email: str, name: Optional[str] = None) -> Principal:
        principal_id = str(uuid.uuid4())
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO principal (id, email, name)
                VALUES (%s, %s, %s)
                RETURNING id, email, name, is_active, created_at
                """,
                (principal_id, email.strip().lower(), name),
            ).fetchone()
        return self._principal(row)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, email, name, is_active, created_at FROM principal WHERE id = %s",
                (principal_id,),
            ).fetchone()
        return self._principal(row) if row else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, email, name, is_active, created_at FROM principal WHERE email = %s",
                (email.strip().lower(),),
            ).fetchone()
        return self._principal(row) if row else None

    def save_credential(
        self, principal_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO principal_credential (principal_id, password_hash, password_algo, updated_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (principal_id) DO UPDATE
                SET password_hash = EXCLUDED.password_hash,
                    password_algo = EXCLUDED.password_algo,
                    updated_at = now()
                """,
                (principal_id, password_hash, password_algo),
            )

    def get_credential(self, principal_id: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal_credential WHERE principal_id = %s",
                (principal_id,),
            ).fetchone()
        return self._credential(row) if row else None

    def record_failed_login(
        self, principal_id: str, *, max_attempts: int, now: datetime
    ) -> Credential:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE principal_credential
                SET failed_attempts = failed_attempts + 1,
                    locked_at = CASE
                        WHEN locked_at IS NULL AND failed_attempts + 1 >= %s THEN %s
                        ELSE locked_at
                    END,
                    updated_at = %s
                WHERE principal_id = %s
                RETURNING *
                """,
                (max_attempts, now, now, principal_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("credential not found", {"principal_id": principal_id})
        return self._credential(row)

    def reset_failed_logins(self, principal_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE principal_credential
                SET failed_attempts = 0, locked_at = NULL
                WHERE principal_id = %s
                """,
                (principal_id,),
            )

    # second factor

    def _totp(self, row: Dict[str, Any]) -> TOTPSecret:
        return TOTPSecret(
            principal_id=str(row["principal_id"]),
            secret=self.cipher.decrypt(row["secret"]),
            status=row["status"],
            created_at=row["created_at"],
            confirmed_at=row.get("confirmed_at"),
        )

    def set_totp_secret(self, principal_id: str, secret: str, now: datetime) -> TOTPSecret:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO totp_secret (principal_id, secret, status, created_at, confirmed_at)
                VALUES (%s, %s, 'pending', %s, NULL)
                ON CONFLICT (principal_id) DO UPDATE
                SET secret = EXCLUDED.secret,
                    status = 'pending',
                    created_at = EXCLUDED.created_at,
                    confirmed_at = NULL
                RETURNING *
                """,
                (principal_id, self.cipher.encrypt(secret), now),
            ).fetchone()
        return self._totp(row)

    def get_totp_secret(self, principal_id: str) -> Optional[TOTPSecret]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM totp_secret WHERE principal_id = %s", (principal_id,)
            ).fetchone()
        return self._totp(row) if row else None

    def confirm_totp_secret(self, principal_id: str, now: datetime) -> Optional[TOTPSecret]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE totp_secret
                SET status = %s, confirmed_at = COALESCE(confirmed_at, %s)
                WHERE principal_id = %s
                RETURNING *
                """,
                (TOTP_CONFIRMED, now, principal_id),
            ).fetchone()
        return self._totp(row) if row else None

    def delete_totp_secret(self, principal_id: str) -> None:
        with self._connect() as conn, conn.transaction():
            conn.execute("DELETE FROM totp_secret WHERE principal_id = %s", (principal_id,))
            conn.execute("DELETE FROM backup_code WHERE principal_id = %s", (principal_id,))

    def replace_backup_codes(
        self, principal_id: str, code_digests: Sequence[str], now: datetime
    ) -> None:
        with self._connect() as conn, conn.transaction():
            conn.execute("DELETE FROM backup_code WHERE principal_id = %s", (principal_id,))
            for digest in code_digests:
                conn.execute(
                    """
                    INSERT INTO backup_code (principal_id, code_digest, created_at)
                    VALUES (%s, %s, %s)
                    """,
                    (principal_id, digest, now),
                )

    def consume_backup_code(self, principal_id: str, code_digest: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE backup_code SET consumed_at = %s
                WHERE principal_id = %s AND code_digest = %s AND consumed_at IS NULL
                RETURNING code_digest
                """,
                (now, principal_id, code_digest),
            ).fetchone()
        return row is not None

    def count_unused_backup_codes(self, principal_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS remaining FROM backup_code
                WHERE principal_id = %s AND consumed_at IS NULL
                """,
                (principal_id,),
            ).fetchone()
        return int(row["remaining"]) if row else 0

    # sessions

    def create_session(self, session: Session) -> Session:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_session (token, principal_id, created_at, expires_at, user_agent, ip_addr)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    session.token,
                    session.principal_id,
                    session.created_at,
                    session.expires_at,
                    session.user_agent,
                    session.ip_addr,
                ),
            )
        return session

    def get_session(self, token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE token = %s", (token,)
            ).fetchone()
        if not row:
            return None
        return Session(
            token=row["token"],
            principal_id=str(row["principal_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
        )

    def delete_session(self, token: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE token = %s", (token,))

    def delete_principal_sessions(self, principal_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_session WHERE principal_id = %s", (principal_id,)
            )
        return max(0, cur.rowcount or 0)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE expires_at <= %s", (now,))
        return max(0, cur.rowcount or 0)

    # memberships

    def add_membership(self, membership: TenantMembership) -> TenantMembership:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tenant_membership (principal_id, organization_id, role, status, joined_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    membership.principal_id,
                    membership.organization_id,
                    membership.role,
                    membership.status,
                    membership.joined_at,
                ),
            )
        return membership

    def list_memberships(self, principal_id: str) -> List[TenantMembership]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM tenant_membership
                WHERE principal_id = %s
                ORDER BY joined_at ASC
                """,
                (principal_id,),
            ).fetchall()
        return [
            TenantMembership(
                principal_id=str(row["principal_id"]),
                organization_id=str(row["organization_id"]),
                role=row["role"],
                status=row["status"],
                joined_at=row["joined_at"],
            )
            for row in rows
        ]

    # password history

    def list_password_history(
        self, principal_id: str, limit: int
    ) -> List[PasswordHistoryEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, principal_id, password_hash, created_at FROM password_history
                WHERE principal_id = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (principal_id, limit),
            ).fetchall()
        return [
            PasswordHistoryEntry(
                id=str(row["id"]),
                principal_id=str(row["principal_id"]),
                password_hash=row["password_hash"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def append_password_history(
        self, principal_id: str, password_hash: str, *, keep: int, now: datetime
    ) -> int:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                """
                INSERT INTO password_history (id, principal_id, password_hash, created_at)
                VALUES (%s, %s, %s, %s)
                """,
                (str(uuid.uuid4()), principal_id, password_hash, now),
            )
            cur = conn.execute(
                """
                DELETE FROM password_history
                WHERE principal_id = %s AND id NOT IN (
                    SELECT id FROM password_history
                    WHERE principal_id = %s
                    ORDER BY created_at DESC
                    LIMIT %s
                )
                """,
                (principal_id, principal_id, keep),
            )
        return max(0, cur.rowcount or 0)

    # password reset

    @staticmethod
    def _reset_token(row: Dict[str, Any]) -> PasswordResetToken:
        return PasswordResetToken(
            token_digest=row["token_digest"],
            principal_id=str(row["principal_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            consumed_at=row.get("consumed_at"),
        )

    def create_reset_token(self, record: PasswordResetToken) -> PasswordResetToken:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                """
                DELETE FROM password_reset_token
                WHERE principal_id = %s AND consumed_at IS NULL
                """,
                (record.principal_id,),
            )
            conn.execute(
                """
                INSERT INTO password_reset_token (token_digest, principal_id, created_at, expires_at)
                VALUES (%s, %s, %s, %s)
                """,
                (record.token_digest, record.principal_id, record.created_at, record.expires_at),
            )
        return record

    def get_reset_token(self, token_digest: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token_digest = %s",
                (token_digest,),
            ).fetchone()
        return self._reset_token(row) if row else None

    def consume_reset_token(
        self, token_digest: str, now: datetime
    ) -> Optional[PasswordResetToken]:
        # single statement so two concurrent completions cannot both win
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_token SET consumed_at = %s
                WHERE token_digest = %s AND consumed_at IS NULL AND expires_at > %s
                RETURNING *
                """,
                (now, token_digest, now),
            ).fetchone()
        return self._reset_token(row) if row else None

    # counters

    def increment_counter(
        self, key: str, window_seconds: float, now: datetime
    ) -> RateLimitCounter:
        params = {
            "key": key,
            "now": now,
            "reset_at": now + timedelta(seconds=window_seconds),
        }
        with self._connect() as conn:
            row = conn.execute(_INCREMENT_COUNTER_SQL, params).fetchone()
        return RateLimitCounter(key=key, count=int(row["count"]), reset_at=row["reset_at"])

    # audit

    def append_audit(self, entry: AuditLogEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (
                    id, action, outcome, severity, reason, actor_id, organization_id,
                    ip_address, user_agent, request_id, session_id, details, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.action,
                    entry.outcome,
                    entry.severity,
                    entry.reason,
                    entry.actor_id,
                    entry.organization_id,
                    entry.ip_address,
                    entry.user_agent,
                    entry.request_id,
                    entry.session_id,
                    json.dumps(entry.details) if entry.details is not None else None,
                    entry.timestamp,
                ),
            )

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
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (
            ("organization_id", organization_id),
            ("actor_id", actor_id),
            ("action", action),
            ("outcome", outcome),
            ("severity", severity),
        ):
            if value is not None:
                clauses.append(f"{column} = %s")
                params.append(value)
        if since is not None:
            clauses.append("created_at >= %s")
            params.append(since)
        if until is not None:
            clauses.append("created_at <= %s")
            params.append(until)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([limit, offset])
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                tuple(params),
            ).fetchall()
        return [self._audit_entry(row) for row in rows]

    @staticmethod
    def _audit_entry(row: Dict[str, Any]) -> AuditLogEntry:
        details = row.get("details")
        if isinstance(details, str):
            try:
                details = json.loads(details)
            except ValueError:
                details = None
        return AuditLogEntry(
            id=str(row["id"]),
            action=row["action"],
            outcome=row["outcome"],
            severity=row["severity"],
            reason=row.get("reason"),
            actor_id=row.get("actor_id"),
            organization_id=row.get("organization_id"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            request_id=row.get("request_id"),
            session_id=row.get("session_id"),
            details=details,
            timestamp=row["created_at"],
        )

    def close(self) -> None:
        self.pool.close()
