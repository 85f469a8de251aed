from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, Mapping, Optional, Tuple
from urllib.parse import unquote

from hardyauth.logging import get_logger
from hardyauth.service.clock import Clock, RandomSource, SystemClock, SystemRandom
from hardyauth.service.errors import (
    AuthenticationError,
    SessionExpired,
    SessionMissing,
    SessionNotFound,
)
from hardyauth.storage.errors import StorageError
from hardyauth.storage.interfaces import PrincipalStore, SessionStore
from hardyauth.storage.models import Principal, Session

logger = get_logger(__name__)

TOKEN_BYTES = 32


@dataclass(frozen=True)
class ResolvedSession:
    session: Session
    principal: Principal


def token_fingerprint(token: str) -> str:
    """Short stable digest so tokens can be logged or keyed without exposure."""
    return hashlib.sha256(token.encode()).hexdigest()[:16]


def _parse_cookie_header(header: str) -> dict[str, str]:
    cookies: dict[str, str] = {}
    for part in header.split(";"):
        name, sep, value = part.strip().partition("=")
        if not sep or not name:
            continue
        # first occurrence wins, matching browser precedence
        cookies.setdefault(name.strip(), value.strip().strip('"'))
    return cookies


def _header(carrier: Mapping[str, str], name: str) -> Optional[str]:
    for key, value in carrier.items():
        if key.lower() == name:
            return value
    return None


class SessionResolver:
    """Find, validate and manage sessions from an inbound credential carrier.

    The carrier is any string mapping: cookies, headers, or both merged. Keys
    are tried in the configured order, then the ``Cookie`` header is parsed
    for the same keys, then ``Authorization: Bearer`` is used as a last
    resort. Signed values (``token.signature``) are cut at the first
    separator.
    """

    def __init__(
        self,
        sessions: SessionStore,
        principals: PrincipalStore,
        *,
        carrier_keys: Iterable[str],
        separator: str = ".",
        ttl_seconds: int = 1800,
        clock: Optional[Clock] = None,
        random: Optional[RandomSource] = None,
    ) -> None:
        self.sessions = sessions
        self.principals = principals
        self.carrier_keys: Tuple[str, ...] = tuple(carrier_keys)
        self.separator = separator
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock or SystemClock()
        self.random = random or SystemRandom()

    def _clean(self, raw: str) -> Optional[str]:
        value = unquote(raw.strip())
        token = value.split(self.separator, 1)[0]
        return token or None

    def extract_token(self, carrier: Mapping[str, str]) -> Optional[str]:
        for key in self.carrier_keys:
            raw = carrier.get(key)
            if raw:
                return self._clean(raw)
        cookie_header = _header(carrier, "cookie")
        if cookie_header:
            cookies = _parse_cookie_header(cookie_header)
            for key in self.carrier_keys:
                raw = cookies.get(key)
                if raw:
                    return self._clean(raw)
        authorization = _header(carrier, "authorization")
        if authorization and authorization.lower().startswith("bearer "):
            return self._clean(authorization.split(" ", 1)[1])
        return None

    def resolve(self, carrier: Mapping[str, str]) -> ResolvedSession:
        token = self.extract_token(carrier)
        if not token:
            raise SessionMissing("no session token provided")
        return self.resolve_token(token)

    def resolve_token(self, token: str) -> ResolvedSession:
        try:
            session = self.sessions.get_session(token)
        except StorageError as exc:
            logger.error(
                "session_lookup_failed",
                session_fp=token_fingerprint(token),
                error=str(exc),
            )
            raise AuthenticationError(
                "session store unavailable", reason="session_store_unavailable"
            ) from exc
        if not session:
            raise SessionNotFound("invalid session")
        if not session.is_valid(self.clock.now()):
            raise SessionExpired("session expired")
        try:
            principal = self.principals.get_principal(session.principal_id)
        except StorageError as exc:
            logger.error(
                "session_principal_lookup_failed",
                principal_id=session.principal_id,
                error=str(exc),
            )
            raise AuthenticationError(
                "principal store unavailable", reason="session_store_unavailable"
            ) from exc
        if not principal:
            raise SessionNotFound("session principal no longer exists")
        if not principal.is_active:
            raise AuthenticationError("account disabled", reason="account_disabled")
        return ResolvedSession(session=session, principal=principal)

    def new_token(self) -> str:
        raw = self.random.token_bytes(TOKEN_BYTES)
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    def create_session(
        self,
        principal_id: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Session:
        now = self.clock.now()
        session = Session(
            token=self.new_token(),
            principal_id=principal_id,
            created_at=now,
            expires_at=now + self.ttl,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        self.sessions.create_session(session)
        logger.info(
            "session_created",
            principal_id=principal_id,
            session_fp=token_fingerprint(session.token),
        )
        return session

    def revoke(self, token: str) -> None:
        self.sessions.delete_session(token)
        logger.info("session_revoked", session_fp=token_fingerprint(token))

    def revoke_all(self, principal_id: str) -> int:
        revoked = self.sessions.delete_principal_sessions(principal_id)
        logger.info("sessions_revoked", principal_id=principal_id, count=revoked)
        return revoked

    def sweep_expired(self) -> int:
        removed = self.sessions.delete_expired_sessions(self.clock.now())
        if removed:
            logger.info("expired_sessions_swept", count=removed)
        return removed
