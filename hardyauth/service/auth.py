from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Iterable, List, Mapping, Optional

from argon2 import PasswordHasher

from hardyauth.config import Settings
from hardyauth.logging import get_logger
from hardyauth.service.audit import AuditLedger
from hardyauth.service.clock import Clock, RandomSource, SystemClock, SystemRandom
from hardyauth.service.errors import (
    AccountLocked,
    AuthenticationError,
    ConflictError,
    InvalidCredentials,
    MFARequired,
    PasswordPolicyViolation,
    ServiceError,
    ValidationError,
)
from hardyauth.service.password_policy import (
    PASSWORD_ALGO,
    PasswordPolicyEngine,
    ValidationResult,
)
from hardyauth.service.pipeline import (
    RequestContext,
    RequestPipeline,
    build_pipeline,
)
from hardyauth.service.rate_limit import RateLimiter
from hardyauth.service.sessions import ResolvedSession, SessionResolver
from hardyauth.service.tenancy import (
    ROLE_CAPABILITIES,
    ROLE_SYSTEM_ADMIN,
    AdminIdentityPolicy,
    RoleAuthorizer,
    TenantContext,
    TenantContextResolver,
)
from hardyauth.service.totp import TOTPEngine, normalize_backup_code
from hardyauth.storage.errors import ConstraintViolation
from hardyauth.storage.interfaces import AsyncCounterStore, AuthStore
from hardyauth.storage.models import (
    MEMBERSHIP_ACTIVE,
    MEMBERSHIP_STATUSES,
    OUTCOME_FAILURE,
    OUTCOME_SUCCESS,
    PasswordResetToken,
    Principal,
    Session,
    TenantMembership,
)

logger = get_logger(__name__)

Handler = Callable[[RequestContext], Awaitable[Any]]
# delivers a reset token out of band, e.g. by email
ResetNotifier = Callable[[Principal, str], Awaitable[None]]


@dataclass(frozen=True)
class LoginResult:
    principal: Principal
    session: Session


@dataclass(frozen=True)
class TOTPEnrollment:
    secret: str
    provisioning_uri: str


class AuthService:
    """Authentication operations exposed to handlers and HTTP routes.

    Collaborators are built once from settings and shared by every request.
    Operations that run before a session exists, such as login, audit
    themselves. Every other operation is expected to run inside
    :meth:`run_pipeline`, which writes its audit entry.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        cache: Optional[AsyncCounterStore] = None,
        clock: Optional[Clock] = None,
        random: Optional[RandomSource] = None,
        hasher: Optional[PasswordHasher] = None,
        reset_notifier: Optional[ResetNotifier] = None,
    ) -> None:
        self.store = store
        self.reset_notifier = reset_notifier
        self.settings = settings
        self.clock = clock or SystemClock()
        self.random = random or SystemRandom()
        self._digest_key = settings.require_auth_secret().encode()
        self.lock_window = timedelta(minutes=settings.lockout_minutes)
        self.reset_ttl = timedelta(seconds=settings.password_reset_ttl_seconds)

        self.totp = TOTPEngine(
            self.random,
            step=settings.totp_step_seconds,
            window=settings.totp_window,
            issuer=settings.totp_issuer,
        )
        self.passwords = PasswordPolicyEngine(
            store,
            hasher=hasher,
            clock=self.clock,
            min_length=settings.password_min_length,
            max_length=settings.password_max_length,
            history_depth=settings.password_history_depth,
            forbidden_terms=settings.password_forbidden_terms,
            special_characters=settings.password_special_characters,
        )
        self.sessions = SessionResolver(
            store,
            store,
            carrier_keys=settings.session_carrier_keys,
            separator=settings.session_token_separator,
            ttl_seconds=settings.session_ttl_seconds,
            clock=self.clock,
            random=self.random,
        )
        self.tenants = TenantContextResolver(
            store,
            AdminIdentityPolicy.from_config(
                emails=settings.admin_emails,
                domains=settings.admin_domains,
                patterns=settings.admin_patterns,
            ),
        )
        self.authorizer = RoleAuthorizer()
        self.limiter = RateLimiter(store, cache, clock=self.clock)
        self.audit = AuditLedger(
            store,
            counters=store,
            clock=self.clock,
            escalation_threshold=settings.audit_failure_escalation_threshold,
            escalation_window_seconds=settings.audit_failure_window_seconds,
        )
        self.rate_limit_window_seconds = settings.rate_limit_window_ms / 1000
        self.pipeline: RequestPipeline = build_pipeline(
            limiter=self.limiter,
            sessions=self.sessions,
            tenants=self.tenants,
            authorizer=self.authorizer,
            audit=self.audit,
            limit=settings.rate_limit_max_requests,
            window_seconds=self.rate_limit_window_seconds,
        )

    def _now_ts(self) -> float:
        return self.clock.now().timestamp()

    def _backup_digest(self, code: str) -> str:
        normalized = normalize_backup_code(code)
        return hmac.new(self._digest_key, normalized.encode(), hashlib.sha256).hexdigest()

    # pipeline

    async def run_pipeline(
        self,
        operation: str,
        required_capabilities: Iterable[str],
        handler: Handler,
        *,
        carrier: Optional[Mapping[str, str]] = None,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        request_id: Optional[str] = None,
        require_tenant: bool = True,
        action_class: Optional[str] = None,
    ) -> Any:
        ctx = RequestContext(
            operation=operation,
            carrier=dict(carrier or {}),
            required_capabilities=frozenset(required_capabilities),
            require_tenant=require_tenant,
            action_class=action_class,
            client_ip=client_ip,
            user_agent=user_agent,
            request_id=request_id,
        )
        return await self.pipeline.run(ctx, handler)

    def resolve_session(self, carrier: Mapping[str, str]) -> ResolvedSession:
        return self.sessions.resolve(carrier)

    def resolve_tenant_context(self, principal: Principal) -> TenantContext:
        return self.tenants.resolve(principal)

    # principals and passwords

    def validate_password(
        self, candidate: str, principal_id: Optional[str] = None
    ) -> ValidationResult:
        """Check a candidate against every rule without recording it."""
        return self.passwords.evaluate(candidate, principal_id)

    def _accept_password(self, principal_id: str, candidate: str) -> None:
        result = self.passwords.validate(candidate, principal_id)
        if not result.valid:
            raise PasswordPolicyViolation(
                result.message or "password rejected",
                detail={"rule": result.reason},
            )
        self.store.save_credential(principal_id, result.password_hash, PASSWORD_ALGO)

    async def register_principal(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> Principal:
        principal: Optional[Principal] = None
        try:
            await self.limiter.check(
                f"ip:{ip_addr or 'anonymous'}:auth.register",
                self.settings.rate_limit_max_requests,
                self.rate_limit_window_seconds,
            )
            precheck = self.passwords.evaluate(password)
            if not precheck.valid:
                raise PasswordPolicyViolation(
                    precheck.message or "password rejected",
                    detail={"rule": precheck.reason},
                )
            try:
                principal = self.store.create_principal(email, name)
            except ConstraintViolation as exc:
                raise ConflictError("email already registered") from exc
            self._accept_password(principal.id, password)
        except ServiceError as exc:
            self.audit.log_event(
                "auth.register",
                OUTCOME_FAILURE,
                actor_id=principal.id if principal else None,
                reason=exc.reason,
                ip_address=ip_addr,
                user_agent=user_agent,
                request_id=request_id,
                details=exc.detail or None,
            )
            raise
        self.audit.log_event(
            "auth.register",
            OUTCOME_SUCCESS,
            actor_id=principal.id,
            ip_address=ip_addr,
            user_agent=user_agent,
            request_id=request_id,
        )
        return principal

    def verify_password(self, principal_id: str, password: str) -> bool:
        credential = self.store.get_credential(principal_id)
        if not credential:
            logger.warning("credential_missing", principal_id=principal_id)
            return False
        if credential.password_algo != PASSWORD_ALGO:
            logger.warning(
                "password_algo_mismatch",
                principal_id=principal_id,
                algo=credential.password_algo,
            )
            return False
        return self.passwords.matches(credential.password_hash, password)

    async def change_password(
        self, principal_id: str, current_password: str, new_password: str
    ) -> None:
        if not self.verify_password(principal_id, current_password):
            raise InvalidCredentials("current password is incorrect")
        self._accept_password(principal_id, new_password)
        logger.info("password_changed", principal_id=principal_id)

    # password reset

    def _reset_digest(self, token: str) -> str:
        return hmac.new(
            self._digest_key, b"password-reset:" + token.encode(), hashlib.sha256
        ).hexdigest()

    async def _check_reset_limit(self, action: str, ip_addr: Optional[str]) -> None:
        await self.limiter.check(
            f"ip:{ip_addr or 'anonymous'}:{action}",
            self.settings.password_reset_max_attempts,
            self.settings.password_reset_window_seconds,
        )

    async def request_password_reset(
        self,
        email: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> Optional[str]:
        """Issue a single-use reset token and hand it to the notifier.

        Returns the raw token, or ``None`` when no active principal owns the
        address. Only a digest of the token is stored. Callers must answer
        both cases identically.
        """
        principal: Optional[Principal] = None
        token: Optional[str] = None
        try:
            await self._check_reset_limit("auth.password.reset_request", ip_addr)
            principal = self.store.get_principal_by_email(email)
            if principal is not None and principal.is_active:
                token = self.sessions.new_token()
                now = self.clock.now()
                self.store.create_reset_token(
                    PasswordResetToken(
                        token_digest=self._reset_digest(token),
                        principal_id=principal.id,
                        created_at=now,
                        expires_at=now + self.reset_ttl,
                    )
                )
        except ServiceError as exc:
            self.audit.log_event(
                "auth.password.reset_request",
                OUTCOME_FAILURE,
                reason=exc.reason,
                ip_address=ip_addr,
                user_agent=user_agent,
                request_id=request_id,
            )
            raise
        self.audit.log_event(
            "auth.password.reset_request",
            OUTCOME_SUCCESS,
            actor_id=principal.id if token else None,
            ip_address=ip_addr,
            user_agent=user_agent,
            request_id=request_id,
            details={"issued": token is not None},
        )
        if token is not None:
            if self.reset_notifier is None:
                logger.warning("password_reset_delivery_unconfigured", principal_id=principal.id)
            else:
                await self.reset_notifier(principal, token)
        return token

    async def complete_password_reset(
        self,
        token: str,
        new_password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> Principal:
        """Set a new password from a reset token.

        A policy failure leaves the token usable so the caller can retry.
        Success consumes the token and revokes every session of the
        principal.
        """
        principal_id: Optional[str] = None
        try:
            await self._check_reset_limit("auth.password.reset", ip_addr)
            digest = self._reset_digest(token)
            record = self.store.get_reset_token(digest)
            if record is None or not record.usable(self.clock.now()):
                raise ValidationError(
                    "invalid or expired reset token", reason="invalid_reset_token"
                )
            principal_id = record.principal_id
            precheck = self.passwords.evaluate(new_password, principal_id)
            if not precheck.valid:
                raise PasswordPolicyViolation(
                    precheck.message or "password rejected",
                    detail={"rule": precheck.reason},
                )
            if self.store.consume_reset_token(digest, self.clock.now()) is None:
                raise ValidationError(
                    "invalid or expired reset token", reason="invalid_reset_token"
                )
            self._accept_password(principal_id, new_password)
            self.store.reset_failed_logins(principal_id)
            revoked = self.sessions.revoke_all(principal_id)
        except ServiceError as exc:
            self.audit.log_event(
                "auth.password.reset",
                OUTCOME_FAILURE,
                actor_id=principal_id,
                reason=exc.reason,
                ip_address=ip_addr,
                user_agent=user_agent,
                request_id=request_id,
                details=exc.detail or None,
            )
            raise
        self.audit.log_event(
            "auth.password.reset",
            OUTCOME_SUCCESS,
            actor_id=principal_id,
            ip_address=ip_addr,
            user_agent=user_agent,
            request_id=request_id,
            details={"sessions_revoked": revoked},
        )
        principal = self.store.get_principal(principal_id)
        return principal

    # login and logout

    async def login(
        self,
        email: str,
        password: str,
        *,
        otp_code: Optional[str] = None,
        backup_code: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> LoginResult:
        principal: Optional[Principal] = None
        try:
            await self.limiter.check(
                f"ip:{ip_addr or 'anonymous'}:auth.login",
                self.settings.rate_limit_max_requests,
                self.rate_limit_window_seconds,
            )
            principal = self.store.get_principal_by_email(email)
            if principal is None:
                raise InvalidCredentials("invalid email or password")
            if not principal.is_active:
                raise AuthenticationError("account disabled", reason="account_disabled")
            self._check_lockout(principal.id)
            if not self.verify_password(principal.id, password):
                self._record_failure(principal.id)
                raise InvalidCredentials("invalid email or password")
            self._check_second_factor(principal.id, otp_code, backup_code)
            self.store.reset_failed_logins(principal.id)
            session = self.sessions.create_session(
                principal.id, user_agent=user_agent, ip_addr=ip_addr
            )
        except ServiceError as exc:
            self.audit.log_event(
                "auth.login",
                OUTCOME_FAILURE,
                actor_id=principal.id if principal else None,
                reason=exc.reason,
                ip_address=ip_addr,
                user_agent=user_agent,
                request_id=request_id,
            )
            raise
        self.audit.log_event(
            "auth.login",
            OUTCOME_SUCCESS,
            actor_id=principal.id,
            ip_address=ip_addr,
            user_agent=user_agent,
            request_id=request_id,
        )
        return LoginResult(principal=principal, session=session)

    def _check_lockout(self, principal_id: str) -> None:
        credential = self.store.get_credential(principal_id)
        if credential is None or credential.locked_at is None:
            return
        if credential.is_locked(self.clock.now(), self.lock_window):
            raise AccountLocked("account temporarily locked")
        # lock window elapsed
        self.store.reset_failed_logins(principal_id)

    def _record_failure(self, principal_id: str) -> None:
        credential = self.store.record_failed_login(
            principal_id,
            max_attempts=self.settings.max_failed_logins,
            now=self.clock.now(),
        )
        if credential.locked_at is not None:
            logger.warning(
                "account_locked",
                principal_id=principal_id,
                failed_attempts=credential.failed_attempts,
            )
            raise AccountLocked("account temporarily locked")

    def _check_second_factor(
        self, principal_id: str, otp_code: Optional[str], backup_code: Optional[str]
    ) -> None:
        record = self.store.get_totp_secret(principal_id)
        if record is None or not record.confirmed:
            return
        if otp_code:
            if self.totp.verify(record.secret, otp_code, self._now_ts()):
                return
        elif backup_code:
            if self.consume_backup_code(principal_id, backup_code):
                return
        else:
            raise MFARequired("second factor required")
        self._record_failure(principal_id)
        raise InvalidCredentials(
            "invalid second factor", reason="invalid_second_factor"
        )

    async def logout(self, token: str) -> None:
        self.sessions.revoke(token)

    def sweep_expired_sessions(self) -> int:
        return self.sessions.sweep_expired()

    # second factor

    async def setup_totp(self, principal: Principal) -> TOTPEnrollment:
        existing = self.store.get_totp_secret(principal.id)
        if existing and existing.confirmed:
            raise ConflictError("two-factor authentication already enabled")
        secret = self.totp.generate_secret()
        self.store.set_totp_secret(principal.id, secret, self.clock.now())
        logger.info("totp_enrollment_started", principal_id=principal.id)
        return TOTPEnrollment(
            secret=secret,
            provisioning_uri=self.totp.provisioning_uri(secret, principal.email),
        )

    async def confirm_totp(self, principal_id: str, code: str) -> List[str]:
        """Activate a pending secret and return a fresh set of backup codes."""
        record = self.store.get_totp_secret(principal_id)
        if record is None:
            raise ValidationError("no two-factor enrollment in progress", reason="totp_not_enrolled")
        if record.confirmed:
            raise ConflictError("two-factor authentication already enabled")
        if not self.totp.verify(record.secret, code, self._now_ts()):
            raise ValidationError("invalid verification code", reason="invalid_second_factor")
        self.store.confirm_totp_secret(principal_id, self.clock.now())
        logger.info("totp_enrollment_confirmed", principal_id=principal_id)
        return self._issue_backup_codes(principal_id)

    def verify_totp(self, principal_id: str, code: str) -> bool:
        record = self.store.get_totp_secret(principal_id)
        if record is None or not record.confirmed:
            return False
        return self.totp.verify(record.secret, code, self._now_ts())

    async def disable_totp(self, principal_id: str, password: str) -> None:
        if not self.verify_password(principal_id, password):
            raise InvalidCredentials("password is incorrect")
        record = self.store.get_totp_secret(principal_id)
        if record is None:
            raise ValidationError(
                "two-factor authentication is not enabled", reason="totp_not_enrolled"
            )
        self.store.delete_totp_secret(principal_id)
        logger.info("totp_disabled", principal_id=principal_id)

    def two_factor_status(self, principal_id: str) -> dict:
        record = self.store.get_totp_secret(principal_id)
        return {
            "enabled": bool(record and record.confirmed),
            "pending": bool(record and not record.confirmed),
            "backup_codes_remaining": self.store.count_unused_backup_codes(principal_id),
        }

    def _issue_backup_codes(self, principal_id: str) -> List[str]:
        codes = self.totp.generate_backup_codes(self.settings.backup_code_count)
        self.store.replace_backup_codes(
            principal_id, [self._backup_digest(c) for c in codes], self.clock.now()
        )
        return codes

    async def generate_backup_codes(self, principal_id: str) -> List[str]:
        record = self.store.get_totp_secret(principal_id)
        if record is None or not record.confirmed:
            raise ValidationError(
                "two-factor authentication is not enabled", reason="totp_not_enrolled"
            )
        codes = self._issue_backup_codes(principal_id)
        logger.info("backup_codes_regenerated", principal_id=principal_id, count=len(codes))
        return codes

    def consume_backup_code(self, principal_id: str, code: str) -> bool:
        if not code or not normalize_backup_code(code):
            return False
        consumed = self.store.consume_backup_code(
            principal_id, self._backup_digest(code), self.clock.now()
        )
        if consumed:
            logger.info(
                "backup_code_consumed",
                principal_id=principal_id,
                remaining=self.store.count_unused_backup_codes(principal_id),
            )
        return consumed

    # memberships

    def add_membership(
        self,
        principal_id: str,
        organization_id: str,
        role: str,
        *,
        status: str = MEMBERSHIP_ACTIVE,
    ) -> TenantMembership:
        if role not in ROLE_CAPABILITIES or role == ROLE_SYSTEM_ADMIN:
            raise ValidationError("unknown role", detail={"role": role}, reason="unknown_role")
        if status not in MEMBERSHIP_STATUSES:
            raise ValidationError(
                "unknown membership status", detail={"status": status}, reason="invalid_request"
            )
        membership = TenantMembership(
            principal_id=principal_id,
            organization_id=organization_id,
            role=role,
            status=status,
            joined_at=self.clock.now(),
        )
        try:
            return self.store.add_membership(membership)
        except ConstraintViolation as exc:
            raise ConflictError("membership already exists") from exc
