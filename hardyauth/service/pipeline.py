"""Ordered request stages run ahead of every protected operation.

A stage takes the request context and returns it enriched, or raises a
:class:`ServiceError` which stops the chain. Whatever happens, the pipeline
writes exactly one audit entry for the request.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, FrozenSet, Mapping, Optional, Sequence

from hardyauth.logging import bound_actor, get_logger
from hardyauth.service.audit import AuditLedger
from hardyauth.service.errors import ServerError, ServiceError
from hardyauth.service.rate_limit import RateLimitDecision, RateLimiter
from hardyauth.service.sessions import ResolvedSession, SessionResolver, token_fingerprint
from hardyauth.service.tenancy import RoleAuthorizer, TenantContext, TenantContextResolver
from hardyauth.storage.models import OUTCOME_CANCELLED, OUTCOME_FAILURE, OUTCOME_SUCCESS

logger = get_logger(__name__)

STAGE_RATE_LIMIT = "rate_limit"
STAGE_AUTHENTICATE = "authenticate"
STAGE_PRINCIPAL_RATE_LIMIT = "principal_rate_limit"
STAGE_TENANT = "tenant"
STAGE_AUTHORIZE = "authorize"
CANONICAL_ORDER = (
    STAGE_RATE_LIMIT,
    STAGE_AUTHENTICATE,
    STAGE_PRINCIPAL_RATE_LIMIT,
    STAGE_TENANT,
    STAGE_AUTHORIZE,
)


@dataclass(frozen=True)
class RequestContext:
    operation: str
    carrier: Mapping[str, str] = field(default_factory=dict)
    required_capabilities: FrozenSet[str] = frozenset()
    require_tenant: bool = True
    action_class: Optional[str] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None
    rate_limit: Optional[RateLimitDecision] = None
    principal_rate_limit: Optional[RateLimitDecision] = None
    resolved: Optional[ResolvedSession] = None
    tenant: Optional[TenantContext] = None

    @property
    def principal_id(self) -> Optional[str]:
        return self.resolved.principal.id if self.resolved else None

    @property
    def organization_id(self) -> Optional[str]:
        return self.tenant.organization_id if self.tenant else None

    @property
    def session_fp(self) -> Optional[str]:
        return token_fingerprint(self.resolved.session.token) if self.resolved else None


StageFn = Callable[[RequestContext], Awaitable[RequestContext]]
Handler = Callable[[RequestContext], Awaitable[Any]]


@dataclass(frozen=True)
class PipelineStage:
    name: str
    run: StageFn


def _action(ctx: RequestContext) -> str:
    return ctx.action_class or ctx.operation


def client_rate_limit_key(ctx: RequestContext) -> str:
    """Client ip, else ``anonymous``, per action.

    Caller-supplied tokens are unverified at this point and never feed the
    key, so rotating forged tokens cannot mint fresh counters.
    """
    subject = f"ip:{ctx.client_ip}" if ctx.client_ip else "anonymous"
    return f"{subject}:{_action(ctx)}"


def principal_rate_limit_key(ctx: RequestContext) -> str:
    return f"principal:{ctx.principal_id}:{_action(ctx)}"


def _require(ctx: RequestContext, attr: str, stage: str) -> None:
    if getattr(ctx, attr) is None:
        raise ServerError(
            f"{stage} stage ran before {attr} was resolved",
            detail={"stage": stage},
            reason="pipeline_misconfigured",
        )


def rate_limit_stage(
    limiter: RateLimiter,
    *,
    limit: int,
    window_seconds: float,
) -> PipelineStage:
    async def run(ctx: RequestContext) -> RequestContext:
        decision = await limiter.check(client_rate_limit_key(ctx), limit, window_seconds)
        return replace(ctx, rate_limit=decision)

    return PipelineStage(STAGE_RATE_LIMIT, run)


def authenticate_stage(sessions: SessionResolver) -> PipelineStage:
    async def run(ctx: RequestContext) -> RequestContext:
        return replace(ctx, resolved=sessions.resolve(ctx.carrier))

    return PipelineStage(STAGE_AUTHENTICATE, run)


def principal_rate_limit_stage(
    limiter: RateLimiter,
    *,
    limit: int,
    window_seconds: float,
) -> PipelineStage:
    """Per-actor budget, keyed only once the session has resolved."""

    async def run(ctx: RequestContext) -> RequestContext:
        _require(ctx, "resolved", STAGE_PRINCIPAL_RATE_LIMIT)
        decision = await limiter.check(principal_rate_limit_key(ctx), limit, window_seconds)
        return replace(ctx, principal_rate_limit=decision)

    return PipelineStage(STAGE_PRINCIPAL_RATE_LIMIT, run)


def tenant_stage(tenants: TenantContextResolver) -> PipelineStage:
    async def run(ctx: RequestContext) -> RequestContext:
        _require(ctx, "resolved", STAGE_TENANT)
        return replace(ctx, tenant=tenants.resolve(ctx.resolved.principal))

    return PipelineStage(STAGE_TENANT, run)


def authorize_stage(authorizer: RoleAuthorizer) -> PipelineStage:
    async def run(ctx: RequestContext) -> RequestContext:
        _require(ctx, "tenant", STAGE_AUTHORIZE)
        authorizer.authorize(
            ctx.tenant, ctx.required_capabilities, require_tenant=ctx.require_tenant
        )
        return ctx

    return PipelineStage(STAGE_AUTHORIZE, run)


class RequestPipeline:
    def __init__(self, stages: Sequence[PipelineStage], audit: AuditLedger) -> None:
        self.stages = tuple(stages)
        self.audit = audit

    @property
    def stage_names(self) -> tuple[str, ...]:
        return tuple(stage.name for stage in self.stages)

    async def run(self, ctx: RequestContext, handler: Handler) -> Any:
        current = ctx
        stage_name = None
        try:
            for stage in self.stages:
                stage_name = stage.name
                current = await stage.run(current)
            stage_name = "handler"
            with bound_actor(current.principal_id, current.organization_id):
                result = await handler(current)
        except asyncio.CancelledError:
            self._audit(current, OUTCOME_CANCELLED, reason="cancelled", stage=stage_name)
            raise
        except ServiceError as exc:
            self._audit(current, OUTCOME_FAILURE, reason=exc.reason, stage=stage_name)
            raise
        except Exception:
            logger.exception("pipeline_handler_error", operation=ctx.operation, stage=stage_name)
            self._audit(current, OUTCOME_FAILURE, reason="server_error", stage=stage_name)
            raise
        self._audit(current, OUTCOME_SUCCESS)
        return result

    def _audit(
        self,
        ctx: RequestContext,
        outcome: str,
        *,
        reason: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> None:
        details = {"stage": stage} if stage else None
        self.audit.log_event(
            ctx.operation,
            outcome,
            actor_id=ctx.principal_id,
            organization_id=ctx.organization_id,
            reason=reason,
            ip_address=ctx.client_ip,
            user_agent=ctx.user_agent,
            request_id=ctx.request_id,
            session_id=ctx.session_fp,
            details=details,
        )


def build_pipeline(
    *,
    limiter: RateLimiter,
    sessions: SessionResolver,
    tenants: TenantContextResolver,
    authorizer: RoleAuthorizer,
    audit: AuditLedger,
    limit: int,
    window_seconds: float,
) -> RequestPipeline:
    """Pipeline with every stage in canonical order."""
    return RequestPipeline(
        (
            rate_limit_stage(limiter, limit=limit, window_seconds=window_seconds),
            authenticate_stage(sessions),
            principal_rate_limit_stage(limiter, limit=limit, window_seconds=window_seconds),
            tenant_stage(tenants),
            authorize_stage(authorizer),
        ),
        audit,
    )
