from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Pattern, Tuple

from hardyauth.logging import get_logger
from hardyauth.service.errors import Forbidden, TenantRequired
from hardyauth.storage.interfaces import MembershipStore
from hardyauth.storage.models import Principal, TenantMembership

logger = get_logger(__name__)

ROLE_SYSTEM_ADMIN = "system_admin"
ALL_CAPABILITIES = "*"

# Capabilities granted to each organization role
ROLE_CAPABILITIES: Dict[str, FrozenSet[str]] = {
    ROLE_SYSTEM_ADMIN: frozenset({ALL_CAPABILITIES}),
    "tenant_admin": frozenset(
        {
            "organization:create",
            "organization:read",
            "organization:update",
            "organization:delete",
            "member:create",
            "member:read",
            "member:update",
            "member:delete",
            "member:invite",
            "member:remove",
            "role:assign",
            "role:revoke",
            "billing:read",
            "billing:update",
            "settings:read",
            "settings:update",
            "audit:read",
        }
    ),
    "admin": frozenset(
        {
            "organization:read",
            "member:read",
            "member:update",
            "member:invite",
            "settings:read",
            "settings:update",
        }
    ),
    "clinician": frozenset(
        {
            "organization:read",
            "member:read",
            "patient:create",
            "patient:read",
            "patient:update",
            "appointment:create",
            "appointment:read",
            "appointment:update",
            "clinical_notes:create",
            "clinical_notes:read",
            "clinical_notes:update",
        }
    ),
    "staff": frozenset(
        {
            "organization:read",
            "member:read",
            "patient:read",
            "appointment:read",
            "appointment:create",
            "appointment:update",
        }
    ),
    "patient": frozenset(
        {
            "profile:read",
            "profile:update",
            "appointment:read",
            "appointment:create",
            "medical_records:read",
        }
    ),
}


@dataclass(frozen=True)
class AdminIdentityPolicy:
    """Which identities are global administrators.

    Matches exact emails, email domains (``example.org`` matches
    ``a@example.org`` and ``a@eu.example.org``) and full-match regex patterns.
    All comparisons are case-insensitive.
    """

    emails: FrozenSet[str] = frozenset()
    domains: Tuple[str, ...] = ()
    patterns: Tuple[Pattern[str], ...] = ()

    @classmethod
    def from_config(
        cls,
        *,
        emails: Iterable[str] = (),
        domains: Iterable[str] = (),
        patterns: Iterable[str] = (),
    ) -> "AdminIdentityPolicy":
        return cls(
            emails=frozenset(e.strip().lower() for e in emails if e.strip()),
            domains=tuple(d.strip().lower().lstrip("@") for d in domains if d.strip()),
            patterns=tuple(re.compile(p, re.IGNORECASE) for p in patterns if p),
        )

    def matches(self, principal: Principal) -> bool:
        email = (principal.email or "").strip().lower()
        if not email:
            return False
        if email in self.emails:
            return True
        _, _, domain = email.rpartition("@")
        for allowed in self.domains:
            if domain == allowed or domain.endswith("." + allowed):
                return True
        return any(pattern.fullmatch(email) for pattern in self.patterns)


@dataclass(frozen=True)
class TenantContext:
    principal_id: str
    organization_id: Optional[str]
    role: Optional[str]
    is_system_admin: bool = False

    @property
    def scoped(self) -> bool:
        return self.organization_id is not None

    def require_scope(self) -> str:
        if not self.organization_id:
            raise TenantRequired("tenant context required")
        return self.organization_id


class TenantContextResolver:
    """Determine the caller's organization scope and role.

    Precedence: global administrator policy, then the earliest-joined active
    membership, then an unscoped context with no role.
    """

    def __init__(self, memberships: MembershipStore, policy: AdminIdentityPolicy) -> None:
        self.memberships = memberships
        self.policy = policy

    def resolve(self, principal: Principal) -> TenantContext:
        if self.policy.matches(principal):
            return TenantContext(
                principal_id=principal.id,
                organization_id=None,
                role=ROLE_SYSTEM_ADMIN,
                is_system_admin=True,
            )
        primary = self._primary_membership(principal.id)
        if primary is None:
            return TenantContext(principal_id=principal.id, organization_id=None, role=None)
        return TenantContext(
            principal_id=principal.id,
            organization_id=primary.organization_id,
            role=primary.role,
        )

    def _active_memberships(self, principal_id: str) -> List[TenantMembership]:
        memberships = self.memberships.list_memberships(principal_id)
        return sorted(
            (m for m in memberships if m.active), key=lambda m: m.joined_at
        )

    def _primary_membership(self, principal_id: str) -> Optional[TenantMembership]:
        active = self._active_memberships(principal_id)
        return active[0] if active else None

    def validate_organization_access(self, principal_id: str, organization_id: str) -> bool:
        return any(
            m.organization_id == organization_id
            for m in self._active_memberships(principal_id)
        )

    def has_organization_role(
        self, principal_id: str, organization_id: str, roles: Iterable[str]
    ) -> bool:
        wanted = set(roles)
        return any(
            m.organization_id == organization_id and m.role in wanted
            for m in self._active_memberships(principal_id)
        )

    def list_organizations(self, principal_id: str) -> List[TenantMembership]:
        return self._active_memberships(principal_id)


@dataclass(frozen=True)
class RoleAuthorizer:
    """Compare a resolved role against the capabilities an operation needs."""

    role_capabilities: Dict[str, FrozenSet[str]] = field(
        default_factory=lambda: dict(ROLE_CAPABILITIES)
    )

    def capabilities_for(self, role: Optional[str]) -> FrozenSet[str]:
        if not role:
            return frozenset()
        return self.role_capabilities.get(role, frozenset())

    def allows(self, role: Optional[str], required: Iterable[str]) -> bool:
        granted = self.capabilities_for(role)
        if ALL_CAPABILITIES in granted:
            return True
        return set(required) <= granted

    def authorize(
        self,
        context: TenantContext,
        required: Iterable[str],
        *,
        require_tenant: bool = True,
    ) -> None:
        required = frozenset(required)
        if context.is_system_admin:
            return
        if require_tenant and not context.scoped:
            raise TenantRequired("tenant context required")
        if not required:
            return
        if not context.scoped or not self.allows(context.role, required):
            missing = sorted(required - self.capabilities_for(context.role))
            logger.info(
                "authorization_denied",
                principal_id=context.principal_id,
                role=context.role,
                missing=missing,
            )
            raise Forbidden(
                "insufficient permissions", detail={"missing": missing}
            )
