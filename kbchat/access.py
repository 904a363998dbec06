"""
Origin-based access control (CORS) per tenant.

Browser callers are scoped by Origin: a tenant only answers to the origins
registered for it. Preflights carry no tenant payload, so they are granted
for any origin registered under some tenant. Requests without an Origin
header are server-to-server and never get CORS headers; they go straight to
the route, which does the authoritative tenant/origin validation.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Optional

from kbchat.registry import TenantRegistry, normalize_slug


class DecisionKind(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    DEFER_TO_ROUTE = "defer_to_route"


@dataclass(frozen=True)
class Decision:
    kind: DecisionKind
    origin: Optional[str] = None

    @property
    def granted(self) -> bool:
        return self.kind is DecisionKind.ALLOW


DENY = Decision(DecisionKind.DENY)
DEFER = Decision(DecisionKind.DEFER_TO_ROUTE)


class AccessGuard:
    ALLOW_HEADERS = "Content-Type, Authorization"
    ALLOW_METHODS = "GET, POST, OPTIONS"

    def __init__(self, registry: TenantRegistry, fallback_origins: Iterable[str] = ()):
        self.registry = registry
        self.fallback_origins = frozenset(fallback_origins)

    def is_allowed_origin(self, tenant_slug: str, origin: str) -> bool:
        """Exact match against the tenant's origins (or the fallback allowlist)."""
        if origin in self.fallback_origins:
            return True
        tenant = self.registry.get(tenant_slug)
        return tenant is not None and origin in tenant.allowed_origins

    def is_known_origin(self, origin: str) -> bool:
        """True if any tenant (or the fallback allowlist) trusts this origin."""
        if origin in self.fallback_origins:
            return True
        return self.registry.snapshot.is_known_origin(origin)

    def authorize(self, tenant_slug_raw: Optional[str], origin: Optional[str], is_preflight: bool) -> Decision:
        origin = origin or ""
        if is_preflight:
            return Decision(DecisionKind.ALLOW, origin) if origin and self.is_known_origin(origin) else DENY
        if not origin:
            return DEFER
        slug = normalize_slug(tenant_slug_raw)
        if self.is_allowed_origin(slug, origin):
            return Decision(DecisionKind.ALLOW, origin)
        # No CORS headers; the route rejects unknown tenants/origins itself
        return DEFER

    def cors_headers(self, decision: Decision) -> Dict[str, str]:
        if not decision.granted or not decision.origin:
            return {}
        return {
            "Access-Control-Allow-Origin": decision.origin,
            "Access-Control-Allow-Headers": self.ALLOW_HEADERS,
            "Access-Control-Allow-Methods": self.ALLOW_METHODS,
        }

    def apply(self, response, decision: Decision) -> None:
        """Set CORS headers on a response (if granted) and mark it origin-dependent."""
        for key, value in self.cors_headers(decision).items():
            response.headers[key] = value
        response.headers["Vary"] = "Origin"
