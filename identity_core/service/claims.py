from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional, Tuple


@dataclass(frozen=True)
class AccessTokenContext:
    """Who a token set is for; the only input claims are derived from."""

    user_id: str
    client_id: str
    product_id: str
    tenant_id: str
    organization_id: str
    roles: Tuple[str, ...] = ()
    scope: str = ""
    session_id: Optional[str] = None
    email: Optional[str] = None

    def __post_init__(self) -> None:
        for name in ("user_id", "client_id", "product_id", "tenant_id", "organization_id"):
            if not getattr(self, name):
                raise ValueError(f"{name} is required")
        # Accept lists from callers but keep the snapshot immutable.
        object.__setattr__(self, "roles", tuple(self.roles))


@dataclass(frozen=True)
class AccessTokenClaims:
    typ: ClassVar[str] = "at+jwt"

    iss: str
    sub: str
    aud: str
    iat: int
    exp: int
    tenant_id: str
    organization_id: str
    product_id: str
    roles: Tuple[str, ...]
    scope: str
    jti: str = field(default_factory=lambda: str(uuid.uuid4()))
    session_id: Optional[str] = None
    email: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "iss": self.iss,
            "sub": self.sub,
            "aud": self.aud,
            "iat": self.iat,
            "exp": self.exp,
            "jti": self.jti,
            "tenant_id": self.tenant_id,
            "organization_id": self.organization_id,
            "product_id": self.product_id,
            "roles": list(self.roles),
            "scope": self.scope,
        }
        if self.session_id:
            data["session_id"] = self.session_id
        if self.email:
            data["email"] = self.email
        return data


@dataclass(frozen=True)
class IdTokenClaims:
    typ: ClassVar[str] = "JWT"

    iss: str
    sub: str
    aud: str
    iat: int
    exp: int
    org_id: str
    tenant_id: str
    product_id: str
    roles: Tuple[str, ...]
    email: Optional[str] = None
    nonce: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "iss": self.iss,
            "sub": self.sub,
            "aud": self.aud,
            "iat": self.iat,
            "exp": self.exp,
            "org_id": self.org_id,
            "tenant_id": self.tenant_id,
            "product_id": self.product_id,
            "roles": list(self.roles),
        }
        if self.email:
            data["email"] = self.email
        if self.nonce:
            data["nonce"] = self.nonce
        return data


def build_access_claims(
    context: AccessTokenContext, *, issuer: str, issued_at: int, ttl_seconds: int
) -> AccessTokenClaims:
    return AccessTokenClaims(
        iss=issuer,
        sub=context.user_id,
        aud=context.client_id,
        iat=issued_at,
        exp=issued_at + ttl_seconds,
        tenant_id=context.tenant_id,
        organization_id=context.organization_id,
        product_id=context.product_id,
        roles=context.roles,
        scope=context.scope,
        session_id=context.session_id,
        email=context.email,
    )


def build_id_claims(
    context: AccessTokenContext,
    *,
    issuer: str,
    issued_at: int,
    ttl_seconds: int,
    nonce: Optional[str] = None,
) -> IdTokenClaims:
    return IdTokenClaims(
        iss=issuer,
        sub=context.user_id,
        aud=context.client_id,
        iat=issued_at,
        exp=issued_at + ttl_seconds,
        org_id=context.organization_id,
        tenant_id=context.tenant_id,
        product_id=context.product_id,
        roles=context.roles,
        email=context.email,
        nonce=nonce,
    )


__all__ = [
    "AccessTokenContext",
    "AccessTokenClaims",
    "IdTokenClaims",
    "build_access_claims",
    "build_id_claims",
]
