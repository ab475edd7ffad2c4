from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    """An upstream login session; the authorize endpoint only trusts callers holding one."""

    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    email: Optional[str] = None
    organization_id: Optional[str] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    revoked_at: Optional[datetime] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        email: str | None = None,
        organization_id: str | None = None,
        meta: Dict | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            email=email,
            organization_id=organization_id,
            user_agent=user_agent,
            ip_addr=ip_addr,
            meta=meta,
        )

    def is_active(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.revoked_at is None and self.expires_at > now


@dataclass
class RegisteredClient:
    """A product's OAuth client registration."""

    client_id: str
    product_id: str
    name: str
    redirect_uris: List[str] = field(default_factory=list)
    scopes: List[str] = field(default_factory=list)
    client_secret_hash: Optional[str] = None


@dataclass
class Entitlement:
    id: str
    user_id: str
    product_id: str
    tenant_id: str
    organization_id: str
    roles: List[str] = field(default_factory=list)
    expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_active(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return True
        return self.expires_at >= (now or utcnow())


@dataclass
class RefreshToken:
    """Durable refresh-token row; only the SHA-256 of the opaque value is kept."""

    id: str
    token_hash: str
    user_id: str
    client_id: str
    expires_at: datetime
    product_id: Optional[str] = None
    tenant_id: Optional[str] = None
    session_id: Optional[str] = None
    scope: Optional[str] = None
    description: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass
class AuditEvent:
    event_type: str
    actor_user_id: str
    organization_id: Optional[str] = None
    tenant_id: Optional[str] = None
    product_id: Optional[str] = None
    description: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
