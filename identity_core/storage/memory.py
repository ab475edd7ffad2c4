from __future__ import annotations

import copy
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from identity_core.logging import get_logger
from identity_core.storage.errors import ConstraintViolation
from identity_core.storage.models import (
    AuditEvent,
    Entitlement,
    RefreshToken,
    RegisteredClient,
    Session,
    utcnow,
)


class MemoryStore:
    """In-memory backing store for tests and single-process development.

    Implements the same surface as ``PostgresStore``: client registry,
    entitlement lookups, refresh-token persistence, upstream sessions and the
    audit sink. Returned records are copies so callers cannot mutate state
    without going through the store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.sessions: Dict[str, Session] = {}
        self.clients: Dict[str, RegisteredClient] = {}
        self.entitlements: Dict[str, Entitlement] = {}
        # token_hash -> record
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so helpers can call each other while holding the lock
        self._data_lock = threading.RLock()

    # -- upstream sessions -------------------------------------------------

    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        email: str | None = None,
        organization_id: str | None = None,
        meta: Optional[dict] = None,
    ) -> Session:
        sess = Session.new(
            user_id,
            ttl_minutes=ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
            email=email,
            organization_id=organization_id,
            meta=meta,
        )
        with self._data_lock:
            self.sessions[sess.id] = sess
        return copy.copy(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return copy.copy(sess) if sess else None

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess and sess.revoked_at is None:
                sess.revoked_at = utcnow()

    # -- client registry ---------------------------------------------------

    def register_client(
        self,
        client_id: str,
        *,
        product_id: str | None = None,
        name: str | None = None,
        redirect_uris: Iterable[str] = (),
        scopes: Iterable[str] = (),
        client_secret_hash: str | None = None,
    ) -> RegisteredClient:
        client = RegisteredClient(
            client_id=client_id,
            product_id=product_id or str(uuid.uuid4()),
            name=name or client_id,
            redirect_uris=list(redirect_uris),
            scopes=list(scopes),
            client_secret_hash=client_secret_hash,
        )
        with self._data_lock:
            if client_id in self.clients:
                raise ConstraintViolation(
                    "client already registered", {"client_id": client_id}
                )
            self.clients[client_id] = client
        return copy.deepcopy(client)

    def get_client(self, client_id: str) -> Optional[RegisteredClient]:
        with self._data_lock:
            client = self.clients.get(client_id)
            return copy.deepcopy(client) if client else None

    # -- entitlements ------------------------------------------------------

    def grant_entitlement(
        self,
        *,
        user_id: str,
        product_id: str,
        tenant_id: str,
        organization_id: str,
        roles: Iterable[str] = (),
        expires_at: datetime | None = None,
    ) -> Entitlement:
        """Upsert on (user, product, tenant), mirroring the unique key in Postgres."""
        with self._data_lock:
            for existing in self.entitlements.values():
                if (
                    existing.user_id == user_id
                    and existing.product_id == product_id
                    and existing.tenant_id == tenant_id
                ):
                    existing.roles = list(roles)
                    existing.expires_at = expires_at
                    return copy.deepcopy(existing)
            ent = Entitlement(
                id=str(uuid.uuid4()),
                user_id=user_id,
                product_id=product_id,
                tenant_id=tenant_id,
                organization_id=organization_id,
                roles=list(roles),
                expires_at=expires_at,
            )
            self.entitlements[ent.id] = ent
            return copy.deepcopy(ent)

    def revoke_entitlement(self, *, user_id: str, product_id: str, tenant_id: str) -> bool:
        with self._data_lock:
            for ent_id, ent in list(self.entitlements.items()):
                if (
                    ent.user_id == user_id
                    and ent.product_id == product_id
                    and ent.tenant_id == tenant_id
                ):
                    del self.entitlements[ent_id]
                    return True
        return False

    def list_entitlements(self, user_id: str) -> List[Entitlement]:
        with self._data_lock:
            matches = [
                copy.deepcopy(ent)
                for ent in self.entitlements.values()
                if ent.user_id == user_id
            ]
        return sorted(matches, key=lambda ent: ent.created_at)

    # -- refresh tokens ----------------------------------------------------

    def issue_refresh_token(
        self,
        token_hash: str,
        *,
        user_id: str,
        client_id: str,
        expires_at: datetime,
        product_id: str | None = None,
        tenant_id: str | None = None,
        session_id: str | None = None,
        scope: str | None = None,
        description: str | None = None,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> RefreshToken:
        record = RefreshToken(
            id=str(uuid.uuid4()),
            token_hash=token_hash,
            user_id=user_id,
            client_id=client_id,
            expires_at=expires_at,
            product_id=product_id,
            tenant_id=tenant_id,
            session_id=session_id,
            scope=scope,
            description=description,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        with self._data_lock:
            if token_hash in self.refresh_tokens:
                raise ConstraintViolation("refresh token hash collision")
            self.refresh_tokens[token_hash] = record
        return copy.copy(record)

    def rotate_refresh_token(
        self, old_hash: str, new_hash: str, **fields: Any
    ) -> Optional[RefreshToken]:
        """Revoke ``old_hash`` and store its successor under one lock.

        Returns None, writing nothing, when ``old_hash`` is no longer active.
        """
        record = RefreshToken(id=str(uuid.uuid4()), token_hash=new_hash, **fields)
        with self._data_lock:
            previous = self.refresh_tokens.get(old_hash)
            if not previous or previous.revoked_at is not None:
                return None
            if new_hash in self.refresh_tokens:
                raise ConstraintViolation("refresh token hash collision")
            previous.revoked_at = utcnow()
            self.refresh_tokens[new_hash] = record
        return copy.copy(record)

    def find_active_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if not record or record.revoked_at is not None:
                return None
            return copy.copy(record)

    def revoke_refresh_token(self, token_hash: str) -> bool:
        """Revoke if still active; returns True only for the caller that flipped it."""
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if not record or record.revoked_at is not None:
                return False
            record.revoked_at = utcnow()
            return True

    def revoke_refresh_tokens_for_session(self, session_id: str) -> int:
        revoked = 0
        now = utcnow()
        with self._data_lock:
            for record in self.refresh_tokens.values():
                if record.session_id == session_id and record.revoked_at is None:
                    record.revoked_at = now
                    revoked += 1
        return revoked

    def list_refresh_tokens_for_user(self, user_id: str) -> List[RefreshToken]:
        with self._data_lock:
            records = [
                copy.copy(rec)
                for rec in self.refresh_tokens.values()
                if rec.user_id == user_id
            ]
        return sorted(records, key=lambda rec: rec.created_at, reverse=True)

    # -- audit -------------------------------------------------------------

    def record_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(event)

    def verify_connection(self) -> None:
        return None
