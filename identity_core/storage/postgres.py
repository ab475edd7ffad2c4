from __future__ import annotations

import contextlib
import json
import uuid
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from identity_core.logging import get_logger, sanitize_error_message
from identity_core.storage.errors import ConstraintViolation, StoreUnavailable
from identity_core.storage.models import (
    AuditEvent,
    Entitlement,
    RefreshToken,
    RegisteredClient,
    Session,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS oauth_client (
        client_id TEXT PRIMARY KEY,
        product_id TEXT NOT NULL,
        name TEXT NOT NULL,
        redirect_uris TEXT[] NOT NULL DEFAULT '{}',
        scopes TEXT[] NOT NULL DEFAULT '{}',
        client_secret_hash TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS product_entitlement (
        id UUID PRIMARY KEY,
        user_id TEXT NOT NULL,
        product_id TEXT NOT NULL,
        tenant_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        roles TEXT[] NOT NULL DEFAULT '{}',
        expires_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (user_id, product_id, tenant_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL,
        client_id TEXT NOT NULL,
        product_id TEXT,
        tenant_id TEXT,
        session_id TEXT,
        scope TEXT,
        description TEXT,
        user_agent TEXT,
        ip_address TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        revoked_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_session_idx ON refresh_token (session_id) WHERE revoked_at IS NULL",
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        email TEXT,
        organization_id TEXT,
        user_agent TEXT,
        ip_addr TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_event (
        id UUID PRIMARY KEY,
        event_type TEXT NOT NULL,
        actor_user_id TEXT NOT NULL,
        organization_id TEXT,
        tenant_id TEXT,
        product_id TEXT,
        description TEXT,
        ip_address TEXT,
        user_agent TEXT,
        metadata JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed store shared by every identity instance.

    Refresh-token revocation is a conditional ``UPDATE ... WHERE revoked_at IS
    NULL`` so concurrent rotations of the same token agree on a single winner.
    """

    def __init__(self, dsn: str, *, pool: ConnectionPool | None = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "unique constraint violated",
                {"constraint": getattr(exc.diag, "constraint_name", None)},
            ) from exc
        except errors.OperationalError as exc:
            self.logger.error(
                "postgres_unavailable", error=sanitize_error_message(str(exc))
            )
            raise StoreUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

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
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_session (id, user_id, email, organization_id, user_agent, ip_addr, created_at, expires_at, meta)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    sess.id,
                    sess.user_id,
                    sess.email,
                    sess.organization_id,
                    sess.user_agent,
                    sess.ip_addr,
                    sess.created_at,
                    sess.expires_at,
                    json.dumps(meta) if meta is not None else None,
                ),
            )
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        meta = row.get("meta")
        if isinstance(meta, str):
            try:
                meta = json.loads(meta)
            except ValueError:
                meta = None
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            email=row.get("email"),
            organization_id=row.get("organization_id"),
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
            revoked_at=row.get("revoked_at"),
            meta=meta,
        )

    def revoke_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET revoked_at = now() WHERE id = %s AND revoked_at IS NULL",
                (session_id,),
            )

    # -- client registry ---------------------------------------------------

    def register_client(
        self,
        client_id: str,
        *,
        product_id: str | None = None,
        name: str | None = None,
        redirect_uris: List[str] | tuple = (),
        scopes: List[str] | tuple = (),
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
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO oauth_client (client_id, product_id, name, redirect_uris, scopes, client_secret_hash)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    client.client_id,
                    client.product_id,
                    client.name,
                    client.redirect_uris,
                    client.scopes,
                    client.client_secret_hash,
                ),
            )
        return client

    def get_client(self, client_id: str) -> Optional[RegisteredClient]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_client WHERE client_id = %s", (client_id,)
            ).fetchone()
        if not row:
            return None
        return RegisteredClient(
            client_id=row["client_id"],
            product_id=str(row["product_id"]),
            name=row["name"],
            redirect_uris=list(row.get("redirect_uris") or []),
            scopes=list(row.get("scopes") or []),
            client_secret_hash=row.get("client_secret_hash"),
        )

    # -- entitlements ------------------------------------------------------

    def grant_entitlement(
        self,
        *,
        user_id: str,
        product_id: str,
        tenant_id: str,
        organization_id: str,
        roles: List[str] | tuple = (),
        expires_at: datetime | None = None,
    ) -> Entitlement:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO product_entitlement (id, user_id, product_id, tenant_id, organization_id, roles, expires_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id, product_id, tenant_id)
                DO UPDATE SET roles = EXCLUDED.roles, expires_at = EXCLUDED.expires_at
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    user_id,
                    product_id,
                    tenant_id,
                    organization_id,
                    list(roles),
                    expires_at,
                ),
            ).fetchone()
        return self._entitlement_from_row(row)

    def revoke_entitlement(self, *, user_id: str, product_id: str, tenant_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM product_entitlement WHERE user_id = %s AND product_id = %s AND tenant_id = %s",
                (user_id, product_id, tenant_id),
            )
        return cur.rowcount > 0

    def list_entitlements(self, user_id: str) -> List[Entitlement]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM product_entitlement WHERE user_id = %s ORDER BY created_at ASC",
                (user_id,),
            ).fetchall()
        return [self._entitlement_from_row(row) for row in rows]

    @staticmethod
    def _entitlement_from_row(row: Dict[str, Any]) -> Entitlement:
        return Entitlement(
            id=str(row["id"]),
            user_id=row["user_id"],
            product_id=str(row["product_id"]),
            tenant_id=str(row["tenant_id"]),
            organization_id=str(row["organization_id"]),
            roles=list(row.get("roles") or []),
            expires_at=row.get("expires_at"),
            created_at=row["created_at"],
        )

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
        with self._connect() as conn:
            row = self._insert_refresh_token(
                conn,
                token_hash,
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
        return self._refresh_token_from_row(row)

    def rotate_refresh_token(
        self, old_hash: str, new_hash: str, **fields: Any
    ) -> Optional[RefreshToken]:
        """Revoke ``old_hash`` and insert its successor in one transaction.

        A failed insert rolls the revoke back. Returns None, writing nothing,
        when ``old_hash`` is no longer active.
        """
        with self._connect() as conn:
            with conn.transaction():
                cur = conn.execute(
                    "UPDATE refresh_token SET revoked_at = now() WHERE token_hash = %s AND revoked_at IS NULL",
                    (old_hash,),
                )
                if cur.rowcount == 0:
                    return None
                row = self._insert_refresh_token(conn, new_hash, **fields)
        return self._refresh_token_from_row(row)

    @staticmethod
    def _insert_refresh_token(
        conn,
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
    ) -> Dict[str, Any]:
        return conn.execute(
            """
            INSERT INTO refresh_token (id, token_hash, user_id, client_id, product_id, tenant_id, session_id, scope, description, user_agent, ip_address, expires_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                str(uuid.uuid4()),
                token_hash,
                user_id,
                client_id,
                product_id,
                tenant_id,
                session_id,
                scope,
                description,
                user_agent,
                ip_address,
                expires_at,
            ),
        ).fetchone()

    def find_active_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s AND revoked_at IS NULL",
                (token_hash,),
            ).fetchone()
        return self._refresh_token_from_row(row) if row else None

    def revoke_refresh_token(self, token_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked_at = now() WHERE token_hash = %s AND revoked_at IS NULL",
                (token_hash,),
            )
            return cur.rowcount > 0

    def revoke_refresh_tokens_for_session(self, session_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked_at = now() WHERE session_id = %s AND revoked_at IS NULL",
                (session_id,),
            )
            return cur.rowcount

    def list_refresh_tokens_for_user(self, user_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._refresh_token_from_row(row) for row in rows]

    @staticmethod
    def _refresh_token_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            token_hash=row["token_hash"],
            user_id=row["user_id"],
            client_id=row["client_id"],
            expires_at=row["expires_at"],
            product_id=row.get("product_id"),
            tenant_id=row.get("tenant_id"),
            session_id=row.get("session_id"),
            scope=row.get("scope"),
            description=row.get("description"),
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
            created_at=row["created_at"],
            revoked_at=row.get("revoked_at"),
        )

    # -- audit -------------------------------------------------------------

    def record_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_event (id, event_type, actor_user_id, organization_id, tenant_id, product_id, description, ip_address, user_agent, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.event_type,
                    event.actor_user_id,
                    event.organization_id,
                    event.tenant_id,
                    event.product_id,
                    event.description,
                    event.ip_address,
                    event.user_agent,
                    json.dumps(event.metadata) if event.metadata is not None else None,
                    event.created_at,
                ),
            )

    def close(self) -> None:
        self.pool.close()
