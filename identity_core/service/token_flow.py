from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from identity_core.logging import get_logger
from identity_core.service.authorize import AuthorizeFlow
from identity_core.service.claims import AccessTokenContext
from identity_core.service.client_auth import verify_client_secret, verify_pkce
from identity_core.service.errors import OAuthErrorCode, OAuthFailure, RefreshTokenReplayError
from identity_core.service.tokens import TokenIssueOptions, TokenService, TokenSet
from identity_core.storage.models import AuditEvent, RegisteredClient

logger = get_logger(__name__)

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"

AUDIT_TOKEN_ISSUED = "TOKEN_ISSUED"
AUDIT_TOKEN_REFRESHED = "TOKEN_REFRESHED"
AUDIT_SESSION_REVOKED = "SESSION_REVOKED"


@dataclass(frozen=True)
class TokenRequest:
    grant_type: str
    client_id: str
    client_secret: Optional[str] = None
    code: Optional[str] = None
    code_verifier: Optional[str] = None
    redirect_uri: Optional[str] = None
    refresh_token: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass(frozen=True)
class TokenFlowResult:
    token_set: TokenSet
    scope: str
    grant_type: str
    user_id: str

    def to_dict(self) -> dict:
        body = self.token_set.to_dict()
        body["scope"] = self.scope
        return body


class TokenFlow:
    """Exchanges an authorization code or a refresh token for a token set."""

    def __init__(
        self,
        store,
        code_store,
        tokens: TokenService,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.code_store = code_store
        self.tokens = tokens
        self._clock = clock

    async def run(self, request: TokenRequest) -> Union[TokenFlowResult, OAuthFailure]:
        if request.grant_type not in (GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN):
            return OAuthFailure(
                OAuthErrorCode.UNSUPPORTED_GRANT_TYPE,
                "grant_type must be authorization_code or refresh_token",
            )
        if not request.client_id:
            return OAuthFailure.invalid_request("client_id is required")

        client = await self._authenticate_client(request)
        if client is None:
            return OAuthFailure.invalid_client()

        if request.grant_type == GRANT_AUTHORIZATION_CODE:
            return await self._exchange_code(client, request)
        return await self._refresh(client, request)

    async def _authenticate_client(self, request: TokenRequest) -> Optional[RegisteredClient]:
        client = await asyncio.to_thread(self.store.get_client, request.client_id)
        if client is None:
            logger.info("token_unknown_client")
            return None
        if client.client_secret_hash and not await asyncio.to_thread(
            verify_client_secret, request.client_secret, client.client_secret_hash
        ):
            logger.warning("token_client_secret_mismatch", client_id=client.client_id)
            return None
        return client

    async def _exchange_code(
        self, client: RegisteredClient, request: TokenRequest
    ) -> Union[TokenFlowResult, OAuthFailure]:
        if not request.code or not request.redirect_uri or not request.code_verifier:
            return OAuthFailure.invalid_request(
                "code, redirect_uri and code_verifier are required"
            )

        entry = await self.code_store.consume(request.code)
        if entry is None:
            return OAuthFailure.invalid_grant("authorization code is invalid or expired")
        payload = entry.payload
        if payload.client_id != client.client_id or payload.redirect_uri != request.redirect_uri:
            logger.warning("authorization_code_binding_mismatch", client_id=client.client_id)
            return OAuthFailure.invalid_grant("authorization code was not issued to this client")
        if not verify_pkce(request.code_verifier, payload.code_challenge, payload.code_challenge_method):
            logger.info("pkce_verification_failed", client_id=client.client_id)
            return OAuthFailure.invalid_grant("code_verifier does not match code_challenge")

        context = AccessTokenContext(
            user_id=payload.user_id,
            client_id=payload.client_id,
            product_id=payload.product_id,
            tenant_id=payload.tenant_id,
            organization_id=payload.organization_id,
            roles=payload.roles,
            scope=payload.scope,
            session_id=payload.session_id,
            email=payload.email,
        )
        token_set = await self.tokens.issue_token_set(
            context,
            TokenIssueOptions(
                nonce=payload.nonce,
                description=f"{client.name} authorization_code",
                user_agent=request.user_agent,
                ip_address=request.ip_address,
            ),
        )
        await self._audit(AUDIT_TOKEN_ISSUED, context, request, GRANT_AUTHORIZATION_CODE)
        return TokenFlowResult(
            token_set=token_set,
            scope=payload.scope,
            grant_type=GRANT_AUTHORIZATION_CODE,
            user_id=payload.user_id,
        )

    async def _refresh(
        self, client: RegisteredClient, request: TokenRequest
    ) -> Union[TokenFlowResult, OAuthFailure]:
        if not request.refresh_token:
            return OAuthFailure.invalid_request("refresh_token is required")

        record = await self.tokens.validate_refresh_token(request.refresh_token, client.client_id)
        if record is None:
            return OAuthFailure.invalid_grant("refresh token is invalid or expired")

        product_id = record.product_id or client.product_id
        entitlements = await asyncio.to_thread(self.store.list_entitlements, record.user_id)
        entitlement = AuthorizeFlow.select_entitlement(
            entitlements,
            product_id,
            record.tenant_id,
            datetime.fromtimestamp(self._clock(), tz=timezone.utc),
        )
        if entitlement is None:
            logger.info(
                "refresh_entitlement_revoked",
                user_id=record.user_id,
                client_id=client.client_id,
                tenant_id=record.tenant_id,
            )
            return OAuthFailure.access_denied("entitlement is no longer active")

        email = None
        if record.session_id:
            session = await asyncio.to_thread(self.store.get_session, record.session_id)
            email = session.email if session else None

        context = AccessTokenContext(
            user_id=record.user_id,
            client_id=client.client_id,
            product_id=product_id,
            tenant_id=entitlement.tenant_id,
            organization_id=entitlement.organization_id,
            roles=tuple(entitlement.roles),
            scope=record.scope or "",
            session_id=record.session_id,
            email=email,
        )
        try:
            token_set = await self.tokens.issue_token_set(
                context,
                TokenIssueOptions(
                    existing_refresh_token=request.refresh_token,
                    description=record.description,
                    user_agent=request.user_agent,
                    ip_address=request.ip_address,
                ),
            )
        except RefreshTokenReplayError:
            return OAuthFailure.invalid_grant("refresh token is invalid or expired")
        await self._audit(AUDIT_TOKEN_REFRESHED, context, request, GRANT_REFRESH_TOKEN)
        return TokenFlowResult(
            token_set=token_set,
            scope=context.scope,
            grant_type=GRANT_REFRESH_TOKEN,
            user_id=record.user_id,
        )

    async def _audit(
        self,
        event_type: str,
        context: AccessTokenContext,
        request: TokenRequest,
        grant_type: str,
    ) -> None:
        event = AuditEvent(
            event_type=event_type,
            actor_user_id=context.user_id,
            organization_id=context.organization_id,
            tenant_id=context.tenant_id,
            product_id=context.product_id,
            description=f"{grant_type} grant for {context.client_id}",
            ip_address=request.ip_address,
            user_agent=request.user_agent,
            metadata={"client_id": context.client_id, "grant_type": grant_type},
        )
        try:
            await asyncio.to_thread(self.store.record_audit_event, event)
        except Exception as exc:
            # Tokens are already persisted; failing the response would strand them.
            logger.error(
                "audit_record_failed",
                event_type=event_type,
                error=str(exc),
                error_type=type(exc).__name__,
            )


__all__ = [
    "TokenFlow",
    "TokenRequest",
    "TokenFlowResult",
    "GRANT_AUTHORIZATION_CODE",
    "GRANT_REFRESH_TOKEN",
    "AUDIT_TOKEN_ISSUED",
    "AUDIT_TOKEN_REFRESHED",
    "AUDIT_SESSION_REVOKED",
]
