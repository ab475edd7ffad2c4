from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Union
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from identity_core.logging import get_logger
from identity_core.service.code_store import AuthorizationCodeEntry, AuthorizationCodePayload
from identity_core.service.errors import OAuthErrorCode, OAuthFailure
from identity_core.storage.models import Entitlement, RegisteredClient, Session

logger = get_logger(__name__)

_CODE_CHALLENGE_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")
SUPPORTED_CHALLENGE_METHODS = ("S256",)


@dataclass(frozen=True)
class AuthorizeRequest:
    response_type: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str = "S256"
    scope: Optional[str] = None
    state: Optional[str] = None
    tenant_id: Optional[str] = None
    nonce: Optional[str] = None


@dataclass(frozen=True)
class AuthorizeResult:
    redirect_url: str
    entry: AuthorizationCodeEntry


def _is_well_formed_redirect(uri: str) -> bool:
    try:
        parsed = urlparse(uri)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc) and not parsed.fragment


def build_redirect(redirect_uri: str, code: str, state: Optional[str]) -> str:
    parsed = urlparse(redirect_uri)
    query = parse_qsl(parsed.query, keep_blank_values=True)
    query.append(("code", code))
    if state is not None:
        query.append(("state", state))
    return urlunparse(parsed._replace(query=urlencode(query)))


def negotiate_scope(requested: Optional[str], allowed: List[str]) -> Optional[str]:
    """Return the granted scope string, or None if any requested scope is not allowed."""
    tokens = (requested or "").split()
    if not tokens:
        return " ".join(allowed)
    if any(token not in allowed for token in tokens):
        return None
    return " ".join(dict.fromkeys(tokens))


class AuthorizeFlow:
    """Validates an authorization request and issues a single-use code.

    Gates run in a fixed order and the first failure ends the flow with an
    ``OAuthFailure``; nothing is raised for protocol errors.
    """

    def __init__(self, store, code_store, *, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.code_store = code_store
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _validate_shape(self, request: AuthorizeRequest) -> Optional[OAuthFailure]:
        if request.response_type != "code":
            return OAuthFailure.invalid_request("response_type must be code")
        if not request.client_id:
            return OAuthFailure.invalid_request("client_id is required")
        if not request.redirect_uri or not _is_well_formed_redirect(request.redirect_uri):
            return OAuthFailure.invalid_request("redirect_uri is malformed")
        if request.code_challenge_method not in SUPPORTED_CHALLENGE_METHODS:
            return OAuthFailure.invalid_request("code_challenge_method must be S256")
        if not request.code_challenge or not _CODE_CHALLENGE_RE.match(request.code_challenge):
            return OAuthFailure.invalid_request(
                "code_challenge must be 43-128 url-safe characters"
            )
        return None

    async def _authenticate(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        session = await asyncio.to_thread(self.store.get_session, session_id)
        if session is None or not session.is_active(self._now()):
            return None
        return session

    @staticmethod
    def select_entitlement(
        entitlements: List[Entitlement],
        product_id: str,
        tenant_id: Optional[str],
        now: datetime,
    ) -> Optional[Entitlement]:
        for ent in entitlements:
            if ent.product_id != product_id or not ent.is_active(now):
                continue
            if tenant_id and ent.tenant_id != tenant_id:
                continue
            return ent
        return None

    async def run(
        self, request: AuthorizeRequest, session_id: Optional[str]
    ) -> Union[AuthorizeResult, OAuthFailure]:
        failure = self._validate_shape(request)
        if failure:
            return failure

        session = await self._authenticate(session_id)
        if session is None:
            return OAuthFailure(OAuthErrorCode.LOGIN_REQUIRED, "an authenticated session is required")

        client: Optional[RegisteredClient] = await asyncio.to_thread(
            self.store.get_client, request.client_id
        )
        if client is None:
            logger.info("authorize_unknown_client")
            return OAuthFailure.invalid_client("unknown client")

        if request.redirect_uri not in client.redirect_uris:
            return OAuthFailure.invalid_request("redirect_uri is not registered for this client")

        entitlements = await asyncio.to_thread(self.store.list_entitlements, session.user_id)
        entitlement = self.select_entitlement(
            entitlements, client.product_id, request.tenant_id, self._now()
        )
        if entitlement is None:
            logger.info(
                "authorize_no_entitlement",
                user_id=session.user_id,
                client_id=client.client_id,
                tenant_id=request.tenant_id,
            )
            return OAuthFailure.access_denied("no active entitlement for this product")

        scope = negotiate_scope(request.scope, client.scopes)
        if scope is None:
            return OAuthFailure.invalid_request("requested scope is not allowed")

        entry = await self.code_store.create(
            AuthorizationCodePayload(
                user_id=session.user_id,
                client_id=client.client_id,
                product_id=client.product_id,
                tenant_id=entitlement.tenant_id,
                organization_id=entitlement.organization_id,
                redirect_uri=request.redirect_uri,
                scope=scope,
                code_challenge=request.code_challenge,
                code_challenge_method=request.code_challenge_method,
                roles=tuple(entitlement.roles),
                session_id=session.id,
                nonce=request.nonce,
                email=session.email,
            )
        )
        logger.info(
            "authorization_code_issued",
            user_id=session.user_id,
            client_id=client.client_id,
            tenant_id=entitlement.tenant_id,
        )
        return AuthorizeResult(
            redirect_url=build_redirect(request.redirect_uri, entry.code, request.state),
            entry=entry,
        )


__all__ = [
    "AuthorizeFlow",
    "AuthorizeRequest",
    "AuthorizeResult",
    "build_redirect",
    "negotiate_scope",
]
