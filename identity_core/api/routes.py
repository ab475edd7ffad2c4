from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import ValidationError

from identity_core.api.error_handling import NO_STORE_HEADERS, oauth_error_response
from identity_core.api.schemas import (
    AuthorizeQuery,
    DiscoveryDocument,
    JwksResponse,
    LogoutResponse,
    TokenRequestBody,
    TokenResponse,
    UserinfoResponse,
)
from identity_core.config import Settings
from identity_core.logging import get_logger
from identity_core.service.authorize import AuthorizeRequest
from identity_core.service.errors import InvalidTokenError, OAuthFailure
from identity_core.service.runtime import get_runtime
from identity_core.service.token_flow import AUDIT_SESSION_REVOKED, TokenRequest
from identity_core.storage.models import AuditEvent

logger = get_logger(__name__)

SESSION_HEADER = "X-Session-Id"

router = APIRouter(prefix="/oauth", tags=["oauth"])
well_known_router = APIRouter(prefix="/.well-known", tags=["discovery"])


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _bearer_token(request: Request) -> str:
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidTokenError("missing bearer token")
    return token.strip()


def _apply_refresh_cookie(response: Response, refresh_token: str, settings: Settings) -> None:
    response.set_cookie(
        settings.refresh_cookie_name,
        refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.refresh_token_ttl_seconds,
        domain=settings.cookie_domain,
        path="/",
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.refresh_cookie_name,
        domain=settings.cookie_domain,
        path="/",
        secure=settings.cookie_secure,
        httponly=True,
        samesite="lax",
    )


async def _read_form_or_json(request: Request) -> Dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except ValueError:
            raise RequestValidationError(
                [{"loc": ("body",), "msg": "malformed JSON", "type": "json_invalid"}]
            ) from None
        if not isinstance(data, dict):
            raise RequestValidationError(
                [{"loc": ("body",), "msg": "expected an object", "type": "dict_type"}]
            )
        return data
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


@router.get("/authorize")
async def authorize(request: Request):
    """Start the authorization code flow.

    Redirects to the client's ``redirect_uri`` with ``code`` and ``state`` on
    success; every failure is a JSON OAuth error.
    """
    try:
        query = AuthorizeQuery.model_validate(dict(request.query_params))
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from None

    runtime = get_runtime()
    settings = runtime.settings
    session_id = request.cookies.get(settings.session_cookie_name) or request.headers.get(
        SESSION_HEADER
    )
    outcome = await runtime.authorize_flow.run(
        AuthorizeRequest(
            response_type=query.response_type,
            client_id=query.client_id,
            redirect_uri=query.redirect_uri,
            code_challenge=query.code_challenge,
            code_challenge_method=query.code_challenge_method,
            scope=query.scope,
            state=query.state,
            tenant_id=query.tenant_id,
            nonce=query.nonce,
        ),
        session_id,
    )
    if isinstance(outcome, OAuthFailure):
        logger.info("authorize_rejected", error=outcome.code.value, client_id=query.client_id)
        return oauth_error_response(outcome)
    return RedirectResponse(outcome.redirect_url, status_code=302, headers=dict(NO_STORE_HEADERS))


@router.post("/token", response_model=TokenResponse)
async def token(request: Request):
    """Exchange an authorization code or refresh token for a token set."""
    runtime = get_runtime()
    settings = runtime.settings
    data = await _read_form_or_json(request)
    if data.get("grant_type") == "refresh_token" and not data.get("refresh_token"):
        cookie_token = request.cookies.get(settings.refresh_cookie_name)
        if cookie_token:
            data["refresh_token"] = cookie_token
    try:
        body = TokenRequestBody.model_validate(data)
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from None

    outcome = await runtime.token_flow.run(
        TokenRequest(
            grant_type=body.grant_type,
            client_id=body.client_id,
            client_secret=body.client_secret,
            code=body.code,
            code_verifier=body.code_verifier,
            redirect_uri=body.redirect_uri,
            refresh_token=body.refresh_token,
            user_agent=request.headers.get("user-agent"),
            ip_address=_client_ip(request),
        )
    )
    if isinstance(outcome, OAuthFailure):
        logger.info(
            "token_rejected",
            error=outcome.code.value,
            grant_type=body.grant_type,
            client_id=body.client_id,
        )
        return oauth_error_response(outcome)

    payload = TokenResponse(**outcome.to_dict())
    response = JSONResponse(content=payload.model_dump(), headers=dict(NO_STORE_HEADERS))
    _apply_refresh_cookie(response, outcome.token_set.refresh_token, settings)
    logger.info(
        "token_issued",
        grant_type=outcome.grant_type,
        client_id=body.client_id,
        user_id=outcome.user_id,
    )
    return response


@router.get("/userinfo", response_model=UserinfoResponse)
async def userinfo(request: Request):
    runtime = get_runtime()
    claims = runtime.tokens.verify_access_token(_bearer_token(request))
    body = UserinfoResponse(
        sub=claims["sub"],
        email=claims.get("email"),
        tenant_id=claims.get("tenant_id"),
        organization_id=claims.get("organization_id"),
        product_id=claims.get("product_id"),
        roles=list(claims.get("roles") or []),
        scope=claims.get("scope"),
    )
    return JSONResponse(content=body.model_dump(exclude_none=True), headers=dict(NO_STORE_HEADERS))


@router.post("/logout", response_model=LogoutResponse)
async def logout(request: Request):
    """Revoke every refresh token of the caller's session and end the session."""
    runtime = get_runtime()
    settings = runtime.settings
    claims = runtime.tokens.verify_access_token(_bearer_token(request))
    session_id = claims.get("session_id")
    revoked = 0
    if session_id:
        revoked = await runtime.tokens.rotate_session(session_id)
        await asyncio.to_thread(runtime.store.revoke_session, session_id)
    await asyncio.to_thread(
        runtime.store.record_audit_event,
        AuditEvent(
            event_type=AUDIT_SESSION_REVOKED,
            actor_user_id=claims["sub"],
            organization_id=claims.get("organization_id"),
            tenant_id=claims.get("tenant_id"),
            product_id=claims.get("product_id"),
            description="session logout",
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
            metadata={"session_id": session_id, "revoked": revoked},
        ),
    )
    logger.info("session_logout", user_id=claims["sub"], revoked=revoked)
    response = JSONResponse(
        content=LogoutResponse(revoked=revoked).model_dump(), headers=dict(NO_STORE_HEADERS)
    )
    _clear_refresh_cookie(response, settings)
    return response


@router.get("/jwks", response_model=JwksResponse)
async def jwks():
    return get_runtime().tokens.get_jwks()


@well_known_router.get("/jwks.json", response_model=JwksResponse)
async def well_known_jwks():
    return get_runtime().tokens.get_jwks()


@well_known_router.get("/openid-configuration", response_model=DiscoveryDocument)
async def openid_configuration():
    settings = get_runtime().settings
    issuer = settings.issuer
    return DiscoveryDocument(
        issuer=issuer,
        authorization_endpoint=f"{issuer}{router.prefix}/authorize",
        token_endpoint=f"{issuer}{router.prefix}/token",
        userinfo_endpoint=f"{issuer}{router.prefix}/userinfo",
        end_session_endpoint=f"{issuer}{router.prefix}/logout",
        jwks_uri=f"{issuer}{well_known_router.prefix}/jwks.json",
        id_token_signing_alg_values_supported=[settings.jwt_alg.value],
    )
