from __future__ import annotations

import asyncio
import hashlib
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from identity_core.config import Settings
from identity_core.logging import get_logger
from identity_core.service.claims import (
    AccessTokenClaims,
    AccessTokenContext,
    IdTokenClaims,
    build_access_claims,
    build_id_claims,
)
from identity_core.service.errors import (
    InvalidTokenError,
    JwksUnavailableError,
    RefreshTokenReplayError,
)
from identity_core.service.jwt import JwtError, JwtSigner
from identity_core.service.revocation import RevocationReconciler
from identity_core.storage.models import RefreshToken

logger = get_logger(__name__)

# 48 random bytes, 384 bits of entropy.
REFRESH_TOKEN_BYTES = 48


def hash_refresh_token(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class TokenSet:
    access_token: str
    refresh_token: str
    id_token: str
    expires_in: int
    token_type: str = "Bearer"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "id_token": self.id_token,
        }


@dataclass(frozen=True)
class TokenIssueOptions:
    existing_refresh_token: Optional[str] = None
    nonce: Optional[str] = None
    description: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


class TokenService:
    """Issues, verifies and rotates the credentials handed to OAuth clients.

    Access and ID tokens are stateless JWS; refresh tokens are opaque values
    whose SHA-256 is persisted through ``store``. Store calls are synchronous
    and run in a worker thread.
    """

    def __init__(
        self,
        settings: Settings,
        store,
        *,
        signer: Optional[JwtSigner] = None,
        reconciler: Optional[RevocationReconciler] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.store = store
        self.signer = signer or JwtSigner(
            settings.jwt_alg,
            settings.jwt_kid,
            secret=settings.jwt_secret,
            private_key_pem=settings.jwt_private_key,
            public_key_pem=settings.jwt_public_key,
        )
        self.reconciler = reconciler
        self._clock = clock

    @property
    def access_token_ttl(self) -> int:
        return self.settings.access_token_ttl_seconds

    def _now(self) -> int:
        return int(self._clock())

    # -- stateless tokens --------------------------------------------------

    def sign_access_claims(self, claims: AccessTokenClaims) -> str:
        return self.signer.encode(claims.to_dict(), typ=AccessTokenClaims.typ)

    def sign_id_claims(self, claims: IdTokenClaims) -> str:
        return self.signer.encode(claims.to_dict(), typ=IdTokenClaims.typ)

    def create_access_token(
        self, context: AccessTokenContext, *, issued_at: Optional[int] = None
    ) -> str:
        claims = build_access_claims(
            context,
            issuer=self.settings.issuer,
            issued_at=self._now() if issued_at is None else issued_at,
            ttl_seconds=self.access_token_ttl,
        )
        return self.sign_access_claims(claims)

    def create_id_token(
        self,
        context: AccessTokenContext,
        nonce: Optional[str] = None,
        *,
        issued_at: Optional[int] = None,
    ) -> str:
        claims = build_id_claims(
            context,
            issuer=self.settings.issuer,
            issued_at=self._now() if issued_at is None else issued_at,
            ttl_seconds=self.access_token_ttl,
            nonce=nonce,
        )
        return self.sign_id_claims(claims)

    def verify_access_token(
        self, token: str, expected_audience: Optional[str] = None
    ) -> Dict[str, Any]:
        """Return the claims of a valid access token or raise ``InvalidTokenError``.

        Every failure (signature, typ, issuer, audience, expiry) raises the same
        error; the reason only goes to the log.
        """
        try:
            header, payload = self.signer.decode(token)
        except JwtError as exc:
            logger.info("access_token_rejected", reason=str(exc))
            raise InvalidTokenError() from None
        reason = self._claim_failure(header, payload, expected_audience)
        if reason:
            logger.info("access_token_rejected", reason=reason)
            raise InvalidTokenError()
        return payload

    def _claim_failure(
        self,
        header: Dict[str, Any],
        payload: Dict[str, Any],
        expected_audience: Optional[str],
    ) -> Optional[str]:
        if header.get("typ") != AccessTokenClaims.typ:
            return "wrong_typ"
        if payload.get("iss") != self.settings.issuer:
            return "issuer_mismatch"
        if not payload.get("sub"):
            return "missing_subject"
        if expected_audience is not None:
            aud = payload.get("aud")
            audiences = aud if isinstance(aud, list) else [aud]
            if expected_audience not in audiences:
                return "audience_mismatch"
        exp = payload.get("exp")
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return "missing_exp"
        if exp_ts <= self._clock():
            return "expired"
        return None

    # -- token sets --------------------------------------------------------

    async def issue_token_set(
        self,
        context: AccessTokenContext,
        options: Optional[TokenIssueOptions] = None,
    ) -> TokenSet:
        """Mint access, ID and refresh tokens for ``context``.

        When rotating, the predecessor is revoked and the successor stored in
        one store operation, so a failure leaves the presented token valid.
        Losing the rotation to a concurrent request raises
        ``RefreshTokenReplayError``. Store errors propagate and nothing is
        returned.
        """
        options = options or TokenIssueOptions()
        issued_at = self._now()
        access_token = self.create_access_token(context, issued_at=issued_at)
        id_token = self.create_id_token(context, options.nonce, issued_at=issued_at)

        refresh_token = secrets.token_urlsafe(REFRESH_TOKEN_BYTES)
        record_fields = dict(
            user_id=context.user_id,
            client_id=context.client_id,
            expires_at=datetime.fromtimestamp(
                issued_at + self.settings.refresh_token_ttl_seconds, tz=timezone.utc
            ),
            product_id=context.product_id,
            tenant_id=context.tenant_id,
            session_id=context.session_id,
            scope=context.scope,
            description=options.description,
            user_agent=options.user_agent,
            ip_address=options.ip_address,
        )
        if options.existing_refresh_token:
            rotated = await asyncio.to_thread(
                self.store.rotate_refresh_token,
                hash_refresh_token(options.existing_refresh_token),
                hash_refresh_token(refresh_token),
                **record_fields,
            )
            if rotated is None:
                logger.warning("refresh_token_replay_detected", client_id=context.client_id)
                raise RefreshTokenReplayError("refresh token already used")
        else:
            await asyncio.to_thread(
                self.store.issue_refresh_token, hash_refresh_token(refresh_token), **record_fields
            )
        logger.info(
            "token_set_issued",
            user_id=context.user_id,
            client_id=context.client_id,
            tenant_id=context.tenant_id,
            rotated=bool(options.existing_refresh_token),
        )
        return TokenSet(
            access_token=access_token,
            refresh_token=refresh_token,
            id_token=id_token,
            expires_in=self.access_token_ttl,
        )

    async def validate_refresh_token(
        self, token: str, client_id: str
    ) -> Optional[RefreshToken]:
        """Return the active record for ``token`` if it belongs to ``client_id``.

        Expired tokens are revoked on sight; if that revoke fails it is handed
        to the reconciler and the token is still rejected.
        """
        if not token:
            return None
        token_hash = hash_refresh_token(token)
        record = await asyncio.to_thread(self.store.find_active_refresh_token, token_hash)
        if record is None:
            return None
        if record.client_id != client_id:
            logger.warning("refresh_token_client_mismatch", client_id=client_id)
            return None
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        if record.expires_at <= now:
            await self._revoke_expired(token_hash)
            logger.info("refresh_token_expired_revoked", user_id=record.user_id)
            return None
        return record

    async def _revoke_expired(self, token_hash: str) -> None:
        try:
            await asyncio.to_thread(self.store.revoke_refresh_token, token_hash)
        except Exception as exc:
            logger.error(
                "refresh_revoke_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            if self.reconciler is None:
                raise
            self.reconciler.enqueue(token_hash, reason="expired")

    async def rotate_session(self, session_id: str) -> int:
        revoked = await asyncio.to_thread(
            self.store.revoke_refresh_tokens_for_session, session_id
        )
        logger.info("session_refresh_tokens_revoked", session_id=session_id, count=revoked)
        return revoked

    def get_jwks(self) -> Dict[str, Any]:
        if self.signer.is_symmetric and not self.settings.jwks_expose_symmetric_key:
            raise JwksUnavailableError(
                "no public verification key for symmetric signing",
                detail={"alg": self.signer.alg.value},
            )
        return {"keys": [self.signer.jwk()]}


__all__ = [
    "TokenService",
    "TokenSet",
    "TokenIssueOptions",
    "hash_refresh_token",
]
