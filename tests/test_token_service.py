"""Unit tests for TokenService.

Covers:
- claim construction and signing (HS256 and RS256)
- uniform rejection in verify_access_token
- refresh-token persistence, validation and rotation
- JWKS export policy
"""

import base64
import hashlib
import json
from dataclasses import FrozenInstanceError
from datetime import datetime, timedelta, timezone

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from identity_core.config import Settings
from identity_core.service.claims import (
    AccessTokenContext,
    build_access_claims,
    build_id_claims,
)
from identity_core.service.errors import (
    InvalidTokenError,
    JwksUnavailableError,
    RefreshTokenReplayError,
)
from identity_core.service.revocation import RevocationReconciler
from identity_core.service.tokens import TokenIssueOptions, TokenService, hash_refresh_token
from identity_core.storage.errors import ConstraintViolation, StoreUnavailable
from identity_core.storage.memory import MemoryStore


def _segment(token: str, index: int) -> dict:
    part = token.split(".")[index]
    return json.loads(base64.urlsafe_b64decode(part + "=" * (-len(part) % 4)))


@pytest.fixture
def context():
    return AccessTokenContext(
        user_id="user-1",
        client_id="portal",
        product_id="prod-1",
        tenant_id="tenant-1",
        organization_id="org-1",
        roles=["admin"],
        scope="openid profile",
        session_id="sess-1",
        email="user@example.com",
    )


@pytest.fixture
def token_service(settings, memory_store, clock):
    return TokenService(settings, memory_store, clock=clock)


@pytest.fixture
def rsa_pem():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()


class TestClaims:
    def test_access_and_id_claims_share_context(self, context):
        access = build_access_claims(
            context, issuer="http://identity.test", issued_at=100, ttl_seconds=300
        )
        id_claims = build_id_claims(
            context, issuer="http://identity.test", issued_at=100, ttl_seconds=300, nonce="n-1"
        )
        assert access.sub == id_claims.sub == "user-1"
        assert access.aud == id_claims.aud == "portal"
        assert access.exp == id_claims.exp == 400
        assert access.organization_id == id_claims.org_id == "org-1"
        assert access.roles == ("admin",)
        assert id_claims.nonce == "n-1"
        assert "nonce" not in access.to_dict()

    def test_claims_are_immutable(self, context):
        access = build_access_claims(context, issuer="i", issued_at=0, ttl_seconds=1)
        with pytest.raises(FrozenInstanceError):
            access.sub = "someone-else"

    def test_optional_claims_omitted_when_absent(self):
        ctx = AccessTokenContext(
            user_id="u", client_id="c", product_id="p", tenant_id="t", organization_id="o"
        )
        access = build_access_claims(ctx, issuer="i", issued_at=0, ttl_seconds=1)
        id_claims = build_id_claims(ctx, issuer="i", issued_at=0, ttl_seconds=1)
        assert "email" not in access.to_dict()
        assert "session_id" not in access.to_dict()
        assert "nonce" not in id_claims.to_dict()

    def test_context_requires_identifiers(self):
        with pytest.raises(ValueError):
            AccessTokenContext(
                user_id="", client_id="c", product_id="p", tenant_id="t", organization_id="o"
            )


class TestStatelessTokens:
    async def test_issue_token_set_shapes(self, token_service, context):
        tokens = await token_service.issue_token_set(context, TokenIssueOptions(nonce="n-1"))

        assert tokens.token_type == "Bearer"
        assert tokens.expires_in == 300
        access_header = _segment(tokens.access_token, 0)
        id_header = _segment(tokens.id_token, 0)
        assert access_header == {"alg": "HS256", "kid": "identity-default", "typ": "at+jwt"}
        assert id_header["typ"] == "JWT"
        id_payload = _segment(tokens.id_token, 1)
        assert id_payload["nonce"] == "n-1"
        assert id_payload["iat"] == _segment(tokens.access_token, 1)["iat"]
        assert id_payload["org_id"] == "org-1"

    def test_access_token_round_trip(self, token_service, context, clock):
        token = token_service.create_access_token(context)
        claims = token_service.verify_access_token(token, expected_audience="portal")

        assert claims["sub"] == "user-1"
        assert claims["tenant_id"] == "tenant-1"
        assert claims["roles"] == ["admin"]
        assert claims["session_id"] == "sess-1"
        assert claims["exp"] == int(clock.now) + 300

    def test_rejects_token_signed_with_other_key(self, settings, memory_store, clock, context):
        other = TokenService(
            settings.model_copy(update={"jwt_secret": "another-secret-that-is-long-enough-123"}),
            memory_store,
            clock=clock,
        )
        mine = TokenService(settings, memory_store, clock=clock)
        with pytest.raises(InvalidTokenError):
            mine.verify_access_token(other.create_access_token(context))

    def test_rejects_expired_token(self, token_service, context, clock):
        token = token_service.create_access_token(context)
        clock.advance(300)
        with pytest.raises(InvalidTokenError):
            token_service.verify_access_token(token)

    def test_rejects_audience_mismatch(self, token_service, context):
        token = token_service.create_access_token(context)
        with pytest.raises(InvalidTokenError):
            token_service.verify_access_token(token, expected_audience="other-client")

    def test_rejects_issuer_mismatch(self, settings, memory_store, clock, context):
        foreign = TokenService(
            settings.model_copy(update={"issuer": "http://evil.test"}), memory_store, clock=clock
        )
        token_service = TokenService(settings, memory_store, clock=clock)
        with pytest.raises(InvalidTokenError):
            token_service.verify_access_token(foreign.create_access_token(context))

    def test_rejects_id_token_as_access_token(self, token_service, context):
        id_token = token_service.create_id_token(context, nonce="n")
        with pytest.raises(InvalidTokenError):
            token_service.verify_access_token(id_token)

    def test_rejects_tampered_and_malformed_tokens(self, token_service, context):
        token = token_service.create_access_token(context)
        header, payload, signature = token.split(".")
        forged_payload = base64.urlsafe_b64encode(
            json.dumps({**_segment(token, 1), "roles": ["owner"]}).encode()
        ).rstrip(b"=").decode()
        none_header = base64.urlsafe_b64encode(
            json.dumps({"alg": "none", "typ": "at+jwt"}).encode()
        ).rstrip(b"=").decode()

        for candidate in (
            f"{header}.{forged_payload}.{signature}",
            f"{none_header}.{payload}.",
            "not-a-jwt",
            "",
        ):
            with pytest.raises(InvalidTokenError) as excinfo:
                token_service.verify_access_token(candidate)
            assert excinfo.value.message == "invalid access token"


class TestRefreshTokens:
    async def test_only_hash_is_persisted(self, token_service, memory_store, context):
        tokens = await token_service.issue_token_set(context)

        stored = memory_store.list_refresh_tokens_for_user("user-1")
        assert len(stored) == 1
        assert stored[0].token_hash == hashlib.sha256(tokens.refresh_token.encode()).hexdigest()
        assert tokens.refresh_token not in memory_store.refresh_tokens
        assert stored[0].session_id == "sess-1"
        assert stored[0].scope == "openid profile"

    async def test_refresh_tokens_are_long(self, token_service, context):
        tokens = await token_service.issue_token_set(context)
        assert len(tokens.refresh_token) >= 64

    async def test_validate_checks_client(self, token_service, context):
        tokens = await token_service.issue_token_set(context)
        assert await token_service.validate_refresh_token(tokens.refresh_token, "portal") is not None
        assert await token_service.validate_refresh_token(tokens.refresh_token, "other") is None
        assert await token_service.validate_refresh_token("unknown", "portal") is None

    async def test_expired_refresh_token_is_revoked_on_validation(
        self, token_service, memory_store, context, clock
    ):
        tokens = await token_service.issue_token_set(context)
        clock.advance(3600)

        assert await token_service.validate_refresh_token(tokens.refresh_token, "portal") is None
        record = memory_store.refresh_tokens[hash_refresh_token(tokens.refresh_token)]
        assert record.revoked

    async def test_rotation_invalidates_predecessor(self, token_service, context):
        first = await token_service.issue_token_set(context)
        second = await token_service.issue_token_set(
            context, TokenIssueOptions(existing_refresh_token=first.refresh_token)
        )

        assert await token_service.validate_refresh_token(first.refresh_token, "portal") is None
        assert await token_service.validate_refresh_token(second.refresh_token, "portal") is not None

    async def test_second_rotation_of_same_token_is_rejected(self, token_service, context):
        first = await token_service.issue_token_set(context)
        options = TokenIssueOptions(existing_refresh_token=first.refresh_token)
        await token_service.issue_token_set(context, options)

        with pytest.raises(RefreshTokenReplayError):
            await token_service.issue_token_set(context, options)

    async def test_failed_rotation_keeps_predecessor_usable(self, settings, clock, context):
        class FailingRotateStore(MemoryStore):
            def rotate_refresh_token(self, old_hash, new_hash, **fields):
                raise StoreUnavailable("database unavailable")

        store = FailingRotateStore()
        service = TokenService(settings, store, clock=clock)
        first = await service.issue_token_set(context)

        with pytest.raises(StoreUnavailable):
            await service.issue_token_set(
                context, TokenIssueOptions(existing_refresh_token=first.refresh_token)
            )
        assert await service.validate_refresh_token(first.refresh_token, "portal") is not None
        assert len(store.list_refresh_tokens_for_user("user-1")) == 1

    async def test_successor_collision_rolls_back_revoke(self, token_service, memory_store, context):
        first = await token_service.issue_token_set(context)
        second = await token_service.issue_token_set(context)

        with pytest.raises(ConstraintViolation):
            memory_store.rotate_refresh_token(
                hash_refresh_token(first.refresh_token),
                hash_refresh_token(second.refresh_token),
                user_id="user-1",
                client_id="portal",
                expires_at=datetime.now(timezone.utc),
            )
        assert await token_service.validate_refresh_token(first.refresh_token, "portal") is not None

    async def test_expired_revoke_failure_is_queued(self, settings, clock, context):
        class FlakyRevokeStore(MemoryStore):
            def revoke_refresh_token(self, token_hash):
                raise StoreUnavailable("database unavailable")

        store = FlakyRevokeStore()
        reconciler = RevocationReconciler(store)
        service = TokenService(settings, store, reconciler=reconciler, clock=clock)
        tokens = await service.issue_token_set(context)
        clock.advance(3600)

        assert await service.validate_refresh_token(tokens.refresh_token, "portal") is None
        assert reconciler.pending_count == 1

    async def test_persistence_failure_returns_no_token_set(self, settings, clock, context):
        class BrokenStore(MemoryStore):
            def issue_refresh_token(self, token_hash, **kwargs):
                raise StoreUnavailable("database unavailable")

        service = TokenService(settings, BrokenStore(), clock=clock)
        with pytest.raises(StoreUnavailable):
            await service.issue_token_set(context)

    async def test_rotate_session_revokes_all_session_tokens(
        self, token_service, memory_store, context
    ):
        first = await token_service.issue_token_set(context)
        second = await token_service.issue_token_set(context)
        other_ctx = AccessTokenContext(
            user_id="user-1",
            client_id="portal",
            product_id="prod-1",
            tenant_id="tenant-1",
            organization_id="org-1",
            session_id="sess-2",
        )
        other = await token_service.issue_token_set(other_ctx)

        assert await token_service.rotate_session("sess-1") == 2
        assert await token_service.validate_refresh_token(first.refresh_token, "portal") is None
        assert await token_service.validate_refresh_token(second.refresh_token, "portal") is None
        assert await token_service.validate_refresh_token(other.refresh_token, "portal") is not None
        assert await token_service.rotate_session("sess-1") == 0


class TestJwks:
    def test_symmetric_key_not_published_by_default(self, token_service):
        with pytest.raises(JwksUnavailableError):
            token_service.get_jwks()

    def test_symmetric_key_published_when_opted_in(self, settings, memory_store):
        service = TokenService(
            settings.model_copy(update={"jwks_expose_symmetric_key": True}), memory_store
        )
        (key,) = service.get_jwks()["keys"]
        assert key["kty"] == "oct"
        assert key["kid"] == "identity-default"
        assert base64.urlsafe_b64decode(key["k"] + "=" * (-len(key["k"]) % 4)) == (
            settings.jwt_secret.encode()
        )

    def test_rs256_publishes_public_key_and_verifies(self, rsa_pem, memory_store, clock, context):
        settings = Settings(jwt_alg="RS256", jwt_private_key=rsa_pem, jwt_kid="rsa-1")
        service = TokenService(settings, memory_store, clock=clock)

        (key,) = service.get_jwks()["keys"]
        assert key["kty"] == "RSA"
        assert key["alg"] == "RS256"
        assert key["e"] == "AQAB"
        assert "d" not in key

        token = service.create_access_token(context)
        assert _segment(token, 0)["alg"] == "RS256"
        assert service.verify_access_token(token)["sub"] == "user-1"

    def test_hs256_token_rejected_by_rs256_service(self, rsa_pem, settings, memory_store, clock, context):
        hs_token = TokenService(settings, memory_store, clock=clock).create_access_token(context)
        rs_service = TokenService(
            Settings(jwt_alg="RS256", jwt_private_key=rsa_pem), memory_store, clock=clock
        )
        with pytest.raises(InvalidTokenError):
            rs_service.verify_access_token(hs_token)


async def test_refresh_expiry_matches_ttl(settings, memory_store, clock, context):
    service = TokenService(settings, memory_store, clock=clock)
    await service.issue_token_set(context)
    (record,) = memory_store.list_refresh_tokens_for_user("user-1")
    expected = datetime.fromtimestamp(clock.now, tz=timezone.utc) + timedelta(seconds=3600)
    assert record.expires_at == expected
