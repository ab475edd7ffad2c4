"""Tests for the authorize flow gates, in the order they run."""

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest

from identity_core.service.authorize import (
    AuthorizeFlow,
    AuthorizeRequest,
    AuthorizeResult,
    build_redirect,
    negotiate_scope,
)
from identity_core.service.code_store import AuthorizationCodeStore
from identity_core.service.errors import OAuthErrorCode, OAuthFailure
from identity_core.storage.models import utcnow


@pytest.fixture
def code_store(clock):
    return AuthorizationCodeStore(60, clock=clock)


@pytest.fixture
def flow(memory_store, code_store):
    return AuthorizeFlow(memory_store, code_store)


@pytest.fixture
def make_request(registered_client, pkce_pair):
    _, challenge = pkce_pair

    def _make(**overrides):
        data = dict(
            response_type="code",
            client_id=registered_client.client_id,
            redirect_uri=registered_client.redirect_uris[0],
            code_challenge=challenge,
            code_challenge_method="S256",
            state="xyz",
        )
        data.update(overrides)
        return AuthorizeRequest(**data)

    return _make


def _assert_failure(outcome, code: OAuthErrorCode):
    assert isinstance(outcome, OAuthFailure), outcome
    assert outcome.code == code


class TestHappyPath:
    async def test_issues_code_and_redirects_with_state(
        self, flow, make_request, user_session, entitlement, code_store
    ):
        outcome = await flow.run(make_request(nonce="n-1"), user_session.id)

        assert isinstance(outcome, AuthorizeResult)
        parsed = urlparse(outcome.redirect_url)
        query = parse_qs(parsed.query)
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == "https://portal.example.com/callback"
        assert query["state"] == ["xyz"]
        assert query["code"] == [outcome.entry.code]

        payload = (await code_store.consume(outcome.entry.code)).payload
        assert payload.user_id == "user-1"
        assert payload.tenant_id == "tenant-1"
        assert payload.organization_id == "org-1"
        assert payload.roles == ("admin", "viewer")
        assert payload.session_id == user_session.id
        assert payload.nonce == "n-1"
        assert payload.email == "user@example.com"

    async def test_empty_scope_defaults_to_all_allowed(
        self, flow, make_request, user_session, entitlement
    ):
        outcome = await flow.run(make_request(scope=None), user_session.id)
        assert outcome.entry.payload.scope == "openid profile email"

    async def test_requested_subset_of_scope(self, flow, make_request, user_session, entitlement):
        outcome = await flow.run(make_request(scope="openid email"), user_session.id)
        assert outcome.entry.payload.scope == "openid email"

    async def test_state_is_optional(self, flow, make_request, user_session, entitlement):
        outcome = await flow.run(make_request(state=None), user_session.id)
        assert "state" not in parse_qs(urlparse(outcome.redirect_url).query)

    async def test_requested_tenant_selects_matching_entitlement(
        self, flow, make_request, memory_store, user_session, entitlement, registered_client
    ):
        memory_store.grant_entitlement(
            user_id="user-1",
            product_id=registered_client.product_id,
            tenant_id="tenant-2",
            organization_id="org-2",
            roles=["viewer"],
        )
        outcome = await flow.run(make_request(tenant_id="tenant-2"), user_session.id)
        assert outcome.entry.payload.tenant_id == "tenant-2"
        assert outcome.entry.payload.organization_id == "org-2"
        assert outcome.entry.payload.roles == ("viewer",)


class TestRequestShape:
    async def test_plain_challenge_method_rejected(self, flow, make_request, user_session, entitlement):
        outcome = await flow.run(make_request(code_challenge_method="plain"), user_session.id)
        _assert_failure(outcome, OAuthErrorCode.INVALID_REQUEST)

    @pytest.mark.parametrize("challenge", ["short", "a" * 42, "a" * 129, "a" * 42 + "!"])
    async def test_challenge_length_and_charset(
        self, flow, make_request, user_session, entitlement, challenge
    ):
        outcome = await flow.run(make_request(code_challenge=challenge), user_session.id)
        _assert_failure(outcome, OAuthErrorCode.INVALID_REQUEST)

    async def test_response_type_must_be_code(self, flow, make_request, user_session, entitlement):
        outcome = await flow.run(make_request(response_type="token"), user_session.id)
        _assert_failure(outcome, OAuthErrorCode.INVALID_REQUEST)

    @pytest.mark.parametrize("uri", ["not a url", "ftp://portal.example.com/cb", "https://x.test/cb#frag"])
    async def test_malformed_redirect_uri(self, flow, make_request, user_session, entitlement, uri):
        outcome = await flow.run(make_request(redirect_uri=uri), user_session.id)
        _assert_failure(outcome, OAuthErrorCode.INVALID_REQUEST)

    async def test_shape_checked_before_session(self, flow, make_request):
        outcome = await flow.run(make_request(code_challenge_method="plain"), None)
        _assert_failure(outcome, OAuthErrorCode.INVALID_REQUEST)


class TestAuthentication:
    async def test_missing_session_requires_login(self, flow, make_request, entitlement):
        outcome = await flow.run(make_request(), None)
        _assert_failure(outcome, OAuthErrorCode.LOGIN_REQUIRED)

    async def test_unknown_session_requires_login(self, flow, make_request, entitlement):
        outcome = await flow.run(make_request(), "no-such-session")
        _assert_failure(outcome, OAuthErrorCode.LOGIN_REQUIRED)

    async def test_revoked_session_requires_login(
        self, flow, make_request, memory_store, user_session, entitlement
    ):
        memory_store.revoke_session(user_session.id)
        outcome = await flow.run(make_request(), user_session.id)
        _assert_failure(outcome, OAuthErrorCode.LOGIN_REQUIRED)


class TestClientAndRedirect:
    async def test_unknown_client(self, flow, make_request, user_session, entitlement):
        outcome = await flow.run(make_request(client_id="ghost"), user_session.id)
        _assert_failure(outcome, OAuthErrorCode.INVALID_CLIENT)
        assert outcome.status_code == 401

    async def test_unregistered_redirect_uri(self, flow, make_request, user_session, entitlement):
        outcome = await flow.run(
            make_request(redirect_uri="https://portal.example.com/callback/other"), user_session.id
        )
        _assert_failure(outcome, OAuthErrorCode.INVALID_REQUEST)


class TestEntitlement:
    async def test_no_entitlement_is_access_denied(self, flow, make_request, user_session):
        outcome = await flow.run(make_request(), user_session.id)
        _assert_failure(outcome, OAuthErrorCode.ACCESS_DENIED)
        assert outcome.status_code == 403

    async def test_tenant_mismatch_is_access_denied(
        self, flow, make_request, user_session, entitlement
    ):
        outcome = await flow.run(make_request(tenant_id="tenant-9"), user_session.id)
        _assert_failure(outcome, OAuthErrorCode.ACCESS_DENIED)

    async def test_expired_entitlement_is_access_denied(
        self, flow, make_request, memory_store, user_session, registered_client
    ):
        memory_store.grant_entitlement(
            user_id="user-1",
            product_id=registered_client.product_id,
            tenant_id="tenant-1",
            organization_id="org-1",
            expires_at=utcnow() - timedelta(minutes=1),
        )
        outcome = await flow.run(make_request(), user_session.id)
        _assert_failure(outcome, OAuthErrorCode.ACCESS_DENIED)

    async def test_entitlement_expiry_follows_flow_clock(
        self, memory_store, code_store, make_request, user_session, registered_client, clock
    ):
        memory_store.grant_entitlement(
            user_id="user-1",
            product_id=registered_client.product_id,
            tenant_id="tenant-1",
            organization_id="org-1",
            expires_at=datetime.fromtimestamp(clock.now + 600, tz=timezone.utc),
        )
        flow = AuthorizeFlow(memory_store, code_store, clock=clock)

        assert isinstance(await flow.run(make_request(), user_session.id), AuthorizeResult)
        clock.advance(601)
        _assert_failure(await flow.run(make_request(), user_session.id), OAuthErrorCode.ACCESS_DENIED)

    async def test_other_product_entitlement_ignored(
        self, flow, make_request, memory_store, user_session
    ):
        memory_store.grant_entitlement(
            user_id="user-1",
            product_id="another-product",
            tenant_id="tenant-1",
            organization_id="org-1",
        )
        outcome = await flow.run(make_request(), user_session.id)
        _assert_failure(outcome, OAuthErrorCode.ACCESS_DENIED)


class TestScope:
    async def test_disallowed_scope_fails_whole_request(
        self, flow, make_request, user_session, entitlement, code_store
    ):
        outcome = await flow.run(make_request(scope="openid admin"), user_session.id)
        _assert_failure(outcome, OAuthErrorCode.INVALID_REQUEST)
        assert len(code_store) == 0

    def test_negotiate_scope_rules(self):
        allowed = ["openid", "profile"]
        assert negotiate_scope("", allowed) == "openid profile"
        assert negotiate_scope("  ", allowed) == "openid profile"
        assert negotiate_scope("profile profile", allowed) == "profile"
        assert negotiate_scope("openid email", allowed) is None


def test_build_redirect_preserves_existing_query():
    url = build_redirect("https://app.test/cb?tab=1", "the-code", "s t")
    query = parse_qs(urlparse(url).query)
    assert query == {"tab": ["1"], "code": ["the-code"], "state": ["s t"]}
