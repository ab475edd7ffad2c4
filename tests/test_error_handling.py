import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from identity_core.api.error_handling import oauth_error_response, register_exception_handlers
from identity_core.service.errors import (
    JwksUnavailableError,
    OAuthErrorCode,
    OAuthFailure,
)
from identity_core.storage.errors import ConstraintViolation, StoreUnavailable


@pytest.mark.parametrize(
    "code,status",
    [
        (OAuthErrorCode.INVALID_REQUEST, 400),
        (OAuthErrorCode.INVALID_CLIENT, 401),
        (OAuthErrorCode.INVALID_GRANT, 400),
        (OAuthErrorCode.UNSUPPORTED_GRANT_TYPE, 400),
        (OAuthErrorCode.ACCESS_DENIED, 403),
        (OAuthErrorCode.LOGIN_REQUIRED, 401),
        (OAuthErrorCode.INVALID_TOKEN, 401),
    ],
)
def test_oauth_error_status_mapping(code, status):
    response = oauth_error_response(OAuthFailure(code, "why"))

    assert response.status_code == status
    assert json.loads(response.body) == {"error": code.value, "error_description": "why"}
    assert response.headers["cache-control"] == "no-store"
    assert response.headers["pragma"] == "no-cache"


def test_invalid_token_carries_bearer_challenge():
    response = oauth_error_response(OAuthFailure(OAuthErrorCode.INVALID_TOKEN, "expired"))
    assert response.headers["www-authenticate"] == 'Bearer error="invalid_token"'


@pytest.fixture
def failing_client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise RuntimeError("database password=hunter2 leaked")

    @app.get("/jwks")
    async def jwks():
        raise JwksUnavailableError("no public key")

    @app.get("/unavailable")
    async def unavailable():
        raise StoreUnavailable("database unavailable")

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("refresh token hash collision")

    return TestClient(app, raise_server_exceptions=False)


def test_uncaught_error_is_generic_500(failing_client):
    response = failing_client.get("/boom")
    assert response.status_code == 500
    assert response.json() == {"message": "internal server error"}


def test_service_error_uses_its_code(failing_client):
    response = failing_client.get("/jwks")
    assert response.status_code == 404
    assert response.json() == {"error": "jwks_unavailable", "error_description": "no public key"}


@pytest.mark.parametrize("path", ["/unavailable", "/conflict"])
def test_infrastructure_errors_have_no_protocol_code(failing_client, path):
    response = failing_client.get(path)
    assert response.status_code == 500
    assert response.json() == {"message": "internal server error"}
