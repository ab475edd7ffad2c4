from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Upper bounds on attacker-controlled strings.
MAX_PARAM_LENGTH = 2048
MAX_TOKEN_LENGTH = 8192


class OAuthErrorBody(BaseModel):
    error: str
    error_description: Optional[str] = None


class AuthorizeQuery(BaseModel):
    """Query string of ``GET /oauth/authorize``.

    ``code_challenge_method`` accepts ``plain`` at the schema level; the
    authorize flow rejects it so clients get ``invalid_request`` with a
    useful description instead of a schema error.
    """

    model_config = ConfigDict(extra="ignore")

    response_type: str = Field(..., max_length=32)
    client_id: str = Field(..., min_length=1, max_length=256)
    redirect_uri: str = Field(..., min_length=1, max_length=MAX_PARAM_LENGTH)
    code_challenge: str = Field(..., max_length=256)
    code_challenge_method: Literal["S256", "plain"] = "S256"
    scope: Optional[str] = Field(default=None, max_length=MAX_PARAM_LENGTH)
    state: Optional[str] = Field(default=None, max_length=MAX_PARAM_LENGTH)
    tenant_id: Optional[str] = Field(default=None, max_length=256)
    nonce: Optional[str] = Field(default=None, max_length=MAX_PARAM_LENGTH)


class TokenRequestBody(BaseModel):
    """Body of ``POST /oauth/token`` (form-encoded or JSON)."""

    model_config = ConfigDict(extra="ignore")

    grant_type: str = Field(..., min_length=1, max_length=64)
    client_id: str = Field(..., min_length=1, max_length=256)
    client_secret: Optional[str] = Field(default=None, max_length=MAX_PARAM_LENGTH)
    code: Optional[str] = Field(default=None, max_length=MAX_PARAM_LENGTH)
    code_verifier: Optional[str] = Field(default=None, max_length=128)
    redirect_uri: Optional[str] = Field(default=None, max_length=MAX_PARAM_LENGTH)
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)

    @field_validator("*", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class TokenResponse(BaseModel):
    token_type: str = "Bearer"
    expires_in: int
    access_token: str
    refresh_token: str
    id_token: str
    scope: str


class UserinfoResponse(BaseModel):
    sub: str
    email: Optional[str] = None
    tenant_id: Optional[str] = None
    organization_id: Optional[str] = None
    product_id: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    scope: Optional[str] = None


class LogoutResponse(BaseModel):
    revoked: int


class JwksResponse(BaseModel):
    keys: List[Dict[str, Any]]


class DiscoveryDocument(BaseModel):
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    userinfo_endpoint: str
    jwks_uri: str
    end_session_endpoint: str
    response_types_supported: List[str] = ["code"]
    grant_types_supported: List[str] = ["authorization_code", "refresh_token"]
    subject_types_supported: List[str] = ["public"]
    id_token_signing_alg_values_supported: List[str]
    code_challenge_methods_supported: List[str] = ["S256"]
    token_endpoint_auth_methods_supported: List[str] = ["client_secret_post", "none"]
    scopes_supported: List[str] = ["openid", "profile", "email"]
    claims_supported: List[str] = [
        "sub",
        "iss",
        "aud",
        "exp",
        "iat",
        "email",
        "org_id",
        "tenant_id",
        "product_id",
        "roles",
        "nonce",
    ]
