from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from identity_core.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


class SigningAlgorithm(str, Enum):
    """JWS algorithms the token service can sign with."""

    HS256 = "HS256"
    RS256 = "RS256"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def normalize_pem(value: str | None) -> str | None:
    """Undo the quoting and ``\\n`` escaping PEM blocks pick up in env files."""
    if not value:
        return None
    trimmed = value.strip().replace("\r\n", "\n")
    if len(trimmed) >= 2 and trimmed[0] == trimmed[-1] and trimmed[0] in {"'", '"'}:
        trimmed = trimmed[1:-1].strip()
    if "\n" not in trimmed and "\\n" in trimmed:
        trimmed = trimmed.replace("\\n", "\n")
    return trimmed


class Settings(BaseModel):
    """Runtime settings for the identity service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/identity", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (memory fallbacks, runtime resets).",
    )

    # Signing material
    jwt_alg: SigningAlgorithm = env_field(SigningAlgorithm.HS256, "IDENTITY_JWT_ALG")
    jwt_secret: str | None = env_field(None, "IDENTITY_JWT_SECRET")
    jwt_private_key: str | None = env_field(None, "IDENTITY_JWT_PRIVATE_KEY")
    jwt_public_key: str | None = env_field(None, "IDENTITY_JWT_PUBLIC_KEY")
    jwt_kid: str = env_field("identity-default", "IDENTITY_JWT_KID")
    issuer: str = env_field("http://localhost:4000", "IDENTITY_ISSUER")
    jwks_expose_symmetric_key: bool = env_field(
        False,
        "IDENTITY_JWKS_EXPOSE_SYMMETRIC_KEY",
        description="Publish the HS256 secret as an oct JWK; only for internal-only JWKS endpoints.",
    )

    # Lifetimes
    access_token_ttl_seconds: int = env_field(
        300, "IDENTITY_ACCESS_TOKEN_TTL_SECONDS", gt=0
    )
    refresh_token_ttl_seconds: int = env_field(
        60 * 60 * 24 * 30, "IDENTITY_REFRESH_TOKEN_TTL_SECONDS", gt=0
    )
    authorization_code_ttl_seconds: int = env_field(
        60, "IDENTITY_AUTHORIZATION_CODE_TTL_SECONDS", gt=0
    )

    # Cookies
    cookie_domain: str | None = env_field(None, "IDENTITY_COOKIE_DOMAIN")
    cookie_secure: bool = env_field(True, "IDENTITY_COOKIE_SECURE")
    refresh_cookie_name: str = env_field("gn_platform_refresh", "IDENTITY_REFRESH_COOKIE_NAME")
    session_cookie_name: str = env_field("session_id", "IDENTITY_SESSION_COOKIE_NAME")

    # Background revocation retries
    revocation_retry_interval_seconds: int = env_field(
        30, "IDENTITY_REVOCATION_RETRY_INTERVAL_SECONDS", gt=0
    )
    revocation_max_attempts: int = env_field(
        10, "IDENTITY_REVOCATION_MAX_ATTEMPTS", gt=0
    )

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    build_sha: str = env_field("dev", "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("issuer")
    @classmethod
    def _strip_issuer(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("jwt_private_key", "jwt_public_key")
    @classmethod
    def _normalize_keys(cls, value: str | None) -> str | None:
        return normalize_pem(value)

    @model_validator(mode="after")
    def _check_signing_material(self) -> "Settings":
        if self.jwt_alg == SigningAlgorithm.RS256:
            if not self.jwt_private_key:
                raise ValueError(
                    "IDENTITY_JWT_PRIVATE_KEY is required when IDENTITY_JWT_ALG=RS256"
                )
            return self
        if not self.jwt_secret:
            raise ValueError("IDENTITY_JWT_SECRET is required when IDENTITY_JWT_ALG=HS256")
        if len(self.jwt_secret) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"IDENTITY_JWT_SECRET must be at least {MIN_SECRET_LENGTH} characters"
            )
        if self.jwks_expose_symmetric_key:
            logger.warning(
                "jwks_symmetric_key_exposed",
                kid=self.jwt_kid,
                message="HS256 secret will be published on the JWKS endpoint; keep it internal-only",
            )
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
