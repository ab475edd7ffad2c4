from __future__ import annotations

import hashlib
import hmac
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from identity_core.service.jwt import encode_segment

_pwd_hasher = PasswordHasher(type=Type.ID)


def hash_client_secret(secret: str, *, algorithm: str = "argon2id") -> str:
    """Hash a client secret for storage.

    ``argon2id`` is the default; ``sha256`` produces a hex digest for
    registrations migrated from systems that stored plain SHA-256.
    """
    if algorithm == "argon2id":
        return _pwd_hasher.hash(secret)
    if algorithm == "sha256":
        return hashlib.sha256(secret.encode("utf-8")).hexdigest()
    raise ValueError(f"unsupported client secret algorithm: {algorithm}")


def verify_client_secret(presented: Optional[str], stored_hash: str) -> bool:
    if not presented:
        return False
    if stored_hash.startswith("$argon2"):
        try:
            return _pwd_hasher.verify(stored_hash, presented)
        except (InvalidHash, VerificationError):
            return False
    digest = hashlib.sha256(presented.encode("utf-8")).hexdigest()
    return hmac.compare_digest(digest, stored_hash.lower())


def pkce_challenge(verifier: str) -> str:
    """S256 transform: base64url(sha256(verifier)) without padding."""
    return encode_segment(hashlib.sha256(verifier.encode("ascii")).digest())


def verify_pkce(verifier: Optional[str], challenge: str, method: str = "S256") -> bool:
    if not verifier or method != "S256":
        return False
    try:
        computed = pkce_challenge(verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(computed, challenge)


__all__ = ["hash_client_secret", "verify_client_secret", "pkce_challenge", "verify_pkce"]
