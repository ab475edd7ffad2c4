from __future__ import annotations

import base64
import hashlib
import hmac
import json
from typing import Any, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from identity_core.config import SigningAlgorithm
from identity_core.logging import get_logger

logger = get_logger(__name__)


class JwtError(Exception):
    """Token could not be parsed or its signature did not verify."""


def encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def decode_segment(segment: str) -> bytes:
    padding_len = -len(segment) % 4
    return base64.urlsafe_b64decode(segment + ("=" * padding_len))


def _int_to_segment(value: int) -> str:
    length = (value.bit_length() + 7) // 8
    return encode_segment(value.to_bytes(length, "big"))


class JwtSigner:
    """Compact JWS signing and verification for one configured key.

    HS256 signs with an HMAC secret; RS256 signs with an RSA private key and
    verifies with its public half. The header ``alg`` must equal the configured
    algorithm, so tokens cannot downgrade to a weaker or unsigned variant.
    """

    def __init__(
        self,
        alg: SigningAlgorithm,
        kid: str,
        *,
        secret: Optional[str] = None,
        private_key_pem: Optional[str] = None,
        public_key_pem: Optional[str] = None,
    ) -> None:
        self.alg = SigningAlgorithm(alg)
        self.kid = kid
        self._secret: Optional[bytes] = None
        self._private_key: Optional[rsa.RSAPrivateKey] = None
        self._public_key: Optional[rsa.RSAPublicKey] = None
        if self.alg == SigningAlgorithm.HS256:
            if not secret:
                raise ValueError("HS256 signing requires a secret")
            self._secret = secret.encode()
            return
        if not private_key_pem:
            raise ValueError("RS256 signing requires a private key")
        private_key = serialization.load_pem_private_key(
            private_key_pem.encode(), password=None
        )
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise ValueError("RS256 signing requires an RSA private key")
        self._private_key = private_key
        if public_key_pem:
            public_key = serialization.load_pem_public_key(public_key_pem.encode())
            if not isinstance(public_key, rsa.RSAPublicKey):
                raise ValueError("RS256 verification requires an RSA public key")
            self._public_key = public_key
        else:
            self._public_key = private_key.public_key()

    @property
    def is_symmetric(self) -> bool:
        return self.alg == SigningAlgorithm.HS256

    def _sign(self, signing_input: bytes) -> bytes:
        if self._secret is not None:
            return hmac.new(self._secret, signing_input, hashlib.sha256).digest()
        assert self._private_key is not None
        return self._private_key.sign(signing_input, padding.PKCS1v15(), hashes.SHA256())

    def _verify(self, signing_input: bytes, signature: bytes) -> bool:
        if self._secret is not None:
            expected = hmac.new(self._secret, signing_input, hashlib.sha256).digest()
            return hmac.compare_digest(expected, signature)
        assert self._public_key is not None
        try:
            self._public_key.verify(
                signature, signing_input, padding.PKCS1v15(), hashes.SHA256()
            )
        except InvalidSignature:
            return False
        return True

    def encode(self, payload: dict[str, Any], *, typ: str) -> str:
        header = {"alg": self.alg.value, "kid": self.kid, "typ": typ}
        header_enc = encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = self._sign(signing_input.encode())
        return f"{signing_input}.{encode_segment(signature)}"

    def decode(self, token: str) -> Tuple[dict[str, Any], dict[str, Any]]:
        """Return ``(header, payload)`` after checking alg and signature.

        Claim checks (issuer, audience, expiry) are left to the caller.
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError as exc:
            raise JwtError("malformed token") from exc
        try:
            header = json.loads(decode_segment(header_b64))
            signature = decode_segment(sig_b64)
        except (ValueError, TypeError) as exc:
            raise JwtError("undecodable header") from exc
        if not isinstance(header, dict):
            raise JwtError("header is not an object")
        if header.get("alg") != self.alg.value:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise JwtError("unexpected algorithm")
        if not self._verify(f"{header_b64}.{payload_b64}".encode(), signature):
            raise JwtError("signature mismatch")
        try:
            payload = json.loads(decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise JwtError("undecodable payload") from exc
        if not isinstance(payload, dict):
            raise JwtError("payload is not an object")
        return header, payload

    def jwk(self) -> dict[str, Any]:
        """Public verification key in JWK form (``oct`` for HS256, ``RSA`` for RS256)."""
        if self._secret is not None:
            return {
                "kty": "oct",
                "kid": self.kid,
                "alg": self.alg.value,
                "use": "sig",
                "k": encode_segment(self._secret),
            }
        assert self._public_key is not None
        numbers = self._public_key.public_numbers()
        return {
            "kty": "RSA",
            "kid": self.kid,
            "alg": self.alg.value,
            "use": "sig",
            "n": _int_to_segment(numbers.n),
            "e": _int_to_segment(numbers.e),
        }


__all__ = ["JwtSigner", "JwtError", "encode_segment", "decode_segment"]
