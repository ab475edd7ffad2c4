from __future__ import annotations

import asyncio
import hashlib
import json
import secrets
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, Optional, Tuple

from identity_core.logging import get_logger
from identity_core.storage.redis_cache import RedisCache

logger = get_logger(__name__)

Clock = Callable[[], float]

# 32 random bytes, ~43 url-safe characters.
CODE_ENTROPY_BYTES = 32


@dataclass(frozen=True)
class AuthorizationCodePayload:
    """Everything the token endpoint needs to mint tokens for a code."""

    user_id: str
    client_id: str
    product_id: str
    tenant_id: str
    organization_id: str
    redirect_uri: str
    scope: str
    code_challenge: str
    code_challenge_method: str = "S256"
    roles: Tuple[str, ...] = field(default_factory=tuple)
    session_id: Optional[str] = None
    nonce: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class AuthorizationCodeEntry:
    code: str
    payload: AuthorizationCodePayload
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_json(self) -> str:
        data = asdict(self)
        data["payload"]["roles"] = list(self.payload.roles)
        return json.dumps(data, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "AuthorizationCodeEntry":
        data = json.loads(raw)
        payload = dict(data["payload"])
        payload["roles"] = tuple(payload.get("roles") or ())
        return cls(
            code=data["code"],
            payload=AuthorizationCodePayload(**payload),
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
        )


def generate_code() -> str:
    return secrets.token_urlsafe(CODE_ENTROPY_BYTES)


class AuthorizationCodeStore:
    """Process-local, single-use, TTL-bound authorization code cache.

    ``consume`` removes the entry before looking at its expiry, so two callers
    racing on one code can never both receive it, and an expired code reads
    exactly like an unknown or already-used one.

    Pruning of abandoned codes runs as an owned asyncio task between
    ``start()`` and ``stop()``; ``prune_expired()`` can also be called directly.
    Only safe for a single instance; multi-instance deployments use
    ``RedisAuthorizationCodeStore``.
    """

    def __init__(self, ttl_seconds: int = 60, *, clock: Clock = time.time) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, AuthorizationCodeEntry] = {}
        self._lock = threading.Lock()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def create(self, payload: AuthorizationCodePayload) -> AuthorizationCodeEntry:
        now = self._clock()
        entry = AuthorizationCodeEntry(
            code=generate_code(),
            payload=payload,
            created_at=now,
            expires_at=now + self.ttl_seconds,
        )
        with self._lock:
            self._entries[entry.code] = entry
        return entry

    async def consume(self, code: str) -> Optional[AuthorizationCodeEntry]:
        with self._lock:
            entry = self._entries.pop(code, None)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            return None
        return entry

    def prune_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [code for code, entry in self._entries.items() if entry.is_expired(now)]
            for code in expired:
                del self._entries[code]
        if expired:
            logger.debug("authorization_codes_pruned", count=len(expired))
        return len(expired)

    async def start(self) -> None:
        if self._running:
            logger.warning("code_store_pruner_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._prune_loop())
        logger.info("code_store_pruner_started", interval_seconds=self.ttl_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("code_store_pruner_stopped")

    async def _prune_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.ttl_seconds)
            try:
                self.prune_expired()
            except Exception as exc:
                logger.error(
                    "code_store_prune_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )


class RedisAuthorizationCodeStore:
    """Authorization codes held in Redis so every instance sees one copy.

    Keys are the SHA-256 of the code, values expire via Redis TTL and are
    consumed with ``GETDEL``.
    """

    def __init__(
        self, cache: RedisCache, ttl_seconds: int = 60, *, clock: Clock = time.time
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    @staticmethod
    def _key(code: str) -> str:
        return hashlib.sha256(code.encode("utf-8")).hexdigest()

    async def create(self, payload: AuthorizationCodePayload) -> AuthorizationCodeEntry:
        now = self._clock()
        entry = AuthorizationCodeEntry(
            code=generate_code(),
            payload=payload,
            created_at=now,
            expires_at=now + self.ttl_seconds,
        )
        await self.cache.store_authorization_code(
            self._key(entry.code), entry.to_json(), self.ttl_seconds
        )
        return entry

    async def consume(self, code: str) -> Optional[AuthorizationCodeEntry]:
        raw = await self.cache.pop_authorization_code(self._key(code))
        if raw is None:
            return None
        try:
            entry = AuthorizationCodeEntry.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("authorization_code_corrupt", error_type=type(exc).__name__)
            return None
        if entry.is_expired(self._clock()):
            return None
        return entry

    def prune_expired(self) -> int:
        return 0

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None


__all__ = [
    "AuthorizationCodePayload",
    "AuthorizationCodeEntry",
    "AuthorizationCodeStore",
    "RedisAuthorizationCodeStore",
    "generate_code",
]
