from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from identity_core.logging import get_logger

logger = get_logger(__name__)

MAX_BACKOFF_SECONDS = 3600


@dataclass
class PendingRevocation:
    token_hash: str
    attempts: int = 0
    next_attempt_at: float = 0.0
    reason: Optional[str] = None


class RevocationReconciler:
    """Retries refresh-token revocations that failed during rotation.

    Rotation does not block on a failed revoke; the hash is queued here and
    retried with exponential backoff until the store accepts it or
    ``max_attempts`` is reached.
    """

    def __init__(
        self,
        store,
        *,
        interval_seconds: int = 30,
        max_attempts: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts
        self._clock = clock
        self._pending: Dict[str, PendingRevocation] = {}
        self._lock = threading.Lock()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def enqueue(self, token_hash: str, *, reason: Optional[str] = None) -> None:
        with self._lock:
            if token_hash in self._pending:
                return
            self._pending[token_hash] = PendingRevocation(
                token_hash=token_hash, next_attempt_at=self._clock(), reason=reason
            )
        logger.warning("refresh_revocation_queued", reason=reason)

    def _backoff(self, attempts: int) -> float:
        return min(MAX_BACKOFF_SECONDS, self.interval_seconds * (2 ** max(0, attempts - 1)))

    async def run_once(self) -> int:
        """Attempt every due revocation; returns how many were resolved."""
        now = self._clock()
        with self._lock:
            due = [item for item in self._pending.values() if item.next_attempt_at <= now]
        resolved = 0
        for item in due:
            try:
                await asyncio.to_thread(self.store.revoke_refresh_token, item.token_hash)
            except Exception as exc:
                item.attempts += 1
                if item.attempts >= self.max_attempts:
                    with self._lock:
                        self._pending.pop(item.token_hash, None)
                    logger.error(
                        "refresh_revocation_abandoned",
                        attempts=item.attempts,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    continue
                item.next_attempt_at = self._clock() + self._backoff(item.attempts)
                logger.warning(
                    "refresh_revocation_retry_failed",
                    attempts=item.attempts,
                    error_type=type(exc).__name__,
                )
                continue
            with self._lock:
                self._pending.pop(item.token_hash, None)
            resolved += 1
        if resolved:
            logger.info("refresh_revocations_reconciled", count=resolved)
        return resolved

    async def start(self) -> None:
        if self._running:
            logger.warning("revocation_reconciler_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("revocation_reconciler_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("revocation_reconciler_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception as exc:
                logger.error(
                    "revocation_reconciler_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )


__all__ = ["RevocationReconciler", "PendingRevocation"]
