"""Tests for background retry of refresh-token revocations that failed mid-rotation."""

import pytest

from identity_core.service.revocation import RevocationReconciler
from identity_core.storage.errors import StoreUnavailable


class FlakyStore:
    def __init__(self, failures):
        self.failures = failures
        self.calls = []

    def revoke_refresh_token(self, token_hash):
        self.calls.append(token_hash)
        if self.failures > 0:
            self.failures -= 1
            raise StoreUnavailable("database unavailable")
        return True


@pytest.fixture
def make_reconciler(clock):
    def _make(store, **kwargs):
        return RevocationReconciler(store, interval_seconds=10, clock=clock, **kwargs)

    return _make


async def test_successful_retry_clears_queue(make_reconciler):
    store = FlakyStore(failures=0)
    reconciler = make_reconciler(store)
    reconciler.enqueue("hash-1")

    assert await reconciler.run_once() == 1
    assert reconciler.pending_count == 0
    assert store.calls == ["hash-1"]


async def test_enqueue_is_idempotent(make_reconciler):
    reconciler = make_reconciler(FlakyStore(failures=0))
    reconciler.enqueue("hash-1")
    reconciler.enqueue("hash-1")
    assert reconciler.pending_count == 1


async def test_failures_back_off_exponentially(make_reconciler, clock):
    store = FlakyStore(failures=2)
    reconciler = make_reconciler(store)
    reconciler.enqueue("hash-1")

    assert await reconciler.run_once() == 0  # attempt 1 fails, next in 10s
    clock.advance(5)
    assert await reconciler.run_once() == 0
    assert len(store.calls) == 1

    clock.advance(5)
    assert await reconciler.run_once() == 0  # attempt 2 fails, next in 20s
    clock.advance(19)
    await reconciler.run_once()
    assert len(store.calls) == 2

    clock.advance(1)
    assert await reconciler.run_once() == 1
    assert reconciler.pending_count == 0


async def test_gives_up_after_max_attempts(make_reconciler, clock):
    store = FlakyStore(failures=100)
    reconciler = make_reconciler(store, max_attempts=3)
    reconciler.enqueue("hash-1")

    for _ in range(5):
        await reconciler.run_once()
        clock.advance(1000)

    assert len(store.calls) == 3
    assert reconciler.pending_count == 0


async def test_start_stop(make_reconciler):
    reconciler = make_reconciler(FlakyStore(failures=0))
    await reconciler.start()
    assert reconciler._task is not None
    await reconciler.stop()
    assert reconciler._task is None
