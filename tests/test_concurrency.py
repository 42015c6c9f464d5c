# -*- coding: utf-8 -*-
"""Tests for per-chain locking, cancellation and concurrent mutation."""

import threading
from decimal import Decimal

import pytest

from custody_ledger.concurrency import (
    CancellationToken,
    ChainLockManager,
    check_cancelled,
)
from custody_ledger.exceptions import (
    ConcurrencyConflictError,
    InvalidEventError,
    OperationCancelledError,
)


# ==============================================================================
# ChainLockManager
# ==============================================================================

class TestChainLockManager:
    """Tests for ChainLockManager."""

    def test_yields_sorted_unique_ids(self):
        manager = ChainLockManager()
        with manager.acquire("c", "a", "b", "a") as held:
            assert held == ["a", "b", "c"]
        assert manager.lock_count == 3

    def test_reentrant(self):
        manager = ChainLockManager(default_timeout=0.05)
        with manager.acquire("a", "b"):
            with manager.acquire("b"):
                pass

    def test_timeout_raises_conflict(self):
        manager = ChainLockManager(default_timeout=0.05)
        holding = threading.Event()
        release = threading.Event()

        def _hold():
            with manager.acquire("a"):
                holding.set()
                release.wait(5)

        worker = threading.Thread(target=_hold)
        worker.start()
        try:
            assert holding.wait(5)
            with pytest.raises(ConcurrencyConflictError) as exc_info:
                with manager.acquire("a", "b"):
                    pass
            assert exc_info.value.retriable
            assert exc_info.value.context["chain_id"] == "a"
        finally:
            release.set()
            worker.join()

    def test_partial_acquisition_released_on_timeout(self):
        """Locks taken before the timeout are released again."""
        manager = ChainLockManager(default_timeout=0.05)
        holding = threading.Event()
        release = threading.Event()

        def _hold():
            with manager.acquire("b"):
                holding.set()
                release.wait(5)

        worker = threading.Thread(target=_hold)
        worker.start()
        try:
            assert holding.wait(5)
            with pytest.raises(ConcurrencyConflictError):
                with manager.acquire("a", "b"):
                    pass

            acquired = []

            def _take_a():
                with manager.acquire("a", timeout=1):
                    acquired.append(True)

            other = threading.Thread(target=_take_a)
            other.start()
            other.join()
            assert acquired == [True]
        finally:
            release.set()
            worker.join()


class TestCancellationToken:
    """Tests for CancellationToken."""

    def test_not_cancelled(self):
        token = CancellationToken()
        assert not token.cancelled
        token.raise_if_cancelled()
        check_cancelled(token)
        check_cancelled(None)

    def test_cancelled(self):
        token = CancellationToken()
        token.cancel()
        assert token.cancelled
        with pytest.raises(OperationCancelledError):
            check_cancelled(token)

    def test_cancel_from_other_thread(self):
        token = CancellationToken()
        worker = threading.Thread(target=token.cancel)
        worker.start()
        worker.join()
        assert token.cancelled


# ==============================================================================
# Concurrent mutation
# ==============================================================================

class TestConcurrentMutation:
    """Concurrent writers never overdraw a chain."""

    def test_concurrent_consumption(self, service, ffb_chain):
        successes = []
        rejected = []
        barrier = threading.Barrier(10)

        def _consume():
            barrier.wait()
            try:
                service.record_custody_event({
                    "chain_id": ffb_chain.id,
                    "event_type": "processing",
                    "business_step": "processing",
                    "quantity": -150,
                })
                successes.append(True)
            except InvalidEventError:
                rejected.append(True)

        threads = [threading.Thread(target=_consume) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(successes) == 6
        assert len(rejected) == 4
        chain = service.get_custody_chain(ffb_chain.id)
        assert chain.remaining_quantity == Decimal("100.000")
        assert service.validate_mass_balance(ffb_chain.id).is_valid

    def test_concurrent_splits(self, service, ffb_chain):
        children = []
        barrier = threading.Barrier(4)

        def _split():
            barrier.wait()
            try:
                children.extend(service.split_chain(ffb_chain.id, {
                    "allocations": [{"quantity": 150}, {"quantity": 150}],
                }))
            except InvalidEventError:
                pass

        threads = [threading.Thread(target=_split) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(children) == 6
        chain = service.get_custody_chain(ffb_chain.id)
        assert chain.remaining_quantity == Decimal("100.000")
        assert sorted(chain.child_chain_ids) == sorted(c.id for c in children)

    def test_sequences_are_unique(self, service, make_chain):
        codes = [f"LOT-{i}" for i in range(8)]
        threads = [
            threading.Thread(target=make_chain, args=(code,)) for code in codes
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        sequences = [e.sequence for e in service.event_store.all_events()]
        assert len(sequences) == len(set(sequences)) == 8
