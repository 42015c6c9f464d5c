# -*- coding: utf-8 -*-
"""
Per-chain Locking and Cancellation

Mutations lock every chain they touch, always in sorted id order so two
writers can never wait on each other in a cycle. Locks are re-entrant:
an engine may lock its chains and then hand off to the event store,
which locks the same set again on the same thread. Reads never lock;
they work on immutable snapshots.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from custody_ledger.exceptions import (
    ConcurrencyConflictError,
    OperationCancelledError,
)
from custody_ledger import metrics

logger = logging.getLogger(__name__)


class ChainLockManager:
    """Hands out one re-entrant lock per chain id."""

    def __init__(self, default_timeout: float = 5.0) -> None:
        self._default_timeout = default_timeout
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, chain_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(chain_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[chain_id] = lock
            return lock

    @contextmanager
    def acquire(
        self,
        *chain_ids: str,
        timeout: Optional[float] = None,
    ) -> Iterator[List[str]]:
        """Lock the given chains in sorted order for the ``with`` body.

        The timeout bounds the whole acquisition. On timeout every lock
        taken so far is released and ConcurrencyConflictError is raised.

        Yields:
            The sorted, de-duplicated chain ids that are held.
        """
        ordered = sorted(set(chain_ids))
        budget = self._default_timeout if timeout is None else timeout
        deadline = time.monotonic() + budget
        held: List[threading.RLock] = []
        try:
            for chain_id in ordered:
                lock = self._lock_for(chain_id)
                remaining = max(0.0, deadline - time.monotonic())
                if not lock.acquire(timeout=remaining):
                    metrics.record_lock_conflict()
                    logger.warning(
                        "Lock timeout on chain %s after %.2fs (%d chains requested)",
                        chain_id, budget, len(ordered),
                    )
                    raise ConcurrencyConflictError(
                        f"Timed out waiting for chain {chain_id}",
                        context={"chain_id": chain_id, "timeout": budget},
                    )
                held.append(lock)
            yield ordered
        finally:
            for lock in reversed(held):
                lock.release()

    @property
    def lock_count(self) -> int:
        return len(self._locks)


class CancellationToken:
    """Cooperative cancellation flag checked by long-running reads."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError("Operation cancelled by caller")


def check_cancelled(token: Optional[CancellationToken]) -> None:
    """Raise OperationCancelledError if ``token`` has been cancelled."""
    if token is not None:
        token.raise_if_cancelled()


__all__ = [
    "ChainLockManager",
    "CancellationToken",
    "check_cancelled",
]
