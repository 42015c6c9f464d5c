# -*- coding: utf-8 -*-
"""
Event Store - Custody Ledger

Append-only log of custody events and the single source of truth of the
ledger. Every append is validated against the chain's projected state
before anything is written; a batch either commits completely or leaves
no trace.

Ordering:
    Each committed event gets a ledger-wide ``sequence`` number. Listings
    are ordered by ``(event_time, sequence)``; chain projection replays
    events in ``sequence`` order.

Example:
    >>> store = EventStore(registry)
    >>> event_id = store.append_event(chain.id, CustodyEvent(
    ...     chain_id=chain.id, event_type="transportation",
    ...     business_step="shipping"))
    >>> [e.event_type for e in store.list_events(chain.id)]
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import (
    TYPE_CHECKING,
    Dict,
    FrozenSet,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    Tuple,
)

from custody_ledger.chain_registry import ChainRegistry
from custody_ledger.concurrency import (
    CancellationToken,
    ChainLockManager,
    check_cancelled,
)
from custody_ledger.config import CustodyLedgerConfig, get_config
from custody_ledger.exceptions import (
    InvalidEventError,
    NotFoundError,
    ValidationError,
)
from custody_ledger.models import (
    BusinessStep,
    CustodyChain,
    CustodyEvent,
    Disposition,
    EventType,
    RecordEventRequest,
    ensure_utc,
)
from custody_ledger.provenance import ProvenanceTracker
from custody_ledger.quantity import parse_unit, quantize
from custody_ledger import metrics

if TYPE_CHECKING:
    from custody_ledger.split_merge import SplitMergeEngine

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Allowed (event_type, business_step, disposition) combinations
# ---------------------------------------------------------------------------

_ANY_DISPOSITION: FrozenSet[Disposition] = frozenset(Disposition)

ALLOWED_COMBINATIONS: Dict[
    EventType, Tuple[FrozenSet[BusinessStep], FrozenSet[Disposition]]
] = {
    EventType.CREATION: (
        frozenset({
            BusinessStep.HARVESTING,
            BusinessStep.COLLECTING,
            BusinessStep.PROCESSING,
            BusinessStep.RECEIVING,
        }),
        frozenset({Disposition.ACTIVE}),
    ),
    EventType.TRANSPORTATION: (
        frozenset({
            BusinessStep.COLLECTING,
            BusinessStep.SHIPPING,
            BusinessStep.RECEIVING,
        }),
        frozenset({
            Disposition.ACTIVE,
            Disposition.INACTIVE,
            Disposition.RECALLED,
        }),
    ),
    EventType.PROCESSING: (
        frozenset({BusinessStep.PROCESSING, BusinessStep.STORING}),
        _ANY_DISPOSITION,
    ),
    EventType.TRANSFORMATION: (
        frozenset({BusinessStep.PROCESSING}),
        frozenset({Disposition.ACTIVE, Disposition.INACTIVE}),
    ),
    EventType.AGGREGATION: (
        frozenset({
            BusinessStep.COLLECTING,
            BusinessStep.PROCESSING,
            BusinessStep.STORING,
            BusinessStep.RECEIVING,
        }),
        frozenset({Disposition.ACTIVE, Disposition.INACTIVE}),
    ),
    EventType.DISAGGREGATION: (
        frozenset({
            BusinessStep.PROCESSING,
            BusinessStep.STORING,
            BusinessStep.SHIPPING,
        }),
        frozenset({Disposition.ACTIVE, Disposition.INACTIVE}),
    ),
}

# Event types a caller may record with a (negative) quantity
_CONSUMING_EVENT_TYPES = frozenset({
    EventType.PROCESSING,
    EventType.TRANSFORMATION,
    EventType.DISAGGREGATION,
})


def check_combination(
    event_type: EventType,
    business_step: BusinessStep,
    disposition: Disposition,
) -> None:
    """Raise InvalidEventError unless the combination is allowed."""
    steps, dispositions = ALLOWED_COMBINATIONS[event_type]
    if business_step not in steps:
        raise InvalidEventError(
            f"Business step '{business_step.value}' is not allowed for "
            f"{event_type.value} events",
            context={
                "event_type": event_type.value,
                "business_step": business_step.value,
                "allowed": sorted(s.value for s in steps),
            },
        )
    if disposition not in dispositions:
        raise InvalidEventError(
            f"Disposition '{disposition.value}' is not allowed for "
            f"{event_type.value} events",
            context={
                "event_type": event_type.value,
                "disposition": disposition.value,
                "allowed": sorted(d.value for d in dispositions),
            },
        )


def _event_order(event: CustodyEvent) -> Tuple[datetime, int]:
    return (event.event_time, event.sequence)


# ---------------------------------------------------------------------------
# EventSequence
# ---------------------------------------------------------------------------


class EventSequence:
    """Lazy, finite, restartable view over a snapshot of events.

    The snapshot is taken when the sequence is created; events appended
    afterwards do not appear. Each iteration starts from the beginning and
    checks the cancellation token before yielding every event.
    """

    def __init__(
        self,
        events: Sequence[CustodyEvent],
        facility_ref: Optional[str] = None,
        limit: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        self._events = tuple(events)
        self._facility_ref = facility_ref
        self._limit = limit
        self._cancel_token = cancel_token

    def __iter__(self) -> Iterator[CustodyEvent]:
        yielded = 0
        for event in self._events:
            if self._limit is not None and yielded >= self._limit:
                return
            check_cancelled(self._cancel_token)
            if (
                self._facility_ref is not None
                and event.facility_ref != self._facility_ref
            ):
                continue
            yielded += 1
            yield event

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def to_list(self) -> List[CustodyEvent]:
        return [event for event in self]


# ---------------------------------------------------------------------------
# EventStore
# ---------------------------------------------------------------------------


class EventStore:
    """Append-only custody event log.

    Attributes:
        _log: Every committed event in commit order.
        _by_id: Event lookup by id.
        _by_chain: Per-chain tuple of events, swapped on every append.
    """

    def __init__(
        self,
        registry: ChainRegistry,
        lock_manager: Optional[ChainLockManager] = None,
        provenance: Optional[ProvenanceTracker] = None,
        config: Optional[CustodyLedgerConfig] = None,
    ) -> None:
        self._config = config or get_config()
        self._registry = registry
        self._lock_manager = lock_manager or ChainLockManager(
            self._config.lock_timeout_seconds,
        )
        self._provenance = provenance
        self._transformer: Optional[SplitMergeEngine] = None

        self._log: List[CustodyEvent] = []
        self._by_id: Dict[str, CustodyEvent] = {}
        self._by_chain: Dict[str, Tuple[CustodyEvent, ...]] = {}
        self._sequence = itertools.count(1)
        self._write_lock = threading.Lock()

        registry.attach_event_store(self)
        logger.info("EventStore initialized")

    def attach_transformer(self, engine: SplitMergeEngine) -> None:
        """Bind the engine that handles transformations with outputs."""
        self._transformer = engine

    @property
    def lock_manager(self) -> ChainLockManager:
        return self._lock_manager

    # ------------------------------------------------------------------
    # Appends
    # ------------------------------------------------------------------

    def append_event(self, chain_id: str, event: CustodyEvent) -> str:
        """Validate and append one event to a chain.

        Returns:
            The id of the committed event.

        Raises:
            NotFoundError: If the chain does not exist.
            InvalidEventError: If the combination is not allowed, the chain
                is terminal, or the event would drive remaining negative
                (raised as InsufficientQuantityError).
        """
        chain = self._registry.get_chain(chain_id)
        if event.chain_id != chain.id:
            event = event.model_copy(update={"chain_id": chain.id})
        committed = self.append_batch([event], user_id=event.recorded_by_ref)
        return committed[0].id

    def append_batch(
        self,
        events: Sequence[CustodyEvent],
        new_chains: Sequence[CustodyChain] = (),
        user_id: Optional[str] = None,
    ) -> List[CustodyEvent]:
        """Append events atomically, registering any new chains first.

        The whole batch is validated against the projected state of every
        chain it touches before anything is written. Any failure during
        the commit rolls back every event, new chain and snapshot.

        Returns:
            The committed events, stamped with sequence and provenance.
        """
        if not events:
            raise ValidationError("An event batch must not be empty")

        touched = sorted(
            {e.chain_id for e in events} | {c.id for c in new_chains}
        )
        with self._lock_manager.acquire(*touched):
            self._validate_batch(events, new_chains)
            committed = self._commit(events, new_chains, touched)

        for chain in new_chains:
            self._record_provenance(
                "chain", chain.id, "chain.create",
                ProvenanceTracker.hash_payload(chain.model_dump(mode="json")),
                user_id,
            )
        for event in committed:
            self._record_provenance(
                "event", event.id, "event.append", event.provenance_hash,
                user_id, metadata={"chain_id": event.chain_id},
            )
            metrics.record_event(event.event_type.value)
        return committed

    def record_event(self, request: RecordEventRequest) -> CustodyEvent:
        """Record a caller-supplied event on an existing chain.

        Creation events are emitted only by chain creation. Quantities may
        only be negative, and only on processing, transformation and
        disaggregation events. A transformation carrying outputs creates
        the derived output chain through the split/merge engine.

        Raises:
            NotFoundError, InvalidEventError, ValidationError
        """
        start_time = time.monotonic()
        chain = self._registry.get_chain(request.chain_id)

        if request.event_type is EventType.CREATION:
            raise InvalidEventError(
                "Creation events are emitted when a chain is created",
                context={"chain_id": chain.id},
            )
        check_combination(
            request.event_type, request.business_step, request.disposition,
        )

        quantity: Optional[Decimal] = None
        if request.quantity is not None:
            quantity = quantize(request.quantity, self._config)
            if quantity > 0:
                raise InvalidEventError(
                    "Recorded events may only consume mass (quantity <= 0); "
                    "mass enters the ledger through chain creation, split, "
                    "merge or transformation",
                    context={"chain_id": chain.id, "quantity": str(quantity)},
                )
            if quantity == 0:
                quantity = None
        if quantity is not None and request.event_type not in _CONSUMING_EVENT_TYPES:
            raise InvalidEventError(
                f"{request.event_type.value} events carry no quantity",
                context={"chain_id": chain.id},
            )

        unit = parse_unit(request.unit, self._config) if request.unit else chain.unit

        if request.output_product_type is not None:
            if quantity is None:
                raise ValidationError(
                    "A transformation with outputs needs the consumed quantity",
                    invalid_fields={"quantity": "required and negative"},
                )
            if self._transformer is None:
                raise RuntimeError("EventStore has no transformer attached")
            result = self._transformer.transform(
                chain.id,
                input_quantity=-quantity,
                output_product_type=request.output_product_type,
                output_quantity=request.output_quantity,
                unit=unit,
                conversion_rate=request.conversion_rate,
                facility_ref=request.facility_ref,
                disposition=request.disposition,
                event_time=request.event_time,
                recorded_by_ref=request.recorded_by_ref,
                notes=request.notes,
                user_data=request.user_data,
            )
            return result.event

        event = CustodyEvent(
            chain_id=chain.id,
            event_type=request.event_type,
            business_step=request.business_step,
            disposition=request.disposition,
            quantity=quantity,
            unit=unit,
            facility_ref=request.facility_ref,
            recorded_by_ref=request.recorded_by_ref,
            conversion_rate=request.conversion_rate,
            notes=request.notes,
            user_data=dict(request.user_data),
            **({"event_time": request.event_time} if request.event_time else {}),
        )
        event_id = self.append_event(chain.id, event)
        committed = self._by_id[event_id]

        elapsed_ms = (time.monotonic() - start_time) * 1000
        logger.info(
            "Recorded %s event %s on chain %s, qty=%s (%.1f ms)",
            committed.event_type.value, committed.id[:8], chain.chain_id,
            committed.quantity, elapsed_ms,
        )
        return committed

    # ------------------------------------------------------------------
    # Reads (lock-free, snapshot based)
    # ------------------------------------------------------------------

    def list_events(
        self,
        chain_ref: str,
        facility_ref: Optional[str] = None,
        limit: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> EventSequence:
        """Return a chain's events ordered by (event_time, sequence).

        Raises:
            NotFoundError: If the chain does not exist.
            ValidationError: If limit is negative.
        """
        if limit is not None and limit < 0:
            raise ValidationError(
                "limit must be >= 0",
                invalid_fields={"limit": "must be >= 0"},
            )
        chain = self._registry.get_chain(chain_ref)
        snapshot = sorted(self._by_chain.get(chain.id, ()), key=_event_order)
        return EventSequence(
            snapshot,
            facility_ref=facility_ref,
            limit=limit,
            cancel_token=cancel_token,
        )

    def events_for_chain(self, chain_id: str) -> Tuple[CustodyEvent, ...]:
        """Return a chain's events in sequence order."""
        return self._by_chain.get(chain_id, ())

    def get_event(self, event_id: str) -> CustodyEvent:
        event = self._by_id.get(event_id)
        if event is None:
            raise NotFoundError(
                f"Event {event_id} not found",
                entity_type="event",
                entity_id=event_id,
            )
        return event

    def events_for_facility(
        self,
        facility_ref: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[CustodyEvent]:
        return [
            e for e in self.all_events(start, end)
            if e.facility_ref == facility_ref
        ]

    def all_events(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[CustodyEvent]:
        """Return every event, optionally within an inclusive time window."""
        start = ensure_utc(start)
        end = ensure_utc(end)
        events = list(self._log)
        if start is not None:
            events = [e for e in events if e.event_time >= start]
        if end is not None:
            events = [e for e in events if e.event_time <= end]
        return sorted(events, key=_event_order)

    @property
    def event_count(self) -> int:
        return len(self._log)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _validate_batch(
        self,
        events: Sequence[CustodyEvent],
        new_chains: Sequence[CustodyChain],
    ) -> Dict[str, CustodyChain]:
        """Project the batch onto working copies; raise on the first error."""
        working: Dict[str, CustodyChain] = {c.id: c for c in new_chains}
        for event in events:
            chain = working.get(event.chain_id)
            if chain is None:
                chain = self._registry.find_chain(event.chain_id)
            if chain is None or chain.id != event.chain_id:
                raise NotFoundError(
                    f"Chain {event.chain_id} not found",
                    entity_type="chain",
                    entity_id=event.chain_id,
                )
            check_combination(
                event.event_type, event.business_step, event.disposition,
            )
            for related in event.related_chain_ids:
                if related not in working and self._registry.find_chain(related) is None:
                    raise InvalidEventError(
                        f"Related chain {related} does not exist",
                        context={"event_id": event.id, "related": related},
                    )
            working[chain.id] = self._registry.project(chain, event)
        return working

    def _commit(
        self,
        events: Sequence[CustodyEvent],
        new_chains: Sequence[CustodyChain],
        touched: Iterable[str],
    ) -> List[CustodyEvent]:
        touched = list(touched)
        new_ids = {c.id for c in new_chains}
        before: Dict[str, CustodyChain] = {}
        for chain_id in touched:
            if chain_id not in new_ids:
                before[chain_id] = self._registry.get_chain(chain_id)
        chain_events_before = {
            chain_id: self._by_chain.get(chain_id, ()) for chain_id in touched
        }

        committed: List[CustodyEvent] = []
        registered = False
        with self._write_lock:
            try:
                self._registry._register(new_chains)
                registered = True
                now = datetime.now(timezone.utc)
                for event in events:
                    stamped = self._stamp(event, next(self._sequence), now)
                    self._log.append(stamped)
                    self._by_id[stamped.id] = stamped
                    self._by_chain[stamped.chain_id] = (
                        self._by_chain.get(stamped.chain_id, ()) + (stamped,)
                    )
                    committed.append(stamped)
                for chain_id in touched:
                    self._registry.rederive(chain_id)
            except Exception:
                logger.warning(
                    "Rolling back batch of %d events over %d chains",
                    len(events), len(touched),
                )
                if committed:
                    del self._log[-len(committed):]
                for stamped in committed:
                    self._by_id.pop(stamped.id, None)
                for chain_id, previous in chain_events_before.items():
                    if previous:
                        self._by_chain[chain_id] = previous
                    else:
                        self._by_chain.pop(chain_id, None)
                self._registry._restore(before)
                if registered:
                    self._registry._unregister(new_ids)
                raise
        self._registry._refresh_gauges()
        return committed

    def _stamp(
        self,
        event: CustodyEvent,
        sequence: int,
        recorded_at: datetime,
    ) -> CustodyEvent:
        stamped = event.model_copy(update={
            "sequence": sequence,
            "recorded_at": recorded_at,
        })
        if not self._config.enable_provenance:
            return stamped
        payload = stamped.model_dump(mode="json", exclude={"provenance_hash"})
        return stamped.model_copy(update={
            "provenance_hash": ProvenanceTracker.hash_payload(payload),
        })

    def _record_provenance(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        data_hash: str,
        user_id: Optional[str],
        metadata: Optional[Dict[str, str]] = None,
    ) -> None:
        if self._provenance is None or not self._config.enable_provenance:
            return
        self._provenance.record(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            data_hash=data_hash,
            user_id=user_id,
            metadata=metadata,
        )


__all__ = [
    "ALLOWED_COMBINATIONS",
    "check_combination",
    "EventSequence",
    "EventStore",
]
