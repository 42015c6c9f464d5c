# -*- coding: utf-8 -*-
"""
Chain Registry - Custody Ledger

Holds the current projection of every custody chain. The event store is
the source of truth; after each append the registry replays the affected
chain's events and swaps in a fresh immutable snapshot, so readers never
see a half-applied change and never need a lock.

Status machine (events are replayed in sequence order):

    active -> merged    a linked aggregation drained the chain
    active -> split     the chain drained and has child chains
    active -> consumed  the chain drained with no child chains
    active -> closed    a non-active disposition while mass remains

Every other status is terminal; an event on a terminal chain is an
InvalidEventError.
A partially split or transformed chain keeps its children while it is
still active or closed.

Example:
    >>> registry = ChainRegistry()
    >>> store = EventStore(registry)
    >>> chain = registry.create_chain(CreateChainRequest(
    ...     chain_id="CHAIN-001", product_type="FFB", total_quantity=1000))
    >>> registry.get_chain("CHAIN-001").remaining_quantity
    Decimal('1000.000')
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from decimal import Decimal
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Union

from custody_ledger.config import CustodyLedgerConfig, get_config
from custody_ledger.exceptions import (
    InsufficientQuantityError,
    InvalidEventError,
    NotFoundError,
    ValidationError,
)
from custody_ledger.models import (
    PRODUCT_CATEGORIES,
    BusinessStep,
    ChainStatus,
    CloseChainRequest,
    CreateChainRequest,
    CustodyChain,
    CustodyEvent,
    Disposition,
    EventType,
    ProductCategory,
    ProductType,
)
from custody_ledger.quantity import convert, parse_unit, quantize
from custody_ledger import metrics

if TYPE_CHECKING:
    from custody_ledger.event_store import EventStore

logger = logging.getLogger(__name__)

# Event types that may bring mass into a fresh chain
_SOURCE_EVENT_TYPES = frozenset({
    EventType.CREATION,
    EventType.AGGREGATION,
    EventType.TRANSFORMATION,
})


class ChainRegistry:
    """Projection of chain state derived from the event log.

    Attributes:
        _chains: Current snapshot per internal chain id.
        _codes: Human-readable chain code to internal id.
        _event_store: Event log this registry projects.
    """

    def __init__(self, config: Optional[CustodyLedgerConfig] = None) -> None:
        self._config = config or get_config()
        self._chains: Dict[str, CustodyChain] = {}
        self._codes: Dict[str, str] = {}
        self._register_lock = threading.Lock()
        self._event_store: Optional[EventStore] = None
        logger.info("ChainRegistry initialized")

    def attach_event_store(self, event_store: EventStore) -> None:
        """Bind the event log; called by EventStore on construction."""
        self._event_store = event_store

    @property
    def event_store(self) -> EventStore:
        if self._event_store is None:
            raise RuntimeError("ChainRegistry has no EventStore attached")
        return self._event_store

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create_chain(self, request: CreateChainRequest) -> CustodyChain:
        """Create a chain and emit its implicit creation event.

        The creation event uses the ``harvesting`` step for raw material
        and ``receiving`` otherwise, with disposition ``active`` and the
        full quantity.

        Raises:
            ValidationError: If the quantity is not positive, the unit is
                unknown, or the chain code already exists.
        """
        start_time = time.monotonic()

        total = quantize(request.total_quantity, self._config)
        if total <= 0:
            raise ValidationError(
                "total_quantity must be > 0",
                invalid_fields={"total_quantity": "must be > 0"},
            )
        unit = parse_unit(request.unit, self._config)
        code = request.chain_id or self.generate_chain_code()
        if code in self._codes:
            raise ValidationError(
                f"Chain code {code} already exists",
                invalid_fields={"chain_id": "must be unique"},
            )

        chain = CustodyChain(
            chain_id=code,
            product_type=request.product_type,
            source_plot_ref=request.source_plot_ref,
            source_facility_ref=request.source_facility_ref,
            destination_facility_ref=request.destination_facility_ref,
            total_quantity=total,
            remaining_quantity=Decimal("0"),
            unit=unit,
            quality_grade=request.quality_grade,
            batch_number=request.batch_number,
            harvest_date=request.harvest_date,
            expiry_date=request.expiry_date,
            metadata=dict(request.metadata),
        )
        creation = CustodyEvent(
            chain_id=chain.id,
            event_type=EventType.CREATION,
            business_step=self.creation_step(chain.product_type),
            disposition=Disposition.ACTIVE,
            quantity=total,
            unit=unit,
            facility_ref=request.source_facility_ref,
            recorded_by_ref=request.recorded_by_ref,
            **({"event_time": request.event_time} if request.event_time else {}),
        )
        self.event_store.append_batch(
            [creation],
            new_chains=[chain],
            user_id=request.recorded_by_ref,
        )
        metrics.record_chain_created(chain.product_type.value)

        created = self._chains[chain.id]
        elapsed_ms = (time.monotonic() - start_time) * 1000
        logger.info(
            "Created chain %s (%s): %s %s %s (%.1f ms)",
            created.chain_id, created.id[:8], created.product_type.value,
            created.total_quantity, created.unit.value, elapsed_ms,
        )
        return created

    def close_chain(
        self,
        chain_ref: str,
        request: Optional[CloseChainRequest] = None,
    ) -> CustodyChain:
        """Administratively retire a chain that still holds mass.

        Records a ``processing``/``storing`` event with a non-active
        disposition; the remaining quantity stays on the closed chain.
        """
        request = request or CloseChainRequest()
        chain = self.get_chain(chain_ref)
        event = CustodyEvent(
            chain_id=chain.id,
            event_type=EventType.PROCESSING,
            business_step=BusinessStep.STORING,
            disposition=request.disposition,
            unit=chain.unit,
            facility_ref=request.facility_ref,
            recorded_by_ref=request.recorded_by_ref,
            notes=request.reason,
            **({"event_time": request.event_time} if request.event_time else {}),
        )
        self.event_store.append_event(chain.id, event)
        closed = self._chains[chain.id]
        logger.info(
            "Closed chain %s with %s %s remaining (%s)",
            closed.chain_id, closed.remaining_quantity, closed.unit.value,
            request.disposition.value,
        )
        return closed

    def get_chain(self, chain_ref: str) -> CustodyChain:
        """Return a chain by internal id or human-readable code.

        Raises:
            NotFoundError: If neither matches.
        """
        chain = self.find_chain(chain_ref)
        if chain is None:
            raise NotFoundError(
                f"Chain {chain_ref} not found",
                entity_type="chain",
                entity_id=chain_ref,
            )
        return chain

    def find_chain(self, chain_ref: str) -> Optional[CustodyChain]:
        chain = self._chains.get(chain_ref)
        if chain is None:
            chain_id = self._codes.get(chain_ref)
            if chain_id is not None:
                chain = self._chains.get(chain_id)
        return chain

    def list_chains(
        self,
        status: Optional[Union[str, ChainStatus]] = None,
        product_type: Optional[Union[str, ProductType]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[CustodyChain]:
        """List chains in creation order with optional filtering."""
        chains = list(self._chains.values())

        if status is not None:
            wanted = ChainStatus(status)
            chains = [c for c in chains if c.status is wanted]
        if product_type is not None:
            wanted_type = ProductType(product_type)
            chains = [c for c in chains if c.product_type is wanted_type]

        return chains[offset:offset + limit]

    def all_chains(self) -> List[CustodyChain]:
        return list(self._chains.values())

    @property
    def chain_count(self) -> int:
        return len(self._chains)

    def count_by_status(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for chain in list(self._chains.values()):
            counts[chain.status.value] = counts.get(chain.status.value, 0) + 1
        return counts

    def generate_chain_code(self) -> str:
        return f"{self._config.chain_id_prefix}-{uuid.uuid4().hex[:12].upper()}"

    @staticmethod
    def creation_step(product_type: ProductType) -> BusinessStep:
        if PRODUCT_CATEGORIES[product_type] is ProductCategory.RAW_MATERIAL:
            return BusinessStep.HARVESTING
        return BusinessStep.RECEIVING

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------

    def project(self, chain: CustodyChain, event: CustodyEvent) -> CustodyChain:
        """Apply one event to a snapshot and return the next snapshot.

        Raises:
            InvalidEventError: If the chain is terminal or the event's
                quantity does not fit its type.
            InsufficientQuantityError: If remaining would leave
                ``[0, total_quantity]``.
        """
        if chain.is_terminal:
            raise InvalidEventError(
                f"Chain {chain.chain_id} is {chain.status.value} and accepts no events",
                context={"chain_id": chain.id, "status": chain.status.value},
            )

        delta = Decimal("0")
        if event.quantity is not None:
            delta = convert(event.quantity, event.unit, chain.unit, self._config)
        fresh = chain.remaining_quantity == 0

        if fresh:
            if delta <= 0 or event.event_type not in _SOURCE_EVENT_TYPES:
                raise InvalidEventError(
                    f"Chain {chain.chain_id} holds no mass; its first event "
                    f"must bring the total quantity in",
                    context={"chain_id": chain.id, "event_type": event.event_type.value},
                )
            if delta != chain.total_quantity:
                raise InvalidEventError(
                    f"Initial event quantity {delta} does not match total "
                    f"{chain.total_quantity}",
                    context={"chain_id": chain.id},
                )
        elif delta > 0:
            raise InvalidEventError(
                "Mass enters a chain only at creation",
                context={"chain_id": chain.id, "quantity": str(delta)},
            )
        elif event.event_type is EventType.CREATION:
            raise InvalidEventError(
                f"Chain {chain.chain_id} already has a creation event",
                context={"chain_id": chain.id},
            )
        elif delta != 0 and event.event_type is EventType.TRANSPORTATION:
            raise InvalidEventError(
                "Transportation events carry no quantity change",
                context={"chain_id": chain.id},
            )

        remaining = self._update_remaining(
            chain, chain.remaining_quantity + delta, delta,
        )

        children = chain.child_chain_ids
        if delta < 0 and event.related_chain_ids:
            children = sorted(set(children) | set(event.related_chain_ids))

        status = ChainStatus.ACTIVE
        if remaining == 0:
            if event.is_linked and event.event_type is EventType.AGGREGATION:
                status = ChainStatus.MERGED
            elif children:
                status = ChainStatus.SPLIT
            else:
                status = ChainStatus.CONSUMED
        elif event.disposition is not Disposition.ACTIVE:
            status = ChainStatus.CLOSED

        return chain.model_copy(update={
            "remaining_quantity": remaining,
            "status": status,
            "child_chain_ids": children,
            "updated_at": event.recorded_at,
        })

    def _update_remaining(
        self,
        chain: CustodyChain,
        remaining: Decimal,
        delta: Decimal,
    ) -> Decimal:
        """Single choke point for remaining quantity: 0 <= remaining <= total."""
        remaining = quantize(remaining, self._config)
        if remaining < 0:
            raise InsufficientQuantityError(
                f"Chain {chain.chain_id} holds {chain.remaining_quantity} "
                f"{chain.unit.value}; cannot remove {-delta}",
                requested=-delta,
                available=chain.remaining_quantity,
                context={"chain_id": chain.id},
            )
        if remaining > chain.total_quantity:
            raise InsufficientQuantityError(
                f"Chain {chain.chain_id} would hold {remaining}, above its "
                f"total {chain.total_quantity}",
                requested=delta,
                available=chain.total_quantity - chain.remaining_quantity,
                context={"chain_id": chain.id},
            )
        return remaining

    def rederive(
        self,
        chain_id: str,
        events: Optional[Iterable[CustodyEvent]] = None,
    ) -> CustodyChain:
        """Replay a chain's events in sequence order and swap the snapshot."""
        chain = self._chains.get(chain_id)
        if chain is None:
            raise NotFoundError(
                f"Chain {chain_id} not found",
                entity_type="chain",
                entity_id=chain_id,
            )
        if events is None:
            events = self.event_store.events_for_chain(chain_id)

        projected = chain.model_copy(update={
            "remaining_quantity": Decimal("0"),
            "status": ChainStatus.ACTIVE,
            "child_chain_ids": [],
        })
        for event in sorted(events, key=lambda e: e.sequence):
            projected = self.project(projected, event)

        self._chains[chain_id] = projected
        return projected

    # ------------------------------------------------------------------
    # Registration (used by the event store inside a batch)
    # ------------------------------------------------------------------

    def _register(self, chains: Iterable[CustodyChain]) -> None:
        chains = list(chains)
        with self._register_lock:
            codes = [c.chain_id for c in chains]
            if len(set(codes)) != len(codes):
                raise ValidationError("Duplicate chain codes in one batch")
            for chain in chains:
                if chain.id in self._chains or chain.chain_id in self._codes:
                    raise ValidationError(
                        f"Chain code {chain.chain_id} already exists",
                        invalid_fields={"chain_id": "must be unique"},
                    )
            for chain in chains:
                self._chains[chain.id] = chain
                self._codes[chain.chain_id] = chain.id

    def _unregister(self, chain_ids: Iterable[str]) -> None:
        with self._register_lock:
            for chain_id in chain_ids:
                chain = self._chains.pop(chain_id, None)
                if chain is not None:
                    self._codes.pop(chain.chain_id, None)

    def _restore(self, snapshots: Dict[str, CustodyChain]) -> None:
        for chain_id, snapshot in snapshots.items():
            self._chains[chain_id] = snapshot

    def _refresh_gauges(self) -> None:
        metrics.update_active_chains(self.count_by_status().get("active", 0))


__all__ = [
    "ChainRegistry",
]
