# -*- coding: utf-8 -*-
"""
Split / Merge / Transform Engine - Custody Ledger

Partitions one lot into several, combines several lots into one, and
converts part of a lot into another product. Every operation is expressed
as synthetic events appended in a single all-or-nothing batch:

    split      disaggregation (-) on the source, creation (+) per child
    merge      aggregation (-) per source, aggregation (+) on the new chain
    transform  transformation (-) on the source, transformation (+) on
               the output chain

New chains are always fresh lineage nodes, so the lineage graph stays a
DAG. All chains touched are locked in sorted id order.

Example:
    >>> engine = SplitMergeEngine(registry, store)
    >>> result = engine.split("CHAIN-001", [
    ...     SplitAllocation(quantity=600), SplitAllocation(quantity=400)])
    >>> [c.remaining_quantity for c in result.child_chains]
    [Decimal('600.000'), Decimal('400.000')]
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from custody_ledger.chain_registry import ChainRegistry
from custody_ledger.config import CustodyLedgerConfig, get_config
from custody_ledger.event_store import EventStore
from custody_ledger.exceptions import (
    EmptySetError,
    InsufficientQuantityError,
    InvalidEventError,
    ProductTypeMismatchError,
    ValidationError,
)
from custody_ledger.models import (
    BusinessStep,
    CustodyChain,
    CustodyEvent,
    Disposition,
    EventType,
    MergeResult,
    ProductType,
    SplitAllocation,
    SplitResult,
    TransformResult,
)
from custody_ledger.provenance import ProvenanceTracker
from custody_ledger.quantity import (
    allocate,
    convert,
    parse_unit,
    partition,
    quantize,
    to_decimal,
)
from custody_ledger import metrics

logger = logging.getLogger(__name__)


def _event_time(value: Optional[datetime]) -> Dict[str, Any]:
    return {"event_time": value} if value is not None else {}


def _common(values: Sequence[Optional[Any]]) -> Optional[Any]:
    """Return the value shared by every item, else None."""
    distinct = set(values)
    if len(distinct) == 1:
        return distinct.pop()
    return None


class SplitMergeEngine:
    """Mass-conserving split, merge and transformation of custody chains.

    Attributes:
        _registry: Chain projection.
        _store: Event log the synthetic events are appended to.
        _provenance: Optional provenance tracker.
    """

    def __init__(
        self,
        registry: ChainRegistry,
        event_store: EventStore,
        provenance: Optional[ProvenanceTracker] = None,
        config: Optional[CustodyLedgerConfig] = None,
    ) -> None:
        self._config = config or get_config()
        self._registry = registry
        self._store = event_store
        self._locks = event_store.lock_manager
        self._provenance = provenance
        event_store.attach_transformer(self)
        logger.info("SplitMergeEngine initialized")

    # ------------------------------------------------------------------
    # Split
    # ------------------------------------------------------------------

    def split(
        self,
        chain_ref: str,
        allocations: Sequence[SplitAllocation],
        amount: Optional[Any] = None,
        facility_ref: Optional[str] = None,
        event_time: Optional[datetime] = None,
        recorded_by_ref: Optional[str] = None,
    ) -> SplitResult:
        """Split a chain into child chains.

        Allocations carry either absolute quantities or proportional
        shares of ``amount`` (default: the whole remaining quantity). The
        children sum exactly to the split amount, which is removed from
        the source; a source drained to zero becomes ``split``.

        Raises:
            ValidationError: Empty, non-positive or mixed allocations.
            InsufficientQuantityError: The split exceeds the remaining
                quantity.
            InvalidEventError: The source is not active.
        """
        start_time = time.monotonic()
        if not allocations:
            raise ValidationError(
                "At least one allocation is required",
                invalid_fields={"allocations": "must not be empty"},
            )
        source = self._registry.get_chain(chain_ref)

        with self._locks.acquire(source.id):
            source = self._registry.get_chain(source.id)
            self._require_active(source)
            quantities = self._allocate(source, allocations, amount)
            split_total = sum(quantities, Decimal("0"))
            if split_total > source.remaining_quantity:
                raise InsufficientQuantityError(
                    f"Split total {split_total} exceeds remaining "
                    f"{source.remaining_quantity} {source.unit.value} on "
                    f"chain {source.chain_id}",
                    requested=split_total,
                    available=source.remaining_quantity,
                    context={"chain_id": source.id},
                )

            children = [
                CustodyChain(
                    chain_id=self._registry.generate_chain_code(),
                    product_type=source.product_type,
                    source_plot_ref=source.source_plot_ref,
                    source_facility_ref=(
                        source.destination_facility_ref
                        or source.source_facility_ref
                    ),
                    destination_facility_ref=allocation.destination_facility_ref,
                    total_quantity=quantity,
                    remaining_quantity=Decimal("0"),
                    unit=source.unit,
                    quality_grade=allocation.quality_grade or source.quality_grade,
                    batch_number=source.batch_number,
                    harvest_date=source.harvest_date,
                    expiry_date=source.expiry_date,
                    parent_chain_ids=[source.id],
                    metadata={"split_from": source.chain_id},
                )
                for allocation, quantity in zip(allocations, quantities)
            ]
            events = [
                CustodyEvent(
                    chain_id=source.id,
                    event_type=EventType.DISAGGREGATION,
                    business_step=BusinessStep.PROCESSING,
                    quantity=-split_total,
                    unit=source.unit,
                    facility_ref=facility_ref,
                    recorded_by_ref=recorded_by_ref,
                    related_chain_ids=[c.id for c in children],
                    **_event_time(event_time),
                ),
            ]
            events.extend(
                CustodyEvent(
                    chain_id=child.id,
                    event_type=EventType.CREATION,
                    business_step=BusinessStep.PROCESSING,
                    quantity=child.total_quantity,
                    unit=child.unit,
                    facility_ref=facility_ref,
                    recorded_by_ref=recorded_by_ref,
                    related_chain_ids=[source.id],
                    **_event_time(event_time),
                )
                for child in children
            )
            self._store.append_batch(
                events, new_chains=children, user_id=recorded_by_ref,
            )

        result = SplitResult(
            parent_chain=self._registry.get_chain(source.id),
            child_chains=[self._registry.get_chain(c.id) for c in children],
        )
        self._record_provenance("chain.split", source.id, {
            "parent": source.id,
            "children": {c.id: str(c.total_quantity) for c in children},
        }, recorded_by_ref)
        metrics.record_split()

        elapsed_ms = (time.monotonic() - start_time) * 1000
        logger.info(
            "Split chain %s into %d children, qty=%s %s, parent now %s (%.1f ms)",
            source.chain_id, len(children), split_total, source.unit.value,
            result.parent_chain.status.value, elapsed_ms,
        )
        return result

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def merge(
        self,
        chain_refs: Sequence[str],
        destination_facility_ref: Optional[str] = None,
        chain_code: Optional[str] = None,
        quality_grade: Optional[str] = None,
        event_time: Optional[datetime] = None,
        recorded_by_ref: Optional[str] = None,
    ) -> MergeResult:
        """Merge two or more active chains of one product type.

        The new chain holds the sum of the sources' remaining quantities
        (in the first source's unit); every source is drained and becomes
        ``merged``.

        Raises:
            EmptySetError: Fewer than two sources.
            ValidationError: Duplicate sources or chain code.
            ProductTypeMismatchError: Sources differ in product type.
            InvalidEventError: A source is not active.
        """
        start_time = time.monotonic()
        if len(chain_refs) < 2:
            raise EmptySetError(
                "At least 2 chains are required for a merge",
                context={"chain_ids": list(chain_refs)},
            )
        sources = [self._registry.get_chain(ref) for ref in chain_refs]
        ids = [c.id for c in sources]
        if len(set(ids)) != len(ids):
            raise ValidationError(
                "A chain may appear only once in a merge",
                invalid_fields={"chain_ids": "must be distinct"},
            )

        with self._locks.acquire(*ids):
            sources = [self._registry.get_chain(chain_id) for chain_id in ids]
            for chain in sources:
                self._require_active(chain)

            product_types = {c.product_type for c in sources}
            if len(product_types) > 1:
                raise ProductTypeMismatchError(
                    f"Cannot merge chains with different product types: "
                    f"{sorted(p.value for p in product_types)}",
                    context={"chain_ids": ids},
                )

            unit = sources[0].unit
            total = sum(
                (
                    convert(c.remaining_quantity, c.unit, unit, self._config)
                    for c in sources
                ),
                Decimal("0"),
            )
            harvest_dates = [c.harvest_date for c in sources if c.harvest_date]
            expiry_dates = [c.expiry_date for c in sources if c.expiry_date]
            merged = CustodyChain(
                chain_id=chain_code or self._registry.generate_chain_code(),
                product_type=sources[0].product_type,
                source_plot_ref=_common([c.source_plot_ref for c in sources]),
                source_facility_ref=_common(
                    [c.destination_facility_ref for c in sources],
                ),
                destination_facility_ref=destination_facility_ref,
                total_quantity=total,
                remaining_quantity=Decimal("0"),
                unit=unit,
                quality_grade=quality_grade or _common(
                    [c.quality_grade for c in sources],
                ),
                batch_number=_common([c.batch_number for c in sources]),
                harvest_date=min(harvest_dates) if harvest_dates else None,
                expiry_date=min(expiry_dates) if expiry_dates else None,
                parent_chain_ids=ids,
                metadata={"merged_from": [c.chain_id for c in sources]},
            )

            events = [
                CustodyEvent(
                    chain_id=chain.id,
                    event_type=EventType.AGGREGATION,
                    business_step=BusinessStep.PROCESSING,
                    quantity=-chain.remaining_quantity,
                    unit=chain.unit,
                    facility_ref=destination_facility_ref,
                    recorded_by_ref=recorded_by_ref,
                    related_chain_ids=[merged.id],
                    **_event_time(event_time),
                )
                for chain in sources
            ]
            events.append(
                CustodyEvent(
                    chain_id=merged.id,
                    event_type=EventType.AGGREGATION,
                    business_step=BusinessStep.RECEIVING,
                    quantity=total,
                    unit=unit,
                    facility_ref=destination_facility_ref,
                    recorded_by_ref=recorded_by_ref,
                    related_chain_ids=ids,
                    **_event_time(event_time),
                ),
            )
            self._store.append_batch(
                events, new_chains=[merged], user_id=recorded_by_ref,
            )

        result = MergeResult(
            parent_chains=[self._registry.get_chain(i) for i in ids],
            merged_chain=self._registry.get_chain(merged.id),
        )
        self._record_provenance("chain.merge", merged.id, {
            "sources": ids,
            "merged": merged.id,
            "total": str(total),
        }, recorded_by_ref)
        metrics.record_merge()

        elapsed_ms = (time.monotonic() - start_time) * 1000
        logger.info(
            "Merged %d chains into %s: qty=%s %s (%.1f ms)",
            len(ids), merged.chain_id, total, unit.value, elapsed_ms,
        )
        return result

    # ------------------------------------------------------------------
    # Transform
    # ------------------------------------------------------------------

    def transform(
        self,
        chain_ref: str,
        input_quantity: Any,
        output_product_type: ProductType,
        output_quantity: Any,
        unit: Optional[Any] = None,
        conversion_rate: Optional[Any] = None,
        output_chain_code: Optional[str] = None,
        facility_ref: Optional[str] = None,
        disposition: Disposition = Disposition.ACTIVE,
        event_time: Optional[datetime] = None,
        recorded_by_ref: Optional[str] = None,
        notes: Optional[str] = None,
        user_data: Optional[Dict[str, Any]] = None,
    ) -> TransformResult:
        """Consume part of a chain and create a derived output chain.

        The difference between input and output is recorded loss. The
        output chain is a child of the source in the lineage graph.

        Raises:
            ValidationError: Non-positive quantities or an unchanged
                product type.
            InsufficientQuantityError: Input exceeds remaining.
            InvalidEventError: The source is not active.
        """
        start_time = time.monotonic()
        output_product_type = ProductType(output_product_type)
        source = self._registry.get_chain(chain_ref)
        if output_product_type is source.product_type:
            raise ValidationError(
                "A transformation must produce a different product type",
                invalid_fields={"output_product_type": "must differ from source"},
            )
        event_unit = parse_unit(unit, self._config) if unit is not None else source.unit
        consumed = quantize(input_quantity, self._config)
        produced = quantize(output_quantity, self._config)
        if consumed <= 0 or produced <= 0:
            raise ValidationError(
                "Transformation quantities must be > 0",
                invalid_fields={
                    "input_quantity": "must be > 0",
                    "output_quantity": "must be > 0",
                },
            )

        with self._locks.acquire(source.id):
            source = self._registry.get_chain(source.id)
            self._require_active(source)
            consumed_in_chain_unit = convert(
                consumed, event_unit, source.unit, self._config,
            )
            if consumed_in_chain_unit > source.remaining_quantity:
                raise InsufficientQuantityError(
                    f"Transformation input {consumed_in_chain_unit} exceeds "
                    f"remaining {source.remaining_quantity} {source.unit.value} "
                    f"on chain {source.chain_id}",
                    requested=consumed_in_chain_unit,
                    available=source.remaining_quantity,
                    context={"chain_id": source.id},
                )

            output_total = convert(produced, event_unit, source.unit, self._config)
            output_chain = CustodyChain(
                chain_id=output_chain_code or self._registry.generate_chain_code(),
                product_type=output_product_type,
                source_plot_ref=source.source_plot_ref,
                source_facility_ref=facility_ref or source.destination_facility_ref,
                total_quantity=output_total,
                remaining_quantity=Decimal("0"),
                unit=source.unit,
                batch_number=source.batch_number,
                harvest_date=source.harvest_date,
                parent_chain_ids=[source.id],
                metadata={"transformed_from": source.chain_id},
            )
            consume_event = CustodyEvent(
                chain_id=source.id,
                event_type=EventType.TRANSFORMATION,
                business_step=BusinessStep.PROCESSING,
                disposition=disposition,
                quantity=-consumed,
                unit=event_unit,
                facility_ref=facility_ref,
                recorded_by_ref=recorded_by_ref,
                related_chain_ids=[output_chain.id],
                output_product_type=output_product_type,
                output_quantity=produced,
                conversion_rate=(
                    to_decimal(conversion_rate) if conversion_rate is not None else None
                ),
                notes=notes,
                user_data=dict(user_data or {}),
                **_event_time(event_time),
            )
            produce_event = CustodyEvent(
                chain_id=output_chain.id,
                event_type=EventType.TRANSFORMATION,
                business_step=BusinessStep.PROCESSING,
                quantity=output_total,
                unit=source.unit,
                facility_ref=facility_ref,
                recorded_by_ref=recorded_by_ref,
                related_chain_ids=[source.id],
                **_event_time(event_time),
            )
            committed = self._store.append_batch(
                [consume_event, produce_event],
                new_chains=[output_chain],
                user_id=recorded_by_ref,
            )

        waste = max(Decimal("0"), consumed - produced)
        result = TransformResult(
            source_chain=self._registry.get_chain(source.id),
            output_chain=self._registry.get_chain(output_chain.id),
            event=committed[0],
            waste_quantity=quantize(waste, self._config),
        )
        self._record_provenance("chain.transform", output_chain.id, {
            "source": source.id,
            "output": output_chain.id,
            "input_quantity": str(consumed),
            "output_quantity": str(produced),
            "unit": event_unit.value,
        }, recorded_by_ref)
        metrics.record_transformation(output_product_type.value)

        elapsed_ms = (time.monotonic() - start_time) * 1000
        logger.info(
            "Transformed %s %s of %s (%s) into %s %s (%.1f ms)",
            consumed, event_unit.value, source.chain_id,
            source.product_type.value, produced, output_product_type.value,
            elapsed_ms,
        )
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_active(chain: CustodyChain) -> None:
        if chain.is_terminal:
            raise InvalidEventError(
                f"Chain {chain.chain_id} is {chain.status.value}",
                context={"chain_id": chain.id, "status": chain.status.value},
            )

    def _allocate(
        self,
        source: CustodyChain,
        allocations: Sequence[SplitAllocation],
        amount: Optional[Any],
    ) -> List[Decimal]:
        """Resolve allocations to exact child quantities.

        Explicit quantities are brought to the ledger scale as a whole, so
        the children sum to exactly the requested total.
        """
        by_quantity = [a.quantity is not None for a in allocations]
        if any(by_quantity) and not all(by_quantity):
            raise ValidationError(
                "Allocations must not mix quantity and share",
                invalid_fields={"allocations": "all quantity or all share"},
            )

        if all(by_quantity):
            if amount is not None:
                raise ValidationError(
                    "amount only applies to share allocations",
                    invalid_fields={"amount": "not allowed with quantities"},
                )
            quantities = partition(
                [a.quantity for a in allocations], self._config,
            )
        else:
            base = (
                quantize(amount, self._config) if amount is not None
                else source.remaining_quantity
            )
            if base <= 0:
                raise ValidationError(
                    "Split amount must be > 0",
                    invalid_fields={"amount": "must be > 0"},
                )
            if base > source.remaining_quantity:
                raise InsufficientQuantityError(
                    f"Split amount {base} exceeds remaining "
                    f"{source.remaining_quantity} {source.unit.value}",
                    requested=base,
                    available=source.remaining_quantity,
                    context={"chain_id": source.id},
                )
            quantities = allocate(
                base, [a.share for a in allocations], self._config,
            )

        for index, quantity in enumerate(quantities):
            if quantity <= 0:
                raise ValidationError(
                    f"Allocation {index} resolves to {quantity}; every child "
                    f"must receive a positive quantity",
                    invalid_fields={f"allocations[{index}]": "must be > 0"},
                )
        return quantities

    def _record_provenance(
        self,
        action: str,
        entity_id: str,
        data: Dict[str, Any],
        user_id: Optional[str],
    ) -> None:
        if self._provenance is None or not self._config.enable_provenance:
            return
        self._provenance.record(
            entity_type="chain",
            entity_id=entity_id,
            action=action,
            data_hash=ProvenanceTracker.hash_payload(data),
            user_id=user_id,
        )


__all__ = [
    "SplitMergeEngine",
]
