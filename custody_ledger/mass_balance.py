# -*- coding: utf-8 -*-
"""
Mass-Balance Validator and Lineage Tracer - Custody Ledger

Recomputes, on every call, whether the mass that entered a lineage
component at its origins equals the mass still held or dispatched plus
the mass lost in processing, within a configurable tolerance. Also checks
every transformation's yield against the configured conversion table.

Accounting over the connected lineage component of a chain:
    total_input  = sum of total_quantity of origin chains
    total_output = sum of remaining_quantity of every chain
                   + mass dispatched by unlinked disaggregation
    total_waste  = consumed mass of processing events
                   + (input - output) of every transformation, floored at 0

Discrepancies are reported as data; only traversal limits and
cancellation raise.

Traversal:
    Breadth-first over ``parent_chain_ids`` / ``child_chain_ids``,
    bounded by ``max_traversal_depth`` and ``max_graph_nodes``
    (GraphTooLargeError), checking the cancellation token per node.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from custody_ledger.chain_registry import ChainRegistry
from custody_ledger.concurrency import CancellationToken, check_cancelled
from custody_ledger.config import CustodyLedgerConfig, get_config
from custody_ledger.event_store import EventStore
from custody_ledger.exceptions import GraphTooLargeError, ValidationError
from custody_ledger.models import (
    CustodyChain,
    CustodyEvent,
    Discrepancy,
    EventType,
    LineageDirection,
    LineageEdge,
    LineageNode,
    LineageTrace,
    MassBalanceReport,
)
from custody_ledger.quantity import convert, quantize, ratio, to_decimal
from custody_ledger import metrics

logger = logging.getLogger(__name__)

Neighbours = Callable[[CustodyChain], Iterable[str]]


def _parents(chain: CustodyChain) -> Iterable[str]:
    return chain.parent_chain_ids


def _children(chain: CustodyChain) -> Iterable[str]:
    return chain.child_chain_ids


def _both(chain: CustodyChain) -> Iterable[str]:
    return list(chain.parent_chain_ids) + list(chain.child_chain_ids)


class MassBalanceValidator:
    """Mass-balance validation and bounded lineage traversal.

    Attributes:
        _registry: Chain projection.
        _store: Event log.
    """

    def __init__(
        self,
        registry: ChainRegistry,
        event_store: EventStore,
        config: Optional[CustodyLedgerConfig] = None,
    ) -> None:
        self._config = config or get_config()
        self._registry = registry
        self._store = event_store
        logger.info("MassBalanceValidator initialized")

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(
        self,
        chain_ref: str,
        tolerance_pct: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> MassBalanceReport:
        """Validate mass balance over the lineage component of a chain.

        Args:
            chain_ref: Chain id or code.
            tolerance_pct: Tolerance in percent of total input; the
                configured default when omitted.
            cancel_token: Optional cancellation token.

        Returns:
            MassBalanceReport in the target chain's unit.

        Raises:
            NotFoundError: Unknown chain.
            GraphTooLargeError: Traversal bounds exceeded.
            OperationCancelledError: Cancelled by the caller.
        """
        start_time = time.monotonic()
        target = self._registry.get_chain(chain_ref)
        pct = Decimal(str(
            self._config.mass_balance_tolerance_pct
            if tolerance_pct is None else tolerance_pct
        ))
        if pct < 0:
            raise ValidationError(
                "tolerance_pct must be >= 0",
                invalid_fields={"tolerance_pct": "must be >= 0"},
            )
        unit = target.unit

        _, chains = self._traverse(target, _both, cancel_token=cancel_token)
        metrics.record_lineage_size(len(chains))

        origins = [c for c in chains.values() if c.is_origin]
        total_input = sum(
            (convert(c.total_quantity, c.unit, unit, self._config) for c in origins),
            Decimal("0"),
        )
        total_output = sum(
            (
                convert(c.remaining_quantity, c.unit, unit, self._config)
                for c in chains.values()
            ),
            Decimal("0"),
        )
        total_waste = Decimal("0")
        discrepancies: List[Discrepancy] = []

        for chain in chains.values():
            check_cancelled(cancel_token)
            for event in self._store.events_for_chain(chain.id):
                if not event.is_consuming:
                    continue
                consumed = convert(-event.quantity, event.unit, unit, self._config)
                if event.event_type is EventType.PROCESSING:
                    total_waste += consumed
                elif event.event_type is EventType.TRANSFORMATION:
                    produced = Decimal("0")
                    if event.is_linked and event.output_quantity is not None:
                        produced = convert(
                            event.output_quantity, event.unit, unit, self._config,
                        )
                    total_waste += max(Decimal("0"), consumed - produced)
                    finding = self._check_yield(chain, event, consumed, produced, pct)
                    if finding is not None:
                        discrepancies.append(finding)
                elif not event.is_linked:
                    # Unlinked disaggregation: mass dispatched out of the ledger
                    total_output += consumed

        total_input = quantize(total_input, self._config)
        total_output = quantize(total_output, self._config)
        total_waste = quantize(total_waste, self._config)
        tolerance = quantize(total_input * pct / Decimal("100"), self._config)

        if total_input == 0:
            discrepancies.insert(0, Discrepancy(
                type="zero_input",
                description="Lineage component has no input mass",
            ))
            efficiency = ratio(0, 1)
        else:
            efficiency = ratio(total_output, total_input)

        accounted = total_output + total_waste
        variance = accounted - total_input
        if abs(variance) > tolerance:
            discrepancies.insert(0, Discrepancy(
                type="mass_balance",
                expected=total_input,
                actual=accounted,
                variance=variance,
                description=(
                    f"Output {total_output} + waste {total_waste} differs from "
                    f"input {total_input} by {variance} {unit.value} "
                    f"(tolerance {tolerance})"
                ),
            ))

        report = MassBalanceReport(
            chain_id=target.id,
            is_valid=not discrepancies,
            total_input=total_input,
            total_output=total_output,
            total_waste=total_waste,
            efficiency=efficiency,
            tolerance=tolerance,
            unit=unit,
            origin_chain_ids=sorted(c.id for c in origins),
            chains_examined=len(chains),
            discrepancies=discrepancies,
        )

        metrics.record_validation(report.is_valid)
        for finding in discrepancies:
            metrics.record_discrepancy(finding.type)

        elapsed_ms = (time.monotonic() - start_time) * 1000
        logger.info(
            "Validated mass balance for %s over %d chains: valid=%s, "
            "in=%s out=%s waste=%s %s, %d discrepancies (%.1f ms)",
            target.chain_id, len(chains), report.is_valid, total_input,
            total_output, total_waste, unit.value, len(discrepancies),
            elapsed_ms,
        )
        return report

    def _check_yield(
        self,
        chain: CustodyChain,
        event: CustodyEvent,
        consumed: Decimal,
        produced: Decimal,
        pct: Decimal,
    ) -> Optional[Discrepancy]:
        """Compare a transformation's output with its expected yield.

        The configured factor for (input, output) product types takes
        precedence; a declared conversion_rate is used when the table has
        no entry for the pair.
        """
        if event.output_product_type is None:
            return None
        factor = self._config.yield_factor(
            chain.product_type.value, event.output_product_type.value,
        )
        if factor is not None:
            rate = to_decimal(factor)
        elif event.conversion_rate is not None:
            rate = event.conversion_rate
        else:
            return None

        expected = quantize(consumed * rate, self._config)
        allowed = expected * pct / Decimal("100")
        variance = produced - expected
        if abs(variance) <= allowed:
            return None
        return Discrepancy(
            type="conversion_rate",
            expected=expected,
            actual=produced,
            variance=quantize(variance, self._config),
            description=(
                f"{chain.product_type.value} -> "
                f"{event.output_product_type.value} produced {produced} from "
                f"{consumed}; expected {expected} at yield {rate}"
            ),
            event_id=event.id,
        )

    # ------------------------------------------------------------------
    # Lineage
    # ------------------------------------------------------------------

    def trace(
        self,
        chain_ref: str,
        direction: Union[str, LineageDirection] = LineageDirection.BACKWARD,
        max_depth: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> LineageTrace:
        """Trace the ancestors and/or descendants of a chain.

        ``max_depth`` truncates the traversal; the configured traversal
        bounds still raise GraphTooLargeError.
        """
        direction = LineageDirection(direction)
        if max_depth is not None and max_depth < 0:
            raise ValidationError(
                "max_depth must be >= 0",
                invalid_fields={"max_depth": "must be >= 0"},
            )
        root = self._registry.get_chain(chain_ref)

        depths: Dict[str, int] = {}
        chains: Dict[str, CustodyChain] = {}
        walks: List[Neighbours] = []
        if direction in (LineageDirection.BACKWARD, LineageDirection.BOTH):
            walks.append(_parents)
        if direction in (LineageDirection.FORWARD, LineageDirection.BOTH):
            walks.append(_children)
        for walk in walks:
            walk_depths, walk_chains = self._traverse(
                root, walk, truncate_at=max_depth, cancel_token=cancel_token,
            )
            for chain_id, depth in walk_depths.items():
                depths[chain_id] = min(depth, depths.get(chain_id, depth))
            chains.update(walk_chains)
        metrics.record_lineage_size(len(chains))

        edges: Set[Tuple[str, str]] = set()
        for chain in chains.values():
            for parent_id in chain.parent_chain_ids:
                if parent_id in chains:
                    edges.add((parent_id, chain.id))

        nodes = [
            LineageNode(
                id=chain.id,
                chain_id=chain.chain_id,
                product_type=chain.product_type,
                status=chain.status,
                total_quantity=chain.total_quantity,
                remaining_quantity=chain.remaining_quantity,
                unit=chain.unit,
                depth=depths[chain.id],
            )
            for chain in sorted(
                chains.values(), key=lambda c: (depths[c.id], c.chain_id),
            )
        ]
        logger.debug(
            "Traced %s lineage of %s: %d nodes, %d edges",
            direction.value, root.chain_id, len(nodes), len(edges),
        )
        return LineageTrace(
            root=root.id,
            direction=direction,
            nodes=nodes,
            edges=[LineageEdge(parent_id=p, child_id=c) for p, c in sorted(edges)],
            depth=max(depths.values()) if depths else 0,
        )

    def _traverse(
        self,
        root: CustodyChain,
        neighbours: Neighbours,
        truncate_at: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Tuple[Dict[str, int], Dict[str, CustodyChain]]:
        """Bounded breadth-first traversal from ``root``.

        Returns:
            (depth per chain id, snapshot per chain id)
        """
        max_depth = self._config.max_traversal_depth
        max_nodes = self._config.max_graph_nodes

        depths: Dict[str, int] = {root.id: 0}
        chains: Dict[str, CustodyChain] = {}
        queue: deque = deque([root])
        while queue:
            check_cancelled(cancel_token)
            chain = queue.popleft()
            chains[chain.id] = chain
            depth = depths[chain.id]
            if truncate_at is not None and depth >= truncate_at:
                continue

            for neighbour_id in neighbours(chain):
                if neighbour_id in depths:
                    continue
                if depth + 1 > max_depth:
                    raise GraphTooLargeError(
                        f"Lineage of {root.chain_id} is deeper than "
                        f"{max_depth} levels",
                        limit_name="max_traversal_depth",
                        limit=max_depth,
                        context={"chain_id": root.id},
                    )
                if len(depths) >= max_nodes:
                    raise GraphTooLargeError(
                        f"Lineage of {root.chain_id} exceeds {max_nodes} chains",
                        limit_name="max_graph_nodes",
                        limit=max_nodes,
                        context={"chain_id": root.id},
                    )
                neighbour = self._registry.find_chain(neighbour_id)
                if neighbour is None:
                    continue
                depths[neighbour_id] = depth + 1
                queue.append(neighbour)

        return depths, chains


__all__ = [
    "MassBalanceValidator",
]
