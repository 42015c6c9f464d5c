# -*- coding: utf-8 -*-
"""
Efficiency Analytics and Anomaly Detection - Custody Ledger

Read-only summaries over the event log:
    - chain_efficiency: transformation totals of one chain
    - facility_efficiency: input/output/waste of events at a facility
    - detect_anomalies: conversion-rate outliers (z-score) per product
      conversion, and quantity outliers (multiple of the mean)

Quantities are reported in the configured default unit.
"""

from __future__ import annotations

import logging
import statistics
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from custody_ledger.chain_registry import ChainRegistry
from custody_ledger.config import CustodyLedgerConfig, get_config
from custody_ledger.event_store import EventStore
from custody_ledger.models import (
    AnomalyRecord,
    ChainEfficiency,
    CustodyEvent,
    EventType,
    FacilityEfficiency,
    ensure_utc,
)
from custody_ledger.quantity import convert, parse_unit, quantize, ratio, to_decimal

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


class LedgerAnalytics:
    """Efficiency summaries and outlier detection over custody events."""

    def __init__(
        self,
        registry: ChainRegistry,
        event_store: EventStore,
        config: Optional[CustodyLedgerConfig] = None,
    ) -> None:
        self._config = config or get_config()
        self._registry = registry
        self._store = event_store

    def chain_efficiency(
        self,
        chain_ref: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> ChainEfficiency:
        """Sum the transformations recorded on one chain.

        ``start`` and ``end`` bound the business time of the events
        counted; both are inclusive.
        """
        chain = self._registry.get_chain(chain_ref)
        start = ensure_utc(start)
        end = ensure_utc(end)
        unit = chain.unit
        total_in = total_out = total_waste = _ZERO
        count = 0
        for event in self._store.events_for_chain(chain.id):
            if event.event_type is not EventType.TRANSFORMATION or not event.is_consuming:
                continue
            if start is not None and event.event_time < start:
                continue
            if end is not None and event.event_time > end:
                continue
            consumed, produced = self._io(event, unit)
            total_in += consumed
            total_out += produced
            total_waste += max(_ZERO, consumed - produced)
            count += 1
        return ChainEfficiency(
            chain_id=chain.id,
            start=start,
            end=end,
            event_count=count,
            total_input=quantize(total_in, self._config),
            total_output=quantize(total_out, self._config),
            total_waste=quantize(total_waste, self._config),
            average_efficiency=ratio(total_out, total_in),
            unit=unit,
        )

    def facility_efficiency(
        self,
        facility_ref: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> FacilityEfficiency:
        """Summarise the events recorded at a facility.

        Transformations contribute their input, output and loss;
        consuming processing events contribute input and loss.
        """
        unit = parse_unit(self._config.default_unit)
        events = self._store.events_for_facility(facility_ref, start, end)

        total_in = total_out = total_waste = _ZERO
        by_type: Dict[str, int] = {}
        for event in events:
            by_type[event.event_type.value] = by_type.get(event.event_type.value, 0) + 1
            if not event.is_consuming:
                continue
            if event.event_type is EventType.TRANSFORMATION:
                consumed, produced = self._io(event, unit)
                total_in += consumed
                total_out += produced
                total_waste += max(_ZERO, consumed - produced)
            elif event.event_type is EventType.PROCESSING:
                consumed = convert(-event.quantity, event.unit, unit, self._config)
                total_in += consumed
                total_waste += consumed

        summary = FacilityEfficiency(
            facility_ref=facility_ref,
            start=ensure_utc(start),
            end=ensure_utc(end),
            total_events=len(events),
            total_input=quantize(total_in, self._config),
            total_output=quantize(total_out, self._config),
            total_waste=quantize(total_waste, self._config),
            efficiency=ratio(total_out, total_in),
            events_by_type=by_type,
            unit=unit,
        )
        logger.debug(
            "Facility %s: %d events, in=%s out=%s",
            facility_ref, summary.total_events, summary.total_input,
            summary.total_output,
        )
        return summary

    def detect_anomalies(
        self,
        facility_ref: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[AnomalyRecord]:
        """Flag conversion-rate and quantity outliers.

        A conversion rate is anomalous when its z-score within its
        (input, output) product group exceeds ``anomaly_z_threshold``
        (severity ``high`` above 3). A consumed quantity is anomalous when
        it exceeds ``anomaly_quantity_multiplier`` times the mean.
        """
        if facility_ref is not None:
            events = self._store.events_for_facility(facility_ref, start, end)
        else:
            events = self._store.all_events(start, end)
        unit = parse_unit(self._config.default_unit)

        anomalies = self._rate_anomalies(events)
        anomalies.extend(self._quantity_anomalies(events, unit))

        logger.info(
            "Anomaly scan over %d events (facility=%s): %d anomalies",
            len(events), facility_ref, len(anomalies),
        )
        return anomalies

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _io(self, event: CustodyEvent, unit) -> Tuple[Decimal, Decimal]:
        consumed = convert(-event.quantity, event.unit, unit, self._config)
        produced = _ZERO
        if event.output_quantity is not None:
            produced = convert(event.output_quantity, event.unit, unit, self._config)
        return consumed, produced

    def _rate_anomalies(self, events: List[CustodyEvent]) -> List[AnomalyRecord]:
        threshold = to_decimal(self._config.anomaly_z_threshold)
        groups: Dict[Tuple[str, str], List[Tuple[CustodyEvent, Decimal]]] = {}
        for event in events:
            if (
                event.event_type is not EventType.TRANSFORMATION
                or not event.is_consuming
                or event.output_product_type is None
            ):
                continue
            chain = self._registry.find_chain(event.chain_id)
            if chain is None:
                continue
            rate = event.output_quantity / -event.quantity
            key = (chain.product_type.value, event.output_product_type.value)
            groups.setdefault(key, []).append((event, rate))

        anomalies: List[AnomalyRecord] = []
        for (input_type, output_type), samples in groups.items():
            if len(samples) < 2:
                continue
            rates = [rate for _, rate in samples]
            mean = statistics.mean(rates)
            deviation = statistics.pstdev(rates, mean)
            if deviation == 0:
                continue
            for event, rate in samples:
                z = abs(rate - mean) / deviation
                if z <= threshold:
                    continue
                anomalies.append(AnomalyRecord(
                    event_id=event.id,
                    chain_id=event.chain_id,
                    anomaly_type="conversion_rate_anomaly",
                    severity="high" if z > 3 else "medium",
                    value=ratio(rate, 1),
                    expected=ratio(mean, 1),
                    score=ratio(z, 1, places=2),
                    expected_min=ratio(mean - threshold * deviation, 1),
                    expected_max=ratio(mean + threshold * deviation, 1),
                    description=(
                        f"Unusual {input_type} -> {output_type} conversion rate "
                        f"{ratio(rate, 1)} ({ratio(z, 1, places=2)} standard "
                        f"deviations from mean)"
                    ),
                ))
        return anomalies

    def _quantity_anomalies(
        self,
        events: List[CustodyEvent],
        unit,
    ) -> List[AnomalyRecord]:
        samples = [
            (event, convert(-event.quantity, event.unit, unit, self._config))
            for event in events if event.is_consuming
        ]
        if not samples:
            return []
        mean = statistics.mean(q for _, q in samples)
        if mean == 0:
            return []
        limit = mean * to_decimal(self._config.anomaly_quantity_multiplier)

        anomalies: List[AnomalyRecord] = []
        for event, quantity in samples:
            if quantity <= limit:
                continue
            multiple = ratio(quantity, mean, places=1)
            anomalies.append(AnomalyRecord(
                event_id=event.id,
                chain_id=event.chain_id,
                anomaly_type="quantity_anomaly",
                severity="medium",
                value=quantity,
                expected=quantize(mean, self._config),
                score=multiple,
                description=(
                    f"Unusually large quantity: {quantity} {unit.value} "
                    f"({multiple}x average)"
                ),
            ))
        return anomalies


__all__ = [
    "LedgerAnalytics",
]
