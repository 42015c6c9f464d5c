# -*- coding: utf-8 -*-
"""
Custody Ledger Service Facade

Provides the main service class and FastAPI integration functions:
- CustodyLedgerService: Composes the ledger engines into a single facade
- configure_custody_ledger(app): Register service on FastAPI app
- get_custody_ledger(app=None): Retrieve service from app state or singleton
- get_router(): Return FastAPI router for mounting

Every facade call is timed, counted in Prometheus metrics and logged.
Loosely typed dict inputs are validated into the request models; pydantic
validation failures surface as the ledger's own ValidationError.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from decimal import Decimal
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from custody_ledger import metrics
from custody_ledger.analytics import LedgerAnalytics
from custody_ledger.chain_registry import ChainRegistry
from custody_ledger.concurrency import CancellationToken, ChainLockManager
from custody_ledger.config import CustodyLedgerConfig, get_config
from custody_ledger.event_store import EventStore
from custody_ledger.exceptions import CustodyLedgerError, ValidationError
from custody_ledger.mass_balance import MassBalanceValidator
from custody_ledger.models import (
    AnomalyRecord,
    ChainEfficiency,
    CloseChainRequest,
    CreateChainRequest,
    CustodyChain,
    CustodyEvent,
    FacilityEfficiency,
    LedgerStatistics,
    LineageDirection,
    LineageTrace,
    MassBalanceReport,
    MergeChainsRequest,
    RecordEventRequest,
    SplitChainRequest,
    TransformChainRequest,
    TransformResult,
)
from custody_ledger.provenance import ProvenanceTracker
from custody_ledger.reference import ReferenceDataStore, ResolvedReferences
from custody_ledger.split_merge import SplitMergeEngine

logger = logging.getLogger(__name__)

_ModelT = TypeVar("_ModelT", bound=BaseModel)

_SERVICE_KEY = "custody_ledger_service"

_singleton_lock = threading.Lock()
_singleton_instance: Optional["CustodyLedgerService"] = None


def _coerce(model: Type[_ModelT], data: Union[_ModelT, Dict[str, Any]]) -> _ModelT:
    """Validate a dict into ``model``; pass model instances through."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        invalid = {
            ".".join(str(part) for part in err["loc"]) or "__root__": err["msg"]
            for err in exc.errors()
        }
        raise ValidationError(
            f"Invalid {model.__name__}: {exc.error_count()} error(s)",
            invalid_fields=invalid,
        ) from exc


def _observed(operation: str) -> Callable:
    """Time, count and log a facade operation."""

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(self: CustodyLedgerService, *args: Any, **kwargs: Any) -> Any:
            t0 = time.perf_counter()
            try:
                result = func(self, *args, **kwargs)
            except CustodyLedgerError as exc:
                elapsed = time.perf_counter() - t0
                metrics.record_operation(operation, "error", elapsed)
                metrics.record_error(operation, type(exc).__name__)
                logger.warning(
                    "%s failed after %.1f ms: %s",
                    operation, elapsed * 1000, exc,
                )
                raise
            elapsed = time.perf_counter() - t0
            metrics.record_operation(operation, "success", elapsed)
            logger.debug("%s completed in %.1f ms", operation, elapsed * 1000)
            return result

        return wrapper

    return decorator


class CustodyLedgerService:
    """Facade composing the custody ledger engines.

    Attributes:
        config: CustodyLedgerConfig instance.
        provenance: ProvenanceTracker shared by every engine.
        lock_manager: Per-chain lock manager.
        registry: ChainRegistry projection.
        event_store: Append-only EventStore.
        split_merge: SplitMergeEngine.
        mass_balance: MassBalanceValidator.
        analytics: LedgerAnalytics.
        references: ReferenceDataStore for facility, plot and user lookups.
    """

    def __init__(self, config: Optional[CustodyLedgerConfig] = None) -> None:
        self.config = config or get_config()
        self.provenance = ProvenanceTracker()
        self.lock_manager = ChainLockManager(self.config.lock_timeout_seconds)
        self.registry = ChainRegistry(config=self.config)
        self.event_store = EventStore(
            self.registry,
            lock_manager=self.lock_manager,
            provenance=self.provenance,
            config=self.config,
        )
        self.split_merge = SplitMergeEngine(
            self.registry,
            self.event_store,
            provenance=self.provenance,
            config=self.config,
        )
        self.mass_balance = MassBalanceValidator(
            self.registry, self.event_store, config=self.config,
        )
        self.analytics = LedgerAnalytics(
            self.registry, self.event_store, config=self.config,
        )
        self.references = ReferenceDataStore()
        self._started_at = datetime.now(timezone.utc)
        logger.info("CustodyLedgerService initialized")

    # =========================================================================
    # Queries
    # =========================================================================

    @_observed("get_custody_chains")
    def get_custody_chains(
        self,
        status: Optional[str] = None,
        product_type: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[CustodyChain]:
        """List chains, optionally filtered by status and product type."""
        if limit < 0 or offset < 0:
            raise ValidationError(
                "limit and offset must be >= 0",
                invalid_fields={"limit": "must be >= 0", "offset": "must be >= 0"},
            )
        try:
            return self.registry.list_chains(
                status=status, product_type=product_type,
                limit=limit, offset=offset,
            )
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

    @_observed("get_custody_chain")
    def get_custody_chain(self, chain_id: str) -> CustodyChain:
        return self.registry.get_chain(chain_id)

    @_observed("get_custody_events")
    def get_custody_events(
        self,
        chain_id: str,
        facility_id: Optional[str] = None,
        limit: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[CustodyEvent]:
        """Events of a chain ordered by (event_time, sequence)."""
        return self.event_store.list_events(
            chain_id,
            facility_ref=facility_id,
            limit=limit,
            cancel_token=cancel_token,
        ).to_list()

    @_observed("validate_mass_balance")
    def validate_mass_balance(
        self,
        chain_id: str,
        tolerance_pct: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> MassBalanceReport:
        return self.mass_balance.validate(
            chain_id, tolerance_pct=tolerance_pct, cancel_token=cancel_token,
        )

    @_observed("trace_lineage")
    def trace_lineage(
        self,
        chain_id: str,
        direction: Union[str, LineageDirection] = LineageDirection.BACKWARD,
        max_depth: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> LineageTrace:
        try:
            direction = LineageDirection(direction)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown lineage direction: {direction}",
                invalid_fields={"direction": "backward, forward or both"},
            ) from exc
        return self.mass_balance.trace(
            chain_id, direction, max_depth=max_depth, cancel_token=cancel_token,
        )

    @_observed("get_chain_efficiency")
    def get_chain_efficiency(
        self,
        chain_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> ChainEfficiency:
        return self.analytics.chain_efficiency(chain_id, start, end)

    @_observed("get_facility_efficiency")
    def get_facility_efficiency(
        self,
        facility_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> FacilityEfficiency:
        return self.analytics.facility_efficiency(facility_id, start, end)

    @_observed("detect_anomalies")
    def detect_anomalies(
        self,
        facility_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[AnomalyRecord]:
        return self.analytics.detect_anomalies(facility_id, start, end)

    @_observed("resolve_references")
    def resolve_references(self, chain_id: str) -> ResolvedReferences:
        """Resolve the facility, plot and user references of a chain."""
        return self.references.resolve(self.registry.get_chain(chain_id))

    def get_statistics(self) -> LedgerStatistics:
        """Aggregate counts over the current ledger state."""
        chains = self.registry.all_chains()
        by_product: Dict[str, int] = {}
        remaining: Dict[str, Decimal] = {}
        for chain in chains:
            by_product[chain.product_type.value] = (
                by_product.get(chain.product_type.value, 0) + 1
            )
            remaining[chain.unit.value] = (
                remaining.get(chain.unit.value, Decimal("0"))
                + chain.remaining_quantity
            )
        by_event_type: Dict[str, int] = {}
        for event in self.event_store.all_events():
            by_event_type[event.event_type.value] = (
                by_event_type.get(event.event_type.value, 0) + 1
            )
        return LedgerStatistics(
            total_chains=len(chains),
            total_events=self.event_store.event_count,
            chains_by_status=self.registry.count_by_status(),
            chains_by_product_type=by_product,
            events_by_type=by_event_type,
            total_remaining_by_unit=remaining,
            provenance_entries=self.provenance.entry_count,
        )

    def get_health(self) -> Dict[str, Any]:
        """Health check of the ledger.

        Returns:
            Dictionary with ``status`` (healthy or degraded), the provenance
            chain verdict, chain and event counts, uptime and a timestamp.
        """
        provenance_valid = self.provenance.verify_chain()
        now = datetime.now(timezone.utc)
        return {
            "status": "healthy" if provenance_valid else "degraded",
            "service": "custody-ledger",
            "provenance_chain_valid": provenance_valid,
            "provenance_entries": self.provenance.entry_count,
            "total_chains": self.registry.chain_count,
            "total_events": self.event_store.event_count,
            "uptime_seconds": round((now - self._started_at).total_seconds(), 3),
            "timestamp": now.isoformat(),
        }

    # =========================================================================
    # Mutations
    # =========================================================================

    @_observed("create_custody_chain")
    def create_custody_chain(
        self,
        request: Union[CreateChainRequest, Dict[str, Any]],
    ) -> CustodyChain:
        """Create a chain with its creation event."""
        return self.registry.create_chain(_coerce(CreateChainRequest, request))

    @_observed("record_custody_event")
    def record_custody_event(
        self,
        request: Union[RecordEventRequest, Dict[str, Any]],
    ) -> CustodyEvent:
        """Record an event on an existing chain."""
        return self.event_store.record_event(_coerce(RecordEventRequest, request))

    @_observed("split_chain")
    def split_chain(
        self,
        chain_id: str,
        request: Union[SplitChainRequest, Dict[str, Any]],
    ) -> List[CustodyChain]:
        """Split a chain; returns the child chains in allocation order."""
        request = _coerce(SplitChainRequest, request)
        result = self.split_merge.split(
            chain_id,
            request.allocations,
            amount=request.amount,
            facility_ref=request.facility_ref,
            event_time=request.event_time,
            recorded_by_ref=request.recorded_by_ref,
        )
        return result.child_chains

    @_observed("merge_chains")
    def merge_chains(
        self,
        request: Union[MergeChainsRequest, Dict[str, Any]],
    ) -> CustodyChain:
        """Merge chains of one product type; returns the merged chain."""
        request = _coerce(MergeChainsRequest, request)
        result = self.split_merge.merge(
            request.chain_ids,
            destination_facility_ref=request.destination_facility_ref,
            chain_code=request.chain_id,
            quality_grade=request.quality_grade,
            event_time=request.event_time,
            recorded_by_ref=request.recorded_by_ref,
        )
        return result.merged_chain

    @_observed("transform_chain")
    def transform_chain(
        self,
        chain_id: str,
        request: Union[TransformChainRequest, Dict[str, Any]],
    ) -> TransformResult:
        """Convert part of a chain into a derived product chain."""
        request = _coerce(TransformChainRequest, request)
        return self.split_merge.transform(
            chain_id,
            input_quantity=request.input_quantity,
            output_product_type=request.output_product_type,
            output_quantity=request.output_quantity,
            unit=request.unit,
            conversion_rate=request.conversion_rate,
            output_chain_code=request.output_chain_id,
            facility_ref=request.facility_ref,
            disposition=request.disposition,
            event_time=request.event_time,
            recorded_by_ref=request.recorded_by_ref,
            notes=request.notes,
        )

    @_observed("close_chain")
    def close_chain(
        self,
        chain_id: str,
        request: Optional[Union[CloseChainRequest, Dict[str, Any]]] = None,
    ) -> CustodyChain:
        """Administratively close a chain that still holds mass."""
        if request is not None:
            request = _coerce(CloseChainRequest, request)
        return self.registry.close_chain(chain_id, request)


# =============================================================================
# FastAPI Integration
# =============================================================================


def configure_custody_ledger(
    app: Any,
    config: Optional[CustodyLedgerConfig] = None,
) -> CustodyLedgerService:
    """Register the Custody Ledger Service on a FastAPI application.

    Creates the service, installs it as the process singleton, attaches it
    to app.state, and includes the API router.

    Args:
        app: FastAPI application instance.
        config: Optional ledger configuration.

    Returns:
        Configured CustodyLedgerService instance.
    """
    global _singleton_instance

    service = CustodyLedgerService(config=config)
    with _singleton_lock:
        _singleton_instance = service
    setattr(app.state, _SERVICE_KEY, service)

    app.include_router(get_router())
    logger.info("Custody ledger service configured on FastAPI app")
    return service


def get_custody_ledger(app: Optional[Any] = None) -> CustodyLedgerService:
    """Return the CustodyLedgerService of ``app``, else the singleton.

    The singleton is created on first use when no app is given.
    """
    global _singleton_instance
    if app is not None:
        service = getattr(app.state, _SERVICE_KEY, None)
        if service is not None:
            return service
    if _singleton_instance is None:
        with _singleton_lock:
            if _singleton_instance is None:
                _singleton_instance = CustodyLedgerService()
    return _singleton_instance


def reset_custody_ledger() -> None:
    """Drop the singleton service (primarily for test teardown)."""
    global _singleton_instance
    with _singleton_lock:
        _singleton_instance = None


def get_router():
    """Return the FastAPI router for the Custody Ledger Service.

    Returns:
        FastAPI APIRouter instance.
    """
    from custody_ledger.api.router import router
    return router


__all__ = [
    "CustodyLedgerService",
    "configure_custody_ledger",
    "get_custody_ledger",
    "reset_custody_ledger",
    "get_router",
]
