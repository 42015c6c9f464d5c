# -*- coding: utf-8 -*-
"""
Custody Ledger: Chain-of-Custody and Mass-Balance Ledger
=========================================================

Append-only custody event log for agricultural commodity lots (palm oil
fresh fruit bunches through refined products) with a derived chain state,
mass-conserving split, merge and transformation, and on-demand
mass-balance validation. It supports:

- Chain creation with a synthetic creation event
- Event recording with business-step / disposition validation
- All-or-nothing event batches with rollback
- Split by quantity or proportional share (exact, remainder to last child)
- Merge of same-product chains, transformation into derived products
- Mass-balance validation over the lineage component, with yield checks
- Bounded, cancellable lineage tracing
- Facility efficiency and anomaly detection
- SHA-256 provenance chain, Prometheus metrics
- FastAPI REST API under /api/v1/custody
- Configuration with CUSTODY_LEDGER_ env prefix

Key Components:
    - config: CustodyLedgerConfig with CUSTODY_LEDGER_ env prefix
    - models: Pydantic v2 models for all data structures
    - quantity: Fixed-point quantities and unit conversion
    - chain_registry: Chain state projected from the event log
    - event_store: Append-only event log
    - split_merge: Split, merge and transformation engine
    - mass_balance: Mass-balance validation and lineage tracing
    - analytics: Efficiency summaries and anomaly detection
    - concurrency: Per-chain locks and cancellation tokens
    - provenance: SHA-256 chain-hashed audit trail
    - metrics: Prometheus metrics
    - api: FastAPI HTTP service
    - setup: CustodyLedgerService facade

Example:
    >>> from custody_ledger import CustodyLedgerService
    >>> service = CustodyLedgerService()
    >>> chain = service.create_custody_chain(
    ...     {"product_type": "FFB", "total_quantity": 1000})
    >>> chain.remaining_quantity
    Decimal('1000.000')
"""

__version__ = "1.0.0"

from custody_ledger.config import (
    CustodyLedgerConfig,
    get_config,
    set_config,
    reset_config,
)
from custody_ledger.exceptions import (
    CustodyLedgerError,
    ValidationError,
    NotFoundError,
    InvalidEventError,
    InsufficientQuantityError,
    ProductTypeMismatchError,
    EmptySetError,
    GraphTooLargeError,
    ConcurrencyConflictError,
    OperationCancelledError,
)
from custody_ledger.quantity import Quantity, UnitOfMeasure
from custody_ledger.models import (
    # Enumerations
    ProductType,
    ProductCategory,
    ChainStatus,
    EventType,
    BusinessStep,
    Disposition,
    LineageDirection,
    # Core data models
    CustodyChain,
    CustodyEvent,
    Discrepancy,
    MassBalanceReport,
    # Request models
    CreateChainRequest,
    RecordEventRequest,
    SplitAllocation,
    SplitChainRequest,
    MergeChainsRequest,
    TransformChainRequest,
    CloseChainRequest,
    # Result models
    SplitResult,
    MergeResult,
    TransformResult,
    LineageTrace,
    FacilityEfficiency,
    AnomalyRecord,
    LedgerStatistics,
)
from custody_ledger.concurrency import CancellationToken, ChainLockManager
from custody_ledger.provenance import ProvenanceTracker
from custody_ledger.chain_registry import ChainRegistry
from custody_ledger.event_store import EventStore
from custody_ledger.split_merge import SplitMergeEngine
from custody_ledger.mass_balance import MassBalanceValidator
from custody_ledger.analytics import LedgerAnalytics
from custody_ledger.setup import (
    CustodyLedgerService,
    configure_custody_ledger,
    get_custody_ledger,
    get_router,
)

__all__ = [
    "__version__",
    # Configuration
    "CustodyLedgerConfig",
    "get_config",
    "set_config",
    "reset_config",
    # Exceptions
    "CustodyLedgerError",
    "ValidationError",
    "NotFoundError",
    "InvalidEventError",
    "InsufficientQuantityError",
    "ProductTypeMismatchError",
    "EmptySetError",
    "GraphTooLargeError",
    "ConcurrencyConflictError",
    "OperationCancelledError",
    # Quantities
    "Quantity",
    "UnitOfMeasure",
    # Enumerations
    "ProductType",
    "ProductCategory",
    "ChainStatus",
    "EventType",
    "BusinessStep",
    "Disposition",
    "LineageDirection",
    # Core data models
    "CustodyChain",
    "CustodyEvent",
    "Discrepancy",
    "MassBalanceReport",
    # Request models
    "CreateChainRequest",
    "RecordEventRequest",
    "SplitAllocation",
    "SplitChainRequest",
    "MergeChainsRequest",
    "TransformChainRequest",
    "CloseChainRequest",
    # Result models
    "SplitResult",
    "MergeResult",
    "TransformResult",
    "LineageTrace",
    "FacilityEfficiency",
    "AnomalyRecord",
    "LedgerStatistics",
    # Engines
    "CancellationToken",
    "ChainLockManager",
    "ProvenanceTracker",
    "ChainRegistry",
    "EventStore",
    "SplitMergeEngine",
    "MassBalanceValidator",
    "LedgerAnalytics",
    # Service facade
    "CustodyLedgerService",
    "configure_custody_ledger",
    "get_custody_ledger",
    "get_router",
]
