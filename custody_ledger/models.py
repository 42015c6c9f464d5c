# -*- coding: utf-8 -*-
"""
Custody Ledger Data Models

Pydantic v2 data models for the palm-oil chain-of-custody / mass-balance
ledger. Defines the closed vocabularies (product types, event types,
business steps, dispositions), the immutable chain and event snapshots,
mass-balance reports, and the strongly typed request/response schema of
every ledger mutation.

Models:
    - Enumerations: ProductType, ProductCategory, ChainStatus, EventType,
        BusinessStep, Disposition, LineageDirection
    - Core models: CustodyChain, CustodyEvent, Discrepancy,
        MassBalanceReport
    - Request models: CreateChainRequest, RecordEventRequest,
        SplitAllocation, SplitChainRequest, MergeChainsRequest,
        TransformChainRequest, CloseChainRequest
    - Result models: SplitResult, MergeResult, TransformResult,
        LineageNode, LineageEdge, LineageTrace, ChainEfficiency,
        FacilityEfficiency, AnomalyRecord, LedgerStatistics
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from custody_ledger.quantity import UnitOfMeasure


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC so every timestamp is comparable."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _non_empty(name: str, v: Optional[str]) -> Optional[str]:
    if v is not None and not v.strip():
        raise ValueError(f"{name} must be non-empty")
    return v


# =============================================================================
# Enumerations
# =============================================================================


class ProductType(str, Enum):
    """Palm-oil product types tracked by the ledger."""

    FFB = "FFB"  # Fresh Fruit Bunches
    CPO = "CPO"  # Crude Palm Oil
    PK = "PK"  # Palm Kernel
    PKO = "PKO"  # Palm Kernel Oil
    PKC = "PKC"  # Palm Kernel Cake
    RBDPO = "RBDPO"  # Refined, Bleached, Deodorized Palm Oil
    PFAD = "PFAD"  # Palm Fatty Acid Distillate


class ProductCategory(str, Enum):
    """Processing stage of a product type."""

    RAW_MATERIAL = "raw_material"
    INTERMEDIATE = "intermediate"
    REFINED_PRODUCT = "refined_product"


PRODUCT_CATEGORIES: Dict[ProductType, ProductCategory] = {
    ProductType.FFB: ProductCategory.RAW_MATERIAL,
    ProductType.CPO: ProductCategory.INTERMEDIATE,
    ProductType.PK: ProductCategory.INTERMEDIATE,
    ProductType.PKO: ProductCategory.REFINED_PRODUCT,
    ProductType.PKC: ProductCategory.REFINED_PRODUCT,
    ProductType.RBDPO: ProductCategory.REFINED_PRODUCT,
    ProductType.PFAD: ProductCategory.REFINED_PRODUCT,
}


class ChainStatus(str, Enum):
    """Lifecycle status of a custody chain.

    Only ``active`` chains accept events. The remaining statuses are
    terminal: ``split`` and ``merged`` chains handed all of their mass to
    descendants, ``consumed`` chains were drained by processing or
    transformation, and ``closed`` chains were retired while still
    holding mass.
    """

    ACTIVE = "active"
    SPLIT = "split"
    MERGED = "merged"
    CONSUMED = "consumed"
    CLOSED = "closed"

    @property
    def is_terminal(self) -> bool:
        return self is not ChainStatus.ACTIVE


class EventType(str, Enum):
    """Kind of custody event."""

    CREATION = "creation"
    TRANSPORTATION = "transportation"
    PROCESSING = "processing"
    TRANSFORMATION = "transformation"
    AGGREGATION = "aggregation"
    DISAGGREGATION = "disaggregation"


class BusinessStep(str, Enum):
    """Business step during which an event happened."""

    HARVESTING = "harvesting"
    COLLECTING = "collecting"
    PROCESSING = "processing"
    STORING = "storing"
    SHIPPING = "shipping"
    RECEIVING = "receiving"


class Disposition(str, Enum):
    """Business state of the lot after an event."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    DESTROYED = "destroyed"
    RECALLED = "recalled"
    EXPIRED = "expired"


class LineageDirection(str, Enum):
    """Direction of a lineage traversal."""

    BACKWARD = "backward"
    FORWARD = "forward"
    BOTH = "both"


# =============================================================================
# Core Data Models
# =============================================================================


class CustodyChain(BaseModel):
    """Immutable snapshot of one physical lot.

    ``remaining_quantity`` and ``status`` are projections of the chain's
    events; the registry swaps in a new snapshot after each append and
    never mutates an existing one.

    Attributes:
        id: Internal unique identifier.
        chain_id: Human-readable chain code (e.g. ``CHAIN-001``).
        product_type: Product carried by this lot.
        source_plot_ref: Reference to the origin plot, if known.
        source_facility_ref: Facility the lot came from.
        destination_facility_ref: Facility the lot is heading to.
        total_quantity: Quantity at creation.
        remaining_quantity: Quantity still held by this chain.
        unit: Unit of measure of both quantities.
        status: Lifecycle status.
        quality_grade: Optional quality grade.
        batch_number: Optional batch or lot number.
        harvest_date: Optional harvest date.
        expiry_date: Optional expiry date.
        parent_chain_ids: Internal ids of the chains this lot came from.
        child_chain_ids: Internal ids of the chains derived from this lot.
        created_at: Ledger time of creation.
        updated_at: Ledger time of the last projected event.
        metadata: Free-form caller metadata.
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str = Field(
        default_factory=_new_id,
        description="Internal unique identifier",
    )
    chain_id: str = Field(
        ...,
        description="Human-readable chain code",
    )
    product_type: ProductType = Field(
        ...,
        description="Product carried by this lot",
    )
    source_plot_ref: Optional[str] = Field(
        None,
        description="Reference to the origin plot",
    )
    source_facility_ref: Optional[str] = Field(
        None,
        description="Facility the lot came from",
    )
    destination_facility_ref: Optional[str] = Field(
        None,
        description="Facility the lot is heading to",
    )
    total_quantity: Decimal = Field(
        ...,
        gt=Decimal("0"),
        description="Quantity at creation",
    )
    remaining_quantity: Decimal = Field(
        ...,
        ge=Decimal("0"),
        description="Quantity still held by this chain",
    )
    unit: UnitOfMeasure = Field(
        default=UnitOfMeasure.KILOGRAM,
        description="Unit of measure of both quantities",
    )
    status: ChainStatus = Field(
        default=ChainStatus.ACTIVE,
        description="Lifecycle status",
    )
    quality_grade: Optional[str] = Field(
        None,
        description="Optional quality grade",
    )
    batch_number: Optional[str] = Field(
        None,
        description="Optional batch or lot number",
    )
    harvest_date: Optional[date] = Field(
        None,
        description="Optional harvest date",
    )
    expiry_date: Optional[date] = Field(
        None,
        description="Optional expiry date",
    )
    parent_chain_ids: List[str] = Field(
        default_factory=list,
        description="Internal ids of the chains this lot came from",
    )
    child_chain_ids: List[str] = Field(
        default_factory=list,
        description="Internal ids of the chains derived from this lot",
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        description="Ledger time of creation",
    )
    updated_at: datetime = Field(
        default_factory=_utcnow,
        description="Ledger time of the last projected event",
    )
    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form caller metadata",
    )

    @field_validator("parent_chain_ids", "child_chain_ids")
    @classmethod
    def validate_chain_id_lists(cls, v: List[str]) -> List[str]:
        """Keep lineage id lists sorted and free of duplicates."""
        return sorted(set(v))

    @property
    def product_category(self) -> ProductCategory:
        return PRODUCT_CATEGORIES[self.product_type]

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_origin(self) -> bool:
        """True when the lot entered the ledger directly (no parents)."""
        return not self.parent_chain_ids

    @property
    def is_leaf(self) -> bool:
        return not self.child_chain_ids


class CustodyEvent(BaseModel):
    """Immutable record of something that happened to a chain.

    ``quantity`` is signed: positive events bring mass into a fresh chain
    (creation, merge target, transformation output), negative events take
    mass out. Events without a quantity (transportation, aggregation
    bookkeeping) leave ``remaining_quantity`` untouched.

    Attributes:
        id: Unique event identifier.
        chain_id: Internal id of the chain this event belongs to.
        sequence: Ledger-wide append sequence number.
        event_type: Kind of event.
        event_time: Business time of the event.
        recorded_at: Ledger time at which the event was appended.
        business_step: Business step during which it happened.
        disposition: Business state of the lot afterwards.
        quantity: Signed quantity change.
        unit: Unit of ``quantity`` and ``output_quantity``.
        facility_ref: Facility where the event happened.
        recorded_by_ref: User who recorded the event.
        related_chain_ids: Chains created or fed by this event.
        output_product_type: Product produced by a transformation.
        output_quantity: Quantity produced by a transformation.
        conversion_rate: Declared yield of a transformation.
        notes: Free-form notes.
        user_data: Free-form caller payload.
        provenance_hash: SHA-256 hash of the event payload.
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str = Field(
        default_factory=_new_id,
        description="Unique event identifier",
    )
    chain_id: str = Field(
        ...,
        description="Internal id of the chain this event belongs to",
    )
    sequence: int = Field(
        default=0,
        ge=0,
        description="Ledger-wide append sequence number",
    )
    event_type: EventType = Field(
        ...,
        description="Kind of event",
    )
    event_time: datetime = Field(
        default_factory=_utcnow,
        description="Business time of the event",
    )
    recorded_at: datetime = Field(
        default_factory=_utcnow,
        description="Ledger time at which the event was appended",
    )
    business_step: BusinessStep = Field(
        ...,
        description="Business step during which it happened",
    )
    disposition: Disposition = Field(
        default=Disposition.ACTIVE,
        description="Business state of the lot afterwards",
    )
    quantity: Optional[Decimal] = Field(
        None,
        description="Signed quantity change",
    )
    unit: UnitOfMeasure = Field(
        default=UnitOfMeasure.KILOGRAM,
        description="Unit of quantity and output_quantity",
    )
    facility_ref: Optional[str] = Field(
        None,
        description="Facility where the event happened",
    )
    recorded_by_ref: Optional[str] = Field(
        None,
        description="User who recorded the event",
    )
    related_chain_ids: List[str] = Field(
        default_factory=list,
        description="Chains created or fed by this event",
    )
    output_product_type: Optional[ProductType] = Field(
        None,
        description="Product produced by a transformation",
    )
    output_quantity: Optional[Decimal] = Field(
        None,
        ge=Decimal("0"),
        description="Quantity produced by a transformation",
    )
    conversion_rate: Optional[Decimal] = Field(
        None,
        ge=Decimal("0"),
        description="Declared yield of a transformation",
    )
    notes: Optional[str] = Field(
        None,
        description="Free-form notes",
    )
    user_data: Dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form caller payload",
    )
    provenance_hash: str = Field(
        default="",
        description="SHA-256 hash of the event payload",
    )

    @field_validator("event_time", "recorded_at")
    @classmethod
    def validate_timezone(cls, v: datetime) -> datetime:
        """Normalise naive timestamps to UTC."""
        return ensure_utc(v)

    @field_validator("related_chain_ids")
    @classmethod
    def validate_related_chain_ids(cls, v: List[str]) -> List[str]:
        return sorted(set(v))

    @property
    def is_consuming(self) -> bool:
        return self.quantity is not None and self.quantity < 0

    @property
    def is_linked(self) -> bool:
        """True when the event moved mass into other chains of the ledger."""
        return bool(self.related_chain_ids)


class Discrepancy(BaseModel):
    """A finding of the mass-balance validator. Data, never an error."""

    type: str = Field(
        ...,
        description="Discrepancy kind (mass_balance, conversion_rate, zero_input)",
    )
    expected: Decimal = Field(
        default=Decimal("0"),
        description="Expected quantity",
    )
    actual: Decimal = Field(
        default=Decimal("0"),
        description="Observed quantity",
    )
    variance: Decimal = Field(
        default=Decimal("0"),
        description="actual - expected",
    )
    description: str = Field(
        default="",
        description="Human-readable explanation",
    )
    event_id: Optional[str] = Field(
        None,
        description="Event the finding relates to, if any",
    )


class MassBalanceReport(BaseModel):
    """Result of a mass-balance validation over a lineage component.

    Attributes:
        chain_id: Internal id of the chain the validation was run for.
        is_valid: Balanced within tolerance and free of discrepancies.
        total_input: Mass that entered the component at its origins.
        total_output: Mass still held or dispatched out of the ledger.
        total_waste: Mass lost in processing and transformation.
        efficiency: total_output / total_input.
        tolerance: Absolute tolerance applied to the balance.
        unit: Unit of every quantity in the report.
        origin_chain_ids: Origin chains of the component.
        chains_examined: Number of chains in the component.
        discrepancies: Findings.
        validated_at: When the report was computed.
    """

    chain_id: str = Field(..., description="Chain the validation was run for")
    is_valid: bool = Field(..., description="Balanced and discrepancy-free")
    total_input: Decimal = Field(..., description="Mass entering at origins")
    total_output: Decimal = Field(..., description="Mass held or dispatched")
    total_waste: Decimal = Field(..., description="Mass lost")
    efficiency: Decimal = Field(..., description="Output / input")
    tolerance: Decimal = Field(..., description="Absolute balance tolerance")
    unit: UnitOfMeasure = Field(..., description="Unit of every quantity")
    origin_chain_ids: List[str] = Field(
        default_factory=list,
        description="Origin chains of the component",
    )
    chains_examined: int = Field(
        default=0,
        ge=0,
        description="Number of chains in the component",
    )
    discrepancies: List[Discrepancy] = Field(
        default_factory=list,
        description="Findings",
    )
    validated_at: datetime = Field(
        default_factory=_utcnow,
        description="When the report was computed",
    )


# =============================================================================
# Request Models
# =============================================================================


class CreateChainRequest(BaseModel):
    """Request body for creating a custody chain.

    Attributes:
        chain_id: Optional human-readable code; generated when omitted.
        product_type: Product carried by the lot.
        total_quantity: Initial quantity, must be > 0.
        unit: Unit of measure; the configured default when omitted.
        source_plot_ref: Origin plot reference.
        source_facility_ref: Facility the lot came from.
        destination_facility_ref: Facility the lot is heading to.
        quality_grade: Optional quality grade.
        batch_number: Optional batch number.
        harvest_date: Optional harvest date.
        expiry_date: Optional expiry date.
        event_time: Business time of the creation event.
        recorded_by_ref: User creating the chain.
        metadata: Free-form caller metadata.
    """

    model_config = ConfigDict(extra="forbid")

    chain_id: Optional[str] = Field(
        None,
        description="Human-readable code; generated when omitted",
    )
    product_type: ProductType = Field(
        ...,
        description="Product carried by the lot",
    )
    total_quantity: Decimal = Field(
        ...,
        description="Initial quantity (must be > 0)",
    )
    unit: Optional[str] = Field(
        None,
        description="Unit of measure; configured default when omitted",
    )
    source_plot_ref: Optional[str] = Field(None, description="Origin plot")
    source_facility_ref: Optional[str] = Field(
        None,
        description="Facility the lot came from",
    )
    destination_facility_ref: Optional[str] = Field(
        None,
        description="Facility the lot is heading to",
    )
    quality_grade: Optional[str] = Field(None, description="Quality grade")
    batch_number: Optional[str] = Field(None, description="Batch number")
    harvest_date: Optional[date] = Field(None, description="Harvest date")
    expiry_date: Optional[date] = Field(None, description="Expiry date")
    event_time: Optional[datetime] = Field(
        None,
        description="Business time of the creation event",
    )
    recorded_by_ref: Optional[str] = Field(None, description="Recording user")
    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form caller metadata",
    )

    @field_validator("chain_id")
    @classmethod
    def validate_chain_id(cls, v: Optional[str]) -> Optional[str]:
        """Validate chain_id is non-empty when supplied."""
        return _non_empty("chain_id", v)

    @model_validator(mode="after")
    def validate_dates(self) -> CreateChainRequest:
        """Validate expiry_date does not precede harvest_date."""
        if (
            self.harvest_date is not None
            and self.expiry_date is not None
            and self.expiry_date < self.harvest_date
        ):
            raise ValueError("expiry_date must not precede harvest_date")
        return self


class RecordEventRequest(BaseModel):
    """Request body for recording a custody event on an existing chain.

    ``creation`` events cannot be recorded directly; they are emitted when
    a chain is created. ``quantity`` may only be negative (consumption).
    A ``transformation`` carrying ``output_product_type`` and
    ``output_quantity`` also creates the derived output chain.
    """

    model_config = ConfigDict(extra="forbid")

    chain_id: str = Field(..., description="Chain id or chain code")
    event_type: EventType = Field(..., description="Kind of event")
    business_step: BusinessStep = Field(..., description="Business step")
    disposition: Disposition = Field(
        default=Disposition.ACTIVE,
        description="Business state of the lot afterwards",
    )
    event_time: Optional[datetime] = Field(
        None,
        description="Business time; now when omitted",
    )
    quantity: Optional[Decimal] = Field(
        None,
        description="Signed quantity change (negative consumes)",
    )
    unit: Optional[str] = Field(
        None,
        description="Unit of quantity; the chain's unit when omitted",
    )
    facility_ref: Optional[str] = Field(None, description="Facility")
    recorded_by_ref: Optional[str] = Field(None, description="Recording user")
    output_product_type: Optional[ProductType] = Field(
        None,
        description="Product produced by a transformation",
    )
    output_quantity: Optional[Decimal] = Field(
        None,
        description="Quantity produced by a transformation",
    )
    conversion_rate: Optional[Decimal] = Field(
        None,
        ge=Decimal("0"),
        description="Declared yield of a transformation",
    )
    notes: Optional[str] = Field(None, description="Free-form notes")
    user_data: Dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form caller payload",
    )

    @field_validator("chain_id")
    @classmethod
    def validate_chain_id(cls, v: str) -> str:
        """Validate chain_id is non-empty."""
        return _non_empty("chain_id", v)

    @model_validator(mode="after")
    def validate_outputs(self) -> RecordEventRequest:
        """Outputs come as a pair and only on transformations."""
        has_type = self.output_product_type is not None
        has_qty = self.output_quantity is not None
        if has_type != has_qty:
            raise ValueError(
                "output_product_type and output_quantity must be given together"
            )
        if has_type and self.event_type is not EventType.TRANSFORMATION:
            raise ValueError("outputs are only allowed on transformation events")
        if has_qty and self.output_quantity <= 0:
            raise ValueError("output_quantity must be > 0")
        return self


class SplitAllocation(BaseModel):
    """One child of a split: an absolute quantity or a proportional share."""

    model_config = ConfigDict(extra="forbid")

    quantity: Optional[Decimal] = Field(
        None,
        description="Absolute quantity for this child",
    )
    share: Optional[Decimal] = Field(
        None,
        description="Proportional share of the split amount",
    )
    destination_facility_ref: Optional[str] = Field(
        None,
        description="Facility the child lot is heading to",
    )
    quality_grade: Optional[str] = Field(
        None,
        description="Quality grade override; inherited when omitted",
    )

    @model_validator(mode="after")
    def validate_exactly_one(self) -> SplitAllocation:
        """Exactly one of quantity and share, and it must be > 0."""
        if (self.quantity is None) == (self.share is None):
            raise ValueError("exactly one of quantity or share is required")
        value = self.quantity if self.quantity is not None else self.share
        if value <= 0:
            raise ValueError("allocation must be > 0")
        return self


class SplitChainRequest(BaseModel):
    """Request body for splitting a chain into child chains."""

    model_config = ConfigDict(extra="forbid")

    allocations: List[SplitAllocation] = Field(
        ...,
        min_length=1,
        description="Children to create",
    )
    amount: Optional[Decimal] = Field(
        None,
        gt=Decimal("0"),
        description="Amount divided by shares; whole remaining when omitted",
    )
    event_time: Optional[datetime] = Field(None, description="Business time")
    facility_ref: Optional[str] = Field(None, description="Facility")
    recorded_by_ref: Optional[str] = Field(None, description="Recording user")

    @model_validator(mode="after")
    def validate_allocation_kind(self) -> SplitChainRequest:
        """Allocations may not mix quantities and shares."""
        kinds = {a.quantity is not None for a in self.allocations}
        if len(kinds) > 1:
            raise ValueError("allocations must not mix quantity and share")
        if self.amount is not None and True in kinds:
            raise ValueError("amount only applies to share allocations")
        return self


class MergeChainsRequest(BaseModel):
    """Request body for merging chains of one product type."""

    model_config = ConfigDict(extra="forbid")

    chain_ids: List[str] = Field(
        ...,
        description="Chains to merge (ids or codes)",
    )
    destination_facility_ref: Optional[str] = Field(
        None,
        description="Facility receiving the merged lot",
    )
    chain_id: Optional[str] = Field(
        None,
        description="Code for the merged chain; generated when omitted",
    )
    quality_grade: Optional[str] = Field(None, description="Quality grade")
    event_time: Optional[datetime] = Field(None, description="Business time")
    recorded_by_ref: Optional[str] = Field(None, description="Recording user")


class TransformChainRequest(BaseModel):
    """Request body for transforming part of a chain into another product."""

    model_config = ConfigDict(extra="forbid")

    input_quantity: Decimal = Field(
        ...,
        gt=Decimal("0"),
        description="Quantity of the source consumed",
    )
    output_product_type: ProductType = Field(
        ...,
        description="Product produced",
    )
    output_quantity: Decimal = Field(
        ...,
        gt=Decimal("0"),
        description="Quantity produced",
    )
    unit: Optional[str] = Field(None, description="Unit of both quantities")
    conversion_rate: Optional[Decimal] = Field(
        None,
        ge=Decimal("0"),
        description="Declared yield",
    )
    output_chain_id: Optional[str] = Field(
        None,
        description="Code for the output chain; generated when omitted",
    )
    facility_ref: Optional[str] = Field(None, description="Facility")
    disposition: Disposition = Field(
        default=Disposition.ACTIVE,
        description="Disposition of the source afterwards",
    )
    event_time: Optional[datetime] = Field(None, description="Business time")
    recorded_by_ref: Optional[str] = Field(None, description="Recording user")
    notes: Optional[str] = Field(None, description="Free-form notes")


class CloseChainRequest(BaseModel):
    """Request body for administratively closing a chain."""

    model_config = ConfigDict(extra="forbid")

    disposition: Disposition = Field(
        default=Disposition.INACTIVE,
        description="Disposition recorded on the closing event",
    )
    reason: Optional[str] = Field(None, description="Why the chain is closed")
    facility_ref: Optional[str] = Field(None, description="Facility")
    event_time: Optional[datetime] = Field(None, description="Business time")
    recorded_by_ref: Optional[str] = Field(None, description="Recording user")

    @field_validator("disposition")
    @classmethod
    def validate_disposition(cls, v: Disposition) -> Disposition:
        """A closing event must carry a non-active disposition."""
        if v is Disposition.ACTIVE:
            raise ValueError("closing disposition must not be active")
        return v


# =============================================================================
# Result Models
# =============================================================================


class SplitResult(BaseModel):
    parent_chain: CustodyChain
    child_chains: List[CustodyChain]


class MergeResult(BaseModel):
    parent_chains: List[CustodyChain]
    merged_chain: CustodyChain


class TransformResult(BaseModel):
    """Source and output chains of a transformation."""

    source_chain: CustodyChain
    output_chain: CustodyChain
    event: CustodyEvent
    waste_quantity: Decimal = Field(
        default=Decimal("0"),
        description="Input minus output, floored at zero",
    )


class LineageNode(BaseModel):
    id: str
    chain_id: str
    product_type: ProductType
    status: ChainStatus
    total_quantity: Decimal
    remaining_quantity: Decimal
    unit: UnitOfMeasure
    depth: int = Field(default=0, ge=0)


class LineageEdge(BaseModel):
    parent_id: str
    child_id: str


class LineageTrace(BaseModel):
    """Bounded lineage graph around one chain."""

    root: str = Field(..., description="Internal id of the traced chain")
    direction: LineageDirection = Field(..., description="Traversal direction")
    nodes: List[LineageNode] = Field(default_factory=list)
    edges: List[LineageEdge] = Field(default_factory=list)
    depth: int = Field(default=0, ge=0, description="Deepest level reached")


class ChainEfficiency(BaseModel):
    """Transformation totals for one chain, optionally within a time window."""

    chain_id: str
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    event_count: int = 0
    total_input: Decimal = Decimal("0")
    total_output: Decimal = Decimal("0")
    total_waste: Decimal = Decimal("0")
    average_efficiency: Decimal = Decimal("0")
    unit: UnitOfMeasure = UnitOfMeasure.KILOGRAM


class FacilityEfficiency(BaseModel):
    """Input/output summary of the events recorded at one facility.

    Attributes:
        facility_ref: Facility the summary covers.
        start: Inclusive start of the business-time window.
        end: Inclusive end of the business-time window.
        total_events: Number of events in the window.
        total_input: Mass consumed by transformations and processing.
        total_output: Mass produced by transformations.
        total_waste: Mass lost.
        efficiency: total_output / total_input.
        events_by_type: Event count per event type.
        unit: Unit of every quantity.
    """

    facility_ref: str
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    total_events: int = 0
    total_input: Decimal = Decimal("0")
    total_output: Decimal = Decimal("0")
    total_waste: Decimal = Decimal("0")
    efficiency: Decimal = Decimal("0")
    events_by_type: Dict[str, int] = Field(default_factory=dict)
    unit: UnitOfMeasure = UnitOfMeasure.KILOGRAM


class AnomalyRecord(BaseModel):
    """An outlier event flagged by anomaly detection."""

    event_id: str
    chain_id: str
    anomaly_type: str = Field(
        ...,
        description="conversion_rate_anomaly or quantity_anomaly",
    )
    severity: str = Field(..., description="medium or high")
    value: Decimal
    expected: Decimal = Field(..., description="Group mean")
    score: Decimal = Field(
        default=Decimal("0"),
        description="z-score, or multiple of the mean for quantities",
    )
    expected_min: Optional[Decimal] = None
    expected_max: Optional[Decimal] = None
    description: str = ""


class LedgerStatistics(BaseModel):
    """Aggregated counters for the ledger."""

    total_chains: int = Field(default=0, ge=0)
    total_events: int = Field(default=0, ge=0)
    chains_by_status: Dict[str, int] = Field(default_factory=dict)
    chains_by_product_type: Dict[str, int] = Field(default_factory=dict)
    events_by_type: Dict[str, int] = Field(default_factory=dict)
    total_remaining_by_unit: Dict[str, Decimal] = Field(default_factory=dict)
    provenance_entries: int = Field(default=0, ge=0)


__all__ = [
    "ensure_utc",
    "ProductType",
    "ProductCategory",
    "PRODUCT_CATEGORIES",
    "ChainStatus",
    "EventType",
    "BusinessStep",
    "Disposition",
    "LineageDirection",
    "CustodyChain",
    "CustodyEvent",
    "Discrepancy",
    "MassBalanceReport",
    "CreateChainRequest",
    "RecordEventRequest",
    "SplitAllocation",
    "SplitChainRequest",
    "MergeChainsRequest",
    "TransformChainRequest",
    "CloseChainRequest",
    "SplitResult",
    "MergeResult",
    "TransformResult",
    "LineageNode",
    "LineageEdge",
    "LineageTrace",
    "ChainEfficiency",
    "FacilityEfficiency",
    "AnomalyRecord",
    "LedgerStatistics",
]
