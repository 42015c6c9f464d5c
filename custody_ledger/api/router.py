# -*- coding: utf-8 -*-
"""
Custody Ledger REST API Router

FastAPI router mounted at ``/api/v1/custody``:

    GET  /chains                          list chains
    POST /chains                          create a chain
    POST /chains/merge                    merge chains
    GET  /chains/{chain_id}               chain detail
    GET  /chains/{chain_id}/events        events of a chain
    GET  /chains/{chain_id}/mass-balance  mass-balance report
    GET  /chains/{chain_id}/lineage       lineage trace
    GET  /chains/{chain_id}/efficiency    transformation efficiency
    POST /chains/{chain_id}/split         split a chain
    POST /chains/{chain_id}/transform     transform part of a chain
    POST /chains/{chain_id}/close         administrative close
    POST /events                          record an event
    GET  /facilities/{facility_id}/efficiency
    GET  /anomalies
    GET  /health
    GET  /statistics

Ledger errors are returned as ``HTTPException`` with the error's
``to_dict()`` as detail.
Event listing, mass-balance validation and lineage tracing run in the
threadpool and are cancelled when the client disconnects.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool

from custody_ledger.concurrency import CancellationToken
from custody_ledger.exceptions import (
    ConcurrencyConflictError,
    CustodyLedgerError,
    EmptySetError,
    GraphTooLargeError,
    InvalidEventError,
    NotFoundError,
    OperationCancelledError,
    ProductTypeMismatchError,
    ValidationError,
)
from custody_ledger.models import (
    AnomalyRecord,
    ChainEfficiency,
    CustodyChain,
    CustodyEvent,
    FacilityEfficiency,
    LedgerStatistics,
    LineageTrace,
    MassBalanceReport,
    TransformResult,
)
from custody_ledger.setup import CustodyLedgerService, get_custody_ledger

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

_DISCONNECT_POLL_SECONDS = 0.1

router = APIRouter(prefix="/api/v1/custody", tags=["custody-ledger"])

# Checked in order; first match wins.
_STATUS_CODES = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (InvalidEventError, 409),
    (ConcurrencyConflictError, 409),
    (GraphTooLargeError, 413),
    (ProductTypeMismatchError, 422),
    (EmptySetError, 422),
    (OperationCancelledError, 499),
)


def _http_error(exc: CustodyLedgerError) -> HTTPException:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            break
    else:
        status_code = 500
        logger.error("Unmapped ledger error: %s", exc)
    return HTTPException(status_code=status_code, detail=exc.to_dict())


def _svc(request: Request) -> CustodyLedgerService:
    """Service bound to the app, else the process singleton."""
    return get_custody_ledger(request.app)


async def run_cancellable(
    request: Request,
    func: Callable[..., _T],
    *args: Any,
    **kwargs: Any,
) -> _T:
    """Run a blocking ledger read off the event loop, cancelling on disconnect.

    ``func`` receives a fresh ``cancel_token`` keyword argument. While it
    runs in the threadpool the client connection is polled, and the token
    is cancelled as soon as the client goes away.
    """
    token = CancellationToken()
    work = asyncio.ensure_future(
        run_in_threadpool(func, *args, cancel_token=token, **kwargs)
    )
    while not work.done():
        await asyncio.wait({work}, timeout=_DISCONNECT_POLL_SECONDS)
        if not work.done() and not token.cancelled:
            if await request.is_disconnected():
                logger.info("Client disconnected; cancelling %s", request.url.path)
                token.cancel()
    return work.result()


# ---------------------------------------------------------------------------
# Chains
# ---------------------------------------------------------------------------


@router.get("/chains", response_model=List[CustodyChain])
async def list_chains(
    status: Optional[str] = Query(None, description="Filter by chain status"),
    product_type: Optional[str] = Query(None, description="Filter by product"),
    limit: int = Query(100, ge=0, le=1000),
    offset: int = Query(0, ge=0),
    service: CustodyLedgerService = Depends(_svc),
) -> List[CustodyChain]:
    """List custody chains."""
    try:
        return service.get_custody_chains(
            status=status, product_type=product_type, limit=limit, offset=offset,
        )
    except CustodyLedgerError as exc:
        raise _http_error(exc) from exc


@router.post("/chains", response_model=CustodyChain, status_code=201)
async def create_chain(
    body: Dict[str, Any],
    service: CustodyLedgerService = Depends(_svc),
) -> CustodyChain:
    """Create a custody chain with its creation event."""
    try:
        return service.create_custody_chain(body)
    except CustodyLedgerError as exc:
        raise _http_error(exc) from exc


@router.post("/chains/merge", response_model=CustodyChain, status_code=201)
async def merge_chains(
    body: Dict[str, Any],
    service: CustodyLedgerService = Depends(_svc),
) -> CustodyChain:
    """Merge two or more chains of one product type."""
    try:
        return service.merge_chains(body)
    except CustodyLedgerError as exc:
        raise _http_error(exc) from exc


@router.get("/chains/{chain_id}", response_model=CustodyChain)
async def get_chain(
    chain_id: str,
    service: CustodyLedgerService = Depends(_svc),
) -> CustodyChain:
    """Get a chain by id or chain code."""
    try:
        return service.get_custody_chain(chain_id)
    except CustodyLedgerError as exc:
        raise _http_error(exc) from exc


@router.get("/chains/{chain_id}/events", response_model=List[CustodyEvent])
async def get_chain_events(
    chain_id: str,
    request: Request,
    facility_id: Optional[str] = Query(None, description="Filter by facility"),
    limit: Optional[int] = Query(None, ge=0),
    service: CustodyLedgerService = Depends(_svc),
) -> List[CustodyEvent]:
    """Events of a chain ordered by business time."""
    try:
        return await run_cancellable(
            request, service.get_custody_events,
            chain_id, facility_id=facility_id, limit=limit,
        )
    except CustodyLedgerError as exc:
        raise _http_error(exc) from exc


@router.get("/chains/{chain_id}/mass-balance", response_model=MassBalanceReport)
async def validate_mass_balance(
    chain_id: str,
    request: Request,
    tolerance_pct: Optional[float] = Query(None, ge=0),
    service: CustodyLedgerService = Depends(_svc),
) -> MassBalanceReport:
    """Validate the mass balance of a chain's lineage component."""
    try:
        return await run_cancellable(
            request, service.validate_mass_balance,
            chain_id, tolerance_pct=tolerance_pct,
        )
    except CustodyLedgerError as exc:
        raise _http_error(exc) from exc


@router.get("/chains/{chain_id}/lineage", response_model=LineageTrace)
async def trace_lineage(
    chain_id: str,
    request: Request,
    direction: str = Query("backward", description="backward, forward or both"),
    max_depth: Optional[int] = Query(None, ge=0),
    service: CustodyLedgerService = Depends(_svc),
) -> LineageTrace:
    """Trace ancestors and/or descendants of a chain."""
    try:
        return await run_cancellable(
            request, service.trace_lineage,
            chain_id, direction, max_depth=max_depth,
        )
    except CustodyLedgerError as exc:
        raise _http_error(exc) from exc


@router.post(
    "/chains/{chain_id}/split",
    response_model=List[CustodyChain],
    status_code=201,
)
async def split_chain(
    chain_id: str,
    body: Dict[str, Any],
    service: CustodyLedgerService = Depends(_svc),
) -> List[CustodyChain]:
    """Split a chain into child chains."""
    try:
        return service.split_chain(chain_id, body)
    except CustodyLedgerError as exc:
        raise _http_error(exc) from exc


@router.post(
    "/chains/{chain_id}/transform",
    response_model=TransformResult,
    status_code=201,
)
async def transform_chain(
    chain_id: str,
    body: Dict[str, Any],
    service: CustodyLedgerService = Depends(_svc),
) -> TransformResult:
    """Convert part of a chain into a derived product."""
    try:
        return service.transform_chain(chain_id, body)
    except CustodyLedgerError as exc:
        raise _http_error(exc) from exc


@router.post("/chains/{chain_id}/close", response_model=CustodyChain)
async def close_chain(
    chain_id: str,
    body: Optional[Dict[str, Any]] = None,
    service: CustodyLedgerService = Depends(_svc),
) -> CustodyChain:
    """Administratively close a chain."""
    try:
        return service.close_chain(chain_id, body)
    except CustodyLedgerError as exc:
        raise _http_error(exc) from exc


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@router.post("/events", response_model=CustodyEvent, status_code=201)
async def record_event(
    body: Dict[str, Any],
    service: CustodyLedgerService = Depends(_svc),
) -> CustodyEvent:
    """Record a custody event on an existing chain."""
    try:
        return service.record_custody_event(body)
    except CustodyLedgerError as exc:
        raise _http_error(exc) from exc


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------


@router.get("/chains/{chain_id}/efficiency", response_model=ChainEfficiency)
async def get_chain_efficiency(
    chain_id: str,
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    service: CustodyLedgerService = Depends(_svc),
) -> ChainEfficiency:
    """Transformation totals of a chain within an optional time window."""
    try:
        return service.get_chain_efficiency(chain_id, start, end)
    except CustodyLedgerError as exc:
        raise _http_error(exc) from exc


@router.get(
    "/facilities/{facility_id}/efficiency",
    response_model=FacilityEfficiency,
)
async def get_facility_efficiency(
    facility_id: str,
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    service: CustodyLedgerService = Depends(_svc),
) -> FacilityEfficiency:
    """Input, output and loss of events recorded at a facility."""
    try:
        return service.get_facility_efficiency(facility_id, start, end)
    except CustodyLedgerError as exc:
        raise _http_error(exc) from exc


@router.get("/anomalies", response_model=List[AnomalyRecord])
async def detect_anomalies(
    facility_id: Optional[str] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    service: CustodyLedgerService = Depends(_svc),
) -> List[AnomalyRecord]:
    """Conversion-rate and quantity outliers."""
    try:
        return service.detect_anomalies(facility_id, start, end)
    except CustodyLedgerError as exc:
        raise _http_error(exc) from exc


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@router.get("/health")
async def health(service: CustodyLedgerService = Depends(_svc)) -> Dict[str, Any]:
    """Health check of the custody ledger."""
    return service.get_health()


@router.get("/statistics", response_model=LedgerStatistics)
async def statistics(
    service: CustodyLedgerService = Depends(_svc),
) -> LedgerStatistics:
    """Aggregate ledger statistics."""
    return service.get_statistics()


__all__ = ["router", "run_cancellable"]
