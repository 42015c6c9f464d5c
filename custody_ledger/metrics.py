# -*- coding: utf-8 -*-
"""
Prometheus Metrics - Custody Ledger

Metrics:
    1.  cl_operations_total (Counter)
    2.  cl_operation_duration_seconds (Histogram)
    3.  cl_chains_created_total (Counter)
    4.  cl_events_recorded_total (Counter)
    5.  cl_splits_total (Counter)
    6.  cl_merges_total (Counter)
    7.  cl_transformations_total (Counter)
    8.  cl_validations_total (Counter)
    9.  cl_discrepancies_total (Counter)
    10. cl_errors_total (Counter)
    11. cl_lock_conflicts_total (Counter)
    12. cl_lineage_nodes_visited (Histogram)
    13. cl_active_chains (Gauge)
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


# ---------------------------------------------------------------------------
# Metric definitions
# ---------------------------------------------------------------------------

# 1. Operations count
operations_total = Counter(
    "cl_operations_total",
    "Total custody ledger operations performed",
    labelnames=["operation", "result"],
)

# 2. Operation duration
operation_duration_seconds = Histogram(
    "cl_operation_duration_seconds",
    "Custody ledger operation duration in seconds",
    labelnames=["operation"],
    buckets=(0.0001, 0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 1.0),
)

# 3. Chains created
chains_created_total = Counter(
    "cl_chains_created_total",
    "Total custody chains created",
    labelnames=["product_type"],
)

# 4. Events recorded
events_recorded_total = Counter(
    "cl_events_recorded_total",
    "Total custody events appended",
    labelnames=["event_type"],
)

# 5. Splits
splits_total = Counter(
    "cl_splits_total",
    "Total chain split operations",
)

# 6. Merges
merges_total = Counter(
    "cl_merges_total",
    "Total chain merge operations",
)

# 7. Transformations
transformations_total = Counter(
    "cl_transformations_total",
    "Total chain transformation operations",
    labelnames=["output_product_type"],
)

# 8. Mass-balance validations
validations_total = Counter(
    "cl_validations_total",
    "Total mass-balance validations",
    labelnames=["result"],
)

# 9. Discrepancies found
discrepancies_total = Counter(
    "cl_discrepancies_total",
    "Total mass-balance discrepancies reported",
    labelnames=["type"],
)

# 10. Errors
errors_total = Counter(
    "cl_errors_total",
    "Total custody ledger errors by operation and error type",
    labelnames=["operation", "error"],
)

# 11. Lock conflicts
lock_conflicts_total = Counter(
    "cl_lock_conflicts_total",
    "Total per-chain lock acquisition timeouts",
)

# 12. Lineage traversal size
lineage_nodes_visited = Histogram(
    "cl_lineage_nodes_visited",
    "Chains visited per lineage traversal",
    buckets=(1, 2, 5, 10, 25, 50, 100, 500, 1000, 10000),
)

# 13. Active chains
active_chains = Gauge(
    "cl_active_chains",
    "Current number of active custody chains",
)


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------


def record_operation(operation: str, result: str, duration_seconds: float) -> None:
    """Record a ledger operation.

    Args:
        operation: Operation name (create_chain, split_chain, ...).
        result: "success" or "error".
        duration_seconds: Operation duration in seconds.
    """
    operations_total.labels(operation=operation, result=result).inc()
    operation_duration_seconds.labels(operation=operation).observe(
        duration_seconds,
    )


def record_chain_created(product_type: str) -> None:
    chains_created_total.labels(product_type=product_type).inc()


def record_event(event_type: str) -> None:
    events_recorded_total.labels(event_type=event_type).inc()


def record_split() -> None:
    splits_total.inc()


def record_merge() -> None:
    merges_total.inc()


def record_transformation(output_product_type: str) -> None:
    transformations_total.labels(
        output_product_type=output_product_type,
    ).inc()


def record_validation(is_valid: bool) -> None:
    """Record a mass-balance validation outcome."""
    validations_total.labels(result="valid" if is_valid else "invalid").inc()


def record_discrepancy(discrepancy_type: str) -> None:
    discrepancies_total.labels(type=discrepancy_type).inc()


def record_error(operation: str, error: str) -> None:
    """Record a failed operation.

    Args:
        operation: Operation name.
        error: Exception class name.
    """
    errors_total.labels(operation=operation, error=error).inc()


def record_lock_conflict() -> None:
    lock_conflicts_total.inc()


def record_lineage_size(nodes: int) -> None:
    lineage_nodes_visited.observe(nodes)


def update_active_chains(count: int) -> None:
    active_chains.set(count)


__all__ = [
    # Metric objects
    "operations_total",
    "operation_duration_seconds",
    "chains_created_total",
    "events_recorded_total",
    "splits_total",
    "merges_total",
    "transformations_total",
    "validations_total",
    "discrepancies_total",
    "errors_total",
    "lock_conflicts_total",
    "lineage_nodes_visited",
    "active_chains",
    # Helper functions
    "record_operation",
    "record_chain_created",
    "record_event",
    "record_split",
    "record_merge",
    "record_transformation",
    "record_validation",
    "record_discrepancy",
    "record_error",
    "record_lock_conflict",
    "record_lineage_size",
    "update_active_chains",
]
