# -*- coding: utf-8 -*-
"""Custody Ledger Exception Hierarchy.

Typed errors returned to callers of every ledger query and mutation. A
failed mutation leaves no partial event and no partial quantity change.

Exception Hierarchy:
    CustodyLedgerError (base)
    ├── ValidationError
    ├── NotFoundError
    ├── InvalidEventError
    │   └── InsufficientQuantityError
    ├── ProductTypeMismatchError
    ├── EmptySetError
    ├── GraphTooLargeError
    ├── ConcurrencyConflictError
    └── OperationCancelledError

Only ConcurrencyConflictError is worth retrying; every other error is
terminal for the input that produced it.

Example:
    >>> from custody_ledger.exceptions import InsufficientQuantityError
    >>> raise InsufficientQuantityError(
    ...     message="Split total 700 exceeds remaining 500",
    ...     context={"chain_id": "CHAIN-001", "requested": "700", "remaining": "500"},
    ... )
"""

import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# ==============================================================================
# Base Exception
# ==============================================================================

class CustodyLedgerError(Exception):
    """Base exception for all custody ledger errors.

    Attributes:
        message: Human-readable error message, surfaced verbatim by the UI
        error_code: Unique error identifier (e.g., "CL_NOT_FOUND_ERROR")
        context: Dictionary with error-specific details
        timestamp: When the error occurred
    """

    ERROR_PREFIX = "CL"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self._generate_error_code()
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    def _generate_error_code(self) -> str:
        """Generate error code from the class name.

        Returns:
            Error code like "CL_INVALID_EVENT_ERROR"
        """
        error_type = re.sub(
            r'(?<!^)(?=[A-Z])', '_', self.__class__.__name__,
        ).upper()
        return f"{self.ERROR_PREFIX}_{error_type}"

    @property
    def retriable(self) -> bool:
        """Whether the caller may retry the same input."""
        return False

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "retriable": self.retriable,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_json(self) -> str:
        """Convert exception to JSON string."""
        return json.dumps(self.to_dict(), indent=2, default=str)

    def __str__(self) -> str:
        return f"[{self.error_code}] - {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message='{self.message}', "
            f"error_code='{self.error_code}')"
        )


# ==============================================================================
# Input / lookup errors
# ==============================================================================

class ValidationError(CustodyLedgerError):
    """Malformed input, rejected before any state change.

    Example:
        >>> raise ValidationError(
        ...     message="total_quantity must be > 0",
        ...     invalid_fields={"total_quantity": "must be > 0"},
        ... )
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        invalid_fields: Optional[Dict[str, str]] = None,
    ):
        if invalid_fields:
            context = context or {}
            context["invalid_fields"] = invalid_fields
        super().__init__(message, context=context)


class NotFoundError(CustodyLedgerError):
    """Unknown chain or event identifier."""

    def __init__(
        self,
        message: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = context or {}
        if entity_type:
            context["entity_type"] = entity_type
        if entity_id:
            context["entity_id"] = entity_id
        super().__init__(message, context=context)


# ==============================================================================
# Ledger rule violations
# ==============================================================================

class InvalidEventError(CustodyLedgerError):
    """Event violates the chain's allowed transitions or vocabulary."""


class InsufficientQuantityError(InvalidEventError):
    """Operation would move remaining quantity below zero or above total.

    Example:
        >>> raise InsufficientQuantityError(
        ...     message="Split total exceeds remaining quantity",
        ...     requested="700.000",
        ...     available="500.000",
        ... )
    """

    def __init__(
        self,
        message: str,
        requested: Optional[Any] = None,
        available: Optional[Any] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = context or {}
        if requested is not None:
            context["requested"] = str(requested)
        if available is not None:
            context["available"] = str(available)
        super().__init__(message, context=context)


class ProductTypeMismatchError(CustodyLedgerError):
    """Merge sources differ in product type."""


class EmptySetError(CustodyLedgerError):
    """Fewer source chains than the operation requires."""


class GraphTooLargeError(CustodyLedgerError):
    """Lineage traversal exceeded its configured depth or size bound."""

    def __init__(
        self,
        message: str,
        limit_name: Optional[str] = None,
        limit: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = context or {}
        if limit_name:
            context["limit_name"] = limit_name
        if limit is not None:
            context["limit"] = limit
        super().__init__(message, context=context)


class ConcurrencyConflictError(CustodyLedgerError):
    """Lock contention on a chain; the caller should retry."""

    @property
    def retriable(self) -> bool:
        return True


class OperationCancelledError(CustodyLedgerError):
    """A long-running read was cancelled by its caller."""


# ==============================================================================
# Utility Functions
# ==============================================================================

def is_retriable(exc: Exception) -> bool:
    """Check if an exception signals that the operation may be retried.

    Args:
        exc: Exception to check

    Returns:
        True only for ConcurrencyConflictError
    """
    if isinstance(exc, CustodyLedgerError):
        return exc.retriable
    return False


__all__ = [
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
    "is_retriable",
]
