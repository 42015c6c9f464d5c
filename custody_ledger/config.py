# -*- coding: utf-8 -*-
"""
Custody Ledger Service Configuration

Centralized configuration for the chain-of-custody / mass-balance ledger
covering:
- Quantity handling: default unit, fixed-point scale
- Mass balance: tolerance, expected yield factors per product conversion
- Lineage traversal bounds: depth and node limits
- Concurrency: per-chain lock acquisition timeout
- Anomaly detection thresholds
- Chain code generation, provenance toggle
- Logging level

All settings can be overridden via environment variables with the
``CUSTODY_LEDGER_`` prefix (e.g. ``CUSTODY_LEDGER_MASS_BALANCE_TOLERANCE_PCT``).

Example:
    >>> from custody_ledger.config import get_config
    >>> cfg = get_config()
    >>> print(cfg.mass_balance_tolerance_pct, cfg.yield_factors["FFB:CPO"])
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Environment variable prefix
# ---------------------------------------------------------------------------

_ENV_PREFIX = "CUSTODY_LEDGER_"

# ---------------------------------------------------------------------------
# Reference conversion rates (output mass / input mass)
# ---------------------------------------------------------------------------

DEFAULT_YIELD_FACTORS: Dict[str, float] = {
    "FFB:CPO": 0.20,
    "FFB:PK": 0.05,
    "PK:PKO": 0.45,
    "PK:PKC": 0.50,
    "CPO:RBDPO": 0.92,
    "CPO:PFAD": 0.05,
}


# ---------------------------------------------------------------------------
# CustodyLedgerConfig
# ---------------------------------------------------------------------------


@dataclass
class CustodyLedgerConfig:
    """Complete configuration for the custody ledger.

    Attributes:
        default_unit: Unit of measure used when a request omits one.
        quantity_decimal_places: Fixed-point scale of stored quantities.
        mass_balance_tolerance_pct: Allowed imbalance as a percentage of
            total input; also the relative tolerance of yield checks.
        max_traversal_depth: Maximum lineage BFS depth.
        max_graph_nodes: Maximum number of chains a traversal may visit.
        lock_timeout_seconds: Timeout for acquiring per-chain locks.
        yield_factors: Expected conversion rate keyed ``"INPUT:OUTPUT"``.
        anomaly_z_threshold: Z-score above which a conversion rate is flagged.
        anomaly_quantity_multiplier: Multiple of the mean quantity above
            which an event quantity is flagged.
        chain_id_prefix: Prefix for generated human-readable chain codes.
        enable_provenance: Whether to record SHA-256 provenance entries.
        log_level: Logging level for the ledger.
    """

    # -- Quantities ----------------------------------------------------------
    default_unit: str = "kg"
    quantity_decimal_places: int = 3

    # -- Mass balance --------------------------------------------------------
    mass_balance_tolerance_pct: float = 0.5
    yield_factors: Dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_YIELD_FACTORS),
    )

    # -- Lineage traversal ---------------------------------------------------
    max_traversal_depth: int = 64
    max_graph_nodes: int = 10000

    # -- Concurrency ---------------------------------------------------------
    lock_timeout_seconds: float = 5.0

    # -- Anomaly detection ---------------------------------------------------
    anomaly_z_threshold: float = 2.0
    anomaly_quantity_multiplier: float = 10.0

    # -- Identifiers / provenance -------------------------------------------
    chain_id_prefix: str = "CHAIN"
    enable_provenance: bool = True

    # -- Logging -------------------------------------------------------------
    log_level: str = "INFO"

    def yield_factor(self, input_product: str, output_product: str) -> Optional[float]:
        """Return the configured yield for a conversion, or None."""
        return self.yield_factors.get(f"{input_product}:{output_product}")

    # ------------------------------------------------------------------
    # Factory helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_env(cls) -> CustodyLedgerConfig:
        """Build a CustodyLedgerConfig from environment variables.

        Every field can be overridden via ``CUSTODY_LEDGER_<FIELD_UPPER>``.
        Boolean values accept ``true/1/yes`` (case-insensitive).
        ``YIELD_FACTORS`` is a JSON object merged over the defaults.

        Returns:
            Populated CustodyLedgerConfig instance.
        """
        prefix = _ENV_PREFIX
        defaults = cls()

        def _env(name: str, default: Any = None) -> Optional[str]:
            return os.environ.get(f"{prefix}{name}", default)

        def _bool(name: str, default: bool) -> bool:
            val = _env(name)
            if val is None:
                return default
            return val.lower() in ("true", "1", "yes")

        def _int(name: str, default: int) -> int:
            val = _env(name)
            if val is None:
                return default
            try:
                return int(val)
            except ValueError:
                logger.warning(
                    "Invalid integer for %s%s=%s, using default %d",
                    prefix, name, val, default,
                )
                return default

        def _float(name: str, default: float) -> float:
            val = _env(name)
            if val is None:
                return default
            try:
                return float(val)
            except ValueError:
                logger.warning(
                    "Invalid float for %s%s=%s, using default %f",
                    prefix, name, val, default,
                )
                return default

        def _str(name: str, default: str) -> str:
            val = _env(name)
            if val is None:
                return default
            return val

        def _yields(name: str, default: Dict[str, float]) -> Dict[str, float]:
            merged = dict(default)
            val = _env(name)
            if val is None:
                return merged
            try:
                overrides = json.loads(val)
                merged.update(
                    {str(k).upper(): float(v) for k, v in overrides.items()}
                )
            except (ValueError, TypeError, AttributeError):
                logger.warning(
                    "Invalid JSON for %s%s, using default yield factors",
                    prefix, name,
                )
            return merged

        config = cls(
            default_unit=_str("DEFAULT_UNIT", defaults.default_unit),
            quantity_decimal_places=_int(
                "QUANTITY_DECIMAL_PLACES", defaults.quantity_decimal_places,
            ),
            mass_balance_tolerance_pct=_float(
                "MASS_BALANCE_TOLERANCE_PCT",
                defaults.mass_balance_tolerance_pct,
            ),
            yield_factors=_yields("YIELD_FACTORS", defaults.yield_factors),
            max_traversal_depth=_int(
                "MAX_TRAVERSAL_DEPTH", defaults.max_traversal_depth,
            ),
            max_graph_nodes=_int("MAX_GRAPH_NODES", defaults.max_graph_nodes),
            lock_timeout_seconds=_float(
                "LOCK_TIMEOUT_SECONDS", defaults.lock_timeout_seconds,
            ),
            anomaly_z_threshold=_float(
                "ANOMALY_Z_THRESHOLD", defaults.anomaly_z_threshold,
            ),
            anomaly_quantity_multiplier=_float(
                "ANOMALY_QUANTITY_MULTIPLIER",
                defaults.anomaly_quantity_multiplier,
            ),
            chain_id_prefix=_str("CHAIN_ID_PREFIX", defaults.chain_id_prefix),
            enable_provenance=_bool(
                "ENABLE_PROVENANCE", defaults.enable_provenance,
            ),
            log_level=_str("LOG_LEVEL", defaults.log_level),
        )

        logger.info(
            "CustodyLedgerConfig loaded: unit=%s, scale=%d, tolerance=%.3f%%, "
            "max_depth=%d, max_nodes=%d, lock_timeout=%.1fs, yields=%d, "
            "provenance=%s",
            config.default_unit,
            config.quantity_decimal_places,
            config.mass_balance_tolerance_pct,
            config.max_traversal_depth,
            config.max_graph_nodes,
            config.lock_timeout_seconds,
            len(config.yield_factors),
            config.enable_provenance,
        )
        return config


# ---------------------------------------------------------------------------
# Thread-safe singleton accessor
# ---------------------------------------------------------------------------

_config_instance: Optional[CustodyLedgerConfig] = None
_config_lock = threading.Lock()


def get_config() -> CustodyLedgerConfig:
    """Return the singleton CustodyLedgerConfig, creating from env if needed.

    Returns:
        CustodyLedgerConfig singleton instance.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = CustodyLedgerConfig.from_env()
    return _config_instance


def set_config(config: CustodyLedgerConfig) -> None:
    """Replace the singleton CustodyLedgerConfig (useful for testing).

    Args:
        config: New configuration to install.
    """
    global _config_instance
    with _config_lock:
        _config_instance = config
    logger.info("CustodyLedgerConfig replaced programmatically")


def reset_config() -> None:
    """Reset the singleton (primarily for test teardown)."""
    global _config_instance
    with _config_lock:
        _config_instance = None


__all__ = [
    "DEFAULT_YIELD_FACTORS",
    "CustodyLedgerConfig",
    "get_config",
    "set_config",
    "reset_config",
]
