# -*- coding: utf-8 -*-
"""Pytest configuration and shared fixtures for the custody ledger."""

import pytest

from custody_ledger.config import CustodyLedgerConfig, reset_config, set_config
from custody_ledger.setup import CustodyLedgerService, reset_custody_ledger


@pytest.fixture
def config():
    """Default configuration installed as the process-wide singleton."""
    cfg = CustodyLedgerConfig()
    set_config(cfg)
    yield cfg
    reset_config()
    reset_custody_ledger()


@pytest.fixture
def service(config):
    """Fresh service with empty ledger state."""
    return CustodyLedgerService(config=config)


@pytest.fixture
def make_chain(service):
    """Factory creating chains through the facade."""

    def _make(code, product_type="FFB", quantity=1000, **extra):
        payload = {
            "chain_id": code,
            "product_type": product_type,
            "total_quantity": quantity,
        }
        payload.update(extra)
        return service.create_custody_chain(payload)

    return _make


@pytest.fixture
def ffb_chain(make_chain):
    """1000 kg of fresh fruit bunches, code CHAIN-001."""
    return make_chain(
        "CHAIN-001",
        unit="kg",
        source_plot_ref="PLOT-1",
        source_facility_ref="MILL-1",
        recorded_by_ref="user-1",
    )
