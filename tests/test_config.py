# -*- coding: utf-8 -*-
"""Tests for CustodyLedgerConfig and its singleton accessors."""

import pytest

from custody_ledger.config import (
    DEFAULT_YIELD_FACTORS,
    CustodyLedgerConfig,
    get_config,
    reset_config,
    set_config,
)


@pytest.fixture(autouse=True)
def _clean_singleton():
    reset_config()
    yield
    reset_config()


class TestDefaults:
    """Default configuration values."""

    def test_defaults(self):
        cfg = CustodyLedgerConfig()
        assert cfg.default_unit == "kg"
        assert cfg.quantity_decimal_places == 3
        assert cfg.mass_balance_tolerance_pct == 0.5
        assert cfg.max_traversal_depth == 64
        assert cfg.max_graph_nodes == 10000
        assert cfg.enable_provenance is True

    def test_yield_factor_lookup(self):
        cfg = CustodyLedgerConfig()
        assert cfg.yield_factor("FFB", "CPO") == 0.20
        assert cfg.yield_factor("CPO", "FFB") is None

    def test_yield_factors_are_copied_per_instance(self):
        cfg = CustodyLedgerConfig()
        cfg.yield_factors["FFB:CPO"] = 0.5
        assert DEFAULT_YIELD_FACTORS["FFB:CPO"] == 0.20


class TestFromEnv:
    """Environment overrides with the CUSTODY_LEDGER_ prefix."""

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("CUSTODY_LEDGER_DEFAULT_UNIT", "t")
        monkeypatch.setenv("CUSTODY_LEDGER_MASS_BALANCE_TOLERANCE_PCT", "1.5")
        monkeypatch.setenv("CUSTODY_LEDGER_MAX_GRAPH_NODES", "50")
        monkeypatch.setenv("CUSTODY_LEDGER_ENABLE_PROVENANCE", "no")
        cfg = CustodyLedgerConfig.from_env()
        assert cfg.default_unit == "t"
        assert cfg.mass_balance_tolerance_pct == 1.5
        assert cfg.max_graph_nodes == 50
        assert cfg.enable_provenance is False

    def test_invalid_number_falls_back_to_default(self, monkeypatch):
        monkeypatch.setenv("CUSTODY_LEDGER_MAX_TRAVERSAL_DEPTH", "deep")
        assert CustodyLedgerConfig.from_env().max_traversal_depth == 64

    def test_yield_factors_merge_over_defaults(self, monkeypatch):
        monkeypatch.setenv(
            "CUSTODY_LEDGER_YIELD_FACTORS", '{"ffb:cpo": 0.22, "CPO:OLEIN": 0.8}',
        )
        cfg = CustodyLedgerConfig.from_env()
        assert cfg.yield_factors["FFB:CPO"] == 0.22
        assert cfg.yield_factors["CPO:OLEIN"] == 0.8
        assert cfg.yield_factors["PK:PKO"] == 0.45

    def test_invalid_yield_json_keeps_defaults(self, monkeypatch):
        monkeypatch.setenv("CUSTODY_LEDGER_YIELD_FACTORS", "not json")
        assert CustodyLedgerConfig.from_env().yield_factors == DEFAULT_YIELD_FACTORS


class TestSingleton:
    """get_config / set_config / reset_config."""

    def test_get_config_is_cached(self):
        assert get_config() is get_config()

    def test_set_and_reset(self):
        custom = CustodyLedgerConfig(chain_id_prefix="LOT")
        set_config(custom)
        assert get_config() is custom
        reset_config()
        assert get_config() is not custom
