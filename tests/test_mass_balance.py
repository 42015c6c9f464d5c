# -*- coding: utf-8 -*-
"""Tests for mass-balance validation and lineage tracing."""

from decimal import Decimal

import pytest

from custody_ledger.concurrency import CancellationToken
from custody_ledger.config import CustodyLedgerConfig
from custody_ledger.exceptions import (
    GraphTooLargeError,
    OperationCancelledError,
    ValidationError,
)
from custody_ledger.models import LineageDirection
from custody_ledger.setup import CustodyLedgerService


def _transform(service, chain_id, consumed, output_type, produced, **extra):
    payload = {
        "chain_id": chain_id,
        "event_type": "transformation",
        "business_step": "processing",
        "quantity": -consumed,
        "output_product_type": output_type,
        "output_quantity": produced,
    }
    payload.update(extra)
    return service.record_custody_event(payload)


def _consume(service, chain_id, quantity, event_type="processing"):
    return service.record_custody_event({
        "chain_id": chain_id,
        "event_type": event_type,
        "business_step": "processing",
        "quantity": -quantity,
    })


# ==============================================================================
# Validation
# ==============================================================================

class TestValidateMassBalance:
    """Tests for validate_mass_balance."""

    def test_fresh_chain_balances(self, service, ffb_chain):
        report = service.validate_mass_balance(ffb_chain.id)
        assert report.is_valid
        assert report.total_input == Decimal("1000.000")
        assert report.total_output == Decimal("1000.000")
        assert report.total_waste == Decimal("0.000")
        assert report.efficiency == Decimal("1.0000")
        assert report.tolerance == Decimal("5.000")
        assert report.origin_chain_ids == [ffb_chain.id]
        assert report.chains_examined == 1

    def test_expected_yield(self, service, ffb_chain):
        """1000 kg FFB to 200 kg CPO matches the 20% yield."""
        _transform(service, ffb_chain.id, 1000, "CPO", 200)
        report = service.validate_mass_balance(ffb_chain.id)
        assert report.is_valid
        assert report.discrepancies == []
        assert report.total_input == Decimal("1000.000")
        assert report.total_output == Decimal("200.000")
        assert report.total_waste == Decimal("800.000")
        assert report.efficiency == Decimal("0.2000")
        assert report.chains_examined == 2

    def test_implausible_yield(self, service, ffb_chain):
        """350 kg CPO from 1000 kg FFB is flagged against the 200 kg expected."""
        _transform(service, ffb_chain.id, 1000, "CPO", 350)
        report = service.validate_mass_balance(ffb_chain.id)
        assert not report.is_valid
        findings = [d for d in report.discrepancies if d.type == "conversion_rate"]
        assert len(findings) == 1
        assert findings[0].expected == Decimal("200.000")
        assert findings[0].actual == Decimal("350.000")
        assert findings[0].variance == Decimal("150.000")
        assert findings[0].event_id is not None

    def test_output_chain_sees_the_same_component(self, service, ffb_chain):
        event = _transform(service, ffb_chain.id, 1000, "CPO", 200)
        report = service.validate_mass_balance(event.related_chain_ids[0])
        assert report.is_valid
        assert report.origin_chain_ids == [ffb_chain.id]

    def test_merge_traces_back_to_both_origins(self, service, make_chain):
        first = make_chain("CPO-A", product_type="CPO", quantity=300)
        second = make_chain("CPO-B", product_type="CPO", quantity=200)
        merged = service.merge_chains({"chain_ids": ["CPO-A", "CPO-B"]})

        report = service.validate_mass_balance(merged.id)
        assert report.is_valid
        assert report.total_input == Decimal("500.000")
        assert report.total_output == Decimal("500.000")
        assert report.origin_chain_ids == sorted([first.id, second.id])
        assert report.chains_examined == 3

    def test_processing_loss_is_waste(self, service, ffb_chain):
        _consume(service, ffb_chain.id, 100)
        report = service.validate_mass_balance(ffb_chain.id)
        assert report.is_valid
        assert report.total_output == Decimal("900.000")
        assert report.total_waste == Decimal("100.000")

    def test_unlinked_disaggregation_is_output(self, service, ffb_chain):
        _consume(service, ffb_chain.id, 100, event_type="disaggregation")
        report = service.validate_mass_balance(ffb_chain.id)
        assert report.is_valid
        assert report.total_output == Decimal("1000.000")
        assert report.total_waste == Decimal("0.000")

    def test_closed_chain_still_holds_mass(self, service, ffb_chain):
        service.close_chain(ffb_chain.id)
        report = service.validate_mass_balance(ffb_chain.id)
        assert report.is_valid
        assert report.total_output == Decimal("1000.000")

    def test_output_above_input_breaks_balance(self, service, ffb_chain):
        service.transform_chain(ffb_chain.id, {
            "input_quantity": 100,
            "output_product_type": "CPO",
            "output_quantity": 150,
        })
        report = service.validate_mass_balance(ffb_chain.id)
        assert not report.is_valid
        balance = report.discrepancies[0]
        assert balance.type == "mass_balance"
        assert balance.expected == Decimal("1000.000")
        assert balance.actual == Decimal("1050.000")
        assert balance.variance == Decimal("50.000")

    def test_wider_tolerance(self, service, ffb_chain):
        service.transform_chain(ffb_chain.id, {
            "input_quantity": 100,
            "output_product_type": "CPO",
            "output_quantity": 150,
        })
        report = service.validate_mass_balance(ffb_chain.id, tolerance_pct=10)
        assert report.tolerance == Decimal("100.000")
        assert [d.type for d in report.discrepancies] == ["conversion_rate"]

    def test_negative_tolerance(self, service, ffb_chain):
        with pytest.raises(ValidationError):
            service.validate_mass_balance(ffb_chain.id, tolerance_pct=-1)

    def test_declared_rate_without_table_entry(self, service, ffb_chain):
        _transform(service, ffb_chain.id, 100, "PKO", 30, conversion_rate="0.3")
        assert service.validate_mass_balance(ffb_chain.id).is_valid

        _transform(service, ffb_chain.id, 100, "PKO", 50, conversion_rate="0.3")
        report = service.validate_mass_balance(ffb_chain.id)
        assert [d.type for d in report.discrepancies] == ["conversion_rate"]
        assert report.discrepancies[0].expected == Decimal("30.000")

    def test_no_expected_yield_no_check(self, service, ffb_chain):
        _transform(service, ffb_chain.id, 100, "PKO", 90)
        assert service.validate_mass_balance(ffb_chain.id).is_valid

    def test_configured_factor_wins(self, config):
        factors = dict(config.yield_factors, **{"FFB:CPO": 0.25})
        svc = CustodyLedgerService(config=CustodyLedgerConfig(yield_factors=factors))
        chain = svc.create_custody_chain({"product_type": "FFB", "total_quantity": 1000})
        _transform(svc, chain.id, 1000, "CPO", 200, conversion_rate="0.2")
        report = svc.validate_mass_balance(chain.id)
        assert report.discrepancies[0].expected == Decimal("250.000")

    def test_report_in_target_unit(self, service, make_chain):
        make_chain("T", quantity=1, unit="t")
        make_chain("KG", quantity=500, unit="kg")
        merged = service.merge_chains({"chain_ids": ["KG", "T"]})
        report = service.validate_mass_balance(merged.id)
        assert report.unit.value == "kg"
        assert report.total_input == Decimal("1500.000")
        assert report.is_valid

    def test_cancelled(self, service, ffb_chain):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelledError):
            service.validate_mass_balance(ffb_chain.id, cancel_token=token)


class TestConservation:
    """Mass is conserved across every operation."""

    def test_mixed_operations_balance(self, service, make_chain):
        make_chain("F1", quantity=1000)
        make_chain("F2", quantity=800)
        f1_parts = service.split_chain("F1", {
            "allocations": [{"share": 2}, {"share": 1}],
        })
        assert sum(c.total_quantity for c in f1_parts) == Decimal("1000.000")

        merged = service.merge_chains({"chain_ids": [f1_parts[1].id, "F2"]})
        _consume(service, merged.id, 33)
        cpo = _transform(service, f1_parts[0].id, 500, "CPO", 100)
        service.transform_chain(f1_parts[0].id, {
            "input_quantity": "166.666",
            "output_product_type": "CPO",
            "output_quantity": "33.333",
        })

        for chain in service.registry.all_chains():
            assert chain.remaining_quantity >= 0
            report = service.validate_mass_balance(chain.id)
            assert report.is_valid, report.discrepancies
            assert report.total_input == Decimal("1800.000")
        assert cpo.related_chain_ids


# ==============================================================================
# Lineage
# ==============================================================================

@pytest.fixture
def lineage(service, make_chain):
    """FFB split in two; one half pressed to CPO, merged with another CPO lot."""
    ffb = make_chain("FFB", quantity=1000)
    halves = service.split_chain("FFB", {
        "allocations": [{"quantity": 600}, {"quantity": 400}],
    })
    pressed = service.transform_chain(halves[0].id, {
        "input_quantity": 600,
        "output_product_type": "CPO",
        "output_quantity": 120,
        "output_chain_id": "CPO-X",
    }).output_chain
    bought = make_chain("CPO-Y", product_type="CPO", quantity=80)
    merged = service.merge_chains({
        "chain_ids": ["CPO-X", "CPO-Y"], "chain_id": "CPO-M",
    })
    return {
        "ffb": ffb, "half0": halves[0], "half1": halves[1],
        "x": pressed, "y": bought, "m": merged,
    }


class TestTraceLineage:
    """Tests for trace_lineage."""

    def test_backward(self, service, lineage):
        trace = service.trace_lineage("CPO-M", "backward")
        depths = {node.id: node.depth for node in trace.nodes}
        assert depths == {
            lineage["m"].id: 0,
            lineage["x"].id: 1,
            lineage["y"].id: 1,
            lineage["half0"].id: 2,
            lineage["ffb"].id: 3,
        }
        assert trace.root == lineage["m"].id
        assert trace.direction is LineageDirection.BACKWARD
        assert trace.depth == 3
        edges = {(e.parent_id, e.child_id) for e in trace.edges}
        assert edges == {
            (lineage["x"].id, lineage["m"].id),
            (lineage["y"].id, lineage["m"].id),
            (lineage["half0"].id, lineage["x"].id),
            (lineage["ffb"].id, lineage["half0"].id),
        }

    def test_forward(self, service, lineage):
        trace = service.trace_lineage("FFB", LineageDirection.FORWARD)
        ids = {node.id for node in trace.nodes}
        assert ids == {
            lineage["ffb"].id, lineage["half0"].id, lineage["half1"].id,
            lineage["x"].id, lineage["m"].id,
        }

    def test_both_excludes_siblings(self, service, lineage):
        trace = service.trace_lineage(lineage["half0"].id, "both")
        ids = {node.id for node in trace.nodes}
        assert ids == {
            lineage["half0"].id, lineage["ffb"].id,
            lineage["x"].id, lineage["m"].id,
        }

    def test_nodes_sorted_by_depth(self, service, lineage):
        trace = service.trace_lineage("CPO-M")
        assert [n.depth for n in trace.nodes] == sorted(n.depth for n in trace.nodes)
        assert trace.nodes[0].chain_id == "CPO-M"

    def test_max_depth_truncates(self, service, lineage):
        trace = service.trace_lineage("CPO-M", "backward", max_depth=1)
        assert {n.chain_id for n in trace.nodes} == {"CPO-M", "CPO-X", "CPO-Y"}
        assert trace.depth == 1

    def test_invalid_direction(self, service, lineage):
        with pytest.raises(ValidationError):
            service.trace_lineage("CPO-M", "sideways")

    def test_negative_max_depth(self, service, lineage):
        with pytest.raises(ValidationError):
            service.trace_lineage("CPO-M", max_depth=-1)

    def test_origin_has_no_ancestors(self, service, lineage):
        trace = service.trace_lineage("CPO-Y", "backward")
        assert [n.chain_id for n in trace.nodes] == ["CPO-Y"]
        assert trace.edges == []
        assert trace.depth == 0


class TestTraversalBounds:
    """GraphTooLargeError on oversized lineage."""

    def _build(self, cfg):
        svc = CustodyLedgerService(config=cfg)
        svc.create_custody_chain({
            "chain_id": "ROOT", "product_type": "FFB", "total_quantity": 100,
        })
        halves = svc.split_chain("ROOT", {
            "allocations": [{"quantity": 50}, {"quantity": 50}],
        })
        svc.split_chain(halves[0].id, {
            "allocations": [{"quantity": 25}, {"quantity": 25}],
        })
        return svc

    def test_node_limit(self, config):
        svc = self._build(CustodyLedgerConfig(max_graph_nodes=3))
        with pytest.raises(GraphTooLargeError) as exc_info:
            svc.trace_lineage("ROOT", "forward")
        assert exc_info.value.context["limit_name"] == "max_graph_nodes"
        with pytest.raises(GraphTooLargeError):
            svc.validate_mass_balance("ROOT")

    def test_depth_limit(self, config):
        svc = self._build(CustodyLedgerConfig(max_traversal_depth=1))
        with pytest.raises(GraphTooLargeError) as exc_info:
            svc.trace_lineage("ROOT", "forward")
        assert exc_info.value.context["limit"] == 1

    def test_truncation_stays_within_bounds(self, config):
        svc = self._build(CustodyLedgerConfig(max_traversal_depth=1))
        trace = svc.trace_lineage("ROOT", "forward", max_depth=1)
        assert len(trace.nodes) == 3

    def test_cancelled_trace(self, service, lineage):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelledError):
            service.trace_lineage("CPO-M", cancel_token=token)
