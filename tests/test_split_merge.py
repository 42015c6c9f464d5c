# -*- coding: utf-8 -*-
"""Tests for split, merge and transformation of custody chains."""

from decimal import Decimal

import pytest

from custody_ledger.exceptions import (
    EmptySetError,
    InsufficientQuantityError,
    InvalidEventError,
    NotFoundError,
    ProductTypeMismatchError,
    ValidationError,
)
from custody_ledger.models import ChainStatus, EventType, ProductType
from custody_ledger.quantity import UnitOfMeasure


def _ancestors(service, chain):
    seen = set()
    stack = list(chain.parent_chain_ids)
    while stack:
        chain_id = stack.pop()
        if chain_id in seen:
            continue
        seen.add(chain_id)
        stack.extend(service.get_custody_chain(chain_id).parent_chain_ids)
    return seen


def _assert_acyclic(service):
    for chain in service.registry.all_chains():
        assert chain.id not in _ancestors(service, chain)


# ==============================================================================
# Split
# ==============================================================================

class TestSplit:
    """Tests for split_chain."""

    def test_split_by_quantity(self, service, ffb_chain):
        """Splitting 1000 kg into 600 and 400 drains the parent."""
        children = service.split_chain("CHAIN-001", {
            "allocations": [{"quantity": 600}, {"quantity": 400}],
        })
        assert [c.remaining_quantity for c in children] == [
            Decimal("600.000"), Decimal("400.000"),
        ]
        parent = service.get_custody_chain(ffb_chain.id)
        assert parent.status is ChainStatus.SPLIT
        assert parent.remaining_quantity == Decimal("0.000")
        assert parent.child_chain_ids == sorted(c.id for c in children)
        for child in children:
            assert child.parent_chain_ids == [ffb_chain.id]
            assert child.product_type is ProductType.FFB
            assert child.status is ChainStatus.ACTIVE
            assert child.metadata["split_from"] == "CHAIN-001"
        _assert_acyclic(service)

    def test_split_events(self, service, ffb_chain):
        children = service.split_chain(ffb_chain.id, {
            "allocations": [{"quantity": 600}, {"quantity": 400}],
        })
        last = service.get_custody_events(ffb_chain.id)[-1]
        assert last.event_type is EventType.DISAGGREGATION
        assert last.quantity == Decimal("-1000.000")
        assert last.related_chain_ids == sorted(c.id for c in children)
        for child in children:
            creation = service.get_custody_events(child.id)[0]
            assert creation.event_type is EventType.CREATION
            assert creation.quantity == child.total_quantity

    def test_partial_split_keeps_parent_active(self, service, ffb_chain):
        children = service.split_chain(ffb_chain.id, {
            "allocations": [{"quantity": 100}, {"quantity": 200}],
        })
        parent = service.get_custody_chain(ffb_chain.id)
        assert parent.status is ChainStatus.ACTIVE
        assert parent.remaining_quantity == Decimal("700.000")
        assert sum(c.total_quantity for c in children) == Decimal("300.000")

    def test_split_by_share_is_exact(self, service, ffb_chain):
        children = service.split_chain(ffb_chain.id, {
            "allocations": [{"share": 1}, {"share": 1}, {"share": 1}],
        })
        assert [c.total_quantity for c in children] == [
            Decimal("333.333"), Decimal("333.333"), Decimal("333.334"),
        ]
        assert service.get_custody_chain(ffb_chain.id).status is ChainStatus.SPLIT

    def test_split_share_of_amount(self, service, ffb_chain):
        children = service.split_chain(ffb_chain.id, {
            "allocations": [{"share": 3}, {"share": 2}],
            "amount": 500,
        })
        assert [c.total_quantity for c in children] == [
            Decimal("300.000"), Decimal("200.000"),
        ]
        assert service.get_custody_chain(ffb_chain.id).remaining_quantity == Decimal(
            "500.000"
        )

    def test_allocation_overrides(self, service, ffb_chain):
        children = service.split_chain(ffb_chain.id, {
            "allocations": [
                {"quantity": 500, "destination_facility_ref": "MILL-2",
                 "quality_grade": "A"},
                {"quantity": 500},
            ],
        })
        assert children[0].destination_facility_ref == "MILL-2"
        assert children[0].quality_grade == "A"
        assert children[1].source_plot_ref == "PLOT-1"

    def test_split_exceeding_remaining(self, service, make_chain):
        """Splitting 700 kg from 500 kg fails and changes nothing."""
        chain = make_chain("CHAIN-500", quantity=500)
        chains_before = service.registry.chain_count
        events_before = service.event_store.event_count

        with pytest.raises(InsufficientQuantityError) as exc_info:
            service.split_chain(chain.id, {"allocations": [{"quantity": 700}]})

        assert exc_info.value.context["requested"] == "700.000"
        assert exc_info.value.context["available"] == "500.000"
        assert service.registry.chain_count == chains_before
        assert service.event_store.event_count == events_before
        after = service.get_custody_chain(chain.id)
        assert after.remaining_quantity == Decimal("500.000")
        assert after.status is ChainStatus.ACTIVE

    def test_share_amount_exceeding_remaining(self, service, ffb_chain):
        with pytest.raises(InsufficientQuantityError):
            service.split_chain(ffb_chain.id, {
                "allocations": [{"share": 1}], "amount": 1001,
            })

    def test_mixed_allocations(self, service, ffb_chain):
        with pytest.raises(ValidationError):
            service.split_chain(ffb_chain.id, {
                "allocations": [{"quantity": 100}, {"share": 1}],
            })

    @pytest.mark.parametrize("allocation", [
        {}, {"quantity": 0}, {"quantity": 1, "share": 1}, {"share": -1},
    ])
    def test_invalid_allocation(self, service, ffb_chain, allocation):
        with pytest.raises(ValidationError):
            service.split_chain(ffb_chain.id, {"allocations": [allocation]})

    def test_empty_allocations(self, service, ffb_chain):
        with pytest.raises(ValidationError):
            service.split_chain(ffb_chain.id, {"allocations": []})

    def test_share_resolving_to_zero(self, service, make_chain):
        chain = make_chain("TINY", quantity="0.002")
        with pytest.raises(ValidationError):
            service.split_chain(chain.id, {
                "allocations": [{"share": 1}, {"share": 1}, {"share": 1}],
            })

    def test_sub_scale_quantities_sum_exactly(self, service, ffb_chain):
        """Quantities finer than the ledger scale still drain exactly 1000 kg."""
        children = service.split_chain(ffb_chain.id, {
            "allocations": [{"quantity": "333.3335"}, {"quantity": "666.6665"}],
        })
        assert [c.total_quantity for c in children] == [
            Decimal("333.333"), Decimal("666.667"),
        ]
        assert sum(c.total_quantity for c in children) == Decimal("1000.000")
        parent = service.get_custody_chain(ffb_chain.id)
        assert parent.remaining_quantity == Decimal("0.000")
        assert parent.status is ChainStatus.SPLIT

    def test_sub_scale_quantity_resolving_to_zero(self, service, ffb_chain):
        events_before = service.event_store.event_count
        with pytest.raises(ValidationError):
            service.split_chain(ffb_chain.id, {
                "allocations": [{"quantity": "0.0005"}, {"quantity": "0.0005"}],
            })
        assert service.event_store.event_count == events_before
        assert service.get_custody_chain(ffb_chain.id).remaining_quantity == Decimal(
            "1000.000"
        )

    def test_split_closed_chain(self, service, ffb_chain):
        service.close_chain(ffb_chain.id)
        with pytest.raises(InvalidEventError):
            service.split_chain(ffb_chain.id, {"allocations": [{"quantity": 1}]})

    def test_split_child_again(self, service, ffb_chain):
        children = service.split_chain(ffb_chain.id, {
            "allocations": [{"quantity": 600}, {"quantity": 400}],
        })
        grandchildren = service.split_chain(children[0].id, {
            "allocations": [{"quantity": 300}, {"quantity": 300}],
        })
        assert _ancestors(service, grandchildren[0]) == {ffb_chain.id, children[0].id}
        _assert_acyclic(service)


# ==============================================================================
# Merge
# ==============================================================================

class TestMerge:
    """Tests for merge_chains."""

    def test_merge(self, service, make_chain):
        first = make_chain("CPO-A", product_type="CPO", quantity=300, quality_grade="A")
        second = make_chain("CPO-B", product_type="CPO", quantity=200, quality_grade="A")

        merged = service.merge_chains({
            "chain_ids": ["CPO-A", "CPO-B"],
            "destination_facility_ref": "REFINERY-1",
            "chain_id": "CPO-AB",
        })
        assert merged.chain_id == "CPO-AB"
        assert merged.total_quantity == Decimal("500.000")
        assert merged.remaining_quantity == Decimal("500.000")
        assert merged.product_type is ProductType.CPO
        assert merged.quality_grade == "A"
        assert merged.parent_chain_ids == sorted([first.id, second.id])

        for source in (first, second):
            after = service.get_custody_chain(source.id)
            assert after.status is ChainStatus.MERGED
            assert after.remaining_quantity == Decimal("0.000")
            assert after.child_chain_ids == [merged.id]
        _assert_acyclic(service)

    def test_merge_partially_consumed_sources(self, service, make_chain):
        make_chain("A", quantity=300)
        make_chain("B", quantity=200)
        service.record_custody_event({
            "chain_id": "A",
            "event_type": "processing",
            "business_step": "processing",
            "quantity": -50,
        })
        merged = service.merge_chains({"chain_ids": ["A", "B"]})
        assert merged.total_quantity == Decimal("450.000")

    def test_remerging_split_children_adds_fresh_node(self, service, ffb_chain):
        children = service.split_chain(ffb_chain.id, {
            "allocations": [{"quantity": 600}, {"quantity": 400}],
        })
        merged = service.merge_chains({"chain_ids": [c.id for c in children]})
        assert merged.id not in {ffb_chain.id} | {c.id for c in children}
        assert _ancestors(service, merged) == {ffb_chain.id} | {
            c.id for c in children
        }
        assert merged.total_quantity == Decimal("1000.000")
        _assert_acyclic(service)

    def test_merge_converts_to_first_unit(self, service, make_chain):
        make_chain("T", quantity=1, unit="t")
        make_chain("KG", quantity=500, unit="kg")
        merged = service.merge_chains({"chain_ids": ["T", "KG"]})
        assert merged.unit is UnitOfMeasure.TONNE
        assert merged.total_quantity == Decimal("1.500")

    def test_fewer_than_two(self, service, ffb_chain):
        with pytest.raises(EmptySetError):
            service.merge_chains({"chain_ids": [ffb_chain.id]})
        with pytest.raises(EmptySetError):
            service.merge_chains({"chain_ids": []})

    def test_duplicate_sources(self, service, ffb_chain):
        with pytest.raises(ValidationError):
            service.merge_chains({"chain_ids": [ffb_chain.id, "CHAIN-001"]})

    def test_unknown_source(self, service, ffb_chain):
        with pytest.raises(NotFoundError):
            service.merge_chains({"chain_ids": [ffb_chain.id, "NOPE"]})

    def test_product_type_mismatch(self, service, make_chain):
        make_chain("F", product_type="FFB", quantity=10)
        make_chain("C", product_type="CPO", quantity=10)
        events_before = service.event_store.event_count
        with pytest.raises(ProductTypeMismatchError):
            service.merge_chains({"chain_ids": ["F", "C"]})
        assert service.event_store.event_count == events_before
        assert service.get_custody_chain("F").status is ChainStatus.ACTIVE

    def test_terminal_source(self, service, make_chain):
        make_chain("A", quantity=10)
        make_chain("B", quantity=10)
        service.close_chain("B")
        with pytest.raises(InvalidEventError):
            service.merge_chains({"chain_ids": ["A", "B"]})

    def test_duplicate_merged_code_rolls_back(self, service, make_chain):
        make_chain("A", quantity=10)
        make_chain("B", quantity=10)
        chains_before = service.registry.chain_count
        events_before = service.event_store.event_count
        with pytest.raises(ValidationError):
            service.merge_chains({"chain_ids": ["A", "B"], "chain_id": "A"})
        assert service.registry.chain_count == chains_before
        assert service.event_store.event_count == events_before
        assert service.get_custody_chain("A").remaining_quantity == Decimal("10.000")
        assert service.get_custody_chain("A").status is ChainStatus.ACTIVE


# ==============================================================================
# Transform
# ==============================================================================

class TestTransform:
    """Tests for transform_chain."""

    def test_partial_transformation(self, service, ffb_chain):
        result = service.transform_chain(ffb_chain.id, {
            "input_quantity": 500,
            "output_product_type": "CPO",
            "output_quantity": 100,
            "output_chain_id": "CPO-001",
            "facility_ref": "MILL-1",
        })
        assert result.source_chain.remaining_quantity == Decimal("500.000")
        assert result.source_chain.status is ChainStatus.ACTIVE
        assert result.output_chain.chain_id == "CPO-001"
        assert result.output_chain.remaining_quantity == Decimal("100.000")
        assert result.output_chain.parent_chain_ids == [ffb_chain.id]
        assert result.waste_quantity == Decimal("400.000")
        assert result.event.event_type is EventType.TRANSFORMATION
        assert result.event.quantity == Decimal("-500.000")

    def test_same_product_type(self, service, ffb_chain):
        with pytest.raises(ValidationError):
            service.transform_chain(ffb_chain.id, {
                "input_quantity": 100,
                "output_product_type": "FFB",
                "output_quantity": 100,
            })

    def test_input_exceeds_remaining(self, service, ffb_chain):
        with pytest.raises(InsufficientQuantityError):
            service.transform_chain(ffb_chain.id, {
                "input_quantity": 1200,
                "output_product_type": "CPO",
                "output_quantity": 240,
            })
        assert service.registry.chain_count == 1

    def test_inactive_disposition_closes_source(self, service, ffb_chain):
        result = service.transform_chain(ffb_chain.id, {
            "input_quantity": 100,
            "output_product_type": "CPO",
            "output_quantity": 20,
            "disposition": "inactive",
        })
        assert result.source_chain.status is ChainStatus.CLOSED
