from typing import Any

import pytest

from option_graph.conditions import equals
from option_graph.models import InputSpec, Node, NodeType, ValueType
from option_graph.rollup import (
    applicable_input_ids,
    format_scaled_int,
    is_selected,
    material_rollup,
    price_preview,
    scaled_int,
)

MATTE_LAMINATED = {"stock": "matte", "laminate": True}


def _active_tree(**meta: Any) -> dict[str, Any]:
    return {
        "schemaVersion": 2,
        "status": "ACTIVE",
        "rootNodeIds": ["g1"],
        "meta": meta,
        "nodes": [
            {"id": "g1", "type": "GROUP", "key": "card", "label": "Card"},
            {
                "id": "o1",
                "type": "INPUT",
                "key": "stock",
                "input": {
                    "selectionKey": "stock",
                    "constraints": {"enum": {"options": [{"value": "matte", "weightOz": 0.25}, {"value": "gloss"}]}},
                },
                "priceComponents": [{"kind": "perUnit", "amount": 0.1}],
                "materialEffects": [{"skuRef": "PAPER", "uom": "sheet", "qty": 0.5}],
                "weightImpact": [{"mode": "addFlat", "oz": 2}, {"mode": "addPerQty", "oz": 0.5}],
            },
            {
                "id": "o2",
                "type": "INPUT",
                "key": "laminate",
                "input": {"selectionKey": "laminate", "valueType": "BOOLEAN"},
                "priceComponents": [{"kind": "flat", "amount": 4}],
                "materialEffects": [
                    {"skuRef": "PAPER", "uom": "sheet", "qty": 1.25},
                    {"skuRef": "FILM", "uom": "sqft", "qty": 0.3333},
                ],
                "weightImpact": [{"mode": "addPerSqft", "oz": 1}],
            },
            {
                "id": "o3",
                "type": "INPUT",
                "status": "DISABLED",
                "key": "foil",
                "input": {"selectionKey": "foil"},
                "materialEffects": [{"skuRef": "FOIL", "uom": "roll", "qty": 1}],
            },
        ],
        "edges": [
            {"id": "e1", "fromNodeId": "g1", "toNodeId": "o1", "status": "DISABLED", "priority": 0},
            {"id": "e2", "fromNodeId": "g1", "toNodeId": "o2", "status": "DISABLED", "priority": 1},
            {"id": "e3", "fromNodeId": "g1", "toNodeId": "o3", "status": "DISABLED", "priority": 2},
            {"id": "c1", "fromNodeId": "o1", "toNodeId": "o2", "status": "ENABLED", "condition": equals("stock", "matte")},
        ],
    }


def test_consumers_refuse_non_active_trees() -> None:
    draft = {**_active_tree(), "status": "DRAFT"}
    with pytest.raises(ValueError, match="ACTIVE trees only"):
        applicable_input_ids(draft, {})
    with pytest.raises(ValueError, match="ACTIVE trees only"):
        material_rollup(draft, {})


def test_applicability_follows_conditions_and_status() -> None:
    tree = _active_tree()
    assert applicable_input_ids(tree, {"stock": "matte"}) == ["o1", "o2"]
    assert applicable_input_ids(tree, {"stock": "gloss"}) == ["o1"]
    assert applicable_input_ids(tree, {}) == ["o1"]


def test_price_preview_lists_components_of_selected_inputs() -> None:
    preview = price_preview(_active_tree(), MATTE_LAMINATED)
    assert preview == [("o1", {"kind": "perUnit", "amount": 0.1}), ("o2", {"kind": "flat", "amount": 4})]


def test_visible_but_unselected_inputs_are_not_priced() -> None:
    tree = _active_tree()
    assert applicable_input_ids(tree, {"stock": "matte", "laminate": False}) == ["o1", "o2"]
    assert price_preview(tree, {"stock": "matte", "laminate": False}) == [("o1", {"kind": "perUnit", "amount": 0.1})]
    assert price_preview(tree, {"stock": "matte"}) == [("o1", {"kind": "perUnit", "amount": 0.1})]
    assert price_preview(tree, {"stock": "  "}) == []
    assert price_preview(tree, {}) == []


def test_declined_checkbox_adds_no_materials_or_weight() -> None:
    rollup = material_rollup(_active_tree(baseWeightOz=1.5), {"stock": "matte", "laminate": False}, quantity=4, area_sqft=3)
    assert [(material.sku_ref, material.qty) for material in rollup.materials] == [("PAPER", "2")]
    # base 1.5*4 + flat 2 + perQty 0.5*4 + matte 0.25*4
    assert rollup.weight_oz == pytest.approx(6 + 2 + 2 + 1)


def test_unanswered_order_weighs_only_the_base() -> None:
    rollup = material_rollup(_active_tree(baseWeightOz=1.5), {}, quantity=4)
    assert rollup.materials == []
    assert rollup.weight_oz == pytest.approx(6)


@pytest.mark.parametrize(
    ("value_type", "value", "expected"),
    [
        (ValueType.BOOLEAN, True, True),
        (ValueType.BOOLEAN, False, False),
        (ValueType.BOOLEAN, "yes", False),
        (ValueType.ENUM, "matte", True),
        (ValueType.ENUM, "   ", False),
        (ValueType.ENUM, 3, False),
        (ValueType.ARRAY, ["a"], True),
        (ValueType.ARRAY, [], False),
        (ValueType.NUMBER, 0, True),
        (ValueType.NUMBER, None, False),
    ],
)
def test_is_selected_by_value_type(value_type: ValueType, value: Any, expected: bool) -> None:
    node = Node(id="n1", type=NodeType.INPUT, input=InputSpec(selection_key="pick", value_type=value_type))
    assert is_selected(node, {"pick": value}) is expected
    assert is_selected(node, {}) is False


def test_material_rollup_scales_by_quantity_and_merges_skus() -> None:
    rollup = material_rollup(_active_tree(), MATTE_LAMINATED, quantity=4)
    by_sku = {(material.sku_ref, material.uom): material for material in rollup.materials}
    assert [(material.sku_ref, material.qty) for material in rollup.materials] == [("FILM", "1.3332"), ("PAPER", "7")]
    assert [(source.source_node_id, source.qty) for source in by_sku[("PAPER", "sheet")].sources] == [
        ("o1", "2"),
        ("o2", "5"),
    ]
    assert ("FOIL", "roll") not in by_sku


def test_weight_rules() -> None:
    tree = _active_tree(baseWeightOz=1.5)
    # base 1.5*4 + flat 2 + perQty 0.5*4 + perSqft 1*3 + matte 0.25*4
    rollup = material_rollup(tree, MATTE_LAMINATED, quantity=4, area_sqft=3)
    assert rollup.weight_oz == pytest.approx(6 + 2 + 2 + 3 + 1)

    gloss = material_rollup(tree, {"stock": "gloss"}, quantity=4, area_sqft=3)
    assert gloss.weight_oz == pytest.approx(6 + 2 + 2)


def test_rollup_rejects_negative_quantity() -> None:
    with pytest.raises(ValueError, match="quantity"):
        material_rollup(_active_tree(), {}, quantity=-1)


def test_zero_quantity_yields_no_materials() -> None:
    rollup = material_rollup(_active_tree(), {"stock": "gloss"}, quantity=0)
    assert rollup.materials == []
    assert rollup.weight_oz == pytest.approx(2)


def test_scaled_int_helpers() -> None:
    assert scaled_int(0.5) == 5_000
    assert scaled_int("1.00005") == 10_001
    assert scaled_int("n/a") == 0
    assert scaled_int(True) == 0
    assert format_scaled_int(70_000) == "7"
    assert format_scaled_int(13_332) == "1.3332"
    assert format_scaled_int(0) == "0"
