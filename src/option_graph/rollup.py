"""Read-only consumers of a published tree: applicability, pricing preview, material rollup.

All of them refuse anything but an ACTIVE tree. Applicability is visibility
only; pricing, materials and weight also need the input to be selected.
"""

from __future__ import annotations

from collections import defaultdict
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping

from pydantic import Field

from . import conditions
from .document import TreeDocument, coerce_tree
from .models import Node, NodeStatus, NodeType, Tree, TreeStatus, ValueType, WireModel
from .patches import choices_of

SCALE = 10_000


class MaterialSource(WireModel):
    source_node_id: str
    effect_index: int
    qty: str


class RolledUpMaterial(WireModel):
    sku_ref: str
    uom: str
    qty: str
    sources: list[MaterialSource] = Field(default_factory=list)


class MaterialRollup(WireModel):
    materials: list[RolledUpMaterial] = Field(default_factory=list)
    weight_oz: float = 0


def _require_active(tree: Tree | Mapping[str, Any]) -> TreeDocument:
    tree = coerce_tree(tree)
    if tree.status != TreeStatus.ACTIVE:
        raise ValueError(f"consumers read ACTIVE trees only; got a {tree.status.value} tree")
    return TreeDocument(tree)


def scaled_int(value: Any, scale: int = SCALE) -> int:
    """Round a number to an integer count of ``1/scale`` units; non-numbers count as zero."""
    if isinstance(value, bool):
        return 0
    try:
        number = Decimal(str(value))
    except ArithmeticError:
        return 0
    if not number.is_finite():
        return 0
    return int((number * scale).to_integral_value(rounding=ROUND_HALF_UP))


def format_scaled_int(value: int, scale: int = SCALE) -> str:
    text = f"{Decimal(value) / Decimal(scale):f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def _enabled_walk(doc: TreeDocument) -> list[str]:
    """Canonical walk that does not descend into DISABLED nodes."""
    order: list[str] = []
    seen: set[str] = set()
    stack = list(reversed(doc.root_groups()))
    while stack:
        node_id = stack.pop()
        node = doc.node(node_id)
        if node_id in seen or node is None or node.status != NodeStatus.ENABLED:
            continue
        seen.add(node_id)
        order.append(node_id)
        stack.extend(reversed(doc.children_of(node_id)))
    return order


def _applicable(doc: TreeDocument, selections: Mapping[str, Any]) -> list[str]:
    applicable: list[str] = []
    for node_id in _enabled_walk(doc):
        if doc.node(node_id).type != NodeType.INPUT:
            continue
        if all(conditions.evaluate(rule, selections) for _, rule in doc.conditions_on(node_id)):
            applicable.append(node_id)
    return applicable


def is_selected(node: Node, selections: Mapping[str, Any]) -> bool:
    """Whether the order answered ``node``: a true BOOLEAN, a non-blank ENUM, a non-empty ARRAY, any NUMBER."""
    if node.type != NodeType.INPUT or not node.selection_key:
        return False
    value = selections.get(node.selection_key)
    if value is None:
        return False
    value_type = node.input.value_type
    if value_type == ValueType.BOOLEAN:
        return value is True
    if value_type == ValueType.ENUM:
        return isinstance(value, str) and bool(value.strip())
    if value_type == ValueType.ARRAY:
        return isinstance(value, list) and bool(value)
    return True


def _selected(doc: TreeDocument, selections: Mapping[str, Any]) -> list[str]:
    return [node_id for node_id in _applicable(doc, selections) if is_selected(doc.node(node_id), selections)]


def applicable_input_ids(tree: Tree | Mapping[str, Any], selections: Mapping[str, Any]) -> list[str]:
    """Enabled INPUT ids whose every live condition holds for ``selections``, in canonical order.

    ``selections`` is keyed by selection key.

    Raises:
        ValueError: If the tree is not ACTIVE or carries a malformed condition.
    """
    return _applicable(_require_active(tree), selections)


def price_preview(tree: Tree | Mapping[str, Any], selections: Mapping[str, Any]) -> list[tuple[str, dict[str, Any]]]:
    """``(node_id, component)`` for every price component on an applicable, selected input."""
    doc = _require_active(tree)
    return [
        (node_id, component)
        for node_id in _selected(doc, selections)
        for component in doc.node(node_id).price_components
    ]


def material_rollup(
    tree: Tree | Mapping[str, Any],
    selections: Mapping[str, Any],
    quantity: float = 1,
    *,
    area_sqft: float = 0,
) -> MaterialRollup:
    """Aggregate materials and weight for one configured line.

    Only applicable inputs that are selected (see ``is_selected``) contribute.
    Material ``qty`` is per unit ordered and is multiplied by ``quantity``;
    totals are summed per ``(skuRef, uom)`` in scaled integers. Weight adds
    ``meta.baseWeightOz`` per unit, ``addFlat`` rules once, ``addPerQty``
    per unit, ``addPerSqft`` per square foot, and the ``weightOz`` of a
    selected choice per unit.
    """
    doc = _require_active(tree)
    if quantity < 0:
        raise ValueError(f"quantity must be >= 0, got: {quantity}")
    scaled_quantity = scaled_int(quantity)

    totals: dict[tuple[str, str], int] = defaultdict(int)
    sources: dict[tuple[str, str], list[MaterialSource]] = defaultdict(list)
    weight = scaled_int(doc.tree.meta.get("baseWeightOz", 0)) * scaled_quantity // SCALE

    for node_id in _selected(doc, selections):
        node = doc.node(node_id)
        for index, effect in enumerate(node.material_effects):
            sku_ref, uom = str(effect.get("skuRef") or ""), str(effect.get("uom") or "")
            if not sku_ref or not uom:
                continue
            amount = scaled_int(effect.get("qty")) * scaled_quantity // SCALE
            if amount == 0:
                continue
            totals[(sku_ref, uom)] += amount
            sources[(sku_ref, uom)].append(
                MaterialSource(source_node_id=node_id, effect_index=index, qty=format_scaled_int(amount))
            )

        for impact in node.weight_impact:
            oz = scaled_int(impact.get("oz", 0))
            mode = impact.get("mode")
            if mode == "addFlat":
                weight += oz
            elif mode == "addPerQty":
                weight += oz * scaled_quantity // SCALE
            elif mode == "addPerSqft":
                weight += oz * scaled_int(area_sqft) // SCALE

        selected = selections.get(node.selection_key)
        for choice in choices_of(node):
            if choice.get("value") == selected and "weightOz" in choice:
                weight += scaled_int(choice["weightOz"]) * scaled_quantity // SCALE

    materials = [
        RolledUpMaterial(
            sku_ref=sku_ref,
            uom=uom,
            qty=format_scaled_int(totals[(sku_ref, uom)]),
            sources=sorted(sources[(sku_ref, uom)], key=lambda source: (source.source_node_id, source.effect_index)),
        )
        for sku_ref, uom in sorted(totals)
    ]
    return MaterialRollup(materials=materials, weight_oz=weight / SCALE)
