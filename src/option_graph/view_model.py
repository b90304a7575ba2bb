"""View-Model Adapter between the tree document and the option editor.

``project_tree`` is a one-way, read-only projection. ``apply_editor_model``
goes the other way by diffing an edited projection and replaying the
differences through the Patch Builder; the projection itself is never
written back.
"""

from __future__ import annotations

from typing import Any, Literal, Mapping

from pydantic import Field

from . import patches
from .document import TreeDocument, coerce_tree
from .models import EdgeStatus, Node, NodeType, Tree, ValueType, WireModel

OptionType = Literal["radio", "checkbox", "dropdown", "numeric", "dimension"]

_VALUE_TYPE_TO_OPTION_TYPE: dict[ValueType, OptionType] = {
    ValueType.NUMBER: "numeric",
    ValueType.BOOLEAN: "checkbox",
}


class EditorOptionGroup(WireModel):
    id: str
    name: str
    description: str = ""
    sort_order: int = 0
    is_required: bool = False
    is_multi_select: bool = False
    option_ids: list[str] = Field(default_factory=list)


class EditorOption(WireModel):
    id: str
    name: str
    description: str = ""
    type: OptionType = "radio"
    sort_order: int = 0
    is_default: bool = False
    is_required: bool = False
    selection_key: str = ""
    has_pricing: bool = False
    has_production_flags: bool = False
    has_conditionals: bool = False
    has_weight: bool = False


class ProductMeta(WireModel):
    name: str = "Untitled Product"
    category: str = "General"
    sku: str = ""
    status: str = "draft"
    fulfillment: str = "pickup-only"
    base_price: float = 0


class EditorTags(WireModel):
    group_pricing: frozenset[str] = frozenset()
    group_production: frozenset[str] = frozenset()
    group_conditionals: frozenset[str] = frozenset()


class EditorModel(WireModel):
    product_meta: ProductMeta = Field(default_factory=ProductMeta)
    groups: list[EditorOptionGroup] = Field(default_factory=list)
    options: dict[str, EditorOption] = Field(default_factory=dict)
    tags: EditorTags = Field(default_factory=EditorTags)


def _product_meta(tree: Tree) -> ProductMeta:
    meta = tree.meta
    base_price = meta.get("basePrice", 0)
    return ProductMeta(
        name=meta.get("productName") or meta.get("name") or "Untitled Product",
        category=meta.get("category") or "General",
        sku=meta.get("sku") or "",
        status=tree.status.value.lower(),
        fulfillment=meta.get("fulfillment") or "pickup-only",
        base_price=base_price if isinstance(base_price, (int, float)) and not isinstance(base_price, bool) else 0,
    )


def _group_order(doc: TreeDocument) -> list[str]:
    """Groups in canonical walk order, then any unreachable live groups by id."""
    ordered = [node_id for node_id in doc.walk() if doc.is_group(node_id)]
    stragglers = sorted(
        node.id
        for node in doc.tree.nodes.values()
        if node.type == NodeType.GROUP and not node.is_deleted and node.id not in ordered
    )
    return [*ordered, *stragglers]


def _option_ids(doc: TreeDocument, group_id: str) -> list[str]:
    return [child_id for child_id in doc.children_of(group_id) if doc.node(child_id).type == NodeType.INPUT]


def _project_option(doc: TreeDocument, node: Node, sort_order: int) -> EditorOption:
    spec = node.input
    value_type = spec.value_type if spec else ValueType.ENUM
    has_conditionals = any(
        edge.status == EdgeStatus.ENABLED and edge.condition is not None for edge in doc.edges_from(node.id)
    )
    return EditorOption(
        id=node.id,
        name=node.label or node.selection_key or node.key or node.id,
        description=node.description,
        type=_VALUE_TYPE_TO_OPTION_TYPE.get(value_type, "radio"),
        sort_order=sort_order,
        is_default=spec is not None and spec.default_value is not None,
        is_required=bool(spec and spec.required),
        selection_key=node.selection_key or node.key or node.id,
        has_pricing=bool(node.price_components),
        has_production_flags=bool(node.material_effects),
        has_conditionals=has_conditionals,
        has_weight=bool(node.weight_impact),
    )


def project_tree(tree: Tree | Mapping[str, Any] | Any) -> EditorModel:
    """Project a tree (or raw wire JSON in any accepted legacy shape) into the editor model."""
    doc = TreeDocument(coerce_tree(tree))
    groups: list[EditorOptionGroup] = []
    options: dict[str, EditorOption] = {}
    pricing: set[str] = set()
    production: set[str] = set()
    conditionals: set[str] = set()

    for sort_order, group_id in enumerate(_group_order(doc)):
        node = doc.node(group_id)
        option_ids = _option_ids(doc, group_id)
        groups.append(
            EditorOptionGroup(
                id=group_id,
                name=node.label,
                description=node.description,
                sort_order=sort_order,
                is_required=bool(node.input and node.input.required),
                is_multi_select=bool(node.input and node.input.value_type == ValueType.ARRAY),
                option_ids=option_ids,
            )
        )
        for position, option_id in enumerate(option_ids):
            option = options.get(option_id) or _project_option(doc, doc.node(option_id), position)
            options[option_id] = option
            if option.has_pricing:
                pricing.add(group_id)
            if option.has_production_flags:
                production.add(group_id)
            if option.has_conditionals:
                conditionals.add(group_id)

    return EditorModel(
        product_meta=_product_meta(doc.tree),
        groups=groups,
        options=options,
        tags=EditorTags(
            group_pricing=frozenset(pricing),
            group_production=frozenset(production),
            group_conditionals=frozenset(conditionals),
        ),
    )


def apply_editor_model(tree: Tree | Mapping[str, Any], edited: EditorModel | Mapping[str, Any]) -> Tree:
    """Translate edits made on a projection back into patches against ``tree``.

    Group and option fields map to ``update_group``/``update_option``; a
    permuted ``optionIds`` list maps to ``reorder_options`` moves. Ids the
    tree does not know are ignored. An unchanged model returns ``tree``
    itself.
    """
    tree = coerce_tree(tree)
    if not isinstance(edited, EditorModel):
        edited = EditorModel.model_validate(edited)
    current = project_tree(tree)
    current_groups = {group.id: group for group in current.groups}
    result = tree

    for group in edited.groups:
        before = current_groups.get(group.id)
        if before is None:
            continue
        changes: dict[str, Any] = {}
        if group.name != before.name:
            changes["label"] = group.name
        if group.description != before.description:
            changes["description"] = group.description
        if group.is_required != before.is_required:
            changes["required"] = group.is_required
        if group.is_multi_select != before.is_multi_select:
            changes["is_multi_select"] = group.is_multi_select
        if changes:
            result = patches.update_group(result, group.id, **changes).tree
        result = _reorder(result, group.id, before.option_ids, group.option_ids)

    for option_id, option in edited.options.items():
        before = current.options.get(option_id)
        if before is None:
            continue
        changes = {}
        if option.name != before.name:
            changes["label"] = option.name
        if option.description != before.description:
            changes["description"] = option.description
        if option.type != before.type:
            changes["option_type"] = option.type
        if option.is_required != before.is_required:
            changes["required"] = option.is_required
        if changes:
            result = patches.update_option(result, option_id, **changes).tree
    return result


def _reorder(tree: Tree, group_id: str, before: list[str], after: list[str]) -> Tree:
    if before == after or sorted(before) != sorted(after) or len(set(before)) != len(before):
        return tree
    edge_children = [edge.to_node_id for edge in TreeDocument(tree).child_edges(group_id)]
    if edge_children != before:
        # Nested groups or repeated edges share the priority sequence; leave ordering alone.
        return tree
    order = list(before)
    for target_index, option_id in enumerate(after):
        source_index = order.index(option_id)
        if source_index != target_index:
            tree = patches.reorder_options(tree, group_id, source_index, target_index).tree
            order.insert(target_index, order.pop(source_index))
    return tree
