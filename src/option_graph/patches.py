"""Patch Builder: pure edits that return a new tree and never touch their input.

Every function takes a tree plus an edit intent and returns a
:class:`PatchResult`. Unknown or inapplicable ids are no-ops that hand back
the input tree object itself, so patches compose and are safe to retry.
Nodes and edges that an edit does not touch are carried over by reference.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping

from .conditions import describe_malformed
from .document import TreeDocument, coerce_tree
from .ids import DEFAULT_RANDOM_ATTEMPTS, IdAllocator
from .models import Edge, EdgeStatus, InputSpec, Node, NodeStatus, NodeType, Tree, ValueType
from .utils import derive_machine_key

WEIGHT_IMPACT_MODES = frozenset({"addFlat", "addPerQty", "addPerSqft"})

_OPTION_TYPE_TO_VALUE_TYPE = {
    "numeric": ValueType.NUMBER,
    "checkbox": ValueType.BOOLEAN,
}


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


@dataclass(frozen=True)
class PatchResult:
    tree: Tree
    new_id: str | None = None
    error: str | None = None


def _given(value: Any) -> bool:
    return value is not UNSET


# ----------------------------------------------------------------------
# Internal helpers
# ----------------------------------------------------------------------


def _with_nodes(tree: Tree, replacements: Mapping[str, Node], **update: Any) -> Tree:
    nodes = dict(tree.nodes)
    nodes.update(replacements)
    return tree.model_copy(update={"nodes": nodes, **update})


def _replace_node(tree: Tree, node: Node, updated: Node) -> PatchResult:
    if updated == node:
        return PatchResult(tree)
    return PatchResult(_with_nodes(tree, {node.id: updated}))


def _map_edges(tree: Tree, transform: Callable[[Edge], Edge]) -> list[Edge] | None:
    """Apply ``transform`` to every edge; None when nothing changed."""
    changed = False
    edges: list[Edge] = []
    for edge in tree.edges:
        new_edge = transform(edge)
        changed = changed or new_edge is not edge
        edges.append(new_edge)
    return edges if changed else None


def _soft_delete(edge: Edge) -> Edge:
    if edge.is_deleted:
        return edge
    return edge.model_copy(update={"status": EdgeStatus.DELETED})


def _live_node(tree: Tree, node_id: str, node_type: NodeType | None = None) -> Node | None:
    node = tree.nodes.get(node_id)
    if node is None or node.is_deleted:
        return None
    if node_type is not None and node.type != node_type:
        return None
    return node


def _taken_keys(tree: Tree) -> set[str]:
    taken: set[str] = set()
    for node in tree.nodes.values():
        if node.key:
            taken.add(node.key)
        if node.selection_key:
            taken.add(node.selection_key)
    return taken


def _allocator(tree: Tree, rng: random.Random | None, attempts: int) -> IdAllocator:
    return IdAllocator(tree.all_ids(), rng=rng, attempts=attempts)


# ----------------------------------------------------------------------
# Groups
# ----------------------------------------------------------------------


def add_group(
    tree: Tree,
    *,
    label: str = "New Group",
    rng: random.Random | None = None,
    attempts: int = DEFAULT_RANDOM_ATTEMPTS,
) -> PatchResult:
    """Append an enabled GROUP and list it as a root."""
    tree = coerce_tree(tree)
    group_id = _allocator(tree, rng, attempts).allocate("group_")
    node = Node(
        id=group_id,
        type=NodeType.GROUP,
        status=NodeStatus.ENABLED,
        key=derive_machine_key(group_id, _taken_keys(tree)),
        label=label,
        input=InputSpec(value_type=ValueType.ENUM, required=False),
    )
    updated = _with_nodes(tree, {group_id: node}, root_node_ids=[*tree.root_node_ids, group_id])
    return PatchResult(updated, new_id=group_id)


def update_group(
    tree: Tree,
    group_id: str,
    *,
    label: str = UNSET,
    description: str = UNSET,
    required: bool = UNSET,
    is_multi_select: bool = UNSET,
) -> PatchResult:
    """Replace only the supplied fields; ``is_multi_select`` switches ``valueType`` between ENUM and ARRAY."""
    tree = coerce_tree(tree)
    node = _live_node(tree, group_id, NodeType.GROUP)
    if node is None:
        return PatchResult(tree)

    fields: dict[str, Any] = {}
    if _given(label):
        fields["label"] = label
    if _given(description):
        fields["description"] = description
    input_fields: dict[str, Any] = {}
    if _given(required):
        input_fields["required"] = bool(required)
    if _given(is_multi_select):
        input_fields["value_type"] = ValueType.ARRAY if is_multi_select else ValueType.ENUM
    if input_fields:
        fields["input"] = (node.input or InputSpec()).model_copy(update=input_fields)
    return _replace_node(tree, node, node.model_copy(update=fields))


def delete_group(tree: Tree, group_id: str) -> PatchResult:
    """Soft-delete a group, every structural descendant, and every edge touching any of them.

    Deleting a group that is already DELETED changes nothing.
    """
    tree = coerce_tree(tree)
    if _live_node(tree, group_id, NodeType.GROUP) is None:
        return PatchResult(tree)

    doomed = {group_id, *TreeDocument(tree).descendants_of(group_id)}
    replacements = {
        node_id: tree.nodes[node_id].model_copy(update={"status": NodeStatus.DELETED})
        for node_id in doomed
        if not tree.nodes[node_id].is_deleted
    }
    edges = _map_edges(
        tree,
        lambda edge: _soft_delete(edge) if edge.from_node_id in doomed or edge.to_node_id in doomed else edge,
    )
    roots = [root_id for root_id in tree.root_node_ids if root_id != group_id]
    update: dict[str, Any] = {"root_node_ids": roots}
    if edges is not None:
        update["edges"] = edges
    return PatchResult(_with_nodes(tree, replacements, **update))


# ----------------------------------------------------------------------
# Options
# ----------------------------------------------------------------------


def add_option(
    tree: Tree,
    group_id: str,
    *,
    label: str = "New Option",
    rng: random.Random | None = None,
    attempts: int = DEFAULT_RANDOM_ATTEMPTS,
) -> PatchResult:
    """Create an ENUM INPUT under ``group_id`` joined by a structural edge at priority 0.

    The option's key and selection key are derived from its new id, so it
    satisfies the selection-key invariant from the moment it exists.
    """
    tree = coerce_tree(tree)
    if _live_node(tree, group_id, NodeType.GROUP) is None:
        return PatchResult(tree)

    allocator = _allocator(tree, rng, attempts)
    option_id = allocator.allocate("opt_")
    edge_id = allocator.allocate("edge_")
    machine_key = derive_machine_key(option_id, _taken_keys(tree))
    node = Node(
        id=option_id,
        type=NodeType.INPUT,
        status=NodeStatus.ENABLED,
        key=machine_key,
        label=label,
        input=InputSpec(selection_key=machine_key, value_type=ValueType.ENUM, required=False),
    )
    edge = Edge.structural(edge_id, group_id, option_id, priority=0)
    updated = _with_nodes(tree, {option_id: node}, edges=[*tree.edges, edge])
    return PatchResult(updated, new_id=option_id)


def update_option(
    tree: Tree,
    option_id: str,
    *,
    label: str = UNSET,
    description: str = UNSET,
    option_type: str = UNSET,
    required: bool = UNSET,
    default_value: Any = UNSET,
    constraints: dict[str, Any] | None = UNSET,
) -> PatchResult:
    """Replace only the supplied fields of an INPUT.

    ``option_type`` is the editor's name for the input kind: ``numeric`` maps
    to NUMBER, ``checkbox`` to BOOLEAN and anything else to ENUM. Passing
    ``default_value=None`` clears the default.
    """
    tree = coerce_tree(tree)
    node = _live_node(tree, option_id, NodeType.INPUT)
    if node is None:
        return PatchResult(tree)

    fields: dict[str, Any] = {}
    if _given(label):
        fields["label"] = label
    if _given(description):
        fields["description"] = description
    input_fields: dict[str, Any] = {}
    if _given(option_type):
        input_fields["value_type"] = _OPTION_TYPE_TO_VALUE_TYPE.get(option_type, ValueType.ENUM)
    if _given(required):
        input_fields["required"] = bool(required)
    if _given(default_value):
        input_fields["default_value"] = default_value
    if _given(constraints):
        input_fields["constraints"] = constraints
    if input_fields:
        fields["input"] = (node.input or InputSpec(selection_key=node.key or node.id)).model_copy(update=input_fields)
    return _replace_node(tree, node, node.model_copy(update=fields))


def delete_option(tree: Tree, option_id: str) -> PatchResult:
    """Soft-delete an INPUT and every edge where it is either endpoint."""
    tree = coerce_tree(tree)
    node = _live_node(tree, option_id, NodeType.INPUT)
    if node is None:
        return PatchResult(tree)

    deleted = node.model_copy(update={"status": NodeStatus.DELETED})
    edges = _map_edges(
        tree,
        lambda edge: _soft_delete(edge) if option_id in (edge.from_node_id, edge.to_node_id) else edge,
    )
    update = {"edges": edges} if edges is not None else {}
    return PatchResult(_with_nodes(tree, {option_id: deleted}, **update))


def duplicate_option(
    tree: Tree,
    group_id: str,
    option_id: str,
    *,
    rng: random.Random | None = None,
    attempts: int = DEFAULT_RANDOM_ATTEMPTS,
) -> PatchResult:
    """Deep-copy an option into ``group_id`` with a fresh id, key and selection key."""
    tree = coerce_tree(tree)
    source = _live_node(tree, option_id, NodeType.INPUT)
    if source is None or _live_node(tree, group_id, NodeType.GROUP) is None:
        return PatchResult(tree)

    allocator = _allocator(tree, rng, attempts)
    new_id = allocator.allocate("opt_")
    edge_id = allocator.allocate("edge_")
    machine_key = derive_machine_key(new_id, _taken_keys(tree))
    copied_input = (source.input or InputSpec()).model_copy(deep=True, update={"selection_key": machine_key})
    copy = source.model_copy(
        deep=True,
        update={
            "id": new_id,
            "key": machine_key,
            "label": f"{source.label} (Copy)" if source.label else "New Option (Copy)",
            "input": copied_input,
        },
    )
    edge = Edge.structural(edge_id, group_id, new_id, priority=0)
    return PatchResult(_with_nodes(tree, {new_id: copy}, edges=[*tree.edges, edge]), new_id=new_id)


def move_option(tree: Tree, from_group_id: str, to_group_id: str, option_id: str) -> PatchResult:
    """Re-parent the structural edge joining ``from_group_id`` to ``option_id``."""
    tree = coerce_tree(tree)
    if from_group_id == to_group_id or _live_node(tree, to_group_id, NodeType.GROUP) is None:
        return PatchResult(tree)

    def reparent(edge: Edge) -> Edge:
        if edge.is_deleted or edge.from_node_id != from_group_id or edge.to_node_id != option_id:
            return edge
        return Edge.structural(edge.id, to_group_id, option_id, priority=edge.priority)

    edges = _map_edges(tree, reparent)
    if edges is None:
        return PatchResult(tree)
    return PatchResult(tree.model_copy(update={"edges": edges}))


def reorder_options(tree: Tree, group_id: str, from_index: int, to_index: int) -> PatchResult:
    """Move one child of ``group_id`` and renumber the live child edges' priorities to their positions."""
    tree = coerce_tree(tree)
    if _live_node(tree, group_id, NodeType.GROUP) is None:
        return PatchResult(tree)
    child_edges = TreeDocument(tree).child_edges(group_id)
    if not (0 <= from_index < len(child_edges) and 0 <= to_index < len(child_edges)):
        return PatchResult(tree)

    reordered = list(child_edges)
    reordered.insert(to_index, reordered.pop(from_index))
    positions = {edge.id: index for index, edge in enumerate(reordered)}

    def renumber(edge: Edge) -> Edge:
        position = positions.get(edge.id)
        if position is None or edge.is_deleted or edge.from_node_id != group_id or edge.priority == position:
            return edge
        return edge.model_copy(update={"priority": position})

    edges = _map_edges(tree, renumber)
    if edges is None:
        return PatchResult(tree)
    return PatchResult(tree.model_copy(update={"edges": edges}))


# ----------------------------------------------------------------------
# Choices (input.constraints.enum.options)
# ----------------------------------------------------------------------


def choices_of(node: Node) -> list[dict[str, Any]]:
    constraints = node.input.constraints if node.input else None
    enum = (constraints or {}).get("enum")
    options = enum.get("options") if isinstance(enum, Mapping) else None
    return [dict(choice) for choice in options if isinstance(choice, Mapping)] if isinstance(options, list) else []


def _with_choices(node: Node, choices: list[dict[str, Any]], **input_update: Any) -> Node:
    spec = node.input or InputSpec(selection_key=node.key or node.id)
    constraints = dict(spec.constraints or {})
    enum = dict(constraints.get("enum") or {})
    enum["options"] = choices
    constraints["enum"] = enum
    return node.model_copy(update={"input": spec.model_copy(update={"constraints": constraints, **input_update})})


def add_choice(tree: Tree, option_id: str) -> PatchResult:
    """Append a blank choice whose value is the first free ``choice_N``."""
    tree = coerce_tree(tree)
    node = _live_node(tree, option_id, NodeType.INPUT)
    if node is None:
        return PatchResult(tree)

    choices = choices_of(node)
    values = {choice.get("value") for choice in choices}
    counter = len(choices) + 1
    while f"choice_{counter}" in values:
        counter += 1
    value = f"choice_{counter}"
    choices.append({"value": value, "label": "", "sortOrder": len(choices)})
    return PatchResult(_with_nodes(tree, {option_id: _with_choices(node, choices)}), new_id=value)


def update_choice(
    tree: Tree,
    option_id: str,
    value: str,
    *,
    new_value: str = UNSET,
    label: str = UNSET,
    description: str = UNSET,
    weight_oz: float | None = UNSET,
) -> PatchResult:
    """Edit one choice; renaming onto an existing value is refused and reported in ``error``."""
    tree = coerce_tree(tree)
    node = _live_node(tree, option_id, NodeType.INPUT)
    if node is None:
        return PatchResult(tree)
    choices = choices_of(node)
    if not any(choice.get("value") == value for choice in choices):
        return PatchResult(tree)
    renaming = _given(new_value) and new_value != value
    if renaming and any(choice.get("value") == new_value for choice in choices):
        return PatchResult(tree, error="Choice value must be unique")

    updated_choices: list[dict[str, Any]] = []
    for choice in choices:
        if choice.get("value") == value:
            if renaming:
                choice["value"] = new_value
            if _given(label):
                choice["label"] = label
            if _given(description):
                choice["description"] = description
            if _given(weight_oz):
                if weight_oz is not None and weight_oz >= 0:
                    choice["weightOz"] = weight_oz
                else:
                    choice.pop("weightOz", None)
        updated_choices.append(choice)

    input_update: dict[str, Any] = {}
    if renaming and node.input is not None and node.input.default_value == value:
        input_update["default_value"] = new_value
    return _replace_node(tree, node, _with_choices(node, updated_choices, **input_update))


def delete_choice(tree: Tree, option_id: str, value: str) -> PatchResult:
    """Remove a choice, clearing the default when it pointed at it."""
    tree = coerce_tree(tree)
    node = _live_node(tree, option_id, NodeType.INPUT)
    if node is None:
        return PatchResult(tree)
    choices = choices_of(node)
    remaining = [choice for choice in choices if choice.get("value") != value]
    if len(remaining) == len(choices):
        return PatchResult(tree)
    input_update: dict[str, Any] = {}
    if node.input is not None and node.input.default_value == value:
        input_update["default_value"] = None
    return PatchResult(_with_nodes(tree, {option_id: _with_choices(node, remaining, **input_update)}))


def reorder_choices(tree: Tree, option_id: str, from_index: int, to_index: int) -> PatchResult:
    tree = coerce_tree(tree)
    node = _live_node(tree, option_id, NodeType.INPUT)
    if node is None:
        return PatchResult(tree)
    choices = choices_of(node)
    if not (0 <= from_index < len(choices) and 0 <= to_index < len(choices)):
        return PatchResult(tree)
    choices.insert(to_index, choices.pop(from_index))
    for index, choice in enumerate(choices):
        choice["sortOrder"] = index
    return _replace_node(tree, node, _with_choices(node, choices))


# ----------------------------------------------------------------------
# Conditional edges
# ----------------------------------------------------------------------


def add_condition(
    tree: Tree,
    source_id: str,
    target_id: str,
    condition: dict[str, Any],
    *,
    priority: int = 0,
    rng: random.Random | None = None,
    attempts: int = DEFAULT_RANDOM_ATTEMPTS,
) -> PatchResult:
    """Gate ``target_id`` on a rule over selections, read when ``source_id`` is answered.

    Both endpoints must be live runtime nodes; edges touching a GROUP are
    containment, not conditions.
    """
    tree = coerce_tree(tree)
    source, target = _live_node(tree, source_id), _live_node(tree, target_id)
    if source is None or target is None or NodeType.GROUP in (source.type, target.type):
        return PatchResult(tree)
    if source_id == target_id:
        return PatchResult(tree, error="A condition cannot gate its own source")
    problem = describe_malformed(condition)
    if problem:
        return PatchResult(tree, error=problem)

    edge_id = _allocator(tree, rng, attempts).allocate("edge_")
    edge = Edge.conditional(edge_id, source_id, target_id, dict(condition), priority=priority)
    return PatchResult(tree.model_copy(update={"edges": [*tree.edges, edge]}), new_id=edge_id)


def _live_conditional_edge(tree: Tree, edge_id: str) -> Edge | None:
    edge = TreeDocument(tree).edge(edge_id)
    if edge is None or edge.status != EdgeStatus.ENABLED:
        return None
    return edge


def update_condition(
    tree: Tree,
    edge_id: str,
    *,
    condition: dict[str, Any] = UNSET,
    priority: int = UNSET,
) -> PatchResult:
    tree = coerce_tree(tree)
    edge = _live_conditional_edge(tree, edge_id)
    if edge is None:
        return PatchResult(tree)
    if _given(condition):
        problem = describe_malformed(condition)
        if problem:
            return PatchResult(tree, error=problem)
    replacement = Edge.conditional(
        edge.id,
        edge.from_node_id,
        edge.to_node_id,
        dict(condition) if _given(condition) else edge.condition,
        priority=priority if _given(priority) else edge.priority,
    )
    if replacement == edge:
        return PatchResult(tree)
    edges = _map_edges(tree, lambda current: replacement if current is edge else current)
    return PatchResult(tree.model_copy(update={"edges": edges}))


def remove_condition(tree: Tree, edge_id: str) -> PatchResult:
    """Soft-delete a conditional edge."""
    tree = coerce_tree(tree)
    edge = _live_conditional_edge(tree, edge_id)
    if edge is None:
        return PatchResult(tree)
    edges = _map_edges(tree, lambda current: _soft_delete(current) if current is edge else current)
    return PatchResult(tree.model_copy(update={"edges": edges}))


# ----------------------------------------------------------------------
# Weight
# ----------------------------------------------------------------------


def add_weight_impact(tree: Tree, node_id: str) -> PatchResult:
    tree = coerce_tree(tree)
    node = _live_node(tree, node_id)
    if node is None:
        return PatchResult(tree)
    impacts = [*node.weight_impact, {"mode": "addFlat", "oz": 0, "label": ""}]
    return PatchResult(_with_nodes(tree, {node_id: node.model_copy(update={"weight_impact": impacts})}))


def update_weight_impact(
    tree: Tree,
    node_id: str,
    index: int,
    *,
    mode: str = UNSET,
    oz: float = UNSET,
    label: str = UNSET,
) -> PatchResult:
    """Edit one weight rule; a negative ``oz`` removes the amount."""
    tree = coerce_tree(tree)
    node = _live_node(tree, node_id)
    if node is None or not 0 <= index < len(node.weight_impact):
        return PatchResult(tree)
    if _given(mode) and mode not in WEIGHT_IMPACT_MODES:
        return PatchResult(tree, error=f"weight impact mode must be one of {', '.join(sorted(WEIGHT_IMPACT_MODES))}")

    impact = dict(node.weight_impact[index])
    if _given(mode):
        impact["mode"] = mode
    if _given(oz):
        if oz is not None and oz >= 0:
            impact["oz"] = oz
        else:
            impact.pop("oz", None)
    if _given(label):
        impact["label"] = label
    impacts = list(node.weight_impact)
    impacts[index] = impact
    return _replace_node(tree, node, node.model_copy(update={"weight_impact": impacts}))


def delete_weight_impact(tree: Tree, node_id: str, index: int) -> PatchResult:
    tree = coerce_tree(tree)
    node = _live_node(tree, node_id)
    if node is None or not 0 <= index < len(node.weight_impact):
        return PatchResult(tree)
    impacts = [impact for position, impact in enumerate(node.weight_impact) if position != index]
    return PatchResult(_with_nodes(tree, {node_id: node.model_copy(update={"weight_impact": impacts})}))


def update_base_weight(tree: Tree, oz: float | None) -> PatchResult:
    """Set the product's base weight in ``meta.baseWeightOz``; None or a negative value clears it."""
    tree = coerce_tree(tree)
    meta = dict(tree.meta)
    if oz is not None and oz >= 0:
        meta["baseWeightOz"] = oz
    else:
        meta.pop("baseWeightOz", None)
    if meta == tree.meta:
        return PatchResult(tree)
    return PatchResult(tree.model_copy(update={"meta": meta}))


def apply_all(tree: Tree, steps: Iterable[Callable[[Tree], PatchResult]]) -> Tree:
    """Thread a tree through a sequence of single-argument patch callables."""
    current = coerce_tree(tree)
    for step in steps:
        current = step(current).tree
    return current
