"""Graph Validator.

``validate`` never raises: it walks a candidate tree and returns every
finding it can, errors and warnings separately, in a stable order. Errors
block publish; warnings need explicit confirmation.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from typing import Any, Iterable, Mapping

from . import conditions
from .document import TreeDocument, coerce_tree
from .models import (
    SCHEMA_VERSION,
    EdgeStatus,
    Finding,
    Node,
    NodeStatus,
    NodeType,
    Severity,
    Tree,
    ValidationReport,
    ValueType,
)
from .patches import choices_of

TREE_SCHEMA_UNSUPPORTED = "TREE_SCHEMA_UNSUPPORTED"
TREE_NO_ROOTS = "TREE_NO_ROOTS"
TREE_ROOT_INVALID = "TREE_ROOT_INVALID"
TREE_DUPLICATE_IDS = "TREE_DUPLICATE_IDS"
TREE_KEY_COLLISION = "TREE_KEY_COLLISION"
INPUT_MISSING_SELECTION_KEY = "INPUT_MISSING_SELECTION_KEY"
SELECTION_KEY_COLLISION = "SELECTION_KEY_COLLISION"
INPUT_CONSTRAINT_INVALID = "INPUT_CONSTRAINT_INVALID"
DEFAULT_OUT_OF_RANGE = "DEFAULT_OUT_OF_RANGE"
EDGE_MISSING_ENDPOINT = "EDGE_MISSING_ENDPOINT"
EDGE_SELF_LOOP = "EDGE_SELF_LOOP"
EDGE_INVALID_PRIORITY = "EDGE_INVALID_PRIORITY"
EDGE_STATUS_INVALID = "EDGE_STATUS_INVALID"
EDGE_CONDITION_INVALID = "EDGE_CONDITION_INVALID"
EDGE_ENDPOINT_DELETED = "EDGE_ENDPOINT_DELETED"
EDGE_AMBIGUOUS_MATCH = "EDGE_AMBIGUOUS_MATCH"
GRAPH_CYCLE = "GRAPH_CYCLE"
ORPHAN_OPTION = "ORPHAN_OPTION"
EMPTY_GROUP = "EMPTY_GROUP"
REQUIRED_GROUP_NO_DEFAULT = "REQUIRED_GROUP_NO_DEFAULT"
NODE_UNREACHABLE = "NODE_UNREACHABLE"
CONDITION_UNKNOWN_SELECTION_KEY = "CONDITION_UNKNOWN_SELECTION_KEY"

_SEVERITY_ORDER = {Severity.ERROR: 0, Severity.WARNING: 1, Severity.INFO: 2}


def _finding(
    severity: Severity,
    code: str,
    message: str,
    path: str,
    entity_id: str | None = None,
    **context: Any,
) -> Finding:
    return Finding(
        code=code,
        severity=severity,
        message=message,
        path=path,
        entity_id=entity_id,
        context={key: value for key, value in context.items() if value is not None},
    )


def _error(code: str, message: str, path: str, entity_id: str | None = None, **context: Any) -> Finding:
    return _finding(Severity.ERROR, code, message, path, entity_id, **context)


def _warning(code: str, message: str, path: str, entity_id: str | None = None, **context: Any) -> Finding:
    return _finding(Severity.WARNING, code, message, path, entity_id, **context)


def _sort_key(finding: Finding) -> tuple[int, str, str, str]:
    return (_SEVERITY_ORDER[finding.severity], finding.code, finding.entity_id or "", finding.message)


def validate(tree: Tree | Mapping[str, Any], *, ambiguous_edges_strict: bool = False) -> ValidationReport:
    """Run every check against ``tree`` and return the full report."""
    doc = TreeDocument(coerce_tree(tree))
    findings: list[Finding] = []
    findings.extend(_check_schema(doc))
    findings.extend(_check_roots(doc))
    findings.extend(_check_ids(doc))
    findings.extend(_check_keys(doc))
    findings.extend(_check_inputs(doc))
    findings.extend(_check_edges(doc))
    findings.extend(_check_ambiguity(doc, strict=ambiguous_edges_strict))
    findings.extend(_check_cycles(doc))
    findings.extend(_check_structure(doc))

    findings.sort(key=_sort_key)
    return ValidationReport(
        errors=[finding for finding in findings if finding.severity == Severity.ERROR],
        warnings=[finding for finding in findings if finding.severity == Severity.WARNING],
    )


# ----------------------------------------------------------------------
# Document-level checks
# ----------------------------------------------------------------------


def _check_schema(doc: TreeDocument) -> Iterable[Finding]:
    if doc.tree.schema_version != SCHEMA_VERSION:
        yield _error(
            TREE_SCHEMA_UNSUPPORTED,
            f"schemaVersion {doc.tree.schema_version} is not supported; expected {SCHEMA_VERSION}",
            "tree.schemaVersion",
            schemaVersion=doc.tree.schema_version,
        )


def _check_roots(doc: TreeDocument) -> Iterable[Finding]:
    seen: set[str] = set()
    valid = 0
    for index, root_id in enumerate(doc.tree.root_node_ids):
        path = f"tree.rootNodeIds[{index}]"
        node = doc.node(root_id)
        if root_id in seen:
            yield _error(TREE_ROOT_INVALID, "Root id is listed more than once", path, root_id)
        elif node is None:
            yield _error(TREE_ROOT_INVALID, "Root id does not reference an existing node", path, root_id)
        elif node.is_deleted:
            yield _error(TREE_ROOT_INVALID, "Root id references a DELETED node", path, root_id)
        else:
            valid += 1
        seen.add(root_id)
    if valid == 0:
        yield _error(TREE_NO_ROOTS, "Tree must declare at least one root node", "tree.rootNodeIds")


def _check_ids(doc: TreeDocument) -> Iterable[Finding]:
    counts = Counter(edge.id for edge in doc.tree.edges)
    for edge_id, count in sorted(counts.items()):
        if count > 1:
            yield _error(TREE_DUPLICATE_IDS, "Edge id is used more than once", "tree.edges", edge_id, count=count)
        if doc.has_node(edge_id):
            yield _error(TREE_DUPLICATE_IDS, "Edge id is also used by a node", "tree.edges", edge_id)


def _live_nodes(doc: TreeDocument) -> list[Node]:
    return [node for node in doc.tree.nodes.values() if not node.is_deleted]


def _check_keys(doc: TreeDocument) -> Iterable[Finding]:
    by_key: dict[str, list[str]] = defaultdict(list)
    by_selection: dict[str, list[str]] = defaultdict(list)
    for node in _live_nodes(doc):
        if node.key.strip():
            by_key[node.key].append(node.id)
        if node.type == NodeType.INPUT:
            selection_key = (node.selection_key or "").strip()
            if not selection_key:
                yield _error(
                    INPUT_MISSING_SELECTION_KEY,
                    "INPUT node must define input.selectionKey",
                    f"tree.nodes[{node.id}].input.selectionKey",
                    node.id,
                )
            else:
                by_selection[selection_key].append(node.id)

    for key, node_ids in sorted(by_key.items()):
        if len(node_ids) > 1:
            node_ids = sorted(node_ids)
            yield _error(
                TREE_KEY_COLLISION,
                f"Node key {key!r} is shared by {len(node_ids)} nodes",
                f"tree.nodes[{node_ids[1]}].key",
                node_ids[1],
                key=key,
                nodeIds=node_ids,
            )
    for selection_key, node_ids in sorted(by_selection.items()):
        if len(node_ids) > 1:
            node_ids = sorted(node_ids)
            yield _error(
                SELECTION_KEY_COLLISION,
                f"Selection key {selection_key!r} is shared by {len(node_ids)} inputs",
                f"tree.nodes[{node_ids[1]}].input.selectionKey",
                node_ids[1],
                selectionKey=selection_key,
                nodeIds=node_ids,
            )


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _check_inputs(doc: TreeDocument) -> Iterable[Finding]:
    for node in _live_nodes(doc):
        if node.type != NodeType.INPUT or node.input is None:
            continue
        spec = node.input
        base = f"tree.nodes[{node.id}].input"
        constraints = spec.constraints or {}
        default = spec.default_value

        if spec.value_type == ValueType.NUMBER:
            bounds = constraints.get("number") if isinstance(constraints.get("number"), Mapping) else constraints
            low, high, step = _number(bounds.get("min")), _number(bounds.get("max")), _number(bounds.get("step"))
            if low is not None and high is not None and low > high:
                yield _error(
                    INPUT_CONSTRAINT_INVALID,
                    "NUMBER constraints require min <= max",
                    f"{base}.constraints.number",
                    node.id,
                    min=low,
                    max=high,
                )
            if step is not None and step <= 0:
                yield _error(
                    INPUT_CONSTRAINT_INVALID,
                    "NUMBER constraints require step > 0",
                    f"{base}.constraints.number.step",
                    node.id,
                    step=step,
                )
            value = _number(default)
            if value is not None and ((low is not None and value < low) or (high is not None and value > high)):
                yield _default_out_of_range(node, default, min=low, max=high)

        elif spec.value_type == ValueType.BOOLEAN:
            if default is not None and not isinstance(default, bool):
                yield _error(
                    INPUT_CONSTRAINT_INVALID,
                    "BOOLEAN default must be a boolean",
                    f"{base}.defaultValue",
                    node.id,
                    defaultValue=default,
                )

        elif spec.value_type in (ValueType.ENUM, ValueType.ARRAY):
            values: list[str] = []
            for index, choice in enumerate(choices_of(node)):
                value = choice.get("value")
                if not isinstance(value, str) or not value.strip():
                    yield _error(
                        INPUT_CONSTRAINT_INVALID,
                        "ENUM option values must be non-empty strings",
                        f"{base}.constraints.enum.options[{index}]",
                        node.id,
                    )
                elif value in values:
                    yield _error(
                        INPUT_CONSTRAINT_INVALID,
                        "ENUM option values must be unique",
                        f"{base}.constraints.enum.options",
                        node.id,
                        value=value,
                    )
                else:
                    values.append(value)
            if spec.value_type == ValueType.ENUM and values and default is not None and default not in values:
                yield _default_out_of_range(node, default, choices=values)


def _default_out_of_range(node: Node, default: Any, **context: Any) -> Finding:
    path = f"tree.nodes[{node.id}].input.defaultValue"
    if node.input is not None and node.input.required:
        return _error(DEFAULT_OUT_OF_RANGE, "Default value is out of range for required input", path, node.id, defaultValue=default, **context)
    return _warning(DEFAULT_OUT_OF_RANGE, "Default value is out of range", path, node.id, defaultValue=default, **context)


# ----------------------------------------------------------------------
# Edge checks
# ----------------------------------------------------------------------


def _check_edges(doc: TreeDocument) -> Iterable[Finding]:
    known_keys = {
        node.selection_key
        for node in _live_nodes(doc)
        if node.type == NodeType.INPUT and node.selection_key
    }
    for edge in doc.tree.edges:
        path = f"tree.edges[{edge.id}]"
        source, target = doc.node(edge.from_node_id), doc.node(edge.to_node_id)
        if source is None or target is None:
            yield _error(
                EDGE_MISSING_ENDPOINT,
                "Edge endpoints must exist",
                path,
                edge.id,
                fromNodeId=edge.from_node_id or None,
                toNodeId=edge.to_node_id or None,
            )
        if edge.is_deleted:
            continue

        if edge.from_node_id == edge.to_node_id:
            yield _error(EDGE_SELF_LOOP, "Edge fromNodeId must not equal toNodeId", path, edge.id, nodeId=edge.from_node_id)
        if edge.priority < 0:
            yield _error(
                EDGE_INVALID_PRIORITY,
                "priority must be an integer >= 0",
                f"{path}.priority",
                edge.id,
                priority=edge.priority,
            )
        if source is None or target is None:
            continue

        if source.is_deleted or target.is_deleted:
            yield _error(
                EDGE_ENDPOINT_DELETED,
                "Live edge references a DELETED node",
                path,
                edge.id,
                fromStatus=source.status.value,
                toStatus=target.status.value,
            )

        if doc.is_structural(edge):
            if edge.status == EdgeStatus.ENABLED:
                yield _error(EDGE_STATUS_INVALID, "Edges touching a GROUP are structural and must be DISABLED", f"{path}.status", edge.id)
        elif edge.status == EdgeStatus.DISABLED:
            yield _error(EDGE_STATUS_INVALID, "Edges between runtime nodes are conditional and must be ENABLED", f"{path}.status", edge.id)

        cond_path = f"{path}.condition"
        if edge.status == EdgeStatus.DISABLED:
            if edge.condition is not None:
                yield _error(EDGE_CONDITION_INVALID, "DISABLED edges must not carry a condition", cond_path, edge.id)
            continue
        problem = conditions.describe_malformed(edge.condition, cond_path)
        if problem:
            yield _error(EDGE_CONDITION_INVALID, f"ENABLED edges need a well-formed condition: {problem}", cond_path, edge.id)
            continue
        for selection_key in sorted(conditions.selection_keys(edge.condition) - known_keys):
            yield _warning(
                CONDITION_UNKNOWN_SELECTION_KEY,
                f"Condition reads selection key {selection_key!r}, which no input defines",
                cond_path,
                edge.id,
                selectionKey=selection_key,
            )


def _check_ambiguity(doc: TreeDocument, *, strict: bool) -> Iterable[Finding]:
    by_slot: dict[tuple[str, int], list[str]] = defaultdict(list)
    for edge in doc.live_edges():
        if edge.status != EdgeStatus.ENABLED or doc.is_structural(edge):
            continue
        if not conditions.is_well_formed(edge.condition) or conditions.is_provably_unsat(edge.condition):
            continue
        by_slot[(edge.to_node_id, edge.priority)].append(edge.id)

    make = _error if strict else _warning
    for (target_id, priority), edge_ids in sorted(by_slot.items()):
        if len(edge_ids) > 1:
            yield make(
                EDGE_AMBIGUOUS_MATCH,
                f"{len(edge_ids)} conditional edges into the same node share priority {priority}",
                "tree.edges",
                target_id,
                toNodeId=target_id,
                priority=priority,
                edgeIds=sorted(edge_ids),
            )


def _check_cycles(doc: TreeDocument) -> Iterable[Finding]:
    graph: dict[str, list[str]] = defaultdict(list)
    for edge in doc.live_edges():
        if edge.status != EdgeStatus.ENABLED or doc.is_structural(edge):
            continue
        source, target = doc.node(edge.from_node_id), doc.node(edge.to_node_id)
        if source is None or target is None:
            continue
        if source.status != NodeStatus.ENABLED or target.status != NodeStatus.ENABLED:
            continue
        graph[source.id].append(target.id)

    cycle = _find_cycle(graph)
    if cycle:
        yield _error(GRAPH_CYCLE, "Conditional edges between runtime nodes must be acyclic", "tree.edges", cycle[0], cycle=cycle)


def _find_cycle(graph: Mapping[str, list[str]]) -> list[str] | None:
    done: set[str] = set()
    for start in sorted(graph):
        if start in done:
            continue
        path = [start]
        on_path = {start}
        pending = [iter(sorted(graph.get(start, ())))]
        while pending:
            child = next(pending[-1], None)
            if child is None:
                pending.pop()
                finished = path.pop()
                on_path.discard(finished)
                done.add(finished)
            elif child in on_path:
                return path[path.index(child):] + [child]
            elif child not in done:
                path.append(child)
                on_path.add(child)
                pending.append(iter(sorted(graph.get(child, ()))))
    return None


# ----------------------------------------------------------------------
# Containment checks
# ----------------------------------------------------------------------


def _check_structure(doc: TreeDocument) -> Iterable[Finding]:
    reachable = set(doc.walk())
    for node in sorted(_live_nodes(doc), key=lambda node: node.id):
        path = f"tree.nodes[{node.id}]"
        if node.type == NodeType.INPUT:
            if not doc.parents_of(node.id):
                yield _error(ORPHAN_OPTION, "Option is not contained by any group", path, node.id)
            continue
        if node.type != NodeType.GROUP:
            continue

        children = doc.children_of(node.id)
        if not children:
            yield _warning(EMPTY_GROUP, "Group has no options", path, node.id)
        if node.input is not None and node.input.required:
            has_default = any(
                child.input is not None and child.input.default_value is not None
                for child in (doc.node(child_id) for child_id in children)
                if child is not None
            )
            if not has_default:
                yield _warning(REQUIRED_GROUP_NO_DEFAULT, "Required group has no default option", path, node.id)
        if node.id not in reachable:
            yield _warning(NODE_UNREACHABLE, "Group is not reachable from any root", path, node.id)
