"""Read-only access to a tree document, plus normalization of wire JSON into :class:`Tree`."""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from typing import Any, Iterator, Mapping

from .models import SCHEMA_VERSION, Edge, EdgeStatus, Node, NodeStatus, NodeType, Tree, TreeStatus

logger = logging.getLogger(__name__)

_KIND_TO_TYPE = {"group": "GROUP", "question": "INPUT", "computed": "COMPUTE"}
_NODE_TYPES = {member.value for member in NodeType}
_STATUSES = {member.value for member in NodeStatus}


def _edge_sort_key(edge: Edge) -> tuple[int, str]:
    return (edge.priority, edge.id)


class TreeDocument:
    """Id-indexed view over a :class:`Tree`.

    Relationships are resolved lazily through id lookups, so soft-deleted
    nodes stay resolvable and edges never hold live object references.
    Nothing here mutates the tree.
    """

    def __init__(self, tree: Tree) -> None:
        self.tree = tree
        self._edges_from: dict[str, list[Edge]] = defaultdict(list)
        self._edges_to: dict[str, list[Edge]] = defaultdict(list)
        self._edges_by_id: dict[str, Edge] = {}
        for edge in tree.edges:
            self._edges_from[edge.from_node_id].append(edge)
            self._edges_to[edge.to_node_id].append(edge)
            self._edges_by_id.setdefault(edge.id, edge)
        for bucket in (*self._edges_from.values(), *self._edges_to.values()):
            bucket.sort(key=_edge_sort_key)

    @classmethod
    def from_any(cls, value: Tree | Mapping[str, Any] | Any) -> "TreeDocument":
        return cls(coerce_tree(value))

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def node(self, node_id: str) -> Node | None:
        return self.tree.nodes.get(node_id)

    def edge(self, edge_id: str) -> Edge | None:
        return self._edges_by_id.get(edge_id)

    def has_node(self, node_id: str) -> bool:
        return node_id in self.tree.nodes

    def is_live(self, node_id: str) -> bool:
        node = self.node(node_id)
        return node is not None and not node.is_deleted

    def is_group(self, node_id: str) -> bool:
        node = self.node(node_id)
        return node is not None and node.type == NodeType.GROUP

    def is_structural(self, edge: Edge) -> bool:
        """Containment edges are the ones touching a GROUP."""
        return self.is_group(edge.from_node_id) or self.is_group(edge.to_node_id)

    def edges_from(self, node_id: str) -> list[Edge]:
        return list(self._edges_from.get(node_id, ()))

    def edges_to(self, node_id: str) -> list[Edge]:
        return list(self._edges_to.get(node_id, ()))

    def live_edges(self) -> Iterator[Edge]:
        return (edge for edge in self.tree.edges if not edge.is_deleted)

    def structural_edges(self) -> list[Edge]:
        return [edge for edge in self.live_edges() if self.is_structural(edge)]

    def conditional_edges(self) -> list[Edge]:
        return [edge for edge in self.live_edges() if not self.is_structural(edge)]

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def children_of(self, node_id: str) -> list[str]:
        """Non-deleted children reached through live structural edges, by priority then edge id."""
        children: list[str] = []
        for edge in self._edges_from.get(node_id, ()):
            if edge.is_deleted or not self.is_structural(edge):
                continue
            if self.is_live(edge.to_node_id) and edge.to_node_id not in children:
                children.append(edge.to_node_id)
        return children

    def parents_of(self, node_id: str) -> list[str]:
        """Live groups that contain ``node_id`` through a live structural edge."""
        return [
            edge.from_node_id
            for edge in self._edges_to.get(node_id, ())
            if not edge.is_deleted and self.is_group(edge.from_node_id) and self.is_live(edge.from_node_id)
        ]

    def child_edges(self, group_id: str) -> list[Edge]:
        """Live structural edges out of ``group_id`` whose child is still live, in child order."""
        return [
            edge
            for edge in self._edges_from.get(group_id, ())
            if not edge.is_deleted and self.is_structural(edge) and self.is_live(edge.to_node_id)
        ]

    def conditions_on(self, node_id: str) -> list[tuple[Edge, dict[str, Any]]]:
        """Enabled conditional edges targeting ``node_id``, ordered by priority."""
        return [
            (edge, edge.condition)
            for edge in self._edges_to.get(node_id, ())
            if edge.status == EdgeStatus.ENABLED and edge.condition is not None
        ]

    def root_groups(self) -> list[str]:
        """Root ids in declared order, skipping unknown, deleted and repeated ids."""
        roots: list[str] = []
        for root_id in self.tree.root_node_ids:
            if self.is_live(root_id) and root_id not in roots:
                roots.append(root_id)
        return roots

    def walk(self) -> list[str]:
        """Canonical order: depth-first from the roots through structural children."""
        order: list[str] = []
        seen: set[str] = set()
        stack = list(reversed(self.root_groups()))
        while stack:
            node_id = stack.pop()
            if node_id in seen:
                continue
            seen.add(node_id)
            order.append(node_id)
            stack.extend(reversed(self.children_of(node_id)))
        return order

    def descendants_of(self, node_id: str) -> list[str]:
        """Every node reachable from ``node_id`` through non-deleted structural edges, any status."""
        found: list[str] = []
        seen = {node_id}
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            for edge in self._edges_from.get(current, ()):
                if edge.is_deleted or not self.is_structural(edge):
                    continue
                child = edge.to_node_id
                if child in seen or not self.has_node(child):
                    continue
                seen.add(child)
                found.append(child)
                queue.append(child)
        return found


# ----------------------------------------------------------------------
# Normalization
# ----------------------------------------------------------------------


def coerce_tree(value: Tree | Mapping[str, Any] | Any) -> Tree:
    if isinstance(value, Tree):
        return value
    return normalize_tree_json(value)


def normalize_tree_json(raw: Any) -> Tree:
    """Build a :class:`Tree` from wire JSON, repairing legacy shapes instead of rejecting them.

    Accepts ``nodes``/``edges`` as arrays or id-keyed maps, a missing
    ``schemaVersion`` or ``status``, lowercase enum values, legacy ``kind``
    node types and a top-level ``selectionKey`` on INPUT nodes. A document
    that is not an object becomes an empty skeleton.
    """
    if not isinstance(raw, Mapping):
        logger.warning("Tree document is %s, not an object; using an empty tree", type(raw).__name__)
        return Tree.empty()

    if "schemaVersion" not in raw and "schema_version" not in raw:
        logger.debug("Tree document has no schemaVersion; assuming %d", SCHEMA_VERSION)
    schema_version = raw.get("schemaVersion", raw.get("schema_version", SCHEMA_VERSION))
    if not isinstance(schema_version, int) or isinstance(schema_version, bool):
        schema_version = SCHEMA_VERSION

    status = _upper(raw.get("status")) or TreeStatus.DRAFT.value
    if status not in {member.value for member in TreeStatus}:
        status = TreeStatus.DRAFT.value

    roots_raw = raw.get("rootNodeIds", raw.get("root_node_ids"))
    roots = [str(item) for item in roots_raw if isinstance(item, str) and item.strip()] if isinstance(roots_raw, list) else []

    nodes: dict[str, Node] = {}
    for node_id, record in _records(raw.get("nodes"), ("id", "nodeId")):
        if node_id in nodes:
            logger.debug("Dropping repeated node id %s", node_id)
            continue
        nodes[node_id] = Node.model_validate(_normalize_node_record(node_id, record))

    edges = [
        Edge.model_validate(_normalize_edge_record(edge_id, record))
        for edge_id, record in _records(raw.get("edges"), ("id", "edgeId"))
    ]

    meta = raw.get("meta")
    return Tree(
        schema_version=schema_version,
        status=TreeStatus(status),
        root_node_ids=roots,
        nodes=nodes,
        edges=edges,
        meta=dict(meta) if isinstance(meta, Mapping) else {},
    )


def _records(raw: Any, id_fields: tuple[str, ...]) -> Iterator[tuple[str, dict[str, Any]]]:
    if isinstance(raw, list):
        items: Iterator[tuple[str | None, Any]] = ((None, item) for item in raw)
    elif isinstance(raw, Mapping):
        logger.debug("Normalizing keyed map of %d records to a list", len(raw))
        items = ((str(key), item) for key, item in raw.items())
    else:
        return
    for fallback_id, item in items:
        if not isinstance(item, Mapping):
            continue
        record_id = next(
            (str(item[field]) for field in id_fields if isinstance(item.get(field), str) and item[field].strip()),
            fallback_id,
        )
        if not record_id:
            continue
        yield record_id, dict(item)


def _upper(value: Any) -> str | None:
    return value.strip().upper() if isinstance(value, str) and value.strip() else None


def _normalize_node_record(node_id: str, record: dict[str, Any]) -> dict[str, Any]:
    record["id"] = node_id
    record.pop("nodeId", None)

    node_type = _upper(record.get("type")) or _upper(record.get("nodeType"))
    if node_type not in _NODE_TYPES:
        node_type = _KIND_TO_TYPE.get(str(record.get("kind", "")).lower(), NodeType.INPUT.value)
    record["type"] = node_type

    status = _upper(record.get("status"))
    record["status"] = status if status in _STATUSES else NodeStatus.ENABLED.value

    for text_field in ("key", "label", "description"):
        if not isinstance(record.get(text_field), str):
            record[text_field] = ""

    input_raw = record.get("input")
    legacy_key = record.get("selectionKey")
    if isinstance(input_raw, Mapping):
        input_spec = dict(input_raw)
        value_type = _upper(input_spec.get("valueType"))
        if value_type not in {"ENUM", "BOOLEAN", "NUMBER", "ARRAY"}:
            value_type = _LEGACY_INPUT_TYPES.get(str(input_spec.get("type", "")).lower(), "ENUM")
        input_spec["valueType"] = value_type
        if not input_spec.get("selectionKey") and isinstance(legacy_key, str) and legacy_key.strip():
            input_spec["selectionKey"] = legacy_key
        if not isinstance(input_spec.get("selectionKey"), str):
            input_spec["selectionKey"] = None
        if not isinstance(input_spec.get("constraints"), Mapping):
            input_spec["constraints"] = None
        input_spec["required"] = bool(input_spec.get("required", False))
        record["input"] = input_spec
    elif node_type == NodeType.INPUT.value:
        record["input"] = {"selectionKey": legacy_key if isinstance(legacy_key, str) else None}
    else:
        record.pop("input", None)

    for list_field in ("priceComponents", "materialEffects", "weightImpact"):
        items = record.get(list_field)
        record[list_field] = [dict(item) for item in items if isinstance(item, Mapping)] if isinstance(items, list) else []
    if not record["priceComponents"] and isinstance(record.get("pricingImpact"), list):
        record["priceComponents"] = [dict(item) for item in record["pricingImpact"] if isinstance(item, Mapping)]
    return record


_LEGACY_INPUT_TYPES = {
    "select": "ENUM",
    "multiselect": "ARRAY",
    "boolean": "BOOLEAN",
    "number": "NUMBER",
}


def _normalize_edge_record(edge_id: str, record: dict[str, Any]) -> dict[str, Any]:
    record["id"] = edge_id
    record.pop("edgeId", None)
    for endpoint in ("fromNodeId", "toNodeId"):
        if not isinstance(record.get(endpoint), str):
            record[endpoint] = ""

    status = _upper(record.get("status"))
    record["status"] = status if status in _STATUSES else EdgeStatus.ENABLED.value

    priority = record.get("priority", 0)
    if priority is None:
        priority = 0
    if isinstance(priority, bool) or not isinstance(priority, (int, float)) or not float(priority).is_integer():
        logger.debug("Edge %s has non-integer priority %r", edge_id, priority)
        priority = -1
    record["priority"] = int(priority)

    if not isinstance(record.get("condition"), Mapping):
        record["condition"] = None
    return record
