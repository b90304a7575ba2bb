from typing import Any, Callable

from option_graph.document import TreeDocument, coerce_tree, normalize_tree_json
from option_graph.models import EdgeStatus, NodeStatus, NodeType, Tree, TreeStatus, ValueType


def test_non_object_document_becomes_empty_tree() -> None:
    assert normalize_tree_json(None) == Tree.empty()
    assert normalize_tree_json([1, 2, 3]) == Tree.empty()


def test_missing_fields_get_defaults() -> None:
    tree = normalize_tree_json({})
    assert tree.schema_version == 2
    assert tree.status == TreeStatus.DRAFT
    assert tree.root_node_ids == []
    assert tree.nodes == {}


def test_keyed_maps_and_lowercase_values_are_normalized() -> None:
    tree = normalize_tree_json(
        {
            "status": "active",
            "rootNodeIds": ["g1"],
            "nodes": {
                "g1": {"kind": "group", "label": "Size"},
                "o1": {"type": "input", "status": "enabled", "selectionKey": "size", "input": {"type": "number"}},
                "o2": {"kind": "question", "selectionKey": "legacy"},
            },
            "edges": {"e1": {"fromNodeId": "g1", "toNodeId": "o1", "status": "disabled"}},
        }
    )
    assert tree.status == TreeStatus.ACTIVE
    assert tree.nodes["g1"].type == NodeType.GROUP
    assert tree.nodes["o1"].input.value_type == ValueType.NUMBER
    assert tree.nodes["o1"].selection_key == "size"
    assert tree.nodes["o2"].type == NodeType.INPUT
    assert tree.nodes["o2"].selection_key == "legacy"
    assert tree.edges[0].id == "e1"
    assert tree.edges[0].status == EdgeStatus.DISABLED


def test_odd_values_are_repaired_not_rejected() -> None:
    tree = normalize_tree_json(
        {
            "nodes": [
                {"nodeId": "o1", "status": "archived", "input": {"selectionKey": 7, "constraints": "none"}},
                {"id": "o1", "label": "second copy"},
                "not a record",
                {"id": "p1", "type": "PRICE", "pricingImpact": [{"amount": 5}, "junk"]},
            ],
            "edges": [
                {"edgeId": "e1", "fromNodeId": "o1", "toNodeId": "p1", "priority": 1.5, "condition": "always"},
                {"id": "e2", "fromNodeId": "o1", "toNodeId": "p1", "priority": None, "status": "bogus"},
            ],
        }
    )
    assert list(tree.nodes) == ["o1", "p1"]
    assert tree.nodes["o1"].status == NodeStatus.ENABLED
    assert tree.nodes["o1"].label == ""
    assert tree.nodes["o1"].selection_key is None
    assert tree.nodes["p1"].price_components == [{"amount": 5}]
    first, second = tree.edges
    assert first.priority == -1
    assert first.condition is None
    assert second.priority == 0
    assert second.status == EdgeStatus.ENABLED


def test_wire_round_trip_is_lossless(one_group_tree: tuple[Tree, str, str]) -> None:
    tree, _, _ = one_group_tree
    assert normalize_tree_json(tree.to_wire()) == tree
    assert coerce_tree(tree) is tree


def test_children_follow_priority_then_edge_id(raw_tree: Callable[..., dict[str, Any]]) -> None:
    document = TreeDocument.from_any(
        raw_tree(
            extra_nodes=[
                {"id": "o3", "type": "INPUT", "key": "k3", "input": {"selectionKey": "k3"}},
                {"id": "o4", "type": "INPUT", "status": "DELETED", "key": "k4", "input": {"selectionKey": "k4"}},
            ],
            extra_edges=[
                {"id": "e0", "fromNodeId": "g1", "toNodeId": "o3", "status": "DISABLED", "priority": 1},
                {"id": "e3", "fromNodeId": "g1", "toNodeId": "o4", "status": "DISABLED", "priority": 0},
                {"id": "e4", "fromNodeId": "g1", "toNodeId": "o2", "status": "DELETED", "priority": 0},
            ],
        )
    )
    assert document.children_of("g1") == ["o1", "o3", "o2"]
    assert [edge.id for edge in document.child_edges("g1")] == ["e1", "e0", "e2"]
    assert document.parents_of("o2") == ["g1"]
    assert document.walk() == ["g1", "o1", "o3", "o2"]
    assert document.descendants_of("g1") == ["o1", "o4", "o3", "o2"]


def test_roots_skip_unknown_deleted_and_repeated_ids(raw_tree: Callable[..., dict[str, Any]]) -> None:
    document = TreeDocument.from_any(
        raw_tree(
            extra_nodes=[{"id": "g2", "type": "GROUP", "status": "DELETED", "key": "gone"}],
            roots=["g1", "ghost", "g2", "g1"],
        )
    )
    assert document.root_groups() == ["g1"]


def test_conditions_and_edge_classification(raw_tree: Callable[..., dict[str, Any]]) -> None:
    rule = {"op": "EXISTS", "value": {"op": "ref", "ref": {"kind": "selectionRef", "selectionKey": "paper"}}}
    document = TreeDocument.from_any(
        raw_tree(
            extra_edges=[
                {"id": "c1", "fromNodeId": "o1", "toNodeId": "o2", "status": "ENABLED", "condition": rule},
                {"id": "c2", "fromNodeId": "o1", "toNodeId": "o2", "status": "DELETED", "condition": rule},
            ]
        )
    )
    assert [edge.id for edge, _ in document.conditions_on("o2")] == ["c1"]
    assert [edge.id for edge in document.conditional_edges()] == ["c1"]
    assert [edge.id for edge in document.structural_edges()] == ["e1", "e2"]
    assert document.edge("c2").status == EdgeStatus.DELETED
    assert document.is_structural(document.edge("e1"))
    assert not document.is_structural(document.edge("c1"))
