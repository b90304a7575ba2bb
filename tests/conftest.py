import random
from typing import Any, Callable

import pytest

from option_graph import patches
from option_graph.models import Tree


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def one_group_tree(rng: random.Random) -> tuple[Tree, str, str]:
    """A tree with one root group holding one option: (tree, group_id, option_id)."""
    added_group = patches.add_group(Tree.empty(), rng=rng)
    added_option = patches.add_option(added_group.tree, added_group.new_id, rng=rng)
    return added_option.tree, added_group.new_id, added_option.new_id


@pytest.fixture
def raw_tree() -> Callable[..., dict[str, Any]]:
    """Build wire JSON for a tree: group g1 containing inputs o1 and o2, plus extras."""

    def build(
        *,
        extra_nodes: list[dict[str, Any]] | None = None,
        extra_edges: list[dict[str, Any]] | None = None,
        roots: list[str] | None = None,
        **overrides: Any,
    ) -> dict[str, Any]:
        nodes = [
            {"id": "g1", "type": "GROUP", "status": "ENABLED", "key": "size", "label": "Size"},
            {
                "id": "o1",
                "type": "INPUT",
                "status": "ENABLED",
                "key": "paper",
                "input": {"selectionKey": "paper", "valueType": "ENUM"},
            },
            {
                "id": "o2",
                "type": "INPUT",
                "status": "ENABLED",
                "key": "finish",
                "input": {"selectionKey": "finish", "valueType": "ENUM"},
            },
            *(extra_nodes or []),
        ]
        edges = [
            {"id": "e1", "fromNodeId": "g1", "toNodeId": "o1", "status": "DISABLED", "priority": 0},
            {"id": "e2", "fromNodeId": "g1", "toNodeId": "o2", "status": "DISABLED", "priority": 1},
            *(extra_edges or []),
        ]
        document = {
            "schemaVersion": 2,
            "status": "DRAFT",
            "rootNodeIds": ["g1"] if roots is None else roots,
            "nodes": nodes,
            "edges": edges,
        }
        document.update(overrides)
        return document

    return build
