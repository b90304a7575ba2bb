from importlib.metadata import PackageNotFoundError, version

from .conditions import evaluate, is_well_formed
from .document import TreeDocument, coerce_tree, normalize_tree_json
from .ids import IdAllocator
from .lifecycle import NotADraftError, PublishBlockedError, TreeVersionController, TreeVersionNotFoundError
from .models import (
    SCHEMA_VERSION,
    Edge,
    EdgeStatus,
    Finding,
    InputSpec,
    Node,
    NodeStatus,
    NodeType,
    ProductTrees,
    PublishOutcome,
    Severity,
    Tree,
    TreeStatus,
    TreeVersion,
    ValidationReport,
    ValueType,
)
from .patches import PatchResult
from .rollup import applicable_input_ids, material_rollup, price_preview
from .settings import RuntimeSettings
from .state_store import FileTreeVersionStore, InMemoryTreeVersionStore, TreeVersionStore
from .validator import validate
from .view_model import EditorModel, apply_editor_model, project_tree


def get_version() -> str:
    try:
        return version("option-graph-engine")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "Edge",
    "EdgeStatus",
    "EditorModel",
    "FileTreeVersionStore",
    "Finding",
    "IdAllocator",
    "InMemoryTreeVersionStore",
    "InputSpec",
    "Node",
    "NodeStatus",
    "NodeType",
    "NotADraftError",
    "PatchResult",
    "ProductTrees",
    "PublishBlockedError",
    "PublishOutcome",
    "RuntimeSettings",
    "SCHEMA_VERSION",
    "Severity",
    "Tree",
    "TreeDocument",
    "TreeStatus",
    "TreeVersion",
    "TreeVersionController",
    "TreeVersionNotFoundError",
    "TreeVersionStore",
    "ValidationReport",
    "ValueType",
    "applicable_input_ids",
    "apply_editor_model",
    "coerce_tree",
    "evaluate",
    "get_version",
    "is_well_formed",
    "material_rollup",
    "normalize_tree_json",
    "price_preview",
    "project_tree",
    "validate",
]
