from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

SCHEMA_VERSION = 2


class NodeType(str, Enum):
    GROUP = "GROUP"
    INPUT = "INPUT"
    # Reserved for computed/pricing/effect nodes; stored and validated but not edited here.
    COMPUTE = "COMPUTE"
    PRICE = "PRICE"
    EFFECT = "EFFECT"


class NodeStatus(str, Enum):
    ENABLED = "ENABLED"
    DISABLED = "DISABLED"
    DELETED = "DELETED"


class EdgeStatus(str, Enum):
    ENABLED = "ENABLED"
    DISABLED = "DISABLED"
    DELETED = "DELETED"


class ValueType(str, Enum):
    ENUM = "ENUM"
    BOOLEAN = "BOOLEAN"
    NUMBER = "NUMBER"
    ARRAY = "ARRAY"


class TreeStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    RETIRED = "RETIRED"


class Severity(str, Enum):
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"


TREE_STATUS_TRANSITIONS: dict[TreeStatus, frozenset[TreeStatus]] = {
    TreeStatus.DRAFT: frozenset({TreeStatus.ACTIVE}),
    TreeStatus.ACTIVE: frozenset({TreeStatus.RETIRED}),
    TreeStatus.RETIRED: frozenset(),
}


class WireModel(BaseModel):
    """Base for documents exchanged with the editor: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="allow",
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class InputSpec(WireModel):
    selection_key: str | None = None
    value_type: ValueType = ValueType.ENUM
    required: bool = False
    constraints: dict[str, Any] | None = None
    default_value: Any = None


class Node(WireModel):
    id: str
    type: NodeType
    status: NodeStatus = NodeStatus.ENABLED
    key: str = ""
    label: str = ""
    description: str = ""
    input: InputSpec | None = None
    price_components: list[dict[str, Any]] = Field(default_factory=list)
    material_effects: list[dict[str, Any]] = Field(default_factory=list)
    weight_impact: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def is_deleted(self) -> bool:
        return self.status == NodeStatus.DELETED

    @property
    def selection_key(self) -> str | None:
        if self.input is None:
            return None
        return self.input.selection_key


class Edge(WireModel):
    """Directed relationship between two nodes.

    Containment edges (either endpoint a GROUP) are structural and carry
    ``DISABLED`` with no condition; edges between runtime nodes are
    conditional and carry ``ENABLED`` plus a condition rule. Build new edges
    through :meth:`structural` and :meth:`conditional` so that pairing holds
    by construction.
    """

    id: str
    from_node_id: str
    to_node_id: str
    status: EdgeStatus = EdgeStatus.DISABLED
    priority: int = 0
    condition: dict[str, Any] | None = None

    @classmethod
    def structural(cls, edge_id: str, parent_id: str, child_id: str, *, priority: int = 0) -> "Edge":
        return cls(
            id=edge_id,
            from_node_id=parent_id,
            to_node_id=child_id,
            status=EdgeStatus.DISABLED,
            priority=priority,
        )

    @classmethod
    def conditional(
        cls,
        edge_id: str,
        source_id: str,
        target_id: str,
        condition: dict[str, Any],
        *,
        priority: int = 0,
    ) -> "Edge":
        return cls(
            id=edge_id,
            from_node_id=source_id,
            to_node_id=target_id,
            status=EdgeStatus.ENABLED,
            priority=priority,
            condition=condition,
        )

    @property
    def is_deleted(self) -> bool:
        return self.status == EdgeStatus.DELETED


class Tree(WireModel):
    """One product's option graph document."""

    schema_version: int = SCHEMA_VERSION
    status: TreeStatus = TreeStatus.DRAFT
    root_node_ids: list[str] = Field(default_factory=list)
    nodes: dict[str, Node] = Field(default_factory=dict)
    edges: list[Edge] = Field(default_factory=list)
    meta: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def empty(cls) -> "Tree":
        return cls()

    def all_ids(self) -> set[str]:
        return set(self.nodes) | {edge.id for edge in self.edges}


class Finding(WireModel):
    code: str
    severity: Severity
    message: str
    path: str = "tree"
    entity_id: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)


class ValidationReport(WireModel):
    errors: list[Finding] = Field(default_factory=list)
    warnings: list[Finding] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def findings(self) -> list[Finding]:
        return [*self.errors, *self.warnings]

    def codes(self) -> list[str]:
        return [finding.code for finding in self.findings]


class TreeVersion(WireModel):
    """A stored tree for one product, with its lifecycle status."""

    id: str
    product_id: str
    status: TreeStatus
    tree: Tree
    fingerprint: str
    created_at: datetime
    updated_at: datetime
    published_at: datetime | None = None
    retired_at: datetime | None = None


class ProductHistory(WireModel):
    product_id: str
    versions: list[TreeVersion] = Field(default_factory=list)


class ProductTrees(WireModel):
    draft: TreeVersion | None = None
    active: TreeVersion | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "success": True,
            "data": {
                "draft": self.draft.to_wire() if self.draft else None,
                "active": self.active.to_wire() if self.active else None,
            },
        }


class PublishOutcome(WireModel):
    success: bool
    requires_warnings_confirm: bool = False
    findings: list[Finding] = Field(default_factory=list)
    version: TreeVersion | None = None
    draft: TreeVersion | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.requires_warnings_confirm:
            payload["requiresWarningsConfirm"] = True
        if self.findings:
            payload["findings"] = [finding.to_wire() for finding in self.findings]
        if self.version is not None and not self.requires_warnings_confirm:
            payload["data"] = self.version.to_wire()
        return payload
