import random
from pathlib import Path
from typing import Any, Callable

import pytest

from option_graph import patches, state_store
from option_graph.lifecycle import (
    NotADraftError,
    PublishBlockedError,
    TreeVersionController,
    TreeVersionNotFoundError,
)
from option_graph.models import Tree, TreeStatus
from option_graph.settings import RuntimeSettings
from option_graph.state_store import FileTreeVersionStore, InMemoryTreeVersionStore, sanitize_product_id

PRODUCT = "business-cards"


@pytest.fixture(params=["memory", "filesystem"])
def controller(request: pytest.FixtureRequest, tmp_path: Path) -> TreeVersionController:
    if request.param == "memory":
        return TreeVersionController(InMemoryTreeVersionStore())
    return TreeVersionController(FileTreeVersionStore(tmp_path / "store"))


def _publishable(rng: random.Random, label: str = "Size") -> Tree:
    added = patches.add_group(Tree.empty(), label=label, rng=rng)
    return patches.add_option(added.tree, added.new_id, rng=rng).tree


def _with_warning(rng: random.Random) -> Tree:
    added = patches.add_group(Tree.empty(), rng=rng)
    required = patches.update_group(added.tree, added.new_id, required=True).tree
    return patches.add_option(required, added.new_id, rng=rng).tree


def test_create_draft_is_idempotent(controller: TreeVersionController) -> None:
    draft = controller.create_draft(PRODUCT)
    again = controller.create_draft(PRODUCT)
    assert draft.id == again.id
    assert draft.status == TreeStatus.DRAFT
    assert draft.tree == Tree.empty()
    assert len(controller.list_versions(PRODUCT)) == 1


def test_patch_draft_normalizes_and_keeps_draft_status(controller: TreeVersionController, rng: random.Random) -> None:
    draft = controller.create_draft(PRODUCT)
    tree = _publishable(rng)
    document = tree.to_wire()
    document["status"] = "ACTIVE"

    patched = controller.patch_draft(draft.id, document)
    assert patched.id == draft.id
    assert patched.status == TreeStatus.DRAFT
    assert patched.tree.status == TreeStatus.DRAFT
    assert patched.tree.nodes == tree.nodes
    assert patched.fingerprint != draft.fingerprint
    assert controller.get_version(draft.id) == patched


def test_patch_draft_accepts_invalid_trees(controller: TreeVersionController) -> None:
    draft = controller.create_draft(PRODUCT)
    patched = controller.patch_draft(draft.id, {"rootNodeIds": ["ghost"], "nodes": []})
    assert patched.tree.root_node_ids == ["ghost"]


def test_unknown_version_ids_raise(controller: TreeVersionController) -> None:
    with pytest.raises(TreeVersionNotFoundError, match="tv_missing"):
        controller.patch_draft("tv_missing", {})
    with pytest.raises(TreeVersionNotFoundError):
        controller.publish("tv_missing")
    with pytest.raises(TreeVersionNotFoundError):
        controller.get_version("tv_missing")


def test_publish_blocked_by_errors_changes_nothing(controller: TreeVersionController) -> None:
    draft = controller.create_draft(PRODUCT)
    with pytest.raises(PublishBlockedError, match="TREE_NO_ROOTS") as excinfo:
        controller.publish(draft.id)

    payload = excinfo.value.to_payload()
    assert payload["success"] is False
    assert [finding["code"] for finding in payload["findings"]] == ["TREE_NO_ROOTS"]
    trees = controller.get_trees(PRODUCT)
    assert trees.active is None
    assert trees.draft.id == draft.id


def test_publish_promotes_draft_and_opens_new_one(controller: TreeVersionController, rng: random.Random) -> None:
    draft = controller.create_draft(PRODUCT)
    controller.patch_draft(draft.id, _publishable(rng))

    outcome = controller.publish(draft.id)
    assert outcome.success
    assert not outcome.requires_warnings_confirm
    assert outcome.version.id == draft.id
    assert outcome.version.status == TreeStatus.ACTIVE
    assert outcome.version.tree.status == TreeStatus.ACTIVE
    assert outcome.version.published_at is not None

    trees = controller.get_trees(PRODUCT)
    assert trees.active.id == draft.id
    assert trees.draft.id == outcome.draft.id != draft.id
    assert trees.draft.tree == Tree.empty()
    assert outcome.to_payload()["data"]["id"] == draft.id


def test_published_versions_are_read_only(controller: TreeVersionController, rng: random.Random) -> None:
    draft = controller.create_draft(PRODUCT)
    controller.patch_draft(draft.id, _publishable(rng))
    controller.publish(draft.id)

    with pytest.raises(NotADraftError, match="ACTIVE"):
        controller.patch_draft(draft.id, {})
    with pytest.raises(NotADraftError):
        controller.publish(draft.id)
    with pytest.raises(NotADraftError):
        controller.discard_draft(draft.id)


def test_warnings_need_confirmation(controller: TreeVersionController, rng: random.Random) -> None:
    draft = controller.create_draft(PRODUCT)
    controller.patch_draft(draft.id, _with_warning(rng))

    pending = controller.publish(draft.id)
    assert pending.success
    assert pending.requires_warnings_confirm
    assert [finding.code for finding in pending.findings] == ["REQUIRED_GROUP_NO_DEFAULT"]
    assert pending.to_payload()["requiresWarningsConfirm"] is True
    assert "data" not in pending.to_payload()
    assert controller.get_trees(PRODUCT).active is None

    confirmed = controller.publish(draft.id, confirm_warnings=True)
    assert confirmed.version.status == TreeStatus.ACTIVE
    assert [finding.code for finding in confirmed.findings] == ["REQUIRED_GROUP_NO_DEFAULT"]


def test_unconfirmed_publish_keeps_prior_active(controller: TreeVersionController, rng: random.Random) -> None:
    first = controller.create_draft(PRODUCT)
    controller.patch_draft(first.id, _publishable(rng))
    second = controller.publish(first.id).draft
    active_before = controller.get_trees(PRODUCT).active
    controller.patch_draft(second.id, _with_warning(rng))

    pending = controller.publish(second.id)
    assert pending.requires_warnings_confirm
    trees = controller.get_trees(PRODUCT)
    assert trees.active == active_before
    assert trees.active.id == first.id
    assert trees.active.status == TreeStatus.ACTIVE
    assert trees.active.fingerprint == active_before.fingerprint
    assert trees.draft.id == second.id
    assert TreeStatus.RETIRED not in {version.status for version in controller.list_versions(PRODUCT)}

    controller.publish(second.id, confirm_warnings=True)
    assert controller.get_version(first.id).status == TreeStatus.RETIRED
    assert controller.get_trees(PRODUCT).active.id == second.id


def test_second_publish_retires_previous_active(controller: TreeVersionController, rng: random.Random) -> None:
    first = controller.create_draft(PRODUCT)
    controller.patch_draft(first.id, _publishable(rng, "Size"))
    second = controller.publish(first.id).draft
    controller.patch_draft(second.id, _publishable(rng, "Paper"))
    controller.publish(second.id)

    history = controller.list_versions(PRODUCT)
    assert [(version.id, version.status) for version in history][:2] == [
        (first.id, TreeStatus.RETIRED),
        (second.id, TreeStatus.ACTIVE),
    ]
    assert history[2].status == TreeStatus.DRAFT
    assert history[0].retired_at is not None
    assert sum(version.status == TreeStatus.ACTIVE for version in history) == 1
    assert sum(version.status == TreeStatus.DRAFT for version in history) == 1


def test_restore_copies_published_tree_into_draft(controller: TreeVersionController, rng: random.Random) -> None:
    first = controller.create_draft(PRODUCT)
    original = _publishable(rng)
    controller.patch_draft(first.id, original)
    next_draft = controller.publish(first.id).draft

    restored = controller.restore_version(first.id)
    assert restored.id == next_draft.id
    assert restored.status == TreeStatus.DRAFT
    assert restored.tree.nodes == original.nodes
    assert restored.fingerprint == controller.get_version(first.id).fingerprint
    assert controller.get_version(first.id).status == TreeStatus.ACTIVE

    with pytest.raises(ValueError, match="DRAFT"):
        controller.restore_version(next_draft.id)


def test_restore_creates_draft_when_none_exists(controller: TreeVersionController, rng: random.Random) -> None:
    first = controller.create_draft(PRODUCT)
    controller.patch_draft(first.id, _publishable(rng))
    next_draft = controller.publish(first.id).draft
    controller.discard_draft(next_draft.id)
    assert controller.get_trees(PRODUCT).draft is None

    restored = controller.restore_version(first.id)
    assert restored.id not in {first.id, next_draft.id}
    assert controller.get_trees(PRODUCT).draft.id == restored.id


def test_discard_draft_removes_it(controller: TreeVersionController) -> None:
    draft = controller.create_draft(PRODUCT)
    controller.discard_draft(draft.id)
    with pytest.raises(TreeVersionNotFoundError):
        controller.get_version(draft.id)
    assert controller.list_versions(PRODUCT) == []
    assert controller.create_draft(PRODUCT).id != draft.id


def test_apply_patch_runs_patch_builder_on_stored_draft(controller: TreeVersionController) -> None:
    draft = controller.create_draft(PRODUCT)
    version, result = controller.apply_patch(draft.id, patches.add_group, label="Size", rng=random.Random(3))
    assert result.new_id in version.tree.nodes
    assert controller.get_version(draft.id).tree.root_node_ids == [result.new_id]

    unchanged, noop = controller.apply_patch(draft.id, patches.delete_group, "missing")
    assert noop.new_id is None
    assert unchanged == controller.get_version(draft.id)
    assert unchanged.updated_at == version.updated_at


def test_seeded_draft_copies_active_tree(rng: random.Random) -> None:
    controller = TreeVersionController(settings=RuntimeSettings(seed_draft_from_active=True))
    draft = controller.create_draft(PRODUCT)
    controller.patch_draft(draft.id, _publishable(rng))
    outcome = controller.publish(draft.id)

    assert outcome.draft.tree.nodes == outcome.version.tree.nodes
    assert outcome.draft.tree.status == TreeStatus.DRAFT
    assert outcome.draft.fingerprint == outcome.version.fingerprint


def test_strict_ambiguity_setting_reaches_validator(raw_tree: Callable[..., dict[str, Any]]) -> None:
    rule = {"op": "EXISTS", "value": {"op": "ref", "ref": {"kind": "selectionRef", "selectionKey": "paper"}}}
    document = raw_tree(
        extra_nodes=[{"id": "o3", "type": "INPUT", "key": "size", "input": {"selectionKey": "size"}}],
        extra_edges=[
            {"id": "e3", "fromNodeId": "g1", "toNodeId": "o3", "status": "DISABLED", "priority": 2},
            {"id": "c1", "fromNodeId": "o1", "toNodeId": "o3", "status": "ENABLED", "condition": rule},
            {"id": "c2", "fromNodeId": "o2", "toNodeId": "o3", "status": "ENABLED", "condition": rule},
        ],
    )

    lenient = TreeVersionController()
    lenient_draft = lenient.create_draft(PRODUCT)
    lenient.patch_draft(lenient_draft.id, document)
    assert lenient.publish(lenient_draft.id).requires_warnings_confirm

    strict = TreeVersionController(settings=RuntimeSettings(ambiguous_edges_strict=True))
    strict_draft = strict.create_draft(PRODUCT)
    strict.patch_draft(strict_draft.id, document)
    with pytest.raises(PublishBlockedError, match="EDGE_AMBIGUOUS_MATCH"):
        strict.publish(strict_draft.id)


def test_file_store_persists_across_controllers(tmp_path: Path, rng: random.Random) -> None:
    root = tmp_path / "store"
    writer = TreeVersionController(FileTreeVersionStore(root))
    draft = writer.create_draft(PRODUCT)
    writer.patch_draft(draft.id, _publishable(rng))
    writer.publish(draft.id)

    reader = TreeVersionController(FileTreeVersionStore(root))
    trees = reader.get_trees(PRODUCT)
    assert trees.active.id == draft.id
    assert trees.active.tree == writer.get_version(draft.id).tree
    assert (root / "products" / sanitize_product_id(PRODUCT) / "history.json").is_file()
    assert (root / "versions" / f"{draft.id}.ref").read_text(encoding="utf-8").strip() == PRODUCT
    assert FileTreeVersionStore(root).list_products() == [PRODUCT]


def test_file_store_drops_refs_for_discarded_drafts(tmp_path: Path) -> None:
    root = tmp_path / "store"
    controller = TreeVersionController(FileTreeVersionStore(root))
    draft = controller.create_draft(PRODUCT)
    controller.discard_draft(draft.id)
    assert not (root / "versions" / f"{draft.id}.ref").exists()


def test_failed_index_write_leaves_no_unresolvable_draft(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, rng: random.Random
) -> None:
    original_write = state_store._atomic_write_text

    def failing_ref_write(path: Path, content: str) -> None:
        if path.suffix == ".ref":
            raise OSError("disk full")
        original_write(path, content)

    controller = TreeVersionController(FileTreeVersionStore(tmp_path / "store"))
    monkeypatch.setattr(state_store, "_atomic_write_text", failing_ref_write)
    with pytest.raises(OSError, match="disk full"):
        controller.create_draft(PRODUCT)
    monkeypatch.setattr(state_store, "_atomic_write_text", original_write)

    assert controller.list_versions(PRODUCT) == []
    draft = controller.create_draft(PRODUCT)
    assert controller.patch_draft(draft.id, _publishable(rng)).id == draft.id


def test_file_store_rejects_corrupt_history(tmp_path: Path) -> None:
    store = FileTreeVersionStore(tmp_path / "store")
    path = store.history_path(PRODUCT)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError, match="failed validation"):
        store.load_versions(PRODUCT)


def test_sanitize_product_id() -> None:
    assert sanitize_product_id(" cards / premium ") == "cards-premium"
    with pytest.raises(ValueError, match="non-empty"):
        sanitize_product_id("   ")
    with pytest.raises(ValueError, match="filesystem-safe"):
        sanitize_product_id("///")
