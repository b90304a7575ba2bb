"""Version Lifecycle Controller.

Owns the draft/active relationship per product. Editing is permissive:
``patch_draft`` stores whatever document it is given. Publishing is strict:
the validator gates every promotion to ACTIVE.
"""

from __future__ import annotations

import inspect
import logging
import uuid
from datetime import UTC, datetime
from typing import Any, Callable, Mapping

from .canonical import tree_fingerprint
from .document import coerce_tree
from .models import (
    TREE_STATUS_TRANSITIONS,
    Finding,
    ProductTrees,
    PublishOutcome,
    Tree,
    TreeStatus,
    TreeVersion,
    ValidationReport,
)
from .patches import PatchResult
from .settings import RuntimeSettings
from .state_store import FileTreeVersionStore, InMemoryTreeVersionStore, TreeVersionStore
from .validator import validate

logger = logging.getLogger(__name__)


class TreeVersionNotFoundError(LookupError):
    """No stored version has the requested id."""

    def __init__(self, version_id: str) -> None:
        super().__init__(f"tree version not found: {version_id}")
        self.version_id = version_id


class NotADraftError(ValueError):
    """An edit or publish targeted a version that is no longer a DRAFT."""

    def __init__(self, version_id: str, status: TreeStatus) -> None:
        super().__init__(f"tree version {version_id} is {status.value}, not DRAFT")
        self.version_id = version_id
        self.status = status


class PublishBlockedError(ValueError):
    """Publish refused because validation produced errors.

    Carries the whole report so callers can show every blocking finding.
    """

    def __init__(self, version_id: str, report: ValidationReport) -> None:
        codes = ", ".join(sorted({finding.code for finding in report.errors}))
        super().__init__(f"publish of {version_id} blocked by {len(report.errors)} error(s): {codes}")
        self.version_id = version_id
        self.report = report

    @property
    def findings(self) -> list[Finding]:
        return self.report.findings

    def to_payload(self) -> dict[str, Any]:
        return {"success": False, "findings": [finding.to_wire() for finding in self.findings]}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def new_version_id() -> str:
    return f"tv_{uuid.uuid4().hex}"


def _transition(version: TreeVersion, new_status: TreeStatus, at: datetime) -> TreeVersion:
    allowed = TREE_STATUS_TRANSITIONS[version.status]
    if new_status not in allowed:
        raise ValueError(
            f"Illegal tree version status transition for {version.id}: "
            f"{version.status.value} -> {new_status.value}"
        )
    stamps: dict[str, Any] = {"status": new_status, "updated_at": at}
    if new_status == TreeStatus.ACTIVE:
        stamps["published_at"] = at
    elif new_status == TreeStatus.RETIRED:
        stamps["retired_at"] = at
    stamps["tree"] = version.tree.model_copy(update={"status": new_status})
    return version.model_copy(update=stamps)


class TreeVersionController:
    """Draft, patch and publish trees for products held in a :class:`TreeVersionStore`."""

    def __init__(
        self,
        store: TreeVersionStore | None = None,
        *,
        settings: RuntimeSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], str] = new_version_id,
    ) -> None:
        self.store = store if store is not None else InMemoryTreeVersionStore()
        self.settings = settings or RuntimeSettings()
        self._clock = clock
        self._id_factory = id_factory

    @classmethod
    def from_settings(cls, settings: RuntimeSettings | None = None) -> "TreeVersionController":
        settings = settings or RuntimeSettings.from_env()
        if settings.store_backend == "filesystem":
            store: TreeVersionStore = FileTreeVersionStore(settings.store_path())
        else:
            store = InMemoryTreeVersionStore()
        return cls(store, settings=settings)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _product_of(self, version_id: str) -> str:
        product_id = self.store.product_for_version(version_id)
        if product_id is None:
            raise TreeVersionNotFoundError(version_id)
        return product_id

    @staticmethod
    def _find(versions: list[TreeVersion], version_id: str) -> int:
        for index, version in enumerate(versions):
            if version.id == version_id:
                return index
        raise TreeVersionNotFoundError(version_id)

    @staticmethod
    def _current(versions: list[TreeVersion], status: TreeStatus) -> TreeVersion | None:
        return next((version for version in reversed(versions) if version.status == status), None)

    def _new_draft(self, product_id: str, tree: Tree, at: datetime) -> TreeVersion:
        tree = tree.model_copy(update={"status": TreeStatus.DRAFT})
        return TreeVersion(
            id=self._id_factory(),
            product_id=product_id,
            status=TreeStatus.DRAFT,
            tree=tree,
            fingerprint=tree_fingerprint(tree),
            created_at=at,
            updated_at=at,
        )

    def _seed_tree(self, versions: list[TreeVersion]) -> Tree:
        active = self._current(versions, TreeStatus.ACTIVE)
        if self.settings.seed_draft_from_active and active is not None:
            return active.tree
        return Tree.empty()

    def _replace_draft_tree(self, draft: TreeVersion, tree: Tree, at: datetime) -> TreeVersion:
        tree = tree.model_copy(update={"status": TreeStatus.DRAFT})
        return draft.model_copy(update={"tree": tree, "fingerprint": tree_fingerprint(tree), "updated_at": at})

    def _draft_slot(self, versions: list[TreeVersion], draft_id: str) -> int:
        index = self._find(versions, draft_id)
        if versions[index].status != TreeStatus.DRAFT:
            raise NotADraftError(draft_id, versions[index].status)
        return index

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def create_draft(self, product_id: str) -> TreeVersion:
        """Return the product's draft, opening one if none exists."""
        with self.store.locked(product_id):
            versions = self.store.load_versions(product_id)
            existing = self._current(versions, TreeStatus.DRAFT)
            if existing is not None:
                return existing
            draft = self._new_draft(product_id, self._seed_tree(versions), self._clock())
            self.store.save_versions(product_id, [*versions, draft])
        logger.info("Opened draft %s for product %s", draft.id, product_id)
        return draft

    def patch_draft(self, draft_id: str, tree_json: Tree | Mapping[str, Any]) -> TreeVersion:
        """Replace a draft's document with ``tree_json`` (normalized, forced to DRAFT).

        Raises:
            TreeVersionNotFoundError: If no version has ``draft_id``.
            NotADraftError: If the version is ACTIVE or RETIRED.
        """
        product_id = self._product_of(draft_id)
        tree = coerce_tree(tree_json)
        with self.store.locked(product_id):
            versions = self.store.load_versions(product_id)
            index = self._draft_slot(versions, draft_id)
            versions[index] = self._replace_draft_tree(versions[index], tree, self._clock())
            self.store.save_versions(product_id, versions)
        logger.info("Patched draft %s for product %s", draft_id, product_id)
        return versions[index]

    def apply_patch(
        self,
        draft_id: str,
        patch: Callable[..., PatchResult],
        *args: Any,
        **kwargs: Any,
    ) -> tuple[TreeVersion, PatchResult]:
        """Run ``patch(tree, *args, **kwargs)`` against the stored draft and store the result.

        Patches that allocate ids get ``attempts`` from settings unless the
        caller passes one.
        """
        if "attempts" in inspect.signature(patch).parameters:
            kwargs.setdefault("attempts", self.settings.id_random_attempts)
        product_id = self._product_of(draft_id)
        with self.store.locked(product_id):
            versions = self.store.load_versions(product_id)
            index = self._draft_slot(versions, draft_id)
            result = patch(versions[index].tree, *args, **kwargs)
            if result.tree is not versions[index].tree:
                versions[index] = self._replace_draft_tree(versions[index], result.tree, self._clock())
                self.store.save_versions(product_id, versions)
        return versions[index], result

    def publish(self, draft_id: str, *, confirm_warnings: bool = False) -> PublishOutcome:
        """Validate a draft and promote it to ACTIVE.

        Errors always block. Warnings block until ``confirm_warnings`` is
        set, in which case the outcome has ``requires_warnings_confirm`` and
        nothing is stored. On success the prior ACTIVE version is retired
        and a new draft is opened, all in one store write.

        Raises:
            TreeVersionNotFoundError: If no version has ``draft_id``.
            NotADraftError: If the version is not a DRAFT.
            PublishBlockedError: If validation found errors.
        """
        product_id = self._product_of(draft_id)
        with self.store.locked(product_id):
            versions = self.store.load_versions(product_id)
            index = self._draft_slot(versions, draft_id)
            draft = versions[index]
            report = validate(draft.tree, ambiguous_edges_strict=self.settings.ambiguous_edges_strict)
            if report.errors:
                logger.info("Publish of %s blocked by %d error(s)", draft_id, len(report.errors))
                raise PublishBlockedError(draft_id, report)
            if report.warnings and not confirm_warnings:
                logger.info("Publish of %s needs confirmation of %d warning(s)", draft_id, len(report.warnings))
                return PublishOutcome(success=True, requires_warnings_confirm=True, findings=report.warnings)

            now = self._clock()
            updated: list[TreeVersion] = []
            for version in versions:
                if version.id == draft_id:
                    version = _transition(version, TreeStatus.ACTIVE, now)
                    active = version
                elif version.status == TreeStatus.ACTIVE:
                    version = _transition(version, TreeStatus.RETIRED, now)
                    logger.info("Retired version %s of product %s", version.id, product_id)
                updated.append(version)
            next_draft = self._new_draft(product_id, self._seed_tree(updated), now)
            updated.append(next_draft)
            self.store.save_versions(product_id, updated)

        logger.info("Published %s as the active tree for product %s", draft_id, product_id)
        return PublishOutcome(success=True, findings=report.warnings, version=active, draft=next_draft)

    def get_trees(self, product_id: str) -> ProductTrees:
        with self.store.locked(product_id):
            versions = self.store.load_versions(product_id)
        return ProductTrees(
            draft=self._current(versions, TreeStatus.DRAFT),
            active=self._current(versions, TreeStatus.ACTIVE),
        )

    def get_version(self, version_id: str) -> TreeVersion:
        product_id = self._product_of(version_id)
        with self.store.locked(product_id):
            versions = self.store.load_versions(product_id)
        return versions[self._find(versions, version_id)]

    def list_versions(self, product_id: str) -> list[TreeVersion]:
        """Every stored version of a product, oldest first."""
        with self.store.locked(product_id):
            return self.store.load_versions(product_id)

    def restore_version(self, version_id: str) -> TreeVersion:
        """Copy a published (ACTIVE or RETIRED) tree into the product's draft.

        History is untouched; the draft is created if the product has none.

        Raises:
            TreeVersionNotFoundError: If no version has ``version_id``.
            ValueError: If the version is itself a DRAFT.
        """
        product_id = self._product_of(version_id)
        with self.store.locked(product_id):
            versions = self.store.load_versions(product_id)
            source = versions[self._find(versions, version_id)]
            if source.status == TreeStatus.DRAFT:
                raise ValueError(f"tree version {version_id} is a DRAFT; only published versions can be restored")
            now = self._clock()
            current = self._current(versions, TreeStatus.DRAFT)
            if current is None:
                draft = self._new_draft(product_id, source.tree, now)
                versions.append(draft)
            else:
                index = self._find(versions, current.id)
                draft = self._replace_draft_tree(current, source.tree, now)
                versions[index] = draft
            self.store.save_versions(product_id, versions)
        logger.info("Restored version %s into draft %s for product %s", version_id, draft.id, product_id)
        return draft

    def discard_draft(self, draft_id: str) -> None:
        """Remove an unpublished draft from history.

        Raises:
            TreeVersionNotFoundError: If no version has ``draft_id``.
            NotADraftError: If the version has been published.
        """
        product_id = self._product_of(draft_id)
        with self.store.locked(product_id):
            versions = self.store.load_versions(product_id)
            index = self._draft_slot(versions, draft_id)
            del versions[index]
            self.store.save_versions(product_id, versions)
        logger.info("Discarded draft %s for product %s", draft_id, product_id)

