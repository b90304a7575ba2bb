from __future__ import annotations

import fcntl
import logging
import os
import re
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import ContextManager, Iterator, Protocol

from pydantic import ValidationError

from .models import ProductHistory, TreeVersion

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"
_REF_SUFFIX = ".ref"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the actual data file can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* through a temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, model_name: str) -> str:
    """Read a JSON file and raise a clear error if missing or unreadable.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{model_name} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{model_name} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{model_name} at {path} is empty")
    return text


def sanitize_product_id(product_id: str) -> str:
    """Sanitize a product ID for use as a filesystem path component.

    Raises:
        ValueError: If the product ID is empty or contains no safe characters.
    """
    value = product_id.strip()
    if not value:
        raise ValueError("product_id must be non-empty")
    value = re.sub(r"[^A-Za-z0-9._-]+", "-", value).strip("-.")
    if not value:
        raise ValueError("product_id contains no filesystem-safe characters")
    return value[:128]


# ---------------------------------------------------------------------------
# Storage boundary
# ---------------------------------------------------------------------------


class TreeVersionStore(Protocol):
    """Persistence for each product's version history.

    ``load_versions`` and ``save_versions`` are only called inside
    ``locked(product_id)``; a save replaces the whole history at once so a
    publish (retire, activate, open draft) lands as one write.
    """

    def locked(self, product_id: str) -> ContextManager[None]: ...

    def load_versions(self, product_id: str) -> list[TreeVersion]: ...

    def save_versions(self, product_id: str, versions: list[TreeVersion]) -> None: ...

    def product_for_version(self, version_id: str) -> str | None: ...

    def list_products(self) -> list[str]: ...


class InMemoryTreeVersionStore:
    """Process-local store; histories are kept as immutable tuples."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._histories: dict[str, tuple[TreeVersion, ...]] = {}
        self._version_index: dict[str, str] = {}

    @contextmanager
    def locked(self, product_id: str) -> Iterator[None]:
        with self._lock:
            yield

    def load_versions(self, product_id: str) -> list[TreeVersion]:
        with self._lock:
            return list(self._histories.get(product_id, ()))

    def save_versions(self, product_id: str, versions: list[TreeVersion]) -> None:
        with self._lock:
            previous = {version.id for version in self._histories.get(product_id, ())}
            current = {version.id for version in versions}
            for stale_id in previous - current:
                self._version_index.pop(stale_id, None)
            for version_id in current:
                self._version_index[version_id] = product_id
            self._histories[product_id] = tuple(versions)

    def product_for_version(self, version_id: str) -> str | None:
        with self._lock:
            return self._version_index.get(version_id)

    def list_products(self) -> list[str]:
        with self._lock:
            return sorted(self._histories)


class FileTreeVersionStore:
    """Filesystem store: one JSON history per product plus a version-id index.

    Layout::

        <root>/products/<product>/history.json
        <root>/versions/<version_id>.ref     (holds the product id)

    History files are replaced atomically and guarded by an ``fcntl`` lock
    on a sidecar file, so concurrent processes sharing the directory
    serialize their read-modify-write cycles.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.products_dir = root / "products"
        self.versions_dir = root / "versions"
        self.ensure_structure()

    def ensure_structure(self) -> None:
        for directory in (self.root, self.products_dir, self.versions_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def history_path(self, product_id: str) -> Path:
        return self.products_dir / sanitize_product_id(product_id) / "history.json"

    def _ref_path(self, version_id: str) -> Path:
        return self.versions_dir / f"{sanitize_product_id(version_id)}{_REF_SUFFIX}"

    @contextmanager
    def locked(self, product_id: str) -> Iterator[None]:
        with _locked_file(self.history_path(product_id)):
            yield

    def load_versions(self, product_id: str) -> list[TreeVersion]:
        """Read a product's history; an unknown product has an empty history.

        Raises:
            ValueError: If the history file is corrupt or fails validation.
        """
        path = self.history_path(product_id)
        if not path.is_file():
            return []
        text = _safe_read_json(path, f"history for product {product_id}")
        try:
            history = ProductHistory.model_validate_json(text)
        except ValidationError as exc:
            logger.error("History for product %s at %s is corrupt", product_id, path)
            raise ValueError(f"history for product {product_id} at {path} failed validation: {exc}") from exc
        if history.product_id != product_id:
            raise ValueError(f"history at {path} belongs to product {history.product_id!r}, not {product_id!r}")
        return list(history.versions)

    def save_versions(self, product_id: str, versions: list[TreeVersion]) -> None:
        """Replace a product's history.

        Index files for new versions land before the history and stale ones
        are removed after it, so every version in a stored history resolves.
        """
        previous = {version.id for version in self.load_versions(product_id)}
        current = {version.id for version in versions}
        for version_id in current - previous:
            _atomic_write_text(self._ref_path(version_id), f"{product_id}\n")

        history = ProductHistory(product_id=product_id, versions=versions)
        _atomic_write_text(self.history_path(product_id), history.model_dump_json(by_alias=True, indent=2))

        for version_id in previous - current:
            self._ref_path(version_id).unlink(missing_ok=True)

    def product_for_version(self, version_id: str) -> str | None:
        try:
            path = self._ref_path(version_id)
        except ValueError:
            return None
        if not path.is_file():
            return None
        product_id = _safe_read_json(path, f"version index for {version_id}").strip()
        return product_id or None

    def list_products(self) -> list[str]:
        products: list[str] = []
        for history_path in sorted(self.products_dir.glob("*/history.json")):
            text = _safe_read_json(history_path, "product history")
            try:
                products.append(ProductHistory.model_validate_json(text).product_id)
            except ValidationError as exc:
                logger.error("Corrupt history at %s", history_path)
                raise ValueError(f"product history at {history_path} failed validation: {exc}") from exc
        return sorted(products)
