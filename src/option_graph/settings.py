from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

from .ids import DEFAULT_RANDOM_ATTEMPTS

STORE_BACKENDS = frozenset({"memory", "filesystem"})

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    store_backend: str = "memory"
    store_root: str = "option_graph_store"
    seed_draft_from_active: bool = False
    ambiguous_edges_strict: bool = False
    id_random_attempts: int = DEFAULT_RANDOM_ATTEMPTS

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            store_backend=os.getenv("OPTION_GRAPH_STORE_BACKEND", "memory"),
            store_root=os.getenv("OPTION_GRAPH_STORE_ROOT", "option_graph_store"),
            seed_draft_from_active=_get_env_bool("OPTION_GRAPH_SEED_DRAFT_FROM_ACTIVE", default=False),
            ambiguous_edges_strict=_get_env_bool("OPTION_GRAPH_AMBIGUOUS_EDGES_STRICT", default=False),
            id_random_attempts=_get_env_int(
                "OPTION_GRAPH_ID_RANDOM_ATTEMPTS",
                default=DEFAULT_RANDOM_ATTEMPTS,
                minimum=1,
                maximum=1_000,
            ),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        store_backend = self.store_backend.strip().lower()
        if store_backend not in STORE_BACKENDS:
            raise ValueError(f"OPTION_GRAPH_STORE_BACKEND must be one of: {', '.join(sorted(STORE_BACKENDS))}")
        store_root = self.store_root.strip()
        if not store_root:
            raise ValueError("OPTION_GRAPH_STORE_ROOT must be non-empty")
        if not 1 <= self.id_random_attempts <= 1_000:
            raise ValueError(f"OPTION_GRAPH_ID_RANDOM_ATTEMPTS must be in 1..1000, got: {self.id_random_attempts}")
        return replace(self, store_backend=store_backend, store_root=store_root)

    def store_path(self, repo_root: Path | None = None) -> Path:
        path = Path(self.store_root)
        if path.is_absolute():
            return path
        return (repo_root or Path.cwd()) / path


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean (1/0/true/false/yes/no/on/off), got: {raw!r}")


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
