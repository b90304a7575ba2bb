from __future__ import annotations

import re
from typing import Iterable


def slugify_name(name: str, *, max_length: int = 48, separator: str = "_") -> str:
    """Lowercase machine slug; runs of non-alphanumerics collapse to one separator."""
    escaped = re.escape(separator)
    slug = re.sub(r"[^a-zA-Z0-9]+", separator, name.lower()).strip(separator)
    slug = re.sub(rf"{escaped}{{2,}}", separator, slug)
    return slug[:max_length].rstrip(separator)


def dedupe_slug(base_slug: str, used: set[str], *, max_length: int = 48, separator: str = "_") -> str:
    if base_slug not in used:
        used.add(base_slug)
        return base_slug

    suffix_ord = ord("a")
    while True:
        suffix = f"{separator}{chr(suffix_ord)}"
        candidate = f"{base_slug[: max_length - len(suffix)]}{suffix}".rstrip(separator)
        if candidate not in used:
            used.add(candidate)
            return candidate
        suffix_ord += 1
        if suffix_ord > ord("z"):
            raise ValueError(f"unable to disambiguate slug for base '{base_slug}'")


def derive_machine_key(node_id: str, taken: Iterable[str]) -> str:
    """Stable key for a freshly allocated node, unique among ``taken``."""
    base = slugify_name(node_id) or "node"
    return dedupe_slug(base, set(taken))
