from __future__ import annotations

import random
import secrets
from typing import Iterable

DEFAULT_RANDOM_ATTEMPTS = 25


class IdAllocator:
    """Allocates ids that never collide with anything already in a tree.

    Nodes and edges share one namespace. Random suffixes come from ``rng``
    when given (reproducible in tests) or from :mod:`secrets`. When no random
    source is usable, or every attempt collided, ids fall back to a counter
    scoped to this allocator, which is unique by construction.
    """

    def __init__(
        self,
        existing: Iterable[str],
        *,
        rng: random.Random | None = None,
        attempts: int = DEFAULT_RANDOM_ATTEMPTS,
    ) -> None:
        if attempts < 0:
            raise ValueError(f"attempts must be >= 0, got: {attempts}")
        self._taken: set[str] = set(existing)
        self._rng = rng
        self._attempts = attempts
        self._counter = len(self._taken)

    def _random_suffix(self) -> str | None:
        if self._rng is not None:
            return f"{self._rng.getrandbits(64):016x}"
        try:
            return secrets.token_hex(8)
        except NotImplementedError:
            return None

    def allocate(self, prefix: str) -> str:
        for _ in range(self._attempts):
            suffix = self._random_suffix()
            if suffix is None:
                break
            candidate = f"{prefix}{suffix}"
            if candidate not in self._taken:
                self._taken.add(candidate)
                return candidate
        return self._next_counter_id(prefix)

    def _next_counter_id(self, prefix: str) -> str:
        while True:
            self._counter += 1
            candidate = f"{prefix}{self._counter}"
            if candidate not in self._taken:
                self._taken.add(candidate)
                return candidate

    def __contains__(self, candidate: object) -> bool:
        return candidate in self._taken
