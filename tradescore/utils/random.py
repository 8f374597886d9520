"""Deterministic random sources shared by every sampling step."""
from __future__ import annotations

import random
from typing import Sequence, TypeVar

import numpy as np

T = TypeVar("T")

#: Stride between seeds of independent units such as bootstrap members.
SEED_STRIDE = 1000


def set_seed(seed: int) -> None:
    """Seed ``random`` and ``numpy`` for reproducibility."""
    random.seed(seed)
    np.random.seed(seed)


class SeededRNG:
    """Thin wrapper around :class:`numpy.random.Generator`.

    Every component that needs randomness receives one of these instead of
    touching global state.  Independent units of work (a fold, a bootstrap
    member) obtain their own generator through :meth:`spawn` so results do not
    depend on execution order.
    """

    def __init__(self, seed: int = 42) -> None:
        self.seed = int(seed)
        self._gen = np.random.default_rng(self.seed)

    def spawn(self, offset: int) -> "SeededRNG":
        """Return a fresh generator seeded with ``seed + offset``."""
        return SeededRNG(self.seed + int(offset))

    def random(self, size: int | None = None):
        return self._gen.random(size)

    def integers(self, low: int, high: int, size: int | None = None) -> np.ndarray:
        return self._gen.integers(low, high, size=size)

    def permutation(self, n: int) -> np.ndarray:
        return self._gen.permutation(n)

    def shuffle(self, items: Sequence[T]) -> list[T]:
        """Return a shuffled copy of ``items``."""
        order = self._gen.permutation(len(items))
        return [items[i] for i in order]

    def choice(self, n: int, size: int, replace: bool = True) -> np.ndarray:
        return self._gen.choice(n, size=size, replace=replace)

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return f"SeededRNG(seed={self.seed})"


__all__ = ["SEED_STRIDE", "SeededRNG", "set_seed"]
