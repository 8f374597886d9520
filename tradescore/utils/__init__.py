"""Utility helpers for reproducibility, parallel execution and file IO."""

from .io import atomic_write_json, atomic_write_text
from .parallel import check_cancelled, run_units
from .random import SEED_STRIDE, SeededRNG, set_seed

__all__ = [
    "SEED_STRIDE",
    "SeededRNG",
    "atomic_write_json",
    "atomic_write_text",
    "check_cancelled",
    "run_units",
    "set_seed",
]
