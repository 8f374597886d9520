"""Stratified, k-fold and temporal partitioning of training examples.

All shuffling goes through :class:`~tradescore.utils.random.SeededRNG` so a
split is fully determined by its inputs and seed.  Stratified variants shuffle
each class independently and cut every class at the same ratios, which keeps
the positive rate of every partition close to the global rate.  Temporal
variants sort chronologically and never shuffle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd

from tradescore.exceptions import ConfigurationError, DataError
from tradescore.utils.random import SeededRNG

from .examples import TrainingExample

logger = logging.getLogger(__name__)

DateExtractor = Callable[[TrainingExample], datetime]

RATIO_TOLERANCE = 1e-3
DEFAULT_SEED = 42


@dataclass
class SplitResult:
    train: List[TrainingExample]
    validation: List[TrainingExample]
    test: List[TrainingExample] = field(default_factory=list)


@dataclass
class KFold:
    fold: int
    train: List[TrainingExample]
    validation: List[TrainingExample]


@dataclass(frozen=True)
class PartitionStats:
    total: int
    positive: int
    negative: int
    win_rate: float


@dataclass(frozen=True)
class SplitStats:
    train: PartitionStats
    validation: PartitionStats
    test: PartitionStats


def timestamp_of(example: TrainingExample) -> datetime:
    """Default date extractor reading :attr:`TrainingExample.timestamp`."""
    if example.timestamp is None:
        raise DataError("temporal splitting requires timestamped examples")
    return example.timestamp


def _check_ratios(train_ratio: float, validation_ratio: float, test_ratio: float) -> None:
    total = train_ratio + validation_ratio + test_ratio
    if abs(total - 1.0) > RATIO_TOLERANCE:
        raise ConfigurationError(f"Split ratios must sum to 1.0, got {total}")


def _by_class(examples: Sequence[TrainingExample]):
    positives = [ex for ex in examples if ex.label == 1]
    negatives = [ex for ex in examples if ex.label == 0]
    return positives, negatives


def stratified_split(
    examples: Sequence[TrainingExample],
    train_ratio: float,
    validation_ratio: float,
    test_ratio: float,
    *,
    seed: int = DEFAULT_SEED,
    stratify: bool = True,
) -> SplitResult:
    """Split ``examples`` into train/validation/test sets.

    Raises
    ------
    ConfigurationError
        If the three ratios do not sum to one within ``1e-3``.
    """

    _check_ratios(train_ratio, validation_ratio, test_ratio)
    rng = SeededRNG(seed)

    if not stratify:
        shuffled = rng.shuffle(list(examples))
        train_end = int(len(shuffled) * train_ratio)
        val_end = train_end + int(len(shuffled) * validation_ratio)
        return SplitResult(
            shuffled[:train_end], shuffled[train_end:val_end], shuffled[val_end:]
        )

    positives, negatives = _by_class(examples)
    train: List[TrainingExample] = []
    validation: List[TrainingExample] = []
    test: List[TrainingExample] = []
    for group in (positives, negatives):
        shuffled = rng.shuffle(group)
        train_end = int(len(shuffled) * train_ratio)
        val_end = train_end + int(len(shuffled) * validation_ratio)
        train.extend(shuffled[:train_end])
        validation.extend(shuffled[train_end:val_end])
        test.extend(shuffled[val_end:])

    return SplitResult(rng.shuffle(train), rng.shuffle(validation), rng.shuffle(test))


def train_validation_split(
    examples: Sequence[TrainingExample],
    train_ratio: float = 0.8,
    *,
    seed: int = DEFAULT_SEED,
    stratify: bool = True,
) -> SplitResult:
    """Two-way split; any remainder is folded into the validation set."""

    result = stratified_split(
        examples, train_ratio, 1.0 - train_ratio, 0.0, seed=seed, stratify=stratify
    )
    return SplitResult(result.train, result.validation + result.test, [])


def _partition_stats(data: Sequence[TrainingExample]) -> PartitionStats:
    positive = sum(1 for ex in data if ex.label == 1)
    total = len(data)
    return PartitionStats(
        total=total,
        positive=positive,
        negative=total - positive,
        win_rate=positive / total * 100 if total else 0.0,
    )


def calculate_split_stats(split: SplitResult) -> SplitStats:
    return SplitStats(
        train=_partition_stats(split.train),
        validation=_partition_stats(split.validation),
        test=_partition_stats(split.test),
    )


def verify_class_balance(
    split: SplitResult, tolerance: float = 2.0
) -> tuple[bool, str]:
    """Check every non-empty partition's win rate against the overall rate.

    Returns ``(balanced, details)`` where ``tolerance`` is in percentage
    points.
    """

    everything = [*split.train, *split.validation, *split.test]
    if not everything:
        return True, "No examples to check"
    overall = _partition_stats(everything).win_rate
    stats = calculate_split_stats(split)

    failures = []
    for name, part in (
        ("train", stats.train),
        ("validation", stats.validation),
        ("test", stats.test),
    ):
        if part.total == 0:
            continue
        diff = abs(part.win_rate - overall)
        if diff > tolerance:
            failures.append(f"{name}: {part.win_rate:.1f}% (diff: {diff:.1f}%)")

    if failures:
        return False, f"Imbalanced splits: {', '.join(failures)}"
    return True, f"All splits within {tolerance}% of overall {overall:.1f}% win rate"


def format_split_stats(stats: SplitStats) -> str:
    """Render ``stats`` as a text table."""

    rows: Dict[str, PartitionStats] = {
        "Train": stats.train,
        "Validation": stats.validation,
    }
    if stats.test.total > 0:
        rows["Test"] = stats.test
    df = pd.DataFrame(
        {
            "Total": [s.total for s in rows.values()],
            "Wins": [s.positive for s in rows.values()],
            "Losses": [s.negative for s in rows.values()],
            "WinRate": [f"{s.win_rate:.1f}%" for s in rows.values()],
        },
        index=list(rows),
    )
    return "DATA SPLIT STATISTICS\n" + df.to_string()


def _sort_chronologically(
    examples: Sequence[TrainingExample], date_extractor: DateExtractor
) -> List[TrainingExample]:
    # sorted() is stable so examples sharing a date keep their input order
    return sorted(examples, key=date_extractor)


def temporal_split(
    examples: Sequence[TrainingExample],
    train_ratio: float,
    validation_ratio: float,
    test_ratio: float,
    date_extractor: DateExtractor = timestamp_of,
) -> SplitResult:
    """Chronological split: oldest examples train, newest examples test."""

    _check_ratios(train_ratio, validation_ratio, test_ratio)
    ordered = _sort_chronologically(examples, date_extractor)
    train_end = int(len(ordered) * train_ratio)
    val_end = train_end + int(len(ordered) * validation_ratio)
    return SplitResult(ordered[:train_end], ordered[train_end:val_end], ordered[val_end:])


def stratified_kfold_indices(
    labels: Sequence[int], k: int, seed: int = DEFAULT_SEED
) -> List[Tuple[np.ndarray, np.ndarray]]:
    """Return ``k`` ``(train_idx, val_idx)`` pairs with stratified folds.

    Each class is shuffled independently and dealt into ``k`` chunks whose
    sizes differ by at most one, so every validation fold mirrors the global
    class ratio.
    """

    if k < 2:
        raise ConfigurationError(f"k-fold requires k >= 2, got {k}")
    rng = SeededRNG(seed)
    y = np.asarray(labels)
    positives = np.flatnonzero(y == 1)
    negatives = np.flatnonzero(y == 0)
    positives = positives[rng.permutation(positives.size)]
    negatives = negatives[rng.permutation(negatives.size)]
    pos_chunks = np.array_split(positives, k)
    neg_chunks = np.array_split(negatives, k)

    folds = []
    for i in range(k):
        val_idx = np.concatenate([pos_chunks[i], neg_chunks[i]])
        train_idx = np.concatenate(
            [c for j, c in enumerate(pos_chunks) if j != i]
            + [c for j, c in enumerate(neg_chunks) if j != i]
        )
        folds.append(
            (train_idx[rng.permutation(train_idx.size)], val_idx[rng.permutation(val_idx.size)])
        )
    return folds


def generate_stratified_kfolds(
    examples: Sequence[TrainingExample], k: int, seed: int = DEFAULT_SEED
) -> List[KFold]:
    """Generate ``k`` stratified folds numbered from 1."""

    labels = [ex.label for ex in examples]
    return [
        KFold(
            fold=i + 1,
            train=[examples[j] for j in train_idx],
            validation=[examples[j] for j in val_idx],
        )
        for i, (train_idx, val_idx) in enumerate(stratified_kfold_indices(labels, k, seed))
    ]


def generate_walk_forward_folds(
    examples: Sequence[TrainingExample],
    k: int,
    date_extractor: DateExtractor = timestamp_of,
    *,
    min_train_ratio: float = 0.4,
) -> List[KFold]:
    """Expanding-window folds over chronologically sorted ``examples``.

    Fold ``i`` trains on ``ordered[:min_train + i*fold_size]`` and validates on
    the next ``fold_size`` examples.  Folds with an empty validation window are
    skipped, so fewer than ``k`` folds may be returned.
    """

    if k < 1:
        raise ConfigurationError(f"walk-forward requires k >= 1, got {k}")
    ordered = _sort_chronologically(examples, date_extractor)
    n = len(ordered)
    min_train = int(n * min_train_ratio)
    fold_size = (n - min_train) // k

    folds: List[KFold] = []
    for i in range(k):
        train_end = min_train + i * fold_size
        val_end = min(train_end + fold_size, n)
        validation = ordered[train_end:val_end]
        if not validation:
            continue
        folds.append(KFold(fold=i + 1, train=ordered[:train_end], validation=validation))
    if len(folds) < k:
        logger.warning(
            "Walk-forward produced fewer folds than requested",
            extra={"requested": k, "produced": len(folds), "examples": n},
        )
    return folds


__all__ = [
    "DEFAULT_SEED",
    "KFold",
    "PartitionStats",
    "SplitResult",
    "SplitStats",
    "calculate_split_stats",
    "format_split_stats",
    "generate_stratified_kfolds",
    "generate_walk_forward_folds",
    "stratified_kfold_indices",
    "stratified_split",
    "temporal_split",
    "timestamp_of",
    "train_validation_split",
    "verify_class_balance",
]
