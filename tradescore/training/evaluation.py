"""Classification metrics shared by every trainer.

Probabilities handled here are on the 0-100 scale used throughout the
library, and every metric is reported as a percentage.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Dict, Sequence

import numpy as np
from sklearn.metrics import (
    accuracy_score,
    f1_score,
    precision_score,
    recall_score,
    roc_auc_score,
)

logger = logging.getLogger(__name__)

#: Probabilities are clamped to ``[EPS, 1 - EPS]`` before taking logs.
EPS = 1e-15
CALIBRATION_BUCKETS = 10


@dataclass(frozen=True)
class ClassificationMetrics:
    auc: float = 0.0
    accuracy: float = 0.0
    precision: float = 0.0
    recall: float = 0.0
    f1_score: float = 0.0
    calibration_error: float = 0.0

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


METRIC_NAMES = tuple(ClassificationMetrics.__dataclass_fields__)


def sigmoid(z: np.ndarray | float) -> np.ndarray:
    """Numerically stable logistic function."""

    z = np.asarray(z, dtype=float)
    out = np.empty_like(z)
    pos = z >= 0
    out[pos] = 1.0 / (1.0 + np.exp(-z[pos]))
    ez = np.exp(z[~pos])
    out[~pos] = ez / (1.0 + ez)
    return out


def calculate_auc(probabilities: Sequence[float], labels: Sequence[int]) -> float:
    """ROC AUC in percent; ``50`` when only one class is present."""

    y = np.asarray(labels, dtype=int)
    if y.size == 0 or y.min() == y.max():
        return 50.0
    return float(roc_auc_score(y, np.asarray(probabilities, dtype=float)) * 100)


def calculate_calibration_error(
    probabilities: Sequence[float], labels: Sequence[int]
) -> float:
    """Count-weighted mean absolute calibration gap over ten buckets.

    ``probabilities`` are on the 0-100 scale; bucket ``i`` covers
    ``[10*i, 10*i + 10)`` with 100 falling into the last bucket.
    """

    p = np.asarray(probabilities, dtype=float)
    y = np.asarray(labels, dtype=float)
    if p.size == 0:
        return 0.0
    buckets = np.minimum(CALIBRATION_BUCKETS - 1, np.floor(p / 10).astype(int))
    buckets = np.clip(buckets, 0, CALIBRATION_BUCKETS - 1)
    counts = np.bincount(buckets, minlength=CALIBRATION_BUCKETS)
    prob_sums = np.bincount(buckets, weights=p, minlength=CALIBRATION_BUCKETS)
    label_sums = np.bincount(buckets, weights=y, minlength=CALIBRATION_BUCKETS)
    mask = counts > 0
    gaps = np.abs(prob_sums[mask] / counts[mask] - label_sums[mask] / counts[mask] * 100)
    return float(np.sum(gaps * counts[mask]) / np.sum(counts[mask]))


def binary_log_loss(probabilities: np.ndarray, labels: np.ndarray) -> float:
    """Mean binary cross-entropy for probabilities on the 0-1 scale."""

    p = np.clip(np.asarray(probabilities, dtype=float), EPS, 1 - EPS)
    y = np.asarray(labels, dtype=float)
    if p.size == 0:
        return 0.0
    return float(-np.mean(y * np.log(p) + (1 - y) * np.log(1 - p)))


def evaluate_probabilities(
    probabilities: Sequence[float], labels: Sequence[int]
) -> ClassificationMetrics:
    """Compute the standard metric set for 0-100 ``probabilities``.

    Predictions at or above 50 count as positive.  Empty input yields
    all-zero metrics.
    """

    p = np.asarray(probabilities, dtype=float)
    y = np.asarray(labels, dtype=int)
    if p.size == 0:
        return ClassificationMetrics()
    predicted = (p >= 50).astype(int)
    return ClassificationMetrics(
        auc=calculate_auc(p, y),
        accuracy=float(accuracy_score(y, predicted) * 100),
        precision=float(precision_score(y, predicted, zero_division=0) * 100),
        recall=float(recall_score(y, predicted, zero_division=0) * 100),
        f1_score=float(f1_score(y, predicted, zero_division=0) * 100),
        calibration_error=calculate_calibration_error(p, y),
    )


def serialise_metric_values(obj: object) -> object:
    """Recursively convert numpy types within ``obj`` to JSON-friendly values."""

    if isinstance(obj, dict):
        return {k: serialise_metric_values(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [serialise_metric_values(v) for v in obj]
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    return obj


__all__ = [
    "CALIBRATION_BUCKETS",
    "ClassificationMetrics",
    "EPS",
    "METRIC_NAMES",
    "binary_log_loss",
    "calculate_auc",
    "calculate_calibration_error",
    "evaluate_probabilities",
    "serialise_metric_values",
    "sigmoid",
]
