"""Shared fixtures: synthetic trade-candidate datasets from a fixed seed."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List

import numpy as np
import pytest

from tradescore.data.examples import TrainingExample

START = datetime(2024, 1, 1)


def make_examples(
    n: int = 200,
    *,
    seed: int = 7,
    noise_features: int = 3,
    win_rate: float = 0.4,
    separation: float = 2.0,
) -> List[TrainingExample]:
    """Labelled examples where ``feature_x`` separates the classes.

    ``noise_a``/``noise_b``/... carry no signal; ``constant`` never varies.
    Examples are one day apart starting at 2024-01-01.
    """

    rng = np.random.default_rng(seed)
    labels = (rng.random(n) < win_rate).astype(int)
    examples = []
    for i, label in enumerate(labels):
        features = {"feature_x": float(rng.normal(separation if label else -separation, 1.0))}
        for j in range(noise_features):
            features[f"noise_{chr(ord('a') + j)}"] = float(rng.normal(0.0, 1.0))
        features["constant"] = 1.0
        examples.append(
            TrainingExample(
                features=features,
                label=int(label),
                timestamp=START + timedelta(days=i),
                ticker=f"T{i % 5}",
            )
        )
    return examples


def make_threshold_examples(n: int = 1000, *, seed: int = 3) -> List[TrainingExample]:
    """Examples labelled exactly by ``feature_x > 0`` with two noise columns."""

    rng = np.random.default_rng(seed)
    out = []
    for i in range(n):
        x = float(rng.normal(0.0, 1.0))
        out.append(
            TrainingExample(
                features={
                    "feature_x": x,
                    "noise_a": float(rng.normal(0.0, 1.0)),
                    "noise_b": float(rng.normal(0.0, 1.0)),
                },
                label=int(x > 0),
                timestamp=START + timedelta(days=i),
            )
        )
    return out


@pytest.fixture
def examples() -> List[TrainingExample]:
    return make_examples()


@pytest.fixture
def small_examples() -> List[TrainingExample]:
    return make_examples(80, seed=11)


@pytest.fixture(autouse=True)
def _reset_logging_state() -> None:
    """Ensure each test starts with a clean root logger configuration."""

    root = logging.getLogger()
    handlers = list(root.handlers)
    configured = getattr(root, "_tradescore_configured", None)
    yield
    root.handlers[:] = handlers
    if configured is None and hasattr(root, "_tradescore_configured"):
        delattr(root, "_tradescore_configured")
