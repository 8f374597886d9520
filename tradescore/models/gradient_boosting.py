"""Gradient boosted regression trees for binary classification.

Trees are fitted to the first and second derivatives of the log-loss
(``g = p - y``, ``h = p * (1 - p)``) and leaves hold the Newton step
``-G / (H + lambda)``.  Each tree is stored as an arena of parallel numpy
arrays indexed by node id; :meth:`Tree.node` exposes :class:`Leaf` /
:class:`Split` views for inspection.

Randomness (row bootstrap and column sampling) is drawn from a single
:class:`~tradescore.utils.random.SeededRNG` in a fixed order, so a given
``(data, config)`` pair always produces the same model.
"""

from __future__ import annotations

import json
import logging
import math
import threading
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from opentelemetry import trace
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tradescore.data.examples import TrainingExample, to_matrix
from tradescore.exceptions import ModelError
from tradescore.training.evaluation import (
    EPS,
    ClassificationMetrics,
    binary_log_loss,
    calculate_auc,
    evaluate_probabilities,
    sigmoid,
)
from tradescore.utils.parallel import check_cancelled
from tradescore.utils.random import SeededRNG

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

#: Minimum validation-loss decrease that counts as an improvement.
MIN_IMPROVEMENT = 1e-4
PROGRESS_INTERVAL = 10
LEAF = -1


class GBMConfig(BaseModel):
    """Boosting hyper-parameters (persisted with camelCase keys)."""

    num_trees: int = Field(100, ge=0, alias="numTrees")
    max_depth: int = Field(4, ge=0, alias="maxDepth")
    learning_rate: float = Field(0.1, ge=0, alias="learningRate")
    subsample: float = Field(0.8, gt=0, le=1)
    colsample: float = Field(0.8, gt=0, le=1)
    min_samples_leaf: int = Field(10, ge=1, alias="minSamplesLeaf")
    min_samples_split: int = Field(20, ge=1, alias="minSamplesSplit")
    l2_regularization: float = Field(1.0, ge=0, alias="l2Regularization")
    seed: int = 42
    early_stopping_rounds: Optional[int] = Field(10, ge=1, alias="earlyStoppingRounds")

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


DEFAULT_GBM_CONFIG = GBMConfig()


@dataclass(frozen=True)
class Leaf:
    prediction: float
    samples: int


@dataclass(frozen=True)
class Split:
    feature: int
    threshold: float
    left: int
    right: int
    gain: float
    samples: int


TreeNode = Union[Leaf, Split]


class Tree:
    """A regression tree stored as parallel node arrays.

    ``feature[i] == LEAF`` marks node ``i`` as a leaf whose output is
    ``value[i]``; otherwise rows with ``x[feature[i]] <= threshold[i]`` go to
    ``left[i]`` and the rest to ``right[i]``.  Node 0 is the root.
    """

    __slots__ = ("feature", "threshold", "left", "right", "value", "gain", "samples")

    def __init__(
        self,
        feature: Sequence[int],
        threshold: Sequence[float],
        left: Sequence[int],
        right: Sequence[int],
        value: Sequence[float],
        gain: Sequence[float],
        samples: Sequence[int],
    ) -> None:
        self.feature = np.asarray(feature, dtype=np.int64)
        self.threshold = np.asarray(threshold, dtype=float)
        self.left = np.asarray(left, dtype=np.int64)
        self.right = np.asarray(right, dtype=np.int64)
        self.value = np.asarray(value, dtype=float)
        self.gain = np.asarray(gain, dtype=float)
        self.samples = np.asarray(samples, dtype=np.int64)

    def __len__(self) -> int:
        return int(self.feature.size)

    @property
    def depth(self) -> int:
        def _depth(i: int) -> int:
            if self.feature[i] == LEAF:
                return 0
            return 1 + max(_depth(int(self.left[i])), _depth(int(self.right[i])))

        return _depth(0) if len(self) else 0

    def node(self, i: int) -> TreeNode:
        if self.feature[i] == LEAF:
            return Leaf(prediction=float(self.value[i]), samples=int(self.samples[i]))
        return Split(
            feature=int(self.feature[i]),
            threshold=float(self.threshold[i]),
            left=int(self.left[i]),
            right=int(self.right[i]),
            gain=float(self.gain[i]),
            samples=int(self.samples[i]),
        )

    def predict(self, X: np.ndarray) -> np.ndarray:
        """Raw leaf outputs for the (normalised) rows of ``X``."""

        idx = np.zeros(X.shape[0], dtype=np.int64)
        while True:
            feat = self.feature[idx]
            rows = np.nonzero(feat != LEAF)[0]
            if rows.size == 0:
                break
            node = idx[rows]
            go_left = X[rows, feat[rows]] <= self.threshold[node]
            idx[rows] = np.where(go_left, self.left[node], self.right[node])
        return self.value[idx]

    def to_dict(self) -> Dict[str, list]:
        return {name: getattr(self, name).tolist() for name in self.__slots__}

    @classmethod
    def from_dict(cls, data: Mapping[str, Sequence]) -> "Tree":
        return cls(**{name: data[name] for name in cls.__slots__})


class _TreeBuilder:
    def __init__(
        self,
        X: np.ndarray,
        grad: np.ndarray,
        hess: np.ndarray,
        columns: np.ndarray,
        config: GBMConfig,
        importance: np.ndarray,
    ) -> None:
        self.X = X
        self.grad = grad
        self.hess = hess
        self.columns = columns
        self.config = config
        self.importance = importance
        self.lam = config.l2_regularization
        self.nodes: Dict[str, list] = {name: [] for name in Tree.__slots__}

    def _new_node(self) -> int:
        for values in self.nodes.values():
            values.append(0)
        return len(self.nodes["feature"]) - 1

    def _set(self, i: int, **values) -> None:
        for name, value in values.items():
            self.nodes[name][i] = value

    def _leaf_value(self, rows: np.ndarray) -> float:
        G = float(self.grad[rows].sum())
        H = float(self.hess[rows].sum())
        return -G / max(H + self.lam, EPS)

    def find_best_split(self, rows: np.ndarray) -> Optional[Tuple[int, float, float]]:
        """Return ``(feature, threshold, gain)`` or ``None``.

        Candidate cut points lie between consecutive distinct sorted values
        with at least ``min_samples_leaf`` rows on either side; only splits
        with strictly positive gain qualify.
        """

        min_leaf = self.config.min_samples_leaf
        n = rows.size
        if n < 2 * min_leaf:
            return None
        g = self.grad[rows]
        h = self.hess[rows]
        G = float(g.sum())
        H = float(h.sum())
        parent = G * G / max(H + self.lam, EPS)
        positions = np.arange(min_leaf - 1, n - min_leaf)
        if positions.size == 0:
            return None

        best: Optional[Tuple[int, float, float]] = None
        best_gain = 0.0
        for col in self.columns:
            x = self.X[rows, col]
            order = np.argsort(x, kind="stable")
            xs = x[order]
            pos = positions[xs[positions] != xs[positions + 1]]
            if pos.size == 0:
                continue
            GL = np.cumsum(g[order])[pos]
            HL = np.cumsum(h[order])[pos]
            GR = G - GL
            HR = H - HL
            gains = (
                GL * GL / np.maximum(HL + self.lam, EPS)
                + GR * GR / np.maximum(HR + self.lam, EPS)
                - parent
            )
            j = int(np.argmax(gains))
            if gains[j] > best_gain:
                best_gain = float(gains[j])
                best = (int(col), float((xs[pos[j]] + xs[pos[j] + 1]) / 2), best_gain)
        return best

    def build(self, rows: np.ndarray, depth: int = 0) -> int:
        i = self._new_node()
        split = None
        if depth < self.config.max_depth and rows.size >= self.config.min_samples_split:
            split = self.find_best_split(rows)
        if split is None:
            self._set(
                i,
                feature=LEAF,
                threshold=0.0,
                left=LEAF,
                right=LEAF,
                value=self._leaf_value(rows),
                gain=0.0,
                samples=int(rows.size),
            )
            return i

        feature, threshold, gain = split
        self.importance[feature] += gain * rows.size
        mask = self.X[rows, feature] <= threshold
        left = self.build(rows[mask], depth + 1)
        right = self.build(rows[~mask], depth + 1)
        self._set(
            i,
            feature=feature,
            threshold=threshold,
            left=left,
            right=right,
            value=0.0,
            gain=gain,
            samples=int(rows.size),
        )
        return i

    def tree(self) -> Tree:
        return Tree(**self.nodes)


@dataclass
class GBMMetrics:
    train_auc: float = 0.0
    val_auc: float = 0.0
    train_loss: float = 0.0
    val_loss: float = 0.0
    trees_built: int = 0
    best_iteration: int = 0


@dataclass
class GBMModel:
    """Trained boosting ensemble with frozen normalisation statistics."""

    trees: List[Tree]
    learning_rate: float
    base_score: float
    feature_names: List[str]
    feature_means: Dict[str, float]
    feature_stds: Dict[str, float]
    feature_importance: Dict[str, float]
    config: GBMConfig
    training_samples: int = 0
    version: str = "v1.0-gbm"
    metrics: GBMMetrics = field(default_factory=GBMMetrics)

    def normalise(self, X: np.ndarray) -> np.ndarray:
        means = np.array([self.feature_means[n] for n in self.feature_names], dtype=float)
        stds = np.array([self.feature_stds[n] for n in self.feature_names], dtype=float)
        stds[stds <= 0] = 1.0
        return (X - means) / stds

    def raw_scores(self, X: np.ndarray) -> np.ndarray:
        """Log-odds for rows of ``X`` (columns ordered like ``feature_names``)."""
        Xn = self.normalise(X)
        scores = np.full(X.shape[0], self.base_score, dtype=float)
        for tree in self.trees:
            scores += self.learning_rate * tree.predict(Xn)
        return scores


def _base_score(y: np.ndarray) -> float:
    rate = min(max(float(y.mean()), EPS), 1 - EPS)
    return math.log(rate / (1 - rate))


def train_gbm(
    train_data: Sequence[TrainingExample],
    val_data: Sequence[TrainingExample] = (),
    config: Optional[GBMConfig] = None,
    *,
    cancel_event: Optional[threading.Event] = None,
) -> GBMModel:
    """Fit a boosting model on ``train_data`` monitoring ``val_data``.

    Early stopping triggers after ``early_stopping_rounds`` consecutive trees
    without a validation-loss improvement of at least ``1e-4``; it is disabled
    when ``val_data`` is empty.  Every tree built is kept.
    """

    cfg = config or DEFAULT_GBM_CONFIG
    with tracer.start_as_current_span("train_gbm") as span:
        X, y, names = to_matrix(train_data)
        Xv, yv, _ = to_matrix(val_data, names)
        n, k = X.shape
        span.set_attribute("gbm.samples", n)
        span.set_attribute("gbm.features", k)

        if n == 0:
            logger.warning("No training examples; returning a prior-only GBM")
            return GBMModel(
                trees=[],
                learning_rate=cfg.learning_rate,
                base_score=0.0,
                feature_names=names,
                feature_means={},
                feature_stds={},
                feature_importance={},
                config=cfg,
            )

        means = X.mean(axis=0)
        stds = X.std(axis=0)
        stds[stds == 0] = 1.0
        Xn = (X - means) / stds
        Xvn = (Xv - means) / stds if Xv.shape[0] else Xv

        base = _base_score(y)
        logger.info(
            "Starting gradient boosting",
            extra={
                "train_samples": n,
                "val_samples": int(Xv.shape[0]),
                "positive_rate": round(float(y.mean()) * 100, 2),
                "base_score": round(base, 6),
                **cfg.model_dump(),
            },
        )

        rng = SeededRNG(cfg.seed)
        train_scores = np.full(n, base)
        val_scores = np.full(Xv.shape[0], base)
        importance = np.zeros(k)
        trees: List[Tree] = []
        has_val = Xv.shape[0] > 0
        best_val_loss = math.inf
        best_iteration = 0
        stale_rounds = 0
        n_rows = int(n * cfg.subsample)
        n_cols = max(1, int(k * cfg.colsample))

        for t in range(cfg.num_trees):
            check_cancelled(cancel_event, "gbm training")
            p = sigmoid(train_scores)
            grad = p - y
            hess = p * (1 - p)
            rows = rng.integers(0, n, n_rows)
            columns = np.sort(rng.permutation(k)[:n_cols])

            builder = _TreeBuilder(Xn, grad, hess, columns, cfg, importance)
            builder.build(rows)
            tree = builder.tree()
            trees.append(tree)

            train_scores += cfg.learning_rate * tree.predict(Xn)
            if has_val:
                val_scores += cfg.learning_rate * tree.predict(Xvn)

            train_loss = binary_log_loss(sigmoid(train_scores), y)
            val_loss = binary_log_loss(sigmoid(val_scores), yv) if has_val else 0.0

            if t % PROGRESS_INTERVAL == 0 or t == cfg.num_trees - 1:
                logger.debug(
                    "boosting round",
                    extra={
                        "tree": t + 1,
                        "train_loss": round(train_loss, 6),
                        "val_loss": round(val_loss, 6),
                        "train_auc": round(calculate_auc(train_scores, y), 3),
                    },
                )

            if has_val and cfg.early_stopping_rounds:
                if val_loss < best_val_loss - MIN_IMPROVEMENT:
                    best_val_loss = val_loss
                    best_iteration = t + 1
                    stale_rounds = 0
                else:
                    stale_rounds += 1
                    if stale_rounds >= cfg.early_stopping_rounds:
                        logger.info(
                            "Early stopping",
                            extra={
                                "tree": t + 1,
                                "rounds": cfg.early_stopping_rounds,
                            },
                        )
                        break

        total = importance.sum()
        feature_importance = {
            name: float(value / total)
            for name, value in zip(names, importance)
            if total > 0 and value > 0
        }

        metrics = GBMMetrics(
            train_auc=calculate_auc(train_scores, y),
            val_auc=calculate_auc(val_scores, yv) if has_val else 0.0,
            train_loss=binary_log_loss(sigmoid(train_scores), y),
            val_loss=binary_log_loss(sigmoid(val_scores), yv) if has_val else 0.0,
            trees_built=len(trees),
            best_iteration=best_iteration if has_val else len(trees),
        )
        span.set_attribute("gbm.trees_built", metrics.trees_built)
        logger.info("Gradient boosting complete", extra=asdict(metrics))

        return GBMModel(
            trees=trees,
            learning_rate=cfg.learning_rate,
            base_score=base,
            feature_names=names,
            feature_means={name: float(v) for name, v in zip(names, means)},
            feature_stds={name: float(v) for name, v in zip(names, stds)},
            feature_importance=feature_importance,
            config=cfg,
            training_samples=n,
            metrics=metrics,
        )


def predict_gbm_matrix(X: np.ndarray, model: GBMModel) -> np.ndarray:
    """Probabilities (0-100) for rows of ``X`` ordered like the model features."""
    if X.shape[0] == 0:
        return np.zeros(0)
    return sigmoid(model.raw_scores(X)) * 100


def predict_gbm_examples(
    examples: Sequence[TrainingExample], model: GBMModel
) -> np.ndarray:
    X, _, _ = to_matrix(examples, model.feature_names)
    return predict_gbm_matrix(X, model)


def predict_gbm(features: Mapping[str, float], model: GBMModel) -> float:
    """Probability (0-100) for a single feature vector; missing features are 0."""
    x = np.array([[features.get(name, 0.0) for name in model.feature_names]], dtype=float)
    return float(predict_gbm_matrix(x, model)[0])


def evaluate_gbm(
    examples: Sequence[TrainingExample], model: GBMModel
) -> ClassificationMetrics:
    if not examples:
        return ClassificationMetrics()
    return evaluate_probabilities(
        predict_gbm_examples(examples, model), [ex.label for ex in examples]
    )


def get_gbm_feature_importance(model: GBMModel) -> List[Tuple[str, float]]:
    return sorted(model.feature_importance.items(), key=lambda item: item[1], reverse=True)


def serialize_gbm(model: GBMModel) -> str:
    payload = {
        "version": model.version,
        "learningRate": model.learning_rate,
        "baseScore": model.base_score,
        "featureNames": model.feature_names,
        "featureMeans": model.feature_means,
        "featureStds": model.feature_stds,
        "featureImportance": model.feature_importance,
        "trainingSamples": model.training_samples,
        "config": model.config.model_dump(by_alias=True),
        "metrics": asdict(model.metrics),
        "trees": [tree.to_dict() for tree in model.trees],
    }
    return json.dumps(payload, indent=2)


def deserialize_gbm(raw: str) -> GBMModel:
    try:
        data = json.loads(raw)
        return GBMModel(
            trees=[Tree.from_dict(t) for t in data["trees"]],
            learning_rate=float(data["learningRate"]),
            base_score=float(data["baseScore"]),
            feature_names=list(data["featureNames"]),
            feature_means=dict(data["featureMeans"]),
            feature_stds=dict(data["featureStds"]),
            feature_importance=dict(data.get("featureImportance", {})),
            config=GBMConfig.model_validate(data.get("config", {})),
            training_samples=int(data.get("trainingSamples", 0)),
            version=data.get("version", "v1.0-gbm"),
            metrics=GBMMetrics(**data.get("metrics", {})),
        )
    except (json.JSONDecodeError, KeyError, TypeError, ValidationError) as exc:
        raise ModelError("Invalid GBM model payload") from exc


__all__ = [
    "DEFAULT_GBM_CONFIG",
    "GBMConfig",
    "GBMMetrics",
    "GBMModel",
    "Leaf",
    "Split",
    "Tree",
    "TreeNode",
    "deserialize_gbm",
    "evaluate_gbm",
    "get_gbm_feature_importance",
    "predict_gbm",
    "predict_gbm_examples",
    "predict_gbm_matrix",
    "serialize_gbm",
    "train_gbm",
]
