"""Baseline logistic regression trained by batch gradient descent.

Inputs are standardised with the training-set mean and (population) standard
deviation, which are frozen into :class:`ModelCoefficients` so inference never
re-derives them.  Predictions are returned on a 0-100 scale.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, List, Literal, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from opentelemetry import trace
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tradescore.data.examples import TrainingExample, to_matrix
from tradescore.exceptions import ModelError
from tradescore.training.evaluation import (
    ClassificationMetrics,
    binary_log_loss,
    evaluate_probabilities,
    sigmoid,
)
from tradescore.utils.random import SeededRNG

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

LOSS_LOG_INTERVAL = 100


class ClassWeights(BaseModel):
    positive: float = Field(1.0, gt=0)
    negative: float = Field(1.0, gt=0)

    model_config = ConfigDict(extra="forbid")


class LogisticOptions(BaseModel):
    """Hyper-parameters for :func:`train_logistic`."""

    learning_rate: float = Field(0.01, gt=0)
    iterations: int = Field(1000, ge=0)
    regularization: float = Field(0.01, ge=0)
    regularization_type: Literal["L1", "L2", "elastic"] = "L2"
    elastic_ratio: float = Field(0.5, ge=0, le=1)
    init_strategy: Literal["zero", "random", "xavier", "small_random"] = "zero"
    momentum: float = Field(0.0, ge=0, lt=1)
    seed: int = 42
    lr_schedule: Literal["constant", "step", "exponential", "cosine"] = "constant"
    lr_decay: float = Field(0.95, gt=0, le=1)
    lr_step_size: int = Field(100, ge=1)
    class_weight: Union[Literal["none", "balanced"], ClassWeights] = "none"

    model_config = ConfigDict(extra="forbid")


class ModelCoefficients(BaseModel):
    """Trained linear model persisted with camelCase keys."""

    intercept: float = 0.0
    weights: Dict[str, float] = Field(default_factory=dict)
    feature_means: Dict[str, float] = Field(default_factory=dict, alias="featureMeans")
    feature_stds: Dict[str, float] = Field(default_factory=dict, alias="featureStds")
    version: str = "v1.0-trained"
    training_samples: int = Field(0, alias="trainingSamples")
    validation_accuracy: float = Field(0.0, alias="validationAccuracy")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @property
    def feature_names(self) -> List[str]:
        return list(self.weights)

    def arrays(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Return ``(weights, means, stds)`` aligned with :attr:`feature_names`."""
        names = self.feature_names
        w = np.array([self.weights[n] for n in names], dtype=float)
        means = np.array([self.feature_means.get(n, 0.0) for n in names], dtype=float)
        stds = np.array([self.feature_stds.get(n, 1.0) for n in names], dtype=float)
        stds[stds <= 0] = 1.0
        return w, means, stds


def compute_class_weights(
    labels: np.ndarray,
    option: Union[str, ClassWeights],
) -> ClassWeights:
    """Resolve ``option`` into per-class sample weights.

    ``"balanced"`` uses inverse frequency ``n / (2 * n_class)``; a class with
    no samples keeps weight 1.
    """

    if isinstance(option, ClassWeights):
        return option
    if option == "balanced":
        total = len(labels)
        positives = int(np.sum(labels == 1))
        negatives = total - positives
        return ClassWeights(
            positive=total / (2 * positives) if positives else 1.0,
            negative=total / (2 * negatives) if negatives else 1.0,
        )
    return ClassWeights()


def _learning_rate(options: LogisticOptions, iteration: int) -> float:
    base = options.learning_rate
    if options.lr_schedule == "step":
        return base * options.lr_decay ** (iteration // options.lr_step_size)
    if options.lr_schedule == "exponential":
        return base * options.lr_decay ** (iteration / 100)
    if options.lr_schedule == "cosine":
        return base * 0.5 * (1 + math.cos(math.pi * iteration / max(options.iterations, 1)))
    return base


def _regularization_gradient(options: LogisticOptions, w: np.ndarray) -> np.ndarray:
    reg = options.regularization
    if options.regularization_type == "L1":
        return reg * np.sign(w)
    if options.regularization_type == "elastic":
        ratio = options.elastic_ratio
        return ratio * reg * np.sign(w) + (1 - ratio) * reg * w
    return reg * w


def _initial_parameters(
    options: LogisticOptions, n_features: int
) -> Tuple[np.ndarray, float]:
    strategy = options.init_strategy
    if strategy == "zero" or n_features == 0:
        return np.zeros(n_features), 0.0
    rng = SeededRNG(options.seed)
    w = rng.random(n_features) * 2 - 1
    if strategy == "xavier":
        w *= math.sqrt(1 / n_features)
    elif strategy == "small_random":
        w *= 0.1
    intercept = (float(rng.random()) * 2 - 1) * 0.5
    return w, intercept


def fit_logistic_matrix(
    X: np.ndarray,
    y: np.ndarray,
    feature_names: Sequence[str],
    options: Optional[LogisticOptions] = None,
) -> ModelCoefficients:
    """Fit the logistic model on a dense matrix.

    ``X`` columns must follow ``feature_names``.  This is the core used by
    :func:`train_logistic` and by routines that perturb feature columns.
    """

    options = options or LogisticOptions()
    names = list(feature_names)
    n, k = X.shape if X.ndim == 2 else (0, len(names))
    if n == 0:
        logger.warning("No training examples; returning an untrained model")
        return ModelCoefficients(
            weights={name: 0.0 for name in names},
            feature_means={name: 0.0 for name in names},
            feature_stds={name: 1.0 for name in names},
        )

    class_weights = compute_class_weights(y, options.class_weight)
    if options.class_weight != "none":
        logger.info(
            "Using class weights",
            extra={
                "positive_weight": round(class_weights.positive, 4),
                "negative_weight": round(class_weights.negative, 4),
            },
        )

    means = X.mean(axis=0)
    stds = X.std(axis=0)
    stds[stds == 0] = 1.0
    Xn = (X - means) / stds

    w, b = _initial_parameters(options, k)
    sample_weight = np.where(y == 1, class_weights.positive, class_weights.negative)
    vel_w = np.zeros(k)
    vel_b = 0.0
    momentum = options.momentum

    for iteration in range(options.iterations):
        lr = _learning_rate(options, iteration)
        p = sigmoid(b + Xn @ w)
        err = (p - y) * sample_weight
        grad_b = err.sum() / n
        grad_w = Xn.T @ err / n + _regularization_gradient(options, w)
        vel_b = momentum * vel_b + lr * grad_b
        b -= vel_b
        vel_w = momentum * vel_w + lr * grad_w
        w = w - vel_w
        if iteration % LOSS_LOG_INTERVAL == 0:
            logger.debug(
                "logistic iteration",
                extra={"iteration": iteration, "loss": binary_log_loss(p, y)},
            )

    predicted = sigmoid(b + Xn @ w) >= 0.5
    accuracy = float(np.mean(predicted == (y == 1)) * 100)

    return ModelCoefficients(
        intercept=float(b),
        weights={name: float(v) for name, v in zip(names, w)},
        feature_means={name: float(v) for name, v in zip(names, means)},
        feature_stds={name: float(v) for name, v in zip(names, stds)},
        training_samples=n,
        validation_accuracy=accuracy,
    )


def train_logistic(
    examples: Sequence[TrainingExample],
    options: Optional[LogisticOptions] = None,
    *,
    feature_names: Optional[Sequence[str]] = None,
) -> ModelCoefficients:
    """Train the baseline model on ``examples``.

    ``validation_accuracy`` on the returned coefficients is measured on the
    training set itself.
    """

    options = options or LogisticOptions()
    with tracer.start_as_current_span("train_logistic"):
        X, y, names = to_matrix(examples, feature_names)
        coefficients = fit_logistic_matrix(X, y, names, options)
        logger.info(
            "Trained logistic model",
            extra={
                "samples": coefficients.training_samples,
                "features": len(names),
                "train_accuracy": round(coefficients.validation_accuracy, 2),
            },
        )
        return coefficients


def predict_matrix(X: np.ndarray, coefficients: ModelCoefficients) -> np.ndarray:
    """Probabilities (0-100) for rows of ``X`` ordered like the coefficients."""

    w, means, stds = coefficients.arrays()
    if X.shape[0] == 0:
        return np.zeros(0)
    z = coefficients.intercept + ((X - means) / stds) @ w
    return np.clip(sigmoid(z) * 100, 0, 100)


def predict_examples(
    examples: Sequence[TrainingExample], coefficients: ModelCoefficients
) -> np.ndarray:
    X, _, _ = to_matrix(examples, coefficients.feature_names)
    return predict_matrix(X, coefficients)


def predict_probability(
    features: Mapping[str, float], coefficients: ModelCoefficients
) -> float:
    """Probability (0-100) for a single feature vector.

    Features the model was not trained on are ignored and missing ones are
    treated as ``0``.
    """

    x = np.array(
        [[features.get(name, 0.0) for name in coefficients.feature_names]], dtype=float
    )
    return float(predict_matrix(x, coefficients)[0])


def evaluate_logistic(
    examples: Sequence[TrainingExample], coefficients: ModelCoefficients
) -> ClassificationMetrics:
    if not examples:
        return ClassificationMetrics()
    probabilities = predict_examples(examples, coefficients)
    labels = [ex.label for ex in examples]
    return evaluate_probabilities(probabilities, labels)


def get_feature_importance(coefficients: ModelCoefficients) -> List[Tuple[str, float]]:
    """Features ranked by absolute weight."""
    ranked = [(name, abs(w)) for name, w in coefficients.weights.items()]
    return sorted(ranked, key=lambda item: item[1], reverse=True)


def serialize_coefficients(coefficients: ModelCoefficients) -> str:
    return coefficients.model_dump_json(by_alias=True, indent=2)


def deserialize_coefficients(raw: str) -> ModelCoefficients:
    try:
        return ModelCoefficients.model_validate_json(raw)
    except ValidationError as exc:
        raise ModelError("Invalid model coefficients") from exc


__all__ = [
    "ClassWeights",
    "LogisticOptions",
    "ModelCoefficients",
    "compute_class_weights",
    "deserialize_coefficients",
    "evaluate_logistic",
    "fit_logistic_matrix",
    "get_feature_importance",
    "predict_examples",
    "predict_matrix",
    "predict_probability",
    "serialize_coefficients",
    "train_logistic",
]
