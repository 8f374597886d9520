"""Second-stage blending of the logistic baseline and the boosting model.

Three methods are supported:

``simple_average``
    ``0.5 * logistic + 0.5 * gbm`` on the 0-100 probability scale.
``weighted_average``
    Same blend with weights proportional to each base model's validation AUC.
``meta_learner``
    A two-input logistic regression fitted on the standardised base-model
    training predictions.  The standardisation statistics are frozen into the
    :class:`StackedModel` and reused at prediction time.

By default the meta-learner sees in-sample base predictions.  Setting
``StackingConfig.cv_folds`` produces out-of-fold predictions instead by
retraining both base models on each stratified fold.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Literal, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from opentelemetry import trace
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tradescore.data.examples import TrainingExample, labels_of, to_matrix
from tradescore.data.splitter import stratified_kfold_indices
from tradescore.exceptions import ModelError
from tradescore.training.evaluation import (
    ClassificationMetrics,
    binary_log_loss,
    evaluate_probabilities,
    sigmoid,
)

from .gradient_boosting import (
    DEFAULT_GBM_CONFIG,
    GBMConfig,
    GBMModel,
    evaluate_gbm,
    predict_gbm_matrix,
    train_gbm,
)
from .logistic import (
    LogisticOptions,
    ModelCoefficients,
    evaluate_logistic,
    predict_matrix,
    train_logistic,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

StackingMethod = Literal["simple_average", "weighted_average", "meta_learner"]


class StackingConfig(BaseModel):
    method: StackingMethod = "meta_learner"
    cv_folds: Optional[int] = Field(None, ge=2)
    meta_iterations: int = Field(500, ge=0)
    meta_learning_rate: float = Field(0.01, gt=0)
    meta_regularization: float = Field(0.01, ge=0)
    seed: int = 42

    model_config = ConfigDict(extra="forbid")


DEFAULT_STACKING_CONFIG = StackingConfig()


class MetaWeights(BaseModel):
    logistic: float
    gbm: float
    intercept: float = 0.0


class BaseStats(BaseModel):
    logistic: float
    gbm: float


@dataclass
class StackingMetrics:
    train_auc: float = 0.0
    val_auc: float = 0.0
    logistic_auc: float = 0.0
    gbm_auc: float = 0.0


@dataclass
class StackedModel:
    """Base models plus the blend that must always travel with them."""

    logistic_model: ModelCoefficients
    gbm_model: GBMModel
    method: StackingMethod
    meta_weights: MetaWeights
    meta_feature_means: BaseStats
    meta_feature_stds: BaseStats
    training_samples: int = 0
    version: str = "v1.0-stacked"
    metrics: StackingMetrics = field(default_factory=StackingMetrics)


def _base_predictions(
    examples: Sequence[TrainingExample],
    logistic_model: ModelCoefficients,
    gbm_model: GBMModel,
) -> Tuple[np.ndarray, np.ndarray]:
    X_l, _, _ = to_matrix(examples, logistic_model.feature_names)
    X_g, _, _ = to_matrix(examples, gbm_model.feature_names)
    return predict_matrix(X_l, logistic_model), predict_gbm_matrix(X_g, gbm_model)


def _out_of_fold_predictions(
    examples: Sequence[TrainingExample],
    folds: int,
    seed: int,
    logistic_options: Optional[LogisticOptions],
    gbm_config: Optional[GBMConfig],
) -> Tuple[np.ndarray, np.ndarray]:
    n = len(examples)
    lp = np.zeros(n)
    gp = np.zeros(n)
    labels = [ex.label for ex in examples]
    logistic_options = logistic_options or LogisticOptions()
    gbm_config = gbm_config or DEFAULT_GBM_CONFIG
    for fold, (train_idx, val_idx) in enumerate(
        stratified_kfold_indices(labels, folds, seed), start=1
    ):
        fold_train = [examples[i] for i in train_idx]
        fold_val = [examples[i] for i in val_idx]
        lm = train_logistic(
            fold_train, logistic_options.model_copy(update={"seed": seed + fold})
        )
        gm = train_gbm(fold_train, (), gbm_config.model_copy(update={"seed": seed + fold}))
        lp[val_idx], gp[val_idx] = _base_predictions(fold_val, lm, gm)
    return lp, gp


def _fit_meta_learner(
    z_logistic: np.ndarray,
    z_gbm: np.ndarray,
    labels: np.ndarray,
    config: StackingConfig,
) -> MetaWeights:
    """Gradient descent on ``intercept + w_l*z_l + w_g*z_g``.

    L2 shrinkage applies to the two weights only, never the intercept.
    """

    n = labels.size
    w = np.array([0.5, 0.5])
    b = 0.0
    Z = np.column_stack([z_logistic, z_gbm])
    lr = config.meta_learning_rate
    reg = config.meta_regularization
    if n == 0:
        return MetaWeights(logistic=0.5, gbm=0.5, intercept=0.0)
    for iteration in range(config.meta_iterations):
        p = sigmoid(b + Z @ w)
        err = p - labels
        b -= lr * err.sum() / n
        w = w - lr * (Z.T @ err / n + reg * w)
        if iteration % 100 == 0:
            logger.debug(
                "meta-learner iteration",
                extra={
                    "iteration": iteration,
                    "loss": binary_log_loss(sigmoid(b + Z @ w), labels),
                },
            )
    return MetaWeights(logistic=float(w[0]), gbm=float(w[1]), intercept=float(b))


def _stats(values: np.ndarray) -> Tuple[float, float]:
    if values.size == 0:
        return 0.0, 1.0
    std = float(values.std())
    return float(values.mean()), std if std > 0 else 1.0


def train_stacked_model(
    train_data: Sequence[TrainingExample],
    val_data: Sequence[TrainingExample],
    logistic_model: ModelCoefficients,
    gbm_model: GBMModel,
    config: Optional[StackingConfig] = None,
    *,
    logistic_options: Optional[LogisticOptions] = None,
    gbm_config: Optional[GBMConfig] = None,
) -> StackedModel:
    """Blend two trained base models.

    ``logistic_options`` and ``gbm_config`` are only used to retrain the base
    models per fold when ``config.cv_folds`` is set.
    """

    cfg = config or DEFAULT_STACKING_CONFIG
    with tracer.start_as_current_span("train_stacked_model"):
        labels = labels_of(train_data).astype(float)
        if cfg.cv_folds and len(train_data) >= cfg.cv_folds:
            train_lp, train_gp = _out_of_fold_predictions(
                train_data, cfg.cv_folds, cfg.seed, logistic_options, gbm_config
            )
        else:
            train_lp, train_gp = _base_predictions(train_data, logistic_model, gbm_model)

        logistic_metrics = evaluate_logistic(val_data, logistic_model)
        gbm_metrics = evaluate_gbm(val_data, gbm_model)

        l_mean, l_std = _stats(train_lp)
        g_mean, g_std = _stats(train_gp)

        if cfg.method == "simple_average":
            weights = MetaWeights(logistic=0.5, gbm=0.5)
        elif cfg.method == "weighted_average":
            total = logistic_metrics.auc + gbm_metrics.auc
            if total > 0:
                weights = MetaWeights(
                    logistic=logistic_metrics.auc / total, gbm=gbm_metrics.auc / total
                )
            else:
                weights = MetaWeights(logistic=0.5, gbm=0.5)
        else:
            weights = _fit_meta_learner(
                (train_lp - l_mean) / l_std, (train_gp - g_mean) / g_std, labels, cfg
            )

        model = StackedModel(
            logistic_model=logistic_model,
            gbm_model=gbm_model,
            method=cfg.method,
            meta_weights=weights,
            meta_feature_means=BaseStats(logistic=l_mean, gbm=g_mean),
            meta_feature_stds=BaseStats(logistic=l_std, gbm=g_std),
            training_samples=len(train_data),
        )
        model.metrics = StackingMetrics(
            train_auc=evaluate_stacked_model(train_data, model).auc,
            val_auc=evaluate_stacked_model(val_data, model).auc,
            logistic_auc=logistic_metrics.auc,
            gbm_auc=gbm_metrics.auc,
        )
        best_base = max(logistic_metrics.auc, gbm_metrics.auc)
        logger.info(
            "Trained stacked model",
            extra={
                "method": cfg.method,
                "meta_weights": weights.model_dump(),
                "val_auc": round(model.metrics.val_auc, 3),
                "delta_vs_best_base": round(model.metrics.val_auc - best_base, 3),
            },
        )
        return model


def _combine(model: StackedModel, lp: np.ndarray, gp: np.ndarray) -> np.ndarray:
    w = model.meta_weights
    if model.method != "meta_learner":
        return w.logistic * lp + w.gbm * gp
    z_l = (lp - model.meta_feature_means.logistic) / model.meta_feature_stds.logistic
    z_g = (gp - model.meta_feature_means.gbm) / model.meta_feature_stds.gbm
    return sigmoid(w.intercept + w.logistic * z_l + w.gbm * z_g) * 100


def predict_stacked_examples(
    examples: Sequence[TrainingExample], model: StackedModel
) -> np.ndarray:
    if not examples:
        return np.zeros(0)
    lp, gp = _base_predictions(examples, model.logistic_model, model.gbm_model)
    return _combine(model, lp, gp)


def predict_stacked(features: Mapping[str, float], model: StackedModel) -> float:
    """Blended probability (0-100) for one feature vector."""

    lp, gp = _base_predictions(
        [TrainingExample(features=dict(features), label=0)],
        model.logistic_model,
        model.gbm_model,
    )
    return float(_combine(model, lp, gp)[0])


def predict_stacked_simple(
    features: Mapping[str, float],
    logistic_model: ModelCoefficients,
    gbm_model: GBMModel,
    logistic_weight: float = 0.5,
) -> float:
    lp, gp = _base_predictions(
        [TrainingExample(features=dict(features), label=0)], logistic_model, gbm_model
    )
    return float(logistic_weight * lp[0] + (1 - logistic_weight) * gp[0])


def evaluate_stacked_model(
    examples: Sequence[TrainingExample], model: StackedModel
) -> ClassificationMetrics:
    if not examples:
        return ClassificationMetrics()
    return evaluate_probabilities(
        predict_stacked_examples(examples, model), [ex.label for ex in examples]
    )


def serialize_stacked_model_weights(model: StackedModel) -> str:
    """Serialise the blend without the base models."""

    payload = {
        "method": model.method,
        "metaWeights": model.meta_weights.model_dump(),
        "metaFeatureMeans": model.meta_feature_means.model_dump(),
        "metaFeatureStds": model.meta_feature_stds.model_dump(),
        "version": model.version,
        "trainingSamples": model.training_samples,
        "metrics": asdict(model.metrics),
    }
    return json.dumps(payload, indent=2)


def create_stacked_model_from_weights(
    weights: Union[str, Mapping[str, Any]],
    logistic_model: ModelCoefficients,
    gbm_model: GBMModel,
) -> StackedModel:
    """Reattach serialised blend weights to their base models."""

    try:
        data = json.loads(weights) if isinstance(weights, str) else dict(weights)
        return StackedModel(
            logistic_model=logistic_model,
            gbm_model=gbm_model,
            method=data.get("method", "meta_learner"),
            meta_weights=MetaWeights.model_validate(data["metaWeights"]),
            meta_feature_means=BaseStats.model_validate(data["metaFeatureMeans"]),
            meta_feature_stds=BaseStats.model_validate(data["metaFeatureStds"]),
            training_samples=int(data.get("trainingSamples", 0)),
            version=data.get("version", "v1.0-stacked"),
            metrics=StackingMetrics(**data.get("metrics", {})),
        )
    except (json.JSONDecodeError, KeyError, TypeError, ValidationError) as exc:
        raise ModelError("Invalid stacked model weights") from exc


def compare_all_models(
    val_data: Sequence[TrainingExample],
    logistic_model: ModelCoefficients,
    gbm_model: GBMModel,
    stacked_model: StackedModel,
) -> Tuple[str, Dict[str, Dict[str, float]]]:
    """Return the name of the best model by validation AUC and all results.

    Ties keep the earlier model in the order logistic, gbm, stacked.
    """

    metrics = {
        "logistic": evaluate_logistic(val_data, logistic_model),
        "gbm": evaluate_gbm(val_data, gbm_model),
        "stacked": evaluate_stacked_model(val_data, stacked_model),
    }
    results = {
        name: {"auc": m.auc, "calibration": m.calibration_error}
        for name, m in metrics.items()
    }
    best = "logistic"
    for name in ("gbm", "stacked"):
        if results[name]["auc"] > results[best]["auc"]:
            best = name
    return best, results


__all__ = [
    "BaseStats",
    "DEFAULT_STACKING_CONFIG",
    "MetaWeights",
    "StackedModel",
    "StackingConfig",
    "StackingMetrics",
    "compare_all_models",
    "create_stacked_model_from_weights",
    "evaluate_stacked_model",
    "predict_stacked",
    "predict_stacked_examples",
    "predict_stacked_simple",
    "serialize_stacked_model_weights",
    "train_stacked_model",
]
