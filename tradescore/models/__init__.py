"""Baseline, boosting, stacking and bagging models."""

from .ensemble import EnsembleModel, ensemble_predict, evaluate_ensemble, train_ensemble
from .gradient_boosting import GBMConfig, GBMModel, evaluate_gbm, predict_gbm, train_gbm
from .logistic import (
    LogisticOptions,
    ModelCoefficients,
    evaluate_logistic,
    predict_probability,
    train_logistic,
)
from .stacking import (
    StackedModel,
    StackingConfig,
    evaluate_stacked_model,
    predict_stacked,
    train_stacked_model,
)

__all__ = [
    "EnsembleModel",
    "GBMConfig",
    "GBMModel",
    "LogisticOptions",
    "ModelCoefficients",
    "StackedModel",
    "StackingConfig",
    "ensemble_predict",
    "evaluate_ensemble",
    "evaluate_gbm",
    "evaluate_logistic",
    "evaluate_stacked_model",
    "predict_gbm",
    "predict_probability",
    "predict_stacked",
    "train_ensemble",
    "train_gbm",
    "train_logistic",
    "train_stacked_model",
]
