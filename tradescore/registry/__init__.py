"""Versioned model store and experiment tracking."""

from .experiment_tracker import (
    Experiment,
    ExperimentFilter,
    ExperimentMetrics,
    ExperimentTracker,
    format_experiment_summary,
    format_experiments_table,
)
from .model_registry import (
    DEFAULT_PROMOTION_CRITERIA,
    BacktestMetrics,
    ModelFilter,
    ModelRegistry,
    PromotionCriteria,
    PromotionResult,
    RegisteredModel,
    ValidationMetrics,
    format_comparison_report,
    format_model_summary,
    format_models_table,
)

__all__ = [
    "BacktestMetrics",
    "DEFAULT_PROMOTION_CRITERIA",
    "Experiment",
    "ExperimentFilter",
    "ExperimentMetrics",
    "ExperimentTracker",
    "ModelFilter",
    "ModelRegistry",
    "PromotionCriteria",
    "PromotionResult",
    "RegisteredModel",
    "ValidationMetrics",
    "format_comparison_report",
    "format_experiment_summary",
    "format_experiments_table",
    "format_model_summary",
    "format_models_table",
]
