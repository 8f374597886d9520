"""Importance- and correlation-driven feature selection."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional, Sequence, Tuple

import pandas as pd
from pydantic import BaseModel, ConfigDict, Field

from tradescore.data.examples import TrainingExample, examples_to_frame, feature_names_of
from tradescore.models.logistic import (
    LogisticOptions,
    ModelCoefficients,
    evaluate_logistic,
    train_logistic,
)

from .analysis import FeatureImportanceResult, analyze_feature_importance

logger = logging.getLogger(__name__)

#: Importance pre-filter cap used by the ``combined`` method.
COMBINED_IMPORTANCE_CAP = 50
REDUCED_MODEL_OPTIONS = LogisticOptions(learning_rate=0.005, iterations=2000, regularization=0.01)


class FeatureSelectionConfig(BaseModel):
    method: Literal["importance", "correlation", "combined"] = "combined"
    importance_threshold: float = Field(0.05, ge=0)
    correlation_threshold: float = Field(0.85, gt=0, le=1)
    min_features: int = Field(10, ge=0)
    max_features: int = Field(30, ge=1)
    include_features: List[str] = Field(default_factory=list)
    exclude_features: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


@dataclass(frozen=True)
class CorrelationPair:
    feature1: str
    feature2: str
    correlation: float


@dataclass
class Selection:
    selected: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    reasons: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PerformanceComparison:
    original_auc: float
    reduced_auc: float
    auc_drop: float
    auc_drop_percent: float
    original_accuracy: float
    reduced_accuracy: float


@dataclass
class FeatureSelectionResult:
    config: FeatureSelectionConfig
    original_feature_count: int
    selected_features: List[str]
    removed_features: List[str]
    removal_reasons: Dict[str, str]
    performance: PerformanceComparison
    recommendations: List[str] = field(default_factory=list)
    correlation_matrix: Optional[pd.DataFrame] = None
    importance: Optional[FeatureImportanceResult] = None
    generated_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @property
    def selected_feature_count(self) -> int:
        return len(self.selected_features)


def calculate_correlation_matrix(
    examples: Sequence[TrainingExample], feature_names: Sequence[str]
) -> pd.DataFrame:
    """Pearson correlations; constant columns correlate ``0`` with others."""

    names = list(feature_names)
    frame = examples_to_frame(examples).reindex(columns=names).fillna(0.0).astype(float)
    corr = frame.corr(method="pearson").fillna(0.0)
    for name in names:
        corr.loc[name, name] = 1.0
    return corr


def find_correlated_pairs(
    correlation_matrix: pd.DataFrame, threshold: float = 0.85
) -> List[CorrelationPair]:
    """Pairs with ``|r| >= threshold``, strongest first."""

    names = list(correlation_matrix.columns)
    values = correlation_matrix.to_numpy()
    pairs = [
        CorrelationPair(names[i], names[j], float(values[i, j]))
        for i in range(len(names))
        for j in range(i + 1, len(names))
        if abs(values[i, j]) >= threshold
    ]
    return sorted(pairs, key=lambda p: abs(p.correlation), reverse=True)


def select_by_importance(
    importance: FeatureImportanceResult, config: FeatureSelectionConfig
) -> Selection:
    """Greedy pass over features by descending combined score.

    Features below ``importance_threshold`` are still kept while fewer than
    ``min_features`` are selected; nothing beyond ``max_features`` is added
    unless explicitly included.
    """

    result = Selection()
    ranked = sorted(importance.features, key=lambda f: f.combined_score, reverse=True)
    for feat in ranked:
        name = feat.feature
        if name in config.exclude_features:
            result.removed.append(name)
            result.reasons[name] = "Explicitly excluded"
        elif name in config.include_features:
            result.selected.append(name)
        elif len(result.selected) >= config.max_features:
            result.removed.append(name)
            result.reasons[name] = f"Exceeded max features ({config.max_features})"
        elif feat.combined_score >= config.importance_threshold or len(result.selected) < config.min_features:
            result.selected.append(name)
        else:
            result.removed.append(name)
            result.reasons[name] = (
                f"Low importance ({feat.combined_score * 100:.1f}% < "
                f"{config.importance_threshold * 100:g}%)"
            )
    return result


def select_by_correlation(
    feature_names: Sequence[str],
    importance: FeatureImportanceResult,
    correlation_matrix: pd.DataFrame,
    config: FeatureSelectionConfig,
) -> Selection:
    """Drop the less important member of each highly correlated pair."""

    candidates = [n for n in feature_names if n in correlation_matrix.columns]
    selected = dict.fromkeys(feature_names)
    result = Selection()
    scores = importance.scores()
    include = set(config.include_features)
    exclude = set(config.exclude_features)

    sub = correlation_matrix.loc[candidates, candidates]
    for pair in find_correlated_pairs(sub, config.correlation_threshold):
        a, b = pair.feature1, pair.feature2
        if a not in selected or b not in selected:
            continue
        if a in include and b in include:
            continue
        if a in include:
            keep, drop = a, b
        elif b in include:
            keep, drop = b, a
        elif scores.get(a, 0.0) >= scores.get(b, 0.0):
            keep, drop = a, b
        else:
            keep, drop = b, a
        if keep in exclude:
            continue
        del selected[drop]
        result.removed.append(drop)
        result.reasons[drop] = f"Highly correlated with {keep} (r={pair.correlation:.2f})"

    for name in config.exclude_features:
        if name in selected:
            del selected[name]
            result.removed.append(name)
            result.reasons[name] = "Explicitly excluded"
    result.selected = list(selected)
    return result


def create_reduced_dataset(
    examples: Sequence[TrainingExample], selected_features: Sequence[str]
) -> List[TrainingExample]:
    return [
        ex.with_features({n: ex.features.get(n, 0.0) for n in selected_features})
        for ex in examples
    ]


def create_reduced_coefficients(
    coefficients: ModelCoefficients, selected_features: Sequence[str]
) -> ModelCoefficients:
    """Restrict a trained model to ``selected_features`` without retraining."""

    return coefficients.model_copy(
        update={
            "weights": {n: coefficients.weights.get(n, 0.0) for n in selected_features},
            "feature_means": {n: coefficients.feature_means.get(n, 0.0) for n in selected_features},
            "feature_stds": {n: coefficients.feature_stds.get(n, 1.0) or 1.0 for n in selected_features},
            "version": f"{coefficients.version}-reduced",
        }
    )


def evaluate_feature_selection(
    examples: Sequence[TrainingExample],
    selected_features: Sequence[str],
    coefficients: ModelCoefficients,
) -> PerformanceComparison:
    original = evaluate_logistic(examples, coefficients)
    reduced = evaluate_logistic(
        create_reduced_dataset(examples, selected_features),
        create_reduced_coefficients(coefficients, selected_features),
    )
    drop = original.auc - reduced.auc
    return PerformanceComparison(
        original_auc=original.auc,
        reduced_auc=reduced.auc,
        auc_drop=drop,
        auc_drop_percent=drop / original.auc * 100 if original.auc else 0.0,
        original_accuracy=original.accuracy,
        reduced_accuracy=reduced.accuracy,
    )


def train_reduced_model(
    examples: Sequence[TrainingExample],
    selected_features: Sequence[str],
    options: Optional[LogisticOptions] = None,
) -> Tuple[ModelCoefficients, Dict[str, float]]:
    """Retrain on the first 80% restricted to ``selected_features``.

    Returns the coefficients and ``{"auc", "accuracy"}`` on the last 20%.
    """

    reduced = create_reduced_dataset(examples, selected_features)
    cut = int(len(reduced) * 0.8)
    coefficients = train_logistic(
        reduced[:cut], options or REDUCED_MODEL_OPTIONS, feature_names=selected_features
    )
    metrics = evaluate_logistic(reduced[cut:], coefficients)
    return coefficients, {"auc": metrics.auc, "accuracy": metrics.accuracy}


def _recommendations(performance: PerformanceComparison, selection: Selection) -> List[str]:
    recs = []
    pct = performance.auc_drop_percent
    if pct > 2:
        recs.append(
            f"Warning: AUC dropped {pct:.1f}% with reduced features. "
            "Consider keeping more features or adjusting thresholds."
        )
    elif pct < -1:
        recs.append(
            f"AUC improved by {-pct:.1f}% with reduced features; "
            "removing low-importance features may have reduced noise."
        )
    if len(selection.selected) < 15:
        recs.append(
            f"Only {len(selection.selected)} features selected. "
            "Consider lowering the importance threshold to include more."
        )
    if len(selection.removed) > 25:
        recs.append(
            f"{len(selection.removed)} features removed. "
            "Consider reviewing the excluded features for potential feature engineering."
        )
    return recs


def select_features(
    examples: Sequence[TrainingExample],
    coefficients: ModelCoefficients,
    config: Optional[FeatureSelectionConfig] = None,
    *,
    n_jobs: int = 1,
    cancel_event: Optional[threading.Event] = None,
) -> FeatureSelectionResult:
    config = config or FeatureSelectionConfig()
    names = feature_names_of(examples)

    logger.info("Analyzing feature importance", extra={"features": len(names)})
    importance = analyze_feature_importance(
        examples, coefficients, include_permutation=True, n_jobs=n_jobs, cancel_event=cancel_event
    )
    correlation = calculate_correlation_matrix(examples, names)

    if config.method == "importance":
        selection = select_by_importance(importance, config)
    elif config.method == "correlation":
        selection = select_by_correlation(names, importance, correlation, config)
    else:
        first = select_by_importance(
            importance, config.model_copy(update={"max_features": COMBINED_IMPORTANCE_CAP})
        )
        second = select_by_correlation(first.selected, importance, correlation, config)
        selection = Selection(
            selected=second.selected,
            removed=first.removed + second.removed,
            reasons={**first.reasons, **second.reasons},
        )

    performance = evaluate_feature_selection(examples, selection.selected, coefficients)
    logger.info(
        "Feature selection complete",
        extra={
            "method": config.method,
            "selected": len(selection.selected),
            "removed": len(selection.removed),
            "auc_drop": round(performance.auc_drop, 3),
        },
    )
    return FeatureSelectionResult(
        config=config,
        original_feature_count=len(names),
        selected_features=selection.selected,
        removed_features=selection.removed,
        removal_reasons=selection.reasons,
        performance=performance,
        recommendations=_recommendations(performance, selection),
        correlation_matrix=correlation,
        importance=importance,
    )


def format_selection_report(result: FeatureSelectionResult) -> str:
    perf = result.performance
    lines = [
        "FEATURE SELECTION REPORT",
        f"Generated: {result.generated_at}",
        f"Method: {result.config.method}",
        "",
        f"Original features: {result.original_feature_count}",
        f"Selected features: {result.selected_feature_count}",
        f"Removed features:  {len(result.removed_features)}",
        "",
        f"Original AUC: {perf.original_auc:.1f}%  Reduced AUC: {perf.reduced_auc:.1f}%"
        f"  (change {-perf.auc_drop:+.2f}, {-perf.auc_drop_percent:+.1f}%)",
        f"Original Acc: {perf.original_accuracy:.1f}%  Reduced Acc: {perf.reduced_accuracy:.1f}%",
        "",
        "Selected:",
    ]
    lines += [f"  {i:2d}. {name}" for i, name in enumerate(result.selected_features, start=1)]
    if result.removed_features:
        removed = pd.DataFrame(
            {
                "Feature": result.removed_features,
                "Reason": [result.removal_reasons.get(n, "Unknown") for n in result.removed_features],
            }
        )
        lines += ["", "Removed:", removed.to_string(index=False)]
    if result.recommendations:
        lines += ["", "Recommendations:"] + [f"- {r}" for r in result.recommendations]
    return "\n".join(lines)


__all__ = [
    "CorrelationPair",
    "FeatureSelectionConfig",
    "FeatureSelectionResult",
    "PerformanceComparison",
    "Selection",
    "calculate_correlation_matrix",
    "create_reduced_coefficients",
    "create_reduced_dataset",
    "evaluate_feature_selection",
    "find_correlated_pairs",
    "format_selection_report",
    "select_by_correlation",
    "select_by_importance",
    "select_features",
    "train_reduced_model",
]
