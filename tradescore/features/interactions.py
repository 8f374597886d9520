"""Derived features built by combining existing columns."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Literal, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from tradescore.data.examples import TrainingExample, feature_names_of
from tradescore.models.logistic import (
    LogisticOptions,
    ModelCoefficients,
    evaluate_logistic,
    train_logistic,
)
from tradescore.utils.parallel import run_units

logger = logging.getLogger(__name__)

#: AUC gain (percentage points) above which an interaction is significant.
SIGNIFICANT_IMPROVEMENT = 0.5
HARMFUL_IMPROVEMENT = -1.0
TRAIN_FRACTION = 0.8

InteractionType = Literal[
    "multiply", "divide", "add", "subtract", "polynomial", "ratio", "custom"
]


class InteractionDefinition(BaseModel):
    name: str
    description: str = ""
    type: InteractionType
    features: List[str] = Field(min_length=1)
    degree: int = 2
    custom_fn: Optional[Callable[[List[float]], float]] = Field(default=None, exclude=True)

    model_config = ConfigDict(frozen=True, extra="forbid")


def _pair(name: str, description: str, kind: InteractionType, *features: str, **kw) -> InteractionDefinition:
    return InteractionDefinition(
        name=name, description=description, type=kind, features=list(features), **kw
    )


CANDIDATE_INTERACTIONS: Tuple[InteractionDefinition, ...] = (
    _pair("regime_vix", "VIX impact scaled by regime confidence", "multiply", "regime_confidence", "vix_level"),
    _pair("regime_price_ma", "Price vs 20 EMA weighted by regime confidence", "multiply", "regime_confidence", "price_vs_20ema"),
    _pair("rsi_ma_confluence", "RSI score combined with MA score", "multiply", "score_rsi", "score_ma_fibonacci"),
    _pair("rsi_vix", "RSI score adjusted for volatility", "multiply", "score_rsi", "vix_level"),
    _pair("volume_price_confirm", "Relative volume confirming price trend", "multiply", "rvol", "price_vs_20ema"),
    _pair("obv_price", "OBV trend with price trend", "multiply", "obv_trend", "price_vs_20ema"),
    _pair("sector_rs_product", "Short and long-term sector strength", "multiply", "sector_rs_20d", "sector_rs_60d"),
    _pair("sector_vix", "Sector strength in a volatile market", "multiply", "sector_rs_20d", "vix_level"),
    _pair("gap_volume", "Gap confirmed by volume", "multiply", "gap_percent", "rvol"),
    _pair("ma_rsi_combo", "MA and RSI combined signal", "multiply", "score_ma_fibonacci", "score_rsi"),
    _pair("price_vs_20ema_sq", "Price vs 20 EMA squared", "polynomial", "price_vs_20ema", degree=2),
    _pair("vix_level_sq", "VIX squared", "polynomial", "vix_level", degree=2),
    _pair("sector_trend_ratio", "Short over long-term sector RS", "ratio", "sector_rs_20d", "sector_rs_60d"),
)

_DEFAULT_OPTIONS = LogisticOptions(learning_rate=0.01, iterations=1000, regularization=0.01, seed=42)


@dataclass(frozen=True)
class InteractionResult:
    name: str
    baseline_auc: float
    with_interaction_auc: float
    auc_improvement: float
    is_significant: bool
    coefficient: float = 0.0


@dataclass
class InteractionAnalysisResult:
    baseline_auc: float
    interactions: List[InteractionResult]
    recommended_interactions: List[str]
    total_auc_improvement: float
    recommendations: List[str] = field(default_factory=list)
    generated_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


def calculate_interaction(
    features: Mapping[str, float], interaction: InteractionDefinition
) -> float:
    """Evaluate ``interaction`` on one feature vector.

    Missing inputs count as ``0``.  ``divide`` yields ``0`` on a zero
    denominator while ``ratio`` divides by ``1`` instead.
    """

    values = [float(features.get(name, 0.0)) for name in interaction.features]
    kind = interaction.type
    if kind == "multiply":
        out = 1.0
        for v in values:
            out *= v
        return out
    if kind == "add":
        return float(sum(values))
    if kind == "custom":
        return float(interaction.custom_fn(values)) if interaction.custom_fn else 0.0
    if kind == "polynomial":
        return values[0] ** interaction.degree if len(values) == 1 else 0.0
    if len(values) != 2:
        return 0.0
    a, b = values
    if kind == "subtract":
        return a - b
    if kind == "divide":
        return a / b if b != 0 else 0.0
    if kind == "ratio":
        return a / (b or 1.0)
    return 0.0


def add_interactions(
    examples: Sequence[TrainingExample], interactions: Sequence[InteractionDefinition]
) -> List[TrainingExample]:
    out = []
    for ex in examples:
        features: Dict[str, float] = dict(ex.features)
        for interaction in interactions:
            features[interaction.name] = calculate_interaction(ex.features, interaction)
        out.append(ex.with_features(features))
    return out


def create_interaction_coefficients(
    base: ModelCoefficients, interactions: Sequence[InteractionDefinition]
) -> ModelCoefficients:
    """Extend ``base`` with zero-weight, identity-scaled interaction terms."""

    names = [i.name for i in interactions]
    return base.model_copy(
        update={
            "weights": {**base.weights, **dict.fromkeys(names, 0.0)},
            "feature_means": {**base.feature_means, **dict.fromkeys(names, 0.0)},
            "feature_stds": {**base.feature_stds, **dict.fromkeys(names, 1.0)},
            "version": f"{base.version}-interactions",
        }
    )


def _train_and_score(
    train: Sequence[TrainingExample],
    val: Sequence[TrainingExample],
    options: LogisticOptions,
) -> Tuple[ModelCoefficients, float]:
    coefficients = train_logistic(train, options)
    return coefficients, evaluate_logistic(val, coefficients).auc


def evaluate_interaction(
    examples: Sequence[TrainingExample],
    interaction: InteractionDefinition,
    options: Optional[LogisticOptions] = None,
    *,
    baseline_auc: Optional[float] = None,
) -> InteractionResult:
    """Compare validation AUC with and without ``interaction``.

    The first 80% of ``examples`` trains both models and the rest validates.
    """

    options = options or _DEFAULT_OPTIONS
    cut = int(len(examples) * TRAIN_FRACTION)
    train, val = examples[:cut], examples[cut:]
    if baseline_auc is None:
        _, baseline_auc = _train_and_score(train, val, options)
    coefficients, with_auc = _train_and_score(
        add_interactions(train, [interaction]), add_interactions(val, [interaction]), options
    )
    improvement = with_auc - baseline_auc
    logger.debug(
        "interaction evaluated",
        extra={
            "interaction": interaction.name,
            "baseline_auc": round(baseline_auc, 2),
            "auc": round(with_auc, 2),
        },
    )
    return InteractionResult(
        name=interaction.name,
        baseline_auc=baseline_auc,
        with_interaction_auc=with_auc,
        auc_improvement=improvement,
        is_significant=improvement > SIGNIFICANT_IMPROVEMENT,
        coefficient=coefficients.weights.get(interaction.name, 0.0),
    )


def analyze_interactions(
    examples: Sequence[TrainingExample],
    candidates: Sequence[InteractionDefinition] = CANDIDATE_INTERACTIONS,
    *,
    min_improvement: float = SIGNIFICANT_IMPROVEMENT,
    options: Optional[LogisticOptions] = None,
    n_jobs: int = 1,
    cancel_event: Optional[threading.Event] = None,
) -> InteractionAnalysisResult:
    """Evaluate each candidate whose input features are all present."""

    options = options or _DEFAULT_OPTIONS
    available = set(feature_names_of(examples))
    usable = []
    for interaction in candidates:
        if set(interaction.features) <= available:
            usable.append(interaction)
        else:
            logger.info("Skipping interaction with missing features", extra={"interaction": interaction.name})

    cut = int(len(examples) * TRAIN_FRACTION)
    _, baseline_auc = _train_and_score(examples[:cut], examples[cut:], options)
    results = run_units(
        lambda i: evaluate_interaction(examples, i, options, baseline_auc=baseline_auc),
        usable,
        n_jobs=n_jobs,
        cancel_event=cancel_event,
        what="interaction analysis",
    )
    results.sort(key=lambda r: r.auc_improvement, reverse=True)

    recommended = [r for r in results if r.auc_improvement >= min_improvement]
    total = sum(r.auc_improvement for r in recommended)
    recommendations = []
    if recommended:
        recommendations.append(
            f"{len(recommended)} interactions show significant improvement. "
            f"Adding these could improve AUC by up to {total:.1f}%."
        )
    else:
        recommendations.append(
            f"No interactions showed significant improvement (>{min_improvement}%). "
            "The existing features may already capture these relationships."
        )
    harmful = [r.name for r in results if r.auc_improvement < HARMFUL_IMPROVEMENT]
    if harmful:
        recommendations.append(
            f"Warning: some interactions hurt performance: {', '.join(harmful)}. "
            "These should be avoided."
        )
    return InteractionAnalysisResult(
        baseline_auc=baseline_auc,
        interactions=results,
        recommended_interactions=[r.name for r in recommended],
        total_auc_improvement=total,
        recommendations=recommendations,
    )


def train_with_interactions(
    examples: Sequence[TrainingExample],
    interactions: Sequence[InteractionDefinition],
    options: Optional[LogisticOptions] = None,
) -> Tuple[ModelCoefficients, Dict[str, float]]:
    enhanced = add_interactions(examples, interactions)
    cut = int(len(enhanced) * TRAIN_FRACTION)
    coefficients = train_logistic(enhanced[:cut], options or _DEFAULT_OPTIONS)
    metrics = evaluate_logistic(enhanced[cut:], coefficients)
    return coefficients, {"auc": metrics.auc, "accuracy": metrics.accuracy}


def format_interaction_report(result: InteractionAnalysisResult) -> str:
    lines = [
        "FEATURE INTERACTIONS REPORT",
        f"Generated: {result.generated_at}",
        f"Baseline AUC: {result.baseline_auc:.1f}%",
        "",
    ]
    for rank, r in enumerate(result.interactions[:15], start=1):
        marker = " *" if r.is_significant else ""
        lines.append(
            f"{rank:>4}  {r.name:<24} {r.baseline_auc:6.1f}% -> "
            f"{r.with_interaction_auc:6.1f}% ({r.auc_improvement:+.2f}){marker}"
        )
    descriptions = {i.name: i.description for i in CANDIDATE_INTERACTIONS}
    if result.recommended_interactions:
        lines += ["", "Recommended:"]
        for name in result.recommended_interactions:
            lines.append(f"  {name}: {descriptions.get(name, '')}".rstrip(": "))
    lines += ["", "Recommendations:"] + [f"- {r}" for r in result.recommendations]
    lines += [
        "",
        f"Interactions tested: {len(result.interactions)}",
        f"Significant improvements: {len(result.recommended_interactions)}",
        f"Potential total AUC improvement: +{result.total_auc_improvement:.1f}%",
    ]
    return "\n".join(lines)


__all__ = [
    "CANDIDATE_INTERACTIONS",
    "InteractionAnalysisResult",
    "InteractionDefinition",
    "InteractionResult",
    "add_interactions",
    "analyze_interactions",
    "calculate_interaction",
    "create_interaction_coefficients",
    "evaluate_interaction",
    "format_interaction_report",
    "train_with_interactions",
]
