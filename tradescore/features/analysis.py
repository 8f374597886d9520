"""Feature importance for the baseline linear model.

Three complementary measures are provided and can be blended:

* coefficient magnitude scaled by the feature's spread,
* permutation importance (mean AUC drop when one column is shuffled),
* ablation (AUC drop after zeroing a feature and retraining).
"""

from __future__ import annotations

import logging
import textwrap
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional, Sequence

import numpy as np
import pandas as pd

from tradescore.data.examples import TrainingExample, feature_names_of, to_matrix
from tradescore.models.logistic import (
    LogisticOptions,
    ModelCoefficients,
    fit_logistic_matrix,
    predict_matrix,
)
from tradescore.training.evaluation import calculate_auc
from tradescore.utils.parallel import run_units
from tradescore.utils.random import SeededRNG

logger = logging.getLogger(__name__)

TOP_FEATURE_THRESHOLD = 0.3
LOW_IMPORTANCE_THRESHOLD = 0.05
#: Floor applied to the maximum before normalising a score family.
NORMALISATION_FLOOR = 0.001
_WEIGHT_COEFFICIENT, _WEIGHT_PERMUTATION, _WEIGHT_ABLATION = 1.0, 2.0, 2.0

AnalysisMethod = Literal["coefficient", "permutation", "ablation", "combined"]


@dataclass
class FeatureImportance:
    feature: str
    coefficient_magnitude: float
    normalized_coefficient: float
    permutation_importance: Optional[float] = None
    ablation_importance: Optional[float] = None
    combined_score: float = 0.0
    rank: int = 0


@dataclass(frozen=True)
class PermutationResult:
    feature: str
    original_auc: float
    permuted_auc: float
    auc_drop: float
    importance: float


@dataclass(frozen=True)
class AblationResult:
    feature: str
    full_model_auc: float
    reduced_model_auc: float
    auc_drop: float
    importance: float


@dataclass
class FeatureImportanceResult:
    method: AnalysisMethod
    baseline_auc: float
    features: List[FeatureImportance]
    top_features: List[str] = field(default_factory=list)
    low_importance_features: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    generated_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def scores(self) -> Dict[str, float]:
        return {f.feature: f.combined_score for f in self.features}


def _rank(items: List[FeatureImportance], key) -> List[FeatureImportance]:
    items.sort(key=key, reverse=True)
    for idx, item in enumerate(items, start=1):
        item.rank = idx
    return items


def coefficient_importance(
    coefficients: ModelCoefficients, examples: Sequence[TrainingExample]
) -> List[FeatureImportance]:
    """Rank features by ``|w| * std(feature)`` over ``examples``."""

    names = coefficients.feature_names
    X, _, _ = to_matrix(examples, names)
    stds = X.std(axis=0) if len(examples) else np.ones(len(names))
    stds[stds == 0] = 1.0
    results = []
    for name, std in zip(names, stds):
        magnitude = abs(coefficients.weights[name])
        scaled = magnitude * float(std)
        results.append(
            FeatureImportance(
                feature=name,
                coefficient_magnitude=magnitude,
                normalized_coefficient=scaled,
                combined_score=scaled,
            )
        )
    return _rank(results, key=lambda f: f.normalized_coefficient)


def permutation_importance(
    examples: Sequence[TrainingExample],
    coefficients: ModelCoefficients,
    *,
    num_permutations: int = 5,
    seed: int = 42,
    n_jobs: int = 1,
    cancel_event: Optional[threading.Event] = None,
) -> List[PermutationResult]:
    """Mean AUC drop when each model feature is shuffled.

    Feature ``j`` is shuffled with a generator seeded ``seed + j`` so the
    result does not depend on ``n_jobs``.
    """

    if not examples:
        return []
    names = coefficients.feature_names
    X, y, _ = to_matrix(examples, names)
    baseline = calculate_auc(predict_matrix(X, coefficients), y)
    logger.info(
        "Permutation importance",
        extra={"features": len(names), "baseline_auc": round(baseline, 2)},
    )

    def _one(j: int) -> PermutationResult:
        rng = SeededRNG(seed).spawn(j)
        Xp = X.copy()
        drops = []
        for _ in range(num_permutations):
            Xp[:, j] = X[rng.permutation(len(X)), j]
            drops.append(baseline - calculate_auc(predict_matrix(Xp, coefficients), y))
        drop = float(np.mean(drops)) if drops else 0.0
        return PermutationResult(
            feature=names[j],
            original_auc=baseline,
            permuted_auc=baseline - drop,
            auc_drop=drop,
            importance=max(0.0, drop),
        )

    results = run_units(
        _one,
        range(len(names)),
        n_jobs=n_jobs,
        cancel_event=cancel_event,
        what="permutation importance",
    )
    return sorted(results, key=lambda r: r.importance, reverse=True)


def ablation_study(
    examples: Sequence[TrainingExample],
    training_options: Optional[LogisticOptions] = None,
    *,
    validation_split: float = 0.2,
    n_jobs: int = 1,
    cancel_event: Optional[threading.Event] = None,
) -> List[AblationResult]:
    """AUC drop after zeroing each feature and retraining.

    The first ``1 - validation_split`` of ``examples`` is used for training
    and the remainder for evaluation, preserving input order.
    """

    if not examples:
        return []
    options = training_options or LogisticOptions()
    names = feature_names_of(examples)
    X, y, _ = to_matrix(examples, names)
    cut = int(len(examples) * (1 - validation_split))
    X_train, y_train, X_val, y_val = X[:cut], y[:cut], X[cut:], y[cut:]

    full = fit_logistic_matrix(X_train, y_train, names, options)
    full_auc = calculate_auc(predict_matrix(X_val, full), y_val)
    logger.info(
        "Ablation study",
        extra={"features": len(names), "full_model_auc": round(full_auc, 2)},
    )

    def _one(j: int) -> AblationResult:
        Xt, Xv = X_train.copy(), X_val.copy()
        Xt[:, j] = 0.0
        Xv[:, j] = 0.0
        reduced = fit_logistic_matrix(Xt, y_train, names, options)
        reduced_auc = calculate_auc(predict_matrix(Xv, reduced), y_val)
        drop = full_auc - reduced_auc
        logger.debug(
            "ablated feature",
            extra={"feature": names[j], "auc": round(reduced_auc, 2), "drop": round(drop, 2)},
        )
        return AblationResult(
            feature=names[j],
            full_model_auc=full_auc,
            reduced_model_auc=reduced_auc,
            auc_drop=drop,
            importance=max(0.0, drop),
        )

    results = run_units(
        _one, range(len(names)), n_jobs=n_jobs, cancel_event=cancel_event, what="ablation study"
    )
    return sorted(results, key=lambda r: r.importance, reverse=True)


def _normalised(values: Dict[str, float]) -> Dict[str, float]:
    top = max([*values.values(), NORMALISATION_FLOOR])
    return {k: v / top for k, v in values.items()}


def combine_importance_scores(
    coefficient_results: Sequence[FeatureImportance],
    permutation_results: Optional[Sequence[PermutationResult]] = None,
    ablation_results: Optional[Sequence[AblationResult]] = None,
) -> List[FeatureImportance]:
    """Blend the available score families into one ranking.

    Each family is scaled by its maximum; permutation and ablation weigh
    twice as much as coefficients.  A family missing for a feature falls
    back to that feature's coefficient score.
    """

    features = {r.feature: replace(r) for r in coefficient_results}
    if permutation_results is not None:
        for name, score in _normalised({r.feature: r.importance for r in permutation_results}).items():
            if name in features:
                features[name].permutation_importance = score
    if ablation_results is not None:
        for name, score in _normalised({r.feature: r.importance for r in ablation_results}).items():
            if name in features:
                features[name].ablation_importance = score

    coef_scores = _normalised({n: f.normalized_coefficient for n, f in features.items()})
    w_perm = _WEIGHT_PERMUTATION if permutation_results is not None else 0.0
    w_abl = _WEIGHT_ABLATION if ablation_results is not None else 0.0
    total = _WEIGHT_COEFFICIENT + w_perm + w_abl
    for name, feat in features.items():
        coef = coef_scores[name]
        perm = feat.permutation_importance if feat.permutation_importance is not None else coef
        abl = feat.ablation_importance if feat.ablation_importance is not None else coef
        feat.combined_score = (_WEIGHT_COEFFICIENT * coef + w_perm * perm + w_abl * abl) / total
    return _rank(list(features.values()), key=lambda f: f.combined_score)


def analyze_feature_importance(
    examples: Sequence[TrainingExample],
    coefficients: ModelCoefficients,
    *,
    include_permutation: bool = True,
    include_ablation: bool = False,
    num_permutations: int = 5,
    training_options: Optional[LogisticOptions] = None,
    seed: int = 42,
    low_importance_threshold: float = LOW_IMPORTANCE_THRESHOLD,
    n_jobs: int = 1,
    cancel_event: Optional[threading.Event] = None,
) -> FeatureImportanceResult:
    coefficient_results = coefficient_importance(coefficients, examples)
    permutation_results = None
    if include_permutation:
        permutation_results = permutation_importance(
            examples,
            coefficients,
            num_permutations=num_permutations,
            seed=seed,
            n_jobs=n_jobs,
            cancel_event=cancel_event,
        )
    ablation_results = None
    if include_ablation:
        options = training_options or LogisticOptions(seed=seed)
        ablation_results = ablation_study(
            examples, options, n_jobs=n_jobs, cancel_event=cancel_event
        )

    combined = combine_importance_scores(
        coefficient_results, permutation_results, ablation_results
    )
    X, y, _ = to_matrix(examples, coefficients.feature_names)
    baseline_auc = calculate_auc(predict_matrix(X, coefficients), y) if len(y) else 50.0

    top = [f.feature for f in combined if f.combined_score >= TOP_FEATURE_THRESHOLD]
    low = [f.feature for f in combined if f.combined_score < low_importance_threshold]
    recommendations = []
    if low:
        shown = ", ".join(low[:5]) + ("..." if len(low) > 5 else "")
        recommendations.append(
            f"{len(low)} features have very low importance "
            f"(<{low_importance_threshold * 100:g}%). Consider removing: {shown}"
        )
    if len(top) < 10:
        recommendations.append(
            f"Only {len(top)} features have high importance (>30%). "
            "Consider feature engineering to create more predictive features."
        )

    method: AnalysisMethod = (
        "combined" if include_ablation else "permutation" if include_permutation else "coefficient"
    )
    return FeatureImportanceResult(
        method=method,
        baseline_auc=baseline_auc,
        features=combined,
        top_features=top,
        low_importance_features=low,
        recommendations=recommendations,
    )


def format_importance_report(result: FeatureImportanceResult, top_n: int = 20) -> str:
    table = pd.DataFrame(
        [
            {
                "Rank": f.rank,
                "Feature": f.feature,
                "Coef Mag": f"{f.normalized_coefficient:.3f}",
                "Perm Imp": "N/A"
                if f.permutation_importance is None
                else f"{f.permutation_importance:.3f}",
                "Combined": f"{f.combined_score:.3f}",
            }
            for f in result.features[:top_n]
        ]
    )
    lines = [
        "FEATURE IMPORTANCE REPORT",
        f"Generated: {result.generated_at}",
        f"Method: {result.method}",
        f"Baseline AUC: {result.baseline_auc:.1f}%",
        "",
        f"Top {top_n} features:",
        table.to_string(index=False) if not table.empty else "(no features)",
    ]
    if result.low_importance_features:
        lines += ["", "Low importance features:"]
        lines += textwrap.wrap(", ".join(result.low_importance_features), width=70)
    lines += ["", "Recommendations:"]
    for rec in result.recommendations:
        lines += textwrap.wrap(rec, width=70, initial_indent="- ", subsequent_indent="  ")
    return "\n".join(lines)


__all__ = [
    "AblationResult",
    "FeatureImportance",
    "FeatureImportanceResult",
    "PermutationResult",
    "ablation_study",
    "analyze_feature_importance",
    "coefficient_importance",
    "combine_importance_scores",
    "format_importance_report",
    "permutation_importance",
]
