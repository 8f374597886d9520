"""Feature configuration and the selection/interaction pipeline."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tradescore.data.examples import TrainingExample, feature_names_of
from tradescore.exceptions import ConfigurationError
from tradescore.models.logistic import ModelCoefficients

from .analysis import FeatureImportanceResult
from .interactions import InteractionDefinition, add_interactions
from .selection import (
    FeatureSelectionConfig,
    FeatureSelectionResult,
    create_reduced_coefficients,
    select_features,
)

logger = logging.getLogger(__name__)


class FeatureConfig(BaseModel):
    """Which features a model consumes.

    With ``selection_method="manual"`` exactly ``base_features`` are kept;
    otherwise they are chosen by :func:`select_features` and ``drop_features``
    are always excluded.
    """

    version: str = "1.0.0-custom"
    base_features: List[str] = Field(default_factory=list)
    interactions: List[InteractionDefinition] = Field(default_factory=list)
    drop_features: List[str] = Field(default_factory=list)
    selection_method: Literal["importance", "correlation", "combined", "manual"] = "manual"
    importance_threshold: float = Field(0.05, ge=0)
    correlation_threshold: float = Field(0.85, gt=0, le=1)

    model_config = ConfigDict(extra="ignore")


DEFAULT_FEATURE_CONFIG = FeatureConfig(
    version="1.0.0",
    base_features=[
        "price_vs_20ema",
        "score_rsi",
        "regime_confidence",
        "vix_level",
        "sector_rs_60d",
        "sector_rs_20d",
        "obv_trend",
        "rvol",
        "score_ma_fibonacci",
        "gap_percent",
    ],
    drop_features=[
        "mtf_daily_score",
        "mtf_4h_score",
        "mtf_combined_score",
        "mtf_alignment",
        "higher_lows",
        "trend_status",
        "golden_cross",
        "rr_ratio",
        "pattern_type",
        "score_patterns_gaps",
        "cmf_value",
        "price_vs_200sma",
    ],
    selection_method="importance",
)

LEAN_FEATURE_CONFIG = FeatureConfig(
    version="1.0.0-lean",
    base_features=[
        "price_vs_20ema",
        "score_rsi",
        "regime_confidence",
        "vix_level",
        "sector_rs_60d",
    ],
    selection_method="manual",
    importance_threshold=0.1,
)


@dataclass
class PipelineResult:
    config: FeatureConfig
    original_feature_count: int
    selected_features: List[str]
    dropped_features: List[str]
    added_interactions: List[str]
    transformed_examples: List[TrainingExample] = field(repr=False)
    reduced_coefficients: Optional[ModelCoefficients] = None
    importance_analysis: Optional[FeatureImportanceResult] = None
    selection_result: Optional[FeatureSelectionResult] = None

    @property
    def final_feature_count(self) -> int:
        return len(self.selected_features) + len(self.added_interactions)


def apply_feature_config(
    examples: Sequence[TrainingExample], config: FeatureConfig
) -> List[TrainingExample]:
    """Add configured interactions, then keep only base and interaction columns."""

    transformed = add_interactions(examples, config.interactions) if config.interactions else list(examples)
    allowed = list(dict.fromkeys([*config.base_features, *(i.name for i in config.interactions)]))
    return [
        ex.with_features({n: ex.features.get(n, 0.0) for n in allowed})
        for ex in transformed
    ]


def run_feature_pipeline(
    examples: Sequence[TrainingExample],
    coefficients: ModelCoefficients,
    config: Optional[FeatureConfig] = None,
    *,
    n_jobs: int = 1,
    cancel_event: Optional[threading.Event] = None,
) -> PipelineResult:
    config = (config or DEFAULT_FEATURE_CONFIG).model_copy(deep=True)
    all_features = feature_names_of(examples)
    selection_result = None
    importance = None

    if config.selection_method == "manual":
        selected = list(config.base_features)
        dropped = [f for f in all_features if f not in selected]
    else:
        selection_result = select_features(
            examples,
            coefficients,
            FeatureSelectionConfig(
                method=config.selection_method,
                importance_threshold=config.importance_threshold,
                correlation_threshold=config.correlation_threshold,
                exclude_features=config.drop_features,
            ),
            n_jobs=n_jobs,
            cancel_event=cancel_event,
        )
        selected = selection_result.selected_features
        dropped = selection_result.removed_features
        importance = selection_result.importance

    config.base_features = selected
    result = PipelineResult(
        config=config,
        original_feature_count=len(all_features),
        selected_features=selected,
        dropped_features=dropped,
        added_interactions=[i.name for i in config.interactions],
        transformed_examples=apply_feature_config(examples, config),
        reduced_coefficients=create_reduced_coefficients(coefficients, selected),
        importance_analysis=importance,
        selection_result=selection_result,
    )
    logger.info(
        "Feature pipeline complete",
        extra={
            "method": config.selection_method,
            "original": result.original_feature_count,
            "final": result.final_feature_count,
        },
    )
    return result


def save_feature_config(config: FeatureConfig, path: Path | str) -> None:
    payload = config.model_dump(mode="json")
    payload["saved_at"] = datetime.now(timezone.utc).isoformat()
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2))


def load_feature_config(path: Path | str) -> FeatureConfig:
    """Load a saved config; a missing file yields :data:`DEFAULT_FEATURE_CONFIG`."""

    path = Path(path)
    if not path.exists():
        logger.info("Feature config not found, using default", extra={"path": str(path)})
        return DEFAULT_FEATURE_CONFIG
    try:
        return FeatureConfig.model_validate_json(path.read_text())
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid feature config {path}") from exc


def format_pipeline_report(result: PipelineResult) -> str:
    lines = [
        "FEATURE ENGINEERING PIPELINE REPORT",
        f"Config version: {result.config.version}",
        f"Selection method: {result.config.selection_method}",
        "",
        f"Original features:  {result.original_feature_count}",
        f"Final features:     {result.final_feature_count}",
        f"Dropped:            {len(result.dropped_features)}",
        f"Interactions added: {len(result.added_interactions)}",
        "",
        "Selected features:",
    ]
    lines += [f"  {i:2d}. {name}" for i, name in enumerate(result.selected_features, start=1)]
    if result.selection_result is not None:
        perf = result.selection_result.performance
        lines += [
            "",
            f"Original AUC: {perf.original_auc:.1f}%",
            f"Reduced AUC:  {perf.reduced_auc:.1f}%",
            f"AUC change:   {-perf.auc_drop:+.2f}",
        ]
    return "\n".join(lines)


__all__ = [
    "DEFAULT_FEATURE_CONFIG",
    "FeatureConfig",
    "LEAN_FEATURE_CONFIG",
    "PipelineResult",
    "apply_feature_config",
    "format_pipeline_report",
    "load_feature_config",
    "run_feature_pipeline",
    "save_feature_config",
]
