"""File-backed model registry with semantic versioning and a promotion gate.

Layout under ``models_dir``::

    registry.json        {currentProductionVersion, models[], lastUpdated}
    v1.0.0.json          immutable artifact of version v1.0.0
    ...

The canonical production artifact is copied to ``production_file`` whenever
a version is promoted or rolled back.  All metrics stored here are
fractions (AUC ``0.65`` means 65%).
"""

from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple, Union

import pandas as pd
from opentelemetry import trace
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from tradescore.exceptions import ConfigurationError, RegistryError
from tradescore.models.logistic import ModelCoefficients
from tradescore.training.evaluation import ClassificationMetrics
from tradescore.utils.io import atomic_write_json

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ModelType = Literal["logistic", "gbm", "stacked", "ensemble"]
BumpType = Literal["major", "minor", "patch"]
Recommendation = Literal["promote_v2", "keep_v1", "needs_review"]

_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)$")
FIRST_VERSION = "v1.0.0"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ValidationMetrics(_CamelModel):
    auc: float
    calibration_error: float
    accuracy: float
    precision: Optional[float] = None
    recall: Optional[float] = None
    f1_score: Optional[float] = None

    @classmethod
    def from_classification(cls, metrics: ClassificationMetrics) -> "ValidationMetrics":
        """Convert percentage metrics into registry fractions."""
        return cls(
            auc=metrics.auc / 100,
            calibration_error=metrics.calibration_error / 100,
            accuracy=metrics.accuracy / 100,
            precision=metrics.precision / 100,
            recall=metrics.recall / 100,
            f1_score=metrics.f1_score / 100,
        )


class BacktestMetrics(_CamelModel):
    win_rate: float
    sharpe_ratio: float
    profit_factor: float
    total_return: Optional[float] = None
    max_drawdown: Optional[float] = None
    total_trades: Optional[int] = None


class PromotionCriteria(_CamelModel):
    min_auc: float = 0.65
    max_calibration_error: float = 0.10
    min_backtest_win_rate: Optional[float] = 0.45
    min_backtest_sharpe: Optional[float] = 0.2
    requires_backtest: bool = True


DEFAULT_PROMOTION_CRITERIA = PromotionCriteria()


class RegisteredModel(_CamelModel):
    version: str
    experiment_id: str
    coefficients_path: str
    model_type: ModelType = "logistic"
    feature_count: int = 0
    training_samples: int = 0
    validation_metrics: ValidationMetrics
    backtest_metrics: Optional[BacktestMetrics] = None
    is_production: bool = False
    created_at: str
    promoted_at: Optional[str] = None
    retired_at: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    notes: Optional[str] = None
    parent_version: Optional[str] = None


class RegistryState(_CamelModel):
    current_production_version: Optional[str] = None
    models: List[RegisteredModel] = Field(default_factory=list)
    last_updated: str = Field(default_factory=_now)


class ModelFilter(_CamelModel):
    model_type: Optional[ModelType] = None
    is_production: Optional[bool] = None
    tags: List[str] = Field(default_factory=list)
    min_auc: Optional[float] = None
    from_date: Optional[str] = None
    to_date: Optional[str] = None


@dataclass(frozen=True)
class PromotionResult:
    success: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class ModelComparison:
    v1: str
    v2: str
    validation_delta: Dict[str, float]
    recommendation: Recommendation
    backtest_delta: Optional[Dict[str, float]] = None


def parse_version(version: str) -> Tuple[int, int, int]:
    match = _VERSION_RE.match(version)
    if match is None:
        raise ConfigurationError(f"Invalid version format: {version}")
    return int(match[1]), int(match[2]), int(match[3])


def next_version(existing: List[str], bump: BumpType = "patch") -> str:
    """Bump the highest of ``existing``; ``v1.0.0`` when there is none."""

    if not existing:
        return FIRST_VERSION
    major, minor, patch = max(parse_version(v) for v in existing)
    if bump == "major":
        return f"v{major + 1}.0.0"
    if bump == "minor":
        return f"v{major}.{minor + 1}.0"
    return f"v{major}.{minor}.{patch + 1}"


def check_promotion_criteria(
    model: RegisteredModel, criteria: PromotionCriteria
) -> Optional[str]:
    """Return the reason ``model`` fails ``criteria`` or ``None`` if it passes."""

    vm, bt = model.validation_metrics, model.backtest_metrics
    if vm.auc < criteria.min_auc:
        return f"AUC {vm.auc * 100:.1f}% below minimum {criteria.min_auc * 100:.1f}%"
    if vm.calibration_error > criteria.max_calibration_error:
        return (
            f"Calibration error {vm.calibration_error * 100:.1f}% above maximum "
            f"{criteria.max_calibration_error * 100:.1f}%"
        )
    if criteria.requires_backtest and bt is None:
        return "Backtest metrics required but not available"
    if bt is not None:
        if criteria.min_backtest_win_rate is not None and bt.win_rate < criteria.min_backtest_win_rate:
            return (
                f"Win rate {bt.win_rate * 100:.1f}% below minimum "
                f"{criteria.min_backtest_win_rate * 100:.1f}%"
            )
        if criteria.min_backtest_sharpe is not None and bt.sharpe_ratio < criteria.min_backtest_sharpe:
            return f"Sharpe {bt.sharpe_ratio:.2f} below minimum {criteria.min_backtest_sharpe:.2f}"
    return None


def _recommend(validation_delta: Mapping[str, float]) -> Recommendation:
    if validation_delta["auc"] > 0.01 and validation_delta["calibration_error"] < 0:
        return "promote_v2"
    if validation_delta["auc"] < -0.02 or validation_delta["calibration_error"] > 0.03:
        return "keep_v1"
    return "needs_review"


Artifact = Union[ModelCoefficients, Mapping[str, Any]]


def _artifact_payload(artifact: Artifact) -> Dict[str, Any]:
    if isinstance(artifact, ModelCoefficients):
        return artifact.model_dump(by_alias=True)
    return dict(artifact)


def _feature_count(payload: Mapping[str, Any]) -> int:
    for key in ("weights", "featureNames", "featureMeans"):
        if key in payload:
            return len(payload[key])
    return 0


class ModelRegistry:
    """Versioned model store.

    Each instance serialises its own mutations with a re-entrant lock and
    rewrites ``registry.json`` atomically, so at most one model is ever
    marked as production.
    """

    def __init__(
        self,
        models_dir: Path | str = Path("data/models"),
        production_file: Path | str | None = None,
    ) -> None:
        self.models_dir = Path(models_dir)
        self.registry_file = self.models_dir / "registry.json"
        self.production_file = (
            Path(production_file)
            if production_file is not None
            else self.models_dir.parent / "model-coefficients.json"
        )
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------
    def _load(self) -> RegistryState:
        if not self.registry_file.exists():
            return RegistryState()
        try:
            return RegistryState.model_validate_json(self.registry_file.read_text())
        except (OSError, ValidationError) as exc:
            raise RegistryError(f"Corrupt registry file {self.registry_file}") from exc

    def _save(self, state: RegistryState) -> None:
        state.last_updated = _now()
        atomic_write_json(self.registry_file, state.model_dump(mode="json", by_alias=True))

    def _artifact_path(self, version: str) -> Path:
        return self.models_dir / f"{version}.json"

    def _publish(self, version: str) -> None:
        payload = self.load_artifact(version)
        if payload is not None:
            atomic_write_json(self.production_file, payload)

    # ------------------------------------------------------------------
    # registration and lookup
    # ------------------------------------------------------------------
    def register_model(
        self,
        experiment_id: str,
        artifact: Artifact,
        validation_metrics: ValidationMetrics,
        *,
        model_type: ModelType = "logistic",
        backtest_metrics: Optional[BacktestMetrics] = None,
        tags: Optional[List[str]] = None,
        notes: Optional[str] = None,
        bump_type: BumpType = "patch",
        parent_version: Optional[str] = None,
    ) -> str:
        """Persist ``artifact`` under the next version and return that version."""

        with tracer.start_as_current_span("register_model"), self._lock:
            state = self._load()
            version = next_version([m.version for m in state.models], bump_type)
            payload = _artifact_payload(artifact)
            created = _now()
            payload.update(version=version, registeredAt=created)
            path = self._artifact_path(version)
            if path.exists():
                raise RegistryError(f"Artifact for {version} already exists", version=version)
            atomic_write_json(path, payload)

            state.models.append(
                RegisteredModel(
                    version=version,
                    experiment_id=experiment_id,
                    coefficients_path=path.name,
                    model_type=model_type,
                    feature_count=_feature_count(payload),
                    training_samples=int(payload.get("trainingSamples", 0)),
                    validation_metrics=validation_metrics,
                    backtest_metrics=backtest_metrics,
                    created_at=created,
                    tags=list(tags or []),
                    notes=notes,
                    parent_version=parent_version,
                )
            )
            self._save(state)
        logger.info(
            "Registered model",
            extra={
                "version": version,
                "model_type": model_type,
                "auc": round(validation_metrics.auc * 100, 1),
                "calibration_error": round(validation_metrics.calibration_error * 100, 1),
            },
        )
        return version

    def get_model(self, version: str) -> Optional[RegisteredModel]:
        with self._lock:
            return next((m for m in self._load().models if m.version == version), None)

    def get_production_model(self) -> Optional[RegisteredModel]:
        with self._lock:
            state = self._load()
            if state.current_production_version is None:
                return None
            return next(
                (m for m in state.models if m.version == state.current_production_version),
                None,
            )

    def load_artifact(self, version: str) -> Optional[Dict[str, Any]]:
        """Raw JSON payload stored for ``version``."""

        model = self.get_model(version)
        if model is None:
            return None
        path = self.models_dir / model.coefficients_path
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text())
        except json.JSONDecodeError as exc:
            raise RegistryError("Corrupt model artifact", version=version) from exc

    def load_model_coefficients(self, version: str) -> Optional[ModelCoefficients]:
        """Logistic coefficients for ``version`` (``None`` for other model types)."""

        model = self.get_model(version)
        if model is None or model.model_type != "logistic":
            return None
        payload = self.load_artifact(version)
        if payload is None:
            return None
        try:
            return ModelCoefficients.model_validate(payload)
        except ValidationError as exc:
            raise RegistryError("Corrupt model coefficients", version=version) from exc

    def list_models(self, model_filter: Optional[ModelFilter] = None) -> List[RegisteredModel]:
        """Models matching ``model_filter``, newest version first."""

        with self._lock:
            models = list(self._load().models)
        f = model_filter
        if f is not None:
            if f.model_type is not None:
                models = [m for m in models if m.model_type == f.model_type]
            if f.is_production is not None:
                models = [m for m in models if m.is_production == f.is_production]
            if f.tags:
                models = [m for m in models if set(f.tags) & set(m.tags)]
            if f.min_auc is not None:
                models = [m for m in models if m.validation_metrics.auc >= f.min_auc]
            if f.from_date is not None:
                models = [m for m in models if m.created_at >= f.from_date]
            if f.to_date is not None:
                models = [m for m in models if m.created_at <= f.to_date]
        return sorted(models, key=lambda m: parse_version(m.version), reverse=True)

    # ------------------------------------------------------------------
    # promotion and rollback
    # ------------------------------------------------------------------
    def promote_to_production(
        self, version: str, criteria: Optional[PromotionCriteria] = None
    ) -> PromotionResult:
        """Promote ``version`` if it clears ``criteria``.

        A failed gate leaves the registry untouched.
        """

        criteria = criteria or DEFAULT_PROMOTION_CRITERIA
        with tracer.start_as_current_span("promote_to_production"), self._lock:
            state = self._load()
            model = next((m for m in state.models if m.version == version), None)
            if model is None:
                return PromotionResult(False, f"Model {version} not found")
            reason = check_promotion_criteria(model, criteria)
            if reason is not None:
                logger.info("Promotion rejected", extra={"version": version, "reason": reason})
                return PromotionResult(False, reason)

            for m in state.models:
                m.is_production = False
            model.is_production = True
            model.promoted_at = _now()
            state.current_production_version = version
            self._save(state)
            self._publish(version)
        logger.info("Promoted model to production", extra={"version": version})
        return PromotionResult(True)

    def rollback_model(self, to_version: str) -> PromotionResult:
        """Make ``to_version`` production again, retiring the current one."""

        with tracer.start_as_current_span("rollback_model"), self._lock:
            state = self._load()
            target = next((m for m in state.models if m.version == to_version), None)
            if target is None:
                return PromotionResult(False, f"Model {to_version} not found")
            previous = state.current_production_version
            now = _now()
            for m in state.models:
                if m.is_production:
                    m.is_production = False
                    m.retired_at = now
            target.is_production = True
            target.promoted_at = now
            state.current_production_version = to_version
            self._save(state)
            self._publish(to_version)
        logger.info("Rolled back model", extra={"from_version": previous, "to_version": to_version})
        return PromotionResult(True)

    def update_backtest_metrics(self, version: str, metrics: BacktestMetrics) -> bool:
        """Attach backtest results; ``False`` when ``version`` is unknown."""

        with self._lock:
            state = self._load()
            model = next((m for m in state.models if m.version == version), None)
            if model is None:
                return False
            model.backtest_metrics = metrics
            self._save(state)
        logger.info("Updated backtest metrics", extra={"version": version})
        return True

    # ------------------------------------------------------------------
    # comparison
    # ------------------------------------------------------------------
    def compare_models(self, v1: str, v2: str) -> Optional[ModelComparison]:
        m1, m2 = self.get_model(v1), self.get_model(v2)
        if m1 is None or m2 is None:
            return None
        a, b = m1.validation_metrics, m2.validation_metrics
        validation_delta = {
            "auc": b.auc - a.auc,
            "calibration_error": b.calibration_error - a.calibration_error,
            "accuracy": b.accuracy - a.accuracy,
        }
        backtest_delta = None
        if m1.backtest_metrics is not None and m2.backtest_metrics is not None:
            x, y = m1.backtest_metrics, m2.backtest_metrics
            backtest_delta = {
                "win_rate": y.win_rate - x.win_rate,
                "sharpe_ratio": y.sharpe_ratio - x.sharpe_ratio,
                "profit_factor": y.profit_factor - x.profit_factor,
            }
        return ModelComparison(
            v1=v1,
            v2=v2,
            validation_delta=validation_delta,
            backtest_delta=backtest_delta,
            recommendation=_recommend(validation_delta),
        )


def format_model_summary(model: RegisteredModel) -> str:
    badge = " [PRODUCTION]" if model.is_production else ""
    vm = model.validation_metrics
    lines = [
        f"{model.version}{badge}",
        f"   Type: {model.model_type} | Features: {model.feature_count} | "
        f"Samples: {model.training_samples}",
        f"   Created: {model.created_at}",
        f"   Validation: AUC {vm.auc * 100:.1f}% | CalErr {vm.calibration_error * 100:.1f}% | "
        f"Acc {vm.accuracy * 100:.1f}%",
    ]
    if model.backtest_metrics is not None:
        bt = model.backtest_metrics
        lines.append(
            f"   Backtest: WinRate {bt.win_rate * 100:.1f}% | Sharpe {bt.sharpe_ratio:.2f} | "
            f"PF {bt.profit_factor:.2f}"
        )
    if model.tags:
        lines.append(f"   Tags: {', '.join(model.tags)}")
    return "\n".join(lines)


def format_models_table(models: List[RegisteredModel]) -> str:
    if not models:
        return "No models registered."
    rows = []
    for m in models:
        bt = m.backtest_metrics
        rows.append(
            {
                "Version": m.version,
                "Type": m.model_type,
                "AUC": f"{m.validation_metrics.auc * 100:.1f}%",
                "CalErr": f"{m.validation_metrics.calibration_error * 100:.1f}%",
                "WinRate": f"{bt.win_rate * 100:.1f}%" if bt else "-",
                "Sharpe": f"{bt.sharpe_ratio:.2f}" if bt else "-",
                "Prod": "yes" if m.is_production else "",
            }
        )
    return pd.DataFrame(rows).to_string(index=False)


def _delta(value: float, suffix: str = "%", inverted: bool = False) -> str:
    arrow = ("down" if value >= 0 else "up") if inverted else ("up" if value >= 0 else "down")
    return f"{value:+.1f}{suffix} ({arrow})"


def format_comparison_report(comparison: ModelComparison) -> str:
    vd = comparison.validation_delta
    lines = [
        f"Model Comparison: {comparison.v1} vs {comparison.v2}",
        "=" * 50,
        "Validation Metrics:",
        f"   AUC:          {_delta(vd['auc'] * 100)}",
        f"   Calibration:  {_delta(-vd['calibration_error'] * 100, inverted=True)}",
        f"   Accuracy:     {_delta(vd['accuracy'] * 100)}",
    ]
    if comparison.backtest_delta is not None:
        bd = comparison.backtest_delta
        lines += [
            "Backtest Metrics:",
            f"   Win Rate:      {_delta(bd['win_rate'] * 100)}",
            f"   Sharpe Ratio:  {_delta(bd['sharpe_ratio'], '')}",
            f"   Profit Factor: {_delta(bd['profit_factor'], '')}",
        ]
    verdict = {
        "promote_v2": "Recommend promoting",
        "keep_v1": "Keep current version instead of",
        "needs_review": "Needs manual review of",
    }[comparison.recommendation]
    lines += ["-" * 50, f"Recommendation: {verdict} {comparison.v2}"]
    return "\n".join(lines)


__all__ = [
    "BacktestMetrics",
    "DEFAULT_PROMOTION_CRITERIA",
    "FIRST_VERSION",
    "ModelComparison",
    "ModelFilter",
    "ModelRegistry",
    "PromotionCriteria",
    "PromotionResult",
    "RegisteredModel",
    "RegistryState",
    "ValidationMetrics",
    "check_promotion_criteria",
    "format_comparison_report",
    "format_model_summary",
    "format_models_table",
    "next_version",
    "parse_version",
]
