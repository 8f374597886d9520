"""File-backed experiment tracker.

Every experiment lives in ``<experiments_dir>/<id>.json`` and
``index.json`` lists the known ids.  Experiments follow the lifecycle
``pending -> running -> completed | failed``; terminal experiments are
immutable.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import pandas as pd
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from tradescore.exceptions import ExperimentStateError, RegistryError
from tradescore.training.evaluation import ClassificationMetrics
from tradescore.utils.io import atomic_write_json

logger = logging.getLogger(__name__)

ExperimentType = Literal["training", "backtest", "optimization"]
ExperimentStatus = Literal["pending", "running", "completed", "failed"]
TERMINAL_STATUSES = frozenset({"completed", "failed"})

#: Metrics compared by :meth:`ExperimentTracker.compare_experiments`.
COMPARED_METRICS = (
    "auc",
    "accuracy",
    "precision",
    "recall",
    "f1_score",
    "calibration_error",
    "sharpe_ratio",
    "profit_factor",
    "backtest_win_rate",
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExperimentMetrics(_CamelModel):
    """Fractions, not percentages (``auc=0.7`` is 70%)."""

    auc: Optional[float] = None
    accuracy: Optional[float] = None
    precision: Optional[float] = None
    recall: Optional[float] = None
    f1_score: Optional[float] = None
    calibration_error: Optional[float] = None
    backtest_win_rate: Optional[float] = None
    sharpe_ratio: Optional[float] = None
    sortino_ratio: Optional[float] = None
    profit_factor: Optional[float] = None
    max_drawdown: Optional[float] = None
    total_return: Optional[float] = None
    total_trades: Optional[int] = None
    avg_r: Optional[float] = None
    cv_auc_mean: Optional[float] = None
    cv_auc_std: Optional[float] = None
    cv_accuracy_mean: Optional[float] = None
    cv_accuracy_std: Optional[float] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    @classmethod
    def from_classification(cls, metrics: ClassificationMetrics) -> "ExperimentMetrics":
        return cls(
            auc=metrics.auc / 100,
            accuracy=metrics.accuracy / 100,
            precision=metrics.precision / 100,
            recall=metrics.recall / 100,
            f1_score=metrics.f1_score / 100,
            calibration_error=metrics.calibration_error / 100,
        )


class Experiment(_CamelModel):
    id: str
    name: str
    type: ExperimentType = "training"
    status: ExperimentStatus = "pending"
    config: Dict[str, Any] = Field(default_factory=dict)
    metrics: ExperimentMetrics = Field(default_factory=ExperimentMetrics)
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration: Optional[float] = None
    notes: Optional[str] = None
    parent_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    model_version: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def sort_time(self) -> datetime:
        return self.started_at or self.created_at


class ExperimentFilter(_CamelModel):
    type: Optional[ExperimentType] = None
    status: Optional[ExperimentStatus] = None
    tags: List[str] = Field(default_factory=list)
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None
    min_auc: Optional[float] = None
    model_version: Optional[str] = None


class _Index(_CamelModel):
    experiments: List[str] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=_now)


@dataclass(frozen=True)
class ExperimentStats:
    total: int
    by_type: Dict[str, int]
    by_status: Dict[str, int]
    avg_duration: float
    best_auc: Optional[tuple] = None


@dataclass(frozen=True)
class ExperimentComparison:
    exp1: Experiment
    exp2: Experiment
    metrics_delta: Dict[str, float] = field(default_factory=dict)
    config_diff: List[str] = field(default_factory=list)


class ExperimentTracker:
    def __init__(self, experiments_dir: Path | str = Path("data/experiments")) -> None:
        self.experiments_dir = Path(experiments_dir)
        self.index_file = self.experiments_dir / "index.json"
        self._lock = threading.RLock()

    # persistence -------------------------------------------------------
    def _path(self, experiment_id: str) -> Path:
        return self.experiments_dir / f"{experiment_id}.json"

    def _load_index(self) -> _Index:
        if not self.index_file.exists():
            return _Index()
        try:
            return _Index.model_validate_json(self.index_file.read_text())
        except (OSError, ValidationError) as exc:
            raise RegistryError(f"Corrupt experiment index {self.index_file}") from exc

    def _save_index(self, index: _Index) -> None:
        index.last_updated = _now()
        atomic_write_json(self.index_file, index.model_dump(mode="json", by_alias=True))

    def _write(self, experiment: Experiment) -> None:
        atomic_write_json(
            self._path(experiment.id), experiment.model_dump(mode="json", by_alias=True)
        )

    def _mutable(self, experiment_id: str, action: str) -> Optional[Experiment]:
        experiment = self.get_experiment(experiment_id)
        if experiment is not None and experiment.is_terminal:
            raise ExperimentStateError(
                f"Cannot {action} experiment in state {experiment.status}",
                version=experiment_id,
            )
        return experiment

    # lifecycle ---------------------------------------------------------
    def create_experiment(
        self,
        name: str,
        type: ExperimentType = "training",
        config: Optional[Dict[str, Any]] = None,
        *,
        parent_id: Optional[str] = None,
        tags: Optional[List[str]] = None,
        notes: Optional[str] = None,
        start: bool = True,
    ) -> str:
        """Create an experiment and return its id.

        With ``start=False`` the experiment stays ``pending`` until
        :meth:`start_experiment` is called.
        """

        now = _now()
        experiment = Experiment(
            id=uuid.uuid4().hex,
            name=name,
            type=type,
            status="running" if start else "pending",
            config=dict(config or {}),
            created_at=now,
            started_at=now if start else None,
            parent_id=parent_id,
            tags=list(tags or []),
            notes=notes,
        )
        with self._lock:
            self._write(experiment)
            index = self._load_index()
            index.experiments.append(experiment.id)
            self._save_index(index)
        logger.info(
            "Created experiment",
            extra={"experiment_id": experiment.id, "experiment": name, "status": experiment.status},
        )
        return experiment.id

    def start_experiment(self, experiment_id: str) -> Optional[Experiment]:
        with self._lock:
            experiment = self.get_experiment(experiment_id)
            if experiment is None:
                return None
            if experiment.status != "pending":
                raise ExperimentStateError(
                    f"Cannot start experiment in state {experiment.status}",
                    version=experiment_id,
                )
            experiment.status = "running"
            experiment.started_at = _now()
            self._write(experiment)
        return experiment

    def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        path = self._path(experiment_id)
        if not path.exists():
            return None
        try:
            return Experiment.model_validate_json(path.read_text())
        except (OSError, ValidationError) as exc:
            raise RegistryError("Corrupt experiment file", version=experiment_id) from exc

    def update_experiment(
        self,
        experiment_id: str,
        *,
        name: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
        tags: Optional[List[str]] = None,
        model_version: Optional[str] = None,
    ) -> Optional[Experiment]:
        """Update descriptive fields; status changes go through the lifecycle methods."""

        updates = {
            k: v
            for k, v in {
                "name": name,
                "config": config,
                "notes": notes,
                "tags": tags,
                "model_version": model_version,
            }.items()
            if v is not None
        }
        with self._lock:
            experiment = self._mutable(experiment_id, "update")
            if experiment is None:
                return None
            experiment = experiment.model_copy(update=updates)
            self._write(experiment)
        return experiment

    def log_metrics(
        self, experiment_id: str, metrics: ExperimentMetrics | Dict[str, Any]
    ) -> Optional[Experiment]:
        """Merge ``metrics`` into the experiment; unset values are ignored."""

        if not isinstance(metrics, ExperimentMetrics):
            metrics = ExperimentMetrics.model_validate(metrics)
        with self._lock:
            experiment = self._mutable(experiment_id, "log metrics for")
            if experiment is None:
                return None
            merged = experiment.metrics.model_copy(
                update=metrics.model_dump(exclude_none=True)
            )
            experiment.metrics = merged
            self._write(experiment)
        logged = metrics.model_dump(exclude_none=True)
        logger.info(
            "Logged metrics",
            extra={"experiment_id": experiment_id, **{f"metric_{k}": v for k, v in logged.items()}},
        )
        return experiment

    def complete_experiment(
        self,
        experiment_id: str,
        status: Literal["completed", "failed"] = "completed",
        notes: Optional[str] = None,
    ) -> Optional[Experiment]:
        """Close a running experiment, recording its duration in milliseconds."""

        if status not in TERMINAL_STATUSES:
            raise ExperimentStateError(f"Invalid terminal status {status}", version=experiment_id)
        with self._lock:
            experiment = self._mutable(experiment_id, "complete")
            if experiment is None:
                return None
            if experiment.status != "running":
                raise ExperimentStateError(
                    f"Cannot complete experiment in state {experiment.status}",
                    version=experiment_id,
                )
            completed = _now()
            experiment.status = status
            experiment.completed_at = completed
            experiment.duration = (completed - experiment.started_at).total_seconds() * 1000
            if notes:
                experiment.notes = notes
            self._write(experiment)
        log = logger.info if status == "completed" else logger.warning
        log(
            "Experiment finished",
            extra={
                "experiment_id": experiment_id,
                "status": status,
                "duration_ms": round(experiment.duration, 1),
            },
        )
        return experiment

    def delete_experiment(self, experiment_id: str) -> bool:
        with self._lock:
            path = self._path(experiment_id)
            if not path.exists():
                return False
            path.unlink()
            index = self._load_index()
            index.experiments = [e for e in index.experiments if e != experiment_id]
            self._save_index(index)
        return True

    # queries -----------------------------------------------------------
    def list_experiments(self, experiment_filter: Optional[ExperimentFilter] = None) -> List[Experiment]:
        """Matching experiments, most recently started first."""

        with self._lock:
            ids = self._load_index().experiments
        experiments = [e for e in (self.get_experiment(i) for i in ids) if e is not None]
        f = experiment_filter
        if f is not None:
            if f.type is not None:
                experiments = [e for e in experiments if e.type == f.type]
            if f.status is not None:
                experiments = [e for e in experiments if e.status == f.status]
            if f.tags:
                experiments = [e for e in experiments if set(f.tags) & set(e.tags)]
            if f.from_date is not None:
                experiments = [e for e in experiments if e.sort_time >= f.from_date]
            if f.to_date is not None:
                experiments = [e for e in experiments if e.sort_time <= f.to_date]
            if f.min_auc is not None:
                experiments = [
                    e for e in experiments if e.metrics.auc is not None and e.metrics.auc >= f.min_auc
                ]
            if f.model_version is not None:
                experiments = [e for e in experiments if e.model_version == f.model_version]
        return sorted(experiments, key=lambda e: e.sort_time, reverse=True)

    def get_latest_experiment(self, type: Optional[ExperimentType] = None) -> Optional[Experiment]:
        experiments = self.list_experiments(ExperimentFilter(type=type) if type else None)
        return experiments[0] if experiments else None

    def get_experiment_stats(self) -> ExperimentStats:
        experiments = self.list_experiments()
        by_type = {t: 0 for t in ("training", "backtest", "optimization")}
        by_status = {s: 0 for s in ("pending", "running", "completed", "failed")}
        durations = []
        best = None
        for e in experiments:
            by_type[e.type] += 1
            by_status[e.status] += 1
            if e.duration:
                durations.append(e.duration)
            if e.metrics.auc is not None and (best is None or e.metrics.auc > best[1]):
                best = (e.id, e.metrics.auc)
        return ExperimentStats(
            total=len(experiments),
            by_type=by_type,
            by_status=by_status,
            avg_duration=sum(durations) / len(durations) if durations else 0.0,
            best_auc=best,
        )

    def compare_experiments(self, id1: str, id2: str) -> Optional[ExperimentComparison]:
        exp1, exp2 = self.get_experiment(id1), self.get_experiment(id2)
        if exp1 is None or exp2 is None:
            return None
        delta = {}
        for key in COMPARED_METRICS:
            a, b = getattr(exp1.metrics, key), getattr(exp2.metrics, key)
            if a is not None and b is not None:
                delta[key] = b - a
        diff = []
        for key in dict.fromkeys([*exp1.config, *exp2.config]):
            a = json.dumps(exp1.config.get(key), sort_keys=True)
            b = json.dumps(exp2.config.get(key), sort_keys=True)
            if a != b:
                diff.append(f"{key}: {a} -> {b}")
        return ExperimentComparison(exp1=exp1, exp2=exp2, metrics_delta=delta, config_diff=diff)


def _key_metrics(metrics: ExperimentMetrics) -> List[str]:
    out = []
    if metrics.auc is not None:
        out.append(f"AUC: {metrics.auc * 100:.1f}%")
    if metrics.accuracy is not None:
        out.append(f"Acc: {metrics.accuracy * 100:.1f}%")
    if metrics.sharpe_ratio is not None:
        out.append(f"Sharpe: {metrics.sharpe_ratio:.2f}")
    if metrics.backtest_win_rate is not None:
        out.append(f"WinRate: {metrics.backtest_win_rate * 100:.1f}%")
    return out


def format_experiment_summary(experiment: Experiment) -> str:
    lines = [
        f"{experiment.name} ({experiment.id[:8]})",
        f"   Type: {experiment.type} | Status: {experiment.status}",
        f"   Started: {experiment.started_at.isoformat() if experiment.started_at else '-'}",
    ]
    if experiment.duration:
        lines.append(f"   Duration: {experiment.duration / 1000:.1f}s")
    metrics = _key_metrics(experiment.metrics)
    if metrics:
        lines.append(f"   Metrics: {' | '.join(metrics)}")
    if experiment.tags:
        lines.append(f"   Tags: {', '.join(experiment.tags)}")
    return "\n".join(lines)


def format_experiments_table(experiments: List[Experiment], limit: int = 20) -> str:
    if not experiments:
        return "No experiments found."
    table = pd.DataFrame(
        [
            {
                "ID": e.id[:8],
                "Name": e.name[:12],
                "Type": e.type,
                "Status": e.status,
                "AUC": f"{e.metrics.auc * 100:.1f}%" if e.metrics.auc is not None else "-",
                "Sharpe": f"{e.metrics.sharpe_ratio:.2f}" if e.metrics.sharpe_ratio is not None else "-",
            }
            for e in experiments[:limit]
        ]
    )
    out = table.to_string(index=False)
    if len(experiments) > limit:
        out += f"\n... and {len(experiments) - limit} more experiments"
    return out


__all__ = [
    "Experiment",
    "ExperimentComparison",
    "ExperimentFilter",
    "ExperimentMetrics",
    "ExperimentStats",
    "ExperimentTracker",
    "format_experiment_summary",
    "format_experiments_table",
]
