"""Pydantic based configuration models and loader.

Configuration values can be populated from environment variables, a
``params.yaml`` file and command line arguments.  Three sections are exposed:

``DataConfig``
    Locations of the training data and of the file-backed artifact store.
``TrainingConfig``
    Hyper parameters for the linear baseline, the boosting engine, stacking,
    bagging and cross-validation.
``ExecutionConfig``
    Runtime toggles such as worker count, tracing or PIT enforcement.

:func:`load_settings` loads ``params.yaml`` if present and applies overrides
supplied by the CLI.  :func:`save_params` persists the resolved values and
returns a digest that experiments record for reproducibility.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Tuple

import yaml
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings

from tradescore.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettingsSnapshot:
    """Frozen snapshot of resolved configuration values."""

    digest: str
    data: Dict[str, Dict[str, Any]]

    def as_dict(self) -> Dict[str, Dict[str, Any]]:
        """Return a deep copy of the stored configuration data."""

        return json.loads(json.dumps(self.data, sort_keys=True))


class DataConfig(BaseSettings):
    """Data input and artifact store locations."""

    data_file: Optional[Path] = None
    models_dir: Path = Path("data/models")
    experiments_dir: Path = Path("data/experiments")
    production_file: Path = Path("data/model-coefficients.json")
    label_column: str = "label"
    timestamp_column: str = "timestamp"

    model_config = {"env_prefix": "DATA_", "extra": "forbid"}


class TrainingConfig(BaseSettings):
    """Training and evaluation parameters."""

    # linear baseline
    learning_rate: float = Field(0.01, gt=0)
    iterations: int = Field(1000, ge=0)
    regularization: float = Field(0.01, ge=0)
    class_weight: Literal["none", "balanced"] = "none"

    # gradient boosting
    num_trees: int = Field(100, ge=0)
    max_depth: int = Field(4, ge=0)
    gbm_learning_rate: float = Field(0.1, ge=0)
    subsample: float = Field(0.8, gt=0, le=1)
    colsample: float = Field(0.8, gt=0, le=1)
    min_samples_leaf: int = Field(10, ge=1)
    min_samples_split: int = Field(20, ge=2)
    l2_regularization: float = Field(1.0, ge=0)
    early_stopping_rounds: Optional[int] = 10

    seed: int = 42
    validation_ratio: float = Field(0.2, gt=0, lt=1)
    cv_folds: int = Field(5, ge=2)
    stacking_method: Literal["simple_average", "weighted_average", "meta_learner"] = (
        "meta_learner"
    )
    ensemble_size: int = Field(5, ge=1)
    ensemble_method: Literal["average", "weighted", "voting"] = "average"
    bootstrap_ratio: float = Field(1.0, gt=0)

    model_config = {"env_prefix": "TRAIN_", "extra": "forbid"}


class ExecutionConfig(BaseSettings):
    """Runtime execution options."""

    n_jobs: int = 1
    trace: bool = False
    trace_exporter: str = "otlp"
    pit_enforcement: bool = False

    model_config = {"env_prefix": "EXEC_", "extra": "forbid"}


def _serialise_settings(
    data: DataConfig,
    training: TrainingConfig,
    execution: ExecutionConfig | None,
) -> Dict[str, Dict[str, Any]]:
    def _dump(model: BaseSettings) -> Dict[str, Any]:
        dumped = model.model_dump(mode="python", exclude_none=True)
        return {
            key: str(value) if isinstance(value, Path) else value
            for key, value in dumped.items()
        }

    serialised: Dict[str, Dict[str, Any]] = {
        "data": _dump(data),
        "training": _dump(training),
    }
    if execution is not None:
        serialised["execution"] = _dump(execution)
    return serialised


def compute_settings_hash(
    data: DataConfig,
    training: TrainingConfig,
    execution: ExecutionConfig | None = None,
) -> str:
    """Compute a deterministic hash for the resolved configuration values."""

    serialised = _serialise_settings(data, training, execution)
    payload = json.dumps(serialised, sort_keys=True).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def save_params(
    data: DataConfig,
    training: TrainingConfig,
    execution: ExecutionConfig | None = None,
    path: Path = Path("params.yaml"),
) -> SettingsSnapshot:
    """Persist resolved configuration values to ``params.yaml``."""

    serialised = _serialise_settings(data, training, execution)
    existing: Dict[str, Any] = {}
    if path.exists():
        try:
            existing = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError:
            logger.exception("Failed to read existing parameters from %s", path)
            existing = {}
    existing.update(serialised)
    path.write_text(yaml.safe_dump(existing, sort_keys=False))
    digest = compute_settings_hash(data, training, execution)
    return SettingsSnapshot(digest=digest, data=serialised)


def load_settings(
    overrides: Dict[str, Any] | None = None,
    *,
    path: Path = Path("params.yaml"),
    required: bool = False,
) -> Tuple[DataConfig, TrainingConfig, ExecutionConfig]:
    """Load configuration values from ``path`` applying ``overrides``.

    Parameters
    ----------
    overrides:
        Mapping of CLI arguments. Keys that match fields on the config models
        override values loaded from file/environment.
    path:
        Location of the YAML configuration file. Defaults to ``params.yaml`` in
        the current directory.
    required:
        Raise :class:`ConfigurationError` when ``path`` does not exist instead
        of falling back to defaults. Set for paths the user named explicitly.
    """

    try:
        raw: Dict[str, Any] = yaml.safe_load(path.read_text()) or {}
    except FileNotFoundError:
        if required:
            raise ConfigurationError(f"config file not found: {path}") from None
        raw = {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"{path} is not valid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path} must contain a mapping")

    overrides = overrides or {}

    def _section(name: str, model: type[BaseSettings]) -> Dict[str, Any]:
        value = raw.get(name, {})
        if value is None:
            value = {}
        if not isinstance(value, dict):
            raise ConfigurationError(f"{name} section must be a mapping")
        fields = model.model_fields
        unknown = sorted(set(value) - set(fields))
        if unknown:
            logger.error("Unknown %s settings: %s", name, ", ".join(unknown))
        allowed = dict(value)
        extra = {
            k: v
            for k, v in overrides.items()
            if k in fields and v is not None
        }
        return {**allowed, **extra}

    def _build(name: str, model: type[BaseSettings]) -> Any:
        try:
            return model(**_section(name, model))
        except ValidationError as exc:
            raise ConfigurationError(f"invalid {name} settings in {path}: {exc}") from exc

    data_cfg = _build("data", DataConfig)
    train_cfg = _build("training", TrainingConfig)
    exec_cfg = _build("execution", ExecutionConfig)
    return data_cfg, train_cfg, exec_cfg


__all__ = [
    "DataConfig",
    "TrainingConfig",
    "ExecutionConfig",
    "load_settings",
    "compute_settings_hash",
    "save_params",
    "SettingsSnapshot",
]
