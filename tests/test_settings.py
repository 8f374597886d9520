"""Tests for configuration loader and parameter snapshots."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from config.settings import (
    DataConfig,
    ExecutionConfig,
    TrainingConfig,
    compute_settings_hash,
    load_settings,
    save_params,
)
from tradescore.exceptions import ConfigurationError


def test_load_settings_valid(tmp_path: Path) -> None:
    cfg = tmp_path / "params.yaml"
    cfg.write_text(
        """
data:
  data_file: trades.csv
training:
  num_trees: 25
  stacking_method: weighted_average
execution:
  n_jobs: 2
"""
    )
    data, training, execution = load_settings(path=cfg)
    assert data.data_file == Path("trades.csv")
    assert training.num_trees == 25
    assert training.stacking_method == "weighted_average"
    assert execution.n_jobs == 2


def test_load_settings_missing_file_uses_defaults(tmp_path: Path) -> None:
    data, training, execution = load_settings(path=tmp_path / "absent.yaml")
    assert data.models_dir == Path("data/models")
    assert training.seed == 42
    assert execution.pit_enforcement is False


def test_load_settings_rejects_unknown_field(tmp_path: Path) -> None:
    cfg = tmp_path / "params.yaml"
    cfg.write_text("training:\n  batch_size: 16\n")
    with pytest.raises(ConfigurationError, match="invalid training settings"):
        load_settings(path=cfg)


def test_load_settings_out_of_range_value(tmp_path: Path) -> None:
    cfg = tmp_path / "params.yaml"
    cfg.write_text("training:\n  subsample: 0.0\n")
    with pytest.raises(ConfigurationError) as info:
        load_settings(path=cfg)
    assert isinstance(info.value.__cause__, ValidationError)


def test_load_settings_explicit_path_must_exist(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="config file not found"):
        load_settings(path=tmp_path / "absent.yaml", required=True)


def test_load_settings_malformed_yaml(tmp_path: Path) -> None:
    cfg = tmp_path / "params.yaml"
    cfg.write_text("training: [unclosed\n")
    with pytest.raises(ConfigurationError):
        load_settings(path=cfg)


def test_load_settings_non_mapping_section(tmp_path: Path) -> None:
    cfg = tmp_path / "params.yaml"
    cfg.write_text("training:\n  - 1\n  - 2\n")
    with pytest.raises(ConfigurationError):
        load_settings(path=cfg)


def test_load_settings_null_section_is_empty(tmp_path: Path) -> None:
    cfg = tmp_path / "params.yaml"
    cfg.write_text("data: null\ntraining:\n  iterations: 10\n")
    data, training, _ = load_settings(path=cfg)
    assert data == DataConfig()
    assert training.iterations == 10


def test_overrides_take_precedence(tmp_path: Path) -> None:
    cfg = tmp_path / "params.yaml"
    cfg.write_text("training:\n  seed: 1\n")
    _, training, _ = load_settings({"seed": 9, "iterations": None}, path=cfg)
    assert training.seed == 9
    assert training.iterations == TrainingConfig().iterations


def test_training_config_range_checks() -> None:
    with pytest.raises(ValidationError):
        TrainingConfig(subsample=0.0)
    with pytest.raises(ValidationError):
        TrainingConfig(validation_ratio=1.0)


def test_save_params_roundtrip_and_hash(tmp_path: Path) -> None:
    out = tmp_path / "params.yaml"
    data = DataConfig(data_file=Path("x.csv"))
    training = TrainingConfig(num_trees=7)
    execution = ExecutionConfig()
    snapshot = save_params(data, training, execution, path=out)

    written = yaml.safe_load(out.read_text())
    assert written["training"]["num_trees"] == 7
    assert written["data"]["data_file"] == "x.csv"
    assert snapshot.digest == compute_settings_hash(data, training, execution)

    loaded = load_settings(path=out)
    assert compute_settings_hash(*loaded) == snapshot.digest


def test_settings_hash_changes_with_values() -> None:
    a = compute_settings_hash(DataConfig(), TrainingConfig(seed=1))
    b = compute_settings_hash(DataConfig(), TrainingConfig(seed=2))
    assert a != b


def test_snapshot_as_dict_is_a_copy(tmp_path: Path) -> None:
    snapshot = save_params(DataConfig(), TrainingConfig(), path=tmp_path / "p.yaml")
    copy = snapshot.as_dict()
    copy["training"]["seed"] = -1
    assert snapshot.data["training"]["seed"] == 42
