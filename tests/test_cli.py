import json

import pytest
import yaml
from click.testing import CliRunner
from typer.main import get_command

from tests.conftest import make_examples
from tradescore.cli import app
from tradescore.data.examples import examples_to_frame
from tradescore.registry.experiment_tracker import ExperimentTracker


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """Run commands inside ``tmp_path`` with a small CSV dataset."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TRADESCORE_LOG_LEVEL", "CRITICAL")
    examples_to_frame(make_examples(120, seed=5)).to_csv(tmp_path / "data.csv", index=False)
    return tmp_path


@pytest.fixture
def cli():
    return get_command(app)


def _invoke(cli, args):
    return CliRunner().invoke(cli, args, prog_name="tradescore")


def _payload(output):
    """First JSON object printed by a command."""
    start = output.index("{\n")
    obj, _ = json.JSONDecoder().raw_decode(output, start)
    return obj


def _train(cli, *extra):
    return _invoke(cli, ["train", "data.csv", "--iterations", "200", *extra])


def test_help_lists_commands(cli):
    result = _invoke(cli, ["--help"])
    assert result.exit_code == 0
    for command in ("train", "cv", "features", "models", "promote", "rollback", "compare", "experiments"):
        assert command in result.output


def test_train_help(cli):
    result = _invoke(cli, ["train", "--help"])
    assert result.exit_code == 0
    assert "--model-type" in result.output


def test_train_requires_data(cli, workspace):
    result = _invoke(cli, ["train"])
    assert result.exit_code == 1
    assert not (workspace / "data" / "models" / "registry.json").exists()


def test_train_rejects_unknown_model_type(cli, workspace):
    result = _train(cli, "--model-type", "forest")
    assert result.exit_code != 0
    assert result.exit_code != 1


def test_train_logistic_registers_model(cli, workspace):
    result = _train(cli, "--name", "baseline", "--tag", "smoke")
    assert result.exit_code == 0, result.output
    payload = _payload(result.output)
    assert payload["version"] == "v1.0.0"
    assert 0 <= payload["metrics"]["auc"] <= 100

    registry = json.loads((workspace / "data" / "models" / "registry.json").read_text())
    assert registry["models"][0]["experimentId"] == payload["experiment"]
    assert registry["models"][0]["tags"] == ["smoke"]
    assert (workspace / "data" / "models" / "v1.0.0.json").exists()

    experiment = ExperimentTracker(workspace / "data" / "experiments").get_experiment(payload["experiment"])
    assert experiment.status == "completed"
    assert experiment.name == "baseline"
    assert experiment.model_version == "v1.0.0"
    assert experiment.config["modelType"] == "logistic"
    assert experiment.config["trainSamples"] + experiment.config["validationSamples"] == 120

    params = yaml.safe_load((workspace / "params.yaml").read_text())
    assert params["training"]["iterations"] == 200
    assert experiment.config["settingsDigest"]


def test_train_twice_bumps_version(cli, workspace):
    assert _train(cli).exit_code == 0
    second = _train(cli, "--bump", "minor")
    assert second.exit_code == 0
    assert _payload(second.output)["version"] == "v1.1.0"

    listing = _invoke(cli, ["models"])
    assert listing.exit_code == 0
    assert "v1.1.0" in listing.output and "v1.0.0" in listing.output
    assert listing.output.index("v1.1.0") < listing.output.index("v1.0.0")


def test_train_gbm(cli, workspace):
    result = _train(cli, "-m", "gbm", "--num-trees", "5")
    assert result.exit_code == 0, result.output
    artifact = json.loads((workspace / "data" / "models" / "v1.0.0.json").read_text())
    assert artifact["version"] == "v1.0.0"
    filtered = _invoke(cli, ["models", "--model-type", "logistic"])
    assert "No models registered." in filtered.output


def test_config_file_sets_store_locations(cli, workspace):
    (workspace / "settings.yaml").write_text(
        yaml.safe_dump(
            {
                "data": {"models_dir": "store/models", "experiments_dir": "store/experiments"},
                "training": {"iterations": 150, "seed": 3},
            }
        )
    )
    result = _invoke(cli, ["-c", "settings.yaml", "train", "data.csv"])
    assert result.exit_code == 0, result.output
    assert (workspace / "store" / "models" / "registry.json").exists()
    params = yaml.safe_load((workspace / "params.yaml").read_text())
    assert params["training"]["seed"] == 3


def test_invalid_config_file_fails(cli, workspace):
    (workspace / "settings.yaml").write_text(yaml.safe_dump({"training": {"learning_rat": 0.1}}))
    result = _invoke(cli, ["-c", "settings.yaml", "models"])
    assert result.exit_code == 1


def test_missing_explicit_config_fails(cli, workspace):
    result = _invoke(cli, ["-c", "nowhere.yaml", "models"])
    assert result.exit_code == 1


def test_promote_gate_and_rollback(cli, workspace):
    assert _train(cli).exit_code == 0
    assert _train(cli).exit_code == 0

    rejected = _invoke(cli, ["promote", "v1.0.0", "--min-auc", "0.5", "--max-calibration-error", "1.0"])
    assert rejected.exit_code == 1
    assert _payload(rejected.output)["reason"] == "Backtest metrics required but not available"
    assert not (workspace / "data" / "model-coefficients.json").exists()

    for version in ("v1.0.1", "v1.0.0"):
        promoted = _invoke(
            cli, ["promote", version, "--min-auc", "0.5", "--max-calibration-error", "1.0", "--no-require-backtest"]
        )
        assert promoted.exit_code == 0, promoted.output
        assert _payload(promoted.output)["success"] is True
    published = json.loads((workspace / "data" / "model-coefficients.json").read_text())
    assert published["version"] == "v1.0.0"

    rolled = _invoke(cli, ["rollback", "v1.0.1"])
    assert rolled.exit_code == 0
    published = json.loads((workspace / "data" / "model-coefficients.json").read_text())
    assert published["version"] == "v1.0.1"
    production = _invoke(cli, ["models", "--production"])
    assert "v1.0.1" in production.output and "v1.0.0" not in production.output

    assert _invoke(cli, ["rollback", "v9.0.0"]).exit_code == 1


def test_compare(cli, workspace):
    _train(cli)
    _train(cli, "--seed", "9")
    result = _invoke(cli, ["compare", "v1.0.0", "v1.0.1"])
    assert result.exit_code == 0
    assert "Model Comparison: v1.0.0 vs v1.0.1" in result.output
    missing = _invoke(cli, ["compare", "v1.0.0", "v4.0.0"])
    assert missing.exit_code == 1


def test_experiments_listing(cli, workspace):
    assert "No experiments found." in _invoke(cli, ["experiments"]).output
    _train(cli, "--tag", "a")
    _train(cli, "--tag", "b")
    listing = _invoke(cli, ["experiments", "--status", "completed", "--tag", "a"])
    assert listing.exit_code == 0
    assert listing.output.count("completed") == 1


def test_cv_json(cli, workspace):
    result = _invoke(cli, ["--pit", "cv", "data.csv", "--folds", "3", "--json"])
    assert result.exit_code == 0, result.output
    payload = _payload(result.output)
    assert payload["folds"] == 3
    assert payload["total_samples"] == 120
    assert len(payload["fold_results"]) == 3


def test_cv_time_series_table(cli, workspace):
    result = _invoke(cli, ["cv", "data.csv", "-k", "3", "--time-series"])
    assert result.exit_code == 0, result.output
    assert "AUC" in result.output


def test_features_report(cli, workspace):
    result = _invoke(cli, ["features", "data.csv", "--method", "importance"])
    assert result.exit_code == 0, result.output
    assert "FEATURE SELECTION REPORT" in result.output
    assert "feature_x" in result.output
