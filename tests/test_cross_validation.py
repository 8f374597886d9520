import json
import math
import threading

import numpy as np
import pytest

from tradescore.exceptions import OperationCancelled
from tradescore.training.cross_validation import (
    TRAINER_REGISTRY,
    create_metric_stats,
    cross_validate,
    format_cv_results,
    get_trainer,
    register_trainer,
    serialize_cv_results,
    stability_label,
    t_value,
    time_series_cross_validate,
)

FAST = {"learning_rate": 0.1, "iterations": 150}


def test_t_value_table():
    assert t_value(5) == 2.776
    assert t_value(10) == 2.262
    assert t_value(20) == 2.086
    assert t_value(21) == 1.96


def test_metric_stats_with_sample_std():
    stats = create_metric_stats([60.0, 70.0, 80.0])
    assert stats.mean == pytest.approx(70.0)
    assert stats.std == pytest.approx(10.0)
    margin = 2.776 * 10.0 / math.sqrt(3)
    assert stats.ci95 == pytest.approx((70.0 - margin, 70.0 + margin))
    assert (stats.min, stats.max) == (60.0, 80.0)


def test_zero_variance_metrics_collapse_interval():
    stats = create_metric_stats([72.5, 72.5, 72.5])
    assert stats.std == 0.0
    assert stats.ci95 == (72.5, 72.5)


def test_empty_metric_stats():
    stats = create_metric_stats([])
    assert stats.values == []
    assert stats.mean == 0.0


@pytest.mark.parametrize(
    "std, label", [(1.0, "excellent"), (2.5, "good"), (4.0, "moderate"), (6.0, "unreliable")]
)
def test_stability_label(std, label):
    assert stability_label(std) == label


def test_cross_validate_collects_every_fold(examples):
    result = cross_validate(examples, 4, seed=1, training_options=FAST)
    assert result.folds == 4
    assert [r.fold for r in result.fold_results] == [1, 2, 3, 4]
    assert sum(r.val_size for r in result.fold_results) == len(examples)
    assert result.metrics["auc"].mean > 90
    assert result.training_options["momentum"] == 0.9
    assert result.total_samples == len(examples)


def test_cross_validate_is_deterministic_across_workers(examples):
    serial = cross_validate(examples, 3, seed=4, training_options=FAST, n_jobs=1)
    threaded = cross_validate(examples, 3, seed=4, training_options=FAST, n_jobs=3)
    assert serial.metrics["auc"].values == threaded.metrics["auc"].values
    assert serial.metrics["calibration_error"].values == threaded.metrics["calibration_error"].values


def test_gbm_trainer(examples):
    result = cross_validate(
        examples, 3, trainer="gbm", training_options={"num_trees": 10, "max_depth": 2}
    )
    assert result.trainer == "gbm"
    assert result.metrics["auc"].mean > 85


def test_custom_trainer_receives_fold_seed(examples):
    seen = []

    def constant_trainer(train, params, seed):
        seen.append(seed)
        return lambda rows: np.full(len(rows), 50.0)

    register_trainer("constant", constant_trainer)
    try:
        result = cross_validate(examples, 3, seed=10, trainer="constant")
    finally:
        TRAINER_REGISTRY.pop("constant")
    assert sorted(seen) == [11, 12, 13]
    assert result.metrics["auc"].std == 0.0
    assert result.metrics["auc"].mean == 50.0


def test_unknown_trainer():
    with pytest.raises(KeyError):
        get_trainer("missing")


def test_time_series_cross_validate(examples):
    result = time_series_cross_validate(examples, 4, training_options=FAST)
    assert result.folds == 4
    assert [r.train_size for r in result.fold_results] == [80, 110, 140, 170]


def test_cancellation(examples):
    event = threading.Event()
    event.set()
    with pytest.raises(OperationCancelled):
        cross_validate(examples, 3, training_options=FAST, cancel_event=event)


def test_report_and_json(examples):
    result = cross_validate(examples, 3, training_options=FAST)
    report = format_cv_results(result)
    assert "CROSS-VALIDATION RESULTS" in report
    assert "Stability:" in report
    payload = json.loads(serialize_cv_results(result))
    assert payload["folds"] == 3
    assert len(payload["fold_results"]) == 3
