import logging
import threading

import numpy as np
import pytest

from tradescore.exceptions import ModelError, OperationCancelled
from tradescore.models.ensemble import (
    EnsembleModel,
    deserialize_ensemble,
    ensemble_predict,
    evaluate_ensemble,
    format_ensemble_report,
    normalise_weights,
    serialize_ensemble,
    train_ensemble,
)
from tradescore.models.gradient_boosting import GBMConfig
from tradescore.models.logistic import LogisticOptions
from tradescore.utils.random import SEED_STRIDE

LOGISTIC = LogisticOptions(learning_rate=0.1, iterations=150)
GBM = GBMConfig(num_trees=8, max_depth=2, min_samples_leaf=5, min_samples_split=10)


def test_members_use_distinct_seeds(examples):
    ensemble = train_ensemble(examples, 3, logistic_options=LOGISTIC)
    assert ensemble.num_models == 3
    intercepts = {m.intercept for m in ensemble.models}
    assert len(intercepts) == 3


def test_member_seeds_are_strided(examples, caplog):
    caplog.set_level(logging.INFO, logger="tradescore.models.ensemble")
    train_ensemble(examples, 3, logistic_options=LOGISTIC, base_seed=11)
    seeds = [r.seed for r in caplog.records if r.getMessage() == "Trained ensemble member"]
    assert sorted(seeds) == [11, 11 + SEED_STRIDE, 11 + 2 * SEED_STRIDE]


def test_weights_sum_to_one(examples):
    for method in ("average", "weighted", "voting"):
        ensemble = train_ensemble(examples, 4, method=method, logistic_options=LOGISTIC)
        assert ensemble.weights.sum() == pytest.approx(1.0)


def test_normalise_weights():
    assert normalise_weights([], "weighted").size == 0
    assert np.allclose(normalise_weights([60, 80, 60], "average"), [1 / 3] * 3)
    assert np.allclose(normalise_weights([60, 80, 60], "weighted"), [0.3, 0.4, 0.3])
    assert np.allclose(normalise_weights([0, 0], "weighted"), [0.5, 0.5])


def test_result_independent_of_worker_count(examples):
    serial = train_ensemble(examples, 4, logistic_options=LOGISTIC, n_jobs=1)
    threaded = train_ensemble(examples, 4, logistic_options=LOGISTIC, n_jobs=2)
    assert serialize_ensemble(serial) == serialize_ensemble(threaded)


def test_prediction_aggregates_members(examples):
    ensemble = train_ensemble(examples, 3, logistic_options=LOGISTIC)
    prediction = ensemble_predict(examples[0].features, ensemble)
    assert len(prediction.individual_predictions) == 3
    assert prediction.probability == pytest.approx(np.mean(prediction.individual_predictions))
    assert prediction.variance == pytest.approx(np.var(prediction.individual_predictions))
    assert 0 <= prediction.confidence <= 100


def test_voting_counts_members_above_fifty(examples):
    ensemble = train_ensemble(examples, 4, method="voting", logistic_options=LOGISTIC)
    prediction = ensemble_predict(examples[0].features, ensemble)
    votes = sum(p >= 50 for p in prediction.individual_predictions)
    assert prediction.probability == pytest.approx(votes / 4 * 100)


def test_predict_without_members_raises():
    empty = EnsembleModel(models=[], weights=np.zeros(0))
    with pytest.raises(ModelError):
        ensemble_predict({"feature_x": 1.0}, empty)


def test_evaluate_ensemble(examples):
    ensemble = train_ensemble(examples, 3, logistic_options=LOGISTIC)
    metrics = evaluate_ensemble(examples, ensemble)
    assert metrics.auc > 90
    assert len(metrics.individual_aucs) == 3
    assert metrics.prediction_variance >= 0
    report = format_ensemble_report(ensemble, metrics)
    assert "Ensemble AUC" in report


def test_gbm_members_round_trip(examples):
    ensemble = train_ensemble(examples, 2, member_type="gbm", gbm_config=GBM)
    restored = deserialize_ensemble(serialize_ensemble(ensemble))
    assert restored.member_type == "gbm"
    features = examples[3].features
    assert ensemble_predict(features, restored).probability == pytest.approx(
        ensemble_predict(features, ensemble).probability
    )


def test_cancelled_before_first_member(examples):
    event = threading.Event()
    event.set()
    with pytest.raises(OperationCancelled):
        train_ensemble(examples, 3, logistic_options=LOGISTIC, cancel_event=event)


def test_deserialize_rejects_bad_payload():
    with pytest.raises(ModelError):
        deserialize_ensemble('{"models": []}')
