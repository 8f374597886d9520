import json

import numpy as np
import pytest
from pydantic import ValidationError

from tests.conftest import make_threshold_examples
from tradescore.data.splitter import train_validation_split
from tradescore.exceptions import ModelError
from tradescore.models.logistic import (
    ClassWeights,
    LogisticOptions,
    ModelCoefficients,
    compute_class_weights,
    deserialize_coefficients,
    evaluate_logistic,
    fit_logistic_matrix,
    get_feature_importance,
    predict_examples,
    predict_probability,
    serialize_coefficients,
    train_logistic,
)

FAST = LogisticOptions(learning_rate=0.1, iterations=300)


def test_separable_feature_dominates(examples):
    model = train_logistic(examples, FAST)
    ranked = get_feature_importance(model)
    assert ranked[0][0] == "feature_x"
    assert model.weights["feature_x"] > 0
    metrics = evaluate_logistic(examples, model)
    assert metrics.auc > 90


def test_threshold_label_is_recovered_on_holdout():
    split = train_validation_split(make_threshold_examples(), 0.8, seed=5)
    model = train_logistic(split.train, FAST)
    assert evaluate_logistic(split.validation, model).auc >= 99


def test_training_is_deterministic(examples):
    a = train_logistic(examples, FAST)
    b = train_logistic(examples, FAST)
    assert serialize_coefficients(a) == serialize_coefficients(b)


def test_constant_feature_keeps_unit_std(examples):
    model = train_logistic(examples, FAST)
    assert model.feature_stds["constant"] == 1.0
    assert model.weights["constant"] == pytest.approx(0.0, abs=1e-9)


def test_records_training_metadata(examples):
    model = train_logistic(examples, FAST)
    assert model.training_samples == len(examples)
    assert 0 <= model.validation_accuracy <= 100


def test_empty_training_set_returns_untrained_model():
    model = fit_logistic_matrix(np.zeros((0, 2)), np.zeros(0), ["a", "b"])
    assert model.weights == {"a": 0.0, "b": 0.0}
    assert model.training_samples == 0
    assert predict_probability({"a": 3.0}, model) == pytest.approx(50.0)


def test_predictions_are_probabilities(examples):
    model = train_logistic(examples, FAST)
    probs = predict_examples(examples, model)
    assert probs.shape == (len(examples),)
    assert np.all((probs >= 0) & (probs <= 100))


def test_predict_probability_ignores_unknown_features(examples):
    model = train_logistic(examples, FAST)
    base = dict(examples[0].features)
    with_extra = {**base, "unknown": 123.0}
    assert predict_probability(with_extra, model) == predict_probability(base, model)


@pytest.mark.parametrize("regularization_type", ["L1", "L2", "elastic"])
@pytest.mark.parametrize("schedule", ["constant", "step", "exponential", "cosine"])
def test_regularisation_and_schedules_learn_the_signal(examples, regularization_type, schedule):
    options = FAST.model_copy(
        update={"regularization_type": regularization_type, "lr_schedule": schedule, "momentum": 0.5}
    )
    model = train_logistic(examples, options)
    assert evaluate_logistic(examples, model).auc > 85


@pytest.mark.parametrize("init", ["random", "xavier", "small_random"])
def test_random_initialisation_is_seeded(examples, init):
    options = FAST.model_copy(update={"init_strategy": init, "iterations": 5})
    assert train_logistic(examples, options) == train_logistic(examples, options)


def test_balanced_class_weights():
    labels = np.array([1, 0, 0, 0])
    weights = compute_class_weights(labels, "balanced")
    assert weights.positive == pytest.approx(2.0)
    assert weights.negative == pytest.approx(4 / 6)
    assert compute_class_weights(labels, "none") == ClassWeights()
    manual = ClassWeights(positive=3.0, negative=1.0)
    assert compute_class_weights(labels, manual) is manual


def test_balanced_weights_with_missing_class():
    weights = compute_class_weights(np.array([0, 0]), "balanced")
    assert weights.positive == 1.0


def test_options_validation():
    with pytest.raises(ValidationError):
        LogisticOptions(learning_rate=0)
    with pytest.raises(ValidationError):
        LogisticOptions(momentum=1.0)


def test_serialised_coefficients_use_camel_case(examples):
    model = train_logistic(examples, FAST)
    payload = json.loads(serialize_coefficients(model))
    assert {"featureMeans", "featureStds", "trainingSamples", "validationAccuracy"} <= set(payload)
    assert deserialize_coefficients(serialize_coefficients(model)).model_dump() == model.model_dump()


def test_deserialize_ignores_extra_keys():
    raw = json.dumps({"intercept": 0.5, "weights": {"a": 1.0}, "trainedAt": "2024-01-01"})
    model = deserialize_coefficients(raw)
    assert model.intercept == 0.5
    assert model.feature_names == ["a"]


def test_deserialize_rejects_garbage():
    with pytest.raises(ModelError):
        deserialize_coefficients('{"weights": "nope"}')


def test_arrays_guard_zero_std():
    model = ModelCoefficients(weights={"a": 1.0}, feature_stds={"a": 0.0})
    _, _, stds = model.arrays()
    assert stds.tolist() == [1.0]
