import json

import numpy as np
import pytest

from tradescore.data.splitter import train_validation_split
from tradescore.exceptions import ModelError
from tradescore.models.gradient_boosting import GBMConfig, predict_gbm_examples, train_gbm
from tradescore.models.logistic import LogisticOptions, predict_examples, train_logistic
from tradescore.models.stacking import (
    StackingConfig,
    compare_all_models,
    create_stacked_model_from_weights,
    evaluate_stacked_model,
    predict_stacked,
    predict_stacked_examples,
    predict_stacked_simple,
    serialize_stacked_model_weights,
    train_stacked_model,
)

LOGISTIC = LogisticOptions(learning_rate=0.1, iterations=200)
GBM = GBMConfig(num_trees=15, max_depth=3, min_samples_leaf=5, min_samples_split=10)


@pytest.fixture
def base_models(examples):
    split = train_validation_split(examples, 0.75, seed=3)
    lr = train_logistic(split.train, LOGISTIC)
    gbm = train_gbm(split.train, (), GBM)
    return split, lr, gbm


def test_simple_average_is_the_mean_of_base_predictions(base_models):
    split, lr, gbm = base_models
    model = train_stacked_model(split.train, split.validation, lr, gbm, StackingConfig(method="simple_average"))
    expected = 0.5 * predict_examples(split.validation, lr) + 0.5 * predict_gbm_examples(split.validation, gbm)
    assert np.allclose(predict_stacked_examples(split.validation, model), expected)
    assert model.meta_weights.logistic == model.meta_weights.gbm == 0.5


def test_weighted_average_weights_sum_to_one(base_models):
    split, lr, gbm = base_models
    model = train_stacked_model(split.train, split.validation, lr, gbm, StackingConfig(method="weighted_average"))
    w = model.meta_weights
    assert w.logistic + w.gbm == pytest.approx(1.0)
    assert w.logistic > 0 and w.gbm > 0


def test_meta_learner_outperforms_chance(base_models):
    split, lr, gbm = base_models
    model = train_stacked_model(split.train, split.validation, lr, gbm)
    assert model.method == "meta_learner"
    assert model.metrics.val_auc > 85
    assert model.training_samples == len(split.train)
    probs = predict_stacked_examples(split.validation, model)
    assert np.all((probs >= 0) & (probs <= 100))


def test_meta_learner_is_deterministic(base_models):
    split, lr, gbm = base_models
    a = train_stacked_model(split.train, split.validation, lr, gbm)
    b = train_stacked_model(split.train, split.validation, lr, gbm)
    assert serialize_stacked_model_weights(a) == serialize_stacked_model_weights(b)


def test_out_of_fold_meta_features(base_models):
    split, lr, gbm = base_models
    cfg = StackingConfig(cv_folds=3)
    model = train_stacked_model(
        split.train, split.validation, lr, gbm, cfg, logistic_options=LOGISTIC, gbm_config=GBM
    )
    in_sample = train_stacked_model(split.train, split.validation, lr, gbm)
    assert model.meta_feature_means != in_sample.meta_feature_means
    assert evaluate_stacked_model(split.validation, model).auc > 80


def test_single_prediction_matches_batch(base_models):
    split, lr, gbm = base_models
    model = train_stacked_model(split.train, split.validation, lr, gbm)
    example = split.validation[0]
    assert predict_stacked(example.features, model) == pytest.approx(
        predict_stacked_examples([example], model)[0]
    )


def test_predict_stacked_simple_weight(base_models):
    _, lr, gbm = base_models
    features = {"feature_x": 1.5}
    only_lr = predict_stacked_simple(features, lr, gbm, logistic_weight=1.0)
    only_gbm = predict_stacked_simple(features, lr, gbm, logistic_weight=0.0)
    half = predict_stacked_simple(features, lr, gbm)
    assert half == pytest.approx((only_lr + only_gbm) / 2)


def test_weights_round_trip(base_models):
    split, lr, gbm = base_models
    model = train_stacked_model(split.train, split.validation, lr, gbm)
    payload = json.loads(serialize_stacked_model_weights(model))
    assert set(payload) >= {"method", "metaWeights", "metaFeatureMeans", "metaFeatureStds"}
    restored = create_stacked_model_from_weights(payload, lr, gbm)
    assert np.allclose(
        predict_stacked_examples(split.validation, restored),
        predict_stacked_examples(split.validation, model),
    )


def test_bad_weights_payload(base_models):
    _, lr, gbm = base_models
    with pytest.raises(ModelError):
        create_stacked_model_from_weights("{}", lr, gbm)


def test_compare_all_models(base_models):
    split, lr, gbm = base_models
    model = train_stacked_model(split.train, split.validation, lr, gbm)
    best, results = compare_all_models(split.validation, lr, gbm, model)
    assert set(results) == {"logistic", "gbm", "stacked"}
    assert results[best]["auc"] == max(r["auc"] for r in results.values())


def test_empty_validation_metrics(base_models):
    _, lr, gbm = base_models
    model = train_stacked_model([], [], lr, gbm, StackingConfig(method="simple_average"))
    assert evaluate_stacked_model([], model).auc == 0.0
