import threading

import pytest

from tradescore.exceptions import OperationCancelled
from tradescore.features.analysis import (
    AblationResult,
    FeatureImportance,
    PermutationResult,
    ablation_study,
    analyze_feature_importance,
    coefficient_importance,
    combine_importance_scores,
    format_importance_report,
    permutation_importance,
)
from tradescore.models.logistic import LogisticOptions, train_logistic

FAST = LogisticOptions(learning_rate=0.1, iterations=200)


@pytest.fixture
def model(examples):
    return train_logistic(examples, FAST)


def test_coefficient_importance_ranks_signal_first(examples, model):
    ranked = coefficient_importance(model, examples)
    assert ranked[0].feature == "feature_x"
    assert [f.rank for f in ranked] == list(range(1, len(ranked) + 1))
    assert ranked[0].coefficient_magnitude == abs(model.weights["feature_x"])
    constant = next(f for f in ranked if f.feature == "constant")
    assert constant.normalized_coefficient == pytest.approx(0.0)


def test_permutation_importance(examples, model):
    results = permutation_importance(examples, model, num_permutations=3, seed=1)
    assert results[0].feature == "feature_x"
    assert results[0].auc_drop > 10
    assert all(r.importance >= 0 for r in results)
    constant = next(r for r in results if r.feature == "constant")
    assert constant.auc_drop == pytest.approx(0.0)


def test_permutation_importance_independent_of_workers(examples, model):
    serial = permutation_importance(examples, model, seed=3, n_jobs=1)
    threaded = permutation_importance(examples, model, seed=3, n_jobs=2)
    assert serial == threaded


def test_permutation_importance_empty(model):
    assert permutation_importance([], model) == []


def test_ablation_study_flags_the_signal(small_examples):
    results = ablation_study(small_examples, FAST)
    assert results[0].feature == "feature_x"
    assert results[0].auc_drop > 10
    assert {r.feature for r in results} == set(small_examples[0].features)


def test_ablation_cancelled(small_examples):
    event = threading.Event()
    event.set()
    with pytest.raises(OperationCancelled):
        ablation_study(small_examples, FAST, cancel_event=event)


def test_combine_scores_weights_families():
    coefficient = [
        FeatureImportance("a", 1.0, 1.0, combined_score=1.0),
        FeatureImportance("b", 0.5, 0.5, combined_score=0.5),
    ]
    permutation = [
        PermutationResult("a", 80, 80, 0.0, 0.0),
        PermutationResult("b", 80, 70, 10.0, 10.0),
    ]
    ablation = [
        AblationResult("a", 80, 75, 5.0, 5.0),
        AblationResult("b", 80, 75, 5.0, 5.0),
    ]
    combined = {f.feature: f for f in combine_importance_scores(coefficient, permutation, ablation)}
    # a: (1*1.0 + 2*0.0 + 2*1.0) / 5, b: (1*0.5 + 2*1.0 + 2*1.0) / 5
    assert combined["a"].combined_score == pytest.approx(0.6)
    assert combined["b"].combined_score == pytest.approx(0.9)
    assert combined["b"].rank == 1
    # inputs are not mutated
    assert coefficient[0].combined_score == 1.0


def test_combine_scores_without_optional_families():
    coefficient = [FeatureImportance("a", 2.0, 2.0), FeatureImportance("b", 1.0, 1.0)]
    combined = combine_importance_scores(coefficient)
    assert [f.combined_score for f in combined] == pytest.approx([1.0, 0.5])


def test_analyze_feature_importance(examples, model):
    result = analyze_feature_importance(examples, model, num_permutations=2)
    assert result.method == "permutation"
    assert result.top_features[0] == "feature_x"
    assert "constant" in result.low_importance_features
    assert result.baseline_auc > 90
    assert any("low importance" in r for r in result.recommendations)
    assert result.scores()["feature_x"] == pytest.approx(1.0)


def test_analysis_with_ablation_is_combined(small_examples):
    model = train_logistic(small_examples, FAST)
    result = analyze_feature_importance(
        small_examples, model, include_ablation=True, training_options=FAST, num_permutations=2
    )
    assert result.method == "combined"
    assert all(f.ablation_importance is not None for f in result.features)


def test_importance_report(examples, model):
    result = analyze_feature_importance(examples, model, include_permutation=False)
    assert result.method == "coefficient"
    report = format_importance_report(result, top_n=3)
    assert "FEATURE IMPORTANCE REPORT" in report
    assert "feature_x" in report
    assert "N/A" in report
