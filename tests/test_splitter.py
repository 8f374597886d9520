from collections import Counter

import pytest

from tests.conftest import make_examples
from tradescore.data.splitter import (
    SplitResult,
    calculate_split_stats,
    format_split_stats,
    generate_stratified_kfolds,
    generate_walk_forward_folds,
    stratified_kfold_indices,
    stratified_split,
    temporal_split,
    train_validation_split,
    verify_class_balance,
)
from tradescore.exceptions import ConfigurationError, DataError


def _ids(examples):
    return [ex.timestamp for ex in examples]


def test_stratified_split_preserves_every_example(examples):
    split = stratified_split(examples, 0.6, 0.2, 0.2, seed=1)
    combined = split.train + split.validation + split.test
    assert Counter(_ids(combined)) == Counter(_ids(examples))


def test_stratified_split_balances_win_rate(examples):
    split = stratified_split(examples, 0.8, 0.2, 0.0, seed=3)
    balanced, details = verify_class_balance(split, tolerance=2.0)
    assert balanced, details


def test_stratified_split_is_deterministic(examples):
    a = stratified_split(examples, 0.8, 0.2, 0.0, seed=5)
    b = stratified_split(examples, 0.8, 0.2, 0.0, seed=5)
    assert _ids(a.train) == _ids(b.train)
    assert _ids(a.validation) == _ids(b.validation)


def test_different_seed_changes_order(examples):
    a = stratified_split(examples, 0.8, 0.2, 0.0, seed=5)
    b = stratified_split(examples, 0.8, 0.2, 0.0, seed=6)
    assert _ids(a.train) != _ids(b.train)


@pytest.mark.parametrize("ratios", [(0.5, 0.2, 0.2), (0.7, 0.3, 0.1)])
def test_ratios_must_sum_to_one(examples, ratios):
    with pytest.raises(ConfigurationError):
        stratified_split(examples, *ratios)


def test_unstratified_split_sizes(examples):
    split = stratified_split(examples, 0.5, 0.25, 0.25, stratify=False)
    assert len(split.train) == 100
    assert len(split.validation) == 50
    assert len(split.test) == 50


def test_train_validation_split_has_no_test(examples):
    split = train_validation_split(examples, 0.75)
    assert split.test == []
    assert len(split.train) + len(split.validation) == len(examples)


def test_split_stats_and_report(examples):
    split = stratified_split(examples, 0.8, 0.2, 0.0)
    stats = calculate_split_stats(split)
    assert stats.train.total == len(split.train)
    assert stats.train.positive + stats.train.negative == stats.train.total
    assert stats.test.total == 0
    report = format_split_stats(stats)
    assert "Validation" in report
    assert "Test" not in report


def test_verify_class_balance_detects_skew():
    wins = [ex for ex in make_examples(100) if ex.label == 1]
    losses = [ex for ex in make_examples(100) if ex.label == 0]

    balanced, details = verify_class_balance(SplitResult(wins, losses))
    assert not balanced
    assert "Imbalanced" in details


def test_temporal_split_orders_by_time(examples):
    shuffled = list(reversed(examples))
    split = temporal_split(shuffled, 0.6, 0.2, 0.2)
    assert max(_ids(split.train)) < min(_ids(split.validation))
    assert max(_ids(split.validation)) < min(_ids(split.test))


def test_temporal_split_requires_timestamps(examples):
    stripped = [ex.model_copy(update={"timestamp": None}) for ex in examples]
    with pytest.raises(DataError):
        temporal_split(stripped, 0.8, 0.2, 0.0)


def test_kfold_indices_partition_all_examples(examples):
    labels = [ex.label for ex in examples]
    folds = stratified_kfold_indices(labels, 5, seed=2)
    assert len(folds) == 5
    seen = sorted(i for _, val in folds for i in val.tolist())
    assert seen == list(range(len(examples)))
    for train_idx, val_idx in folds:
        assert not set(train_idx.tolist()) & set(val_idx.tolist())


def test_kfold_requires_two_folds(examples):
    with pytest.raises(ConfigurationError):
        generate_stratified_kfolds(examples, 1)


def test_kfold_folds_are_numbered_from_one(examples):
    folds = generate_stratified_kfolds(examples, 4)
    assert [f.fold for f in folds] == [1, 2, 3, 4]
    positives = sum(ex.label for ex in examples)
    for fold in folds:
        val_pos = sum(ex.label for ex in fold.validation)
        assert abs(val_pos - positives / 4) <= 1


def test_walk_forward_windows_expand(examples):
    folds = generate_walk_forward_folds(examples, 4)
    assert len(folds) == 4
    # min train 80 examples, fold size (200 - 80) // 4 == 30
    assert [len(f.train) for f in folds] == [80, 110, 140, 170]
    assert all(len(f.validation) == 30 for f in folds)
    for fold in folds:
        assert max(_ids(fold.train)) < min(_ids(fold.validation))


def test_walk_forward_skips_empty_windows():
    tiny = make_examples(5)
    folds = generate_walk_forward_folds(tiny, 4)
    # min train 2, fold size 0 -> every window is empty
    assert folds == []
