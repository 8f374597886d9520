from collections import Counter

import numpy as np
from hypothesis import given, settings, strategies as st

from tests.property.strategies import (
    labelled_examples,
    labels,
    probabilities_with_labels,
    split_ratios,
    versions,
)
from tradescore.data.splitter import stratified_kfold_indices, stratified_split
from tradescore.models.ensemble import normalise_weights
from tradescore.registry.model_registry import next_version, parse_version
from tradescore.training.evaluation import calculate_auc, calculate_calibration_error
from tradescore.utils.random import SeededRNG


@given(labelled_examples(), split_ratios(), st.integers(0, 1000))
@settings(deadline=None, max_examples=50)
def test_stratified_split_partitions_each_class(examples, ratios, seed):
    train_ratio, validation_ratio, test_ratio = ratios
    split = stratified_split(examples, train_ratio, validation_ratio, test_ratio, seed=seed)
    parts = split.train + split.validation + split.test
    assert Counter(map(id, parts)) == Counter(map(id, examples))

    for label in (0, 1):
        n = sum(ex.label == label for ex in examples)
        assert sum(ex.label == label for ex in split.train) == int(n * train_ratio)


@given(labelled_examples(), st.integers(0, 1000))
@settings(deadline=None, max_examples=25)
def test_stratified_split_is_deterministic(examples, seed):
    a = stratified_split(examples, 0.7, 0.3, 0.0, seed=seed)
    b = stratified_split(examples, 0.7, 0.3, 0.0, seed=seed)
    assert [id(x) for x in a.train] == [id(x) for x in b.train]
    assert [id(x) for x in a.validation] == [id(x) for x in b.validation]


@given(labels(min_size=4), st.integers(2, 4), st.integers(0, 1000))
@settings(deadline=None, max_examples=50)
def test_kfold_validation_sets_partition_indices(ys, k, seed):
    folds = stratified_kfold_indices(ys, k, seed)
    validation = np.concatenate([val for _, val in folds])
    assert sorted(validation.tolist()) == list(range(len(ys)))
    positives = [int(np.sum(np.asarray(ys)[val])) for _, val in folds]
    assert max(positives) - min(positives) <= 1
    for train, val in folds:
        assert not set(train.tolist()) & set(val.tolist())
        assert len(train) + len(val) == len(ys)


@given(
    st.integers(600, 3000),
    st.floats(0.05, 0.95),
    st.integers(2, 10),
    st.integers(0, 1000),
)
@settings(deadline=None, max_examples=40)
def test_kfold_positive_rate_tracks_global_rate(n, rate, k, seed):
    ys = np.zeros(n, dtype=int)
    ys[: max(1, int(n * rate))] = 1
    ys = np.random.default_rng(seed).permutation(ys)
    global_rate = ys.mean()
    for _, val in stratified_kfold_indices(ys.tolist(), k, seed):
        assert abs(ys[val].mean() - global_rate) <= 0.02


@given(
    st.lists(st.floats(0, 100, allow_nan=False), min_size=1, max_size=20),
    st.sampled_from(["average", "weighted", "voting"]),
)
def test_ensemble_weights_normalised(scores, method):
    weights = normalise_weights(scores, method)
    assert len(weights) == len(scores)
    assert np.all(weights >= 0)
    assert np.isclose(weights.sum(), 1.0)


@given(probabilities_with_labels())
@settings(deadline=None)
def test_metric_ranges(data):
    probs, ys = data
    auc = calculate_auc(probs, ys)
    assert 0.0 <= auc <= 100.0
    assert np.isclose(calculate_auc([100 - p for p in probs], ys), 100.0 - auc)
    assert 0.0 <= calculate_calibration_error(probs, ys) <= 100.0


@given(st.lists(versions(), max_size=10), st.sampled_from(["major", "minor", "patch"]))
def test_next_version_exceeds_existing(existing, bump):
    new = next_version(existing, bump)
    assert all(parse_version(new) > parse_version(v) for v in existing)


@given(st.integers(0, 2**31), st.integers(0, 50))
def test_seeded_rng_reproducible(seed, n):
    items = list(range(n))
    assert SeededRNG(seed).shuffle(items) == SeededRNG(seed).shuffle(items)
    assert sorted(SeededRNG(seed).shuffle(items)) == items
