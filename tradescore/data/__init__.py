"""Training example model, schema validation and data splitting."""

from .examples import (
    FEATURE_NAMES,
    TrainingExample,
    examples_from_frame,
    examples_to_frame,
    load_examples,
    to_matrix,
)
from .splitter import (
    KFold,
    SplitResult,
    generate_stratified_kfolds,
    generate_walk_forward_folds,
    stratified_split,
    temporal_split,
    train_validation_split,
)

__all__ = [
    "FEATURE_NAMES",
    "KFold",
    "SplitResult",
    "TrainingExample",
    "examples_from_frame",
    "examples_to_frame",
    "generate_stratified_kfolds",
    "generate_walk_forward_folds",
    "load_examples",
    "stratified_split",
    "temporal_split",
    "to_matrix",
    "train_validation_split",
]
