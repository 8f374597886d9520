"""Evaluation metrics and cross-validation drivers.

:mod:`tradescore.training.cross_validation` depends on the model modules and
is imported explicitly by callers.
"""

from . import evaluation
from .evaluation import ClassificationMetrics, evaluate_probabilities

__all__ = ["ClassificationMetrics", "evaluate_probabilities", "evaluation"]
