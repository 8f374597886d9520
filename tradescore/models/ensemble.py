"""Bootstrap-aggregated ensembles of baseline or boosting models."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import List, Literal, Mapping, Optional, Sequence, Union

import numpy as np
from opentelemetry import trace
from pydantic import ValidationError

from tradescore.data.examples import TrainingExample, labels_of, to_matrix
from tradescore.exceptions import ModelError
from tradescore.training.evaluation import calculate_auc, calculate_calibration_error
from tradescore.utils.parallel import run_units
from tradescore.utils.random import SEED_STRIDE, SeededRNG

from .gradient_boosting import (
    DEFAULT_GBM_CONFIG,
    GBMConfig,
    GBMModel,
    deserialize_gbm,
    evaluate_gbm,
    predict_gbm_matrix,
    serialize_gbm,
    train_gbm,
)
from .logistic import (
    LogisticOptions,
    ModelCoefficients,
    evaluate_logistic,
    predict_matrix,
    train_logistic,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

EnsembleMethod = Literal["average", "weighted", "voting"]
MemberType = Literal["logistic", "gbm"]
Member = Union[ModelCoefficients, GBMModel]

#: Variance of 0-100 probabilities split evenly between 0 and 100.
MAX_VARIANCE = 2500.0
HOLDOUT_RATIO = 0.8


@dataclass
class EnsembleModel:
    models: List[Member]
    weights: np.ndarray
    method: EnsembleMethod = "average"
    member_type: MemberType = "logistic"
    bootstrap_ratio: float = 1.0
    base_seed: int = 42
    version: str = "ensemble-v1.0"

    @property
    def num_models(self) -> int:
        return len(self.models)


@dataclass
class EnsemblePrediction:
    probability: float
    individual_predictions: List[float]
    confidence: float
    variance: float


@dataclass
class EnsembleMetrics:
    auc: float = 0.0
    accuracy: float = 0.0
    calibration_error: float = 0.0
    individual_aucs: List[float] = field(default_factory=list)
    prediction_variance: float = 0.0


def _member_predictions(model: Member, examples: Sequence[TrainingExample]) -> np.ndarray:
    X, _, _ = to_matrix(examples, model.feature_names)
    if isinstance(model, GBMModel):
        return predict_gbm_matrix(X, model)
    return predict_matrix(X, model)


def _evaluate_member(model: Member, examples: Sequence[TrainingExample]):
    if isinstance(model, GBMModel):
        return evaluate_gbm(examples, model)
    return evaluate_logistic(examples, model)


def normalise_weights(scores: Sequence[float], method: EnsembleMethod) -> np.ndarray:
    """Member weights summing to one.

    ``weighted`` uses ``scores`` (validation AUCs) proportionally and falls
    back to uniform weights when they sum to zero.
    """

    n = len(scores)
    if n == 0:
        return np.zeros(0)
    scores = np.asarray(scores, dtype=float)
    if method == "weighted" and scores.sum() > 0:
        weights = scores / scores.sum()
    else:
        weights = np.full(n, 1.0 / n)
    return weights / weights.sum()


def train_ensemble(
    examples: Sequence[TrainingExample],
    num_models: int = 5,
    *,
    method: EnsembleMethod = "average",
    member_type: MemberType = "logistic",
    bootstrap_ratio: float = 1.0,
    base_seed: int = 42,
    logistic_options: Optional[LogisticOptions] = None,
    gbm_config: Optional[GBMConfig] = None,
    n_jobs: int = 1,
    cancel_event: Optional[threading.Event] = None,
) -> EnsembleModel:
    """Train ``num_models`` members on bootstrap resamples.

    The first 80% of ``examples`` (in input order) is resampled with
    replacement for every member; the remaining 20% scores each member for
    ``weighted`` aggregation.  Member ``i`` uses seed ``base_seed + i*1000``
    for both its resample and its own training.
    """

    with tracer.start_as_current_span("train_ensemble"):
        split = int(len(examples) * HOLDOUT_RATIO)
        train_data = list(examples[:split])
        val_data = list(examples[split:])
        sample_size = int(len(train_data) * bootstrap_ratio)
        logistic_options = logistic_options or LogisticOptions()
        gbm_config = gbm_config or DEFAULT_GBM_CONFIG

        def _train_member(i: int):
            seed = base_seed + i * SEED_STRIDE
            rng = SeededRNG(seed)
            if train_data and sample_size > 0:
                idx = rng.integers(0, len(train_data), sample_size)
                sample = [train_data[j] for j in idx]
            else:
                sample = []
            if member_type == "gbm":
                model: Member = train_gbm(
                    sample, (), gbm_config.model_copy(update={"seed": seed})
                )
            else:
                model = train_logistic(
                    sample, logistic_options.model_copy(update={"seed": seed})
                )
            auc = _evaluate_member(model, val_data).auc
            logger.info(
                "Trained ensemble member",
                extra={"member": i + 1, "seed": seed, "val_auc": round(auc, 3)},
            )
            return model, auc

        results = run_units(
            _train_member,
            range(num_models),
            n_jobs=n_jobs,
            cancel_event=cancel_event,
            what="ensemble training",
        )
        models = [model for model, _ in results]
        aucs = [auc for _, auc in results]
        weights = normalise_weights(aucs, method)
        logger.info(
            "Ensemble trained",
            extra={
                "members": num_models,
                "method": method,
                "individual_aucs": [round(a, 2) for a in aucs],
                "weights": [round(float(w), 4) for w in weights],
            },
        )
        return EnsembleModel(
            models=models,
            weights=weights,
            method=method,
            member_type=member_type,
            bootstrap_ratio=bootstrap_ratio,
            base_seed=base_seed,
        )


def _aggregate(ensemble: EnsembleModel, preds: np.ndarray) -> np.ndarray:
    """Aggregate a ``(members, rows)`` prediction matrix."""

    if ensemble.method == "voting":
        return (preds >= 50).sum(axis=0) / preds.shape[0] * 100
    if ensemble.method == "weighted":
        return ensemble.weights @ preds
    return preds.mean(axis=0)


def _prediction_matrix(
    ensemble: EnsembleModel, examples: Sequence[TrainingExample]
) -> np.ndarray:
    return np.vstack([_member_predictions(m, examples) for m in ensemble.models])


def ensemble_predict(
    features: Mapping[str, float], ensemble: EnsembleModel
) -> EnsemblePrediction:
    """Aggregated probability with a variance-derived confidence score."""

    if not ensemble.models:
        raise ModelError("ensemble has no members")
    preds = _prediction_matrix(
        ensemble, [TrainingExample(features=dict(features), label=0)]
    )
    column = preds[:, 0]
    variance = float(column.var())
    return EnsemblePrediction(
        probability=float(_aggregate(ensemble, preds)[0]),
        individual_predictions=column.tolist(),
        confidence=max(0.0, 100 - variance / MAX_VARIANCE * 100),
        variance=variance,
    )


def ensemble_predict_probability(
    features: Mapping[str, float], ensemble: EnsembleModel
) -> float:
    return ensemble_predict(features, ensemble).probability


def evaluate_ensemble(
    examples: Sequence[TrainingExample], ensemble: EnsembleModel
) -> EnsembleMetrics:
    if not examples or not ensemble.models:
        return EnsembleMetrics()
    labels = labels_of(examples)
    preds = _prediction_matrix(ensemble, examples)
    probs = _aggregate(ensemble, preds)
    return EnsembleMetrics(
        auc=calculate_auc(probs, labels),
        accuracy=float(np.mean((probs >= 50) == (labels == 1)) * 100),
        calibration_error=calculate_calibration_error(probs, labels),
        individual_aucs=[calculate_auc(row, labels) for row in preds],
        prediction_variance=float(preds.var(axis=0).mean()),
    )


def serialize_ensemble(ensemble: EnsembleModel) -> str:
    if ensemble.member_type == "gbm":
        members = [json.loads(serialize_gbm(m)) for m in ensemble.models]
    else:
        members = [m.model_dump(by_alias=True) for m in ensemble.models]
    payload = {
        "version": ensemble.version,
        "numModels": ensemble.num_models,
        "method": ensemble.method,
        "memberType": ensemble.member_type,
        "bootstrapRatio": ensemble.bootstrap_ratio,
        "baseSeed": ensemble.base_seed,
        "weights": ensemble.weights.tolist(),
        "models": members,
    }
    return json.dumps(payload, indent=2)


def deserialize_ensemble(raw: str) -> EnsembleModel:
    try:
        data = json.loads(raw)
        member_type = data.get("memberType", "logistic")
        if member_type == "gbm":
            models: List[Member] = [deserialize_gbm(json.dumps(m)) for m in data["models"]]
        else:
            models = [ModelCoefficients.model_validate(m) for m in data["models"]]
        return EnsembleModel(
            models=models,
            weights=np.asarray(data["weights"], dtype=float),
            method=data.get("method", "average"),
            member_type=member_type,
            bootstrap_ratio=float(data.get("bootstrapRatio", 1.0)),
            base_seed=int(data.get("baseSeed", 42)),
            version=data.get("version", "ensemble-v1.0"),
        )
    except (json.JSONDecodeError, KeyError, TypeError, ValidationError) as exc:
        raise ModelError("Invalid ensemble payload") from exc


def format_ensemble_report(
    ensemble: EnsembleModel, metrics: Optional[EnsembleMetrics] = None
) -> str:
    lines = [
        "ENSEMBLE MODEL REPORT",
        f"Version:          {ensemble.version}",
        f"Number of models: {ensemble.num_models}",
        f"Member type:      {ensemble.member_type}",
        f"Method:           {ensemble.method}",
        f"Bootstrap ratio:  {ensemble.bootstrap_ratio}",
    ]
    if metrics is not None:
        lines += [
            f"Ensemble AUC:      {metrics.auc:6.2f}%",
            f"Accuracy:          {metrics.accuracy:6.2f}%",
            f"Calibration Error: {metrics.calibration_error:6.2f}%",
            f"Pred. Variance:    {metrics.prediction_variance:6.2f}",
            "Individual AUCs:   " + ", ".join(f"{a:.1f}" for a in metrics.individual_aucs),
        ]
        if metrics.individual_aucs:
            avg = float(np.mean(metrics.individual_aucs))
            lines.append(f"Avg Individual AUC: {avg:.2f}%")
            lines.append(f"Ensemble Gain:      {metrics.auc - avg:+.2f}%")
    return "\n".join(lines)


__all__ = [
    "EnsembleMetrics",
    "EnsembleModel",
    "EnsemblePrediction",
    "MAX_VARIANCE",
    "deserialize_ensemble",
    "ensemble_predict",
    "ensemble_predict_probability",
    "evaluate_ensemble",
    "format_ensemble_report",
    "normalise_weights",
    "serialize_ensemble",
    "train_ensemble",
]
