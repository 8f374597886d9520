from __future__ import annotations

import functools
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence, Tuple, TypeVar, cast

import typer

from config.settings import (
    DataConfig,
    ExecutionConfig,
    TrainingConfig,
    load_settings,
    save_params,
)
from logging_utils import setup_logging
from tradescore.data.examples import TrainingExample, feature_names_of, load_examples
from tradescore.data.splitter import stratified_split
from tradescore.exceptions import DataError, PITViolationError, TradeScoreError
from tradescore.features.analysis import analyze_feature_importance, format_importance_report
from tradescore.features.pit_contracts import validate_pit_safety
from tradescore.features.selection import (
    FeatureSelectionConfig,
    format_selection_report,
    select_features,
)
from tradescore.models.ensemble import ensemble_predict_probability, serialize_ensemble, train_ensemble
from tradescore.models.gradient_boosting import GBMConfig, evaluate_gbm, serialize_gbm, train_gbm
from tradescore.models.logistic import LogisticOptions, evaluate_logistic, train_logistic
from tradescore.models.stacking import (
    StackingConfig,
    evaluate_stacked_model,
    serialize_stacked_model_weights,
    train_stacked_model,
)
from tradescore.registry.experiment_tracker import (
    ExperimentFilter,
    ExperimentMetrics,
    ExperimentTracker,
    format_experiments_table,
)
from tradescore.registry.model_registry import (
    ModelFilter,
    ModelRegistry,
    PromotionCriteria,
    ValidationMetrics,
    format_comparison_report,
    format_models_table,
)
from tradescore.training.cross_validation import (
    cross_validate,
    format_cv_results,
    serialize_cv_results,
    time_series_cross_validate,
)
from tradescore.training.evaluation import ClassificationMetrics, evaluate_probabilities
from tradescore.utils.random import set_seed

app = typer.Typer(help="tradescore training, evaluation and registry command line interface")

MODEL_TYPES = ("logistic", "gbm", "stacked", "ensemble")


F = TypeVar("F", bound=Callable[..., Any])


def error_handler(func: F) -> F:
    """Decorator for CLI commands to provide structured error handling."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:  # type: ignore[misc]
        try:
            return func(*args, **kwargs)
        except (typer.Exit, typer.BadParameter):
            raise
        except TradeScoreError as exc:
            timestamp = getattr(exc, "timestamp", None) or datetime.utcnow()
            logging.error(
                json.dumps(
                    {
                        "error": exc.__class__.__name__,
                        "message": str(exc),
                        "version": exc.version,
                        "timestamp": str(timestamp),
                    }
                )
            )
            raise typer.Exit(code=1)
        except Exception as exc:  # pragma: no cover - unexpected
            logging.error(
                json.dumps(
                    {
                        "error": exc.__class__.__name__,
                        "message": str(exc),
                    }
                )
            )
            raise typer.Exit(code=1)

    return cast(F, wrapper)


@app.callback()
@error_handler
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to optional config file"
    ),
    log_level: str = typer.Option("INFO", "--log-level", "-l", help="Logging level"),
    n_jobs: Optional[int] = typer.Option(None, help="Parallel workers for folds and members"),
    pit: bool = typer.Option(False, "--pit", help="Enforce point-in-time feature safety"),
    trace: bool = typer.Option(False, help="Enable tracing"),
    trace_exporter: str = typer.Option("otlp", help="Tracing exporter"),
) -> None:
    """Configure global options for all commands."""
    if config:
        data_cfg, train_cfg, exec_cfg = load_settings(path=config, required=True)
    else:
        data_cfg, train_cfg, exec_cfg = (
            DataConfig(),
            TrainingConfig(),
            ExecutionConfig(),
        )
    exec_updates: dict[str, Any] = {}
    if n_jobs is not None:
        exec_updates["n_jobs"] = n_jobs
    if pit:
        exec_updates["pit_enforcement"] = pit
    if trace:
        exec_updates["trace"] = trace
    if trace_exporter:
        exec_updates["trace_exporter"] = trace_exporter
    if exec_updates:
        exec_cfg = exec_cfg.model_copy(update=exec_updates)
    setup_logging(
        level=getattr(logging, log_level.upper(), logging.INFO),
        enable_tracing=exec_cfg.trace,
        exporter=exec_cfg.trace_exporter,
    )
    ctx.obj = {
        "config": {
            "data": data_cfg,
            "training": train_cfg,
            "execution": exec_cfg,
        }
    }


def _cfg(ctx: typer.Context) -> tuple[DataConfig, TrainingConfig, ExecutionConfig]:
    if ctx.obj and "config" in ctx.obj:
        cfg = ctx.obj["config"]
        return (
            cfg.get("data", DataConfig()),
            cfg.get("training", TrainingConfig()),
            cfg.get("execution", ExecutionConfig()),
        )
    return DataConfig(), TrainingConfig(), ExecutionConfig()


def _logistic_options(train_cfg: TrainingConfig) -> LogisticOptions:
    return LogisticOptions(
        learning_rate=train_cfg.learning_rate,
        iterations=train_cfg.iterations,
        regularization=train_cfg.regularization,
        class_weight=train_cfg.class_weight,
        seed=train_cfg.seed,
    )


def _gbm_config(train_cfg: TrainingConfig) -> GBMConfig:
    return GBMConfig(
        num_trees=train_cfg.num_trees,
        max_depth=train_cfg.max_depth,
        learning_rate=train_cfg.gbm_learning_rate,
        subsample=train_cfg.subsample,
        colsample=train_cfg.colsample,
        min_samples_leaf=train_cfg.min_samples_leaf,
        min_samples_split=train_cfg.min_samples_split,
        l2_regularization=train_cfg.l2_regularization,
        early_stopping_rounds=train_cfg.early_stopping_rounds,
        seed=train_cfg.seed,
    )


def _load(
    data_cfg: DataConfig, exec_cfg: ExecutionConfig, data_file: Optional[Path]
) -> List[TrainingExample]:
    path = data_file or data_cfg.data_file
    if path is None:
        raise DataError("no data file given; pass DATA_FILE or set data.data_file")
    examples = load_examples(
        Path(path),
        label_column=data_cfg.label_column,
        timestamp_column=data_cfg.timestamp_column,
    )
    if not examples:
        raise DataError(f"no training examples in {path}")
    if exec_cfg.pit_enforcement:
        safe, unsafe = validate_pit_safety(feature_names_of(examples))
        if not safe:
            raise PITViolationError(
                f"PIT-unsafe features in training data: {', '.join(unsafe)}"
            )
    return examples


def _fit(
    model_type: str,
    train: Sequence[TrainingExample],
    validation: Sequence[TrainingExample],
    train_cfg: TrainingConfig,
    exec_cfg: ExecutionConfig,
) -> Tuple[Any, ClassificationMetrics, str]:
    """Train ``model_type`` and return (artifact, validation metrics, version)."""

    options = _logistic_options(train_cfg)
    gbm_config = _gbm_config(train_cfg)
    if model_type == "logistic":
        model = train_logistic(train, options)
        return model, evaluate_logistic(validation, model), model.version
    if model_type == "gbm":
        gbm = train_gbm(train, validation, gbm_config)
        return json.loads(serialize_gbm(gbm)), evaluate_gbm(validation, gbm), gbm.version
    if model_type == "stacked":
        logistic = train_logistic(train, options)
        gbm = train_gbm(train, validation, gbm_config)
        stacked = train_stacked_model(
            train,
            validation,
            logistic,
            gbm,
            StackingConfig(method=train_cfg.stacking_method, seed=train_cfg.seed),
            logistic_options=options,
            gbm_config=gbm_config,
        )
        payload = json.loads(serialize_stacked_model_weights(stacked))
        payload["logisticModel"] = logistic.model_dump(mode="json", by_alias=True)
        payload["gbmModel"] = json.loads(serialize_gbm(gbm))
        return payload, evaluate_stacked_model(validation, stacked), stacked.version
    ensemble = train_ensemble(
        train,
        train_cfg.ensemble_size,
        method=train_cfg.ensemble_method,
        bootstrap_ratio=train_cfg.bootstrap_ratio,
        base_seed=train_cfg.seed,
        logistic_options=options,
        gbm_config=gbm_config,
        n_jobs=exec_cfg.n_jobs,
    )
    probabilities = [ensemble_predict_probability(ex.features, ensemble) for ex in validation]
    metrics = evaluate_probabilities(probabilities, [ex.label for ex in validation])
    return json.loads(serialize_ensemble(ensemble)), metrics, ensemble.version


@app.command("train")
@error_handler
def train(
    ctx: typer.Context,
    data_file: Optional[Path] = typer.Argument(
        None, help="CSV or parquet file with training examples"
    ),
    model_type: str = typer.Option("logistic", "--model-type", "-m", help="logistic | gbm | stacked | ensemble"),
    name: Optional[str] = typer.Option(None, help="Experiment name"),
    tags: Optional[list[str]] = typer.Option(None, "--tag", "-t", help="Tag; can be passed multiple times"),
    notes: Optional[str] = typer.Option(None, help="Notes stored with the experiment and model"),
    bump: str = typer.Option("patch", help="Version component to bump: major | minor | patch"),
    iterations: Optional[int] = typer.Option(None, help="Logistic training iterations"),
    num_trees: Optional[int] = typer.Option(None, help="Number of boosting rounds"),
    validation_ratio: Optional[float] = typer.Option(None, help="Held-out validation fraction"),
    seed: Optional[int] = typer.Option(None, help="Random seed"),
) -> None:
    """Train a model, record the experiment and register the result."""
    if model_type not in MODEL_TYPES:
        raise typer.BadParameter(f"model type must be one of {', '.join(MODEL_TYPES)}")
    data_cfg, train_cfg, exec_cfg = _cfg(ctx)
    updates = {
        "iterations": iterations,
        "num_trees": num_trees,
        "validation_ratio": validation_ratio,
        "seed": seed,
    }
    train_cfg = train_cfg.model_copy(update={k: v for k, v in updates.items() if v is not None})
    if data_file is not None:
        data_cfg = data_cfg.model_copy(update={"data_file": data_file})
    snapshot = save_params(data_cfg, train_cfg, exec_cfg)
    set_seed(train_cfg.seed)

    examples = _load(data_cfg, exec_cfg, None)
    split = stratified_split(
        examples,
        1.0 - train_cfg.validation_ratio,
        train_cfg.validation_ratio,
        0.0,
        seed=train_cfg.seed,
    )

    tracker = ExperimentTracker(data_cfg.experiments_dir)
    experiment_id = tracker.create_experiment(
        name or f"{model_type} training",
        "training",
        {
            "modelType": model_type,
            "settingsDigest": snapshot.digest,
            "training": snapshot.data["training"],
            "trainSamples": len(split.train),
            "validationSamples": len(split.validation),
        },
        tags=tags,
        notes=notes,
    )
    try:
        artifact, metrics, artifact_version = _fit(
            model_type, split.train, split.validation, train_cfg, exec_cfg
        )
        tracker.log_metrics(experiment_id, ExperimentMetrics.from_classification(metrics))
        registry = ModelRegistry(data_cfg.models_dir, data_cfg.production_file)
        version = registry.register_model(
            experiment_id,
            artifact,
            ValidationMetrics.from_classification(metrics),
            model_type=model_type,  # type: ignore[arg-type]
            tags=tags,
            notes=notes,
            bump_type=bump,  # type: ignore[arg-type]
        )
        tracker.update_experiment(experiment_id, model_version=version)
    except Exception as exc:
        tracker.complete_experiment(experiment_id, "failed", notes=str(exc))
        raise
    tracker.complete_experiment(experiment_id, "completed")

    typer.echo(
        json.dumps(
            {
                "experiment": experiment_id,
                "version": version,
                "artifact": artifact_version,
                "metrics": metrics.as_dict(),
            },
            indent=2,
        )
    )


@app.command("cv")
@error_handler
def cv(
    ctx: typer.Context,
    data_file: Optional[Path] = typer.Argument(
        None, help="CSV or parquet file with training examples"
    ),
    folds: Optional[int] = typer.Option(None, "--folds", "-k", help="Number of folds"),
    trainer: str = typer.Option("logistic", help="logistic | gbm"),
    time_series: bool = typer.Option(False, "--time-series", help="Walk-forward folds"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of tables"),
) -> None:
    """Cross-validate a trainer on the data file."""
    data_cfg, train_cfg, exec_cfg = _cfg(ctx)
    examples = _load(data_cfg, exec_cfg, data_file)
    k = folds or train_cfg.cv_folds
    if trainer == "gbm":
        options = _gbm_config(train_cfg).model_dump()
    else:
        options = _logistic_options(train_cfg).model_dump()
    run = time_series_cross_validate if time_series else cross_validate
    result = run(
        examples,
        k,
        seed=train_cfg.seed,
        trainer=trainer,
        training_options=options,
        n_jobs=exec_cfg.n_jobs,
    )
    typer.echo(serialize_cv_results(result) if as_json else format_cv_results(result))


@app.command("features")
@error_handler
def features(
    ctx: typer.Context,
    data_file: Optional[Path] = typer.Argument(
        None, help="CSV or parquet file with training examples"
    ),
    method: str = typer.Option("combined", help="importance | correlation | combined"),
    ablation: bool = typer.Option(False, help="Include the (slow) ablation study"),
    select: bool = typer.Option(True, help="Run feature selection after analysis"),
) -> None:
    """Rank feature importance and suggest a reduced feature set."""
    data_cfg, train_cfg, exec_cfg = _cfg(ctx)
    examples = _load(data_cfg, exec_cfg, data_file)
    options = _logistic_options(train_cfg)
    coefficients = train_logistic(examples, options)
    analysis = analyze_feature_importance(
        examples,
        coefficients,
        include_ablation=ablation,
        training_options=options,
        seed=train_cfg.seed,
        n_jobs=exec_cfg.n_jobs,
    )
    typer.echo(format_importance_report(analysis))
    if select:
        result = select_features(
            examples,
            coefficients,
            FeatureSelectionConfig(method=method),
            n_jobs=exec_cfg.n_jobs,
        )
        typer.echo(format_selection_report(result))


@app.command("models")
@error_handler
def models(
    ctx: typer.Context,
    model_type: Optional[str] = typer.Option(None, "--model-type", "-m", help="Filter by model type"),
    production: bool = typer.Option(False, help="Only the production model"),
    min_auc: Optional[float] = typer.Option(None, help="Minimum validation AUC (fraction)"),
) -> None:
    """List registered models, newest version first."""
    data_cfg, _, _ = _cfg(ctx)
    registry = ModelRegistry(data_cfg.models_dir, data_cfg.production_file)
    model_filter = ModelFilter(
        model_type=model_type,
        is_production=True if production else None,
        min_auc=min_auc,
    )
    typer.echo(format_models_table(registry.list_models(model_filter)))


@app.command("promote")
@error_handler
def promote(
    ctx: typer.Context,
    version: str = typer.Argument(..., help="Model version to promote"),
    min_auc: float = typer.Option(0.65, help="Minimum validation AUC (fraction)"),
    max_calibration_error: float = typer.Option(0.10, help="Maximum calibration error (fraction)"),
    require_backtest: bool = typer.Option(True, help="Require backtest metrics"),
) -> None:
    """Promote a model to production if it passes the promotion gate."""
    data_cfg, _, _ = _cfg(ctx)
    registry = ModelRegistry(data_cfg.models_dir, data_cfg.production_file)
    criteria = PromotionCriteria(
        min_auc=min_auc,
        max_calibration_error=max_calibration_error,
        requires_backtest=require_backtest,
    )
    result = registry.promote_to_production(version, criteria)
    typer.echo(json.dumps({"success": result.success, "reason": result.reason}, indent=2))
    if not result.success:
        raise typer.Exit(code=1)


@app.command("rollback")
@error_handler
def rollback(
    ctx: typer.Context,
    version: str = typer.Argument(..., help="Version to restore as production"),
) -> None:
    """Make a previously registered version the production model."""
    data_cfg, _, _ = _cfg(ctx)
    registry = ModelRegistry(data_cfg.models_dir, data_cfg.production_file)
    result = registry.rollback_model(version)
    typer.echo(json.dumps({"success": result.success, "reason": result.reason}, indent=2))
    if not result.success:
        raise typer.Exit(code=1)


@app.command("compare")
@error_handler
def compare(
    ctx: typer.Context,
    v1: str = typer.Argument(..., help="Baseline version"),
    v2: str = typer.Argument(..., help="Candidate version"),
) -> None:
    """Compare validation (and backtest) metrics of two versions."""
    data_cfg, _, _ = _cfg(ctx)
    registry = ModelRegistry(data_cfg.models_dir, data_cfg.production_file)
    comparison = registry.compare_models(v1, v2)
    if comparison is None:
        typer.echo(f"Cannot compare {v1} and {v2}: version not found")
        raise typer.Exit(code=1)
    typer.echo(format_comparison_report(comparison))


@app.command("experiments")
@error_handler
def experiments(
    ctx: typer.Context,
    status: Optional[str] = typer.Option(None, help="Filter by status"),
    tags: Optional[list[str]] = typer.Option(None, "--tag", "-t", help="Required tag"),
    limit: int = typer.Option(20, help="Maximum rows to show"),
) -> None:
    """List recorded experiments, most recent first."""
    data_cfg, _, _ = _cfg(ctx)
    tracker = ExperimentTracker(data_cfg.experiments_dir)
    experiment_filter = ExperimentFilter(status=status, tags=tags or [])
    typer.echo(format_experiments_table(tracker.list_experiments(experiment_filter), limit))


if __name__ == "__main__":  # pragma: no cover - manual invocation
    app()
