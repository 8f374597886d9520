"""Training example model and conversions to numpy / pandas."""

from __future__ import annotations

import logging
import math
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Literal, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from pydantic import BaseModel, ConfigDict, field_validator

from tradescore.exceptions import ConfigurationError, DataError

from .schema import validate_frame

logger = logging.getLogger(__name__)

#: Canonical 54-feature schema produced by the feature collectors.
FEATURE_NAMES: Tuple[str, ...] = (
    # criterion scores
    "score_market_condition",
    "score_sector_condition",
    "score_company_condition",
    "score_catalyst",
    "score_patterns_gaps",
    "score_support_resistance",
    "score_price_movement",
    "score_volume",
    "score_ma_fibonacci",
    "score_rsi",
    # market context
    "regime",
    "regime_confidence",
    "vix_level",
    "spy_above_50sma",
    "spy_above_200sma",
    "golden_cross",
    # technical indicators
    "rsi_value",
    "atr_percent",
    "price_vs_200sma",
    "price_vs_50sma",
    "price_vs_20ema",
    # volume
    "rvol",
    "obv_trend",
    "cmf_value",
    # sector
    "sector_rs_20d",
    "sector_rs_60d",
    # support / resistance
    "rr_ratio",
    "near_support",
    # multi-timeframe
    "mtf_daily_score",
    "mtf_4h_score",
    "mtf_combined_score",
    "mtf_alignment",
    # divergence
    "divergence_type",
    "divergence_strength",
    # patterns
    "pattern_type",
    "gap_percent",
    "bull_flag_detected",
    "hammer_detected",
    # trend
    "higher_highs",
    "higher_lows",
    "trend_status",
    # seasonality
    "day_of_week",
    "month_of_year",
    "quarter",
    "is_earnings_season",
    "is_month_start",
    "is_month_end",
    "is_year_start",
    # vix
    "vix_percentile",
    "vix_regime",
    # market momentum
    "spy_10d_return",
    "spy_20d_return",
    "spy_rsi",
    # breadth
    "sector_momentum",
)


class FrozenFeatures(dict):
    """Read-only feature mapping that still pickles and dumps as a dict."""

    def _readonly(self, *args, **kwargs):
        raise TypeError("training example features are read-only")

    __setitem__ = __delitem__ = __ior__ = _readonly
    clear = pop = popitem = setdefault = update = _readonly

    def __reduce__(self):
        return (FrozenFeatures, (dict(self),))


class TrainingExample(BaseModel):
    """Immutable labelled feature vector."""

    features: Dict[str, float]
    label: Literal[0, 1]
    timestamp: Optional[datetime] = None
    ticker: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("features")
    @classmethod
    def _finite(cls, value: Dict[str, float]) -> Dict[str, float]:
        bad = [name for name, v in value.items() if not math.isfinite(v)]
        if bad:
            raise ValueError(f"non-finite feature values: {', '.join(sorted(bad))}")
        return FrozenFeatures(value)

    def with_features(self, features: Dict[str, float]) -> "TrainingExample":
        """Return a copy carrying ``features`` in place of the current vector."""
        return TrainingExample(
            features=features, label=self.label, timestamp=self.timestamp, ticker=self.ticker
        )


def feature_names_of(examples: Sequence[TrainingExample]) -> List[str]:
    """Return feature names in the order of the first example."""
    if not examples:
        return []
    return list(examples[0].features)


def to_matrix(
    examples: Sequence[TrainingExample],
    feature_names: Optional[Sequence[str]] = None,
) -> Tuple[np.ndarray, np.ndarray, List[str]]:
    """Convert ``examples`` to ``(X, y, feature_names)``.

    Features missing from an example are filled with ``0``.
    """

    names = list(feature_names) if feature_names is not None else feature_names_of(examples)
    X = np.zeros((len(examples), len(names)), dtype=float)
    for i, ex in enumerate(examples):
        feats = ex.features
        X[i] = [feats.get(name, 0.0) for name in names]
    y = np.fromiter((ex.label for ex in examples), dtype=float, count=len(examples))
    return X, y, names


def labels_of(examples: Sequence[TrainingExample]) -> np.ndarray:
    return np.fromiter((ex.label for ex in examples), dtype=int, count=len(examples))


def examples_to_frame(examples: Iterable[TrainingExample]) -> pd.DataFrame:
    """Flatten ``examples`` into a :class:`pandas.DataFrame`."""

    rows = []
    for ex in examples:
        row: Dict[str, object] = dict(ex.features)
        row["label"] = ex.label
        if ex.timestamp is not None:
            row["timestamp"] = ex.timestamp
        if ex.ticker is not None:
            row["ticker"] = ex.ticker
        rows.append(row)
    return pd.DataFrame(rows)


def examples_from_frame(
    df: pd.DataFrame,
    *,
    label_column: str = "label",
    timestamp_column: str = "timestamp",
    ticker_column: str = "ticker",
    feature_columns: Optional[Sequence[str]] = None,
) -> List[TrainingExample]:
    """Build :class:`TrainingExample` objects from ``df``.

    Non-feature columns (label, timestamp, ticker) are excluded from the
    feature vector.  Missing feature values become ``0``.
    """

    if label_column not in df.columns:
        raise DataError(f"label column '{label_column}' missing from data")
    reserved = {label_column, timestamp_column, ticker_column}
    if feature_columns is None:
        feature_columns = [
            c
            for c in df.columns
            if c not in reserved and pd.api.types.is_numeric_dtype(df[c])
        ]
    df = validate_frame(df, label_column, feature_columns)

    features = df[list(feature_columns)].astype(float).fillna(0.0)
    timestamps = (
        pd.to_datetime(df[timestamp_column]) if timestamp_column in df.columns else None
    )
    tickers = df[ticker_column] if ticker_column in df.columns else None

    examples: List[TrainingExample] = []
    records = features.to_dict(orient="records")
    for pos, (record, label) in enumerate(zip(records, df[label_column].tolist())):
        ts = None
        if timestamps is not None and not pd.isna(timestamps.iloc[pos]):
            ts = timestamps.iloc[pos].to_pydatetime()
        ticker = None
        if tickers is not None and not pd.isna(tickers.iloc[pos]):
            ticker = str(tickers.iloc[pos])
        examples.append(
            TrainingExample(features=record, label=int(label), timestamp=ts, ticker=ticker)
        )
    return examples


def load_examples(
    path: Path,
    *,
    label_column: str = "label",
    timestamp_column: str = "timestamp",
) -> List[TrainingExample]:
    """Load training examples from a CSV or parquet file."""

    if not path.exists():
        raise ConfigurationError(f"data file not found: {path}")
    if path.suffix in {".parquet", ".pq"}:
        df = pd.read_parquet(path)
    elif path.suffix == ".json":
        df = pd.read_json(path)
    else:
        df = pd.read_csv(path)
    examples = examples_from_frame(
        df, label_column=label_column, timestamp_column=timestamp_column
    )
    logger.info(
        "Loaded training examples",
        extra={"path": str(path), "examples": len(examples)},
    )
    return examples


__all__ = [
    "FEATURE_NAMES",
    "TrainingExample",
    "examples_from_frame",
    "examples_to_frame",
    "feature_names_of",
    "labels_of",
    "load_examples",
    "to_matrix",
]
