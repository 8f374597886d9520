"""Pandera schema for tabular training data.

The label column must be binary and every feature column numeric.  Extra
columns such as tickers or timestamps are allowed through unchanged.
"""

from __future__ import annotations

from typing import Sequence

import pandas as pd
import pandera as pa

from tradescore.exceptions import DataError


def build_frame_schema(
    label_column: str = "label",
    feature_columns: Sequence[str] = (),
) -> pa.DataFrameSchema:
    """Return a schema validating ``label_column`` and ``feature_columns``."""

    columns: dict[str, pa.Column] = {
        label_column: pa.Column(int, pa.Check.isin([0, 1]), coerce=True),
    }
    for name in feature_columns:
        columns[name] = pa.Column(float, coerce=True, nullable=True)
    return pa.DataFrameSchema(columns, strict=False, coerce=True)


def validate_frame(
    df: pd.DataFrame,
    label_column: str = "label",
    feature_columns: Sequence[str] = (),
) -> pd.DataFrame:
    """Validate and coerce ``df`` raising :class:`DataError` on failure."""

    schema = build_frame_schema(label_column, feature_columns)
    try:
        return schema.validate(df)
    except pa.errors.SchemaError as exc:
        raise DataError(f"invalid training data: {exc}") from exc


__all__ = ["build_frame_schema", "validate_frame"]
