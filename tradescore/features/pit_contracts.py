"""Declarative point-in-time safety contracts for the feature schema.

Every feature in :data:`~tradescore.data.examples.FEATURE_NAMES` has a
contract stating whether it can be reproduced using only information
available at the decision timestamp.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict


class PITStatus(str, Enum):
    SAFE = "PIT_SAFE"
    UNSAFE = "PIT_UNSAFE"
    CONDITIONAL = "PIT_CONDITIONAL"


class FeaturePITContract(BaseModel):
    feature_name: str
    status: PITStatus
    data_source: str
    requires_as_of_date: bool = True
    notes: Optional[str] = None

    model_config = ConfigDict(frozen=True)


_HISTORICAL_OHLC = "historical OHLC truncated at the as-of date"
_SPY_PRICES = "SPY daily closes up to the as-of date"
_CALENDAR = "calendar fields of the as-of date"

# (feature, data source, requires as-of date, notes)
_CONTRACT_TABLE: Tuple[Tuple[str, str, bool, Optional[str]], ...] = (
    ("score_market_condition", _SPY_PRICES, True, None),
    ("score_sector_condition", "sector ETF closes up to the as-of date", True, None),
    (
        "score_company_condition",
        "fundamentals filtered to filings released before the as-of date",
        True,
        "earnings released after the as-of date are excluded",
    ),
    (
        "score_catalyst",
        "neutral constant during historical runs",
        False,
        "news sentiment is not replayed historically",
    ),
    ("score_patterns_gaps", _HISTORICAL_OHLC, True, None),
    ("score_support_resistance", _HISTORICAL_OHLC, True, None),
    ("score_price_movement", _HISTORICAL_OHLC, True, None),
    ("score_volume", "historical volume up to the as-of date", True, None),
    ("score_ma_fibonacci", _HISTORICAL_OHLC, True, None),
    ("score_rsi", _HISTORICAL_OHLC, True, None),
    ("regime", "regime detector fed SPY and VIX history", True, None),
    ("regime_confidence", "regime detector output", True, None),
    ("vix_level", "VIX close on the as-of date", True, None),
    ("spy_above_50sma", _SPY_PRICES, True, None),
    ("spy_above_200sma", _SPY_PRICES, True, None),
    ("golden_cross", "SPY 50/200 day moving averages", True, None),
    ("rsi_value", _HISTORICAL_OHLC, True, None),
    ("atr_percent", _HISTORICAL_OHLC, True, None),
    ("price_vs_200sma", _HISTORICAL_OHLC, True, None),
    ("price_vs_50sma", _HISTORICAL_OHLC, True, None),
    ("price_vs_20ema", _HISTORICAL_OHLC, True, None),
    ("rvol", "volume relative to its trailing 30 day mean", True, None),
    ("obv_trend", "on-balance volume over trailing history", True, None),
    ("cmf_value", "Chaikin money flow over trailing history", True, None),
    ("sector_rs_20d", "sector ETF relative strength, 20 days", True, None),
    ("sector_rs_60d", "sector ETF relative strength, 60 days", True, None),
    ("rr_ratio", "trailing swing highs and lows", True, None),
    ("near_support", "distance to trailing moving-average support", True, None),
    (
        "mtf_daily_score",
        "multi-timeframe alignment evaluated at the as-of date",
        True,
        "as-of date is propagated through every timeframe",
    ),
    ("mtf_4h_score", "4 hour candles truncated at the as-of date", True, None),
    ("mtf_combined_score", "derived from daily and 4 hour scores", True, None),
    ("mtf_alignment", "derived from daily and 4 hour scores", True, None),
    ("divergence_type", "divergence scan over truncated prices", True, None),
    ("divergence_strength", "divergence scan over truncated prices", True, None),
    ("pattern_type", _HISTORICAL_OHLC, True, None),
    ("gap_percent", _HISTORICAL_OHLC, True, None),
    ("bull_flag_detected", _HISTORICAL_OHLC, True, None),
    ("hammer_detected", _HISTORICAL_OHLC, True, None),
    ("higher_highs", "trend structure over trailing history", True, None),
    ("higher_lows", "trend structure over trailing history", True, None),
    ("trend_status", "trend structure over trailing history", True, None),
    ("day_of_week", _CALENDAR, True, None),
    ("month_of_year", _CALENDAR, True, None),
    ("quarter", _CALENDAR, True, None),
    ("is_earnings_season", _CALENDAR, True, None),
    ("is_month_start", _CALENDAR, True, None),
    ("is_month_end", _CALENDAR, True, None),
    ("is_year_start", _CALENDAR, True, None),
    ("vix_percentile", "percentile of the as-of VIX level", True, None),
    ("vix_regime", "bucket of the as-of VIX level", True, None),
    ("spy_10d_return", _SPY_PRICES, True, None),
    ("spy_20d_return", _SPY_PRICES, True, None),
    ("spy_rsi", _SPY_PRICES, True, None),
    ("sector_momentum", "mean of sector relative strength scores", True, None),
)

FEATURE_PIT_CONTRACTS: Tuple[FeaturePITContract, ...] = tuple(
    FeaturePITContract(
        feature_name=name,
        status=PITStatus.SAFE,
        data_source=source,
        requires_as_of_date=requires,
        notes=notes,
    )
    for name, source, requires, notes in _CONTRACT_TABLE
)

_BY_NAME: Dict[str, FeaturePITContract] = {c.feature_name: c for c in FEATURE_PIT_CONTRACTS}


def get_contract(
    feature_name: str,
    contracts: Iterable[FeaturePITContract] = FEATURE_PIT_CONTRACTS,
) -> Optional[FeaturePITContract]:
    if contracts is FEATURE_PIT_CONTRACTS:
        return _BY_NAME.get(feature_name)
    return next((c for c in contracts if c.feature_name == feature_name), None)


def get_unsafe_features(
    contracts: Iterable[FeaturePITContract] = FEATURE_PIT_CONTRACTS,
) -> List[str]:
    return [c.feature_name for c in contracts if c.status is PITStatus.UNSAFE]


def get_safe_features(
    contracts: Iterable[FeaturePITContract] = FEATURE_PIT_CONTRACTS,
) -> List[str]:
    return [c.feature_name for c in contracts if c.status is PITStatus.SAFE]


def is_feature_pit_safe(feature_name: str) -> bool:
    """Unknown features are not considered safe."""
    contract = get_contract(feature_name)
    return contract is not None and contract.status is PITStatus.SAFE


def validate_pit_safety(
    feature_names: Iterable[str],
    contracts: Iterable[FeaturePITContract] = FEATURE_PIT_CONTRACTS,
) -> Tuple[bool, List[str]]:
    """Return ``(safe, unsafe_features)`` for ``feature_names``."""

    unsafe = set(get_unsafe_features(contracts))
    found = [name for name in feature_names if name in unsafe]
    return not found, found


def format_pit_safety_summary(
    contracts: Iterable[FeaturePITContract] = FEATURE_PIT_CONTRACTS,
) -> str:
    contracts = list(contracts)
    total = len(contracts)
    counts = {status: 0 for status in PITStatus}
    for c in contracts:
        counts[c.status] += 1
    lines = [
        "FEATURE PIT SAFETY SUMMARY",
        f"Total Features: {total}",
    ]
    for status in PITStatus:
        share = counts[status] / total * 100 if total else 0.0
        lines.append(f"{status.value}: {counts[status]} ({share:.1f}%)")
    for c in contracts:
        if c.status is PITStatus.UNSAFE:
            lines.append(f"  - {c.feature_name}: {c.notes or c.data_source}")
    return "\n".join(lines)


__all__ = [
    "FEATURE_PIT_CONTRACTS",
    "FeaturePITContract",
    "PITStatus",
    "format_pit_safety_summary",
    "get_contract",
    "get_safe_features",
    "get_unsafe_features",
    "is_feature_pit_safe",
    "validate_pit_safety",
]
