from datetime import date, datetime, timedelta, timezone

import pytest

from tradescore.data.examples import FEATURE_NAMES
from tradescore.exceptions import PITViolationError
from tradescore.features.pit import (
    EnforcementContext,
    assert_date_not_future,
    create_pit_safe_cache_key,
    format_pit_summary,
    get_pit_stats,
    log_pit_warning,
    pit_enforcement,
    validate_as_of_date,
    validate_feature_vector,
)
from tradescore.features.pit_contracts import (
    FEATURE_PIT_CONTRACTS,
    FeaturePITContract,
    PITStatus,
    format_pit_safety_summary,
    get_contract,
    get_safe_features,
    get_unsafe_features,
    is_feature_pit_safe,
    validate_pit_safety,
)

UNSAFE = (
    FeaturePITContract(
        feature_name="future_earnings_surprise",
        status=PITStatus.UNSAFE,
        data_source="post-announcement estimates",
        notes="known only after the report",
    ),
    FeaturePITContract(feature_name="rsi_value", status=PITStatus.SAFE, data_source="ohlc"),
)


def test_every_schema_feature_has_a_safe_contract():
    assert [c.feature_name for c in FEATURE_PIT_CONTRACTS] == list(FEATURE_NAMES)
    assert get_unsafe_features() == []
    assert len(get_safe_features()) == 54
    assert all(is_feature_pit_safe(name) for name in FEATURE_NAMES)


def test_unknown_features_are_not_safe():
    assert not is_feature_pit_safe("mystery_feature")
    assert get_contract("mystery_feature") is None


def test_catalyst_score_does_not_need_as_of_date():
    assert get_contract("score_catalyst").requires_as_of_date is False
    assert get_contract("rsi_value").requires_as_of_date is True


def test_validate_pit_safety_with_custom_contracts():
    safe, unsafe = validate_pit_safety(["rsi_value", "future_earnings_surprise"], UNSAFE)
    assert not safe
    assert unsafe == ["future_earnings_surprise"]
    assert validate_pit_safety(FEATURE_NAMES) == (True, [])


def test_safety_summary_lists_unsafe_features():
    summary = format_pit_safety_summary(UNSAFE)
    assert "Total Features: 2" in summary
    assert "future_earnings_surprise: known only after the report" in summary


def test_missing_as_of_date_raises_only_when_enabled():
    ctx = EnforcementContext()
    validate_as_of_date(ctx, "fetch_prices", None)
    assert ctx.violation_count == 0

    ctx.enable()
    with pytest.raises(PITViolationError, match="fetch_prices"):
        validate_as_of_date(ctx, "fetch_prices", None)
    assert ctx.violation_count == 1
    validate_as_of_date(ctx, "fetch_prices", date(2024, 1, 2))
    assert ctx.violation_count == 1


def test_future_data_detection():
    ctx = EnforcementContext(enabled=True)
    assert_date_not_future(ctx, date(2024, 1, 1), datetime(2024, 1, 1))
    with pytest.raises(PITViolationError, match="2024-01-03 is after as-of date 2024-01-02"):
        assert_date_not_future(ctx, date(2024, 1, 3), date(2024, 1, 2), "earnings")
    assert ctx.violation_count == 1


def test_mixed_aware_naive_and_date_values():
    utc = timezone.utc
    ctx = EnforcementContext()
    assert_date_not_future(ctx, datetime(2024, 1, 1, tzinfo=utc), date(2024, 2, 1), "prices")
    assert_date_not_future(ctx, datetime(2024, 1, 1, 12, tzinfo=utc), datetime(2024, 1, 1, 13))
    assert_date_not_future(ctx, datetime(2024, 1, 1, 23, tzinfo=utc), date(2024, 1, 1))
    assert get_pit_stats(ctx)["violations"] == 0

    ctx.enable()
    east = timezone(timedelta(hours=5))
    with pytest.raises(PITViolationError):
        # 2024-01-01 06:00 UTC is after 05:00 naive (UTC)
        assert_date_not_future(ctx, datetime(2024, 1, 1, 11, tzinfo=east), datetime(2024, 1, 1, 5))
    with pytest.raises(PITViolationError, match="2024-02-02 is after as-of date 2024-02-01"):
        assert_date_not_future(ctx, datetime(2024, 2, 2, tzinfo=utc), date(2024, 2, 1))
    assert ctx.violation_count == 2


def test_disabled_gate_does_not_mutate_state():
    ctx = EnforcementContext()
    assert_date_not_future(ctx, date(2024, 1, 3), date(2024, 1, 2))
    validate_feature_vector(ctx, {"future_earnings_surprise": 1.5}, contracts=UNSAFE)
    assert get_pit_stats(ctx) == {
        "enabled": False,
        "violations": 0,
        "warnings": 0,
        "unsafe_features": 0,
    }


def test_feature_vector_default_values_pass():
    ctx = EnforcementContext(enabled=True)
    validate_feature_vector(ctx, {"future_earnings_surprise": 0}, contracts=UNSAFE)
    validate_feature_vector(ctx, {"future_earnings_surprise": None}, contracts=UNSAFE)
    with pytest.raises(PITViolationError, match="backtest"):
        validate_feature_vector(ctx, {"future_earnings_surprise": 2.0}, "backtest", UNSAFE)


def test_warning_counter_and_summary():
    ctx = EnforcementContext()
    assert "No look-ahead issues detected" in format_pit_summary(ctx)
    log_pit_warning(ctx, "stale cache entry")
    assert ctx.warning_count == 1
    summary = format_pit_summary(ctx)
    assert "Warnings: 1" in summary
    assert "DISABLED" in summary
    ctx.enable()
    assert ctx.warning_count == 0


def test_context_manager_always_disables():
    ctx = EnforcementContext()
    with pit_enforcement("backtest-2024", ctx) as active:
        assert active is ctx
        assert ctx.is_enabled

    assert not ctx.is_enabled
    with pytest.raises(PITViolationError):
        with pit_enforcement("backtest-2024", ctx):
            validate_as_of_date(ctx, "load_bars", None)
    assert not ctx.is_enabled
    assert ctx.violation_count == 1


def test_context_manager_creates_context():
    with pit_enforcement("adhoc") as ctx:
        assert ctx.enabled
    assert not ctx.enabled


def test_cache_keys():
    assert create_pit_safe_cache_key("bars", "AAPL", date(2024, 3, 5)) == "bars:AAPL:2024-03-05"
    assert create_pit_safe_cache_key("bars", "AAPL", datetime(2024, 3, 5, 15, 30)) == "bars:AAPL:2024-03-05"
    assert create_pit_safe_cache_key("bars", "AAPL") == "bars:AAPL:live"
