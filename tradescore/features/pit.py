"""Point-in-time enforcement gate.

Enforcement state lives in an explicit :class:`EnforcementContext` that
callers pass around, so concurrent backtests each own their counters.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Dict, Iterator, Mapping, Optional, Sequence, Union

from tradescore.exceptions import PITViolationError

from .pit_contracts import FEATURE_PIT_CONTRACTS, FeaturePITContract, get_unsafe_features

logger = logging.getLogger(__name__)

DateLike = Union[date, datetime]


@dataclass
class EnforcementContext:
    enabled: bool = False
    violation_count: int = 0
    warning_count: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def enable(self) -> None:
        with self._lock:
            self.enabled = True
            self.warning_count = 0
        logger.info("PIT enforcement enabled")

    def disable(self) -> None:
        with self._lock:
            self.enabled = False
        logger.info("PIT enforcement disabled")

    @property
    def is_enabled(self) -> bool:
        return self.enabled

    def _violation(self, message: str) -> PITViolationError:
        with self._lock:
            self.violation_count += 1
        return PITViolationError(message)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _day(value: DateLike) -> date:
    return value.date() if isinstance(value, datetime) else value


def _comparable(data_date: DateLike, as_of_date: DateLike) -> tuple:
    """Bring both values to one type; a bare date compares by calendar day.

    Naive datetimes are taken as UTC.
    """

    if not isinstance(data_date, datetime) or not isinstance(as_of_date, datetime):
        return _day(data_date), _day(as_of_date)
    return _as_utc(data_date), _as_utc(as_of_date)


def validate_as_of_date(
    ctx: EnforcementContext, function_name: str, as_of_date: Optional[DateLike]
) -> None:
    """Require ``as_of_date`` while enforcement is active."""

    if as_of_date is not None:
        return
    message = f"{function_name} called without an as-of date"
    if ctx.enabled:
        raise ctx._violation(message)
    logger.warning("PIT warning: %s", message, extra={"function": function_name})


def assert_date_not_future(
    ctx: EnforcementContext,
    data_date: DateLike,
    as_of_date: DateLike,
    data_type: str = "data",
) -> None:
    """Reject data stamped after the as-of date."""

    data_value, as_of_value = _comparable(data_date, as_of_date)
    if data_value <= as_of_value:
        return
    message = (
        f"{data_type} dated {data_value.isoformat()} is after "
        f"as-of date {as_of_value.isoformat()}"
    )
    if ctx.enabled:
        raise ctx._violation(message)
    logger.warning("PIT warning: %s", message, extra={"data_type": data_type})


def validate_feature_vector(
    ctx: EnforcementContext,
    features: Mapping[str, Optional[float]],
    context: Optional[str] = None,
    contracts: Sequence[FeaturePITContract] = FEATURE_PIT_CONTRACTS,
) -> None:
    """Fail when a PIT-unsafe feature carries a non-default value.

    ``None`` and ``0`` count as default (never computed).
    """

    active = [
        name
        for name in get_unsafe_features(contracts)
        if features.get(name) not in (None, 0)
    ]
    if not active:
        return
    suffix = f" ({context})" if context else ""
    message = (
        f"feature vector contains {len(active)} PIT-unsafe features{suffix}: "
        + ", ".join(active)
    )
    if ctx.enabled:
        raise ctx._violation(message)
    logger.warning("PIT warning: %s", message, extra={"features": active})


def log_pit_warning(ctx: EnforcementContext, message: str) -> None:
    with ctx._lock:
        ctx.warning_count += 1
    logger.warning("PIT warning: %s", message)


def get_pit_stats(ctx: EnforcementContext) -> Dict[str, object]:
    return {
        "enabled": ctx.enabled,
        "violations": ctx.violation_count,
        "warnings": ctx.warning_count,
        "unsafe_features": len(get_unsafe_features()),
    }


def format_pit_summary(ctx: EnforcementContext) -> str:
    stats = get_pit_stats(ctx)
    status = "ENABLED" if stats["enabled"] else "DISABLED"
    lines = [
        "PIT ENFORCEMENT SUMMARY",
        f"Status: {status}",
        f"Violations: {stats['violations']}",
        f"Warnings: {stats['warnings']}",
        f"Unsafe features: {stats['unsafe_features']}",
    ]
    if stats["violations"] == 0 and stats["warnings"] == 0:
        lines.append("No look-ahead issues detected")
    return "\n".join(lines)


@contextmanager
def pit_enforcement(
    name: str, ctx: Optional[EnforcementContext] = None
) -> Iterator[EnforcementContext]:
    """Run a block with enforcement enabled, always disabling afterwards."""

    ctx = ctx if ctx is not None else EnforcementContext()
    ctx.enable()
    logger.info("PIT-enforced run started", extra={"run": name})
    try:
        yield ctx
        logger.info("%s\n%s", name, format_pit_summary(ctx))
    except PITViolationError:
        logger.error("PIT violation during %s", name, extra={"run": name})
        raise
    finally:
        ctx.disable()


def create_pit_safe_cache_key(
    prefix: str, identifier: str, as_of: Optional[DateLike] = None
) -> str:
    suffix = _day(as_of).isoformat() if as_of is not None else "live"
    return f"{prefix}:{identifier}:{suffix}"


__all__ = [
    "EnforcementContext",
    "assert_date_not_future",
    "create_pit_safe_cache_key",
    "format_pit_summary",
    "get_pit_stats",
    "log_pit_warning",
    "pit_enforcement",
    "validate_as_of_date",
    "validate_feature_vector",
]
