from __future__ import annotations

"""Custom exception hierarchy for tradescore."""

from datetime import datetime
from typing import Optional, Union


class TradeScoreError(Exception):
    """Base class for all tradescore exceptions.

    Parameters
    ----------
    message:
        Human readable description of the error.
    version:
        Optional model version or experiment id associated with the error.
    timestamp:
        Timestamp of the event that triggered the error.  May be a
        :class:`~datetime.datetime` instance or string.
    """

    def __init__(
        self,
        message: str,
        *,
        version: Optional[str] = None,
        timestamp: Optional[Union[datetime, str]] = None,
    ) -> None:
        context: list[str] = []
        if version:
            context.append(f"version={version}")
        if timestamp:
            if isinstance(timestamp, datetime):
                ts = timestamp.isoformat()
            else:
                ts = str(timestamp)
            context.append(f"timestamp={ts}")
        if context:
            message = f"{message} ({', '.join(context)})"
        super().__init__(message)
        self.version = version
        self.timestamp = timestamp


class ConfigurationError(TradeScoreError):
    """Invalid configuration such as split ratios that do not sum to one."""


class DataError(TradeScoreError):
    """Errors related to loading or validating training examples."""


class ModelError(TradeScoreError):
    """Errors raised during model training, inference or deserialisation."""


class PITViolationError(TradeScoreError):
    """Look-ahead information detected while PIT enforcement is enabled."""


class RegistryError(TradeScoreError):
    """Corrupt or unreadable model registry / experiment store."""


class ExperimentStateError(TradeScoreError):
    """Invalid experiment lifecycle transition."""


class OperationCancelled(TradeScoreError):
    """A long-running operation observed its cancellation signal."""


__all__ = [
    "TradeScoreError",
    "ConfigurationError",
    "DataError",
    "ModelError",
    "PITViolationError",
    "RegistryError",
    "ExperimentStateError",
    "OperationCancelled",
]
