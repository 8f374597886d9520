"""Structured logging setup shared by the CLI and library consumers.

Library modules only call ``logging.getLogger(__name__)`` and pass context
through ``extra=``; :func:`setup_logging` decides how those records render.
"""

import json
import logging
import os
from datetime import date
from typing import Optional

PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
PLAIN_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"

_PLAIN_NAMES = {"plain", "text", "human"}
_TRUTHY = {"1", "true", "yes", "on"}

# Everything a bare LogRecord carries; whatever else is set came from ``extra``.
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "otelTraceID", "otelSpanID", "otelServiceName", "otelTraceSampled"}


def _jsonable(value: object) -> object:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, date):
        return value.isoformat()
    if hasattr(value, "item"):
        # numpy scalars from metrics and fold statistics
        return _jsonable(value.item())
    return str(value)


class JsonFormatter(logging.Formatter):
    """One JSON object per record: timestamp, level, logger, message, extras."""

    default_time_format = "%Y-%m-%dT%H:%M:%S"
    default_msec_format = "%s.%03dZ"

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key.startswith("_") or value is None:
                continue
            payload[key] = _jsonable(value)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        trace_id = getattr(record, "otelTraceID", None)
        if trace_id:
            payload["trace_id"] = trace_id
            payload["span_id"] = getattr(record, "otelSpanID", None)
        return json.dumps(payload)


def _level_from_env(default: int) -> int:
    raw = os.getenv("TRADESCORE_LOG_LEVEL")
    if not raw:
        return default
    if raw.isdigit():
        return int(raw)
    return getattr(logging, raw.upper(), default)


def _structured_from_env() -> bool:
    fmt = os.getenv("TRADESCORE_LOG_FORMAT")
    if fmt:
        return fmt.lower() not in _PLAIN_NAMES
    flag = os.getenv("TRADESCORE_JSON_LOGS")
    return flag is None or flag.lower() in _TRUTHY


def _configure_tracing(name: Optional[str], exporter: str) -> None:
    """Install an OpenTelemetry tracer provider exporting over OTLP/HTTP."""

    from opentelemetry import trace
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
        OTLPSpanExporter,
    )
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    if exporter != "otlp":
        raise ValueError(f"unsupported trace exporter: {exporter}")
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4318")
    span_exporter = OTLPSpanExporter(endpoint=endpoint)

    provider = trace.get_tracer_provider()
    if not isinstance(provider, TracerProvider):
        provider = TracerProvider(resource=Resource.create({"service.name": name or "tradescore"}))
        trace.set_tracer_provider(provider)
    provider.add_span_processor(BatchSpanProcessor(span_exporter))


def setup_logging(
    name: Optional[str] = None,
    level: int = logging.INFO,
    enable_tracing: bool = False,
    exporter: str = "otlp",
) -> logging.Logger:
    """Route records through a single root stream handler.

    ``TRADESCORE_LOG_LEVEL`` overrides ``level``. Output is JSON unless
    ``TRADESCORE_LOG_FORMAT`` is ``plain``/``text``/``human`` or
    ``TRADESCORE_JSON_LOGS`` is falsy. Calling this again swaps the formatter
    without stacking handlers. Tracing needs the ``tracing`` extra.
    """

    level = _level_from_env(level)

    root = logging.getLogger()
    if not getattr(root, "_tradescore_configured", False):
        root.handlers.clear()
        root._tradescore_configured = True  # type: ignore[attr-defined]

    handler = next((h for h in root.handlers if isinstance(h, logging.StreamHandler)), None)
    if handler is None:
        handler = logging.StreamHandler()
        root.addHandler(handler)
    if _structured_from_env():
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(fmt=PLAIN_FORMAT, datefmt=PLAIN_DATEFMT))
    root.setLevel(level)

    if enable_tracing:
        try:
            _configure_tracing(name, exporter)
        except ImportError:
            logging.getLogger(__name__).warning(
                "Tracing requested but the opentelemetry SDK is not installed; "
                "install the 'tracing' extra"
            )

    logger = logging.getLogger(name)
    logger.setLevel(level)
    return logger


__all__ = ["JsonFormatter", "PLAIN_FORMAT", "setup_logging"]
