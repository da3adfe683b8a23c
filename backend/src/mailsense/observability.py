"""
Tracing, metrics and structured logging for MailSense.

* Tracing: OTel TracerProvider; spans are exported over OTLP when
  OTEL_EXPORTER_OTLP_ENDPOINT is set.
* Metrics: counters and histograms through the OTel metrics API.
* Logging: structlog JSON lines carrying the request ids (correlation,
  tenant, message) and the active trace/span ids.

`trace_operation` tags every span with the same request ids, so a pipeline
run can be followed from the API call through each model call.
"""

from __future__ import annotations

import atexit
import functools
import inspect
import logging
import os
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import structlog
from mailsense.config.loader import get_config
from mailsense.context import correlation_id_ctx, message_id_ctx, tenant_id_ctx
from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.trace import Span, Status, StatusCode

METRIC_EXPORT_INTERVAL_MS = 60000
MAX_METRIC_INSTRUMENTS = 500
OTLP_ENDPOINT_ENV = "OTEL_EXPORTER_OTLP_ENDPOINT"
SPAN_ATTRIBUTE_PREFIX = "mailsense."

AttributeValue = str | bool | int | float

__all__ = (
    "get_logger",
    "get_trace_context",
    "init_observability",
    "shutdown_observability",
    "record_metric",
    "trace_operation",
)

_trace_context: ContextVar[dict[str, str] | None] = ContextVar(
    "mailsense_trace_context", default=None
)

_tracer_provider: TracerProvider | None = None
_meter_provider: MeterProvider | None = None
_metric_instruments: dict[tuple[str, str], Any] = {}
_initialized = False
_init_lock = threading.Lock()
_metric_lock = threading.Lock()
_shutdown_registered = False


def _register_shutdown_hook() -> None:
    global _shutdown_registered
    if not _shutdown_registered:
        atexit.register(shutdown_observability)
        _shutdown_registered = True


def _request_ids() -> dict[str, str]:
    """Correlation, tenant and message ids of the current request, when known."""
    ids = {
        "correlation_id": correlation_id_ctx.get(),
        "tenant_id": tenant_id_ctx.get(),
        "message_id": message_id_ctx.get(),
    }
    return {key: value for key, value in ids.items() if value is not None}


# -----------------------------------------------------------------------------
# Setup
# -----------------------------------------------------------------------------
def _init_tracing(service_name: str, sample_rate: float, config: Any) -> None:
    global _tracer_provider
    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": service_name,
                "service.version": config.core.version,
                "deployment.environment": config.core.env,
            }
        ),
        sampler=TraceIdRatioBased(sample_rate),
    )
    if os.getenv(OTLP_ENDPOINT_ENV):
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))
        logging.info("Exporting spans over OTLP")
    else:
        logging.info("%s not set; spans are kept in-process", OTLP_ENDPOINT_ENV)

    trace.set_tracer_provider(provider)
    _tracer_provider = provider


def _init_metrics(service_name: str) -> None:
    global _meter_provider
    if not os.getenv(OTLP_ENDPOINT_ENV):
        logging.info("%s not set; metrics go to the no-op meter", OTLP_ENDPOINT_ENV)
        return
    provider = MeterProvider(
        resource=Resource.create({"service.name": service_name}),
        metric_readers=[
            PeriodicExportingMetricReader(
                OTLPMetricExporter(), export_interval_millis=METRIC_EXPORT_INTERVAL_MS
            )
        ],
    )
    metrics.set_meter_provider(provider)
    _meter_provider = provider


def _bind_request_context(logger, method_name, event_dict):
    """structlog processor: request ids and trace ids on every log line."""
    for key, value in _request_ids().items():
        event_dict.setdefault(key, value)
    trace_ctx = _trace_context.get()
    if trace_ctx:
        event_dict["trace_id"] = trace_ctx["trace_id"]
        event_dict["span_id"] = trace_ctx["span_id"]
    return event_dict


def _init_structured_logging(log_level: str) -> None:
    logging.basicConfig(level=getattr(logging, log_level.upper(), logging.INFO))
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _bind_request_context,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def init_observability(
    service_name: str | None = None,
    enable_tracing: bool | None = None,
    enable_metrics: bool = True,
    enable_structured_logging: bool = True,
    sample_rate: float | None = None,
) -> None:
    """
    Set up logging, tracing and metrics once per process.

    Arguments left as None come from the `core` and `system` config sections.
    """
    global _initialized

    with _init_lock:
        if _initialized:
            return

        config = get_config()
        service_name = service_name or config.core.service_name
        if enable_tracing is None:
            enable_tracing = config.system.enable_tracing
        if sample_rate is None:
            sample_rate = config.system.trace_sample_rate
        sample_rate = min(max(sample_rate, 0.0), 1.0)

        if enable_structured_logging:
            _init_structured_logging(config.system.log_level)
        if enable_tracing:
            _init_tracing(service_name, sample_rate, config)
        if enable_metrics:
            _init_metrics(service_name)

        _initialized = True
        _register_shutdown_hook()


def shutdown_observability() -> None:
    """Flush buffered spans and metrics."""
    for provider in (_tracer_provider, _meter_provider):
        if provider is not None:
            provider.shutdown()


# -----------------------------------------------------------------------------
# Tracing
# -----------------------------------------------------------------------------
@contextmanager
def _operation_span(operation_name: str, span_attributes: dict[str, Any]) -> Iterator[Span]:
    tracer = trace.get_tracer(__name__)
    with tracer.start_as_current_span(
        operation_name, record_exception=False, set_status_on_exception=False
    ) as span:
        for key, value in _request_ids().items():
            span.set_attribute(SPAN_ATTRIBUTE_PREFIX + key, value)
        for key, value in span_attributes.items():
            span.set_attribute(key, value)

        span_context = span.get_span_context()
        token = None
        if span_context.is_valid:
            token = _trace_context.set(
                {
                    "trace_id": format(span_context.trace_id, "032x"),
                    "span_id": format(span_context.span_id, "016x"),
                }
            )
        try:
            yield span
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, type(e).__name__))
            span.record_exception(e)
            raise
        else:
            span.set_status(Status(StatusCode.OK))
        finally:
            if token is not None:
                _trace_context.reset(token)


def trace_operation(operation_name: str, **span_attributes):
    """
    Run the decorated function (sync or async) inside a span.

    The span carries the request ids plus `span_attributes`; exceptions are
    recorded on it and re-raised.
    """

    def decorator(func: Callable) -> Callable:
        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                with _operation_span(operation_name, span_attributes):
                    return await func(*args, **kwargs)

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            with _operation_span(operation_name, span_attributes):
                return func(*args, **kwargs)

        return wrapper

    return decorator


# -----------------------------------------------------------------------------
# Metrics
# -----------------------------------------------------------------------------
def _get_instrument(metric_name: str, metric_type: str) -> Any | None:
    key = (metric_name, metric_type)
    instrument = _metric_instruments.get(key)
    if instrument is not None:
        return instrument

    with _metric_lock:
        instrument = _metric_instruments.get(key)
        if instrument is not None:
            return instrument
        if len(_metric_instruments) >= MAX_METRIC_INSTRUMENTS:
            logging.warning(
                "Metric instrument cache full (%d items); dropping '%s'",
                MAX_METRIC_INSTRUMENTS,
                metric_name,
            )
            return None

        meter = metrics.get_meter(__name__)
        if metric_type == "counter":
            instrument = meter.create_counter(metric_name, unit="1")
        elif metric_type == "histogram":
            instrument = meter.create_histogram(metric_name, unit="ms")
        else:
            logging.warning("Unknown metric type '%s' for '%s'", metric_type, metric_name)
            return None
        _metric_instruments[key] = instrument
        return instrument


def record_metric(
    metric_name: str,
    value: float | int,
    labels: dict[str, AttributeValue] | None = None,
    metric_type: str = "counter",
) -> None:
    """Add to a counter or record a histogram value (latencies in ms)."""
    instrument = _get_instrument(metric_name, metric_type)
    if instrument is None:
        return
    if metric_type == "histogram":
        instrument.record(value, labels or {})
    else:
        instrument.add(value, labels or {})


# -----------------------------------------------------------------------------
# Logging helpers
# -----------------------------------------------------------------------------
def get_logger(name: str) -> Any:
    """structlog logger; request and trace ids are added by the processor chain."""
    return structlog.get_logger(name)


def get_trace_context() -> dict[str, str]:
    """Trace and span ids of the innermost active `trace_operation`, or {}."""
    return _trace_context.get() or {}
