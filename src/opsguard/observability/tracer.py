"""
OpenTelemetry tracing for opsguard

Spans wrap authorization and correlation calls; without initialization the
no-op tracer is used so instrumented code runs unchanged.
"""

import functools
import logging
from contextlib import contextmanager
from typing import Any, Callable, Optional, ParamSpec, TypeVar

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.trace import Status, StatusCode

from .config import TelemetryConfig

logger = logging.getLogger(__name__)

_tracer: Optional[trace.Tracer] = None
_config: Optional[TelemetryConfig] = None

P = ParamSpec("P")
T = TypeVar("T")

_SIMPLE_TYPES = (str, int, float, bool)


def initialize_tracing(config: TelemetryConfig) -> None:
    """Initialize OpenTelemetry tracing with the given configuration"""
    global _tracer, _config

    if not config.enabled or not config.tracing.enabled:
        logger.info("Tracing is disabled")
        return

    _config = config

    resource = Resource.create(config.get_resource_attributes())
    sampler = TraceIdRatioBased(config.tracing.sample_rate)
    provider = TracerProvider(resource=resource, sampler=sampler)

    if config.should_export_traces():
        otlp_exporter = OTLPSpanExporter(
            endpoint=config.tracing.otlp_endpoint,
            headers=config.tracing.otlp_headers,
            insecure=config.tracing.otlp_insecure,
        )
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
        logger.info(f"OTLP trace exporter configured for {config.tracing.otlp_endpoint}")

    trace.set_tracer_provider(provider)

    _tracer = trace.get_tracer(
        instrumenting_module_name="opsguard",
        instrumenting_library_version=config.tracing.service_version,
    )

    logger.info(
        f"OpenTelemetry tracing initialized (sample_rate={config.tracing.sample_rate})"
    )


def get_tracer() -> trace.Tracer:
    """Get the configured tracer, or a no-op tracer before initialization"""
    if _tracer is None:
        return trace.NoOpTracer()
    return _tracer


@contextmanager
def trace_operation(
    operation_name: str,
    attributes: Optional[dict[str, Any]] = None,
    set_status_on_exception: bool = True,
):
    """
    Context manager for tracing operations

    Args:
        operation_name: Name of the span
        attributes: Additional attributes to add to the span
        set_status_on_exception: Whether to set error status on exceptions
    """
    tracer = get_tracer()

    with tracer.start_as_current_span(operation_name) as span:
        if attributes:
            for key, value in attributes.items():
                span.set_attribute(key, value)

        try:
            yield span
        except Exception as e:
            if set_status_on_exception:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                span.record_exception(e)
            raise


def _argument_attributes(args: tuple, kwargs: dict) -> dict[str, Any]:
    """Collect simple-typed call arguments as span attributes"""
    attributes = {}
    for i, arg in enumerate(args):
        if isinstance(arg, _SIMPLE_TYPES):
            attributes[f"arg.{i}"] = arg
    for key, value in kwargs.items():
        if isinstance(value, _SIMPLE_TYPES):
            attributes[f"kwarg.{key}"] = value
    return attributes


def trace_sync(
    operation_name: Optional[str] = None,
    attributes: Optional[dict[str, Any]] = None,
    record_args: bool = False,
):
    """
    Decorator for tracing synchronous functions

    Args:
        operation_name: Custom span name (defaults to the qualified function name)
        attributes: Static attributes to add to spans
        record_args: Whether to record simple-typed arguments as attributes
    """

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @functools.wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            name = operation_name or f"{func.__module__}.{func.__qualname__}"
            span_attributes = dict(attributes or {})
            if record_args:
                span_attributes.update(_argument_attributes(args, kwargs))

            with trace_operation(name, span_attributes) as span:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    span.set_attribute("error.type", type(e).__name__)
                    raise

        return wrapper

    return decorator


def trace_async(
    operation_name: Optional[str] = None,
    attributes: Optional[dict[str, Any]] = None,
    record_args: bool = False,
):
    """Decorator for tracing async functions; see ``trace_sync``"""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            name = operation_name or f"{func.__module__}.{func.__qualname__}"
            span_attributes = dict(attributes or {})
            if record_args:
                span_attributes.update(_argument_attributes(args, kwargs))

            with trace_operation(name, span_attributes) as span:
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    span.set_attribute("error.type", type(e).__name__)
                    raise

        return wrapper

    return decorator


def add_event(name: str, attributes: Optional[dict[str, Any]] = None) -> None:
    """Add an event to the current span"""
    span = trace.get_current_span()
    if span.is_recording():
        span.add_event(name, attributes or {})


def set_attribute(key: str, value: Any) -> None:
    """Set an attribute on the current span"""
    span = trace.get_current_span()
    if span.is_recording():
        span.set_attribute(key, value)


def get_trace_id() -> str:
    """Get the current trace ID as a hex string"""
    span = trace.get_current_span()
    if span.is_recording():
        return format(span.get_span_context().trace_id, "032x")
    return ""


def is_tracing_enabled() -> bool:
    """Check if tracing is currently enabled"""
    return _tracer is not None and _config is not None and _config.tracing.enabled
