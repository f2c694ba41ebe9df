from __future__ import annotations

"""
tasktree.observability.tracing
==============================

OpenTelemetry instrumentation.

- `setup_tracing()` installs a service-wide SDK tracer provider.
- `trace()` decorates functions with spans; without a configured provider
  the API falls back to its no-op tracer.

Usage:
    setup_tracing(service_name="tasktree-coordinator")
    @trace("tasktree.complete")
    async def complete_task(...): ...
"""

import functools
import inspect
from collections.abc import Callable
from typing import Any, TypeVar, cast

from opentelemetry import trace as _otel_trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor, SpanExporter

from ..core.log import get_logger

__all__ = ["setup_tracing", "trace"]

_log = get_logger("observability.tracing")
_F = TypeVar("_F", bound=Callable[..., Any])


def setup_tracing(
    *,
    service_name: str,
    exporter: SpanExporter | None = None,
    batch: bool = True,
) -> TracerProvider:
    """
    Configure the global tracer provider.

    Args:
        service_name: logical service name for resources.
        exporter: span exporter (OTLP, console, in-memory...). Without one,
                  spans are recorded but not exported.
        batch: export through a BatchSpanProcessor; False exports synchronously.

    The global provider can only be set once per process; later calls return a
    new provider that OpenTelemetry refuses to install (it logs a warning).
    """
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter) if batch else SimpleSpanProcessor(exporter))
    _otel_trace.set_tracer_provider(provider)
    _log.info("otel tracing configured", event="tracing.configured", service=service_name)
    return provider


def trace(name: str) -> Callable[[_F], _F]:
    """Trace sync or async callables with a span named `name`; exceptions are recorded on the span."""

    def _decorator(func: _F) -> _F:
        tracer = _otel_trace.get_tracer("tasktree")

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _aw(*args: Any, **kwargs: Any):
                with tracer.start_as_current_span(name):
                    return await func(*args, **kwargs)

            return cast(_F, _aw)

        @functools.wraps(func)
        def _sw(*args: Any, **kwargs: Any):
            with tracer.start_as_current_span(name):
                return func(*args, **kwargs)

        return cast(_F, _sw)

    return _decorator
