"""Optional OpenTelemetry instrumentation for tarsier.

Call ``tarsier.instrumentation.instrument()`` once at startup to trace
each reconstructed stream.  Requires ``opentelemetry-api``; the
library works identically without it.
"""

from __future__ import annotations

import importlib.util
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tarsier.reconstructor import StreamStats

logger = logging.getLogger(__name__)

_tracer = None


def instrument(
    *, tracer_name: str = "tarsier", tracer_provider=None,
) -> None:
    """Enable OpenTelemetry tracing of stream reconstruction.

    Call once at startup, after configuring your TracerProvider.
    Requires ``opentelemetry-api``: ``pip install tarsier[otel]``

    Example::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider

        trace.set_tracer_provider(TracerProvider())

        from tarsier.instrumentation import instrument
        instrument()

    Args:
        tracer_name: Name passed to ``trace.get_tracer()``.
        tracer_provider: Provider to take the tracer from instead of
            the global one, e.g. an isolated provider in tests.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install tarsier[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name, tracer_provider=tracer_provider)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "No TracerProvider configured; spans will be "
            "discarded. Set up a TracerProvider to export "
            "traces."
        )
    else:
        logger.info("Tarsier instrumentation enabled")


def uninstrument() -> None:
    """Stop tracing; later streams run without spans."""
    global _tracer
    _tracer = None


@asynccontextmanager
async def stream_span(model: str | None = None):
    """Wrap one reconstructed response stream in a ``reconstruct_stream`` span."""
    if _tracer is None:
        yield None
        return
    attributes = {"gen_ai.operation.name": "reconstruct_stream"}
    if model:
        attributes["gen_ai.request.model"] = model
    with _tracer.start_as_current_span(
        "reconstruct_stream", attributes=attributes,
    ) as span:
        yield span


def record_stream_stats(span, stats: StreamStats) -> None:
    """Set event-count attributes on a span."""
    if span is None:
        return
    for name in (
        "deltas",
        "skipped_deltas",
        "text_events",
        "thinking_events",
        "tool_calls",
        "dropped_tool_calls",
        "sink_errors",
    ):
        span.set_attribute(f"tarsier.stream.{name}", getattr(stats, name))
    span.set_attribute("tarsier.stream.cancelled", stats.cancelled)
    if stats.cancelled:
        span.add_event(
            "tarsier.stream.cancelled",
            attributes={"tarsier.stream.deltas": stats.deltas},
        )


def record_error(
    span, exception: BaseException, stats: StreamStats | None = None,
) -> None:
    """Mark a stream span as failed by an upstream exception.

    With *stats*, the exception event also records how far into the
    stream the failure happened.  No-ops when *span* is ``None``.
    """
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    attributes = {}
    if stats is not None:
        attributes = {
            "tarsier.stream.failed_at_delta": stats.deltas,
            "tarsier.stream.emitted_events": (
                stats.text_events + stats.thinking_events + stats.tool_calls
            ),
        }
    span.record_exception(exception, attributes=attributes)
    span.set_attribute("error.type", type(exception).__qualname__)
