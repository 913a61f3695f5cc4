"""Incremental reconstruction of events from a chunked model stream.

A :class:`StreamReconstructor` owns every buffer for exactly one
response stream.  Each raw delta is decoded, its parts routed in fixed
priority order, and the resulting events handed to the sink before the
next delta is read::

    reconstructor = StreamReconstructor(sink=events.append)
    stats = await reconstructor.run(deltas, cancel=cancel_event)

``run()`` pushes events to a sink.  :func:`iter_events` is the
streaming entry point that yields them instead.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterable
from dataclasses import dataclass, replace
from typing import Any

from tarsier.config import ReconstructorConfig
from tarsier.events import (
    StreamEvent,
    TextEvent,
    ThinkingEvent,
    ThinkingMetadata,
    ToolCallEvent,
    new_call_id,
    new_span_id,
)
from tarsier.instrumentation import record_error, record_stream_stats, stream_span
from tarsier.reasoning import ReasoningCoalescer, segment_metadata, segment_text
from tarsier.sentinel import SectionToolCall, SentinelSectionParser
from tarsier.streaming import (
    ContentPart,
    FinishPart,
    LegacyReasoningPart,
    MalformedDeltaError,
    ReasoningDetailsPart,
    ReasoningSegment,
    ToolCallFragment,
    ToolCallsPart,
    decode_delta,
)
from tarsier.think_tags import TagChunk, ThinkTagParser
from tarsier.tool_calls import CompletedToolCall, ToolCallBuffer, parse_arguments

logger = logging.getLogger(__name__)

EventSink = Callable[[StreamEvent], None]

FORCE_FLUSH_REASONS = frozenset({"tool_calls", "stop"})

_EXHAUSTED = object()
_CANCELLED = object()


class StreamMissingError(RuntimeError):
    """Raised when there is no delta stream at all to reconstruct."""


@dataclass
class StreamStats:
    """Counters for one reconstructed stream."""

    deltas: int = 0
    skipped_deltas: int = 0
    text_events: int = 0
    thinking_events: int = 0
    tool_calls: int = 0
    dropped_tool_calls: int = 0
    sink_errors: int = 0
    cancelled: bool = False


class StreamReconstructor:
    """Turns decoded deltas into text, thinking and tool-call events.

    Not safe to share between concurrent streams: create one instance
    per response, or call :meth:`reset` before reusing it.

    Args:
        sink: Callable receiving each event in order.  Exceptions it
            raises are logged and counted, never propagated.
        config: Parser and coalescing settings.
    """

    def __init__(
        self,
        sink: EventSink,
        config: ReconstructorConfig | None = None,
    ):
        self.sink = sink
        self.config = config or ReconstructorConfig()
        self._sentinel = SentinelSectionParser(self.config.sentinels)
        self._tags = ThinkTagParser(
            self.config.think_start_tag, self.config.think_end_tag,
        )
        self._coalescer = ReasoningCoalescer(self.config.reasoning_flush_chars)
        self._tool_calls = ToolCallBuffer()
        self.reset()

    def reset(self) -> None:
        """Clear all per-stream state."""
        self._clear_buffers()
        self._has_emitted_text = False
        self._separator_decided = False
        self._finished = False
        self.stats = StreamStats()

    def _clear_buffers(self) -> None:
        self._sentinel.reset()
        self._tags.reset()
        self._coalescer.reset()
        self._tool_calls.reset()
        self._span_id: str | None = None
        self._reasoning_signature: str | None = None

    # ------------------------------------------------------------------
    # Synchronous core
    # ------------------------------------------------------------------

    def feed(self, raw: Any) -> None:
        """Process one raw delta to completion.

        Undecodable deltas are skipped.
        """
        if self._finished:
            raise RuntimeError("stream already finished; call reset() first")
        self.stats.deltas += 1
        try:
            parts = decode_delta(raw)
        except MalformedDeltaError as e:
            self.stats.skipped_deltas += 1
            logger.debug(f"Skipping malformed delta: {e}")
            return

        for part in parts:
            if isinstance(part, ReasoningDetailsPart):
                self._on_reasoning_details(part.segments)
            elif isinstance(part, LegacyReasoningPart):
                self._on_legacy_reasoning(part)
            elif isinstance(part, ContentPart):
                self._on_content(part.text)
            elif isinstance(part, ToolCallsPart):
                self._on_tool_fragments(part.fragments)
            elif isinstance(part, FinishPart):
                if part.reason in FORCE_FLUSH_REASONS:
                    self._flush_tool_calls(final=False)

    def finish(self) -> None:
        """Run the terminal flush sequence.

        Held-back text is released, open tool calls are force-flushed
        (with a last repair attempt), buffered reasoning is emitted and
        any open thinking span is closed.  Idempotent.
        """
        if self._finished:
            return
        for piece in self._sentinel.finish():
            self._on_visible(piece.text)
        for chunk in self._tags.finish():
            self._on_tag_chunk(chunk)
        self._flush_tool_calls(final=True)
        self._drain_reasoning()
        self._close_span()
        self._finished = True

    # ------------------------------------------------------------------
    # Async driving
    # ------------------------------------------------------------------

    async def run(
        self,
        deltas: AsyncIterable[Any] | Iterable[Any] | None,
        cancel: asyncio.Event | None = None,
        model: str | None = None,
    ) -> StreamStats:
        """Consume *deltas* until exhausted or cancelled.

        Args:
            deltas: Ordered decoded deltas, async or plain iterable.
            cancel: Checked before each read and raced against any read
                still pending; once set, no further deltas are read and
                the terminal flush runs.
            model: Model name recorded on the trace span.

        Raises:
            StreamMissingError: If *deltas* is ``None``.
        """
        async for _ in self._consume(deltas, cancel, model):
            pass
        return self.stats

    async def _consume(
        self,
        deltas: AsyncIterable[Any] | Iterable[Any] | None,
        cancel: asyncio.Event | None,
        model: str | None,
    ) -> AsyncIterator[None]:
        if deltas is None:
            raise StreamMissingError("no delta stream to reconstruct")
        self.reset()
        source = _aiter(deltas)
        async with stream_span(model) as span:
            try:
                while True:
                    raw = await _next_delta(source, cancel)
                    if raw is _EXHAUSTED:
                        break
                    if raw is _CANCELLED:
                        self.stats.cancelled = True
                        logger.info("Stream cancelled; flushing buffered state")
                        break
                    self.feed(raw)
                    yield
            except asyncio.CancelledError:
                self.stats.cancelled = True
                raise
            except Exception as e:
                record_error(span, e, self.stats)
                logger.error(f"Delta stream failed: {e}")
                raise
            finally:
                self.finish()
                record_stream_stats(span, self.stats)
                self._clear_buffers()

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def _on_reasoning_details(self, segments: list[ReasoningSegment]) -> None:
        for segment in segments:
            if segment.signature:
                self._reasoning_signature = segment.signature
            for ready in self._coalescer.push(segment):
                self._emit_reasoning(ready)

    def _on_legacy_reasoning(self, part: LegacyReasoningPart) -> None:
        self._drain_reasoning()
        extra = dict(part.metadata or {})
        signature = extra.get("signature")
        metadata = ThinkingMetadata(
            continuation_signature=signature if isinstance(signature, str) else None,
            extra=extra,
        )
        self._emit(ThinkingEvent(
            span_id=self._open_span(), text=part.text, metadata=metadata,
        ))

    def _on_content(self, text: str) -> None:
        if not self.config.parse_sentinel_sections:
            self._on_visible(text)
            return
        for piece in self._sentinel.feed(text):
            if isinstance(piece, SectionToolCall):
                self._on_sentinel_call(piece)
            else:
                self._on_visible(piece.text)

    def _on_visible(self, text: str) -> None:
        if not self.config.parse_think_tags:
            self._emit_text(text)
            return
        for chunk in self._tags.feed(text):
            self._on_tag_chunk(chunk)

    def _on_tag_chunk(self, chunk: TagChunk) -> None:
        if chunk.kind == "text":
            self._emit_text(chunk.text)
        elif chunk.kind == "thinking":
            self._drain_reasoning()
            self._close_span()
            self._emit(ThinkingEvent(
                span_id=chunk.span_id, text=chunk.text,
                metadata=ThinkingMetadata(),
            ))
        else:
            self._emit(ThinkingEvent(span_id=chunk.span_id))

    def _on_tool_fragments(self, fragments: list[ToolCallFragment]) -> None:
        for fragment in fragments:
            call = self._tool_calls.feed(fragment)
            if call is not None:
                self._emit_tool_call(self._signed(call))

    def _on_sentinel_call(self, piece: SectionToolCall) -> None:
        arguments = parse_arguments(piece.arguments) if piece.arguments else {}
        if arguments is None or not piece.name:
            self.stats.dropped_tool_calls += 1
            logger.warning(
                f"Dropping inline tool call {piece.name!r}: invalid "
                f"JSON arguments {piece.arguments[:200]!r}"
            )
            return
        self._emit_tool_call(CompletedToolCall(
            id=new_call_id(), name=piece.name, arguments=arguments,
        ))

    def _flush_tool_calls(self, final: bool) -> None:
        dropped = self._tool_calls.dropped
        for call in self._tool_calls.flush(final=final):
            self._emit_tool_call(self._signed(call))
        self.stats.dropped_tool_calls += self._tool_calls.dropped - dropped

    def _signed(self, call: CompletedToolCall) -> CompletedToolCall:
        """Attach the latest reasoning signature when the provider sent none."""
        if self._reasoning_signature is None or "thought_signature" in call.metadata:
            return call
        return replace(call, metadata={
            **call.metadata, "thought_signature": self._reasoning_signature,
        })

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    def _open_span(self) -> str:
        if self._span_id is None:
            self._span_id = new_span_id()
        return self._span_id

    def _close_span(self) -> None:
        if self._span_id is not None:
            self._emit(ThinkingEvent(span_id=self._span_id))
            self._span_id = None

    def _drain_reasoning(self) -> None:
        for segment in self._coalescer.flush():
            self._emit_reasoning(segment)

    def _emit_reasoning(self, segment: ReasoningSegment) -> None:
        self._emit(ThinkingEvent(
            span_id=self._open_span(),
            text=segment_text(segment),
            metadata=segment_metadata(segment),
        ))

    def _emit_text(self, text: str) -> None:
        self._drain_reasoning()
        if text.strip():
            self._close_span()
        self._emit(TextEvent(text=text))
        self._has_emitted_text = True

    def _emit_tool_call(self, call: CompletedToolCall) -> None:
        self._drain_reasoning()
        if not self._separator_decided:
            self._separator_decided = True
            separator = self.config.tool_call_separator
            if separator and self._has_emitted_text:
                self._emit(TextEvent(text=separator))
        self._emit(ToolCallEvent(
            call_id=call.id, name=call.name,
            arguments=call.arguments, metadata=call.metadata,
        ))

    def _emit(self, event: StreamEvent) -> None:
        if isinstance(event, TextEvent):
            self.stats.text_events += 1
        elif isinstance(event, ThinkingEvent):
            self.stats.thinking_events += 1
        elif isinstance(event, ToolCallEvent):
            self.stats.tool_calls += 1
        try:
            self.sink(event)
        except Exception:
            self.stats.sink_errors += 1
            logger.exception(f"Event sink failed on {type(event).__name__}")


async def _aiter(deltas: AsyncIterable[Any] | Iterable[Any]) -> AsyncIterator[Any]:
    if hasattr(deltas, "__aiter__"):
        async for raw in deltas:
            yield raw
    else:
        for raw in deltas:
            yield raw


async def _pull(source: AsyncIterator[Any]) -> Any:
    try:
        return await source.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


async def _next_delta(
    source: AsyncIterator[Any], cancel: asyncio.Event | None,
) -> Any:
    """Await the next delta, or ``_CANCELLED`` once *cancel* is set.

    A stalled upstream read is abandoned as soon as cancellation is
    requested.  A delta that already arrived is still returned.
    """
    if cancel is None:
        return await _pull(source)
    if cancel.is_set():
        return _CANCELLED
    read = asyncio.create_task(_pull(source))
    stop = asyncio.create_task(cancel.wait())
    try:
        await asyncio.wait({read, stop}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop.cancel()
        if not read.done():
            read.cancel()
    if read.done() and not read.cancelled():
        return read.result()
    await asyncio.wait({read})
    return _CANCELLED


async def iter_events(
    deltas: AsyncIterable[Any] | Iterable[Any] | None,
    config: ReconstructorConfig | None = None,
    cancel: asyncio.Event | None = None,
    model: str | None = None,
) -> AsyncIterator[StreamEvent]:
    """Reconstruct *deltas*, yielding events as soon as each delta is processed."""
    outbox: deque[StreamEvent] = deque()
    reconstructor = StreamReconstructor(sink=outbox.append, config=config)
    async for _ in reconstructor._consume(deltas, cancel, model):
        while outbox:
            yield outbox.popleft()
    while outbox:
        yield outbox.popleft()
