"""Coalescing of structured reasoning segments.

Verbose models send reasoning a few characters at a time, and chat
surfaces cap how many reasoning events one response may carry.  The
:class:`ReasoningCoalescer` merges unsigned plain-text segments into
bounded batches.  Signed, summary and encrypted segments are never
merged: each is emitted on its own with its metadata intact, so a
continuation signature stays attached to the span it belongs to.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from tarsier.events import ReasoningKind, StreamEvent, ThinkingEvent, ThinkingMetadata
from tarsier.streaming import ReasoningSegment

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_CHARS = 4000
REDACTED = "[REDACTED]"


class ReasoningCoalescer:
    """Buffers plain reasoning text until a flush condition fires.

    The buffer flushes when it reaches ``flush_chars`` characters,
    when a segment that cannot be merged arrives (the buffer goes out
    first), and when :meth:`flush` is called at stream end.  Plain
    segments with a different ``order_index`` or ``format`` than the
    buffered ones also force a flush, since they belong to another
    reasoning block.

    Args:
        flush_chars: Buffer length that triggers a flush.
    """

    def __init__(self, flush_chars: int = DEFAULT_FLUSH_CHARS):
        self.flush_chars = flush_chars
        self.reset()

    def reset(self) -> None:
        self._head: ReasoningSegment | None = None
        self._parts: list[str] = []
        self._length = 0

    @property
    def buffered(self) -> int:
        return self._length

    def push(self, segment: ReasoningSegment) -> list[ReasoningSegment]:
        """Accept a segment; return the segments now ready for emission."""
        if not segment.is_plain:
            ready = self.flush()
            ready.append(segment)
            return ready
        if not segment.text:
            return []

        ready = []
        head = self._head
        if head is not None and (
            head.order_index != segment.order_index
            or head.format != segment.format
        ):
            ready = self.flush()
        if self._head is None:
            self._head = segment
        self._parts.append(segment.text)
        self._length += len(segment.text)
        if self._length >= self.flush_chars:
            ready.extend(self.flush())
        return ready

    def flush(self) -> list[ReasoningSegment]:
        if self._head is None:
            return []
        merged = ReasoningSegment(
            kind=ReasoningKind.TEXT,
            order_index=self._head.order_index,
            text="".join(self._parts),
            format=self._head.format,
            detail_id=self._head.detail_id,
        )
        logger.debug(
            f"Flushing {self._length} chars of coalesced reasoning "
            f"(index={merged.order_index})"
        )
        self.reset()
        return [merged]


def segment_metadata(segment: ReasoningSegment) -> ThinkingMetadata:
    extra = {"id": segment.detail_id} if segment.detail_id else {}
    return ThinkingMetadata(
        kind=segment.kind,
        format=segment.format,
        order_index=segment.order_index,
        continuation_signature=segment.signature,
        data=segment.data,
        extra=extra,
    )


def segment_text(segment: ReasoningSegment) -> str:
    """Display text for a segment; encrypted payloads are not shown."""
    if segment.kind is ReasoningKind.ENCRYPTED:
        return REDACTED
    return segment.text


def reasoning_details_from_events(
    events: Iterable[StreamEvent],
) -> list[dict[str, Any]]:
    """Rebuild a provider ``reasoning_details`` list from emitted events.

    Thinking events that came from structured reasoning are merged by
    ``order_index``; text is concatenated and continuation signatures
    and encrypted payloads are restored verbatim.  The result can be
    attached to the assistant message when the conversation is sent
    back on the next turn.
    """
    merged: dict[int, dict[str, Any]] = {}
    for event in events:
        if not isinstance(event, ThinkingEvent) or event.metadata is None:
            continue
        meta = event.metadata
        if meta.order_index is None:
            continue
        detail = merged.get(meta.order_index)
        if detail is None:
            detail = {"type": f"reasoning.{meta.kind.value}", "index": meta.order_index}
            if meta.format:
                detail["format"] = meta.format
            if meta.extra.get("id"):
                detail["id"] = meta.extra["id"]
            merged[meta.order_index] = detail
        if meta.kind is ReasoningKind.TEXT:
            detail["text"] = detail.get("text", "") + event.text
        elif meta.kind is ReasoningKind.SUMMARY:
            detail["summary"] = detail.get("summary", "") + event.text
        elif meta.data is not None:
            detail["data"] = meta.data
        if meta.continuation_signature:
            detail["signature"] = meta.continuation_signature
    return [merged[i] for i in sorted(merged)]
