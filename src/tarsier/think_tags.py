"""Streaming extraction of ``<think>...</think>`` spans from plain text."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from tarsier.events import new_span_id
from tarsier.sentinel import partial_suffix_length


@dataclass
class TagChunk:
    """One piece of tag-parser output.

    ``kind`` is ``"text"`` for visible text, ``"thinking"`` for span
    content, or ``"end"`` when the span identified by ``span_id``
    closes.
    """

    kind: str
    text: str = ""
    span_id: str | None = None


class ThinkTagParser:
    """Two-state splitter of visible text and tagged reasoning.

    Span content is returned as soon as it arrives.  Only a trailing
    partial tag is held back.
    """

    def __init__(
        self,
        start_tag: str = "<think>",
        end_tag: str = "</think>",
        span_ids: Callable[[], str] = new_span_id,
    ):
        self.start_tag = start_tag
        self.end_tag = end_tag
        self._span_ids = span_ids
        self.reset()

    def reset(self) -> None:
        self._pending = ""
        self.span_id: str | None = None
        self._span_has_content = False

    @property
    def in_span(self) -> bool:
        return self.span_id is not None

    def feed(self, chunk: str) -> list[TagChunk]:
        out: list[TagChunk] = []
        self._pending += chunk
        while self._pending:
            tag = self.end_tag if self.in_span else self.start_tag
            idx = self._pending.find(tag)
            if idx == -1:
                keep = partial_suffix_length(self._pending, tag)
                cut = len(self._pending) - keep
                self._push(out, self._pending[:cut])
                self._pending = self._pending[cut:]
                break
            self._push(out, self._pending[:idx])
            self._pending = self._pending[idx + len(tag):]
            if self.in_span:
                self._close(out)
            else:
                self.span_id = self._span_ids()
                self._span_has_content = False
        return out

    def finish(self) -> list[TagChunk]:
        """Flush held-back text and close a span left open."""
        out: list[TagChunk] = []
        self._push(out, self._pending)
        self._pending = ""
        if self.in_span:
            self._close(out)
        return out

    def _push(self, out: list[TagChunk], text: str) -> None:
        if not text:
            return
        if self.in_span:
            out.append(TagChunk("thinking", text, self.span_id))
            self._span_has_content = True
        else:
            out.append(TagChunk("text", text))

    def _close(self, out: list[TagChunk]) -> None:
        if self._span_has_content:
            out.append(TagChunk("end", span_id=self.span_id))
        self.span_id = None
        self._span_has_content = False
