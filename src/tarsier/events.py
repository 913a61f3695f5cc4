"""Events handed to the sink while a stream is reconstructed."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ReasoningKind(Enum):
    TEXT = "text"
    SUMMARY = "summary"
    ENCRYPTED = "encrypted"


@dataclass
class ThinkingMetadata:
    """Structural metadata a thinking event must keep for replay.

    ``continuation_signature`` is opaque and provider-issued.  It is
    copied verbatim from the reasoning segment that carried it.
    """

    kind: ReasoningKind = ReasoningKind.TEXT
    format: str | None = None
    order_index: int | None = None
    continuation_signature: str | None = None
    data: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class StreamEvent:
    """Base for all reconstructed events."""


@dataclass
class TextEvent(StreamEvent):
    """Visible answer text."""

    text: str = ""


@dataclass
class ThinkingEvent(StreamEvent):
    """A partial emission of one thinking span.

    All emissions of one logical thought share ``span_id``.  An event
    with empty ``text`` and no ``metadata`` closes the span.
    """

    span_id: str = ""
    text: str = ""
    metadata: ThinkingMetadata | None = None

    @property
    def closes_span(self) -> bool:
        return not self.text and self.metadata is None


@dataclass
class ToolCallEvent(StreamEvent):
    """A complete tool invocation with parsed arguments."""

    call_id: str = ""
    name: str = ""
    arguments: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


def new_span_id() -> str:
    return f"thinking_{uuid.uuid4().hex[:12]}"


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:8]}"
