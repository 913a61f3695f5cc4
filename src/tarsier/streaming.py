"""Decoding of raw provider deltas into typed parts.

Every raw delta goes through :func:`decode_delta` before any routing
happens.  The result is a list drawn from a closed set of part types,
always in the order the reconstructor must handle them:

1. :class:`ReasoningDetailsPart`
2. :class:`LegacyReasoningPart`
3. :class:`ContentPart`
4. :class:`ToolCallsPart`
5. :class:`FinishPart`

Anything that cannot be decoded raises :class:`MalformedDeltaError`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from tarsier.events import ReasoningKind

logger = logging.getLogger(__name__)


class MalformedDeltaError(ValueError):
    """Raised when a raw delta cannot be decoded."""


# ---------------------------------------------------------------------------
# Decoded parts
# ---------------------------------------------------------------------------

@dataclass
class ReasoningSegment:
    """One entry of a structured reasoning-detail list."""

    kind: ReasoningKind
    order_index: int = 0
    text: str = ""
    signature: str | None = None
    format: str | None = None
    data: str | None = None
    detail_id: str | None = None

    @property
    def is_plain(self) -> bool:
        """Unsigned plain text, the only kind that may be coalesced."""
        return self.kind is ReasoningKind.TEXT and not self.signature


@dataclass
class ToolCallFragment:
    """A fragment of a tool call from a streaming chunk."""

    index: int | None = None
    call_id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> int | str:
        if self.index is not None:
            return self.index
        if self.call_id is not None:
            return self.call_id
        return 0


@dataclass
class ReasoningDetailsPart:
    segments: list[ReasoningSegment]


@dataclass
class LegacyReasoningPart:
    text: str
    metadata: dict[str, Any] | None = None


@dataclass
class ContentPart:
    text: str


@dataclass
class ToolCallsPart:
    fragments: list[ToolCallFragment]


@dataclass
class FinishPart:
    reason: str


DeltaPart = (
    ReasoningDetailsPart
    | LegacyReasoningPart
    | ContentPart
    | ToolCallsPart
    | FinishPart
)


# ---------------------------------------------------------------------------
# Wire shapes (OpenAI-compatible chat.completion.chunk)
# ---------------------------------------------------------------------------

class _WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class _WireFunction(_WireModel):
    name: str | None = None
    arguments: str | None = None


class _WireToolCall(_WireModel):
    index: int | None = None
    id: str | None = None
    function: _WireFunction | None = None
    provider_specific_fields: dict[str, Any] | None = None


class _WireReasoningDetail(_WireModel):
    type: str
    index: int | None = None
    id: str | None = None
    text: str | None = None
    summary: str | None = None
    data: str | None = None
    signature: str | None = None
    format: str | None = None


_Thinking = str | dict[str, Any] | None


class _WireDelta(_WireModel):
    content: str | None = None
    reasoning_details: list[_WireReasoningDetail] | None = None
    thinking: _Thinking = None
    reasoning_content: _Thinking = None
    reasoning: _Thinking = None
    tool_calls: list[_WireToolCall] | None = None


class _WireChoice(_WireModel):
    delta: _WireDelta | None = None
    finish_reason: str | None = None
    thinking: _Thinking = None
    reasoning_details: list[_WireReasoningDetail] | None = None


_KINDS = {
    "reasoning.text": ReasoningKind.TEXT,
    "reasoning.summary": ReasoningKind.SUMMARY,
    "reasoning.encrypted": ReasoningKind.ENCRYPTED,
}


def _as_mapping(raw: Any) -> dict[str, Any]:
    if isinstance(raw, BaseModel):
        return raw.model_dump()
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            raw = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedDeltaError(f"undecodable delta text: {e}") from e
    if not isinstance(raw, dict):
        raise MalformedDeltaError(
            f"unsupported delta type {type(raw).__name__}"
        )
    return raw


def _to_choice(raw: dict[str, Any]) -> _WireChoice | None:
    try:
        if "choices" in raw:
            choices = raw["choices"]
            if not isinstance(choices, list):
                raise MalformedDeltaError("'choices' is not a list")
            if not choices:
                return None
            return _WireChoice.model_validate(choices[0])
        # A bare delta, optionally with its finish reason alongside.
        return _WireChoice(
            delta=_WireDelta.model_validate(raw),
            finish_reason=raw.get("finish_reason"),
        )
    except ValidationError as e:
        raise MalformedDeltaError(str(e)) from e


def _segment(detail: _WireReasoningDetail) -> ReasoningSegment | None:
    kind = _KINDS.get(detail.type)
    if kind is None:
        logger.debug(f"Skipping unknown reasoning detail type {detail.type!r}")
        return None
    if kind is ReasoningKind.SUMMARY:
        text = detail.summary or ""
    elif kind is ReasoningKind.TEXT:
        text = detail.text or ""
    else:
        text = ""
    return ReasoningSegment(
        kind=kind,
        order_index=detail.index or 0,
        text=text,
        signature=detail.signature,
        format=detail.format,
        data=detail.data,
        detail_id=detail.id,
    )


def _legacy(value: _Thinking) -> LegacyReasoningPart | None:
    if isinstance(value, str):
        return LegacyReasoningPart(text=value) if value else None
    if isinstance(value, dict):
        text = value.get("text")
        if not isinstance(text, str):
            text = json.dumps(value)
        metadata = value.get("metadata")
        if not isinstance(metadata, dict):
            metadata = None
        return LegacyReasoningPart(text=text, metadata=metadata) if text else None
    return None


def _fragment(tc: _WireToolCall) -> ToolCallFragment:
    metadata: dict[str, Any] = {}
    fields = tc.provider_specific_fields or {}
    if isinstance(fields.get("thought_signature"), str):
        metadata["thought_signature"] = fields["thought_signature"]
    return ToolCallFragment(
        index=tc.index,
        call_id=tc.id,
        name=tc.function.name if tc.function else None,
        arguments_delta=tc.function.arguments if tc.function else None,
        metadata=metadata,
    )


def decode_delta(raw: Any) -> list[DeltaPart]:
    """Classify one raw delta into its ordered parts.

    Args:
        raw: A chat-completion chunk or bare delta, as a mapping, a
            JSON string, or a pydantic model (e.g. an OpenAI
            ``ChatCompletionChunk``).

    Returns:
        The parts present in the delta, in handling order.  Usage-only
        chunks with no choices decode to an empty list.

    Raises:
        MalformedDeltaError: If the delta cannot be decoded.
    """
    choice = _to_choice(_as_mapping(raw))
    if choice is None:
        return []
    delta = choice.delta or _WireDelta()
    parts: list[DeltaPart] = []

    details = delta.reasoning_details or choice.reasoning_details
    if details:
        ordered = sorted(details, key=lambda d: d.index or 0)
        segments = [s for s in map(_segment, ordered) if s is not None]
        if segments:
            parts.append(ReasoningDetailsPart(segments=segments))
    else:
        for value in (
            choice.thinking,
            delta.thinking,
            delta.reasoning_content,
            delta.reasoning,
        ):
            if value is not None:
                legacy = _legacy(value)
                if legacy is not None:
                    parts.append(legacy)
                break

    if delta.content:
        parts.append(ContentPart(text=delta.content))
    if delta.tool_calls:
        parts.append(ToolCallsPart(
            fragments=[_fragment(tc) for tc in delta.tool_calls],
        ))
    if choice.finish_reason:
        parts.append(FinishPart(reason=choice.finish_reason))
    return parts
