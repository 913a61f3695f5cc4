import pytest

from tarsier.events import StreamEvent, TextEvent, ThinkingEvent, ToolCallEvent
from tarsier.reconstructor import StreamReconstructor


# ---------------------------------------------------------------------------
# Chunk builders (mirror the OpenAI chat.completion.chunk shape)
# ---------------------------------------------------------------------------

def make_chunk(
    content: str | None = None,
    tool_calls: list[dict] | None = None,
    reasoning_details: list[dict] | None = None,
    finish_reason: str | None = None,
    **delta_fields,
) -> dict:
    """Fake streaming chunk with a single choice."""
    delta = dict(delta_fields)
    if content is not None:
        delta["content"] = content
    if tool_calls is not None:
        delta["tool_calls"] = tool_calls
    if reasoning_details is not None:
        delta["reasoning_details"] = reasoning_details
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion.chunk",
        "choices": [{
            "index": 0,
            "delta": delta,
            "finish_reason": finish_reason,
        }],
    }


def make_tool_fragment(
    index: int | None = 0,
    call_id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
) -> dict:
    fragment: dict = {"type": "function", "function": {}}
    if index is not None:
        fragment["index"] = index
    if call_id is not None:
        fragment["id"] = call_id
    if name is not None:
        fragment["function"]["name"] = name
    if arguments is not None:
        fragment["function"]["arguments"] = arguments
    return fragment


def make_reasoning_text(
    text: str, index: int = 0, signature: str | None = None,
    format: str = "anthropic-claude-v1",
) -> dict:
    detail = {
        "type": "reasoning.text", "text": text,
        "index": index, "format": format,
    }
    if signature is not None:
        detail["signature"] = signature
    return detail


async def aiter_list(items):
    for item in items:
        yield item


# ---------------------------------------------------------------------------
# Event filters
# ---------------------------------------------------------------------------

def texts(events: list[StreamEvent]) -> list[str]:
    return [e.text for e in events if isinstance(e, TextEvent)]


def thinking(events: list[StreamEvent]) -> list[ThinkingEvent]:
    return [
        e for e in events
        if isinstance(e, ThinkingEvent) and not e.closes_span
    ]


def tool_calls(events: list[StreamEvent]) -> list[ToolCallEvent]:
    return [e for e in events if isinstance(e, ToolCallEvent)]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def events() -> list[StreamEvent]:
    return []


@pytest.fixture
def reconstructor(events) -> StreamReconstructor:
    return StreamReconstructor(sink=events.append)
