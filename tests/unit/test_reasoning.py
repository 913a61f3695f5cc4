"""Unit tests for reasoning coalescing and replay."""

from tarsier.events import ReasoningKind, TextEvent, ThinkingEvent, ThinkingMetadata
from tarsier.reasoning import (
    REDACTED,
    ReasoningCoalescer,
    reasoning_details_from_events,
    segment_metadata,
    segment_text,
)
from tarsier.streaming import ReasoningSegment


def _plain(text, index=0, format=None):
    return ReasoningSegment(kind=ReasoningKind.TEXT, order_index=index, text=text, format=format)


class TestReasoningCoalescer:
    def test_plain_segments_are_buffered(self):
        coalescer = ReasoningCoalescer()
        assert coalescer.push(_plain("abc")) == []
        assert coalescer.push(_plain("def")) == []
        assert coalescer.buffered == 6

        [merged] = coalescer.flush()
        assert merged.text == "abcdef"
        assert merged.kind is ReasoningKind.TEXT
        assert coalescer.flush() == []

    def test_five_hundred_small_segments_make_two_flushes(self):
        coalescer = ReasoningCoalescer()
        ready = []
        for _ in range(500):
            ready.extend(coalescer.push(_plain("0123456789")))
        ready.extend(coalescer.flush())

        assert [len(s.text) for s in ready] == [4000, 1000]

    def test_signed_segment_flushes_buffer_then_stands_alone(self):
        coalescer = ReasoningCoalescer()
        coalescer.push(_plain("thinking "))
        signed = ReasoningSegment(
            kind=ReasoningKind.TEXT, text="done", signature="sig-1",
        )
        ready = coalescer.push(signed)

        assert [s.text for s in ready] == ["thinking ", "done"]
        assert ready[0].signature is None
        assert ready[1] is signed
        assert coalescer.buffered == 0

    def test_summary_is_never_merged(self):
        coalescer = ReasoningCoalescer()
        summary = ReasoningSegment(kind=ReasoningKind.SUMMARY, text="short")
        assert coalescer.push(summary) == [summary]

    def test_new_order_index_starts_new_batch(self):
        coalescer = ReasoningCoalescer()
        coalescer.push(_plain("first", index=0))
        ready = coalescer.push(_plain("second", index=1))
        assert [(s.order_index, s.text) for s in ready] == [(0, "first")]
        [rest] = coalescer.flush()
        assert (rest.order_index, rest.text) == (1, "second")

    def test_flush_keeps_first_segment_format(self):
        coalescer = ReasoningCoalescer(flush_chars=5)
        [merged] = coalescer.push(_plain("abcdef", format="openai-responses-v1"))
        assert merged.format == "openai-responses-v1"

    def test_empty_plain_segment_ignored(self):
        coalescer = ReasoningCoalescer()
        assert coalescer.push(_plain("")) == []
        assert coalescer.flush() == []


class TestSegmentHelpers:
    def test_metadata_keeps_signature(self):
        segment = ReasoningSegment(
            kind=ReasoningKind.TEXT, order_index=2, text="x",
            signature="opaque", format="f", detail_id="rd_1",
        )
        meta = segment_metadata(segment)
        assert meta.continuation_signature == "opaque"
        assert meta.order_index == 2
        assert meta.extra == {"id": "rd_1"}

    def test_encrypted_text_is_redacted(self):
        segment = ReasoningSegment(kind=ReasoningKind.ENCRYPTED, data="blob")
        assert segment_text(segment) == REDACTED
        assert segment_metadata(segment).data == "blob"


class TestReasoningDetailsFromEvents:
    def test_rebuilds_details_with_signature(self):
        text_meta = ThinkingMetadata(kind=ReasoningKind.TEXT, order_index=0, format="anthropic-claude-v1")
        signed_meta = ThinkingMetadata(
            kind=ReasoningKind.TEXT, order_index=0, format="anthropic-claude-v1",
            continuation_signature="sig",
        )
        encrypted_meta = ThinkingMetadata(kind=ReasoningKind.ENCRYPTED, order_index=1, data="enc")
        events = [
            ThinkingEvent(span_id="s", text="step one, ", metadata=text_meta),
            ThinkingEvent(span_id="s", text="step two", metadata=signed_meta),
            ThinkingEvent(span_id="s", text=REDACTED, metadata=encrypted_meta),
            ThinkingEvent(span_id="s"),
            TextEvent(text="answer"),
        ]

        assert reasoning_details_from_events(events) == [
            {
                "type": "reasoning.text", "index": 0,
                "format": "anthropic-claude-v1",
                "text": "step one, step two", "signature": "sig",
            },
            {"type": "reasoning.encrypted", "index": 1, "data": "enc"},
        ]

    def test_ignores_tag_spans(self):
        events = [ThinkingEvent(span_id="t", text="hmm", metadata=ThinkingMetadata())]
        assert reasoning_details_from_events(events) == []
