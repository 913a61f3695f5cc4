"""Recovery of inline tool calls delimited by sentinel tokens.

Some models emit tool calls inside the visible text stream, e.g.::

    <|tool_calls_section_begin|>
    <|tool_call_begin|>get_weather<|tool_call_argument_begin|>{"city": "SF"}<|tool_call_end|>
    <|tool_calls_section_end|>

:class:`SentinelSectionParser` pulls those calls out of arbitrarily
chunked text.  A token split across chunks is never emitted as text:
the longest buffered suffix that could still grow into the token is
held back until the next chunk decides it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

logger = logging.getLogger(__name__)


class SentinelTokens(BaseModel):
    """The literal tokens that delimit a tool-call section."""

    model_config = ConfigDict(frozen=True)

    section_begin: str = Field("<|tool_calls_section_begin|>", min_length=1)
    section_end: str = Field("<|tool_calls_section_end|>", min_length=1)
    call_begin: str = Field("<|tool_call_begin|>", min_length=1)
    argument_begin: str = Field("<|tool_call_argument_begin|>", min_length=1)
    call_end: str = Field("<|tool_call_end|>", min_length=1)

    @model_validator(mode="after")
    def _distinct(self) -> "SentinelTokens":
        tokens = [
            self.section_begin, self.section_end, self.call_begin,
            self.argument_begin, self.call_end,
        ]
        if len(set(tokens)) != len(tokens):
            raise ValueError("sentinel tokens must be distinct")
        return self


class SentinelState(Enum):
    SCANNING = "scanning"
    IN_SECTION = "in_section"
    IN_CALL_NAME = "in_call_name"
    IN_CALL_ARGS = "in_call_args"


@dataclass
class SectionText:
    """Text found outside any tool-call section."""

    text: str


@dataclass
class SectionToolCall:
    """A tool call closed by its call-end token."""

    name: str
    arguments: str


def partial_suffix_length(text: str, token: str) -> int:
    """Length of the longest suffix of *text* that is a proper prefix of *token*.

    Comparison is exact, character by character.
    """
    for k in range(min(len(text), len(token) - 1), 0, -1):
        if text.endswith(token[:k]):
            return k
    return 0


class SentinelSectionParser:
    """Four-state machine over the text channel.

    ``SCANNING`` passes text through until a section begins.
    ``IN_SECTION`` discards text until a call begins or the section
    ends.  ``IN_CALL_NAME`` and ``IN_CALL_ARGS`` capture the function
    name and its arguments.  After a call ends the parser is back in
    ``IN_SECTION``, ready for the next call.
    """

    def __init__(self, tokens: SentinelTokens | None = None):
        self.tokens = tokens or SentinelTokens()
        self.reset()

    def reset(self) -> None:
        self.state = SentinelState.SCANNING
        self._pending = ""
        self._name = ""
        self._args = ""

    def feed(self, chunk: str) -> list[SectionText | SectionToolCall]:
        out: list[SectionText | SectionToolCall] = []
        self._pending += chunk
        while self._pending:
            if self.state is SentinelState.SCANNING:
                progressed = self._scan(out)
            elif self.state is SentinelState.IN_SECTION:
                progressed = self._await_call()
            elif self.state is SentinelState.IN_CALL_NAME:
                progressed = self._capture_name()
            else:
                progressed = self._capture_args(out)
            if not progressed:
                break
        return out

    def finish(self) -> list[SectionText]:
        """Flush at stream end.

        Pending text outside a section is returned.  An unfinished
        call is discarded, never emitted.
        """
        out = []
        if self.state is SentinelState.SCANNING:
            if self._pending:
                out.append(SectionText(self._pending))
        elif self.state is not SentinelState.IN_SECTION:
            logger.warning(
                f"Discarding unfinished sentinel tool call "
                f"(state={self.state.value}, name={self._name.strip()!r})"
            )
        self.reset()
        return out

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    def _split(self, token: str) -> tuple[str, bool]:
        """Consume buffered text up to *token*.

        Returns the text before the token and whether the token was
        found.  When it wasn't, a possible partial token is kept
        pending and everything before it is returned.
        """
        idx = self._pending.find(token)
        if idx != -1:
            head = self._pending[:idx]
            self._pending = self._pending[idx + len(token):]
            return head, True
        keep = partial_suffix_length(self._pending, token)
        cut = len(self._pending) - keep
        head = self._pending[:cut]
        self._pending = self._pending[cut:]
        return head, False

    def _scan(self, out: list) -> bool:
        head, found = self._split(self.tokens.section_begin)
        if head:
            out.append(SectionText(head))
        if found:
            self.state = SentinelState.IN_SECTION
        return found

    def _await_call(self) -> bool:
        call_idx = self._pending.find(self.tokens.call_begin)
        end_idx = self._pending.find(self.tokens.section_end)
        if end_idx != -1 and (call_idx == -1 or end_idx < call_idx):
            self._pending = self._pending[end_idx + len(self.tokens.section_end):]
            self.state = SentinelState.SCANNING
            return True
        if call_idx != -1:
            self._pending = self._pending[call_idx + len(self.tokens.call_begin):]
            self._name = ""
            self._args = ""
            self.state = SentinelState.IN_CALL_NAME
            return True
        keep = max(
            partial_suffix_length(self._pending, self.tokens.call_begin),
            partial_suffix_length(self._pending, self.tokens.section_end),
        )
        # Text between calls carries nothing.
        self._pending = self._pending[len(self._pending) - keep:]
        return False

    def _capture_name(self) -> bool:
        head, found = self._split(self.tokens.argument_begin)
        self._name += head
        if found:
            self.state = SentinelState.IN_CALL_ARGS
        return found

    def _capture_args(self, out: list) -> bool:
        head, found = self._split(self.tokens.call_end)
        self._args += head
        if found:
            out.append(SectionToolCall(
                name=self._name.strip(), arguments=self._args.strip(),
            ))
            self._name = ""
            self._args = ""
            self.state = SentinelState.IN_SECTION
        return found
