"""Buffering of tool calls whose arguments arrive in fragments.

Fragments are keyed by their positional index, or by call id when the
provider sends no index.  A record is emitted as soon as its arguments
parse as a JSON object.  Anything still open when the stream finishes
is force-flushed: emitted if parseable, otherwise dropped and logged.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from tarsier.events import new_call_id
from tarsier.streaming import ToolCallFragment

logger = logging.getLogger(__name__)

UNKNOWN_TOOL = "unknown_tool"


@dataclass
class ToolCallRecord:
    """An open tool call being assembled."""

    key: int | str
    id: str | None = None
    name: str = ""
    arguments: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class CompletedToolCall:
    """A resolved tool call ready for emission."""

    id: str
    name: str
    arguments: dict[str, Any]
    metadata: dict[str, Any] = field(default_factory=dict)


def parse_arguments(text: str) -> dict[str, Any] | None:
    """Parse *text* as a JSON object, or return ``None``."""
    if not text.strip():
        return None
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def repair_arguments(text: str) -> dict[str, Any] | None:
    """Best-effort parse of argument text that failed :func:`parse_arguments`.

    Tries, in order: blank text as ``{}``, a leading JSON object
    followed by junk, and closing an unterminated string and any open
    brackets.
    """
    text = text.strip()
    if not text:
        return {}
    try:
        value, _ = json.JSONDecoder().raw_decode(text)
    except json.JSONDecodeError:
        pass
    else:
        if isinstance(value, dict):
            return value

    closers = []
    in_string = escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in "{[":
            closers.append("}" if ch == "{" else "]")
        elif ch in "}]" and closers:
            closers.pop()
    if in_string:
        text += '"'
    else:
        text = text.rstrip().rstrip(",")
    return parse_arguments(text + "".join(reversed(closers)))


class ToolCallBuffer:
    """Assembles complete tool calls from streaming fragments.

    Once a key (or call id) has been emitted, later fragments for it
    are ignored so upstream retransmissions cannot duplicate a call.
    """

    def __init__(self) -> None:
        self._pending: dict[int | str, ToolCallRecord] = {}
        self._completed_keys: set[int | str] = set()
        self._completed_ids: set[str] = set()
        self.dropped = 0

    def reset(self) -> None:
        self._pending.clear()
        self._completed_keys.clear()
        self._completed_ids.clear()
        self.dropped = 0

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    def feed(self, fragment: ToolCallFragment) -> CompletedToolCall | None:
        """Add a fragment; return the call if it just became complete."""
        key = fragment.key
        if key in self._completed_keys or fragment.call_id in self._completed_ids:
            logger.debug(f"Ignoring fragment for completed tool call {key!r}")
            return None
        if key not in self._pending:
            self._pending[key] = ToolCallRecord(key=key)
        tc = self._pending[key]
        if fragment.call_id:
            tc.id = fragment.call_id
        if fragment.name:
            tc.name += fragment.name
        if fragment.arguments_delta:
            tc.arguments += fragment.arguments_delta
        tc.metadata.update(fragment.metadata)

        if not tc.name:
            return None
        arguments = parse_arguments(tc.arguments)
        if arguments is None:
            return None
        return self._complete(tc, arguments)

    def flush(self, final: bool = False) -> list[CompletedToolCall]:
        """Force out every open record in arrival order.

        Blank arguments count as ``{}``.  Records whose arguments do
        not parse are dropped.  With ``final`` set, a repair attempt is
        made before giving up.
        """
        completed = []
        for key in list(self._pending):
            tc = self._pending[key]
            arguments = parse_arguments(tc.arguments)
            if arguments is None and not tc.arguments.strip():
                arguments = {}
            elif arguments is None and final:
                arguments = repair_arguments(tc.arguments)
            if arguments is None:
                del self._pending[key]
                self.dropped += 1
                logger.warning(
                    f"Dropping tool call {tc.name or UNKNOWN_TOOL!r} "
                    f"(key={key!r}): invalid JSON arguments "
                    f"{tc.arguments[:200]!r}"
                )
                continue
            if not tc.name:
                tc.name = UNKNOWN_TOOL
            completed.append(self._complete(tc, arguments))
        return completed

    def _complete(
        self, tc: ToolCallRecord, arguments: dict[str, Any]
    ) -> CompletedToolCall:
        del self._pending[tc.key]
        call_id = tc.id or new_call_id()
        self._completed_keys.add(tc.key)
        self._completed_ids.add(call_id)
        return CompletedToolCall(
            id=call_id, name=tc.name, arguments=arguments,
            metadata=dict(tc.metadata),
        )
