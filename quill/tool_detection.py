"""Detect tool-call requests in a provider stream.

Two strategies feed one ``ToolInvocation`` shape:

* native: structured tool-call deltas, accumulated by index until the
  provider finishes with ``finish_reason == "tool_calls"``;
* fenced: a ```json block holding ``{"tool": ..., "arguments": {...}}``
  in the reply text, matched once the stream has closed.

Only the first invocation found is acted upon.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Literal

from quill.llm import StreamDelta, ToolCallDelta
from quill.logging import get_logger

log = get_logger(__name__)

FENCE_OPEN = "```json"
_FENCED_BLOCK = re.compile(r"```json[ \t]*\n?(.*?)```", re.IGNORECASE | re.DOTALL)


@dataclass
class ToolInvocation:
    """A normalized request to run one tool."""

    tool_name: str
    arguments: dict[str, Any] | None
    raw_arguments: str
    source: Literal["native", "fenced"]
    span: tuple[int, int] | None = None
    call_id: str | None = None

    @property
    def payload(self) -> dict[str, Any] | str:
        """Arguments for validation; the raw text when they did not parse."""
        return self.arguments if self.arguments is not None else self.raw_arguments


@dataclass
class _PendingCall:
    id: str | None = None
    name: str = ""
    arguments: list[str] = field(default_factory=list)


class NativeToolCallAccumulator:
    """Accumulate structured tool-call fragments by index."""

    def __init__(self):
        self._calls: dict[int, _PendingCall] = {}
        self.finished = False

    @property
    def has_calls(self) -> bool:
        return bool(self._calls)

    def add(self, delta: StreamDelta) -> None:
        for fragment in delta.tool_calls:
            self._add_fragment(fragment)
        if delta.finish_reason == "tool_calls":
            self.finished = True

    def _add_fragment(self, fragment: ToolCallDelta) -> None:
        pending = self._calls.setdefault(fragment.index, _PendingCall())
        if fragment.id:
            pending.id = fragment.id
        if fragment.name:
            pending.name += fragment.name
        if fragment.arguments:
            pending.arguments.append(fragment.arguments)

    def first_invocation(self) -> ToolInvocation | None:
        """Return the lowest-index complete call once the provider asked for tools."""
        if not self.finished:
            return None
        for index in sorted(self._calls):
            pending = self._calls[index]
            if not pending.name.strip():
                continue
            raw = "".join(pending.arguments)
            arguments: dict[str, Any] | None
            try:
                parsed = json.loads(raw) if raw.strip() else {}
                arguments = parsed if isinstance(parsed, dict) else None
            except json.JSONDecodeError:
                arguments = None
            if len(self._calls) > 1:
                log.info("Ignoring additional native tool calls", count=len(self._calls) - 1)
            return ToolInvocation(
                tool_name=pending.name.strip(),
                arguments=arguments,
                raw_arguments=raw,
                source="native",
                call_id=pending.id,
            )
        return None


def extract_fenced_invocation(text: str) -> ToolInvocation | None:
    """Find the first fenced block that parses to a tool request.

    Blocks that are not valid JSON objects with a ``tool`` key are left
    alone and remain ordinary reply text.
    """
    for match in _FENCED_BLOCK.finditer(text or ""):
        body = match.group(1).strip()
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            log.debug("Fenced block is not valid JSON", preview=body[:80])
            continue
        if not isinstance(parsed, dict):
            continue
        tool_name = parsed.get("tool")
        if not isinstance(tool_name, str) or not tool_name.strip():
            continue

        raw_args = parsed.get("arguments", parsed.get("args", {}))
        arguments = raw_args if isinstance(raw_args, dict) else None
        return ToolInvocation(
            tool_name=tool_name.strip(),
            arguments=arguments,
            raw_arguments=json.dumps(raw_args) if not isinstance(raw_args, str) else raw_args,
            source="fenced",
            span=match.span(),
        )
    return None


def visible_text(buffer: str) -> str:
    """Prefix of the buffer that is safe to show while streaming.

    Stops at the first opening ```json fence and holds back a trailing
    partial fence, so successive values only ever grow.
    """
    lowered = buffer.lower()
    idx = lowered.find(FENCE_OPEN)
    if idx >= 0:
        return buffer[:idx]
    for size in range(min(len(FENCE_OPEN) - 1, len(buffer)), 0, -1):
        if lowered.endswith(FENCE_OPEN[:size]):
            return buffer[:-size]
    return buffer


def strip_span(text: str, span: tuple[int, int] | None) -> str:
    """Remove the invocation's block from the reply text."""
    if span is None:
        return text.strip()
    start, end = span
    before = text[:start].rstrip()
    after = text[end:].strip()
    if before and after:
        return f"{before}\n\n{after}"
    return before or after
