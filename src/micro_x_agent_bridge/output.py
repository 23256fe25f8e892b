from __future__ import annotations

import json
import sys
from typing import TextIO

from micro_x_agent_bridge.messages import AgentProgressEvent, Message, ResultMessage, SessionItem, SystemMessage


class StructuredOutputSink:
    """Writes each session item as one JSON line, flushed immediately.

    When disabled nothing is written; the text renderer owns stdout instead.
    """

    def __init__(self, stream: TextIO | None = None, *, enabled: bool = True):
        self._stream = stream if stream is not None else sys.stdout
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        return self._enabled

    def write(self, item: SessionItem) -> None:
        if not self._enabled:
            return
        self._stream.write(json.dumps(item.to_dict(), ensure_ascii=False) + "\n")
        self._stream.flush()


class TextOutputRenderer:
    """Human-readable rendering of session items for the interactive CLI."""

    def __init__(self, stream: TextIO | None = None):
        self._stream = stream if stream is not None else sys.stdout

    def write(self, item: SessionItem) -> None:
        if isinstance(item, SystemMessage):
            self._print(f"[session {item.session_id} | {item.model} | {item.cwd}]")
        elif isinstance(item, Message):
            if item.role != "assistant":
                return
            if item.text:
                self._print(f"assistant> {item.text}")
            for tool_use in item.tool_uses:
                self._print(f"  -> {tool_use.get('name')}({json.dumps(tool_use.get('input', {}))})")
        elif isinstance(item, AgentProgressEvent):
            if item.message is not None:
                if item.message.text:
                    self._print(f"  [{item.agent_type} {item.agent_id}] {item.message.text}")
            else:
                suffix = f": {item.error}" if item.error else ""
                self._print(f"  [{item.agent_type} {item.agent_id}] {item.status}{suffix}")
        elif isinstance(item, ResultMessage):
            if item.is_error:
                self._print(f"error> {item.error}")
            self._print(
                f"[{item.num_turns} turn(s), {item.usage.input_tokens} in / "
                f"{item.usage.output_tokens} out, {item.duration_ms} ms]"
            )

    def _print(self, text: str) -> None:
        self._stream.write(text + "\n")
        self._stream.flush()
