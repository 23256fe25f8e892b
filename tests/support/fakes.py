"""Scripted stand-ins for an LLM provider and tools."""

from __future__ import annotations

import asyncio
from typing import Any

from micro_x_agent_bridge.messages import Usage
from micro_x_agent_bridge.providers.common import to_internal_tools


def text_turn(text: str, *, stop_reason: str = "end_turn", usage: Usage | None = None) -> tuple:
    message = {"role": "assistant", "content": [{"type": "text", "text": text}]}
    return message, [], stop_reason, usage or Usage(10, 5)


def tool_turn(tool_use_id: str, name: str, tool_input: dict, *, text: str = "") -> tuple:
    block = {"type": "tool_use", "id": tool_use_id, "name": name, "input": tool_input}
    content: list[dict] = [{"type": "text", "text": text}] if text else []
    content.append(block)
    return {"role": "assistant", "content": content}, [block], "tool_use", Usage(10, 5)


class ScriptedProvider:
    """Replays canned turns in order. An exception in the script is raised instead of returned.

    With ``gate`` set, each call waits for the event before answering.
    """

    def __init__(self, turns: list[Any] | None = None, *, delay: float = 0.0, gate: asyncio.Event | None = None):
        self._turns = list(turns or [])
        self._delay = delay
        self._gate = gate
        self.calls: list[dict] = []

    def add(self, *turns: Any) -> None:
        self._turns.extend(turns)

    def convert_tools(self, tools: list) -> list[dict]:
        return to_internal_tools(tools)

    async def stream_chat(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
        tools: list[dict],
    ) -> tuple[dict, list[dict], str, Usage]:
        self.calls.append(
            {
                "model": model,
                "system_prompt": system_prompt,
                "messages": [dict(m) for m in messages],
                "tools": [t["name"] for t in tools],
            }
        )
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._gate is not None:
            await self._gate.wait()
        if not self._turns:
            return text_turn("(script exhausted)")
        turn = self._turns.pop(0)
        if isinstance(turn, BaseException):
            raise turn
        return turn


class EchoTool:
    def __init__(self, name: str = "echo", *, fail: bool = False):
        self._name = name
        self._fail = fail
        self.contexts: list = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return "Echoes its text input"

    @property
    def input_schema(self) -> dict[str, Any]:
        return {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]}

    async def execute(self, tool_input: dict[str, Any], context) -> str:
        self.contexts.append(context)
        if self._fail:
            raise RuntimeError("echo failed")
        return str(tool_input.get("text", ""))
