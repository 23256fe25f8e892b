from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING, Any

from loguru import logger

from micro_x_agent_bridge.messages import Usage
from micro_x_agent_bridge.tool import Tool, ToolContext

if TYPE_CHECKING:
    from micro_x_agent_bridge.subagent_relay import SubAgentChannel

SubAgentOpener = Callable[[str, "str | None", str], "SubAgentChannel"]


@dataclass
class TurnOutcome:
    final_text: str = ""
    content: list[dict] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    num_turns: int = 0
    stop_reason: str | None = None
    last_message_id: str | None = None
    error: str | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


class TurnEngine:
    """Runs LLM turns and tool calls until the model stops asking for tools.

    Each complete turn is handed to ``on_append_message``, which persists it
    and returns its message id; that id is the parent for whatever the turn's
    tools spawn.
    """

    def __init__(
        self,
        *,
        provider: Any,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        converted_tools: list[dict],
        tool_map: dict[str, Tool],
        session_id: str,
        max_tool_result_chars: int,
        max_tokens_retries: int,
        max_turns: int,
        on_append_message: Callable[[str, list[dict]], Awaitable[str | None]],
        on_tool_started: Callable[[str, str], None] | None = None,
        on_tool_completed: Callable[[str, str, bool], None] | None = None,
        subagent_opener: SubAgentOpener | None = None,
    ) -> None:
        self._provider = provider
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._system_prompt = system_prompt
        self._converted_tools = converted_tools
        self._tool_map = tool_map
        self._session_id = session_id
        self._max_tool_result_chars = max_tool_result_chars
        self._max_tokens_retries = max_tokens_retries
        self._max_turns = max_turns
        self._on_append_message = on_append_message
        self._on_tool_started = on_tool_started
        self._on_tool_completed = on_tool_completed
        self._subagent_opener = subagent_opener

    async def run(self, *, messages: list[dict]) -> TurnOutcome:
        outcome = TurnOutcome()
        max_tokens_attempts = 0

        while True:
            if self._max_turns > 0 and outcome.num_turns >= self._max_turns:
                outcome.error = f"Reached maximum number of turns ({self._max_turns})"
                logger.warning(f"Session {self._session_id}: {outcome.error}")
                return outcome

            message, tool_use_blocks, stop_reason, usage = await self._provider.stream_chat(
                self._model,
                self._max_tokens,
                self._temperature,
                self._system_prompt,
                messages,
                self._converted_tools,
            )
            outcome.num_turns += 1
            outcome.usage = outcome.usage + usage
            outcome.stop_reason = stop_reason
            outcome.content = list(message["content"])
            outcome.final_text = "\n".join(
                b.get("text", "") for b in message["content"] if b.get("type") == "text"
            )

            messages.append({"role": "assistant", "content": message["content"]})
            outcome.last_message_id = await self._on_append_message("assistant", message["content"])

            if stop_reason == "max_tokens" and not tool_use_blocks:
                max_tokens_attempts += 1
                if max_tokens_attempts >= self._max_tokens_retries:
                    outcome.error = (
                        f"Response exceeded max_tokens ({self._max_tokens}) "
                        f"{self._max_tokens_retries} times in a row"
                    )
                    logger.warning(f"Session {self._session_id}: {outcome.error}")
                    return outcome
                continuation = [
                    {
                        "type": "text",
                        "text": (
                            "Your response was cut off because it exceeded the token limit. "
                            "Please continue, but be more concise."
                        ),
                    }
                ]
                messages.append({"role": "user", "content": continuation})
                await self._on_append_message("user", continuation)
                continue

            max_tokens_attempts = 0

            if not tool_use_blocks:
                return outcome

            tool_results = await self.execute_tools(tool_use_blocks, parent_message_uuid=outcome.last_message_id)
            messages.append({"role": "user", "content": tool_results})
            outcome.last_message_id = await self._on_append_message("user", tool_results)

    async def execute_tools(self, tool_use_blocks: list[dict], *, parent_message_uuid: str | None) -> list[dict]:
        async def run_one(block: dict) -> dict:
            tool_name = block["name"]
            tool_use_id = block["id"]
            tool = self._tool_map.get(tool_name)
            tool_input = block["input"]

            if self._on_tool_started is not None:
                self._on_tool_started(tool_use_id, tool_name)

            if tool is None:
                return self._tool_error(tool_use_id, tool_name, f'Error: unknown tool "{tool_name}"')

            context = ToolContext(
                session_id=self._session_id,
                tool_use_id=tool_use_id,
                parent_message_uuid=parent_message_uuid,
                open_subagent=(
                    partial(self._subagent_opener, tool_use_id, parent_message_uuid)
                    if self._subagent_opener is not None
                    else None
                ),
            )
            try:
                result = await tool.execute(tool_input, context)
            except Exception as ex:
                logger.warning(f"Tool {tool_name} ({tool_use_id}) failed: {ex}")
                return self._tool_error(tool_use_id, tool_name, f'Error executing tool "{tool_name}": {ex}')

            result = self._truncate_tool_result(result, tool_name)
            if self._on_tool_completed is not None:
                self._on_tool_completed(tool_use_id, tool_name, False)
            return {
                "type": "tool_result",
                "tool_use_id": tool_use_id,
                "content": result,
            }

        return list(await asyncio.gather(*(run_one(b) for b in tool_use_blocks)))

    def _tool_error(self, tool_use_id: str, tool_name: str, content: str) -> dict:
        if self._on_tool_completed is not None:
            self._on_tool_completed(tool_use_id, tool_name, True)
        return {
            "type": "tool_result",
            "tool_use_id": tool_use_id,
            "content": content,
            "is_error": True,
        }

    def _truncate_tool_result(self, result: str, tool_name: str) -> str:
        if self._max_tool_result_chars <= 0 or len(result) <= self._max_tool_result_chars:
            return result

        original_length = len(result)
        truncated = result[: self._max_tool_result_chars]
        message = (
            f"\n\n[OUTPUT TRUNCATED: Showing {self._max_tool_result_chars:,} "
            f"of {original_length:,} characters from {tool_name}]"
        )
        logger.warning(
            f"{tool_name} output truncated from {original_length:,} "
            f"to {self._max_tool_result_chars:,} chars"
        )
        return truncated + message
