from __future__ import annotations

from typing import Any

from loguru import logger

from micro_x_agent_bridge.tool import Tool, ToolContext
from micro_x_agent_bridge.turn_engine import TurnEngine

_DEFAULT_AGENT_TYPE = "general-purpose"

_SUBAGENT_SYSTEM_PROMPT = (
    "You are a sub-agent working on one delegated task. Use the available tools as needed "
    "and finish with a concise report of what you found or did. The report is returned "
    "verbatim to the agent that delegated the task."
)


class TaskTool:
    """Delegates a task to a nested agent loop whose output is relayed as progress."""

    def __init__(
        self,
        *,
        provider: Any,
        model: str,
        max_tokens: int,
        temperature: float,
        tools: list[Tool] | None = None,
        max_turns: int = 25,
        max_tool_result_chars: int = 40_000,
        max_tokens_retries: int = 3,
    ):
        self._provider = provider
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._tools = [t for t in (tools or []) if t.name != self.name]
        self._max_turns = max_turns
        self._max_tool_result_chars = max_tool_result_chars
        self._max_tokens_retries = max_tokens_retries

    @property
    def name(self) -> str:
        return "Task"

    @property
    def description(self) -> str:
        return (
            "Launch a sub-agent to handle a self-contained task. The sub-agent runs its own "
            "tool loop and returns a final report."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "description": {
                    "type": "string",
                    "description": "A short (3-5 word) description of the task",
                },
                "prompt": {
                    "type": "string",
                    "description": "The task for the sub-agent to perform",
                },
                "subagent_type": {
                    "type": "string",
                    "description": "The kind of sub-agent to use",
                },
            },
            "required": ["prompt"],
        }

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> str:
        if context.open_subagent is None:
            raise RuntimeError("Sub-agents are not available in this context")

        prompt = str(tool_input.get("prompt", "")).strip()
        if not prompt:
            raise ValueError("Task requires a non-empty prompt")
        agent_type = str(tool_input.get("subagent_type") or _DEFAULT_AGENT_TYPE)

        async with context.open_subagent(agent_type) as channel:

            async def record(role: str, content: list[dict]) -> str:
                message = await channel.report(role, content)
                return message.uuid

            engine = TurnEngine(
                provider=self._provider,
                model=self._model,
                max_tokens=self._max_tokens,
                temperature=self._temperature,
                system_prompt=_SUBAGENT_SYSTEM_PROMPT,
                converted_tools=self._provider.convert_tools(self._tools),
                tool_map={t.name: t for t in self._tools},
                session_id=context.session_id,
                max_tool_result_chars=self._max_tool_result_chars,
                max_tokens_retries=self._max_tokens_retries,
                max_turns=self._max_turns,
                on_append_message=record,
            )
            outcome = await engine.run(messages=[{"role": "user", "content": [{"type": "text", "text": prompt}]}])
            if outcome.is_error:
                raise RuntimeError(outcome.error)

        logger.info(
            f"Sub-agent {channel.agent_id} for tool {context.tool_use_id} finished "
            f"after {outcome.num_turns} turn(s)"
        )
        return outcome.final_text or "(sub-agent returned no text)"
