from __future__ import annotations

from typing import Any

from micro_x_agent_bridge.tool import Tool
from micro_x_agent_bridge.tools.task_tool import TaskTool


def get_all(
    provider: Any,
    *,
    model: str,
    max_tokens: int,
    temperature: float,
    extra_tools: list[Tool] | None = None,
    enable_subagents: bool = True,
    subagent_max_turns: int = 25,
    max_tool_result_chars: int = 40_000,
) -> list[Tool]:
    """Tools offered to the top-level loop: caller-supplied tools plus the Task tool."""
    tools: list[Tool] = list(extra_tools or [])
    if enable_subagents and not any(t.name == "Task" for t in tools):
        tools.append(
            TaskTool(
                provider=provider,
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                tools=list(tools),
                max_turns=subagent_max_turns,
                max_tool_result_chars=max_tool_result_chars,
            )
        )
    return tools
