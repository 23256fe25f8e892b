from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from micro_x_agent_bridge.subagent_relay import SubAgentChannel


@dataclass(frozen=True)
class ToolContext:
    session_id: str
    tool_use_id: str
    parent_message_uuid: str | None
    open_subagent: Callable[[str], SubAgentChannel] | None = None


@runtime_checkable
class Tool(Protocol):
    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str: ...

    @property
    def input_schema(self) -> dict[str, Any]: ...

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> str: ...
