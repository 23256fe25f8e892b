from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from micro_x_agent_bridge.bridge import Bridge
from micro_x_agent_bridge.bridge_config import BridgeConfig
from micro_x_agent_bridge.memory import EventEmitter, MemoryStore, SessionManager
from micro_x_agent_bridge.message_bus import MessageBus
from micro_x_agent_bridge.provider import LLMProvider
from micro_x_agent_bridge.tool import Tool
from micro_x_agent_bridge.tool_registry import get_all

_background_tasks: set[asyncio.Task] = set()


@dataclass
class BridgeRuntime:
    bridge: Bridge
    memory_store: MemoryStore
    tools: list[Tool]

    def release_when_idle(self) -> None:
        """Close the bridge and its store once every accepted send has finished."""

        async def finish() -> None:
            try:
                await self.bridge.wait_idle()
            finally:
                self.bridge.close()
                self.memory_store.close()

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.bridge.close()
            self.memory_store.close()
            return
        task = loop.create_task(finish())
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)


def resolve_db_path(memory_db_path: str) -> str:
    if memory_db_path == ":memory:":
        return memory_db_path
    db_path = Path(memory_db_path)
    if not db_path.is_absolute():
        db_path = Path.cwd() / db_path
    return str(db_path)


def build_bridge_runtime(
    *,
    provider: LLMProvider,
    model: str,
    max_tokens: int = 8192,
    temperature: float = 1.0,
    memory_db_path: str = ".micro_x/sessions.db",
    working_directory: str | None = None,
    extra_tools: list[Tool] | None = None,
    enable_subagents: bool = True,
    system_prompt: str | None = None,
    max_tool_result_chars: int = 40_000,
    max_turns: int = 50,
    subagent_queue_size: int = 64,
    bus: MessageBus | None = None,
) -> BridgeRuntime:
    memory_store = MemoryStore(resolve_db_path(memory_db_path))
    session_manager = SessionManager(memory_store, model, EventEmitter(memory_store))
    tools = get_all(
        provider,
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        extra_tools=extra_tools,
        enable_subagents=enable_subagents,
        max_tool_result_chars=max_tool_result_chars,
    )
    bridge = Bridge(
        BridgeConfig(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            tools=tools,
            system_prompt=system_prompt,
            working_directory=working_directory,
            max_tool_result_chars=max_tool_result_chars,
            max_turns=max_turns,
            subagent_queue_size=subagent_queue_size,
        ),
        provider=provider,
        session_manager=session_manager,
        bus=bus,
    )
    logger.debug(f"Bridge ready: model={model}, tools={[t.name for t in tools]}, db={memory_db_path}")
    return BridgeRuntime(bridge=bridge, memory_store=memory_store, tools=tools)
