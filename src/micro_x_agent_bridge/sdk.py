"""Embeddable entry points: create, resume, or one-shot a session."""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field

from loguru import logger

from micro_x_agent_bridge.app_config import AppConfig, RuntimeEnv, resolve_runtime_env
from micro_x_agent_bridge.bootstrap import build_bridge_runtime
from micro_x_agent_bridge.errors import SessionNotFoundError
from micro_x_agent_bridge.message_bus import MessageBus
from micro_x_agent_bridge.messages import ResultMessage, SystemMessage
from micro_x_agent_bridge.provider import LLMProvider, create_provider
from micro_x_agent_bridge.session import Session, release_bus
from micro_x_agent_bridge.tool import Tool
from micro_x_agent_bridge.transport import DirectTransport, Transport

_KNOWN_PROVIDERS = {"anthropic", "openai"}


@dataclass
class SessionOptions:
    model: str = "claude-sonnet-4-5-20250929"
    cwd: str | None = None
    provider_name: str = "anthropic"
    api_key: str | None = None
    provider: LLMProvider | None = None
    memory_db_path: str = ".micro_x/sessions.db"
    tools: list[Tool] = field(default_factory=list)
    enable_subagents: bool = True
    system_prompt: str | None = None
    max_tokens: int = 8192
    temperature: float = 1.0
    max_turns: int = 50
    max_tool_result_chars: int = 40_000
    subagent_queue_size: int = 64
    request_timeout: float | None = 30.0
    transport: Transport | None = None

    @classmethod
    def from_app_config(cls, app: AppConfig, env: RuntimeEnv) -> SessionOptions:
        return cls(
            model=app.model,
            cwd=app.working_directory,
            provider_name=app.provider_name,
            api_key=env.provider_api_key,
            memory_db_path=app.memory_db_path,
            max_tokens=app.max_tokens,
            temperature=app.temperature,
            max_turns=app.max_turns,
            max_tool_result_chars=app.max_tool_result_chars,
            subagent_queue_size=app.subagent_queue_size,
            request_timeout=app.request_timeout_seconds,
        )

    def resolved_model(self) -> tuple[str, str]:
        """Split ``provider/model`` ids; plain ids keep ``provider_name``."""
        prefix, sep, rest = self.model.partition("/")
        if sep and prefix.lower() in _KNOWN_PROVIDERS:
            return prefix.lower(), rest
        return self.provider_name, self.model


async def _connect(options: SessionOptions) -> tuple[MessageBus, Callable[[], None] | None]:
    if options.transport is not None:
        return MessageBus(options.transport, name="session", request_timeout=options.request_timeout), None

    provider_name, model = options.resolved_model()
    provider = options.provider
    if provider is None:
        api_key = options.api_key or resolve_runtime_env(provider_name).provider_api_key
        provider = create_provider(provider_name, api_key)

    runtime = build_bridge_runtime(
        provider=provider,
        model=model,
        max_tokens=options.max_tokens,
        temperature=options.temperature,
        memory_db_path=options.memory_db_path,
        working_directory=options.cwd,
        extra_tools=options.tools,
        enable_subagents=options.enable_subagents,
        system_prompt=options.system_prompt,
        max_tool_result_chars=options.max_tool_result_chars,
        max_turns=options.max_turns,
        subagent_queue_size=options.subagent_queue_size,
    )
    session_transport, bridge_transport = DirectTransport.create_pair()
    runtime.bridge.bus.set_transport(bridge_transport)
    bus = MessageBus(session_transport, name="session", request_timeout=options.request_timeout)
    return bus, runtime.release_when_idle


async def create_session(options: SessionOptions | None = None, *, session_id: str | None = None) -> Session:
    options = options or SessionOptions()
    _, model = options.resolved_model()
    cwd = options.cwd or os.getcwd()
    bus, on_close = await _connect(options)
    try:
        init = await bus.request("session.initialize", {"sessionId": session_id, "cwd": cwd, "model": model})
    except BaseException:
        release_bus(bus, on_close)
        raise
    system = SystemMessage.from_dict(init["system"]) if init.get("system") else None
    return Session(bus, init["sessionId"], cwd=cwd, model=model, system=system, on_close=on_close)


async def resume_session(session_id: str, options: SessionOptions | None = None) -> Session:
    """Reattach to a persisted session. Raises SessionNotFoundError before returning if it is unknown."""
    options = options or SessionOptions()
    _, model = options.resolved_model()
    cwd = options.cwd or os.getcwd()
    bus, on_close = await _connect(options)
    try:
        init = await bus.request(
            "session.initialize",
            {"sessionId": session_id, "cwd": cwd, "model": model, "resume": True},
        )
        listing = await bus.request("session.messages.list", {"sessionId": session_id})
        messages = listing.get("messages", [])
        if not messages and not init.get("existed", False):
            raise SessionNotFoundError(session_id)
    except BaseException:
        release_bus(bus, on_close)
        raise

    parent_uuid = messages[-1]["uuid"] if messages else None
    logger.info(f"Resumed session {session_id} ({len(messages)} messages, cursor={parent_uuid})")
    system = SystemMessage.from_dict(init["system"]) if init.get("system") else None
    return Session(bus, session_id, cwd=cwd, model=model, parent_uuid=parent_uuid, system=system, on_close=on_close)


async def prompt(message: str, options: SessionOptions | None = None) -> ResultMessage:
    """Run one message in a fresh session and return its result."""
    async with await create_session(options) as session:
        await session.send(message)
        result: ResultMessage | None = None
        async for item in session.receive():
            if isinstance(item, ResultMessage):
                result = item
    if result is None:
        raise RuntimeError("Session ended without a result")
    return result
