from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import uuid4

from loguru import logger

from micro_x_agent_bridge.bridge_config import BridgeConfig
from micro_x_agent_bridge.errors import SessionClosedError, SessionNotFoundError, TransportClosedError
from micro_x_agent_bridge.memory import SessionManager
from micro_x_agent_bridge.message_bus import MessageBus
from micro_x_agent_bridge.messages import (
    AgentProgressEvent,
    Message,
    ResultMessage,
    SystemMessage,
    normalize_content,
)
from micro_x_agent_bridge.provider import LLMProvider
from micro_x_agent_bridge.subagent_relay import SubAgentRelay
from micro_x_agent_bridge.system_prompt import get_system_prompt
from micro_x_agent_bridge.turn_engine import TurnEngine, TurnOutcome


class SessionState(Enum):
    INITIALIZED = "initialized"
    SENDING = "sending"
    IDLE = "idle"
    CLOSED = "closed"


@dataclass
class _BridgeSession:
    session_id: str
    model: str
    cwd: str
    state: SessionState = SessionState.INITIALIZED
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    send_count: int = 0


class Bridge:
    """Engine-side owner of session state.

    Serves ``session.initialize``, ``session.messages.list`` and
    ``session.send`` on its bus and pushes ``message``, ``agent.progress``
    and ``session.done`` events while the agent loop runs. Sends for one
    session are queued and run one at a time; a send keeps running to
    completion even if the consumer goes away, its output is just dropped.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        provider: LLMProvider,
        session_manager: SessionManager,
        bus: MessageBus | None = None,
    ):
        self._config = config
        self._provider = provider
        self._session_manager = session_manager
        self.bus = bus or MessageBus(name="bridge")
        self._tool_map = {t.name: t for t in config.tools}
        self._converted_tools = provider.convert_tools(config.tools)
        self._sessions: dict[str, _BridgeSession] = {}
        self._tasks: set[asyncio.Task] = set()
        self._relay = SubAgentRelay(
            self._emit_progress,
            persist=self._persist_sidechain,
            max_pending=config.subagent_queue_size,
        )

        self.bus.register_handler("session.initialize", self._handle_initialize)
        self.bus.register_handler("session.messages.list", self._handle_list_messages)
        self.bus.register_handler("session.send", self._handle_send)

    def session_state(self, session_id: str) -> SessionState | None:
        session = self._sessions.get(session_id)
        return session.state if session is not None else None

    async def wait_idle(self) -> None:
        """Wait for every accepted send, including ones queued behind others."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        for session in self._sessions.values():
            session.state = SessionState.CLOSED
        self.bus.close()

    async def _handle_initialize(self, params: dict | None) -> dict:
        params = params or {}
        requested_id = params.get("sessionId") or None
        resume = bool(params.get("resume", False))
        cwd = params.get("cwd") or self._config.working_directory or os.getcwd()
        model = params.get("model") or self._config.model

        if requested_id:
            chain = self._list_chain(requested_id)
            existed = self._session_manager.get_session(requested_id) is not None or bool(chain)
            if not existed:
                if resume:
                    logger.info(f"Resume requested for unknown session {requested_id}")
                    return {"sessionId": requested_id, "existed": False, "messageCount": 0, "system": None}
                self._session_manager.create_session(requested_id, model=model, cwd=cwd)
            session_id = requested_id
        else:
            chain = []
            existed = False
            session_id = self._session_manager.create_session(model=model, cwd=cwd)

        session = self._sessions.get(session_id)
        if session is None or session.state is SessionState.CLOSED:
            session = _BridgeSession(session_id=session_id, model=model, cwd=cwd)
            self._sessions[session_id] = session

        system = SystemMessage(session_id=session_id, model=model, cwd=cwd, tools=sorted(self._tool_map))
        logger.info(f"Session {session_id} initialized (existed={existed}, messages={len(chain)})")
        return {
            "sessionId": session_id,
            "existed": existed,
            "messageCount": len(chain),
            "system": system.to_dict(),
        }

    async def _handle_list_messages(self, params: dict | None) -> dict:
        params = params or {}
        session_id = params.get("sessionId")
        if not session_id:
            raise ValueError("sessionId is required")
        chain = self._list_chain(session_id, include_sidechains=bool(params.get("includeSidechains", False)))
        return {"sessionId": session_id, "messages": [m.to_dict() for m in chain]}

    async def _handle_send(self, params: dict | None) -> dict:
        params = params or {}
        session_id = params.get("sessionId")
        session = self._sessions.get(session_id) if session_id else None
        if session is None:
            raise SessionNotFoundError(str(session_id))
        if session.state is SessionState.CLOSED:
            raise SessionClosedError(session_id)
        if "message" not in params:
            raise ValueError("message is required")

        content = normalize_content(params["message"])
        message_id = params.get("uuid") or str(uuid4())
        parent_id = params.get("parentUuid")
        session.send_count += 1
        seq = params.get("seq")
        if seq is None:
            seq = session.send_count
        model = params.get("model") or session.model
        cwd = params.get("cwd") or session.cwd
        queued = session.lock.locked()

        task = asyncio.create_task(self._run_send(session, content, message_id, parent_id, seq, model, cwd))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        if queued:
            logger.info(f"Session {session_id}: send {seq} queued behind a running send")
        return {"accepted": True, "sessionId": session_id, "uuid": message_id, "seq": seq, "queued": queued}

    async def _run_send(
        self,
        session: _BridgeSession,
        content: list[dict],
        message_id: str,
        parent_id: str | None,
        seq: int,
        model: str,
        cwd: str,
    ) -> None:
        async with session.lock:
            started = time.monotonic()
            last_uuid = None
            if session.state is not SessionState.CLOSED:
                session.state = SessionState.SENDING
            try:
                outcome = await self._run_loop(session, content, message_id, parent_id, model, cwd)
                last_uuid = outcome.last_message_id
                result = ResultMessage(
                    session_id=session.session_id,
                    is_error=outcome.is_error,
                    result=outcome.final_text,
                    content=outcome.content,
                    usage=outcome.usage,
                    num_turns=outcome.num_turns,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    error=outcome.error,
                    seq=seq,
                    uuid=message_id,
                )
            except Exception as ex:
                logger.error(f"Session {session.session_id}: send {seq} failed: {type(ex).__name__}: {ex}")
                result = ResultMessage(
                    session_id=session.session_id,
                    is_error=True,
                    result="",
                    duration_ms=int((time.monotonic() - started) * 1000),
                    error=f"{type(ex).__name__}: {ex}",
                    seq=seq,
                    uuid=message_id,
                )
            if session.state is not SessionState.CLOSED:
                session.state = SessionState.IDLE
            await self._emit_safely(
                "session.done",
                {
                    "sessionId": session.session_id,
                    "seq": seq,
                    "uuid": message_id,
                    "lastUuid": last_uuid,
                    "result": result.to_dict(),
                },
            )

    async def _run_loop(
        self,
        session: _BridgeSession,
        content: list[dict],
        message_id: str,
        parent_id: str | None,
        model: str,
        cwd: str,
    ) -> TurnOutcome:
        session_id = session.session_id
        if parent_id is not None and not self._session_manager.has_message(session_id, parent_id):
            raise ValueError(f"parentUuid {parent_id} is not a message of session {session_id}")
        if self._session_manager.has_message(session_id, message_id):
            raise ValueError(f"Message {message_id} already exists in session {session_id}")

        self._session_manager.load_or_create(session_id, model=model, cwd=cwd)
        self._session_manager.append_message(session_id, "user", content, message_id=message_id, parent_id=parent_id)
        history = [
            {"role": m.role, "content": m.content}
            for m in self._session_manager.load_ancestry(session_id, message_id)
            if m.agent_id is None
        ]

        last_id = message_id

        async def append(role: str, turn_content: list[dict]) -> str:
            nonlocal last_id
            message = self._session_manager.append_message(session_id, role, turn_content, parent_id=last_id)
            last_id = message.uuid
            await self._emit_safely("message", {"sessionId": session_id, "message": message.to_dict()})
            return message.uuid

        engine = TurnEngine(
            provider=self._provider,
            model=model,
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
            system_prompt=self._config.system_prompt
            or get_system_prompt(cwd=cwd, model=model, tool_names=sorted(self._tool_map)),
            converted_tools=self._converted_tools,
            tool_map=self._tool_map,
            session_id=session_id,
            max_tool_result_chars=self._config.max_tool_result_chars,
            max_tokens_retries=self._config.max_tokens_retries,
            max_turns=self._config.max_turns,
            on_append_message=append,
            on_tool_started=lambda tool_use_id, name: logger.debug(f"Tool {name} started ({tool_use_id})"),
            on_tool_completed=lambda tool_use_id, name, is_error: logger.debug(
                f"Tool {name} completed ({tool_use_id}, error={is_error})"
            ),
            subagent_opener=lambda tool_use_id, parent_uuid, agent_type: self._relay.open(
                session_id, tool_use_id, parent_uuid, agent_type
            ),
        )
        return await engine.run(messages=history)

    def _list_chain(self, session_id: str, *, include_sidechains: bool = False) -> list[Message]:
        return self._session_manager.load_chain(session_id, include_sidechains=include_sidechains)

    def _persist_sidechain(self, message: Message) -> None:
        self._session_manager.append_message(
            message.session_id,
            message.role,
            message.content,
            message_id=message.uuid,
            parent_id=message.parent_uuid,
            agent_id=message.agent_id,
        )

    async def _emit_progress(self, event: AgentProgressEvent) -> None:
        await self.bus.emit_event("agent.progress", event.to_dict())

    async def _emit_safely(self, event: str, data: Any) -> None:
        try:
            await self.bus.emit_event(event, data)
        except TransportClosedError:
            logger.debug(f"Dropped {event!r} for session {data.get('sessionId')}: transport closed")
        except Exception as ex:
            logger.warning(f"Failed to emit {event!r}: {type(ex).__name__}: {ex}")
