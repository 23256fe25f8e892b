"""Republishes nested agent output as ``agent.progress`` events.

A sub-agent writes each message it produces into a bounded queue owned by
its channel; a drain task empties the queue onto the bus. The producer only
waits when the queue is full, never on bus emission itself. Emission and
persistence failures are logged and dropped so they cannot change the
sub-agent's own result.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from uuid import uuid4

from loguru import logger

from micro_x_agent_bridge.messages import AgentProgressEvent, ContentPart, Message, ProgressStatus, normalize_content

ProgressEmitter = Callable[[AgentProgressEvent], Awaitable[None]]
SidechainPersister = Callable[[Message], None]


class SubAgentChannel:
    def __init__(
        self,
        *,
        session_id: str,
        parent_tool_use_id: str,
        parent_message_uuid: str | None,
        agent_type: str,
        emit: ProgressEmitter,
        persist: SidechainPersister | None = None,
        max_pending: int = 64,
    ):
        self.session_id = session_id
        self.parent_tool_use_id = parent_tool_use_id
        self.agent_id = uuid4().hex[:12]
        self.agent_type = agent_type
        self._emit = emit
        self._persist = persist
        self._last_uuid = parent_message_uuid
        self._queue: asyncio.Queue[AgentProgressEvent] = asyncio.Queue(maxsize=max(1, max_pending))
        self._status: ProgressStatus = "running"
        self._finished = False
        self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    @property
    def status(self) -> ProgressStatus:
        return self._status

    @property
    def finished(self) -> bool:
        return self._finished

    async def report(self, role: str, content: str | list[ContentPart]) -> Message:
        """Record one sub-agent message and queue its ``running`` progress event."""
        if self._finished:
            raise RuntimeError(f"Sub-agent {self.agent_id} already finished with status {self._status}")
        message = Message(
            role=role,
            content=normalize_content(content),
            uuid=str(uuid4()),
            parent_uuid=self._last_uuid,
            session_id=self.session_id,
            agent_id=self.agent_id,
        )
        self._last_uuid = message.uuid
        if self._persist is not None:
            try:
                self._persist(message)
            except Exception as ex:
                logger.warning(f"Sub-agent {self.agent_id}: failed to persist message {message.uuid}: {ex}")
        await self._queue.put(self._event("running", message=message))
        return message

    async def complete(self) -> None:
        await self._finish("completed")

    async def fail(self, error: str) -> None:
        await self._finish("failed", error=error)

    async def _finish(self, status: ProgressStatus, *, error: str | None = None) -> None:
        if self._finished:
            return
        self._finished = True
        self._status = status
        await self._queue.put(self._event(status, error=error))
        await self._drain_task

    def _event(self, status: ProgressStatus, *, message: Message | None = None, error: str | None = None) -> AgentProgressEvent:
        return AgentProgressEvent(
            session_id=self.session_id,
            parent_tool_use_id=self.parent_tool_use_id,
            agent_id=self.agent_id,
            agent_type=self.agent_type,
            status=status,
            message=message,
            error=error,
        )

    async def _drain(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._emit(event)
            except Exception as ex:
                logger.warning(
                    f"Dropped agent.progress ({event.status}) for tool {self.parent_tool_use_id} "
                    f"agent {self.agent_id}: {ex}"
                )
            finally:
                self._queue.task_done()
            if event.status != "running":
                return

    async def __aenter__(self) -> SubAgentChannel:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc is not None:
            await self.fail(f"{type(exc).__name__}: {exc}")
        else:
            await self.complete()
        return False


class SubAgentRelay:
    def __init__(
        self,
        emit: ProgressEmitter,
        *,
        persist: SidechainPersister | None = None,
        max_pending: int = 64,
    ):
        self._emit = emit
        self._persist = persist
        self._max_pending = max_pending
        self._open: set[SubAgentChannel] = set()

    @property
    def active_count(self) -> int:
        self._open = {c for c in self._open if not c.finished}
        return len(self._open)

    def open(
        self,
        session_id: str,
        parent_tool_use_id: str,
        parent_message_uuid: str | None,
        agent_type: str,
    ) -> SubAgentChannel:
        channel = SubAgentChannel(
            session_id=session_id,
            parent_tool_use_id=parent_tool_use_id,
            parent_message_uuid=parent_message_uuid,
            agent_type=agent_type,
            emit=self._emit,
            persist=self._persist,
            max_pending=self._max_pending,
        )
        self._open.add(channel)
        logger.debug(
            f"Opened sub-agent {channel.agent_id} ({agent_type}) for tool {parent_tool_use_id} "
            f"in session {session_id}"
        )
        return channel
