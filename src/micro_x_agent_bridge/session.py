from __future__ import annotations

import asyncio
import weakref
from collections.abc import AsyncIterator, Callable
from functools import partial
from typing import Any
from uuid import uuid4

from loguru import logger

from micro_x_agent_bridge.errors import SessionClosedError, TransportClosedError
from micro_x_agent_bridge.message_bus import MessageBus
from micro_x_agent_bridge.messages import (
    AgentProgressEvent,
    ContentPart,
    Message,
    ResultMessage,
    SessionItem,
    SystemMessage,
)

_CLOSED = object()


def release_bus(bus: MessageBus, on_close: Callable[[], None] | None) -> None:
    """Close the bus, then run the owner's cleanup hook."""
    bus.close()
    if on_close is not None:
        on_close()


class Session:
    """Consumer-side handle on one bridge session.

    ``send`` hands a message to the bridge and returns immediately;
    ``receive`` yields what the bridge pushes back for this session, in
    arrival order, until the result for the latest send has been yielded.
    Items arriving between pulls wait in an unbounded queue.

    The session keeps an optimistic cursor for chaining its own sends: it
    moves to each sent message's uuid, and once that send completes, to the
    last message the bridge persisted for it. A send issued while another is
    still running chains off the earlier send's user message, never off a
    half-finished tool exchange. The bridge remains the authority on the
    persisted chain.
    """

    def __init__(
        self,
        bus: MessageBus,
        session_id: str,
        *,
        cwd: str,
        model: str,
        parent_uuid: str | None = None,
        system: SystemMessage | None = None,
        on_close: Callable[[], None] | None = None,
    ):
        self._bus = bus
        self._session_id = session_id
        self._cwd = cwd
        self._model = model
        self._current_parent_uuid = parent_uuid
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._seen: set[str] = set()
        self._next_seq = 0
        self._last_issued_seq: int | None = None
        self._outstanding: dict[int, str] = {}
        self._unsubscribers = [
            bus.on_event("message", self._on_message),
            bus.on_event("agent.progress", self._on_progress),
            bus.on_event("session.done", self._on_done),
        ]
        if system is not None:
            self._queue.put_nowait(system)
        # Runs once: on close() or at interpreter exit.
        self._finalizer = weakref.finalize(self, release_bus, bus, on_close)

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def current_parent_uuid(self) -> str | None:
        return self._current_parent_uuid

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, content: str | list[ContentPart]) -> str:
        """Issue ``session.send`` without waiting for it to run. Returns the new message uuid."""
        if self._closed:
            raise SessionClosedError(self._session_id)

        message_uuid = str(uuid4())
        parent_uuid = self._current_parent_uuid
        self._current_parent_uuid = message_uuid
        self._next_seq += 1
        seq = self._next_seq
        self._last_issued_seq = seq
        self._outstanding[seq] = message_uuid

        payload = {
            "sessionId": self._session_id,
            "message": content,
            "cwd": self._cwd,
            "model": self._model,
            "parentUuid": parent_uuid,
            "uuid": message_uuid,
            "seq": seq,
        }
        try:
            future = await self._bus.dispatch("session.send", payload)
        except TransportClosedError as ex:
            self._outstanding.pop(seq, None)
            if self._current_parent_uuid == message_uuid:
                self._current_parent_uuid = parent_uuid
            raise SessionClosedError(self._session_id) from ex

        future.add_done_callback(partial(self._on_send_settled, seq, message_uuid))
        return message_uuid

    async def receive(self) -> AsyncIterator[SessionItem]:
        while not self._closed:
            item = await self._queue.get()
            if item is _CLOSED or self._closed:
                return
            yield item
            if isinstance(item, ResultMessage) and item.seq is not None and item.seq == self._last_issued_seq:
                return

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self._queue.put_nowait(_CLOSED)
        self._finalizer()
        logger.debug(f"Session {self._session_id} closed")

    async def __aenter__(self) -> Session:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def _on_message(self, data: dict) -> None:
        if self._closed or data.get("sessionId") != self._session_id:
            return
        message = Message.from_dict(data["message"])
        if message.uuid in self._seen:
            return
        self._seen.add(message.uuid)
        self._queue.put_nowait(message)

    def _on_progress(self, data: dict) -> None:
        if self._closed or data.get("sessionId") != self._session_id:
            return
        event = AgentProgressEvent.from_dict(data)
        if event.message is not None:
            if event.message.uuid in self._seen:
                return
            self._seen.add(event.message.uuid)
        self._queue.put_nowait(event)

    def _on_done(self, data: dict) -> None:
        if self._closed or data.get("sessionId") != self._session_id:
            return
        seq = data.get("seq")
        if seq not in self._outstanding or self._outstanding[seq] != data.get("uuid"):
            return
        last_uuid = data.get("lastUuid")
        if last_uuid and self._current_parent_uuid == data.get("uuid"):
            self._current_parent_uuid = last_uuid
        self._complete(ResultMessage.from_dict(data["result"]))

    def _on_send_settled(self, seq: int, message_uuid: str, future: asyncio.Future) -> None:
        # A successful response is only an acknowledgement; session.done is the completion signal.
        if future.cancelled() or future.exception() is None:
            return
        if self._closed or seq not in self._outstanding:
            return
        ex = future.exception()
        logger.warning(f"Session {self._session_id}: send {seq} failed before running: {ex}")
        self._complete(
            ResultMessage(
                session_id=self._session_id,
                is_error=True,
                result="",
                error=str(ex),
                seq=seq,
                uuid=message_uuid,
            )
        )

    def _complete(self, result: ResultMessage) -> None:
        self._outstanding.pop(result.seq, None)  # type: ignore[arg-type]
        self._queue.put_nowait(result)
