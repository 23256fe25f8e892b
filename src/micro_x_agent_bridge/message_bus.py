from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Any
from uuid import uuid4

from loguru import logger

from micro_x_agent_bridge.errors import (
    HandlerConflictError,
    RequestTimeoutError,
    TransportClosedError,
    UnknownHandlerError,
    error_from_frame,
    error_to_frame,
)
from micro_x_agent_bridge.transport import END_OF_STREAM, Transport

Handler = Callable[[Any], Awaitable[Any] | Any]
Subscriber = Callable[[Any], None]


class MessageBus:
    """Per-endpoint request/response and pub/sub over one Transport.

    Requests are correlated by id and may settle out of order. Events are
    delivered to subscribers in arrival order, one subscriber at a time, in
    subscription order. A handler failure becomes a failure response and
    never stops the read loop.
    """

    def __init__(
        self,
        transport: Transport | None = None,
        *,
        name: str = "bus",
        request_timeout: float | None = None,
    ):
        self._name = name
        self._request_timeout = request_timeout
        self._transport: Transport | None = None
        self._handlers: dict[str, Handler] = {}
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._pending: dict[str, tuple[str, asyncio.Future]] = {}
        self._handler_tasks: set[asyncio.Task] = set()
        self._reader_task: asyncio.Task | None = None
        if transport is not None:
            self.set_transport(transport)

    @property
    def name(self) -> str:
        return self._name

    @property
    def closed(self) -> bool:
        return self._transport is None or self._transport.closed

    def set_transport(self, transport: Transport) -> None:
        """Attach a transport and start reading from it. Needs a running event loop."""
        if self._transport is not None and not self._transport.closed:
            raise RuntimeError(f"{self._name}: transport already attached")
        self._transport = transport
        self._reader_task = asyncio.get_running_loop().create_task(self._read_loop(transport))

    def register_handler(self, method: str, handler: Handler) -> None:
        if method in self._handlers:
            raise HandlerConflictError(method)
        self._handlers[method] = handler

    def on_event(self, event: str, subscriber: Subscriber) -> Callable[[], None]:
        """Subscribe to ``event``. Returns a callable that removes this subscription."""
        subscribers = self._subscribers.setdefault(event, [])
        subscribers.append(subscriber)

        def unsubscribe() -> None:
            try:
                subscribers.remove(subscriber)
            except ValueError:
                pass

        return unsubscribe

    async def emit_event(self, event: str, data: Any) -> None:
        transport = self._require_transport()
        await transport.send({"type": "event", "event": event, "data": data})

    async def dispatch(self, method: str, params: Any = None) -> asyncio.Future:
        """Send a request frame and return the future that settles with its response."""
        transport = self._require_transport()
        request_id = uuid4().hex
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (method, future)
        try:
            await transport.send({"type": "request", "id": request_id, "method": method, "params": params})
        except TransportClosedError:
            self._pending.pop(request_id, None)
            raise
        future.add_done_callback(lambda _: self._pending.pop(request_id, None))
        return future

    async def request(self, method: str, params: Any = None, *, timeout: float | None = None) -> Any:
        future = await self.dispatch(method, params)
        effective_timeout = timeout if timeout is not None else self._request_timeout
        if effective_timeout is None:
            return await future
        try:
            return await asyncio.wait_for(future, effective_timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(method, effective_timeout) from None

    def close(self) -> None:
        """Close the transport and reject every outstanding request. Idempotent."""
        if self._transport is not None:
            self._transport.close()
        self._fail_pending()

    async def wait_closed(self) -> None:
        """Wait until the peer ends the stream or the bus is closed."""
        if self._reader_task is not None:
            await asyncio.shield(self._reader_task)

    def _require_transport(self) -> Transport:
        if self._transport is None or self._transport.closed:
            raise TransportClosedError(f"{self._name}: transport is closed")
        return self._transport

    async def _read_loop(self, transport: Transport) -> None:
        try:
            while True:
                frame = await transport.receive()
                if frame is END_OF_STREAM:
                    break
                self._handle_frame(frame)
        except Exception as ex:
            logger.error(f"{self._name}: read loop failed, closing transport: {type(ex).__name__}: {ex}")
            transport.close()
        finally:
            logger.debug(f"{self._name}: read loop finished")
            self._fail_pending()

    def _handle_frame(self, frame: dict) -> None:
        frame_type = frame.get("type")
        if frame_type == "response":
            self._settle(frame)
        elif frame_type == "event":
            self._deliver_event(frame.get("event", ""), frame.get("data"))
        elif frame_type == "request":
            task = asyncio.create_task(self._serve_request(frame))
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)
        else:
            logger.warning(f"{self._name}: ignoring frame with unknown type {frame_type!r}")

    def _settle(self, frame: dict) -> None:
        entry = self._pending.pop(str(frame.get("id")), None)
        if entry is None:
            logger.debug(f"{self._name}: response for unknown request id {frame.get('id')}")
            return
        method, future = entry
        if future.done():
            return
        error = frame.get("error")
        if error is not None:
            future.set_exception(error_from_frame(method, error))
        else:
            future.set_result(frame.get("result"))

    def _deliver_event(self, event: str, data: Any) -> None:
        for subscriber in list(self._subscribers.get(event, ())):
            try:
                subscriber(data)
            except Exception as ex:
                logger.error(f"{self._name}: subscriber for {event!r} failed: {ex}")

    async def _serve_request(self, frame: dict) -> None:
        request_id = frame.get("id")
        method = str(frame.get("method", ""))
        handler = self._handlers.get(method)
        if handler is None:
            response = {"type": "response", "id": request_id, "error": error_to_frame(UnknownHandlerError(method))}
        else:
            try:
                result = handler(frame.get("params"))
                if inspect.isawaitable(result):
                    result = await result
                response = {"type": "response", "id": request_id, "result": result}
            except Exception as ex:
                logger.warning(f"{self._name}: handler {method!r} failed: {type(ex).__name__}: {ex}")
                response = {"type": "response", "id": request_id, "error": error_to_frame(ex)}

        transport = self._transport
        if transport is None or transport.closed:
            logger.debug(f"{self._name}: dropping response for {method!r}, transport closed")
            return
        try:
            await transport.send(response)
        except TransportClosedError:
            logger.debug(f"{self._name}: dropping response for {method!r}, transport closed")

    def _fail_pending(self) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for method, future in pending:
            if not future.done():
                future.set_exception(TransportClosedError(f"Transport closed before {method!r} settled"))
