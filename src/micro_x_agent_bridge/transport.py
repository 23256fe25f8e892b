from __future__ import annotations

import asyncio
import json
import sys
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from micro_x_agent_bridge.errors import TransportClosedError

# Frames carry whole tool results and message lists, far beyond asyncio's 64 KiB default.
STREAM_LIMIT = 16 * 1024 * 1024


class _EndOfStream:
    _instance: _EndOfStream | None = None

    def __new__(cls) -> _EndOfStream:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "END_OF_STREAM"

    def __bool__(self) -> bool:
        return False


END_OF_STREAM = _EndOfStream()


@runtime_checkable
class Transport(Protocol):
    @property
    def closed(self) -> bool: ...

    async def send(self, frame: dict[str, Any]) -> None: ...

    async def receive(self) -> dict[str, Any] | _EndOfStream: ...

    def close(self) -> None: ...


class _ReaderGuard:
    """Enforces a single active reader per endpoint."""

    def __init__(self) -> None:
        self._reading = False

    def __enter__(self) -> None:
        if self._reading:
            raise RuntimeError("Transport already has an active reader")
        self._reading = True

    def __exit__(self, exc_type, exc, tb) -> bool:
        self._reading = False
        return False


class DirectTransport:
    """In-process endpoint. Frames sent on one side appear, in order, on its peer."""

    def __init__(self) -> None:
        self._inbox: asyncio.Queue[dict[str, Any] | _EndOfStream] = asyncio.Queue()
        self._peer: DirectTransport | None = None
        self._closed = False
        self._reader = _ReaderGuard()

    @classmethod
    def create_pair(cls) -> tuple[DirectTransport, DirectTransport]:
        left = cls()
        right = cls()
        left._peer = right
        right._peer = left
        return left, right

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, frame: dict[str, Any]) -> None:
        if self._closed or self._peer is None:
            raise TransportClosedError()
        self._peer._inbox.put_nowait(frame)

    async def receive(self) -> dict[str, Any] | _EndOfStream:
        with self._reader:
            if self._closed and self._inbox.empty():
                return END_OF_STREAM
            return await self._inbox.get()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._inbox.put_nowait(END_OF_STREAM)
        peer = self._peer
        if peer is not None:
            peer.close()


class StreamTransport:
    """Process-boundary endpoint: newline-delimited JSON over asyncio streams."""

    def __init__(self, reader: asyncio.StreamReader, writer: Any):
        self._reader_stream = reader
        self._writer = writer
        self._closed = False
        self._write_lock = asyncio.Lock()
        self._reader = _ReaderGuard()

    @classmethod
    async def open_connection(cls, host: str, port: int) -> StreamTransport:
        reader, writer = await asyncio.open_connection(host, port, limit=STREAM_LIMIT)
        return cls(reader, writer)

    @classmethod
    async def open_stdio(cls) -> StreamTransport:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=STREAM_LIMIT)
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
        transport, protocol = await loop.connect_write_pipe(asyncio.streams.FlowControlMixin, sys.stdout)
        writer = asyncio.StreamWriter(transport, protocol, reader, loop)
        return cls(reader, writer)

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, frame: dict[str, Any]) -> None:
        if self._closed:
            raise TransportClosedError()
        line = json.dumps(frame, ensure_ascii=True) + "\n"
        async with self._write_lock:
            if self._closed:
                raise TransportClosedError()
            try:
                self._writer.write(line.encode("utf-8"))
                await self._writer.drain()
            except (ConnectionError, RuntimeError) as ex:
                self.close()
                raise TransportClosedError(f"Transport write failed: {ex}") from ex

    async def receive(self) -> dict[str, Any] | _EndOfStream:
        with self._reader:
            while True:
                if self._closed:
                    return END_OF_STREAM
                try:
                    raw = await self._reader_stream.readline()
                except (ConnectionError, asyncio.IncompleteReadError):
                    raw = b""
                except ValueError as ex:
                    # Over-long line; the reader has already discarded it.
                    logger.warning(f"Dropping oversized frame: {ex}")
                    continue
                if not raw:
                    self.close()
                    return END_OF_STREAM
                try:
                    text = raw.decode("utf-8").strip()
                except UnicodeDecodeError:
                    logger.warning(f"Dropping frame that is not valid UTF-8: {raw[:200]!r}")
                    continue
                if not text:
                    continue
                try:
                    frame = json.loads(text)
                except json.JSONDecodeError:
                    logger.warning(f"Dropping malformed frame: {text[:200]}")
                    continue
                if isinstance(frame, dict):
                    return frame
                logger.warning(f"Dropping non-object frame: {text[:200]}")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._reader_stream.feed_eof()
        try:
            self._writer.close()
        except RuntimeError as ex:
            # Event loop already gone during interpreter teardown.
            logger.debug(f"Stream writer close failed: {ex}")
