"""Demultiplexing and streaming of Docker Engine container logs.

The Engine multiplexes stdout and stderr of non-TTY containers into one
byte stream of frames::

    [1 byte stream type][3 reserved bytes][4 byte big-endian length][payload]

:class:`LogDemultiplexer` turns arbitrary chunks of that stream into frames;
:class:`LogStream` exposes the decoded lines of one connection as an async
iterator that releases the connection exactly once.
"""

import asyncio
import logging
import struct
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

HEADER_SIZE = 8
_LENGTH = struct.Struct(">I")

STDIN = 0
STDOUT = 1
STDERR = 2


@dataclass(frozen=True)
class LogFrame:
    """One decoded frame of the multiplexed stream."""

    stream: int
    text: str


class LogDemultiplexer:
    """Incremental decoder for the Engine's framed log format."""

    def __init__(self):
        self.buffer = bytearray()

    def feed(self, data: bytes) -> List[LogFrame]:
        """
        Feed raw bytes and return every frame completed by them.

        Incomplete frames stay buffered until a later call supplies the rest.
        """
        self.buffer.extend(data)
        frames = []

        while len(self.buffer) >= HEADER_SIZE:
            (size,) = _LENGTH.unpack_from(self.buffer, 4)
            end = HEADER_SIZE + size
            if len(self.buffer) < end:
                break
            stream_type = self.buffer[0]
            payload = bytes(self.buffer[HEADER_SIZE:end])
            del self.buffer[:end]
            frames.append(
                LogFrame(stream=stream_type, text=payload.decode("utf-8", errors="replace"))
            )

        return frames

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet part of a complete frame."""
        return len(self.buffer)

    def reset(self):
        """Reset decoder state."""
        self.buffer = bytearray()


class CancellationToken:
    """Signals a log consumer to stop; observed by every stream holding it."""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


CloseCallback = Callable[[], Awaitable[None]]


class LogStream:
    """Pull-based async iterator over the lines of one container log stream.

    The underlying connection is released exactly once: when the source is
    exhausted, when :meth:`aclose` is called (directly or by leaving an
    ``async with`` block), or when the cancellation token fires.
    """

    def __init__(
        self,
        source: AsyncIterator[bytes],
        close: Optional[CloseCallback] = None,
        token: Optional[CancellationToken] = None,
    ):
        self._source = source.__aiter__()
        self._close = close
        self.token = token or CancellationToken()
        self._demux = LogDemultiplexer()
        self._pending: List[str] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "LogStream":
        return self

    async def __anext__(self) -> str:
        while not self._pending:
            if self._closed or self.token.cancelled:
                await self.aclose()
                raise StopAsyncIteration
            chunk = await self._next_chunk()
            if chunk is None:
                await self.aclose()
                raise StopAsyncIteration
            self._pending.extend(frame.text for frame in self._demux.feed(chunk))
        return self._pending.pop(0)

    async def _next_chunk(self) -> Optional[bytes]:
        """Read one chunk, or None if the source ended or was cancelled."""
        read = asyncio.ensure_future(self._source.__anext__())
        cancelled = asyncio.ensure_future(self.token.wait())
        try:
            await asyncio.wait({read, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            read.cancel()
            cancelled.cancel()
            raise
        cancelled.cancel()
        if not read.done():
            read.cancel()
            return None
        try:
            return read.result()
        except StopAsyncIteration:
            return None

    async def aclose(self) -> None:
        """Release the underlying connection. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        self._pending.clear()
        if self._demux.pending:
            logger.debug(f"Discarding {self._demux.pending} bytes of partial log frame")
        self._demux.reset()
        close = self._close or getattr(self._source, "aclose", None)
        if close is None:
            return
        try:
            await close()
        except Exception as e:
            logger.warning(f"Failed to close log stream: {e}")

    async def __aenter__(self) -> "LogStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


_DONE = object()


class ProjectLogStream:
    """Merges the log streams of several compose services into one.

    Lines are prefixed with the service name the way ``docker compose logs``
    prints them; blank lines are dropped.
    """

    def __init__(self, streams: Dict[str, LogStream]):
        self._streams = streams
        self._queue: asyncio.Queue = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []
        self._active = len(streams)
        self._closed = False

    def _start(self) -> None:
        if self._tasks or not self._streams:
            return
        for name, stream in self._streams.items():
            self._tasks.append(asyncio.create_task(self._pump(name, stream)))

    async def _pump(self, name: str, stream: LogStream) -> None:
        try:
            async for line in stream:
                content = line.rstrip()
                if content:
                    await self._queue.put(f"{name}  | {content}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Log stream error for service {name}: {e}")
        finally:
            await self._queue.put(_DONE)

    def __aiter__(self) -> "ProjectLogStream":
        return self

    async def __anext__(self) -> str:
        self._start()
        while self._active > 0 and not self._closed:
            item = await self._queue.get()
            if item is _DONE:
                self._active -= 1
                continue
            return item
        await self.aclose()
        raise StopAsyncIteration

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        for stream in self._streams.values():
            await stream.aclose()

    async def __aenter__(self) -> "ProjectLogStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
