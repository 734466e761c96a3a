"""Caller-facing byte sources and sinks.

Both classes speak the same writer protocol as :class:`asyncio.StreamWriter`
(``write``/``drain``/``close``) so a :class:`~procpipe.link.StreamLink` can
pump into a process stdin, into a not yet started stage or into an
in-memory output without knowing which one it has.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Generator

from .config import DEFAULT_STREAM_LIMIT

logger = logging.getLogger(__name__)

__all__ = ["OutputStream", "InputSink"]


class OutputStream:
    """Readable byte source that is also awaitable to its full contents.

    ``await stream`` reads until EOF and returns the buffered bytes; awaiting
    again returns the same bytes.  Incremental reads (``read``,
    ``readline``, ``async for``) consume the stream as they go.
    """

    def __init__(self, reader: asyncio.StreamReader | None = None, *, name: str = "") -> None:
        if reader is None:
            reader = asyncio.StreamReader(limit=DEFAULT_STREAM_LIMIT)
            self._owned = True
        else:
            self._owned = False
        self._reader = reader
        self._closed = False
        self._buffered: bytes | None = None
        self.name = name

    @classmethod
    def empty(cls, *, name: str = "") -> OutputStream:
        stream = cls(name=name)
        stream.close()
        return stream

    @property
    def reader(self) -> asyncio.StreamReader:
        return self._reader

    # -- source side -------------------------------------------------------

    async def read(self, n: int = -1) -> bytes:
        if n < 0:
            return await self.read_all()
        return await self._reader.read(n)

    async def readline(self) -> bytes:
        return await self._reader.readline()

    async def read_all(self) -> bytes:
        if self._buffered is None:
            self._buffered = await self._reader.read()
        return self._buffered

    async def text(self, encoding: str = "utf-8", errors: str = "replace") -> str:
        return (await self.read_all()).decode(encoding, errors)

    def at_eof(self) -> bool:
        return self._reader.at_eof()

    def __await__(self) -> Generator[object, None, bytes]:
        return self.read_all().__await__()

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iter_lines()

    async def _iter_lines(self) -> AsyncIterator[bytes]:
        while True:
            line = await self._reader.readline()
            if not line:
                return
            yield line

    # -- sink side (only for streams created without a reader) ------------

    def write(self, data: bytes) -> None:
        if self._closed:
            raise BrokenPipeError(f"output stream {self.name or id(self)} is closed")
        if data:
            self._reader.feed_data(bytes(data))

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._owned:
            self._reader.feed_eof()

    def is_closing(self) -> bool:
        return self._closed

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"OutputStream({self.name!r}, {state})"


class InputSink:
    """Write side of a stage that may not have been spawned yet.

    Writes are queued until :meth:`forward` attaches the real process
    stdin.  Like :class:`asyncio.StreamWriter`, ``write`` never blocks and
    ``drain`` waits while more than ``limit`` bytes are still unforwarded.
    Once aborted (the stage exited or never started), writes raise
    :class:`BrokenPipeError` just like a pipe whose reader went away.
    """

    _EOF = object()

    def __init__(self, *, name: str = "", limit: int = DEFAULT_STREAM_LIMIT) -> None:
        self.name = name
        self.limit = limit
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._pending = 0
        self._writable = asyncio.Event()
        self._writable.set()
        self._closed = False
        self._aborted = False
        self._done = asyncio.Event()

    @property
    def pending_bytes(self) -> int:
        """Bytes written but not yet accepted by the process stdin."""
        return self._pending

    def write(self, data: bytes) -> None:
        if self._aborted:
            raise BrokenPipeError(f"stdin of {self.name or 'stage'} is no longer read")
        if self._closed:
            raise RuntimeError(f"stdin of {self.name or 'stage'} was already closed")
        if data:
            self._queue.put_nowait(bytes(data))
            self._pending += len(data)
            if self._pending > self.limit:
                self._writable.clear()

    async def drain(self) -> None:
        if self._aborted:
            raise BrokenPipeError(f"stdin of {self.name or 'stage'} is no longer read")
        if self._pending > self.limit:
            await self._writable.wait()
            if self._aborted:
                raise BrokenPipeError(f"stdin of {self.name or 'stage'} is no longer read")
        else:
            await asyncio.sleep(0)

    def _consumed(self, size: int) -> None:
        self._pending = max(0, self._pending - size)
        if self._pending <= self.limit:
            self._writable.set()

    def close(self) -> None:
        if self._closed or self._aborted:
            return
        self._closed = True
        self._queue.put_nowait(self._EOF)

    def abort(self) -> None:
        """Drop buffered data, refuse further writes and wake blocked writers."""
        if self._aborted:
            return
        self._aborted = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(self._EOF)
        self._pending = 0
        self._writable.set()

    def is_closing(self) -> bool:
        return self._closed or self._aborted

    @property
    def aborted(self) -> bool:
        return self._aborted

    async def wait_closed(self) -> None:
        await self._done.wait()

    async def forward(self, writer: asyncio.StreamWriter) -> None:
        """Copy queued chunks into ``writer`` until closed or aborted."""
        try:
            while True:
                chunk = await self._queue.get()
                if chunk is self._EOF or self._aborted:
                    break
                writer.write(chunk)  # type: ignore[arg-type]
                await writer.drain()
                self._consumed(len(chunk))  # type: ignore[arg-type]
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("stdin of %s went away while forwarding", self.name)
            self.abort()
        finally:
            if not writer.is_closing():
                writer.close()
            self._done.set()
