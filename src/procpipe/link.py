"""Pipe connection between one stage's output and the next stage's input."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any, Protocol

from .config import DEFAULT_CHUNK_SIZE
from .errors import PipelineError, StreamError, coerce_stage_error

logger = logging.getLogger(__name__)

__all__ = ["ByteSink", "LinkState", "StreamLink"]


class ByteSink(Protocol):
    def write(self, data: bytes) -> Any: ...

    async def drain(self) -> None: ...

    def close(self) -> Any: ...

    def is_closing(self) -> bool: ...


# The downstream reader went away: the race unwiring exists to absorb.
_DOWNSTREAM_GONE = (BrokenPipeError, ConnectionResetError)


class LinkState(Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class StreamLink:
    """Copies ``source`` into ``sink`` until EOF or until one side exits.

    The link moves from ``CONNECTED`` to ``DISCONNECTED`` exactly once.
    Downstream exit unwires immediately and releases the upstream's read
    end so the upstream sees a broken pipe instead of blocking.  Upstream
    exit unwires after the pump drained what was already written.
    """

    def __init__(
        self,
        source: asyncio.StreamReader,
        sink: ByteSink,
        *,
        name: str = "",
        end: bool = True,
        release_source: Callable[[], None] | None = None,
        on_error: Callable[[PipelineError], None] | None = None,
        on_unwire: Callable[[StreamLink], None] | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.source = source
        self.sink = sink
        self.name = name
        self.end = end
        self.chunk_size = chunk_size
        self.bytes_copied = 0
        self.state = LinkState.CONNECTED
        self._release_source = release_source
        self._on_error = on_error
        self._on_unwire = on_unwire
        self._pump: asyncio.Task[None] | None = None
        self._reason: str | None = None

    @property
    def connected(self) -> bool:
        return self.state is LinkState.CONNECTED

    @property
    def reason(self) -> str | None:
        return self._reason

    def connect(self) -> StreamLink:
        if self._pump is not None:
            return self
        self._pump = asyncio.get_running_loop().create_task(
            self._run(), name=f"procpipe-link:{self.name}"
        )
        self._pump.add_done_callback(self._pump_finished)
        logger.debug("Linked %s", self.name)
        return self

    async def _run(self) -> None:
        source, sink = self.source, self.sink
        try:
            while True:
                chunk = await source.read(self.chunk_size)
                if not chunk:
                    break
                sink.write(chunk)
                await sink.drain()
                self.bytes_copied += len(chunk)
        except _DOWNSTREAM_GONE:
            logger.debug("Downstream of %s closed its input", self.name)
            self._reason = self._reason or "downstream-closed"
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._report(exc)
        else:
            self._reason = self._reason or "eof"

    def _report(self, exc: BaseException) -> None:
        error = coerce_stage_error(
            StreamError,
            self.name,
            f"Piping failed: {type(exc).__name__}: {exc}",
            context={"bytes_copied": self.bytes_copied},
            cause=exc,
        )
        if self._on_error is not None:
            self._on_error(error)
        else:  # pragma: no cover - every owner installs a handler
            logger.warning("%s", error)

    def _pump_finished(self, _task: asyncio.Task[None]) -> None:
        self.unwire(close_sink=self.end or self._reason != "eof")

    def on_upstream_exit(self, returncode: int) -> None:
        logger.debug("Upstream of %s exited with %s", self.name, returncode)
        if self._pump is None or self._pump.done():
            self.unwire(close_sink=self.end)
        # Otherwise the pump is still draining; its completion unwires.

    def on_downstream_exit(self, returncode: int) -> None:
        logger.debug("Downstream of %s exited with %s", self.name, returncode)
        self._reason = self._reason or "downstream-exit"
        self.unwire()

    def unwire(self, *, close_sink: bool = True) -> bool:
        """Disconnect the link; return ``False`` when it already was."""

        if self.state is LinkState.DISCONNECTED:
            return False
        self.state = LinkState.DISCONNECTED

        if self._pump is not None and not self._pump.done():
            self._pump.cancel()
        if close_sink and not self.sink.is_closing():
            try:
                self.sink.close()
            except (OSError, RuntimeError) as exc:
                logger.debug("Closing sink of %s failed: %s", self.name, exc)
        if not self.source.at_eof() and self._release_source is not None:
            self._release_source()

        logger.debug(
            "Unwired %s (%s, %d bytes)", self.name, self._reason or "manual", self.bytes_copied
        )
        if self._on_unwire is not None:
            self._on_unwire(self)
        return True

    async def wait(self) -> None:
        if self._pump is not None:
            await asyncio.gather(self._pump, return_exceptions=True)

    def __repr__(self) -> str:
        return f"StreamLink({self.name!r}, {self.state.value})"
