"""Fan-in of stage stderr streams into one merged output."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

from .config import DEFAULT_CHUNK_SIZE
from .errors import PipelineError, StreamError, coerce_stage_error
from .streams import OutputStream

logger = logging.getLogger(__name__)

__all__ = ["StderrAggregator", "collect_into"]


class StderrAggregator:
    """Merged stderr of several contributors.

    Chunks are passed through in arrival order; there is no ordering across
    contributors beyond what the scheduler delivers.  The output closes
    once, after :meth:`seal` was called and every registered contributor
    was released.
    """

    def __init__(
        self,
        *,
        name: str = "stderr",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        on_close: Callable[[StderrAggregator], None] | None = None,
    ) -> None:
        self.name = name
        self.chunk_size = chunk_size
        self._on_close = on_close
        self.output = OutputStream(name=name)
        self._open = 0
        self._sealed = False
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return self._open

    @property
    def sealed(self) -> bool:
        return self._sealed

    @property
    def closed(self) -> bool:
        return self.output.is_closing()

    def register(self) -> None:
        if self.closed:
            raise RuntimeError(f"{self.name} is already closed")
        self._open += 1

    def release(self) -> None:
        self._open -= 1
        self._maybe_close()

    def seal(self) -> None:
        """No more contributors will register."""
        self._sealed = True
        self._maybe_close()

    def feed(self, data: bytes) -> None:
        if not self.closed:
            self.output.write(data)

    def _maybe_close(self) -> None:
        if self._sealed and self._open <= 0 and not self.closed:
            logger.debug("Closing %s", self.name)
            self.output.close()
            if self._on_close is not None:
                self._on_close(self)

    def attach(
        self,
        source: asyncio.StreamReader,
        *,
        name: str,
        exited: Awaitable[object] | None = None,
        on_error: Callable[[PipelineError], None] | None = None,
    ) -> asyncio.Task[None]:
        """Register ``source`` and start copying it into the output."""

        self.register()
        task = asyncio.get_running_loop().create_task(
            collect_into(
                source,
                (self,),
                name=name,
                exited=exited,
                on_error=on_error,
                chunk_size=self.chunk_size,
            ),
            name=f"procpipe-stderr:{name}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


async def collect_into(
    source: asyncio.StreamReader,
    targets: Sequence[StderrAggregator],
    *,
    name: str,
    exited: Awaitable[object] | None = None,
    on_error: Callable[[PipelineError], None] | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> None:
    """Copy ``source`` into every target, then release each of them.

    The targets must already count this contributor.  Release happens once
    ``source`` hit EOF and ``exited`` resolved, so nothing is cut short while
    the process could still write.
    """

    try:
        while True:
            chunk = await source.read(chunk_size)
            if not chunk:
                break
            for target in targets:
                target.feed(chunk)
        if exited is not None:
            await asyncio.shield(exited)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        error = coerce_stage_error(
            StreamError,
            name,
            f"Reading stderr failed: {type(exc).__name__}: {exc}",
            cause=exc,
        )
        if on_error is not None:
            on_error(error)
        else:  # pragma: no cover - every owner installs a handler
            logger.warning("%s", error)
    finally:
        for target in targets:
            target.release()
