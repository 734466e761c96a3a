"""Spawning one stage as an OS process."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from asyncio import subprocess as aio_subprocess
from collections.abc import Callable

from .config import PipelineConfig
from .errors import SpawnError, coerce_stage_error
from .redirection import StdioConfig
from .stage import StageSpec

logger = logging.getLogger(__name__)

__all__ = ["ProcessHandle", "ExitCallback", "launch", "spawn"]

ExitCallback = Callable[[int], None]


class _StageProtocol(aio_subprocess.SubprocessStreamProtocol):
    """Stream protocol that reports the moment the process exits.

    ``Process.wait()`` only returns once every pipe is closed as well; the
    link teardown needs the exit itself.
    """

    def __init__(self, limit: int, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__(limit=limit, loop=loop)
        self.exited: asyncio.Future[int] = loop.create_future()
        self._subprocess_transport: asyncio.SubprocessTransport | None = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        super().connection_made(transport)
        self._subprocess_transport = transport  # type: ignore[assignment]

    def process_exited(self) -> None:
        returncode = None
        if self._subprocess_transport is not None:
            returncode = self._subprocess_transport.get_returncode()
        super().process_exited()
        if not self.exited.done():
            self.exited.set_result(returncode if returncode is not None else -1)


class ProcessHandle:
    """One spawned stage.

    ``stdin``/``stdout``/``stderr`` are ``None`` for channels that were
    redirected or inherited.  ``exit_status`` resolves to the return code as
    soon as the process exits (negative signal number when killed).
    """

    def __init__(
        self,
        spec: StageSpec,
        name: str,
        process: aio_subprocess.Process,
        transport: asyncio.SubprocessTransport,
        exited: asyncio.Future[int],
    ) -> None:
        self.spec = spec
        self.name = name
        self.process = process
        self.transport = transport
        self.exit_status = exited
        self.started_at = time.monotonic()
        self.exited_at: float | None = None
        exited.add_done_callback(self._mark_exited)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def stdin(self) -> asyncio.StreamWriter | None:
        return self.process.stdin

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self.process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self.process.stderr

    @property
    def returncode(self) -> int | None:
        if self.exit_status.done():
            return self.exit_status.result()
        return None

    @property
    def elapsed_ms(self) -> float:
        end = self.exited_at if self.exited_at is not None else time.monotonic()
        return (end - self.started_at) * 1000.0

    def _mark_exited(self, _future: asyncio.Future[int]) -> None:
        self.exited_at = time.monotonic()

    def add_exit_callback(self, callback: ExitCallback) -> None:
        """Call ``callback(returncode)`` once, even if the process already exited."""

        def _invoke(future: asyncio.Future[int]) -> None:
            if future.cancelled():
                return
            callback(future.result())

        self.exit_status.add_done_callback(_invoke)

    def close_stdout(self) -> None:
        """Close our read end of the stdout pipe; the process gets EPIPE."""
        pipe = self.transport.get_pipe_transport(1)
        if pipe is not None and not pipe.is_closing():
            pipe.close()

    async def wait(self) -> int:
        return await asyncio.shield(self.exit_status)

    def __repr__(self) -> str:
        return f"ProcessHandle({self.name!r}, pid={self.pid}, returncode={self.returncode})"


async def spawn(
    spec: StageSpec,
    stdio: StdioConfig,
    *,
    name: str,
    config: PipelineConfig | None = None,
) -> ProcessHandle:
    """Start ``spec`` with the resolved ``stdio``; raise :class:`SpawnError` on failure."""

    config = config or PipelineConfig()
    loop = asyncio.get_running_loop()
    env = None
    if config.env is not None:
        env = {**os.environ, **config.env}

    try:
        transport, protocol = await loop.subprocess_exec(
            lambda: _StageProtocol(limit=config.stream_limit, loop=loop),
            spec.command,
            *spec.arguments,
            cwd=config.cwd,
            env=env,
            **stdio.as_kwargs(),
        )
    except OSError as exc:
        raise coerce_stage_error(
            SpawnError,
            name,
            f"Cannot start {spec.command!r}: {exc.strerror or exc}",
            context={"command": spec.command, "arguments": list(spec.arguments)},
            cause=exc,
        ) from exc
    except (TypeError, ValueError) as exc:
        raise coerce_stage_error(
            SpawnError,
            name,
            f"Invalid spawn arguments for {spec.command!r}: {exc}",
            context={"command": spec.command, "arguments": list(spec.arguments)},
            cause=exc,
        ) from exc

    process = aio_subprocess.Process(transport, protocol, loop)
    handle = ProcessHandle(spec, name, process, transport, protocol.exited)
    logger.debug("Spawned %s (pid %s): %s", name, handle.pid, spec.display())
    return handle


async def launch(
    spec: StageSpec,
    stdio: StdioConfig,
    *,
    name: str,
    config: PipelineConfig | None = None,
) -> ProcessHandle:
    """Spawn through ``config.spawner`` when one is set, else :func:`spawn`.

    A custom spawner takes the same arguments as :func:`spawn`.  Its
    ``OSError``/``TypeError``/``ValueError`` failures are reported as
    :class:`SpawnError` like those of the built-in one.
    """

    config = config or PipelineConfig()
    if config.spawner is None:
        return await spawn(spec, stdio, name=name, config=config)

    try:
        handle = await config.spawner(spec, stdio, name=name, config=config)
    except SpawnError:
        raise
    except (OSError, TypeError, ValueError) as exc:
        raise coerce_stage_error(
            SpawnError,
            name,
            f"Custom spawner failed for {spec.command!r}: {exc}",
            context={"command": spec.command, "arguments": list(spec.arguments)},
            cause=exc,
        ) from exc
    if not isinstance(handle, ProcessHandle):
        raise SpawnError(
            f"Custom spawner returned {type(handle).__name__}, not a ProcessHandle",
            stage=name,
            context={"command": spec.command},
        )
    return handle
