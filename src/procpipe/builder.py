"""Chainable, lazily started pipelines.

Nothing is spawned while a chain is being declared::

    async def main():
        last = run("cat", ["notes.txt"]).pipe("grep", ["todo"]).pipe("wc", ["-l"])
        print((await last.stdout).decode())

:func:`run` schedules the start of its chain for the next loop iteration, so
the whole chain can be declared synchronously first.  Starting any stage
starts every stage of its chain, each exactly once, in one wave.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Coroutine, Mapping, Sequence
from typing import Any

from .aggregate import StderrAggregator, collect_into
from .channel import ErrorChannel
from .config import PipelineConfig, build_pipeline_config
from .errors import LifecycleError, PipelineError, RedirectionError, SpawnError, coerce_stage_error
from .link import StreamLink
from .logging_utils import PipelineTrace, RunStats
from .process import ProcessHandle, launch
from .redirection import resolve_stdio
from .stage import Channel, PathLike, Redirections, StageSpec
from .streams import InputSink, OutputStream

logger = logging.getLogger(__name__)

__all__ = ["Command", "run"]

Arguments = Sequence[PathLike] | PathLike


def _coerce_arguments(arguments: Arguments) -> tuple[str, ...]:
    if isinstance(arguments, (str, os.PathLike)):
        return (os.fspath(arguments),)
    return tuple(os.fspath(arg) for arg in arguments)


class _Chain:
    """Ordered pending starts of the commands piped together."""

    def __init__(self, loop: asyncio.AbstractEventLoop, config: PipelineConfig) -> None:
        self.loop = loop
        self.config = config
        self.commands: list[Command] = []
        self.triggered = False
        self.trace = PipelineTrace(config.run_id or "chain", config.trace_path)
        self._task: asyncio.Task[None] | None = None

    def append(self, command: Command) -> None:
        command._chain = self
        self.commands.append(command)

    def absorb(self, other: _Chain) -> None:
        for command in other.commands:
            self.append(command)
        other.commands = []

    def index(self, command: Command) -> int:
        return self.commands.index(command)

    def start(self) -> None:
        if self.triggered:
            return
        self.triggered = True
        logger.debug("Starting chain of %d stage(s)", len(self.commands))
        self._task = self.loop.create_task(self._start_all(), name="procpipe-chain")

    async def _start_all(self) -> None:
        commands = list(self.commands)
        # Every aggregator learns its contributors before anything can exit.
        for index, command in enumerate(commands):
            if command.redirections.stderr is None:
                targets = tuple(other._stderr for other in commands[index:])
                for target in targets:
                    target.register()
                command._stderr_targets = targets
        for command in commands:
            command._stderr.seal()

        # Downstream first: each input sink is consumed before its upstream writes.
        for command in reversed(commands):
            try:
                await command._launch()
            except Exception as exc:  # pragma: no cover - unexpected wiring bug
                error = coerce_stage_error(
                    PipelineError, command.name, f"Starting stage failed: {exc}", cause=exc
                )
                command._fail(error)
        self.trace.event(None, "chain_started", stages=len(commands))


class Command:
    """One stage of a lazily started chain.

    Streams exist from construction: ``stdin`` buffers writes until the
    process runs, ``stdout`` and ``stderr`` are awaitable to their full
    contents.  ``stderr`` carries this stage's stderr plus that of every
    upstream stage.  Errors are forwarded to the next stage downstream.
    """

    def __init__(
        self,
        command: PathLike,
        arguments: Arguments = (),
        *,
        config: PipelineConfig | Mapping[str, Any] | None = None,
        _chain: _Chain | None = None,
    ) -> None:
        loop = asyncio.get_running_loop()
        base = StageSpec.of(command, *_coerce_arguments(arguments))
        self.command = base.command
        self.arguments = base.arguments
        self.redirections = Redirections()
        self.handle: ProcessHandle | None = None
        self.link: StreamLink | None = None

        if _chain is None:
            _chain = _Chain(loop, build_pipeline_config(config))
        _chain.append(self)
        config = _chain.config

        self.stdin = InputSink(name=self.command, limit=config.stream_limit)
        self.stdout = OutputStream(name=f"{self.command}:stdout")
        self._stderr = StderrAggregator(
            name=f"{self.command}:stderr",
            chunk_size=config.chunk_size,
            on_close=lambda agg: self._chain.trace.event(None, "stderr_closed", name=agg.name),
        )
        self.stderr = self._stderr.output
        self.errors = ErrorChannel(self.command)
        self.started: asyncio.Future[bool] = loop.create_future()
        self.exit_code: asyncio.Future[int | None] = loop.create_future()

        self._upstream: Command | None = None
        self._downstream: Command | None = None
        self._end = True
        self._stderr_targets: tuple[StderrAggregator, ...] = ()
        self._tasks: set[asyncio.Task[Any]] = set()

    # -- declaration --------------------------------------------------------

    @property
    def name(self) -> str:
        return f"{self._chain.index(self) + 1}:{self.command}"

    @property
    def spec(self) -> StageSpec:
        return StageSpec(self.command, self.arguments, self.redirections)

    @property
    def chain(self) -> tuple[Command, ...]:
        return tuple(self._chain.commands)

    @property
    def config(self) -> PipelineConfig:
        return self._chain.config

    @property
    def stats(self) -> RunStats:
        return self._chain.trace.stats

    @property
    def is_started(self) -> bool:
        return self._chain.triggered

    def _check_not_started(self, method: str) -> None:
        if self._chain.triggered:
            raise LifecycleError(
                f"You cannot call {method} after process has started.",
                stage=self.command,
                context={"method": method},
            )

    def pipe(
        self,
        target: PathLike | Command,
        arguments: Arguments = (),
        *,
        end: bool = True,
    ) -> Command:
        """Feed this stage's stdout into ``target`` and return ``target``.

        With ``end=False`` the downstream input stays open after this stage's
        output ends.
        """

        self._check_not_started("pipe")
        if self._downstream is not None:
            raise LifecycleError(
                f"{self.command} is already piped to {self._downstream.command}",
                stage=self.command,
            )
        if isinstance(target, Command):
            target._check_not_started("pipe")
            if target._upstream is not None or target._chain is self._chain:
                raise LifecycleError(
                    f"{target.command} already has an upstream stage", stage=target.command
                )
            downstream = target
            self._chain.absorb(target._chain)
        else:
            downstream = Command(target, arguments, _chain=self._chain)

        self._downstream = downstream
        self._end = end
        downstream._upstream = self
        self.errors.forward_to(downstream.errors)
        logger.debug("%s piped to %s", self.command, downstream.command)
        return downstream

    def redirect_to(self, path: PathLike, channel: Channel | int) -> Command:
        self._check_not_started("redirect_to")
        self.redirections = self.redirections.with_target(channel, path)
        return self

    def input_from(self, path: PathLike) -> Command:
        self._check_not_started("input_from")
        self.redirections = self.redirections.with_target(Channel.STDIN, path)
        return self

    def output_to(self, path: PathLike) -> Command:
        self._check_not_started("output_to")
        self.redirections = self.redirections.with_target(Channel.STDOUT, path)
        return self

    def error_to(self, path: PathLike) -> Command:
        self._check_not_started("error_to")
        self.redirections = self.redirections.with_target(Channel.STDERR, path)
        return self

    # -- running ------------------------------------------------------------

    def start(self) -> Command:
        """Start every stage of this chain (no-op if already triggered)."""
        self._chain.start()
        return self

    async def wait(self) -> int | None:
        return await asyncio.shield(self.exit_code)

    def add_exit_callback(self, callback: Callable[[int | None], None]) -> None:
        def _invoke(future: asyncio.Future[int | None]) -> None:
            if not future.cancelled():
                callback(future.result())

        self.exit_code.add_done_callback(_invoke)

    def _spawn_task(self, coro: Coroutine[Any, Any, None], label: str) -> None:
        task = asyncio.get_running_loop().create_task(coro, name=f"procpipe-{label}:{self.name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _launch(self) -> None:
        chain = self._chain
        config = chain.config
        trace = chain.trace
        spec = self.spec
        name = self.name
        downstream = self._downstream
        trace.stats.record(name, spec.argv)

        try:
            with resolve_stdio(
                spec,
                attach_terminal=config.attach_terminal,
                first=self._upstream is None,
                last=downstream is None,
                stage=name,
            ) as stdio:
                handle = await launch(spec, stdio, name=name, config=config)
        except (SpawnError, RedirectionError) as exc:
            trace.stage_failed(name, exc)
            self._fail(exc)
            return

        self.handle = handle
        trace.stats.mark_spawned(name, handle.pid)
        trace.event(name, "spawn", pid=handle.pid, argv=spec.argv)
        handle.add_exit_callback(self._on_exit)

        if handle.stdin is not None:
            self._spawn_task(self.stdin.forward(handle.stdin), "stdin")
        else:
            self.stdin.abort()

        if handle.stdout is not None:
            sink = downstream.stdin if downstream is not None else self.stdout
            self.link = StreamLink(
                handle.stdout,
                sink,
                name=f"{name}->{downstream.name}" if downstream is not None else f"{name}->stdout",
                end=self._end if downstream is not None else True,
                release_source=handle.close_stdout,
                on_error=self.errors.report,
                on_unwire=self._unwired,
                chunk_size=config.chunk_size,
            ).connect()
            handle.add_exit_callback(self.link.on_upstream_exit)
            if downstream is not None:
                downstream.add_exit_callback(self.link.on_downstream_exit)
        elif downstream is not None:
            downstream.stdin.close()

        if downstream is not None:
            # Output went downstream; this stage's own stdout just ends.
            handle.add_exit_callback(lambda _code: self.stdout.close())
        elif handle.stdout is None:
            self.stdout.close()

        if handle.stderr is not None and self._stderr_targets:
            self._spawn_task(
                collect_into(
                    handle.stderr,
                    self._stderr_targets,
                    name=name,
                    exited=handle.exit_status,
                    on_error=self.errors.report,
                    chunk_size=config.chunk_size,
                ),
                "stderr",
            )
        elif self._stderr_targets:
            # stderr inherited or otherwise absent: nothing to contribute.
            self._release_stderr()

        self.started.set_result(True)

    def _unwired(self, link: StreamLink) -> None:
        trace = self._chain.trace
        trace.stats.unwired_links += 1
        trace.event(link.name, "unwire", reason=link.reason, bytes=link.bytes_copied)

    def _on_exit(self, returncode: int) -> None:
        if self.handle is not None:
            self._chain.trace.stage_exited(self.name, returncode, self.handle.elapsed_ms)
        self.stdin.abort()
        if not self.exit_code.done():
            self.exit_code.set_result(returncode)

    def _release_stderr(self) -> None:
        targets, self._stderr_targets = self._stderr_targets, ()
        for target in targets:
            target.release()

    def _fail(self, error: PipelineError) -> None:
        self.errors.report(error)
        if not self.started.done():
            self.started.set_result(False)
        if not self.exit_code.done():
            self.exit_code.set_result(None)
        self.stdin.abort()
        self.stdout.close()
        self._release_stderr()
        if self._downstream is not None:
            self._downstream.stdin.close()

    def __repr__(self) -> str:
        state = "started" if self.started.done() else ("starting" if self.is_started else "pending")
        return f"Command({self.spec.display()!r}, {state})"


def run(
    command: PathLike,
    arguments: Arguments = (),
    *,
    config: PipelineConfig | Mapping[str, Any] | None = None,
) -> Command:
    """Declare the first stage of a chain and schedule the chain's start.

    Must be called from a coroutine; the start runs on the next loop
    iteration, after the caller finished piping.
    """

    root = Command(command, arguments, config=config)
    asyncio.get_running_loop().call_soon(root.start)
    return root
