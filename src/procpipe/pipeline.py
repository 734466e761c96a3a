"""Eager pipelines: spawn every stage now and publish one composite result.

Stages are spawned in declaration order.  Each successfully spawned stage is
linked to the previous successfully spawned one, so a command that cannot be
started is dropped from the chain instead of aborting it::

    result = await pipeline(["cat", "notes.txt"], ["grep", "todo"], ["wc", "-l"])
    print((await result.stdout).decode())
    print(await result.wait())
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .aggregate import StderrAggregator
from .channel import ErrorChannel
from .config import PipelineConfig, build_pipeline_config
from .errors import AggregateError, ConfigurationError, RedirectionError, SpawnError
from .link import StreamLink
from .logging_utils import PipelineTrace, RunStats
from .process import ProcessHandle, launch
from .redirection import resolve_stdio
from .stage import StageSpec
from .streams import OutputStream

logger = logging.getLogger(__name__)

__all__ = ["CompositeResult", "Pipeline", "pipeline"]


@dataclass(slots=True)
class CompositeResult:
    """The whole pipeline seen as a single process."""

    stdin: asyncio.StreamWriter | None
    stdout: OutputStream
    stderr: OutputStream
    exit_status: asyncio.Future[int | None]
    errors: ErrorChannel
    stages: tuple[ProcessHandle, ...] = ()
    links: tuple[StreamLink, ...] = ()
    stats: RunStats | None = None
    aggregator: StderrAggregator | None = field(default=None, repr=False)

    async def wait(self) -> int | None:
        """Return the exit status of the last surviving stage."""
        return await asyncio.shield(self.exit_status)

    @property
    def returncode(self) -> int | None:
        if self.exit_status.done():
            return self.exit_status.result()
        return None


class Pipeline:
    """Spawn-all-now construction of a process chain."""

    def __init__(
        self,
        stages: Iterable[StageSpec | Any],
        config: PipelineConfig | Mapping[str, Any] | None = None,
    ) -> None:
        self.specs = tuple(StageSpec.coerce(stage) for stage in stages)
        if not self.specs:
            raise ConfigurationError("A pipeline needs at least one stage")
        self.config = build_pipeline_config(config)
        self.trace = PipelineTrace(self.config.run_id or "pipeline", self.config.trace_path)
        self.errors = ErrorChannel(f"pipeline:{self.trace.run_id}")

    def _stage_name(self, index: int, spec: StageSpec) -> str:
        return f"{index + 1}:{spec.command}"

    async def build(self) -> CompositeResult:
        loop = asyncio.get_running_loop()
        config = self.config
        trace = self.trace
        errors = self.errors
        aggregator = StderrAggregator(
            name=f"stderr:{trace.run_id}",
            chunk_size=config.chunk_size,
            on_close=lambda agg: trace.event(None, "stderr_closed", name=agg.name),
        )
        handles: list[ProcessHandle] = []
        links: list[StreamLink] = []
        stdin: asyncio.StreamWriter | None = None
        previous: ProcessHandle | None = None
        total = len(self.specs)

        for index, spec in enumerate(self.specs):
            name = self._stage_name(index, spec)
            trace.stats.record(name, spec.argv)
            try:
                with resolve_stdio(
                    spec,
                    attach_terminal=config.attach_terminal,
                    first=index == 0,
                    last=index == total - 1,
                    stage=name,
                ) as stdio:
                    handle = await launch(spec, stdio, name=name, config=config)
            except (SpawnError, RedirectionError) as exc:
                trace.stage_failed(name, exc)
                errors.report(exc)
                continue

            handles.append(handle)
            trace.stats.mark_spawned(name, handle.pid)
            trace.event(name, "spawn", pid=handle.pid, argv=spec.argv)
            handle.add_exit_callback(
                lambda code, handle=handle: trace.stage_exited(handle.name, code, handle.elapsed_ms)
            )

            if handle.stderr is not None:
                aggregator.attach(
                    handle.stderr,
                    name=name,
                    exited=handle.exit_status,
                    on_error=errors.report,
                )

            if index == 0:
                stdin = handle.stdin
            elif previous is None and handle.stdin is not None:
                # Nothing upstream survived and the caller has no sink to write to.
                handle.stdin.close()

            if previous is not None:
                link = self._link(previous, handle)
                if link is not None:
                    links.append(link)
            previous = handle

        aggregator.seal()

        if previous is None:
            error = AggregateError(
                "No stage of the pipeline could be started",
                context={"stages": [spec.display() for spec in self.specs]},
            )
            trace.event(None, "aggregate_failure", stages=total)
            errors.report(error)
            exit_status: asyncio.Future[int | None] = loop.create_future()
            exit_status.set_result(None)
            return CompositeResult(
                stdin=None,
                stdout=OutputStream.empty(name="stdout"),
                stderr=aggregator.output,
                exit_status=exit_status,
                errors=errors,
                stats=trace.stats,
                aggregator=aggregator,
            )

        stdout = (
            OutputStream(previous.stdout, name="stdout")
            if previous.stdout is not None
            else OutputStream.empty(name="stdout")
        )
        return CompositeResult(
            stdin=stdin,
            stdout=stdout,
            stderr=aggregator.output,
            exit_status=previous.exit_status,  # type: ignore[arg-type]
            errors=errors,
            stages=tuple(handles),
            links=tuple(links),
            stats=trace.stats,
            aggregator=aggregator,
        )

    def _link(self, upstream: ProcessHandle, downstream: ProcessHandle) -> StreamLink | None:
        """Wire ``upstream`` stdout into ``downstream`` stdin, if both exist."""

        trace = self.trace
        if upstream.stdout is None:
            if downstream.stdin is not None:
                downstream.stdin.close()
            return None
        if downstream.stdin is None:
            # Downstream reads a file instead: the upstream gets a broken pipe.
            upstream.close_stdout()
            return None

        name = f"{upstream.name}->{downstream.name}"

        def _unwired(link: StreamLink) -> None:
            trace.stats.unwired_links += 1
            trace.event(name, "unwire", reason=link.reason, bytes=link.bytes_copied)

        link = StreamLink(
            upstream.stdout,
            downstream.stdin,
            name=name,
            release_source=upstream.close_stdout,
            on_error=self.errors.report,
            on_unwire=_unwired,
            chunk_size=self.config.chunk_size,
        )
        link.connect()
        upstream.add_exit_callback(link.on_upstream_exit)
        downstream.add_exit_callback(link.on_downstream_exit)
        trace.event(name, "link")
        return link


async def pipeline(
    *stages: StageSpec | Any,
    config: PipelineConfig | Mapping[str, Any] | None = None,
) -> CompositeResult:
    """Spawn ``stages`` as one pipeline and return its composite result.

    Each stage is a :class:`StageSpec` or an already-tokenized
    ``[command, *arguments]`` sequence.
    """

    return await Pipeline(stages, config).build()
