"""Map declared redirections to concrete stdio descriptors before spawning."""

from __future__ import annotations

import logging
import os
from asyncio import subprocess as aio_subprocess
from dataclasses import dataclass, field
from pathlib import Path
from types import TracebackType
from typing import Any

from .errors import RedirectionError, coerce_stage_error
from .stage import PathLike, StageSpec

logger = logging.getLogger(__name__)

__all__ = ["StdioConfig", "open_for_read", "open_for_write", "resolve_stdio"]

_WRITE_FLAGS = os.O_WRONLY | os.O_CREAT | os.O_TRUNC
_CLOEXEC = getattr(os, "O_CLOEXEC", 0)


def _open(path: PathLike, flags: int, mode: str, stage: str | None) -> int:
    target = Path(os.fspath(path))
    try:
        fd = os.open(target, flags | _CLOEXEC, 0o666)
    except OSError as exc:
        raise coerce_stage_error(
            RedirectionError,
            stage,
            f"Cannot open {target} for {mode}: {exc.strerror or exc}",
            context={"path": str(target), "mode": mode},
            cause=exc,
        ) from exc
    logger.debug("Opened %s for %s as fd %d", target, mode, fd)
    return fd


def open_for_read(path: PathLike, *, stage: str | None = None) -> int:
    return _open(path, os.O_RDONLY, "read", stage)


def open_for_write(path: PathLike, *, stage: str | None = None) -> int:
    return _open(path, _WRITE_FLAGS, "write", stage)


@dataclass(slots=True)
class StdioConfig:
    """Per-channel spawn arguments plus the descriptors opened for them.

    Each channel is ``asyncio.subprocess.PIPE``, ``None`` (inherit the
    caller's stream) or an open file descriptor.  Leaving the context closes
    the parent's copies of the opened descriptors; the child keeps its own.
    """

    stdin: Any = aio_subprocess.PIPE
    stdout: Any = aio_subprocess.PIPE
    stderr: Any = aio_subprocess.PIPE
    opened: list[int] = field(default_factory=list)

    def close(self) -> None:
        while self.opened:
            fd = self.opened.pop()
            try:
                os.close(fd)
            except OSError:  # pragma: no cover - already closed
                logger.debug("Descriptor %d was already closed", fd)

    def __enter__(self) -> StdioConfig:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def as_kwargs(self) -> dict[str, Any]:
        return {"stdin": self.stdin, "stdout": self.stdout, "stderr": self.stderr}


def resolve_stdio(
    spec: StageSpec,
    *,
    attach_terminal: bool = False,
    first: bool = False,
    last: bool = False,
    stage: str | None = None,
) -> StdioConfig:
    """Return the stdio configuration for ``spec``.

    Raises :class:`RedirectionError` when a target cannot be opened, after
    closing whatever was already opened for the same stage.
    """

    stdio = StdioConfig()
    if attach_terminal and first:
        stdio.stdin = None
    if attach_terminal and last:
        stdio.stdout = None

    redirections = spec.redirections
    try:
        if redirections.stdin is not None:
            stdio.stdin = open_for_read(redirections.stdin, stage=stage)
            stdio.opened.append(stdio.stdin)
        if redirections.stdout is not None:
            stdio.stdout = open_for_write(redirections.stdout, stage=stage)
            stdio.opened.append(stdio.stdout)
        if redirections.stderr is not None:
            stdio.stderr = open_for_write(redirections.stderr, stage=stage)
            stdio.opened.append(stdio.stderr)
    except RedirectionError:
        stdio.close()
        raise
    return stdio
