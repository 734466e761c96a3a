"""Unified error types for procpipe.

Failures inside a running pipeline happen on the event loop, long after the
caller's ``build()`` or ``run()`` returned.  They are therefore delivered as
values on an :class:`~procpipe.channel.ErrorChannel` instead of being raised.
This module provides the compact hierarchy those values share: every error
carries the stage it belongs to and a serialisable context payload so that
callers (CLI, tests, services) can render actionable messages.

Only :class:`LifecycleError` and :class:`ConfigurationError` are raised
synchronously; they describe programming mistakes made by the caller.
"""

from __future__ import annotations

from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from typing import Any

__all__ = [
    "PipelineError",
    "SpawnError",
    "StreamError",
    "LifecycleError",
    "AggregateError",
    "RedirectionError",
    "ConfigurationError",
    "attach_context",
    "coerce_stage_error",
]


@dataclass(slots=True)
class PipelineError(RuntimeError):
    """Base class for pipeline level failures.

    Attributes
    ----------
    message:
        Human readable description of the failure.
    stage:
        Stage label such as ``"2:grep"`` (``None`` for pipeline wide issues).
    context:
        JSON serialisable dictionary with granular diagnostics (command,
        arguments, errno, path...).
    cause:
        Underlying exception (kept for debugging, not included in ``__str__``).
    """

    message: str
    stage: str | None = None
    context: MutableMapping[str, Any] = field(default_factory=dict)
    cause: BaseException | None = None

    def __post_init__(self) -> None:  # pragma: no cover - defensive programming
        if self.context is None:
            self.context = {}

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self.message}"
        return self.message


class SpawnError(PipelineError):
    """A stage could not be started (command not found, exec failure)."""


class StreamError(PipelineError):
    """I/O failed on a stage's stdin, stdout or stderr."""


class LifecycleError(PipelineError):
    """A stage was reconfigured after it had been started."""


class AggregateError(PipelineError):
    """No stage of the pipeline could be started."""


class RedirectionError(PipelineError):
    """A redirection target could not be opened."""


class ConfigurationError(PipelineError):
    """Raised when configuration or stage declarations are invalid."""


def attach_context(
    error: PipelineError,
    context: Mapping[str, Any] | None,
) -> PipelineError:
    """Merge ``context`` into ``error.context`` preserving existing keys."""

    if not context:
        return error
    for key, value in context.items():
        error.context.setdefault(key, value)
    return error


def coerce_stage_error(
    kind: type[PipelineError],
    stage: str | None,
    message: str,
    *,
    context: Mapping[str, Any] | None = None,
    cause: BaseException | None = None,
) -> PipelineError:
    """Create an error of type ``kind`` with a rich context payload."""

    payload: MutableMapping[str, Any] = {}
    if context:
        payload.update(context)
    if cause is not None:
        payload.setdefault("cause", repr(cause))
        errno = getattr(cause, "errno", None)
        if errno is not None:
            payload.setdefault("errno", errno)
    return kind(message=message, stage=stage, context=payload, cause=cause)
