"""Single error-reporting channel shared by the stages of a pipeline."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterator

from .errors import PipelineError

logger = logging.getLogger(__name__)

__all__ = ["ErrorChannel", "ErrorCallback"]

ErrorCallback = Callable[[PipelineError], None]


class ErrorChannel:
    """Ordered record of asynchronous pipeline errors.

    Errors are stored, handed to subscribers and, when :meth:`forward_to`
    was used, reported again on the next channel.  Nothing is raised: a
    caller that never looks at the channel simply does not see failures.
    """

    def __init__(self, name: str = "pipeline") -> None:
        self.name = name
        self._errors: list[PipelineError] = []
        self._subscribers: list[ErrorCallback] = []
        self._waiters: list[asyncio.Future[PipelineError]] = []
        self._forward: ErrorChannel | None = None

    def report(self, error: PipelineError) -> None:
        self._errors.append(error)
        logger.debug("%s: %s", self.name, error)
        for waiter in self._waiters:
            if not waiter.done():
                waiter.set_result(error)
        self._waiters.clear()
        for callback in list(self._subscribers):
            try:
                callback(error)
            except Exception:  # subscriber bugs must not break the pipeline
                logger.exception("Error subscriber on %s failed", self.name)
        if self._forward is not None:
            self._forward.report(error)

    def subscribe(self, callback: ErrorCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def forward_to(self, other: ErrorChannel) -> None:
        if other is self:
            raise ValueError("an error channel cannot forward to itself")
        self._forward = other

    async def next(self) -> PipelineError:
        """Wait for the next error reported after this call."""
        waiter: asyncio.Future[PipelineError] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        return await waiter

    @property
    def errors(self) -> tuple[PipelineError, ...]:
        return tuple(self._errors)

    def of_type(self, kind: type[PipelineError]) -> list[PipelineError]:
        return [error for error in self._errors if isinstance(error, kind)]

    def __len__(self) -> int:
        return len(self._errors)

    def __iter__(self) -> Iterator[PipelineError]:
        return iter(tuple(self._errors))

    def __bool__(self) -> bool:
        return bool(self._errors)

    def __repr__(self) -> str:
        return f"ErrorChannel({self.name!r}, errors={len(self._errors)})"
