"""Stage declarations: one command, its arguments and its redirections."""

from __future__ import annotations

import os
import shlex
from collections.abc import Sequence
from dataclasses import dataclass, replace
from enum import IntEnum
from pathlib import Path
from typing import Any

from .errors import ConfigurationError

__all__ = ["Channel", "Redirections", "StageSpec", "PathLike"]

PathLike = str | os.PathLike


class Channel(IntEnum):
    """Standard stream numbers, usable wherever a channel index is expected."""

    STDIN = 0
    STDOUT = 1
    STDERR = 2


def _coerce_path(value: PathLike | None) -> Path | None:
    if value is None:
        return None
    return Path(os.fspath(value))


@dataclass(slots=True, frozen=True)
class Redirections:
    """File targets replacing a stage's standard stream pipes."""

    stdin: Path | None = None
    stdout: Path | None = None
    stderr: Path | None = None

    def get(self, channel: Channel | int) -> Path | None:
        return getattr(self, Channel(channel).name.lower())

    def with_target(self, channel: Channel | int, path: PathLike | None) -> Redirections:
        return replace(self, **{Channel(channel).name.lower(): _coerce_path(path)})

    def __bool__(self) -> bool:
        return any(target is not None for target in (self.stdin, self.stdout, self.stderr))


@dataclass(slots=True, frozen=True)
class StageSpec:
    """An already-tokenized command; never a shell string."""

    command: str
    arguments: tuple[str, ...] = ()
    redirections: Redirections = Redirections()

    def __post_init__(self) -> None:
        if not isinstance(self.command, str) or not self.command:
            raise ConfigurationError(
                "Stage command must be a non-empty string",
                context={"command": repr(self.command)},
            )
        bad = [arg for arg in self.arguments if not isinstance(arg, str)]
        if bad:
            raise ConfigurationError(
                "Stage arguments must be strings",
                context={"command": self.command, "arguments": [repr(arg) for arg in bad]},
            )

    @classmethod
    def of(
        cls,
        command: PathLike,
        *arguments: PathLike,
        stdin: PathLike | None = None,
        stdout: PathLike | None = None,
        stderr: PathLike | None = None,
    ) -> StageSpec:
        return cls(
            command=os.fspath(command),
            arguments=tuple(os.fspath(arg) for arg in arguments),
            redirections=Redirections(
                stdin=_coerce_path(stdin),
                stdout=_coerce_path(stdout),
                stderr=_coerce_path(stderr),
            ),
        )

    @classmethod
    def coerce(cls, value: Any) -> StageSpec:
        """Accept a ``StageSpec`` or a ``[command, *arguments]`` sequence."""

        if isinstance(value, StageSpec):
            return value
        if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
            raise ConfigurationError(
                "A stage must be a StageSpec or a sequence of command tokens",
                context={"value": repr(value)},
            )
        if not value:
            raise ConfigurationError("A stage needs at least a command")
        tokens: list[str] = []
        for item in value:
            if isinstance(item, (str, os.PathLike)):
                tokens.append(os.fspath(item))
            else:
                raise ConfigurationError(
                    "Stage tokens must be strings or paths",
                    context={"value": repr(value), "token": repr(item)},
                )
        return cls(command=tokens[0], arguments=tuple(tokens[1:]))

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.arguments]

    def display(self) -> str:
        text = shlex.join(self.argv)
        targets = (
            ("<", self.redirections.stdin),
            (">", self.redirections.stdout),
            ("2>", self.redirections.stderr),
        )
        for symbol, target in targets:
            if target is not None:
                text += f" {symbol} {shlex.quote(str(target))}"
        return text
