"""Configuration defaults for procpipe pipelines and builder chains."""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import asdict, dataclass
from dataclasses import fields as dataclass_fields
from pathlib import Path
from typing import Any

from .errors import ConfigurationError

__all__ = ["PipelineConfig", "build_pipeline_config", "DEFAULT_CHUNK_SIZE", "DEFAULT_STREAM_LIMIT"]

DEFAULT_CHUNK_SIZE = 64 * 1024
# Same as asyncio's own StreamReader default.
DEFAULT_STREAM_LIMIT = 64 * 1024


def _ensure_numeric_range(
    name: str,
    value: float,
    *,
    ge: float | None = None,
    gt: float | None = None,
    le: float | None = None,
    lt: float | None = None,
) -> None:
    """Validate numeric range constraints for configuration fields."""

    if ge is not None and value < ge:
        raise ValueError(f"{name} must be >= {ge}")
    if gt is not None and value <= gt:
        raise ValueError(f"{name} must be > {gt}")
    if le is not None and value > le:
        raise ValueError(f"{name} must be <= {le}")
    if lt is not None and value >= lt:
        raise ValueError(f"{name} must be < {lt}")


def _coerce_optional_path(value: Path | str | None) -> Path | None:
    if value is None:
        return None
    return Path(value)


@dataclass(slots=True)
class PipelineConfig:
    """Validated configuration shared by every stage of a pipeline."""

    # Inherit the caller's stdin for the first stage and stdout for the last
    # one instead of creating pipes (unless those channels are redirected).
    attach_terminal: bool = False
    chunk_size: int = DEFAULT_CHUNK_SIZE
    stream_limit: int = DEFAULT_STREAM_LIMIT
    env: Mapping[str, str] | None = None
    cwd: Path | None = None
    trace_path: Path | None = None
    run_id: str | None = None
    # Replaces the built-in spawn; awaited as spawner(spec, stdio, name=..., config=...)
    # and expected to return a ProcessHandle.
    spawner: Callable[..., Awaitable[Any]] | None = None

    def __post_init__(self) -> None:  # noqa: D401 - dataclass validation helper
        """Validate and normalise configuration fields."""

        self.attach_terminal = bool(self.attach_terminal)
        self.chunk_size = int(self.chunk_size)
        self.stream_limit = int(self.stream_limit)
        _ensure_numeric_range("chunk_size", self.chunk_size, gt=0)
        _ensure_numeric_range("stream_limit", self.stream_limit, ge=1024)
        self.cwd = _coerce_optional_path(self.cwd)
        self.trace_path = _coerce_optional_path(self.trace_path)
        if self.env is not None:
            self.env = {str(key): str(value) for key, value in self.env.items()}
        if self.spawner is not None and not callable(self.spawner):
            raise TypeError("spawner must be callable")
        if not self.run_id:
            self.run_id = uuid.uuid4().hex[:8]

    def model_dump(self) -> dict[str, Any]:
        return asdict(self)


def build_pipeline_config(
    overrides: Mapping[str, Any] | PipelineConfig | None = None,
) -> PipelineConfig:
    """Return a validated configuration merged with ``overrides``."""

    if isinstance(overrides, PipelineConfig):
        return overrides
    if not overrides:
        return PipelineConfig()

    known = {item.name for item in dataclass_fields(PipelineConfig)}
    merged: dict[str, Any] = {}
    for key, value in overrides.items():
        if key not in known:
            raise ConfigurationError(
                f"Unknown configuration key: {key}", context={"key": key}
            )
        if value is None:
            continue
        merged[key] = value

    try:
        return PipelineConfig(**merged)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(str(exc), context=dict(merged), cause=exc) from exc
