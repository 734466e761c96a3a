"""
procpipe: build shell-like process pipelines without a shell.

Two front ends share one wiring engine: :func:`pipeline` spawns every stage
immediately and returns a :class:`CompositeResult`; :func:`run` declares a
lazily started chain of :class:`Command` stages.
"""

__version__ = "0.3.0"

from .builder import Command, run
from .channel import ErrorChannel
from .config import PipelineConfig, build_pipeline_config
from .errors import (
    AggregateError,
    ConfigurationError,
    LifecycleError,
    PipelineError,
    RedirectionError,
    SpawnError,
    StreamError,
)
from .pipeline import CompositeResult, Pipeline, pipeline
from .process import ProcessHandle, spawn
from .stage import Channel, Redirections, StageSpec
from .streams import InputSink, OutputStream

__all__ = [
    "__version__",
    "AggregateError",
    "Channel",
    "Command",
    "CompositeResult",
    "ConfigurationError",
    "ErrorChannel",
    "InputSink",
    "LifecycleError",
    "OutputStream",
    "Pipeline",
    "PipelineConfig",
    "PipelineError",
    "ProcessHandle",
    "Redirections",
    "RedirectionError",
    "SpawnError",
    "StageSpec",
    "StreamError",
    "build_pipeline_config",
    "pipeline",
    "run",
    "spawn",
]
