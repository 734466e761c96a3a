from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger("procpipe")


def _make_json_safe(obj: Any) -> Any:
    """Recursively convert values into JSON-serialisable types."""
    if isinstance(obj, Path):
        return obj.as_posix()
    if isinstance(obj, bytes):
        return obj.decode("utf-8", errors="replace")
    if isinstance(obj, BaseException):
        return f"{type(obj).__name__}: {obj}"
    if isinstance(obj, dict):
        return {str(key): _make_json_safe(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [_make_json_safe(value) for value in obj]
    return obj


class JSONLWriter:
    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.write_text("", encoding="utf-8")

    def emit(self, record: dict[str, Any]) -> None:
        try:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(_make_json_safe(record), ensure_ascii=False) + "\n")
        except OSError as exc:
            logger.warning("Could not write trace record to %s: %s", self.path, exc)


@dataclass
class StageRecord:
    name: str
    argv: list[str]
    pid: int | None = None
    spawned: bool = False
    exit_code: int | None = None
    elapsed_ms: float | None = None
    error: str | None = None


@dataclass
class RunStats:
    run_id: str
    stages: dict[str, StageRecord] = field(default_factory=dict)
    failures: list[dict[str, Any]] = field(default_factory=list)
    unwired_links: int = 0

    def record(self, name: str, argv: list[str]) -> StageRecord:
        return self.stages.setdefault(name, StageRecord(name=name, argv=list(argv)))

    def mark_spawned(self, name: str, pid: int | None) -> None:
        slot = self.stages[name]
        slot.spawned = True
        slot.pid = pid

    def mark_exit(self, name: str, exit_code: int | None, elapsed_ms: float) -> None:
        slot = self.stages[name]
        slot.exit_code = exit_code
        slot.elapsed_ms = float(elapsed_ms)

    def mark_failure(self, name: str, error: BaseException) -> None:
        message = f"{type(error).__name__}: {error}"
        if name in self.stages:
            self.stages[name].error = message
        self.failures.append({"stage": name, "error": message})

    @property
    def spawned_count(self) -> int:
        return sum(1 for slot in self.stages.values() if slot.spawned)

    def as_dict(self) -> dict[str, Any]:
        return _make_json_safe(
            {
                "run_id": self.run_id,
                "stages": [vars(slot) for slot in self.stages.values()],
                "failures": self.failures,
                "unwired_links": self.unwired_links,
            }
        )


class PipelineTrace:
    """Per-run structured event log.

    Every wiring event is logged at DEBUG level on ``procpipe.run.<run_id>``
    and, when ``jsonl_path`` is given, appended to that file as one JSON
    object per line.
    """

    def __init__(self, run_id: str, jsonl_path: Path | None = None):
        self.run_id = run_id
        self.jsonl = JSONLWriter(jsonl_path) if jsonl_path is not None else None
        self.log = logging.getLogger(f"procpipe.run.{run_id}")
        self.stats = RunStats(run_id=run_id)

    def event(self, stage: str | None, event: str, **fields: Any) -> None:
        record = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime()),
            "run_id": self.run_id,
            "stage": stage,
            "event": event,
        }
        record.update(fields)
        self.log.debug("%s %s %s", stage or "-", event, fields or "")
        if self.jsonl is not None:
            self.jsonl.emit(record)

    def stage_exited(self, name: str, exit_code: int | None, elapsed_ms: float) -> None:
        self.stats.mark_exit(name, exit_code, elapsed_ms)
        self.event(name, "exit", exit_code=exit_code, elapsed_ms=round(elapsed_ms, 3))
        self.log.info("[%s] exited with %s in %s", name, exit_code, _fmt_hms_ms(elapsed_ms))

    def stage_failed(self, name: str, error: BaseException) -> None:
        self.stats.mark_failure(name, error)
        self.event(name, "spawn_failed", error=error)
        self.log.warning("[%s] %s: %s", name, type(error).__name__, error)


def _fmt_hms_ms(milliseconds: float) -> str:
    """Return a human readable string with millisecond precision."""

    safe_ms = max(0.0, float(milliseconds))
    seconds = safe_ms / 1000.0
    base_seconds = int(seconds)
    fractional_ms = int(round((seconds - base_seconds) * 1000))

    if fractional_ms == 1000:
        base_seconds += 1
        fractional_ms = 0

    hours, remainder = divmod(base_seconds, 3600)
    minutes, secs = divmod(remainder, 60)

    if hours:
        return f"{hours:d}:{minutes:02d}:{secs:02d}.{fractional_ms:03d}"
    if minutes:
        return f"{minutes:02d}:{secs:02d}.{fractional_ms:03d}"
    return f"00:{secs:02d}.{fractional_ms:03d}"


def configure_logging(level: int | str = logging.WARNING) -> logging.Logger:
    """Attach a console handler to the ``procpipe`` logger (CLI use)."""

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.WARNING
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        fmt = logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s", datefmt="%H:%M:%S")
        handler.setFormatter(fmt)
        logger.addHandler(handler)
    for handler in logger.handlers:
        handler.setLevel(level)
    return logger


__all__ = [
    "JSONLWriter",
    "PipelineTrace",
    "RunStats",
    "StageRecord",
    "configure_logging",
    "_fmt_hms_ms",
    "_make_json_safe",
]
