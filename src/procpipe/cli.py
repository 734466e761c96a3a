"""Command line interface for procpipe."""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any

import typer

from . import __version__
from .builder import run as run_chain
from .config import PipelineConfig, build_pipeline_config
from .errors import ConfigurationError
from .logging_utils import _make_json_safe, configure_logging
from .pipeline import pipeline
from .stage import StageSpec

# Enable rich-rendered help panels by default; allow opt-out via PROCPIPE_CLI_RICH=0/false.
_rich_pref = os.getenv("PROCPIPE_CLI_RICH", "").strip().lower()
try:  # Typer <0.12.3 lacks rich_utils
    if _rich_pref in {"0", "false", "no", "off"}:
        typer.rich_utils.USE_RICH = False  # type: ignore[attr-defined]
    else:
        typer.rich_utils.USE_RICH = True  # type: ignore[attr-defined]
except AttributeError:
    pass

app = typer.Typer(help="Run process pipelines without a shell.")

STAGE_SEPARATOR = "::"
# Exit status reported when no stage could be started, as a shell does.
NOT_STARTED_EXIT = 127


def split_stages(tokens: list[str], separator: str = STAGE_SEPARATOR) -> list[list[str]]:
    """Split ``a b :: c d`` into ``[["a", "b"], ["c", "d"]]``."""

    stages: list[list[str]] = [[]]
    for token in tokens:
        if token == separator:
            stages.append([])
        else:
            stages[-1].append(token)
    if any(not stage for stage in stages):
        raise typer.BadParameter(
            f"empty stage: every '{separator}' must separate two commands", param_hint="STAGES"
        )
    return stages


def _build_specs(
    stages: list[list[str]], input_path: Path | None, output_path: Path | None
) -> list[StageSpec]:
    specs = [StageSpec.coerce(stage) for stage in stages]
    if input_path is not None:
        first = specs[0]
        specs[0] = StageSpec(
            first.command, first.arguments, first.redirections.with_target(0, input_path)
        )
    if output_path is not None:
        last = specs[-1]
        specs[-1] = StageSpec(
            last.command, last.arguments, last.redirections.with_target(1, output_path)
        )
    return specs


async def _run_eager(specs: list[StageSpec], config: PipelineConfig) -> dict[str, Any]:
    result = await pipeline(*specs, config=config)
    if result.stdin is not None:
        result.stdin.close()
    stdout, stderr = await asyncio.gather(result.stdout.read_all(), result.stderr.read_all())
    exit_code = await result.wait()
    return {
        "mode": "eager",
        "exit_code": exit_code,
        "stdout": stdout,
        "stderr": stderr,
        "errors": [str(error) for error in result.errors],
        "stats": result.stats.as_dict() if result.stats is not None else {},
    }


async def _run_lazy(specs: list[StageSpec], config: PipelineConfig) -> dict[str, Any]:
    root = run_chain(specs[0].command, specs[0].arguments, config=config)
    last = root
    for spec in specs[1:]:
        last = last.pipe(spec.command, spec.arguments)
    for command, spec in zip(root.chain, specs):
        for channel in (0, 1, 2):
            target = spec.redirections.get(channel)
            if target is not None:
                command.redirect_to(target, channel)
    root.stdin.close()
    stdout, stderr = await asyncio.gather(last.stdout.read_all(), last.stderr.read_all())
    exit_code = await last.wait()
    return {
        "mode": "lazy",
        "exit_code": exit_code,
        "stdout": stdout,
        "stderr": stderr,
        "errors": [str(error) for error in last.errors],
        "stats": last.stats.as_dict(),
    }


@app.command(
    help="Run STAGES as one pipeline. Separate stages with '::', e.g. "
    "`procpipe run -- cat notes.txt :: grep todo :: wc -l`."
)
def run(
    stages: list[str] = typer.Argument(..., help="Command tokens, stages separated by '::'"),
    input_path: Path | None = typer.Option(
        None, "--input", "-i", exists=True, readable=True, help="Feed the first stage from a file"
    ),
    output_path: Path | None = typer.Option(
        None, "--output", "-o", help="Write the last stage's stdout to a file"
    ),
    errors_path: Path | None = typer.Option(
        None, "--errors", "-e", help="Write the merged stderr to a file"
    ),
    lazy: bool = typer.Option(
        False, "--lazy", is_flag=True, help="Use the chainable builder instead of eager spawning"
    ),
    attach: bool = typer.Option(
        False,
        "--attach",
        is_flag=True,
        help="Connect the first stdin and last stdout to this terminal",
    ),
    as_json: bool = typer.Option(False, "--json", is_flag=True, help="Print a JSON manifest"),
    trace_path: Path | None = typer.Option(
        None, "--trace", help="Append wiring events as JSON lines to this file"
    ),
    log_level: str = typer.Option("WARNING", "--log-level", help="Python logging level"),
):
    configure_logging(log_level)
    try:
        config = build_pipeline_config(
            {"attach_terminal": attach and not as_json, "trace_path": trace_path}
        )
        specs = _build_specs(split_stages(stages), input_path, output_path)
    except ConfigurationError as exc:
        raise typer.BadParameter(str(exc), param_hint="STAGES") from exc

    runner = _run_lazy if lazy else _run_eager
    manifest = asyncio.run(runner(specs, config))
    manifest["run_id"] = config.run_id
    manifest["stages"] = [spec.display() for spec in specs]

    if errors_path is not None:
        errors_path.write_bytes(manifest["stderr"])

    exit_code = manifest["exit_code"]
    if as_json:
        typer.echo(json.dumps(_make_json_safe(manifest), indent=2))
    else:
        if manifest["stdout"]:
            typer.echo(manifest["stdout"], nl=False)
        if manifest["stderr"] and errors_path is None:
            typer.echo(manifest["stderr"], nl=False, err=True)
        for message in manifest["errors"]:
            typer.echo(f"procpipe: {message}", err=True)
    raise typer.Exit(code=NOT_STARTED_EXIT if exit_code is None else _shell_status(exit_code))


def _shell_status(exit_code: int) -> int:
    """Map asyncio's negative signal codes to the shell's 128+N convention."""

    if exit_code < 0:
        return 128 - exit_code
    return exit_code


@app.command(help="Print the procpipe version.")
def version():
    typer.echo(__version__)


def main() -> None:  # pragma: no cover - console script entry point
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
