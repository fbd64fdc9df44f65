"""Typer CLI entrypoints for codex-connector."""

from __future__ import annotations

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from codex_connector.config import ConfigError, Settings, initialize_config, load_settings
from codex_connector.kernel.runtime import Runtime
from codex_connector.task.registry import STATUS_FILTER_ALL, build_snapshot, select_tasks
from codex_connector.task.types import PERMISSION_LEVELS, TaskRecord, TaskStatus
from codex_connector.ui.render import (
    print_markdown,
    print_task_table,
    render_doctor_text,
    render_notice,
    render_progress_line,
    render_result_report,
    render_status_report,
)

app = typer.Typer(
    no_args_is_help=True,
    help="Supervise long-running codex agent tasks",
)

_STATUS_FILTERS = (STATUS_FILTER_ALL,) + tuple(status.value for status in TaskStatus)


def _data_dir_from(ctx: typer.Context) -> Optional[Path]:
    parent_obj = ctx.obj or {}
    return parent_obj.get("data_dir")


def _load_settings_or_exit(ctx: typer.Context) -> Settings:
    try:
        return load_settings(_data_dir_from(ctx))
    except ConfigError as exc:
        typer.echo(render_notice("error", str(exc)), err=True)
        raise typer.Exit(code=2)


def _progress_listener(task_id: str, message: str, data: Dict[str, Any]) -> None:
    line = render_progress_line(task_id, message, data)
    if line:
        typer.echo(line, err=True)


async def _run_task(runtime: Runtime, **spec_kwargs: Any) -> TaskRecord:
    try:
        spec = runtime.build_spec(**spec_kwargs)
        result = await runtime.registry.start(spec, synchronous=True)
        return result.record
    finally:
        await runtime.close()


@app.callback()
def main(
    ctx: typer.Context,
    data_dir: Optional[Path] = typer.Option(
        None,
        "--data-dir",
        help="State directory (default: $CODEX_CONNECTOR_HOME or ~/.codex-connector)",
    ),
) -> None:
    ctx.obj = {"data_dir": data_dir}


@app.command("init")
def init_cmd(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config file"),
) -> None:
    """Write a default config.toml into the data directory."""
    try:
        config_file = initialize_config(_data_dir_from(ctx), force=force)
    except ConfigError as exc:
        typer.echo(render_notice("error", str(exc)), err=True)
        raise typer.Exit(code=2)
    typer.echo(render_notice("success", "Initialized config at: {0}".format(config_file)))


@app.command("run")
def run_cmd(
    ctx: typer.Context,
    prompt: str = typer.Argument(..., help="Task prompt handed to the agent"),
    cwd: Optional[Path] = typer.Option(None, "--cwd", help="Working directory (default: current directory)"),
    sandbox: Optional[str] = typer.Option(None, "--sandbox", help="read-only|workspace-write|danger-full-access"),
    model: Optional[str] = typer.Option(None, "--model", help="Model passed to the agent"),
    timeout_ms: int = typer.Option(0, "--timeout-ms", help="Kill the task after N ms (0 = no limit)"),
    quiet: bool = typer.Option(False, "--quiet", help="Suppress progress on stderr"),
) -> None:
    """Run one task to completion in this process."""
    if not prompt.strip():
        typer.echo(render_notice("error", "Prompt text is required."), err=True)
        raise typer.Exit(code=2)
    if sandbox is not None and sandbox not in PERMISSION_LEVELS:
        typer.echo(render_notice("error", "Unsupported sandbox: {0}".format(sandbox)), err=True)
        raise typer.Exit(code=2)
    if timeout_ms < 0:
        typer.echo(render_notice("error", "--timeout-ms must not be negative."), err=True)
        raise typer.Exit(code=2)

    settings = _load_settings_or_exit(ctx)
    runtime = Runtime(settings, listener=None if quiet else _progress_listener)
    working_directory = str((cwd or Path(os.getcwd())).expanduser().resolve())
    record = asyncio.run(
        _run_task(
            runtime,
            prompt=prompt,
            working_directory=working_directory,
            sandbox=sandbox,
            model=model,
            timeout_ms=timeout_ms,
        )
    )
    print_markdown(render_result_report(record), sys.stdout)
    raise typer.Exit(code=0 if record.status == TaskStatus.COMPLETED else 1)


@app.command("status")
def status_cmd(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task ID"),
    tail: Optional[int] = typer.Option(None, "--tail", help="Number of log lines to show"),
) -> None:
    """Show the state and recent log lines of a task."""
    settings = _load_settings_or_exit(ctx)
    runtime = Runtime(settings)
    record = runtime.store.read().get(task_id)
    if record is None:
        typer.echo(render_notice("error", "task not found: {0}".format(task_id)), err=True)
        raise typer.Exit(code=1)
    lines = tail if tail is not None and tail > 0 else settings.tail_lines
    print_markdown(render_status_report(build_snapshot(record, lines), lines), sys.stdout)


@app.command("tasks")
def tasks_cmd(
    ctx: typer.Context,
    status: str = typer.Option(STATUS_FILTER_ALL, "--status", help="|".join(_STATUS_FILTERS)),
    limit: Optional[int] = typer.Option(None, "--limit", help="Maximum number of tasks"),
) -> None:
    """List tasks, most recently started first."""
    normalized = status.strip().lower()
    if normalized not in _STATUS_FILTERS:
        typer.echo(render_notice("error", "Unsupported status filter: {0}".format(status)), err=True)
        raise typer.Exit(code=2)
    settings = _load_settings_or_exit(ctx)
    runtime = Runtime(settings)
    count = limit if limit is not None and limit > 0 else settings.list_limit
    records = select_tasks(runtime.store.read().values(), normalized, count)
    print_task_table(records, normalized, sys.stdout)


@app.command("doctor")
def doctor_cmd(
    ctx: typer.Context,
    output_format: str = typer.Option(
        "json",
        "--format",
        help="Output format: json|text",
    ),
) -> None:
    normalized_format = output_format.strip().lower()
    if normalized_format not in {"json", "text"}:
        typer.echo(render_notice("error", "Unsupported format: {0}".format(output_format)), err=True)
        raise typer.Exit(code=2)

    settings = _load_settings_or_exit(ctx)
    report = Runtime(settings).doctor()
    if normalized_format == "json":
        typer.echo(json.dumps(report, ensure_ascii=True, indent=2))
        return
    typer.echo(render_doctor_text(report))


if __name__ == "__main__":
    app()
