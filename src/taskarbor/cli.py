"""taskarbor command line: create, resume, inspect and checkpoint sessions.

Installed as the ``taskarbor`` console_script.
"""

from __future__ import annotations

import asyncio
import json
import shlex
import signal
import sys
from pathlib import Path
from typing import Any, NoReturn

import click

from taskarbor import __version__, log
from taskarbor.config import SessionConfig
from taskarbor.errors import (
    CheckpointNotFoundError,
    ConfigError,
    PersistenceError,
    SessionNotFoundError,
    TaskArborError,
    UnrecoverableStateError,
)
from taskarbor.executors.command import SubprocessExecutor
from taskarbor.io_utils import read_text
from taskarbor.manager import RunSummary
from taskarbor.session.manager import SessionManager, StatusSummary, list_sessions

CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])

# Exit codes
EXIT_ERROR = 1
EXIT_NOT_FOUND = 2
EXIT_UNRECOVERABLE = 3
EXIT_PERSISTENCE = 4


def _fail(msg: str, code: int = EXIT_ERROR) -> NoReturn:
    log.error(msg)
    sys.exit(code)


def _handle_error(exc: TaskArborError) -> NoReturn:
    """Print *exc* the way an operator needs to see it and exit non-zero."""
    if isinstance(exc, UnrecoverableStateError):
        log.error("Session state is unrecoverable; manual intervention required:")
        for v in exc.violations:
            log.console.print(f"  - {v}")
        sys.exit(EXIT_UNRECOVERABLE)
    if isinstance(exc, (SessionNotFoundError, CheckpointNotFoundError)):
        _fail(str(exc), EXIT_NOT_FOUND)
    if isinstance(exc, PersistenceError):
        _fail(f"Persistence failure: {exc}", EXIT_PERSISTENCE)
    _fail(str(exc))


def load_task_specs(path: Path) -> tuple[str, list[dict[str, Any]]]:
    """Read a task file: a JSON list of tasks or ``{"name": ..., "tasks": [...]}``."""
    try:
        data = json.loads(read_text(path))
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"{path} is not valid JSON: {e}", param_hint="TASKS_FILE") from e
    name = ""
    if isinstance(data, dict):
        name = str(data.get("name", ""))
        data = data.get("tasks", [])
    if not isinstance(data, list) or not all(isinstance(t, dict) for t in data):
        raise click.BadParameter("expected a list of task objects", param_hint="TASKS_FILE")
    return name, data


def _session(ctx: click.Context) -> SessionManager:
    obj = ctx.obj
    return SessionManager(obj["workspace"], config=obj["config"], session_id=obj["session_id"])


def _attach_executor(session: SessionManager, command: str) -> None:
    argv = shlex.split(command) if command else list(session.config.executor_command)
    if not argv:
        _fail("No executor command. Pass --command or set TASKARBOR_EXECUTOR_CMD.")
    assert session.persistence is not None
    executor = SubprocessExecutor(
        argv,
        cwd=session.workspace,
        log_dir=session.persistence.root / "logs" / "executor",
    )
    err = executor.check_available()
    if err:
        _fail(err)
    session.executor = executor


async def _run_with_signals(session: SessionManager) -> RunSummary:
    loop = asyncio.get_running_loop()
    installed: list[int] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, session.shutdown)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Windows event loops do not support signal handlers.
            pass
    try:
        return await session.run()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def _run(session: SessionManager) -> None:
    try:
        summary = asyncio.run(_run_with_signals(session))
    except KeyboardInterrupt:
        log.warn("Interrupted!")
        sys.exit(130)
    if summary.stopped_early:
        log.info(f"Stopped; resume with: taskarbor --session {session.session_id} resume")


def _show_status(status: StatusSummary) -> None:
    c = log.console
    c.print("[bold]============================================[/bold]")
    c.print(f"[bold]Session[/bold] {status.session_id}" + (f" ({status.name})" if status.name else ""))
    c.print("[bold]============================================[/bold]")
    order = ("pending", "in_progress", "blocked", "completed", "failed", "skipped")
    c.print("  ".join(f"{k}: {status.counts.get(k, 0)}" for k in order) + f"  total: {status.total}")
    c.print(f"Complete: [green]{status.completion_percentage:.1f}%[/green]")
    if status.estimated_seconds_remaining is not None and status.estimated_seconds_remaining > 0:
        c.print(f"Estimated remaining: {status.estimated_seconds_remaining / 60:.1f} min")
    if status.throughput_per_hour > 0:
        c.print(f"Throughput: {status.throughput_per_hour:.1f} tasks/h")
    if status.running_task_id:
        c.print(f"Running: [cyan]{status.running_title}[/cyan] ({status.running_task_id})")
    if status.last_checkpoint is not None:
        cp = status.last_checkpoint
        c.print(f"Last checkpoint: {cp.id} ({cp.trigger.value}, {cp.created_at:%Y-%m-%d %H:%M:%S})")
    for task_id, title, reason in status.blocked:
        c.print(f"  [magenta]blocked[/magenta] {title} ({task_id}): {reason}")
    for task_id, title, reason in status.failed:
        c.print(f"  [red]failed[/red] {title} ({task_id}): {reason}")


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "--workspace", "-w",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Directory holding the .taskarbor state dir",
)
@click.option("--session", "session_id", default=None, help="Session id (default: most recent)")
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@click.option("-q", "--quiet", is_flag=True, help="Hide per-task progress lines")
@click.version_option(__version__, prog_name="taskarbor")
@click.pass_context
def main(ctx: click.Context, workspace: Path, session_id: str | None, verbose: bool, quiet: bool) -> None:
    """taskarbor: durable, resumable execution of task trees.

    \b
    EXAMPLES:
      taskarbor new tasks.json --command "./agent.sh"   # Create and run a session
      taskarbor resume                                   # Resume the latest session
      taskarbor resume cp-20261019-...                   # Roll back to a checkpoint
      taskarbor status                                   # Show progress
      taskarbor checkpoint "before refactor"             # Manual checkpoint
    """
    try:
        config = SessionConfig.from_env()
    except ConfigError as e:
        raise click.UsageError(str(e)) from e
    if verbose:
        config.verbose = True
    log.set_verbose(config.verbose)
    log.set_quiet(quiet)
    ctx.ensure_object(dict)
    ctx.obj.update(workspace=workspace, session_id=session_id, config=config)


@main.command()
@click.argument("tasks_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--name", default="", help="Session name (default: from the task file)")
@click.option("--command", "command", default="", help="Executor command run once per task")
@click.option("--run/--no-run", default=True, show_default=True, help="Start executing right away")
@click.pass_context
def new(ctx: click.Context, tasks_file: Path, name: str, command: str, run: bool) -> None:
    """Create a session from TASKS_FILE (JSON)."""
    file_name, specs = load_task_specs(tasks_file)
    session = _session(ctx)
    try:
        session.create(specs, name=name or file_name)
        if run:
            _attach_executor(session, command)
            _run(session)
    except TaskArborError as e:
        _handle_error(e)
    except ValueError as e:
        _fail(f"Invalid task file: {e}")
    click.echo(session.session_id)


@main.command()
@click.argument("checkpoint_id", required=False)
@click.option("--command", "command", default="", help="Executor command run once per task")
@click.option("--max-dispatches", type=int, default=0, help="Stop after N dispatches (0=unlimited)")
@click.option("--no-run", is_flag=True, help="Recover and save the state without executing")
@click.pass_context
def resume(ctx: click.Context, checkpoint_id: str | None, command: str, max_dispatches: int, no_run: bool) -> None:
    """Resume the session, optionally from CHECKPOINT_ID."""
    session = _session(ctx)
    if max_dispatches:
        session.config.manager.max_dispatches = max_dispatches
    try:
        report = session.resume(checkpoint_id)
        for correction in report.corrections:
            log.console.print(f"  [yellow]corrected[/yellow] {correction}")
        if report.lost_work is not None:
            log.warn(f"Lost work since {report.checkpoint_id}: {', '.join(report.lost_work.task_ids) or 'none'}")
        if not no_run:
            _attach_executor(session, command)
            _run(session)
    except TaskArborError as e:
        _handle_error(e)


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print machine-readable JSON")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show the session's progress."""
    session = _session(ctx)
    try:
        session.resume_readonly()
    except TaskArborError as e:
        _handle_error(e)
    summary = session.status()
    if as_json:
        click.echo(json.dumps(summary.to_dict(), indent=2))
    else:
        _show_status(summary)


@main.command()
@click.pass_context
def checkpoints(ctx: click.Context) -> None:
    """List the session's checkpoints, oldest first."""
    session = _session(ctx)
    try:
        session.resume_readonly()
    except TaskArborError as e:
        _handle_error(e)
    infos = session.list_checkpoints()
    if not infos:
        log.info("No checkpoints")
        return
    for info in infos:
        desc = f"  {info.description}" if info.description else ""
        log.console.print(
            f"{info.id}  {info.created_at:%Y-%m-%d %H:%M:%S}  [cyan]{info.trigger.value:<13}[/cyan]"
            f"  {info.task_count} tasks{desc}"
        )


@main.command()
@click.argument("description", default="")
@click.pass_context
def checkpoint(ctx: click.Context, description: str) -> None:
    """Create a manual checkpoint of the current state."""
    session = _session(ctx)
    try:
        session.resume_readonly()
        info = session.create_checkpoint(description)
    except TaskArborError as e:
        _handle_error(e)
    log.success(f"Checkpoint {info.id}")
    click.echo(info.id)


@main.command()
@click.pass_context
def sessions(ctx: click.Context) -> None:
    """List sessions in the workspace, oldest first."""
    found = list_sessions(ctx.obj["workspace"])
    if not found:
        log.info("No sessions")
        return
    for session_id in found:
        click.echo(session_id)
