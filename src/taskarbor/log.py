"""Console logging for sessions, tasks and recovery, rendered with Rich."""

from __future__ import annotations

from rich.console import Console

console = Console(highlight=False)
_err_console = Console(highlight=False, stderr=True)

_verbose = False
_quiet = False

# glyph + color per task outcome, used by the task manager's progress lines
_TASK_MARKS: dict[str, tuple[str, str]] = {
    "started": ("●", "cyan"),
    "completed": ("✓", "green"),
    "failed": ("x", "red"),
    "retry": ("RETRY", "yellow"),
    "blocked": ("‖", "magenta"),
    "subtasks": ("+", "blue"),
    "skipped": ("-", "dim"),
}


def set_verbose(enabled: bool) -> None:
    global _verbose
    _verbose = enabled


def set_quiet(enabled: bool) -> None:
    """Suppress per-task progress lines (warnings and errors still print)."""
    global _quiet
    _quiet = enabled


def info(msg: str) -> None:
    console.print(f"[blue]\\[INFO][/blue] {msg}")


def success(msg: str) -> None:
    console.print(f"[green]\\[OK][/green] {msg}")


def warn(msg: str) -> None:
    console.print(f"[yellow]\\[WARN][/yellow] {msg}")


def error(msg: str) -> None:
    _err_console.print(f"[red]\\[ERROR][/red] {msg}")


def debug(msg: str) -> None:
    if _verbose:
        console.print(f"[dim]\\[DEBUG] {msg}[/dim]")


def task_line(mark: str, title: str, task_id: str, detail: str = "") -> None:
    """Print one progress line for a task, e.g. ``  ✓ Build parser (a1b2c3)``."""
    if _quiet:
        return
    glyph, color = _TASK_MARKS.get(mark, ("?", "white"))
    line = f"  [{color}]{glyph}[/{color}] {title[:45]} ({task_id})"
    if detail:
        line += f" [dim]{detail}[/dim]"
    console.print(line)
