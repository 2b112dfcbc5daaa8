"""Executor that runs an external command per task.

The request is written to the command's stdin as one JSON object. The last
line of stdout that parses as a JSON object is the outcome::

    {"status": "completed", "summary": "..."}
    {"status": "failed", "reason": "..."}
    {"status": "blocked", "reason": "..."}
    {"status": "subtasks", "subtasks": [{"title": "...", "depends_on": [0]}]}
"""

from __future__ import annotations

import asyncio
import json
import shutil
from pathlib import Path
from typing import Any

from taskarbor import log
from taskarbor.executors.base import ExecutionOutcome, ExecutionRequest, Executor, OutcomeKind
from taskarbor.executors.errors import looks_like_policy_block
from taskarbor.io_utils import open_text


def parse_outcome(stdout: str) -> ExecutionOutcome | None:
    """Return the outcome from the last JSON object line of *stdout*, if any."""
    for line in reversed(stdout.splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            data: Any = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict) and "status" in data:
            return ExecutionOutcome.from_dict(data)
    return None


class SubprocessExecutor(Executor):
    """Run ``command`` once per dispatch and read its JSON outcome."""

    name = "subprocess"

    def __init__(
        self,
        command: list[str],
        *,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        log_dir: Path | None = None,
    ) -> None:
        if not command:
            raise ValueError("executor command must not be empty")
        self.command = list(command)
        self.cwd = cwd
        self.env = env
        self.log_dir = log_dir

    def check_available(self) -> str | None:
        if not shutil.which(self.command[0]) and not Path(self.command[0]).exists():
            return f"{self.command[0]} not found in PATH"
        return None

    async def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        payload = json.dumps(request.to_dict()).encode("utf-8")
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=self.env,
            )
        except FileNotFoundError:
            return ExecutionOutcome.failed(f"{self.command[0]} not found")

        try:
            raw_out, raw_err = await proc.communicate(payload)
        except asyncio.CancelledError:
            # Timeout and cancellation both arrive here; never leave the child running.
            await self._terminate_process(proc)
            raise

        stdout = raw_out.decode("utf-8", errors="replace")
        stderr = raw_err.decode("utf-8", errors="replace")
        self._write_log(request, stderr)
        return self._finalize(proc.returncode or 0, stdout, stderr)

    def _finalize(self, return_code: int, stdout: str, stderr: str) -> ExecutionOutcome:
        try:
            outcome = parse_outcome(stdout)
        except ValueError as e:
            outcome = ExecutionOutcome.failed(f"invalid executor output: {e}")

        if return_code != 0 and (outcome is None or outcome.kind == OutcomeKind.COMPLETED):
            err = stderr.strip()
            reason = err.splitlines()[0] if err else f"exit code {return_code}"
            outcome = ExecutionOutcome.failed(reason)
        elif outcome is None:
            outcome = ExecutionOutcome.failed("executor produced no outcome")

        if outcome.kind == OutcomeKind.FAILED and (
            looks_like_policy_block(outcome.reason) or looks_like_policy_block(stderr)
        ):
            return ExecutionOutcome.blocked(outcome.reason)
        return outcome

    def _write_log(self, request: ExecutionRequest, stderr: str) -> None:
        if not self.log_dir or not stderr:
            return
        path = self.log_dir / f"{request.task_id}.stderr.log"
        path.parent.mkdir(parents=True, exist_ok=True)
        with open_text(path, "a") as f:
            f.write(stderr)

    @staticmethod
    async def _terminate_process(proc: asyncio.subprocess.Process) -> None:
        """Terminate a subprocess promptly (best effort)."""
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=2)
            return
        except asyncio.TimeoutError:
            log.debug(f"Executor pid {proc.pid} ignored SIGTERM; killing")
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()
