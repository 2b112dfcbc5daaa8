"""Durable session storage: current state, immutable checkpoints, execution log.

Layout under ``<workspace>/.taskarbor/sessions/<session_id>/``::

    state/current.json            latest session state
    checkpoints/<checkpoint>.json read-only snapshots
    logs/execution/<task>.jsonl   one line per dispatch attempt
    tmp/                          staging area for atomic writes

Every record file is a JSON header line (format, schema version, kind,
payload length and sha256) followed by the JSON payload.
"""

from __future__ import annotations

import hashlib
import json
import os
import stat
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from taskarbor import log
from taskarbor.config import PersistenceConfig, sessions_root
from taskarbor.errors import (
    CheckpointNotFoundError,
    CorruptionError,
    PersistenceError,
    SessionNotFoundError,
    WriteInProgressError,
)
from taskarbor.io_utils import append_line, atomic_write_bytes, open_text
from taskarbor.session.state import (
    SCHEMA_VERSION,
    CheckpointInfo,
    CheckpointTrigger,
    SessionState,
    new_checkpoint_id,
)
from taskarbor.tasks.model import utcnow

RECORD_FORMAT = "taskarbor-record"


def encode_record(kind: str, payload: dict[str, Any], **header_extra: Any) -> bytes:
    body = json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    header = {
        "format": RECORD_FORMAT,
        "schema_version": SCHEMA_VERSION,
        "kind": kind,
        "length": len(body),
        "sha256": hashlib.sha256(body).hexdigest(),
        **header_extra,
    }
    return json.dumps(header, separators=(",", ":")).encode("utf-8") + b"\n" + body + b"\n"


def _parse_header(line: bytes, path: str) -> dict[str, Any]:
    try:
        header = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CorruptionError(f"unreadable header ({e})", path) from e
    if not isinstance(header, dict) or header.get("format") != RECORD_FORMAT:
        raise CorruptionError("not a taskarbor record", path)
    return header


def decode_record(data: bytes, path: str = "", *, verify: bool = True) -> tuple[dict[str, Any], dict[str, Any]]:
    """Return ``(header, payload)``; raise :class:`CorruptionError` on any mismatch."""
    head, sep, rest = data.partition(b"\n")
    if not sep:
        raise CorruptionError("truncated record (no header line)", path)
    header = _parse_header(head, path)
    body = rest[:-1] if rest.endswith(b"\n") else rest

    if verify:
        if len(body) != header.get("length"):
            raise CorruptionError(f"length mismatch: expected {header.get('length')}, got {len(body)}", path)
        digest = hashlib.sha256(body).hexdigest()
        if digest != header.get("sha256"):
            raise CorruptionError("checksum mismatch", path)
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CorruptionError(f"unreadable payload ({e})", path) from e
    if not isinstance(payload, dict):
        raise CorruptionError("payload is not an object", path)
    return header, payload


def session_dir(workspace: Path, session_id: str) -> Path:
    return sessions_root(workspace) / session_id


def list_sessions(workspace: Path) -> list[str]:
    """Session ids with saved state, oldest first."""
    root = sessions_root(workspace)
    if not root.is_dir():
        return []
    found = [p for p in root.iterdir() if (p / "state" / "current.json").is_file()]
    found.sort(key=lambda p: ((p / "state" / "current.json").stat().st_mtime, p.name))
    return [p.name for p in found]


def latest_session_id(workspace: Path) -> str | None:
    sessions = list_sessions(workspace)
    return sessions[-1] if sessions else None


class PersistenceManager:
    """Single-writer storage for one session directory.

    ``save`` and ``create_checkpoint`` share one lock; a caller that cannot
    take it within ``wait`` seconds gets :class:`WriteInProgressError` and
    the artifact on disk is left as the in-flight writer leaves it.
    """

    def __init__(self, root: Path, config: PersistenceConfig | None = None) -> None:
        self.root = Path(root)
        self.config = config or PersistenceConfig()
        self._lock = threading.Lock()
        self._saved_version: int | None = None

    @classmethod
    def for_session(
        cls, workspace: Path, session_id: str, config: PersistenceConfig | None = None
    ) -> PersistenceManager:
        return cls(session_dir(workspace, session_id), config)

    # ── paths ────────────────────────────────────────────────────

    @property
    def current_path(self) -> Path:
        return self.root / "state" / "current.json"

    @property
    def checkpoints_dir(self) -> Path:
        return self.root / "checkpoints"

    @property
    def execution_log_dir(self) -> Path:
        return self.root / "logs" / "execution"

    @property
    def tmp_dir(self) -> Path:
        return self.root / "tmp"

    def checkpoint_path(self, checkpoint_id: str) -> Path:
        return self.checkpoints_dir / f"{checkpoint_id}.json"

    def ensure_dirs(self) -> None:
        for d in (self.current_path.parent, self.checkpoints_dir, self.execution_log_dir, self.tmp_dir):
            d.mkdir(parents=True, exist_ok=True)

    def has_state(self) -> bool:
        return self.current_path.is_file()

    # ── writes ───────────────────────────────────────────────────

    def _acquire(self, what: str, wait: float) -> None:
        acquired = self._lock.acquire(timeout=wait) if wait > 0 else self._lock.acquire(blocking=False)
        if not acquired:
            raise WriteInProgressError(what)

    def _write(self, path: Path, data: bytes, what: str) -> None:
        self.ensure_dirs()
        last: OSError | None = None
        for attempt in range(1, self.config.write_retries + 1):
            try:
                atomic_write_bytes(path, data, tmp_dir=self.tmp_dir)
                return
            except OSError as e:
                last = e
                log.warn(f"{what} write failed (attempt {attempt}/{self.config.write_retries}): {e}")
                if attempt < self.config.write_retries:
                    time.sleep(self.config.write_retry_delay)
        raise PersistenceError(f"could not write {path}: {last}") from last

    def save(self, state: SessionState, wait: float = 0.0, *, if_newer: bool = False) -> bool:
        """Atomically replace the current-state record with *state*.

        With ``if_newer`` the write is skipped (returning False) when a
        snapshot with a later tree version was already saved; background
        timers use it so an old snapshot never overwrites a newer one.
        """
        data = encode_record("state", state.to_dict(), session_id=state.session_id)
        self._acquire("save", wait)
        try:
            if if_newer and self._saved_version is not None and state.tree.version < self._saved_version:
                log.debug(f"Skipped stale snapshot (version {state.tree.version} < {self._saved_version})")
                return False
            self._write(self.current_path, data, "state")
            self._saved_version = state.tree.version
        finally:
            self._lock.release()
        log.debug(f"Saved session {state.session_id} ({len(state.tree)} tasks)")
        return True

    def create_checkpoint(
        self,
        state: SessionState,
        trigger: CheckpointTrigger = CheckpointTrigger.MANUAL,
        description: str = "",
        wait: float = 0.0,
    ) -> CheckpointInfo:
        """Write an immutable snapshot of *state* and apply retention."""
        payload = state.to_dict()
        self._acquire("checkpoint", wait)
        try:
            now = utcnow()
            info = CheckpointInfo(
                id=new_checkpoint_id(now),
                session_id=state.session_id,
                created_at=now,
                trigger=CheckpointTrigger(trigger),
                description=description,
                task_count=len(state.tree),
            )
            path = self.checkpoint_path(info.id)
            while path.exists():
                info.id = new_checkpoint_id(now)
                path = self.checkpoint_path(info.id)
            info.size_bytes = len(json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8"))
            self._write(path, encode_record("checkpoint", payload, checkpoint=info.to_dict()), "checkpoint")
            try:
                os.chmod(path, stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH)
            except OSError as e:
                log.debug(f"Could not mark {path.name} read-only: {e}")
            self._apply_retention(now)
        finally:
            self._lock.release()
        log.info(f"Checkpoint {info.id} ({info.trigger.value}, {info.task_count} tasks)")
        return info

    def _apply_retention(self, now: datetime) -> list[str]:
        """Prune old checkpoints; the newest ``keep_recent`` always survive."""
        infos = self.list_checkpoints()
        protected = {i.id for i in infos[-self.config.keep_recent:]}
        max_age = self.config.max_checkpoint_age_hours
        cutoff = now - timedelta(hours=max_age) if max_age is not None else None

        removed: list[str] = []
        remaining = len(infos)
        for info in infos:
            if info.id in protected:
                continue
            too_many = remaining > self.config.max_checkpoints
            too_old = cutoff is not None and info.created_at < cutoff
            if not (too_many or too_old):
                continue
            path = self.checkpoint_path(info.id)
            try:
                os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
                path.unlink()
            except OSError as e:
                log.warn(f"Could not prune checkpoint {info.id}: {e}")
                continue
            removed.append(info.id)
            remaining -= 1
        if removed:
            log.debug(f"Pruned {len(removed)} checkpoint(s): {', '.join(removed)}")
        return removed

    # ── reads ────────────────────────────────────────────────────

    def _read(self, path: Path) -> tuple[dict[str, Any], dict[str, Any]]:
        try:
            data = path.read_bytes()
        except OSError as e:
            raise PersistenceError(f"could not read {path}: {e}") from e
        return decode_record(data, str(path), verify=self.config.verify_checksums)

    @staticmethod
    def _state_from(payload: dict[str, Any], path: Path) -> SessionState:
        try:
            return SessionState.from_dict(payload)
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptionError(f"invalid session state ({type(e).__name__}: {e})", str(path)) from e

    def load_latest(self) -> SessionState:
        if not self.has_state():
            raise SessionNotFoundError(str(self.root))
        _, payload = self._read(self.current_path)
        return self._state_from(payload, self.current_path)

    def load_checkpoint(self, checkpoint_id: str) -> SessionState:
        path = self.checkpoint_path(checkpoint_id)
        if not path.is_file():
            raise CheckpointNotFoundError(checkpoint_id)
        _, payload = self._read(path)
        return self._state_from(payload, path)

    def list_checkpoints(self) -> list[CheckpointInfo]:
        """Checkpoint metadata from record headers, oldest first."""
        if not self.checkpoints_dir.is_dir():
            return []
        infos: list[CheckpointInfo] = []
        for path in self.checkpoints_dir.glob("*.json"):
            try:
                with path.open("rb") as f:
                    header = _parse_header(f.readline().rstrip(b"\n"), str(path))
                infos.append(CheckpointInfo.from_dict(header["checkpoint"]))
            except (OSError, CorruptionError, KeyError, ValueError) as e:
                log.warn(f"Ignoring unreadable checkpoint {path.name}: {e}")
        infos.sort(key=lambda i: (i.created_at, i.id))
        return infos

    # ── execution log ────────────────────────────────────────────

    def append_execution_log(self, entry: dict[str, Any]) -> None:
        path = self.execution_log_dir / f"{entry['task_id']}.jsonl"
        try:
            append_line(path, json.dumps(entry, ensure_ascii=False, separators=(",", ":")))
        except OSError as e:
            raise PersistenceError(f"could not append to {path}: {e}") from e

    def read_execution_log(self, task_id: str | None = None) -> list[dict[str, Any]]:
        """Attempt records for one task (or all tasks), in dispatch order."""
        if task_id is not None:
            paths = [self.execution_log_dir / f"{task_id}.jsonl"]
        elif self.execution_log_dir.is_dir():
            paths = sorted(self.execution_log_dir.glob("*.jsonl"))
        else:
            paths = []

        entries: list[dict[str, Any]] = []
        for path in paths:
            if not path.is_file():
                continue
            with open_text(path, errors="replace") as f:
                for lineno, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entries.append(json.loads(line))
                    except json.JSONDecodeError:
                        log.warn(f"Skipping torn line {lineno} in {path.name}")
        entries.sort(key=lambda e: str(e.get("dispatched_at", "")))
        return entries
