"""Executor collaborators: the backends that actually perform a task."""

from taskarbor.executors.base import (
    CallableExecutor,
    ExecutionOutcome,
    ExecutionRequest,
    Executor,
    OutcomeKind,
    SubtaskSpec,
)
from taskarbor.executors.command import SubprocessExecutor

__all__ = [
    "CallableExecutor",
    "ExecutionOutcome",
    "ExecutionRequest",
    "Executor",
    "OutcomeKind",
    "SubprocessExecutor",
    "SubtaskSpec",
]
