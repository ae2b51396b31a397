from __future__ import annotations

from datetime import datetime, timedelta

from pydantic import Field

from rewatch.config import Action
from rewatch.model import Model


class Message(Model):
    rule: str
    timestamp: datetime = Field(default_factory=datetime.now)


class WatchPathChanged(Message):
    path: str
    action: Action


class WatchPathsChanged(Message):
    changes: tuple[tuple[str, Action], ...]

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(path for path, _ in self.changes)


class ExecutionStarted(Message):
    pid: int
    command: str


class ExecutionRestarting(Message):
    pass


class ExecutionKilling(Message):
    pid: int


class ExecutionCompleted(Message):
    pid: int
    exit_code: int
    duration: timedelta


class ExecutionCrashed(Message):
    pid: int
    exit_code: int


class ExecutionFailed(Message):
    error: str


class ExecutionOutput(Message):
    text: str


class RuleStarted(Message):
    pass


class RuleStopped(Message):
    pass


class Debug(Message):
    text: str


class Quit(Message):
    rule: str = ""
