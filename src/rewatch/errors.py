from __future__ import annotations

from collections.abc import Collection


class RewatchError(Exception):
    pass


class RuleNotFound(RewatchError, LookupError):
    code = "RULE_NOT_FOUND"

    def __init__(self, id: int, operation: str = "find"):
        self.id = id
        self.operation = operation
        super().__init__(f"Can't {operation} rule with id={id}, there is no such rule")


class RuleStateError(RewatchError, RuntimeError):
    pass


class KillError(RewatchError):
    def __init__(self, pid: int, message: str | None = None):
        self.pid = pid
        super().__init__(message or f"Can't kill process with pid = {pid}")


class KillTimeoutError(KillError, TimeoutError):
    def __init__(self, pid: int, pending: Collection[int] = ()):
        self.pending = tuple(sorted(pending))
        offending = self.pending[0] if self.pending else pid
        super().__init__(
            offending,
            f"Timeout. Can't kill process with pid = {offending} (tree rooted at pid {pid})",
        )
        self.root = pid
