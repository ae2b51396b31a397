from __future__ import annotations

from asyncio import Task, create_task, gather
from collections.abc import Sequence
from enum import Enum
from inspect import isawaitable

from rewatch.config import Action, Handler, Policy
from rewatch.errors import KillError
from rewatch.execution import Execution, render_command
from rewatch.fanout import Fanout
from rewatch.messages import (
    Debug,
    ExecutionCrashed,
    ExecutionFailed,
    ExecutionRestarting,
    Message,
)

Changes = Sequence[tuple[str, Action]]


class Status(Enum):
    Idle = "idle"
    Spawning = "spawning"
    Running = "running"
    Terminating = "terminating"


class ProcessSupervisor:
    """
    Owns the child processes of one rule.

    In exec mode every dispatch runs the command to completion (respawning it while the
    restart-on policies apply). In restart mode there is at most one current child,
    which is killed and replaced on every dispatch.
    """

    def __init__(
        self,
        rule: str,
        command: str | Handler | None,
        policy: Policy,
        events: Fanout[Message],
    ):
        self.rule = rule
        self.command = command
        self.policy = policy
        self.events = events

        self.status = Status.Idle
        self.executions: dict[int, Execution] = {}
        self.current: Execution | None = None
        self.supervisors: set[Task[None]] = set()
        self.stopping = False

    async def run(self, changes: Changes) -> None:
        if self.command is None:
            return

        if callable(self.command):
            await self.call_handler(self.command, changes)
            return

        command = self.render(self.command, changes)

        while not self.stopping:
            execution = await self.spawn(command)
            if execution is None:
                return

            await execution.wait()
            self.forget(execution)

            if not self.handle_exit(execution):
                return

    async def restart(self, changes: Changes, initial: bool = False) -> None:
        if self.command is None:
            return

        if not initial:
            await self.events.put(ExecutionRestarting(rule=self.rule))

        if callable(self.command):
            if not initial:
                await self.call_handler(self.command, changes)
            return

        previous = self.current
        if previous is not None and not previous.has_exited:
            self.status = Status.Terminating
            try:
                await previous.terminate(self.policy.kill)
            except KillError as e:
                self.status = Status.Running
                await self.events.put(ExecutionFailed(rule=self.rule, error=str(e)))
                return

        if self.stopping:
            return

        await self.start_restarting_child(self.render(self.command, changes))

    async def start_restarting_child(self, command: str) -> None:
        execution = await self.spawn(command)
        if execution is None:
            return

        self.current = execution

        task = create_task(
            self.supervise(execution, command),
            name=f"Supervise {self.rule} (pid {execution.pid})",
        )
        self.supervisors.add(task)
        task.add_done_callback(self.supervisors.discard)

    async def supervise(self, execution: Execution, command: str) -> None:
        await execution.wait()
        self.forget(execution)

        if self.handle_exit(execution):
            await self.start_restarting_child(command)

    async def spawn(self, command: str) -> Execution | None:
        self.status = Status.Spawning

        if self.policy.debug:
            await self.events.put(Debug(rule=self.rule, text=f"Run {command}"))

        try:
            execution = await Execution.start(
                rule=self.rule,
                command=command,
                shell=self.policy.shell,
                capture=not self.policy.write_to_console,
                events=self.events,
            )
        except (OSError, ValueError) as e:
            self.status = Status.Running if self.executions else Status.Idle
            await self.events.put(ExecutionFailed(rule=self.rule, error=f"{command!r}: {e}"))
            return None

        self.executions[execution.pid] = execution
        self.status = Status.Running

        if self.stopping:
            try:
                await execution.terminate(self.policy.kill)
            except KillError as e:
                await self.events.put(ExecutionFailed(rule=self.rule, error=str(e)))

        return execution

    def forget(self, execution: Execution) -> None:
        self.executions.pop(execution.pid, None)
        if self.current is execution:
            self.current = None
        if not self.executions and self.status is Status.Running:
            self.status = Status.Idle

    def handle_exit(self, execution: Execution) -> bool:
        """
        Report an exit, and decide whether the command should run again.
        """
        exit_code = execution.exit_code
        if execution.kill_requested or exit_code is None:
            return False

        if exit_code != 0:
            self.events.put_nowait(
                ExecutionCrashed(rule=self.rule, pid=execution.pid, exit_code=exit_code)
            )

        if self.stopping:
            return False

        if exit_code == 0:
            return self.policy.restart_on_success
        return self.policy.restart_on_error

    async def call_handler(self, handler: Handler, changes: Changes) -> None:
        try:
            if self.policy.combine_events:
                result = handler([p for p, _ in changes], changes[-1][1] if changes else None)
                if isawaitable(result):
                    await result
            else:
                for path, action in changes:
                    result = handler(path, action)
                    if isawaitable(result):
                        await result
        except Exception as e:
            await self.events.put(ExecutionFailed(rule=self.rule, error=f"{handler!r}: {e!r}"))

    def render(self, template: str, changes: Changes) -> str:
        return render_command(template, changes, prefix=self.policy.exec_variable_prefix)

    async def stop(self) -> None:
        """
        Kill every running child and wait for them to be reaped.

        Raises KillError if any process tree could not be killed.
        """
        self.stopping = True

        running = [e for e in self.executions.values() if not e.has_exited]
        if running:
            self.status = Status.Terminating

        if self.policy.debug and running:
            await self.events.put(
                Debug(rule=self.rule, text=f"Terminate {', '.join(str(e.pid) for e in running)}")
            )

        try:
            await gather(*(e.terminate(self.policy.kill) for e in running))
        except KillError:
            # children that survived the kill are never reaped
            for task in self.supervisors:
                task.cancel()
            raise
        finally:
            await gather(*self.supervisors, return_exceptions=True)

            self.current = None
            self.status = Status.Idle
