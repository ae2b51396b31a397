from __future__ import annotations

import os
import re
import shlex
from asyncio import Task, create_task, shield
from asyncio.subprocess import PIPE, STDOUT, Process, create_subprocess_exec, create_subprocess_shell
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from time import monotonic

from rewatch.config import Action, KillOptions
from rewatch.fanout import Fanout
from rewatch.kill import kill_tree
from rewatch.messages import (
    Debug,
    ExecutionCompleted,
    ExecutionKilling,
    ExecutionOutput,
    ExecutionStarted,
    Message,
)

OUTPUT_BUFFER_SIZE = 1 * 1024 * 1024  # 1 MiB, default is 64 KiB

# longest names first, so that "file" does not eat the start of "files"
VARIABLES = ("relfiles", "relfile", "reldir", "files", "file", "dir", "cwd", "action")


def render_command(
    template: str,
    changes: Sequence[tuple[str, Action]],
    prefix: str = "@",
    cwd: Path | None = None,
) -> str:
    cwd = cwd or Path.cwd()

    rel_file, action = changes[0] if changes else ("", "")
    rel_files = [p for p, _ in changes]
    if changes:
        action = changes[-1][1]

    values = {
        "cwd": str(cwd),
        "relfile": rel_file,
        "file": str(cwd / rel_file) if rel_file else "",
        "reldir": os.path.dirname(rel_file),
        "dir": str(cwd / os.path.dirname(rel_file)) if rel_file else "",
        "relfiles": shlex.join(rel_files),
        "files": shlex.join(str(cwd / p) for p in rel_files),
        "action": action,
    }

    pattern = re.compile(re.escape(prefix) + "(" + "|".join(VARIABLES) + ")", flags=re.IGNORECASE)

    return pattern.sub(lambda m: values[m.group(1).lower()], template)


async def spawn(command: str, shell: bool | str, capture: bool) -> Process:
    stdio = PIPE if capture else None
    stderr = STDOUT if capture else None
    preexec_fn = os.setsid if os.name == "posix" else None

    if shell is True:
        return await create_subprocess_shell(
            command,
            stdout=stdio,
            stderr=stderr,
            preexec_fn=preexec_fn,
            limit=OUTPUT_BUFFER_SIZE,
        )

    if shell is False:
        program, *args = shlex.split(command)
    else:
        program, *args = (*shlex.split(shell), command)

    return await create_subprocess_exec(
        program,
        *args,
        stdout=stdio,
        stderr=stderr,
        preexec_fn=preexec_fn,
        limit=OUTPUT_BUFFER_SIZE,
    )


@dataclass
class Execution:
    rule: str
    command: str

    events: Fanout[Message] = field(repr=False)

    process: Process
    start_time: float
    reader: Task[None] | None

    kill_requested: bool = False
    termination: Task[None] | None = field(default=None, repr=False)

    @classmethod
    async def start(
        cls,
        rule: str,
        command: str,
        shell: bool | str,
        capture: bool,
        events: Fanout[Message],
    ) -> Execution:
        start_time = monotonic()

        process = await spawn(command=command, shell=shell, capture=capture)

        reader = (
            create_task(
                read_output(rule=rule, process=process, events=events),
                name=f"Read output for {rule} (pid {process.pid})",
            )
            if capture
            else None
        )

        await events.put(ExecutionStarted(rule=rule, pid=process.pid, command=command))

        return cls(
            rule=rule,
            command=command,
            events=events,
            process=process,
            start_time=start_time,
            reader=reader,
        )

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def exit_code(self) -> int | None:
        return self.process.returncode

    @property
    def has_exited(self) -> bool:
        return self.exit_code is not None

    async def terminate(self, options: KillOptions) -> None:
        """
        Kill this execution's whole process tree.

        Concurrent calls share a single kill; all of them finish when it does.
        """
        if self.termination is None:
            if self.has_exited:
                return

            self.kill_requested = True
            self.termination = create_task(
                kill_tree(self.pid, options),
                name=f"Kill {self.rule} (pid {self.pid})",
            )
            self.events.put_nowait(ExecutionKilling(rule=self.rule, pid=self.pid))

        await shield(self.termination)

    async def wait(self) -> Execution:
        exit_code = await self.process.wait()
        end_time = monotonic()

        if self.reader is not None:
            await self.reader

        await self.events.put(
            ExecutionCompleted(
                rule=self.rule,
                pid=self.pid,
                exit_code=exit_code,
                duration=timedelta(seconds=end_time - self.start_time),
            )
        )

        return self


async def read_output(rule: str, process: Process, events: Fanout[Message]) -> None:
    if process.stdout is None:  # pragma: unreachable
        raise Exception(f"{process} does not have an associated stream reader")

    while True:
        try:
            line = await process.stdout.readline()
        except ValueError:
            # Arises from a LimitOverrunError in readline(),
            # which is raised when the reader's internal buffer size is exceeded.
            await events.put(
                Debug(
                    rule=rule,
                    text=f"Command output buffer size exceeded for rule {rule!r}. Dropping command output buffer contents and continuing.",
                )
            )
            continue

        if not line:
            break

        await events.put(
            ExecutionOutput(
                rule=rule,
                text=line.decode("utf-8", errors="replace").rstrip(),
            )
        )
