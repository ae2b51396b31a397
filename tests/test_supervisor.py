from __future__ import annotations

from asyncio import Queue, create_task, sleep
from pathlib import Path

import pytest

from rewatch.config import Action, KillOptions, Policy
from rewatch.errors import KillError
from rewatch.fanout import Fanout
from rewatch.kill import is_alive
from rewatch.messages import (
    ExecutionCompleted,
    ExecutionCrashed,
    ExecutionFailed,
    ExecutionKilling,
    ExecutionRestarting,
    ExecutionStarted,
    Message,
)
from rewatch.supervisor import ProcessSupervisor, Status
from tests.conftest import drain, kill_everything, next_message, wait_until

CHANGE: tuple[tuple[str, Action], ...] = (("a.txt", "change"),)


def supervisor(
    command: object, events: Fanout[Message], **policy: object
) -> ProcessSupervisor:
    return ProcessSupervisor(
        rule="foo",
        command=command,  # type: ignore[arg-type]
        policy=Policy.model_validate(policy),
        events=events,
    )


def kinds(messages: list[Message]) -> list[type[Message]]:
    return [
        type(m)
        for m in messages
        if isinstance(
            m,
            (
                ExecutionStarted,
                ExecutionCompleted,
                ExecutionCrashed,
                ExecutionKilling,
                ExecutionRestarting,
                ExecutionFailed,
            ),
        )
    ]


async def test_exec_runs_to_completion(
    events: Fanout[Message], q: Queue[Message], tmp_path: Path
) -> None:
    out = tmp_path / "out"
    s = supervisor(f"echo @action @relfile > {out}", events)

    await s.run(CHANGE)

    assert out.read_text() == "change a.txt\n"
    assert kinds(drain(q)) == [ExecutionStarted, ExecutionCompleted]
    assert s.status is Status.Idle
    assert s.executions == {}


async def test_exec_reports_crash(events: Fanout[Message], q: Queue[Message]) -> None:
    s = supervisor("exit 2", events)

    await s.run(CHANGE)

    messages = drain(q)
    assert kinds(messages) == [ExecutionStarted, ExecutionCompleted, ExecutionCrashed]
    crash = messages[-1]
    assert isinstance(crash, ExecutionCrashed)
    assert crash.exit_code == 2


async def test_exec_restarts_on_error_until_success(
    events: Fanout[Message], q: Queue[Message], tmp_path: Path
) -> None:
    counter = tmp_path / "counter"
    s = supervisor(
        f"echo x >> {counter}; test $(wc -l < {counter}) -ge 3",
        events,
        restart_on_error=True,
    )

    await s.run(CHANGE)

    assert counter.read_text().count("x") == 3
    assert kinds(drain(q)).count(ExecutionStarted) == 3


async def test_exec_missing_program_is_reported_not_raised(
    events: Fanout[Message], q: Queue[Message]
) -> None:
    s = supervisor("definitely-not-a-real-program-5c1f", events, shell=False)

    await s.run(CHANGE)

    messages = drain(q)
    assert kinds(messages) == [ExecutionFailed]
    assert s.status is Status.Idle


async def test_sync_handler_called_per_path(events: Fanout[Message]) -> None:
    calls: list[tuple[str, str]] = []
    s = supervisor(lambda path, action: calls.append((path, action)), events)

    await s.run((("a", "create"), ("b", "change")))

    assert calls == [("a", "create"), ("b", "change")]


async def test_async_handler_called_with_combined_paths(events: Fanout[Message]) -> None:
    calls: list[tuple[list[str], str]] = []

    async def handler(paths: list[str], action: str) -> None:
        await sleep(0)
        calls.append((paths, action))

    s = supervisor(handler, events, combine_events=True)

    await s.run((("a", "create"), ("b", "change")))

    assert calls == [(["a", "b"], "change")]


async def test_handler_exceptions_are_reported(events: Fanout[Message], q: Queue[Message]) -> None:
    def handler(path: str, action: str) -> None:
        raise ValueError("boom")

    s = supervisor(handler, events)

    await s.run(CHANGE)

    (msg,) = drain(q)
    assert isinstance(msg, ExecutionFailed)
    assert "boom" in msg.error


async def test_no_command_does_nothing(events: Fanout[Message], q: Queue[Message]) -> None:
    s = supervisor(None, events)

    await s.run(CHANGE)
    await s.restart(CHANGE)

    assert drain(q) == []


async def test_restart_replaces_the_current_child(
    events: Fanout[Message], q: Queue[Message]
) -> None:
    s = supervisor("sleep 30", events)

    await s.restart((), initial=True)
    first = s.current
    assert first is not None

    await s.restart(CHANGE)
    second = s.current
    assert second is not None

    assert first is not second
    assert first.kill_requested
    assert not is_alive(first.pid)
    assert s.status is Status.Running

    await s.stop()

    assert not is_alive(second.pid)
    assert s.status is Status.Idle

    observed = kinds(drain(q))
    assert observed[:3] == [ExecutionStarted, ExecutionRestarting, ExecutionKilling]
    assert observed.count(ExecutionStarted) == 2
    assert observed.count(ExecutionKilling) == 2
    assert ExecutionCrashed not in observed


async def test_restart_on_error_respawns_after_natural_exit(
    events: Fanout[Message], q: Queue[Message]
) -> None:
    s = supervisor("sleep 0.2; exit 1", events, restart_on_error=True)

    await s.restart((), initial=True)

    started = await next_message(q, ExecutionStarted)
    completed = await next_message(q, ExecutionCompleted)
    restarted = await next_message(q, ExecutionStarted)

    assert completed.pid == started.pid
    assert completed.exit_code == 1
    assert restarted.pid != started.pid

    await s.stop()


async def test_restart_without_restart_on_error_stays_down(
    events: Fanout[Message], q: Queue[Message]
) -> None:
    s = supervisor("exit 1", events)

    await s.restart((), initial=True)

    await next_message(q, ExecutionCrashed)
    await wait_until(lambda: s.status is Status.Idle)
    await sleep(0.1)

    assert s.current is None
    assert kinds(drain(q)) == []


async def test_killed_children_are_not_reported_as_crashes(
    events: Fanout[Message], q: Queue[Message]
) -> None:
    s = supervisor("sleep 30", events, restart_on_error=True)

    await s.restart((), initial=True)
    await s.stop()

    messages = drain(q)
    assert ExecutionCrashed not in kinds(messages)
    assert kinds(messages).count(ExecutionStarted) == 1


async def test_stop_kills_every_exec_child(events: Fanout[Message], q: Queue[Message]) -> None:
    s = supervisor("sleep 30", events)

    runs = [create_task(s.run(CHANGE)) for _ in range(3)]
    await wait_until(lambda: len(s.executions) == 3)
    pids = list(s.executions)

    await s.stop()
    for run in runs:
        await run

    assert not any(is_alive(pid) for pid in pids)
    assert s.executions == {}


async def test_stop_raises_when_a_child_cannot_be_killed(
    events: Fanout[Message], q: Queue[Message]
) -> None:
    s = ProcessSupervisor(
        rule="foo",
        command="trap '' TERM; while true; do sleep 0.05; done",
        policy=Policy(
            kill=KillOptions(check_interval_ms=10, retry_interval_ms=20, retry_count=2, timeout_ms=300)
        ),
        events=events,
    )

    await s.restart((), initial=True)
    assert s.current is not None
    pid = s.current.pid

    try:
        with pytest.raises(KillError):
            await s.stop()

        assert s.supervisors == set()
    finally:
        kill_everything(pid)
