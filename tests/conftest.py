from __future__ import annotations

import os
from asyncio import Queue, get_running_loop, sleep, wait_for
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import TypeVar

import psutil
import pytest
from rich.console import Console, Group
from rich.rule import Rule
from rich.text import Text
from typer.testing import Result

from rewatch.fanout import Fanout
from rewatch.messages import Message

console = Console()

M = TypeVar("M", bound=Message)


@pytest.fixture
def events() -> Fanout[Message]:
    return Fanout()


@pytest.fixture
def q(events: Fanout[Message]) -> Queue[Message]:
    return events.consumer()


@pytest.fixture
def in_tmp_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    monkeypatch.chdir(tmp_path)
    yield tmp_path


async def wait_until(predicate: Callable[[], bool], timeout: float = 5) -> None:
    deadline = get_running_loop().time() + timeout
    while not predicate():
        if get_running_loop().time() > deadline:
            raise AssertionError(f"Timed out waiting for {predicate}")
        await sleep(0.01)


async def next_message(q: Queue[Message], kind: type[M], timeout: float = 5) -> M:
    """
    Skip messages until one of the given kind arrives.
    """

    async def get() -> M:
        while True:
            msg = await q.get()
            if isinstance(msg, kind):
                return msg

    return await wait_for(get(), timeout=timeout)


def drain(q: Queue[Message]) -> list[Message]:
    messages = []
    while not q.empty():
        messages.append(q.get_nowait())
    return messages


def touch_later(path: Path, content: str) -> None:
    """
    Rewrite a file and push its mtime forward, so that the change can never be mistaken for a no-op.
    """
    before = path.stat().st_mtime_ns if path.exists() else 0
    path.write_text(content)
    after = max(path.stat().st_mtime_ns, before + 1_000_000_000)
    os.utime(path, ns=(after, after))


def kill_everything(*pids: int) -> None:
    for pid in pids:
        try:
            process = psutil.Process(pid)
            processes = [process, *process.children(recursive=True)]
        except psutil.NoSuchProcess:
            continue

        for p in processes:
            try:
                p.kill()
            except psutil.NoSuchProcess:
                pass


def show_output(result: Result) -> None:
    console.print(
        Group(
            Rule(title="Start Command Output", characters="v"),
            Text.from_ansi(result.output),
            Rule(title="End Command Output", characters="^"),
        ),
    )
