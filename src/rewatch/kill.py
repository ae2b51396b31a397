from __future__ import annotations

import asyncio
import os
import sys
from asyncio import create_task, gather, get_running_loop, sleep, wait_for
from collections.abc import Callable

import psutil

from rewatch.config import KillOptions
from rewatch.errors import KillError, KillTimeoutError


def _is_zombie(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True
    except psutil.AccessDenied:
        return False


def is_alive_by_signal(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, but belongs to someone else
        return True

    return not _is_zombie(pid)


def is_alive_by_process_table(pid: int) -> bool:
    return pid in psutil.pids() and not _is_zombie(pid)


def select_is_alive(platform: str = sys.platform) -> Callable[[int], bool]:
    # Signal 0 is not a usable probe on Windows and is unreliable on macOS.
    if platform in ("win32", "darwin"):
        return is_alive_by_process_table
    return is_alive_by_signal


is_alive = select_is_alive()


def descendants(pid: int) -> list[int]:
    try:
        return [c.pid for c in psutil.Process(pid).children(recursive=True)]
    except psutil.NoSuchProcess:
        return []


def send_signal(pid: int, signum: int) -> None:
    try:
        os.kill(pid, signum)
    except (ProcessLookupError, PermissionError):
        # already gone, or not ours to signal; the liveness probe decides
        pass


async def wait_until_dead(pid: int, within: float, interval: float) -> bool:
    loop = get_running_loop()
    deadline = loop.time() + within
    while True:
        if not is_alive(pid):
            return True
        if loop.time() >= deadline:
            return False
        await sleep(interval)


async def kill_process(pid: int, options: KillOptions) -> None:
    """
    Signal a single process until it is dead.

    The signal is resent every retry interval, up to the retry count.
    Raises KillError if the process survives one more retry interval after the last send.
    """
    check = options.check_interval_ms / 1000
    retry = options.retry_interval_ms / 1000

    for _ in range(options.retry_count):
        send_signal(pid, options.signum)
        if await wait_until_dead(pid, within=retry, interval=check):
            return

    if not await wait_until_dead(pid, within=retry, interval=check):
        raise KillError(pid)


async def kill_tree(pid: int, options: KillOptions = KillOptions()) -> None:
    """
    Kill a process and every process descended from it.

    Descendants are enumerated before their parent is signalled,
    so that processes reparented by the parent's death are not lost.
    Raises KillError as soon as any process outlives its retries,
    or KillTimeoutError if the whole tree is not dead within the timeout.
    """
    pending: set[int] = set()
    seen: set[int] = set()

    async def kill_branch(p: int) -> None:
        seen.add(p)
        children = descendants(p)

        pending.add(p)
        await kill_process(p, options)
        pending.discard(p)

        alive = [c for c in children if c not in seen and is_alive(c)]
        seen.update(alive)
        branches = [create_task(kill_branch(c)) for c in alive]
        try:
            await gather(*branches)
        finally:
            # the first failed branch fails the whole tree
            for branch in branches:
                branch.cancel()

    try:
        await wait_for(kill_branch(pid), timeout=options.timeout_ms / 1000)
    except asyncio.TimeoutError as e:
        raise KillTimeoutError(pid, pending) from e
