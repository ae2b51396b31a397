from __future__ import annotations

import os
from asyncio import Lock, Task, create_task, current_task, gather, get_running_loop, sleep, to_thread
from collections.abc import Callable, Coroutine, Iterator, Sequence
from dataclasses import dataclass
from itertools import count
from typing import Any

from watchfiles import Change, awatch

from rewatch.config import Action, Policy
from rewatch.globs import preprocess_patterns, resolve, watch_roots
from rewatch.utils import hash_file

# how long watchfiles waits for more changes before yielding a group of them
WATCH_STEP_MS = 50

RENAME_CLASS = frozenset((Change.added, Change.deleted))


@dataclass
class WatchEntry:
    path: str
    id: int
    mtime: int
    checksum: str | None = None

    # False between a failed stat and the next reconcile
    watched: bool = True

    @property
    def key(self) -> str:
        return os.path.abspath(self.path)


def scan(patterns: Sequence[str]) -> tuple[list[str], dict[str, bool]]:
    """
    Resolve the patterns, and find which of their root directories exist.
    """
    roots = {root: recursive for root, recursive in watch_roots(patterns).items() if os.path.isdir(root)}

    return resolve(patterns), roots


class PathWatchSet:
    """
    Keep every path resolved from a rule's glob patterns under watch.

    The patterns are re-resolved on start and then every reglob interval; new paths are
    watched (and reported as created, except on the very first resolution), paths that no
    longer resolve are unwatched and reported as deleted.

    The watched paths share one watcher per recursion mode, together with the fixed leading
    directories of the patterns. A watcher is reinstalled whenever its set of paths changes,
    and when a watched file is replaced in place.
    """

    def __init__(
        self,
        patterns: tuple[str, ...],
        policy: Policy,
        notify: Callable[[str, Action], None],
        debug: Callable[[str], None] | None = None,
        ids: Iterator[int] | None = None,
    ):
        self.patterns = preprocess_patterns(patterns)
        self.policy = policy
        self.notify = notify
        self.debug = debug
        self.ids = ids if ids is not None else count()

        self.entries: dict[str, WatchEntry] = {}
        # absolute path -> entry path
        self.keys: dict[str, str] = {}
        self.roots: dict[str, bool] = {}

        # keyed by whether the watcher is recursive
        self.watchers: dict[bool, Task[None]] = {}
        self.targets: dict[bool, frozenset[str]] = {}

        self.reconciling = Lock()
        self.firing = Lock()
        self.requested = False

        self.reconciler: Task[None] | None = None
        self.tasks: set[Task[None]] = set()
        self.closing: list[Task[None]] = []
        self.first = True
        self.stopped = True

    async def start(self) -> None:
        self.stopped = False

        await self.reconcile()

        if not self.stopped:
            self.reconciler = create_task(self.reconcile_periodically(), name="Reconcile watches")

    async def reconcile_periodically(self) -> None:
        while True:
            await sleep(self.policy.reglob_ms / 1000)
            await self.reconcile()

    def request_reconcile(self) -> None:
        """
        Reconcile as soon as possible. Requests made before that reconcile begins share it.
        """
        if self.stopped or self.requested:
            return

        self.requested = True
        self.spawn(self.reconcile(), name="Reconcile watches")

    async def reconcile(self) -> None:
        async with self.reconciling:
            self.requested = False
            if self.stopped:
                return

            # globbing a large tree must not block the loop
            paths, roots = await to_thread(scan, self.patterns)
            if self.stopped:
                return

            self.roots = roots

            for path in paths:
                entry = self.entries.get(path)
                if entry is None:
                    if await self.add(path) and not self.first:
                        self.emit(path, "create")
                elif not entry.watched:
                    await self.refresh(entry)

            resolved = set(paths)
            for path in [p for p in self.entries if p not in resolved]:
                self.remove(path)
                self.emit(path, "delete")

            self.first = False

            self.install()

    async def add(self, path: str) -> bool:
        """
        Start tracking a path. Returns whether the path could be watched.
        """
        try:
            stat = os.stat(path)
        except OSError:
            # the path vanished between resolution and now; the next reconcile sorts it out
            return False

        checksum = await self.checksum(path)
        if self.stopped:
            return False

        entry = self.entries[path] = WatchEntry(
            path=path,
            id=next(self.ids),
            mtime=stat.st_mtime_ns,
            checksum=checksum,
        )
        self.keys[entry.key] = path
        self.log(f"Created watcher: path={path} id={entry.id}")

        return True

    async def refresh(self, entry: WatchEntry) -> None:
        try:
            stat = os.stat(entry.path)
        except OSError:
            return

        entry.mtime = stat.st_mtime_ns
        entry.checksum = await self.checksum(entry.path)
        entry.watched = True
        self.log(f"Created watcher: path={entry.path} id={entry.id}")

    async def checksum(self, path: str) -> str | None:
        if not self.policy.checksum_verify:
            return None

        return await to_thread(hash_file, path)

    def install(self, rewatch: bool = False) -> None:
        """
        Make the running watchers match the current entries and roots.

        With rewatch, the watcher over the entries is reinstalled even if its paths have not changed.
        """
        if self.stopped:
            return

        targets: dict[bool, set[str]] = {False: set(), True: set()}
        for entry in self.entries.values():
            if entry.watched:
                targets[False].add(entry.path)
        for root, recursive in self.roots.items():
            targets[recursive].add(root)

        for recursive, paths in targets.items():
            wanted = frozenset(paths)
            stale = rewatch and not recursive
            if wanted == self.targets.get(recursive) and not stale:
                continue

            self.unwatch(recursive)

            if wanted:
                self.targets[recursive] = wanted
                self.watchers[recursive] = create_task(
                    self.watch(wanted, recursive),
                    name=f"Watch {len(wanted)} paths{' recursively' if recursive else ''}",
                )

    def unwatch(self, recursive: bool) -> None:
        self.targets.pop(recursive, None)

        watcher = self.watchers.pop(recursive, None)
        if watcher is not None:
            watcher.cancel()
            self.closing = [t for t in self.closing if not t.done()]
            self.closing.append(watcher)

    async def watch(self, paths: frozenset[str], recursive: bool) -> None:
        try:
            async for changes in awatch(
                *paths,
                watch_filter=None,
                step=WATCH_STEP_MS,
                recursive=recursive,
            ):
                # handled outside this task, which is cancelled whenever the watcher is reinstalled
                self.spawn(self.handle(changes), name="Handle changes")
        except (OSError, RuntimeError):
            # some path could not be watched; the next install retries
            if self.watchers.get(recursive) is current_task():
                del self.watchers[recursive]
                self.targets.pop(recursive, None)

            self.sweep()

    async def handle(self, changes: set[tuple[Change, str]]) -> None:
        async with self.firing:
            fired: dict[str, bool] = {}
            structural = False

            for change, changed in changes:
                rename = change in RENAME_CLASS
                structural = structural or rename

                path = self.lookup(changed)
                if path is not None:
                    fired[path] = fired.get(path, False) or rename

            rewatch = False
            for path, rename in fired.items():
                entry = self.entries.get(path)
                if entry is not None and await self.fire(entry, rename):
                    rewatch = True

            if rewatch:
                # a replaced file keeps its entry, but the watcher still holds the old file
                get_running_loop().call_soon(self.install, True)

            if structural:
                self.request_reconcile()

    def lookup(self, changed: str) -> str | None:
        key = os.path.abspath(changed)

        # activity directly inside a watched directory belongs to that directory
        return self.keys.get(key) or self.keys.get(os.path.dirname(key))

    async def fire(self, entry: WatchEntry, rename: bool) -> bool:
        """
        Report activity on a watched path. Returns whether the path needs to be watched anew.
        """
        if self.stopped or self.entries.get(entry.path) is not entry:
            return False

        path = entry.path
        self.log(f"Fire watcher: path={path} id={entry.id} rename={rename}")

        try:
            stat = os.stat(path)
        except FileNotFoundError:
            self.remove(path)
            self.emit(path, "delete")
            return False
        except OSError:
            entry.watched = False
            return False

        if await self.is_genuine_change(entry, stat.st_mtime_ns):
            self.emit(path, "change")

        return rename

    async def is_genuine_change(self, entry: WatchEntry, mtime: int) -> bool:
        if self.policy.mtime_check:
            if mtime <= entry.mtime:
                return False
            entry.mtime = mtime

        if self.policy.checksum_verify:
            checksum = await self.checksum(entry.path)
            if checksum == entry.checksum:
                return False
            entry.checksum = checksum

        return True

    def sweep(self) -> None:
        """
        Report every entry whose path is gone, and watch the rest again if any were.
        """
        gone = [path for path in self.entries if not os.path.lexists(path)]
        for path in gone:
            self.remove(path)
            self.emit(path, "delete")

        if gone:
            self.install()

    def emit(self, path: str, action: Action) -> None:
        if self.stopped or action not in self.policy.events:
            return

        self.notify(path, action)

    def remove(self, path: str) -> None:
        entry = self.entries.pop(path, None)
        if entry is not None:
            self.keys.pop(entry.key, None)
            self.log(f"Deleted watcher: path={path} id={entry.id}")

    def spawn(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        task = create_task(coro, name=name)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    def log(self, text: str) -> None:
        if self.debug is not None:
            self.debug(text)

    def stop(self) -> None:
        """
        Cancel the reconcile timer and every watch. No notification is emitted after this returns.
        """
        self.stopped = True

        if self.reconciler is not None:
            self.reconciler.cancel()
            self.closing.append(self.reconciler)
            self.reconciler = None

        for task in list(self.tasks):
            task.cancel()
            self.closing.append(task)

        for recursive in list(self.watchers):
            self.unwatch(recursive)

        self.entries.clear()
        self.keys.clear()
        self.roots.clear()

    async def aclose(self) -> None:
        self.stop()

        closing, self.closing = self.closing, []
        await gather(*closing, return_exceptions=True)
