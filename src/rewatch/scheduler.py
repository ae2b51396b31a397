from __future__ import annotations

from asyncio import Task, TimerHandle, create_task, gather, get_running_loop
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from rewatch.config import Action, Policy

Key = str | None


@dataclass(frozen=True)
class Trigger:
    changes: tuple[tuple[str, Action], ...] = ()
    initial: bool = False

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(path for path, _ in self.changes)


@dataclass
class PendingTrigger:
    key: Key

    # insertion order is first-seen order; re-assigning keeps the position
    changes: dict[str, Action] = field(default_factory=dict)

    debounce: TimerHandle | None = None
    throttle: TimerHandle | None = None
    ready: bool = False

    last_started: float | None = None
    in_flight: int = 0

    def cancel_timers(self) -> None:
        for handle in (self.debounce, self.throttle):
            if handle is not None:
                handle.cancel()
        self.debounce = None
        self.throttle = None


class EventScheduler:
    """
    Turn a stream of (path, action) notifications into dispatches.

    Notifications are grouped per key (one key per path, or a single key for the whole
    rule when events are combined). A key's batch is dispatched once its debounce window
    has closed and its gates are clear: the throttle interval since the previous dispatch
    started, the previous dispatch having finished (wait_done), and a free slot under the
    rule's parallel limit. Keys waiting for a slot are released in arrival order.
    """

    def __init__(
        self,
        policy: Policy,
        dispatch: Callable[[Trigger], Awaitable[None]],
        per_path: bool,
    ):
        self.policy = policy
        self.dispatch = dispatch
        self.per_path = per_path

        self.pending: dict[Key, PendingTrigger] = {}
        self.waiting: deque[Key] = deque()
        self.running = 0
        self.tasks: set[Task[None]] = set()
        self.stopped = False

    def notify(self, path: str, action: Action) -> None:
        if self.stopped:
            return

        trigger = self.trigger_for(path if self.per_path else None)

        trigger.changes[path] = action
        trigger.ready = False
        trigger.cancel_timers()
        trigger.debounce = get_running_loop().call_later(
            self.policy.debounce_ms / 1000,
            self.debounced,
            trigger.key,
        )

    def kick(self) -> None:
        """
        Dispatch an empty, initial trigger for the whole rule right away.
        """
        if self.stopped:
            return

        self.start(self.trigger_for(None), initial=True)

    def trigger_for(self, key: Key) -> PendingTrigger:
        if key not in self.pending:
            self.pending[key] = PendingTrigger(key=key)
        return self.pending[key]

    def debounced(self, key: Key) -> None:
        trigger = self.pending[key]
        trigger.debounce = None
        trigger.ready = True
        self.release(key)

    def throttled(self, key: Key) -> None:
        self.pending[key].throttle = None
        self.release(key)

    def release(self, key: Key) -> None:
        if self.stopped:
            return

        trigger = self.pending.get(key)
        if trigger is None or not trigger.ready or not trigger.changes:
            return

        if self.policy.wait_done and trigger.in_flight:
            # released again when the in-flight dispatch finishes
            return

        if self.policy.throttle_ms is not None and trigger.last_started is not None:
            loop = get_running_loop()
            remaining = trigger.last_started + self.policy.throttle_ms / 1000 - loop.time()
            if remaining > 0:
                if trigger.throttle is None:
                    trigger.throttle = loop.call_later(remaining, self.throttled, key)
                return

        if self.policy.parallel_limit is not None and self.running >= self.policy.parallel_limit:
            if key not in self.waiting:
                self.waiting.append(key)
            return

        self.start(trigger)

    def start(self, trigger: PendingTrigger, initial: bool = False) -> None:
        changes = tuple(trigger.changes.items())
        trigger.changes = {}
        trigger.ready = False
        trigger.cancel_timers()
        if trigger.key in self.waiting:
            self.waiting.remove(trigger.key)

        trigger.last_started = get_running_loop().time()
        trigger.in_flight += 1
        self.running += 1

        task = create_task(
            self.run(trigger, Trigger(changes=changes, initial=initial)),
            name=f"Dispatch {trigger.key or 'all'}",
        )
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    async def run(self, pending: PendingTrigger, trigger: Trigger) -> None:
        try:
            await self.dispatch(trigger)
        finally:
            pending.in_flight -= 1
            self.running -= 1

            self.release(pending.key)
            self.release_waiting()

    def release_waiting(self) -> None:
        while self.waiting and not self.stopped:
            if self.policy.parallel_limit is not None and self.running >= self.policy.parallel_limit:
                return

            key = self.waiting.popleft()
            self.release(key)

            if key in self.waiting:
                # still gated by something other than the parallel limit
                return

    def stop(self) -> None:
        """
        Cancel every pending timer. Nothing is dispatched after this returns.
        """
        self.stopped = True

        for trigger in self.pending.values():
            trigger.cancel_timers()

        self.waiting.clear()

    async def aclose(self) -> None:
        self.stop()
        await gather(*self.tasks, return_exceptions=True)

    def cancel(self) -> None:
        """
        Stop, and also cancel the dispatches that are still in flight.
        """
        self.stop()

        for task in self.tasks:
            task.cancel()
