from __future__ import annotations

from asyncio import Queue, Task, create_task, shield
from collections.abc import Iterator, Mapping
from enum import Enum
from typing import TYPE_CHECKING, Any

from typing_extensions import assert_never

from rewatch.config import Action, RuleConfig
from rewatch.errors import KillError, RuleStateError
from rewatch.fanout import Fanout
from rewatch.messages import (
    Debug,
    Message,
    RuleStarted,
    RuleStopped,
    WatchPathChanged,
    WatchPathsChanged,
)
from rewatch.scheduler import EventScheduler, Trigger
from rewatch.supervisor import ProcessSupervisor
from rewatch.utils import random_color
from rewatch.watchset import PathWatchSet

if TYPE_CHECKING:
    from rewatch.registry import Registry


class RuleState(Enum):
    Stopped = "stopped"
    Starting = "starting"
    Running = "running"
    Stopping = "stopping"


class Rule:
    """
    One set of glob patterns, the command it drives, and the policy in between.

    Each start builds a fresh watch set, scheduler and supervisor; stop tears all three down
    again. Everything the rule does is published as messages to its subscribers.
    """

    def __init__(
        self,
        config: RuleConfig,
        id: int = 0,
        name: str | None = None,
        defaults: Mapping[str, Any] | None = None,
        watch_ids: Iterator[int] | None = None,
    ):
        self.config = config
        self.id = id
        self.name = name or str(id)
        self.policy = config.policy.merged_with(defaults or {})
        self.watch_ids = watch_ids
        self.color = random_color()

        self.registry: Registry | None = None
        self.events: Fanout[Message] = Fanout()

        self.state = RuleState.Stopped
        self.watchset: PathWatchSet | None = None
        self.scheduler: EventScheduler | None = None
        self.supervisor: ProcessSupervisor | None = None
        self.stopping: Task[None] | None = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id}, name={self.name!r}, mode={self.config.mode!r}, state={self.state.value})"

    @property
    def started(self) -> bool:
        return self.state is not RuleState.Stopped

    def subscribe(self) -> Queue[Message]:
        return self.events.consumer()

    def unsubscribe(self, q: Queue[Message]) -> None:
        self.events.detach(q)

    async def start(self) -> None:
        if self.state is not RuleState.Stopped:
            raise RuleStateError(f"Rule {self.name} is already {self.state.value}")

        self.state = RuleState.Starting

        self.supervisor = ProcessSupervisor(
            rule=self.name,
            command=self.config.command,
            policy=self.policy,
            events=self.events,
        )
        self.scheduler = EventScheduler(
            policy=self.policy,
            dispatch=self.dispatch,
            per_path=self.config.mode == "exec" and not self.policy.combine_events,
        )
        self.watchset = PathWatchSet(
            patterns=self.config.patterns,
            policy=self.policy,
            notify=self.notify,
            debug=self.debug if self.policy.debug else None,
            ids=self.watch_ids,
        )

        await self.watchset.start()

        if self.state is not RuleState.Starting:
            # stopped while the first resolution was running
            return

        if self.config.mode == "restart":
            self.scheduler.kick()

        self.state = RuleState.Running

        await self.events.put(RuleStarted(rule=self.name))

    async def stop(self) -> None:
        """
        Stop watching and kill the rule's children.

        Returns once every watch is closed and every child is dead.
        Concurrent calls share the same stop. Raises KillError if a child could not be killed;
        the watches and timers are released regardless.
        """
        if self.state is RuleState.Stopped:
            return

        if self.stopping is None:
            self.stopping = create_task(self.shutdown(), name=f"Stop rule {self.name}")

        await shield(self.stopping)

    async def shutdown(self) -> None:
        assert self.watchset and self.scheduler and self.supervisor

        self.state = RuleState.Stopping

        self.scheduler.stop()
        self.watchset.stop()

        try:
            await self.supervisor.stop()
        except KillError:
            self.scheduler.cancel()
            raise
        finally:
            await self.scheduler.aclose()
            await self.watchset.aclose()

            self.state = RuleState.Stopped
            self.stopping = None

            await self.events.put(RuleStopped(rule=self.name))

    async def restart(self) -> None:
        await self.stop()
        await self.start()

    async def delete(self) -> None:
        await self.stop()

        if self.registry is not None:
            self.registry.remove(self)

    def notify(self, path: str, action: Action) -> None:
        if self.policy.debug:
            self.debug(f"Notify {action} {path}")

        if self.scheduler is not None:
            self.scheduler.notify(path, action)

    async def dispatch(self, trigger: Trigger) -> None:
        assert self.supervisor is not None

        await self.announce(trigger)

        match self.config.mode:
            case "exec":
                await self.supervisor.run(trigger.changes)
            case "restart":
                await self.supervisor.restart(trigger.changes, initial=trigger.initial)
            case never:
                assert_never(never)

    async def announce(self, trigger: Trigger) -> None:
        if not trigger.changes:
            return

        if self.policy.combine_events:
            await self.events.put(WatchPathsChanged(rule=self.name, changes=trigger.changes))
        else:
            for path, action in trigger.changes:
                await self.events.put(WatchPathChanged(rule=self.name, path=path, action=action))

    def debug(self, text: str) -> None:
        self.events.put_nowait(Debug(rule=self.name, text=text))

    def to_data(self) -> dict[str, Any]:
        return {
            **self.config.to_data(),
            "id": self.id,
            "name": self.name,
            "started": self.started,
        }
