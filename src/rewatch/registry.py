from __future__ import annotations

from asyncio import Queue, gather
from collections.abc import Iterable, Mapping
from itertools import count
from typing import Any

from rewatch.config import Config, Handler, Mode, Policy, RuleConfig
from rewatch.errors import RuleNotFound
from rewatch.messages import Debug, Message
from rewatch.rule import Rule


class Registry:
    """
    Creates, indexes and drives rules by id.

    Rule ids and watch ids are handed out by counters shared by every rule in the registry.
    """

    def __init__(self, defaults: Mapping[str, Any] | None = None):
        self.defaults = dict(defaults or {})

        self._rules: list[Rule] = []
        self.rule_ids = count()
        self.watch_ids = count()

        self.subscribers: list[Queue[Message]] = []

    @classmethod
    def from_config(cls, config: Config, names: Iterable[str] | None = None) -> Registry:
        registry = cls(defaults=config.defaults)

        for name in names if names is not None else config.rules:
            registry.add_rule(config.rules[name], name=name)

        return registry

    @property
    def debug(self) -> bool:
        return bool(self.defaults.get("debug", False))

    def add_rule(self, config: RuleConfig, name: str | None = None) -> Rule:
        rule = Rule(
            config=config,
            id=next(self.rule_ids),
            name=name,
            defaults=self.defaults,
            watch_ids=self.watch_ids,
        )
        rule.registry = self

        for q in self.subscribers:
            rule.events.attach(q)

        self._rules.append(rule)

        if self.debug:
            rule.events.put_nowait(Debug(rule=rule.name, text=f"Add rule {rule.to_data()}"))

        return rule

    def add_exec_rule(
        self,
        patterns: str | Iterable[str],
        command: str | Handler | None,
        policy: Policy | Mapping[str, Any] | None = None,
        name: str | None = None,
    ) -> Rule:
        return self.add_rule(self.build(patterns, "exec", command, policy), name=name)

    def add_restart_rule(
        self,
        patterns: str | Iterable[str],
        command: str | None,
        policy: Policy | Mapping[str, Any] | None = None,
        name: str | None = None,
    ) -> Rule:
        return self.add_rule(self.build(patterns, "restart", command, policy), name=name)

    def build(
        self,
        patterns: str | Iterable[str],
        mode: Mode,
        command: str | Handler | None,
        policy: Policy | Mapping[str, Any] | None,
    ) -> RuleConfig:
        if policy is None:
            policy = Policy()
        elif not isinstance(policy, Policy):
            policy = Policy.model_validate(policy)

        return RuleConfig(
            patterns=patterns if isinstance(patterns, str) else tuple(patterns),
            mode=mode,
            command=command,
            policy=policy,
        )

    def remove(self, rule: Rule) -> None:
        if rule not in self._rules:
            return

        index = self._rules.index(rule)
        self._rules.remove(rule)
        rule.registry = None

        if self.debug:
            rule.events.put_nowait(Debug(rule=rule.name, text=f"Delete rule index={index}"))

        for q in self.subscribers:
            rule.events.detach(q)

    def rules(self) -> list[Rule]:
        return list(self._rules)

    def get(self, id: int, operation: str = "find") -> Rule:
        for rule in self._rules:
            if rule.id == id:
                return rule

        raise RuleNotFound(id, operation)

    def get_by_index(self, index: int) -> Rule | None:
        try:
            return self._rules[index]
        except IndexError:
            return None

    async def start(self, id: int) -> None:
        await self.get(id, "start").start()

    async def stop(self, id: int) -> None:
        await self.get(id, "stop").stop()

    async def restart(self, id: int) -> None:
        await self.get(id, "restart").restart()

    async def delete(self, id: int) -> None:
        await self.get(id, "delete").delete()

    async def start_all(self) -> None:
        for rule in self.rules():
            if not rule.started:
                await rule.start()

    async def stop_all(self) -> None:
        """
        Stop every rule, even if some of them fail to stop.

        Raises the first error (usually a KillError) once every rule has had the chance to stop.
        """
        results = await gather(*(rule.stop() for rule in self.rules()), return_exceptions=True)

        for result in results:
            if isinstance(result, BaseException):
                raise result

    def subscribe(self) -> Queue[Message]:
        q: Queue[Message] = Queue()
        self.subscribers.append(q)

        for rule in self._rules:
            rule.events.attach(q)

        return q

    def to_data(self) -> list[dict[str, Any]]:
        return [rule.to_data() for rule in self._rules]
