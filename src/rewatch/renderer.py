from __future__ import annotations

from datetime import datetime
from types import TracebackType
from typing import Type

from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.rule import Rule as HorizontalRule
from rich.style import Style
from rich.table import Table
from rich.text import Text
from typing_extensions import assert_never

from rewatch.messages import (
    Debug,
    ExecutionCompleted,
    ExecutionCrashed,
    ExecutionFailed,
    ExecutionKilling,
    ExecutionOutput,
    ExecutionRestarting,
    ExecutionStarted,
    Message,
    RuleStarted,
    RuleStopped,
    WatchPathChanged,
    WatchPathsChanged,
)
from rewatch.registry import Registry
from rewatch.rule import RuleState

prefix_format = "{timestamp:%H:%M:%S} {id}  "
internal_format = "{timestamp:%H:%M:%S}"
ACTION_TO_STYLE = {
    "create": Style(color="green"),
    "delete": Style(color="red"),
    "change": Style(color="yellow"),
}

LifecycleMessage = (
    ExecutionStarted
    | ExecutionCompleted
    | ExecutionCrashed
    | ExecutionKilling
    | ExecutionRestarting
    | ExecutionFailed
    | WatchPathChanged
    | WatchPathsChanged
    | RuleStarted
    | RuleStopped
)


class Renderer:
    def __init__(self, registry: Registry, console: Console):
        self.registry = registry
        self.console = console

        self.live = Live(console=console, auto_refresh=False)

    def __enter__(self) -> None:
        self.live.start(refresh=True)

    def __exit__(
        self,
        exc_type: Type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.live.stop()

    def handle_message(self, message: Message) -> None:
        match message:
            case ExecutionOutput() as msg:
                self.handle_command_message(msg)

            case (
                ExecutionStarted()
                | ExecutionCompleted()
                | ExecutionCrashed()
                | ExecutionKilling()
                | ExecutionRestarting()
                | ExecutionFailed()
                | WatchPathChanged()
                | WatchPathsChanged()
                | RuleStarted()
                | RuleStopped()
            ) as msg:
                self.handle_lifecycle_message(msg)

            case Debug() as msg:
                self.handle_debug_message(msg)

        self.update(message)

    def color(self, name: str) -> str:
        for rule in self.registry.rules():
            if rule.name == name:
                return rule.color
        return "red"

    def info(self, event: Message) -> RenderableType:
        table = Table.grid(padding=(1, 1, 0, 0), expand=False)

        status_table = Table.grid(padding=(2, 2, 0, 0), expand=False)

        rules = self.registry.rules()
        rule_state_displays = []
        for state in (
            RuleState.Running,
            RuleState.Starting,
            RuleState.Stopping,
            RuleState.Stopped,
        ):
            rules_with_state = [r for r in rules if r.state is state]
            if rules_with_state:
                rule_state_displays.append(
                    Text.assemble(
                        state.value.capitalize(),
                        " ",
                        Text(" ").join(
                            Text(r.name, style=Style(color="black", bgcolor=r.color))
                            for r in sorted(rules_with_state, key=lambda r: r.name)
                        ),
                    )
                )

        status_table.add_row(*rule_state_displays)

        table.add_row(
            internal_format.format_map({"timestamp": event.timestamp}),
            status_table,
        )

        running = any(r.state is RuleState.Running for r in rules)

        return Group(
            HorizontalRule(style=Style(color="green" if running else "yellow")),
            table,
        )

    def render_prefix(self, message: Message) -> str:
        return prefix_format.format_map(
            {"id": message.rule, "timestamp": message.timestamp}
        ).ljust(self.prefix_width)

    def handle_command_message(self, message: ExecutionOutput) -> None:
        prefix = Text(
            self.render_prefix(message),
            style=Style(color=self.color(message.rule)),
        )

        body = Text.from_ansi(message.text)

        g = Table.grid()
        g.add_row(prefix, body)

        self.console.print(g)

    def handle_lifecycle_message(self, message: LifecycleMessage) -> None:
        color = self.color(message.rule)

        prefix = Text.from_markup(
            self.render_prefix(message),
            style=Style(color=color, dim=True),
        )

        parts: tuple[str | tuple[str, str] | tuple[str, Style] | Text, ...]

        match message:
            case ExecutionStarted(rule=rule, pid=pid, command=command):
                parts = (
                    (rule, color),
                    f" started (pid {pid}): ",
                    command,
                )
            case ExecutionCompleted(rule=rule, pid=pid, exit_code=exit_code, duration=duration):
                parts = (
                    (rule, color),
                    f" (pid {pid}) exited with code ",
                    (str(exit_code), "green" if exit_code == 0 else "red"),
                    f" in {duration.total_seconds() :.3f} seconds",
                )
            case ExecutionCrashed(rule=rule, pid=pid, exit_code=exit_code):
                parts = (
                    (rule, color),
                    f" (pid {pid}) crashed with code ",
                    (str(exit_code), "red"),
                )
            case ExecutionKilling(rule=rule, pid=pid):
                parts = (
                    "Killing ",
                    (rule, color),
                    f" (pid {pid})",
                )
            case ExecutionRestarting(rule=rule):
                parts = (
                    "Restarting ",
                    (rule, color),
                )
            case ExecutionFailed(rule=rule, error=error):
                parts = (
                    (rule, color),
                    " failed: ",
                    (error, "red"),
                )
            case WatchPathChanged(rule=rule, path=path, action=action):
                parts = (
                    "Running ",
                    (rule, color),
                    " due to detected change: ",
                    Text(path, style=ACTION_TO_STYLE[action]),
                )
            case WatchPathsChanged(rule=rule, changes=changes):
                parts = (
                    "Running ",
                    (rule, color),
                    " due to detected changes: ",
                    Text(" ").join(Text(path, style=ACTION_TO_STYLE[action]) for path, action in changes),
                )
            case RuleStarted(rule=rule):
                parts = (
                    "Watching for ",
                    (rule, color),
                )
            case RuleStopped(rule=rule):
                parts = (
                    "Stopped watching for ",
                    (rule, color),
                )
            case _:
                assert_never(message)

        body = Text.assemble(
            *parts,
            style=Style(dim=True),
        )

        g = Table.grid()
        g.add_row(prefix, body)

        self.console.print(g)

    def handle_debug_message(self, message: Debug) -> None:
        g = Table.grid()

        prefix = Text.from_markup(
            prefix_format.format_map({"id": "DEBUG", "timestamp": message.timestamp}).ljust(
                self.prefix_width
            ),
            style=Style(color="red", dim=True),
        )

        body = Text.assemble(
            f"{message.rule}: {message.text}",
            style=Style(dim=True),
        )

        g.add_row(prefix, body)

        self.console.print(g)

    def handle_shutdown_start(self) -> None:
        self.live.update(Group(HorizontalRule(), Text("Shutting down...")), refresh=True)

    def handle_shutdown_end(self) -> None:
        self.live.update(HorizontalRule(), refresh=True)

    def update(self, message: Message) -> None:
        self.live.update(self.info(message), refresh=True)

    @property
    def prefix_width(self) -> int:
        now = datetime.now()

        return len(
            max(
                (
                    prefix_format.format_map({"timestamp": now, "id": id})
                    for id in ("DEBUG", *(r.name for r in self.registry.rules()))
                ),
                key=len,
            )
        )
