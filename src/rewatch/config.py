from __future__ import annotations

import signal
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Annotated, Any, Literal, Optional, Union

from identify.identify import tags_from_path
from pydantic import Field, field_validator

from rewatch.globs import split_patterns
from rewatch.model import Model

Action = Literal["create", "change", "delete"]
Mode = Literal["exec", "restart"]
Handler = Callable[..., Any]
ID = Annotated[str, Field(pattern=r"\w+")]

ALL_ACTIONS: frozenset[Action] = frozenset(("create", "change", "delete"))
FUNCTION_PLACEHOLDER = "<FUNCTION>"


class KillOptions(Model):
    signal: Annotated[
        Union[int, str],
        Field(description="The signal sent to each process in the tree."),
    ] = "SIGTERM"
    check_interval_ms: Annotated[
        float,
        Field(description="How often to check whether a signalled process has died.", gt=0),
    ] = 20
    retry_interval_ms: Annotated[
        float,
        Field(description="How long to wait for a process to die before signalling it again.", gt=0),
    ] = 500
    retry_count: Annotated[
        int,
        Field(description="The number of times the signal is sent to each process.", ge=1),
    ] = 5
    timeout_ms: Annotated[
        float,
        Field(description="The maximum time the whole kill may take.", gt=0),
    ] = 5000

    @field_validator("signal")
    @classmethod
    def known_signal(cls, sig: int | str) -> int | str:
        if isinstance(sig, str) and sig not in signal.Signals.__members__:
            raise ValueError(f"Unknown signal {sig!r}")
        return sig

    @property
    def signum(self) -> signal.Signals:
        if isinstance(self.signal, str):
            return signal.Signals[self.signal]
        return signal.Signals(self.signal)


class Policy(Model):
    debounce_ms: Annotated[
        float,
        Field(
            description="Quiet period after the last change before the command runs.",
            ge=0,
        ),
    ] = 500
    throttle_ms: Annotated[
        Optional[float],
        Field(
            description="Minimum time between the starts of two runs for the same key.",
            ge=0,
        ),
    ] = None
    reglob_ms: Annotated[
        float,
        Field(
            description="How often the glob patterns are re-resolved to pick up new and removed paths.",
            gt=0,
        ),
    ] = 2000
    combine_events: Annotated[
        bool,
        Field(description="Merge all changed paths into one batched run instead of one run per path."),
    ] = False
    wait_done: Annotated[
        bool,
        Field(description="Withhold a new run until the previous run for the same key has exited."),
    ] = False
    parallel_limit: Annotated[
        Optional[int],
        Field(description="Maximum number of concurrent runs for the whole rule.", ge=1),
    ] = None
    events: Annotated[
        frozenset[Action],
        Field(description="The kinds of changes that trigger runs."),
    ] = ALL_ACTIONS
    mtime_check: Annotated[
        bool,
        Field(description="Only report a change when the modification time has increased."),
    ] = True
    checksum_verify: Annotated[
        bool,
        Field(description="Only report a change when the file contents have changed."),
    ] = False
    restart_on_error: Annotated[
        bool,
        Field(description="Run the command again when it exits with a non-zero code."),
    ] = False
    restart_on_success: Annotated[
        bool,
        Field(description="Run the command again when it exits with code 0."),
    ] = False
    shell: Annotated[
        Union[bool, str],
        Field(
            description="Run commands through the default shell (true), directly (false), or through the given shell command line.",
        ),
    ] = True
    write_to_console: Annotated[
        bool,
        Field(description="Let the child inherit the console instead of capturing its output."),
    ] = True
    debug: Annotated[
        bool,
        Field(description="Emit diagnostic messages about watches and processes."),
    ] = False
    exec_variable_prefix: Annotated[
        str,
        Field(description="The character that introduces command template variables.", min_length=1),
    ] = "@"
    kill: Annotated[
        KillOptions,
        Field(description="How running commands are terminated."),
    ] = KillOptions()

    def merged_with(self, defaults: Mapping[str, object]) -> Policy:
        if not defaults:
            return self
        return Policy.model_validate({**defaults, **self.model_dump(exclude_unset=True)})


class RuleConfig(Model):
    patterns: Annotated[
        tuple[str, ...],
        Field(
            description="Glob patterns to watch. Patterns starting with '!' exclude paths and their subtrees.",
        ),
    ]
    mode: Annotated[
        Mode,
        Field(description="Run the command once per change (exec) or keep it running and restart it (restart)."),
    ] = "exec"
    command: Annotated[
        Union[str, Handler, None],
        Field(description="The command template to run, or a function called with the changed path(s)."),
    ] = None
    policy: Policy = Policy()

    @field_validator("patterns", mode="before")
    @classmethod
    def split_comma_joined(cls, patterns: object) -> object:
        if isinstance(patterns, str):
            return split_patterns(patterns)
        return patterns

    def to_data(self) -> dict[str, Any]:
        data = self.model_dump(mode="python", exclude={"command"})
        data["patterns"] = list(self.patterns)
        data["policy"]["events"] = sorted(self.policy.events)
        data["command"] = FUNCTION_PLACEHOLDER if callable(self.command) else self.command
        return data


class Config(Model):
    defaults: Annotated[
        dict[str, Any],
        Field(description="Policy values applied to every rule unless the rule sets them itself."),
    ] = {}
    rules: Annotated[
        Mapping[ID, RuleConfig],
        Field(description="A mapping of IDs to rules."),
    ] = {}

    @field_validator("defaults")
    @classmethod
    def defaults_are_policy_fields(cls, defaults: dict[str, Any]) -> dict[str, Any]:
        unknown = set(defaults) - set(Policy.model_fields)
        if unknown:
            raise ValueError(f"Unknown policy options: {', '.join(sorted(unknown))}")
        Policy.model_validate(defaults)
        return defaults

    @classmethod
    def from_file(cls, file: Path) -> Config:
        tags = tags_from_path(str(file))

        if "yaml" in tags:
            return cls.model_validate_yaml(file.read_text())
        else:
            raise NotImplementedError("Currently, only YAML files are supported.")
