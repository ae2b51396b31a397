import signal
from pathlib import Path

import pytest
from pydantic import ValidationError

from rewatch.config import FUNCTION_PLACEHOLDER, Config, KillOptions, Policy, RuleConfig


def test_policy_defaults() -> None:
    policy = Policy()

    assert policy.debounce_ms == 500
    assert policy.throttle_ms is None
    assert policy.reglob_ms == 2000
    assert policy.parallel_limit is None
    assert policy.events == {"create", "change", "delete"}
    assert policy.mtime_check is True
    assert policy.checksum_verify is False
    assert policy.shell is True
    assert policy.exec_variable_prefix == "@"
    assert policy.kill == KillOptions()


def test_kill_options_defaults() -> None:
    options = KillOptions()

    assert options.signum is signal.SIGTERM
    assert options.check_interval_ms == 20
    assert options.retry_interval_ms == 500
    assert options.retry_count == 5
    assert options.timeout_ms == 5000


@pytest.mark.parametrize(
    ("sig", "expected"),
    (
        ("SIGKILL", signal.SIGKILL),
        ("SIGINT", signal.SIGINT),
        (int(signal.SIGHUP), signal.SIGHUP),
    ),
)
def test_kill_signal(sig: int | str, expected: signal.Signals) -> None:
    assert KillOptions(signal=sig).signum is expected


def test_unknown_kill_signal_is_rejected() -> None:
    with pytest.raises(ValidationError):
        KillOptions(signal="SIGNOPE")


@pytest.mark.parametrize(
    "kwargs",
    (
        {"parallel_limit": 0},
        {"debounce_ms": -1},
        {"events": ["create", "rename"]},
        {"exec_variable_prefix": ""},
        {"no_such_option": True},
    ),
)
def test_invalid_policy_is_rejected(kwargs: dict[str, object]) -> None:
    with pytest.raises(ValidationError):
        Policy.model_validate(kwargs)


def test_policy_is_frozen() -> None:
    with pytest.raises(ValidationError):
        Policy().debounce_ms = 1  # type: ignore[misc]


def test_rule_values_win_over_defaults() -> None:
    policy = Policy(debounce_ms=100).merged_with({"debounce_ms": 5, "wait_done": True})

    assert policy.debounce_ms == 100
    assert policy.wait_done is True
    assert policy.throttle_ms is None


def test_merging_with_no_defaults_is_identity() -> None:
    policy = Policy(debounce_ms=100)

    assert policy.merged_with({}) is policy


def test_comma_joined_patterns_are_split() -> None:
    assert RuleConfig(patterns="a/*.js, !a/b.js").patterns == ("a/*.js", "!a/b.js")


def test_rule_config_to_data_replaces_functions() -> None:
    def handler(path: str, action: str) -> None:
        pass

    data = RuleConfig(patterns=("*.txt",), command=handler).to_data()

    assert data["command"] == FUNCTION_PLACEHOLDER
    assert data["patterns"] == ["*.txt"]
    assert data["mode"] == "exec"
    assert data["policy"]["events"] == ["change", "create", "delete"]


def test_rule_config_to_data_keeps_command_templates() -> None:
    assert RuleConfig(patterns=("*.txt",), command="echo @file").to_data()["command"] == "echo @file"


def test_config_from_yaml_file(tmp_path: Path) -> None:
    path = tmp_path / "rewatch.yaml"
    path.write_text(
        """
defaults:
  debounce_ms: 100

rules:
  tests:
    patterns: "src/**/*.py, !src/generated"
    command: pytest @relfile
    policy:
      wait_done: true
  server:
    patterns: ["src/**/*.py"]
    mode: restart
    command: python -m server
"""
    )

    config = Config.from_file(path)

    assert config.defaults == {"debounce_ms": 100}
    assert set(config.rules) == {"tests", "server"}
    assert config.rules["tests"].patterns == ("src/**/*.py", "!src/generated")
    assert config.rules["tests"].policy.wait_done is True
    assert config.rules["server"].mode == "restart"


def test_config_from_empty_yaml_file(tmp_path: Path) -> None:
    path = tmp_path / "rewatch.yaml"
    path.write_text("")

    assert Config.from_file(path) == Config()


def test_config_rejects_unknown_defaults() -> None:
    with pytest.raises(ValidationError):
        Config.model_validate({"defaults": {"debounce": 100}})


def test_config_rejects_unknown_mode() -> None:
    with pytest.raises(ValidationError):
        Config.model_validate({"rules": {"a": {"patterns": ["*"], "mode": "reload"}}})


def test_only_yaml_config_files_are_supported(tmp_path: Path) -> None:
    path = tmp_path / "rewatch.json"
    path.write_text("{}")

    with pytest.raises(NotImplementedError):
        Config.from_file(path)
