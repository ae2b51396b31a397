from rewatch.config import Config, KillOptions, Policy, RuleConfig
from rewatch.errors import KillError, KillTimeoutError, RewatchError, RuleNotFound, RuleStateError
from rewatch.kill import is_alive, kill_tree
from rewatch.registry import Registry
from rewatch.rule import Rule, RuleState

__all__ = [
    "Config",
    "KillError",
    "KillOptions",
    "KillTimeoutError",
    "Policy",
    "Registry",
    "RewatchError",
    "Rule",
    "RuleConfig",
    "RuleNotFound",
    "RuleState",
    "RuleStateError",
    "is_alive",
    "kill_tree",
]
