"""Activities module for workflow engine."""

from .builtin import (
    BUILTIN_ACTIVITIES,
    register_builtin_activities,
    transform_set,
    transform_pick,
    logic_if,
    logic_switch,
    logic_merge,
    pass_through,
    wait_delay,
    action_http,
)

__all__ = [
    "BUILTIN_ACTIVITIES",
    "register_builtin_activities",
    "transform_set",
    "transform_pick",
    "logic_if",
    "logic_switch",
    "logic_merge",
    "pass_through",
    "wait_delay",
    "action_http",
]
