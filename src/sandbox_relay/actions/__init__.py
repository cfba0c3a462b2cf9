from __future__ import annotations

from sandbox_relay.actions.dispatcher import ActionDispatcher, DispatchOutcome, route_for
from sandbox_relay.actions.runner import ActionRunner, build_shell_command
from sandbox_relay.actions.table import (
    ActionSpec,
    ActionTable,
    action_table_for,
    build_builtin_actions,
    configured_actions,
    resolve_action_table,
)

__all__ = [
    "ActionDispatcher",
    "ActionRunner",
    "ActionSpec",
    "ActionTable",
    "DispatchOutcome",
    "action_table_for",
    "build_builtin_actions",
    "build_shell_command",
    "configured_actions",
    "resolve_action_table",
    "route_for",
]
