"""
Action 表：内置 action 与用户配置 action 的合并解析。

规则：
- 内置 action 由启用的通知/聊天后端动态生成（`build_builtin_actions`）。
- 用户配置 action 与内置同名时覆盖内置（“配置优先”），合并在任何分发决策之前完成。
- 合并后的每一项都带 provenance（`kind`），分发策略据此决定执行位置。
"""

from __future__ import annotations

from typing import Dict, Iterator, List, Literal, Optional

from pydantic import BaseModel, ConfigDict

from sandbox_relay.config.loader import RelayConfig
from sandbox_relay.core.errors import UnknownActionError
from sandbox_relay.notifications.backends import ntfy_url

ActionKind = Literal["builtin", "configured"]
# 内置通知 action 不走 shell，由 daemon 直接调用 HTTP 后端
Handler = Literal["shell", "ntfy", "telegram", "slack", "discord"]


class ActionSpec(BaseModel):
    """一个可分发的 action。"""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    command: str
    description: Optional[str] = None
    kind: ActionKind
    handler: Handler = "shell"
    overrides_builtin: bool = False

    @property
    def summary(self) -> str:
        return self.description or self.command


def _builtin(name: str, command: str, description: str, handler: Handler = "shell") -> ActionSpec:
    return ActionSpec(name=name, command=command, description=description, kind="builtin", handler=handler)


def build_builtin_actions(config: RelayConfig) -> Dict[str, ActionSpec]:
    """按配置生成内置 action（插入顺序即展示顺序）。"""

    actions: Dict[str, ActionSpec] = {
        "ping": _builtin("ping", "echo pong", "Health check - responds with 'pong'"),
    }

    notifications = config.notifications
    url = ntfy_url(config)
    if notifications.provider == "ntfy" and url is not None:
        actions["notify"] = _builtin(
            "notify", url, f"Send notification via ntfy to {notifications.ntfy.topic}", handler="ntfy"
        )
    elif notifications.provider == "command" and notifications.command:
        actions["notify"] = _builtin("notify", notifications.command, "Send notification to host")
    elif config.notify_command:
        actions["notify"] = _builtin("notify", config.notify_command, "Send notification to host")

    chat = config.chat
    if chat.telegram_enabled():
        actions["telegram_notify"] = _builtin(
            "telegram_notify", "telegram", "Send notification via Telegram", handler="telegram"
        )
    if chat.slack_enabled():
        actions["slack_notify"] = _builtin("slack_notify", "slack", "Send notification via Slack", handler="slack")
    if chat.discord_enabled():
        actions["discord_notify"] = _builtin(
            "discord_notify", "discord", "Send notification via Discord", handler="discord"
        )

    cli = config.sandbox.cli_command
    actions["chat_status"] = _builtin(
        "chat_status", f"{cli} prd status --json 2>/dev/null || echo '{{}}'", "Get PRD status as JSON"
    )
    actions["chat_add"] = _builtin("chat_add", f"{cli} add", "Add a new task to the PRD")
    return actions


def configured_actions(config: RelayConfig) -> Dict[str, ActionSpec]:
    return {
        name: ActionSpec(name=name, command=item.command, description=item.description, kind="configured")
        for name, item in config.daemon.actions.items()
    }


class ActionTable:
    """合并后的 action 表（只读）。"""

    def __init__(self, entries: Dict[str, ActionSpec]) -> None:
        self._entries = dict(entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __iter__(self) -> Iterator[ActionSpec]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def names(self) -> List[str]:
        return list(self._entries)

    def get(self, name: str) -> Optional[ActionSpec]:
        return self._entries.get(name)

    def require(self, name: str) -> ActionSpec:
        """查找 action；不存在时抛 `UnknownActionError`（携带已知名称列表）。"""

        spec = self._entries.get(name)
        if spec is None:
            raise UnknownActionError(name, self.names())
        return spec

    def builtins(self) -> List[ActionSpec]:
        return [a for a in self if a.kind == "builtin"]

    def configured(self) -> List[ActionSpec]:
        return [a for a in self if a.kind == "configured"]

    def render_list(self) -> str:
        """列表展示：先内置（`[built-in]`），再用户配置（覆盖内置的标 `[override]`）。"""

        if not self._entries:
            return "No actions available."
        lines = ["Available actions:", ""]
        for a in self.builtins():
            lines.append(f"  {a.name:<20} {a.summary} [built-in]")
        for a in self.configured():
            marker = " [override]" if a.overrides_builtin else ""
            lines.append(f"  {a.name:<20} {a.summary}{marker}")
        return "\n".join(lines)


def resolve_action_table(builtins: Dict[str, ActionSpec], configured: Dict[str, ActionSpec]) -> ActionTable:
    """合并内置与配置 action；同名时配置优先并标记 `overrides_builtin`。"""

    merged: Dict[str, ActionSpec] = dict(builtins)
    for name, spec in configured.items():
        merged[name] = spec.model_copy(update={"overrides_builtin": name in builtins, "kind": "configured"})
    return ActionTable(merged)


def action_table_for(config: RelayConfig) -> ActionTable:
    return resolve_action_table(build_builtin_actions(config), configured_actions(config))
