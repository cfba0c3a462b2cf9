"""
配置加载器（YAML / JSON）。

设计目标：
- 内置默认配置 + 项目 overlay + 额外 overlay，按顺序深度合并（后者覆盖前者）。
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误被静默吞掉）。
- 项目 overlay 位于 `<workspace>/.sandbox_relay/config.yaml`，其次 `config.json`
  （JSON 是 YAML 的子集，统一用 `yaml.safe_load` 解析）。
"""

from __future__ import annotations

from copy import deepcopy
import os
from pathlib import Path
import re
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional, Sequence

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from sandbox_relay.config.defaults import load_default_config_dict
from sandbox_relay.core.errors import ConfigError
from sandbox_relay.queue.paths import get_relay_paths

CONFIG_PATHS_ENV = "SANDBOX_RELAY_CONFIG_PATHS"

EventName = Literal["task_complete", "ralph_complete", "iteration_complete", "error"]

_ACTION_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,63}$")


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - list 与其它类型：overlay 整体覆盖
    """

    for key, value in overlay.items():
        current = base.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            _deep_merge(current, value)
        else:
            base[key] = deepcopy(value)
    return base


class NtfySettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    topic: Optional[str] = None
    server: str = "https://ntfy.sh"


class NotificationsConfig(BaseModel):
    """通知后端选择（决定内置 `notify` action 的行为）。"""

    model_config = ConfigDict(extra="forbid")

    provider: Optional[Literal["ntfy", "command", "pushover", "gotify"]] = None
    ntfy: NtfySettings = Field(default_factory=NtfySettings)
    command: Optional[str] = None


class ChatConfig(BaseModel):
    """聊天平台凭据（只用于生成并执行 `*_notify` 内置 action）。"""

    model_config = ConfigDict(extra="forbid")

    class Telegram(BaseModel):
        model_config = ConfigDict(extra="forbid")

        enabled: Optional[bool] = None
        bot_token: Optional[str] = None
        allowed_chat_ids: List[str] = Field(default_factory=list)

    class Slack(BaseModel):
        model_config = ConfigDict(extra="forbid")

        enabled: Optional[bool] = None
        bot_token: Optional[str] = None
        app_token: Optional[str] = None
        signing_secret: Optional[str] = None
        allowed_channel_ids: List[str] = Field(default_factory=list)

    class Discord(BaseModel):
        model_config = ConfigDict(extra="forbid")

        enabled: Optional[bool] = None
        bot_token: Optional[str] = None
        allowed_guild_ids: List[str] = Field(default_factory=list)
        allowed_channel_ids: List[str] = Field(default_factory=list)

    telegram: Telegram = Field(default_factory=Telegram)
    slack: Slack = Field(default_factory=Slack)
    discord: Discord = Field(default_factory=Discord)

    def telegram_enabled(self) -> bool:
        return bool(self.telegram.bot_token) and self.telegram.enabled is not False

    def slack_enabled(self) -> bool:
        s = self.slack
        return bool(s.bot_token and s.app_token and s.signing_secret) and s.enabled is not False

    def discord_enabled(self) -> bool:
        return bool(self.discord.bot_token) and self.discord.enabled is not False


class DaemonActionConfig(BaseModel):
    """用户配置的 host action。"""

    model_config = ConfigDict(extra="forbid")

    command: str = Field(min_length=1)
    description: Optional[str] = None


class DaemonEventConfig(BaseModel):
    """事件钩子：事件发生时向 daemon 发送的一次请求。"""

    model_config = ConfigDict(extra="forbid")

    action: str = Field(min_length=1)
    args: List[str] = Field(default_factory=list)
    message: Optional[str] = None


class DaemonConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    actions: Dict[str, DaemonActionConfig] = Field(default_factory=dict)
    events: Dict[EventName, List[DaemonEventConfig]] = Field(default_factory=dict)

    @field_validator("actions")
    @classmethod
    def _validate_action_names(cls, value: Dict[str, DaemonActionConfig]) -> Dict[str, DaemonActionConfig]:
        for name in value:
            if not _ACTION_NAME_RE.match(name):
                raise ValueError(f"invalid action name: {name!r}")
        return value


class QueueSettings(BaseModel):
    """队列轮询、截断与回收参数。"""

    model_config = ConfigDict(extra="forbid")

    poll_interval_ms: int = Field(default=100, ge=1)
    listener_interval_ms: int = Field(default=1000, ge=10)
    output_limit_chars: int = Field(default=4000, ge=1)
    host_gc_max_age_ms: int = Field(default=60_000, ge=0)
    sandbox_gc_max_age_ms: int = Field(default=300_000, ge=0)
    strict_reads: bool = False


class TimeoutSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    notify_ms: int = Field(default=10_000, ge=1)
    action_ms: int = Field(default=60_000, ge=1)
    ping_ms: int = Field(default=5_000, ge=1)
    exec_ms: int = Field(default=60_000, ge=1)
    agent_ms: int = Field(default=300_000, ge=1)


class SandboxSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cli_command: str = "ralph"
    agent_command: List[str] = Field(default_factory=lambda: ["claude", "-p", "--dangerously-skip-permissions"])


class HttpSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timeout_sec: float = Field(default=10, gt=0)


class RelayConfig(BaseModel):
    """sandbox-relay 配置根节点。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = 1
    notify_command: Optional[str] = None
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    sandbox: SandboxSettings = Field(default_factory=SandboxSettings)
    http: HttpSettings = Field(default_factory=HttpSettings)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取单个 YAML/JSON 文件；空文件视为 `{}`。"""

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}", code="CONFIG_NOT_FOUND", details={"path": str(path)}) from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file is not valid YAML/JSON: {path}", details={"path": str(path), "reason": str(exc)}) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config root must be a mapping: {path}", details={"path": str(path)})
    return data


def load_config_dicts(config_dicts: Sequence[Mapping[str, Any]]) -> RelayConfig:
    """
    在内置默认配置之上依次合并 overlay dict，返回校验后的 `RelayConfig`。

    异常：
    - ConfigError：schema 校验失败（`details.errors` 为 pydantic 错误列表）
    """

    merged: Dict[str, Any] = load_default_config_dict()
    for overlay in config_dicts:
        if overlay:
            _deep_merge(merged, overlay)
    try:
        return RelayConfig.model_validate(merged)
    except ValidationError as exc:
        errors = [
            {"loc": ".".join(str(p) for p in e.get("loc", ())), "msg": e.get("msg", "")}
            for e in exc.errors()
        ]
        raise ConfigError("Config validation failed", details={"errors": errors}) from exc


def load_config(config_paths: Sequence[Path]) -> RelayConfig:
    """加载并合并多个配置文件（按顺序，后者覆盖前者）。"""

    return load_config_dicts([_load_yaml_file(Path(p)) for p in config_paths])


def discover_project_config(workspace_root: Path) -> Optional[Path]:
    """返回项目配置文件路径（优先 config.yaml，其次 config.json）；都不存在时为 None。"""

    paths = get_relay_paths(workspace_root=workspace_root)
    for candidate in (paths.config_yaml_path, paths.config_json_path):
        if candidate.is_file():
            return candidate
    return None


def _env_overlay_paths() -> List[Path]:
    raw = os.environ.get(CONFIG_PATHS_ENV, "")
    return [Path(p.strip()).expanduser() for p in re.split(r"[,;]", raw) if p.strip()]


def load_relay_config(
    *,
    workspace_root: Path,
    overlay_paths: Sequence[Path] = (),
    require_project: bool = False,
) -> RelayConfig:
    """
    加载工作区的生效配置。

    合并顺序：内置默认 → 项目配置 → `SANDBOX_RELAY_CONFIG_PATHS` → `overlay_paths`。

    参数：
    - require_project：为 True 时缺少项目配置抛 `ConfigError(CONFIG_NOT_FOUND)`
    """

    paths: List[Path] = []
    project = discover_project_config(workspace_root)
    if project is not None:
        paths.append(project)
    elif require_project:
        rp = get_relay_paths(workspace_root=workspace_root)
        raise ConfigError(
            "Project config not found.",
            code="CONFIG_NOT_FOUND",
            details={"candidates": [str(rp.config_yaml_path), str(rp.config_json_path)]},
        )
    paths.extend(_env_overlay_paths())
    for p in overlay_paths:
        path = Path(p).expanduser()
        paths.append(path if path.is_absolute() else Path(workspace_root) / path)
    return load_config(paths)
