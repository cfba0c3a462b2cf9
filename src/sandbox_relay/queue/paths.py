from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Optional

STATE_DIR_NAME = ".sandbox_relay"
MESSAGES_FILE_NAME = "messages.json"
SANDBOX_WORKSPACE = Path("/workspace")

_IN_SANDBOX_ENV = "SANDBOX_RELAY_IN_SANDBOX"
_CGROUP_MARKERS = ("docker", "podman", "/lxc/", "containerd")


@dataclass(frozen=True)
class RelayPaths:
    """共享状态目录与关键文件路径集合。"""

    workspace_root: Path
    state_dir: Path
    messages_path: Path
    lock_path: Path
    config_yaml_path: Path
    config_json_path: Path
    run_pid_path: Path


def get_relay_paths(*, workspace_root: Path) -> RelayPaths:
    """
    获取共享状态路径（均位于 workspace_root/.sandbox_relay 下）。

    参数：
    - workspace_root：项目根目录（sandbox 内为挂载点 `/workspace`）
    """

    ws = Path(workspace_root).expanduser().resolve()
    state_dir = ws / STATE_DIR_NAME
    messages_path = state_dir / MESSAGES_FILE_NAME
    return RelayPaths(
        workspace_root=ws,
        state_dir=state_dir,
        messages_path=messages_path,
        lock_path=messages_path.with_name(MESSAGES_FILE_NAME + ".lock"),
        config_yaml_path=state_dir / "config.yaml",
        config_json_path=state_dir / "config.json",
        run_pid_path=state_dir / "run.pid",
    )


def get_messages_path(*, in_sandbox: Optional[bool] = None, workspace_root: Optional[Path] = None) -> Path:
    """
    返回当前进程应使用的队列文件路径。

    - sandbox 内：`/workspace/.sandbox_relay/messages.json`
    - host 上：`<workspace_root 或 cwd>/.sandbox_relay/messages.json`
    """

    if in_sandbox is None:
        in_sandbox = is_running_in_sandbox()
    if workspace_root is None:
        workspace_root = SANDBOX_WORKSPACE if in_sandbox else Path.cwd()
    return get_relay_paths(workspace_root=workspace_root).messages_path


def is_running_in_sandbox() -> bool:
    """
    探测当前进程是否运行在容器 sandbox 内。

    判定顺序：
    - `SANDBOX_RELAY_IN_SANDBOX=1|0` 显式覆盖
    - `DEVCONTAINER=true`
    - `/.dockerenv` 存在
    - `/proc/1/cgroup` 含 docker/podman/lxc/containerd
    - `container` 环境变量为 docker/podman
    """

    override = os.environ.get(_IN_SANDBOX_ENV, "").strip().lower()
    if override in {"1", "true", "yes"}:
        return True
    if override in {"0", "false", "no"}:
        return False

    if os.environ.get("DEVCONTAINER", "").lower() == "true":
        return True
    if Path("/.dockerenv").exists():
        return True
    try:
        cgroup = Path("/proc/1/cgroup").read_text(encoding="utf-8", errors="replace")
    except OSError:
        cgroup = ""
    if any(marker in cgroup for marker in _CGROUP_MARKERS):
        return True
    return os.environ.get("container", "") in {"docker", "podman"}
