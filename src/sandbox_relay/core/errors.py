"""
sandbox-relay 错误分类（异常类型）。

说明：
- `FrameworkError` 携带稳定英文 `code/message/details`，便于 CLI 与日志统一输出。
- 跨越队列边界（sandbox ↔ host）的失败一律转成 `MessageResponse(success=False)` 数据，
  异常只在单个进程内部的控制流中使用。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional


class RelayError(Exception):
    """sandbox-relay 错误基类（不建议直接抛出）。"""


@dataclass(frozen=True)
class FrameworkIssue:
    """结构化问题对象（可用于 CLI 输出与日志）。"""

    code: str
    message: str
    details: Dict[str, Any]


class FrameworkError(RelayError):
    """框架层结构化错误（英文 `code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建框架错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：英文错误消息
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_issue(self) -> FrameworkIssue:
        """把异常转换为可序列化问题对象。"""

        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


class QueueReadError(FrameworkError):
    """消息队列文件存在但无法解析（JSON 损坏或根节点不是数组）。"""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(
            code="QUEUE_READ_FAILED",
            message=f"Failed to read message queue: {reason}",
            details={"path": path, "reason": reason},
        )


class UnknownActionError(FrameworkError):
    """请求的 action 既不是内置也不是用户配置的 action。"""

    def __init__(self, name: str, known: List[str]) -> None:
        super().__init__(
            code="ACTION_UNKNOWN",
            message=f"Unknown action: {name}",
            details={"action": name, "known": list(known)},
        )
        self.name = name
        self.known = list(known)


class ConfigError(FrameworkError):
    """配置缺失或校验失败。"""

    def __init__(self, message: str, *, code: str = "CONFIG_INVALID", details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(code=code, message=message, details=details or {})


class SandboxStateUnavailableError(FrameworkError):
    """sandbox 内看不到共享状态目录（通常是未挂载项目目录）。"""

    def __init__(self, path: str) -> None:
        super().__init__(
            code="STATE_DIR_UNAVAILABLE",
            message="Shared state directory is not available; is the project directory mounted?",
            details={"path": path},
        )


class NotificationError(RelayError):
    """通知后端调用失败（HTTP 错误、缺少凭据等）。"""
