"""
请求发送方：入队 + 轮询等待响应。

轮询粒度（默认 100ms）是可观察行为：同步版本用 `time.sleep`，
异步版本用 `asyncio.sleep`，两者共享同一个“检查一次”的步骤。
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
import time
from typing import Callable, List, Optional

from sandbox_relay.core.errors import SandboxStateUnavailableError
from sandbox_relay.queue.mailbox import MessageQueue
from sandbox_relay.queue.models import MessageResponse, Origin
from sandbox_relay.queue.paths import get_relay_paths, is_running_in_sandbox, SANDBOX_WORKSPACE
from sandbox_relay.queue.store import JsonFileMessageStore

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_MS = 100
DEFAULT_REQUEST_TIMEOUT_MS = 10_000
PING_TIMEOUT_MS = 5_000


def await_response(
    queue: MessageQueue,
    message_id: str,
    *,
    timeout_ms: int,
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Optional[MessageResponse]:
    """
    阻塞等待某条消息的响应。

    参数：
    - queue：目标队列
    - message_id：`enqueue` 返回的关联 id
    - timeout_ms：最长等待时间
    - poll_interval_ms：两次读取之间的间隔

    返回：
    - `MessageResponse`：消息已 done（该消息同时从队列移除）
    - None：超时；消息保持原状，留给垃圾回收
    """

    if poll_interval_ms < 1:
        raise ValueError("poll_interval_ms must be >= 1")
    deadline = clock() + timeout_ms / 1000.0
    while True:
        response = queue.take_response(message_id)
        if response is not None:
            return response
        remaining = deadline - clock()
        if remaining <= 0:
            logger.debug("No response for %s within %dms", message_id, timeout_ms)
            return None
        sleep(min(poll_interval_ms / 1000.0, remaining))


async def await_response_async(
    queue: MessageQueue,
    message_id: str,
    *,
    timeout_ms: int,
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
) -> Optional[MessageResponse]:
    """`await_response` 的 asyncio 版本（轮询期间让出事件循环）。"""

    if poll_interval_ms < 1:
        raise ValueError("poll_interval_ms must be >= 1")
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_ms / 1000.0
    while True:
        response = queue.take_response(message_id)
        if response is not None:
            return response
        remaining = deadline - loop.time()
        if remaining <= 0:
            return None
        await asyncio.sleep(min(poll_interval_ms / 1000.0, remaining))


class RelayClient:
    """
    面向调用方的请求客户端（enqueue + await，失败一律转为响应数据）。

    参数：
    - queue：目标队列
    - state_dir：共享状态目录（用于 `is_available` 探测）
    - origin：写入消息的 `from` 标记；发往 host daemon 的请求使用 `sandbox`
    - ping_timeout_ms：`ping()` 未显式给出超时时使用的等待时间
    """

    def __init__(
        self,
        queue: MessageQueue,
        *,
        state_dir: Optional[Path] = None,
        origin: Origin = "sandbox",
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        ping_timeout_ms: int = PING_TIMEOUT_MS,
    ) -> None:
        self.queue = queue
        self.state_dir = state_dir
        self.origin: Origin = origin
        self.poll_interval_ms = poll_interval_ms
        self.ping_timeout_ms = ping_timeout_ms

    @classmethod
    def for_workspace(
        cls,
        workspace_root: Optional[Path] = None,
        *,
        in_sandbox: Optional[bool] = None,
        origin: Origin = "sandbox",
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        ping_timeout_ms: int = PING_TIMEOUT_MS,
        strict: bool = False,
    ) -> "RelayClient":
        """按运行位置构造客户端（sandbox 内默认 `/workspace`，host 默认 cwd）。"""

        if workspace_root is None:
            if in_sandbox is None:
                in_sandbox = is_running_in_sandbox()
            workspace_root = SANDBOX_WORKSPACE if in_sandbox else Path.cwd()
        paths = get_relay_paths(workspace_root=workspace_root)
        queue = MessageQueue(JsonFileMessageStore(paths.messages_path, strict=strict))
        return cls(
            queue,
            state_dir=paths.state_dir,
            origin=origin,
            poll_interval_ms=poll_interval_ms,
            ping_timeout_ms=ping_timeout_ms,
        )

    def is_available(self) -> bool:
        """共享状态目录可见（sandbox 内即项目目录已挂载）。"""

        if self.state_dir is None:
            return True
        return self.state_dir.is_dir()

    def require_available(self) -> None:
        """共享状态目录不可见时抛 `SandboxStateUnavailableError`。"""

        if not self.is_available():
            raise SandboxStateUnavailableError(str(self.state_dir))

    def request(self, action: str, args: Optional[List[str]] = None, *, timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS) -> MessageResponse:
        """发送请求并等待响应；超时或写入失败都返回 `success=False`。"""

        try:
            message_id = self.queue.enqueue(origin=self.origin, action=action, args=args)
        except OSError as exc:
            logger.warning("Failed to enqueue %s: %s", action, exc)
            return MessageResponse.fail(f"Failed to send message: {exc}")

        response = await_response(
            self.queue, message_id, timeout_ms=timeout_ms, poll_interval_ms=self.poll_interval_ms
        )
        if response is None:
            return MessageResponse.fail(
                f"Request timed out after {timeout_ms}ms. Make sure the daemon is running on the host."
            )
        return response

    async def request_async(
        self, action: str, args: Optional[List[str]] = None, *, timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS
    ) -> MessageResponse:
        try:
            message_id = self.queue.enqueue(origin=self.origin, action=action, args=args)
        except OSError as exc:
            return MessageResponse.fail(f"Failed to send message: {exc}")
        response = await await_response_async(
            self.queue, message_id, timeout_ms=timeout_ms, poll_interval_ms=self.poll_interval_ms
        )
        if response is None:
            return MessageResponse.fail(
                f"Request timed out after {timeout_ms}ms. Make sure the daemon is running on the host."
            )
        return response

    def ping(self, *, timeout_ms: Optional[int] = None) -> bool:
        if timeout_ms is None:
            timeout_ms = self.ping_timeout_ms
        response = self.request("ping", [], timeout_ms=timeout_ms)
        return response.success and (response.output or "").strip() == "pong"

    def notify(self, message: str, *, timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS) -> MessageResponse:
        return self.request("notify", [message], timeout_ms=timeout_ms)

    def notify_via(self, backend: str, message: str, *, timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS) -> MessageResponse:
        """通过指定聊天后端发送通知（`telegram` / `slack` / `discord`）。"""

        if backend not in {"telegram", "slack", "discord"}:
            raise ValueError(f"unsupported notification backend: {backend}")
        return self.request(f"{backend}_notify", [message], timeout_ms=timeout_ms)
