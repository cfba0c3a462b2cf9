"""
Host daemon：处理 sandbox 发来的请求。

启动流程：
1) 拒绝在 sandbox 内运行
2) 用 `daemon_started` 标记重置队列（保留仍待处理的请求）
3) 构建合并后的 action 表并记录
4) 进入常驻监听（先处理积压，之后变更通知 + 1s 兜底；每批后回收 60s 以上的消息）
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Callable, Dict, Optional

from sandbox_relay.actions.runner import ActionRunner
from sandbox_relay.actions.table import ActionTable, action_table_for
from sandbox_relay.config.loader import RelayConfig
from sandbox_relay.core.errors import FrameworkError
from sandbox_relay.core.executor import Executor
from sandbox_relay.listener.loop import Listener
from sandbox_relay.notifications.backends import NotificationBackends
from sandbox_relay.queue.gc import GarbageCollector
from sandbox_relay.queue.mailbox import MessageQueue
from sandbox_relay.queue.models import Message, MessageResponse
from sandbox_relay.queue.paths import RelayPaths, get_relay_paths
from sandbox_relay.queue.store import JsonFileMessageStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DaemonStatus:
    messages_path: Path
    exists: bool
    total: int = 0
    pending: int = 0

    def render(self) -> str:
        lines = [
            "Daemon Status",
            "-" * 40,
            f"Messages file: {self.messages_path}",
            f"File exists: {'yes' if self.exists else 'no'}",
        ]
        if self.exists:
            lines.append(f"Total messages: {self.total}")
            lines.append(f"Pending messages: {self.pending}")
        return "\n".join(lines)


class HostDaemon:
    """
    host 侧常驻进程。

    参数：
    - config：生效配置
    - workspace_root：项目根目录
    - backends / executor：可注入（测试使用）
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        workspace_root: Path,
        backends: Optional[NotificationBackends] = None,
        executor: Optional[Executor] = None,
    ) -> None:
        self.config = config
        self.paths: RelayPaths = get_relay_paths(workspace_root=workspace_root)
        self.queue = MessageQueue(JsonFileMessageStore(self.paths.messages_path, strict=config.queue.strict_reads))
        self.table: ActionTable = action_table_for(config)
        self.backends = backends or NotificationBackends(config)
        self.runner = ActionRunner(
            self.table,
            backends=self.backends,
            cwd=self.paths.workspace_root,
            executor=executor,
            timeout_ms=config.timeouts.action_ms,
            output_limit=config.queue.output_limit_chars,
        )
        self.listener = Listener(
            self.queue,
            sender_origin="sandbox",
            handler=self.handle,
            gc=GarbageCollector(self.queue, max_age_ms=config.queue.host_gc_max_age_ms),
            name="host-daemon",
            interval_ms=config.queue.listener_interval_ms,
            watch_path=self.paths.messages_path,
        )

    def handle(self, message: Message) -> MessageResponse:
        return self.runner.run(message.action, message.args)

    def describe_actions(self) -> Dict[str, str]:
        return {a.name: a.summary for a in self.table}

    def start(self, *, in_sandbox: bool, echo: Callable[[str], None] = print, install_signal_handlers: bool = True) -> None:
        """
        初始化队列并常驻运行，直到收到停止信号。

        异常：
        - FrameworkError(DAEMON_IN_SANDBOX)：在 sandbox 内调用
        """

        if in_sandbox:
            raise FrameworkError(
                code="DAEMON_IN_SANDBOX",
                message="The daemon must run on the host, not inside the sandbox.",
                details={"messages_path": str(self.paths.messages_path)},
            )
        self.paths.state_dir.mkdir(parents=True, exist_ok=True)
        self.queue.initialize()

        echo("Daemon started")
        echo(f"Messages file: {self.paths.messages_path}")
        echo("")
        echo("Available actions:")
        for name, summary in self.describe_actions().items():
            echo(f"  {name}: {summary}")
        echo("")
        echo("Watching for messages from sandbox... (Ctrl+C to stop)")
        logger.info("Daemon serving %d action(s)", len(self.table))

        try:
            self.listener.serve_forever(install_signal_handlers=install_signal_handlers)
        finally:
            self.backends.close()
            echo("Shutting down daemon...")

    def stop(self) -> None:
        self.listener.stop()


def daemon_status(*, workspace_root: Path) -> DaemonStatus:
    paths = get_relay_paths(workspace_root=workspace_root)
    if not paths.messages_path.exists():
        return DaemonStatus(messages_path=paths.messages_path, exists=False)
    stats = MessageQueue(JsonFileMessageStore(paths.messages_path)).stats()
    return DaemonStatus(messages_path=paths.messages_path, exists=True, total=stats["total"], pending=stats["pending"])
