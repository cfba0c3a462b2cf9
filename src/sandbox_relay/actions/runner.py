"""
Host 侧 action 执行（daemon 处理来自 sandbox 的请求时使用）。

执行结果一律以 `MessageResponse` 返回：非零退出、启动失败、HTTP 失败都是数据，
不会以异常形式越过队列边界。写入响应的文本超过上限时截断。
"""

from __future__ import annotations

import logging
from pathlib import Path
import shlex
from typing import List, Optional

from sandbox_relay.actions.table import ActionSpec, ActionTable
from sandbox_relay.core.executor import OUTPUT_LIMIT_CHARS, Executor, truncate_output
from sandbox_relay.notifications.backends import NotificationBackends
from sandbox_relay.queue.models import MessageResponse

logger = logging.getLogger(__name__)


def build_shell_command(command: str, args: Optional[List[str]] = None) -> str:
    """把参数逐个 shell-quote 后追加到命令模板末尾。"""

    if not args:
        return command
    return " ".join([command, *(shlex.quote(a) for a in args)])


class ActionRunner:
    """
    在 host 上执行 action 并生成响应。

    参数：
    - table：合并后的 action 表
    - backends：HTTP 通知后端（内置 notify/telegram/slack/discord 使用）
    - executor：子进程执行器
    - cwd：shell action 的工作目录（项目根）
    - timeout_ms：单个 shell action 的超时
    - output_limit：响应中 output/error 的最大字符数
    """

    def __init__(
        self,
        table: ActionTable,
        *,
        backends: NotificationBackends,
        cwd: Path,
        executor: Optional[Executor] = None,
        timeout_ms: int = 60_000,
        output_limit: int = OUTPUT_LIMIT_CHARS,
    ) -> None:
        self.table = table
        self.backends = backends
        self.cwd = Path(cwd)
        self.executor = executor or Executor()
        self.timeout_ms = timeout_ms
        self.output_limit = output_limit

    def run(self, name: str, args: Optional[List[str]] = None) -> MessageResponse:
        spec = self.table.get(name)
        if spec is None:
            return MessageResponse.fail(f"Unknown action: {name}. Available: {', '.join(self.table.names())}")
        return self.execute(spec, args)

    def execute(self, spec: ActionSpec, args: Optional[List[str]] = None) -> MessageResponse:
        if spec.handler != "shell":
            return self._clip(self.backends.deliver(spec.handler, args))

        command = build_shell_command(spec.command, args)
        logger.debug("Running action %s: %s", spec.name, command)
        result = self.executor.run_shell(command, cwd=self.cwd, timeout_ms=self.timeout_ms)
        output = result.stdout.strip()
        if result.ok:
            return MessageResponse.ok(truncate_output(output, self.output_limit))
        return MessageResponse.fail(
            truncate_output(result.failure_text(), self.output_limit),
            output=truncate_output(output, self.output_limit),
        )

    def _clip(self, response: MessageResponse) -> MessageResponse:
        return response.model_copy(
            update={
                "output": truncate_output(response.output, self.output_limit) if response.output else response.output,
                "error": truncate_output(response.error, self.output_limit) if response.error else response.error,
            }
        )
