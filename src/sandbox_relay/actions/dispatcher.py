"""
Action 分发：按“运行位置 × action 来源”决定执行路径。

| 位置    | 来源       | 执行方式                                   |
|---------|------------|--------------------------------------------|
| sandbox | 任意       | 经队列发给 host daemon                      |
| host    | 内置       | 仍经队列（daemon 持有 bot token 等状态）     |
| host    | 用户配置   | 直接起子进程执行，stdout/stderr 实时输出      |

未知 action 在任何执行之前拒绝：退出码 1，不入队、不起进程。
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Callable, List, Literal, Optional

from sandbox_relay.actions.runner import build_shell_command
from sandbox_relay.actions.table import ActionSpec, ActionTable
from sandbox_relay.core.errors import SandboxStateUnavailableError, UnknownActionError
from sandbox_relay.core.executor import Executor
from sandbox_relay.queue.models import MessageResponse
from sandbox_relay.queue.sender import RelayClient, await_response

logger = logging.getLogger(__name__)

Location = Literal["sandbox", "host"]
Route = Literal["queue", "direct"]

EXIT_OK = 0
EXIT_FAILURE = 1


def route_for(spec: ActionSpec, *, location: Location) -> Route:
    """分发策略表。"""

    if location == "sandbox":
        return "queue"
    return "queue" if spec.kind == "builtin" else "direct"


@dataclass(frozen=True)
class DispatchOutcome:
    """一次分发的结果（CLI 据此决定输出与退出码）。"""

    exit_code: int
    route: Optional[Route] = None
    response: Optional[MessageResponse] = None
    error: Optional[str] = None
    timed_out: bool = False


def _ignore(_line: str) -> None:
    return None


class ActionDispatcher:
    """
    解析并执行一个 action。

    参数：
    - table：合并后的 action 表
    - location：当前进程位置（sandbox / host）
    - client：经队列发送请求的客户端
    - cwd：直接执行时的工作目录
    - timeout_ms：经队列等待响应的最长时间
    - echo：进度提示输出（等待前调用）
    """

    def __init__(
        self,
        table: ActionTable,
        *,
        location: Location,
        client: RelayClient,
        cwd: Path,
        executor: Optional[Executor] = None,
        timeout_ms: int = 60_000,
        echo: Callable[[str], None] = _ignore,
    ) -> None:
        self.table = table
        self.location: Location = location
        self.client = client
        self.cwd = Path(cwd)
        self.executor = executor or Executor()
        self.timeout_ms = timeout_ms
        self.echo = echo

    def dispatch(self, name: str, args: Optional[List[str]] = None) -> DispatchOutcome:
        args = list(args or [])
        try:
            spec = self.table.require(name)
        except UnknownActionError as exc:
            known = ", ".join(exc.known) if exc.known else "none"
            return DispatchOutcome(exit_code=EXIT_FAILURE, error=f"Unknown action: {name}\nAvailable actions: {known}")

        route = route_for(spec, location=self.location)
        logger.debug("Dispatching %s (kind=%s, location=%s, route=%s)", name, spec.kind, self.location, route)
        if route == "direct":
            return self._run_direct(spec, args)
        return self._run_via_queue(spec, args)

    def _run_direct(self, spec: ActionSpec, args: List[str]) -> DispatchOutcome:
        command = build_shell_command(spec.command, args)
        self.echo(f"Executing: {command}")
        code = self.executor.run_streaming(command, cwd=self.cwd)
        if code == 0:
            return DispatchOutcome(exit_code=EXIT_OK, route="direct")
        return DispatchOutcome(
            exit_code=code if code > 0 else EXIT_FAILURE,
            route="direct",
            error=f"Action failed with exit code: {code}",
        )

    def _run_via_queue(self, spec: ActionSpec, args: List[str]) -> DispatchOutcome:
        try:
            self.client.require_available()
        except SandboxStateUnavailableError as exc:
            return DispatchOutcome(exit_code=EXIT_FAILURE, route="queue", error=exc.message)

        message_id = self.client.queue.enqueue(origin=self.client.origin, action=spec.name, args=args or None)
        logger.debug("Sent message %s", message_id)
        self.echo(f"Executing action: {spec.name}")
        self.echo("Waiting for daemon response...")

        response = await_response(
            self.client.queue, message_id, timeout_ms=self.timeout_ms, poll_interval_ms=self.client.poll_interval_ms
        )
        if response is None:
            return DispatchOutcome(
                exit_code=EXIT_FAILURE,
                route="queue",
                timed_out=True,
                error="No response from daemon (timeout). Make sure the daemon is running on the host.",
            )
        if not response.success:
            return DispatchOutcome(
                exit_code=EXIT_FAILURE,
                route="queue",
                response=response,
                error=f"Action '{spec.name}' failed: {response.error or 'Unknown error'}",
            )
        return DispatchOutcome(exit_code=EXIT_OK, route="queue", response=response)
