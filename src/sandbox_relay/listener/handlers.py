"""
sandbox 侧请求处理（host → sandbox）。

聊天机器人等 host 侧组件把 `from == "host"` 的消息写入队列，
sandbox 内的 `listen` 进程用本模块处理：

- `ping`：返回 `pong from sandbox`
- `exec <cmd...>`：在工作区执行 shell 命令（默认 60s 超时）
- `run [category]`：后台启动会话 runner（已在运行时拒绝）
- `stop`：终止 runner 的进程组（SIGTERM，2s 后 SIGKILL）
- `status`：执行状态命令
- `agent <prompt...>`：以非交互方式运行编码 agent CLI（默认 300s 超时）
"""

from __future__ import annotations

import logging
from pathlib import Path
import signal
import threading
import time
from typing import Callable, Dict, List, Optional

from sandbox_relay.config.loader import RelayConfig
from sandbox_relay.core.executor import CommandResult, Executor, kill_process_group, pid_alive, truncate_output
from sandbox_relay.queue.models import Message, MessageResponse
from sandbox_relay.queue.paths import RelayPaths

logger = logging.getLogger(__name__)

STOP_GRACE_SEC = 2.0


class SandboxHandlers:
    """
    sandbox listener 的动作集合。

    参数：
    - config：生效配置（超时、runner/agent 命令、截断上限）
    - paths：共享状态路径（`run.pid` 所在位置）
    - executor：子进程执行器
    - cwd：命令工作目录（默认工作区根）
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        paths: RelayPaths,
        executor: Optional[Executor] = None,
        cwd: Optional[Path] = None,
    ) -> None:
        self.config = config
        self.paths = paths
        self.executor = executor or Executor()
        self.cwd = Path(cwd) if cwd is not None else paths.workspace_root
        self._routes: Dict[str, Callable[[List[str]], MessageResponse]] = {
            "exec": self.exec_command,
            "run": self.start_run,
            "stop": self.stop_run,
            "status": self.status,
            "ping": self.ping,
            "agent": self.run_agent,
        }

    @property
    def supported(self) -> List[str]:
        return list(self._routes)

    def __call__(self, message: Message) -> MessageResponse:
        route = self._routes.get(message.action)
        if route is None:
            return MessageResponse.fail(
                f"Unknown action: {message.action}. Supported: {', '.join(self.supported)}"
            )
        return route(list(message.args or []))

    def ping(self, _args: List[str]) -> MessageResponse:
        return MessageResponse.ok("pong from sandbox")

    def exec_command(self, args: List[str]) -> MessageResponse:
        command = " ".join(args).strip()
        if not command:
            return MessageResponse.fail("No command provided")
        logger.info("Executing: %s", command)
        timeout_ms = self.config.timeouts.exec_ms
        result = self.executor.run_shell(command, cwd=self.cwd, timeout_ms=timeout_ms)
        return self._to_response(result, timeout_ms=timeout_ms)

    def status(self, _args: List[str]) -> MessageResponse:
        command = f"{self.config.sandbox.cli_command} status"
        result = self.executor.run_shell(command, cwd=self.cwd, timeout_ms=self.config.timeouts.exec_ms)
        return self._to_response(result, timeout_ms=self.config.timeouts.exec_ms)

    def run_agent(self, args: List[str]) -> MessageResponse:
        prompt = " ".join(args).strip()
        if not prompt:
            return MessageResponse.fail("No prompt provided")
        logger.info("Running agent with prompt: %.50s", prompt)
        timeout_ms = self.config.timeouts.agent_ms
        argv = [*self.config.sandbox.agent_command, prompt]
        result = self.executor.run_command(argv, cwd=self.cwd, timeout_ms=timeout_ms)
        return self._to_response(result, timeout_ms=timeout_ms)

    def running_pid(self) -> Optional[int]:
        """读取 `run.pid`；进程已不存在时删除过期的 pid 文件。"""

        pid_path = self.paths.run_pid_path
        try:
            pid = int(pid_path.read_text(encoding="utf-8").strip())
        except (FileNotFoundError, ValueError):
            return None
        if pid_alive(pid):
            return pid
        pid_path.unlink(missing_ok=True)
        return None

    def start_run(self, args: List[str]) -> MessageResponse:
        existing = self.running_pid()
        if existing is not None:
            return MessageResponse.fail(
                f"Session run is already running (PID {existing}). Use stop to terminate it first."
            )

        argv = [self.config.sandbox.cli_command, "run"]
        category = args[0] if args else None
        if category:
            argv += ["--category", category]
        try:
            pid = self.executor.spawn_detached(argv, cwd=self.cwd)
        except OSError as exc:
            return MessageResponse.fail(f"Failed to start run: {exc}")

        self.paths.run_pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.paths.run_pid_path.write_text(str(pid), encoding="utf-8")
        logger.info("Started session run (PID %s)", pid)
        return MessageResponse.ok(f"Session run started (category: {category})" if category else "Session run started")

    def stop_run(self, _args: List[str]) -> MessageResponse:
        pid = self.running_pid()
        if pid is None:
            return MessageResponse.ok("No session run process is currently running.")

        logger.info("Stopping session run (PID %s)", pid)
        if not kill_process_group(pid, signal.SIGTERM):
            return MessageResponse.fail(f"Failed to stop process {pid}")
        self.paths.run_pid_path.unlink(missing_ok=True)

        # 宽限期后强杀，不阻塞 listener 处理后续消息。
        threading.Thread(target=_force_kill_later, args=(pid,), daemon=True).start()
        return MessageResponse.ok(f"Stopped session run (PID {pid})")

    def _to_response(self, result: CommandResult, *, timeout_ms: int) -> MessageResponse:
        limit = self.config.queue.output_limit_chars
        output = result.stdout.strip()
        if result.ok:
            return MessageResponse.ok(truncate_output(output or "(no output)", limit))
        if result.timeout:
            error = f"Command timed out after {timeout_ms // 1000} seconds"
        else:
            error = result.failure_text()
        return MessageResponse.fail(truncate_output(error, limit), output=truncate_output(output, limit))


def _force_kill_later(pid: int) -> None:
    time.sleep(STOP_GRACE_SEC)
    if pid_alive(pid):
        kill_process_group(pid, signal.SIGKILL)
