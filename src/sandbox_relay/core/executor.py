"""
子进程执行器（action 命令、sandbox 内 exec/agent、后台 runner）。

提供三种执行方式：
- `Executor.run_shell(...)`：捕获 stdout/stderr，带超时（结果要写回队列时使用）
- `Executor.run_streaming(...)`：继承当前终端的 stdio，实时输出（host 直接执行用户配置 action）
- `Executor.spawn_detached(...)`：脱离当前会话启动后台进程（sandbox 内的 `run`）

说明：
- 捕获模式下单独限制 stdout/stderr 的记录字节数（保留尾部），避免大输出撑爆内存；
  写入响应前的字符级截断见 `truncate_output`。
- 超时后对整个进程组 SIGTERM，宽限期后 SIGKILL。
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import IO, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

OUTPUT_LIMIT_CHARS = 4000
TRUNCATION_SUFFIX = "\n...(truncated)"


def truncate_output(text: str, limit: int = OUTPUT_LIMIT_CHARS) -> str:
    """超过 `limit` 个字符时保留头部并追加截断标记。"""

    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_SUFFIX


class CommandResult(BaseModel):
    """
    命令执行结果。

    字段说明：
    - ok：exit_code == 0 且未超时
    - exit_code：进程退出码；超时或无法启动时为 None
    - stdout/stderr：捕获到的输出（可能只保留尾部）
    - error_kind：None / timeout / exit_code / not_found / validation / unknown
    """

    model_config = ConfigDict(extra="forbid")

    ok: bool
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = Field(default=0, ge=0)
    timeout: bool = False
    truncated: bool = False
    error_kind: Optional[str] = None

    def failure_text(self) -> str:
        """失败时用于响应 `error` 字段的文本：优先 stderr，其次退出码。"""

        err = self.stderr.strip()
        if err:
            return err
        if self.timeout:
            return "Command timed out"
        if self.exit_code is not None:
            return f"Exit code: {self.exit_code}"
        return self.error_kind or "unknown error"


class _TailBuffer:
    """只保留尾部 `max_bytes` 字节的缓冲区。"""

    def __init__(self, max_bytes: int) -> None:
        if max_bytes < 0:
            raise ValueError("max_bytes must be >= 0")
        self._max = max_bytes
        self._data = bytearray()
        self.truncated = False

    def feed(self, chunk: bytes) -> None:
        if not chunk:
            return
        self._data.extend(chunk)
        excess = len(self._data) - self._max
        if excess > 0:
            del self._data[:excess]
            self.truncated = True

    def text(self) -> str:
        return bytes(self._data).decode("utf-8", errors="replace")


def _pump(stream: Optional[IO[bytes]], sink: _TailBuffer) -> None:
    """后台线程：把子进程输出持续读入缓冲区，直到 EOF。"""

    if stream is None:
        return
    try:
        for chunk in iter(lambda: stream.read(4096), b""):
            sink.feed(chunk)
    except (OSError, ValueError):
        return


class Executor:
    """
    子进程执行器。

    参数：
    - max_output_bytes：stdout/stderr 各自记录的最大字节数（尾部保留）
    - terminate_grace_ms：超时后 SIGTERM→SIGKILL 的宽限时间（毫秒）
    - shell：执行命令字符串所用 shell
    """

    def __init__(
        self,
        *,
        max_output_bytes: int = 256 * 1024,
        terminate_grace_ms: int = 2000,
        shell: str = "/bin/sh",
    ) -> None:
        if max_output_bytes < 0:
            raise ValueError("max_output_bytes must be >= 0")
        if terminate_grace_ms < 0:
            raise ValueError("terminate_grace_ms must be >= 0")
        self._max_output_bytes = max_output_bytes
        self._terminate_grace_ms = terminate_grace_ms
        self._shell = shell

    def run_command(
        self,
        argv: List[str],
        *,
        cwd: Path,
        env: Optional[Mapping[str, str]] = None,
        timeout_ms: int = 60_000,
    ) -> CommandResult:
        """
        执行 argv 命令并捕获结果。

        参数：
        - argv：命令与参数（至少 1 项）
        - cwd：工作目录（必须存在）
        - env：追加/覆盖的环境变量
        - timeout_ms：超时毫秒数

        返回：
        - `CommandResult`；启动失败、超时、非零退出都以数据形式返回，不抛异常。
        """

        started = time.monotonic()
        if not argv:
            return CommandResult(ok=False, stderr="argv must not be empty", error_kind="validation")
        cwd_path = Path(cwd)
        if not cwd_path.is_dir():
            return CommandResult(ok=False, stderr=f"cwd is not a directory: {cwd_path}", error_kind="validation")
        if timeout_ms < 1:
            return CommandResult(ok=False, stderr="timeout_ms must be >= 1", error_kind="validation")

        try:
            proc = subprocess.Popen(  # noqa: S603
                argv,
                cwd=str(cwd_path),
                env=_merged_env(env),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            return CommandResult(ok=False, stderr=str(exc), duration_ms=_elapsed_ms(started), error_kind="not_found")
        except OSError as exc:
            return CommandResult(ok=False, stderr=str(exc), duration_ms=_elapsed_ms(started), error_kind="unknown")

        out_buf = _TailBuffer(self._max_output_bytes)
        err_buf = _TailBuffer(self._max_output_bytes)
        readers = [
            threading.Thread(target=_pump, args=(proc.stdout, out_buf), daemon=True),
            threading.Thread(target=_pump, args=(proc.stderr, err_buf), daemon=True),
        ]
        for t in readers:
            t.start()

        timed_out = False
        try:
            proc.wait(timeout=timeout_ms / 1000.0)
        except subprocess.TimeoutExpired:
            timed_out = True
            logger.debug("Command timed out after %sms: %r", timeout_ms, argv)
            self.terminate(proc)
        finally:
            for t in readers:
                t.join(timeout=1.0)
            for stream in (proc.stdout, proc.stderr):
                if stream is not None:
                    stream.close()

        truncated = out_buf.truncated or err_buf.truncated
        if timed_out:
            return CommandResult(
                ok=False,
                stdout=out_buf.text(),
                stderr=err_buf.text(),
                duration_ms=_elapsed_ms(started),
                timeout=True,
                truncated=truncated,
                error_kind="timeout",
            )

        ok = proc.returncode == 0
        return CommandResult(
            ok=ok,
            exit_code=proc.returncode,
            stdout=out_buf.text(),
            stderr=err_buf.text(),
            duration_ms=_elapsed_ms(started),
            truncated=truncated,
            error_kind=None if ok else "exit_code",
        )

    def run_shell(
        self,
        command: str,
        *,
        cwd: Path,
        env: Optional[Mapping[str, str]] = None,
        timeout_ms: int = 60_000,
    ) -> CommandResult:
        """以 `<shell> -c command` 执行命令字符串，语义同 `run_command`。"""

        return self.run_command([self._shell, "-c", command], cwd=cwd, env=env, timeout_ms=timeout_ms)

    def run_streaming(
        self,
        command: str,
        *,
        cwd: Path,
        env: Optional[Mapping[str, str]] = None,
    ) -> int:
        """
        以 shell 执行命令，stdout/stderr 直接继承当前进程（实时输出）。

        返回：
        - int：子进程退出码；无法启动时返回 127。
        """

        try:
            completed = subprocess.run(  # noqa: S603
                [self._shell, "-c", command],
                cwd=str(cwd),
                env=_merged_env(env),
                check=False,
            )
        except OSError as exc:
            logger.warning("Failed to spawn %r: %s", command, exc)
            return 127
        return int(completed.returncode)

    def spawn_detached(
        self,
        argv: List[str],
        *,
        cwd: Path,
        env: Optional[Mapping[str, str]] = None,
    ) -> int:
        """
        在新会话中启动后台进程并立即返回其 pid（stdio 全部丢弃）。

        异常：
        - OSError：无法启动（调用方负责转成响应数据）
        """

        proc = subprocess.Popen(  # noqa: S603
            argv,
            cwd=str(cwd),
            env=_merged_env(env),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        return int(proc.pid)

    def terminate(self, proc: "subprocess.Popen[bytes]") -> None:
        """SIGTERM 整个进程组，宽限期内未退出再 SIGKILL。"""

        kill_process_group(proc.pid, signal.SIGTERM)
        try:
            proc.wait(timeout=self._terminate_grace_ms / 1000.0)
            return
        except subprocess.TimeoutExpired:
            pass
        kill_process_group(proc.pid, signal.SIGKILL)
        try:
            proc.wait(timeout=1.0)
        except subprocess.TimeoutExpired:
            logger.warning("Process %s did not exit after SIGKILL", proc.pid)


def kill_process_group(pid: int, sig: int) -> bool:
    """向 pid 所在进程组发信号；进程组不可用时退化为单进程。返回是否送达。"""

    try:
        os.killpg(pid, sig)
        return True
    except ProcessLookupError:
        return False
    except (PermissionError, OSError):
        pass
    try:
        os.kill(pid, sig)
        return True
    except OSError:
        return False


def pid_alive(pid: int) -> bool:
    """判断 pid 是否仍存活（signal 0 探测）。"""

    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _merged_env(env: Optional[Mapping[str, str]]) -> dict:
    merged = dict(os.environ)
    if env:
        merged.update({str(k): str(v) for k, v in env.items()})
    return merged


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
