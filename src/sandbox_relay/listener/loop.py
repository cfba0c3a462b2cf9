"""
队列监听循环（host daemon 与 sandbox listener 共用）。

两种模式：
- `run_once()`：取出全部发给本方的 pending 消息，逐条认领并处理，然后做一次垃圾回收。
- `serve_forever()`：启动时先处理积压消息，之后由“目录变更通知 + 定时兜底”驱动批处理。

约束：
- watchdog 回调线程只负责唤醒，不做任何处理；所有处理都在调用 `serve_forever` 的线程上进行。
- `processing` 守卫保证同一时刻最多只有一个批次在处理。
- 每条消息处理前先 `claim`（pending → claimed），只有赢得认领的一方执行；
  处理完成后恰好 `respond` 一次。handler 抛出的异常转换为 `success=False`。
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
import signal
import threading
from types import FrameType
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from sandbox_relay.core.errors import RelayError
from sandbox_relay.queue.gc import GarbageCollector
from sandbox_relay.queue.mailbox import MessageQueue
from sandbox_relay.queue.models import Message, MessageResponse, Origin

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Message], MessageResponse]

DEFAULT_INTERVAL_MS = 1000


class _QueueFileEvents(FileSystemEventHandler):
    """只关心队列文件本身（含原子替换产生的 moved 事件）。"""

    def __init__(self, file_name: str, wake: threading.Event) -> None:
        super().__init__()
        self._file_name = file_name
        self._wake = wake

    def on_any_event(self, event: FileSystemEvent) -> None:
        for raw in (event.src_path, getattr(event, "dest_path", "")):
            if raw and Path(os.fsdecode(raw)).name == self._file_name:
                self._wake.set()
                return


class Listener:
    """
    处理某一方收到的消息。

    参数：
    - queue：目标队列
    - sender_origin：要处理的消息的 `from` 值（daemon 处理 `sandbox`，sandbox listener 处理 `host`）
    - handler：单条消息处理函数
    - gc：每批处理后运行的垃圾回收器
    - name：认领时写入的 `claimedBy`
    - interval_ms：定时兜底间隔
    - watch_path：要监听的队列文件路径；为 None 时只依赖定时兜底
    """

    def __init__(
        self,
        queue: MessageQueue,
        *,
        sender_origin: Origin,
        handler: MessageHandler,
        gc: Optional[GarbageCollector] = None,
        name: Optional[str] = None,
        interval_ms: int = DEFAULT_INTERVAL_MS,
        watch_path: Optional[Path] = None,
    ) -> None:
        if interval_ms < 1:
            raise ValueError("interval_ms must be >= 1")
        self.queue = queue
        self.sender_origin: Origin = sender_origin
        self.handler = handler
        self.gc = gc
        self.name = name or f"listener-{os.getpid()}"
        self.interval_ms = interval_ms
        self.watch_path = Path(watch_path) if watch_path is not None else None

        self._processing = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()

    def run_once(self) -> int:
        """处理当前全部 pending 消息；另一个批次正在处理时直接返回 0。"""

        if not self._processing.acquire(blocking=False):
            return 0
        try:
            handled = 0
            for message in self.queue.fetch_pending(origin=self.sender_origin):
                if self._stop.is_set():
                    break
                if self._handle(message):
                    handled += 1
            if self.gc is not None:
                self.gc.collect()
            return handled
        finally:
            self._processing.release()

    def _handle(self, message: Message) -> bool:
        if not self.queue.claim(message.id, claimer=self.name):
            return False
        logger.debug("Processing %s (%s)", message.action, message.id)
        try:
            response = self.handler(message)
        except Exception as exc:
            logger.warning("Handler for %s raised", message.action, exc_info=True)
            response = MessageResponse.fail(f"{type(exc).__name__}: {exc}")
        self.queue.respond(message.id, response)
        logger.info("Responded to %s: %s", message.action, "success" if response.success else "failed")
        return True

    def notify_change(self) -> None:
        """唤醒监听循环（文件变更回调与测试使用）。"""

        self._wake.set()

    def stop(self) -> None:
        self._stop.set()
        self._wake.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def serve_forever(self, *, install_signal_handlers: bool = True) -> None:
        """
        常驻运行，直到 `stop()` 被调用或收到 SIGINT/SIGTERM。

        说明：
        - 信号处理只能在主线程安装；其它线程调用时自动跳过。
        """

        self._stop.clear()
        observer = self._start_watcher()
        restore = self._install_signals() if install_signal_handlers else None
        try:
            self._safe_batch()
            while not self._stop.is_set():
                self._wake.wait(timeout=self.interval_ms / 1000.0)
                self._wake.clear()
                if self._stop.is_set():
                    break
                self._safe_batch()
        finally:
            if observer is not None:
                observer.stop()
                observer.join(timeout=2.0)
            if restore is not None:
                restore()

    def _safe_batch(self) -> None:
        try:
            self.run_once()
        except (OSError, RelayError):
            logger.warning("Error while processing messages", exc_info=True)

    def _start_watcher(self) -> Optional[BaseObserver]:
        if self.watch_path is None:
            return None
        directory = self.watch_path.parent
        if not directory.is_dir():
            logger.warning("Queue directory %s does not exist; relying on periodic checks only", directory)
            return None
        observer = Observer()
        observer.schedule(_QueueFileEvents(self.watch_path.name, self._wake), str(directory), recursive=False)
        try:
            observer.start()
        except OSError:
            logger.warning("Failed to start file watcher on %s; relying on periodic checks only", directory, exc_info=True)
            return None
        return observer

    def _install_signals(self) -> Optional[Callable[[], None]]:
        if threading.current_thread() is not threading.main_thread():
            return None

        def _on_signal(signum: int, _frame: Optional[FrameType]) -> None:
            logger.info("Received signal %s, stopping", signum)
            self.stop()

        previous = {sig: signal.signal(sig, _on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}

        def _restore() -> None:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

        return _restore
