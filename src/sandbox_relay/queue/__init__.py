"""
基于路径的队列函数（外部协作方使用的最小接口）。

每个函数都是一次独立的读-改-写，不在调用之间缓存任何状态。
需要替换存储实现时，直接使用 `MessageQueue(store)`。
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from sandbox_relay.queue.gc import GarbageCollector, HOST_MAX_AGE_MS, SANDBOX_MAX_AGE_MS, sweep_stale
from sandbox_relay.queue.mailbox import MessageQueue
from sandbox_relay.queue.models import Message, MessageResponse, Origin
from sandbox_relay.queue.paths import RelayPaths, get_messages_path, get_relay_paths, is_running_in_sandbox
from sandbox_relay.queue.sender import DEFAULT_POLL_INTERVAL_MS, RelayClient
from sandbox_relay.queue.sender import await_response as _await_on_queue
from sandbox_relay.queue.store import InMemoryMessageStore, JsonFileMessageStore, MessageStore, QueueSnapshot


def _queue(path: Path) -> MessageQueue:
    return MessageQueue(JsonFileMessageStore(Path(path)))


def read_messages(path: Path) -> List[Message]:
    """读取队列（文件缺失或损坏时为空列表）。"""

    return JsonFileMessageStore(Path(path)).read()


def write_messages(path: Path, messages: List[Message]) -> None:
    JsonFileMessageStore(Path(path)).write(messages)


def enqueue(path: Path, origin: Origin, action: str, args: Optional[List[str]] = None) -> str:
    return _queue(path).enqueue(origin=origin, action=action, args=args)


def await_response(
    path: Path, message_id: str, timeout_ms: int, poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
) -> Optional[MessageResponse]:
    return _await_on_queue(_queue(path), message_id, timeout_ms=timeout_ms, poll_interval_ms=poll_interval_ms)


def fetch_pending(path: Path, origin: Origin) -> List[Message]:
    return _queue(path).fetch_pending(origin=origin)


def claim(path: Path, message_id: str, claimer: str) -> bool:
    return _queue(path).claim(message_id, claimer=claimer)


def respond(path: Path, message_id: str, response: MessageResponse) -> bool:
    return _queue(path).respond(message_id, response)


def cleanup(path: Path, max_age_ms: int) -> int:
    return _queue(path).cleanup(max_age_ms=max_age_ms)


def initialize(path: Path) -> None:
    _queue(path).initialize()


__all__ = [
    "GarbageCollector",
    "HOST_MAX_AGE_MS",
    "InMemoryMessageStore",
    "JsonFileMessageStore",
    "Message",
    "MessageQueue",
    "MessageResponse",
    "MessageStore",
    "QueueSnapshot",
    "RelayClient",
    "RelayPaths",
    "SANDBOX_MAX_AGE_MS",
    "await_response",
    "claim",
    "cleanup",
    "enqueue",
    "fetch_pending",
    "get_messages_path",
    "get_relay_paths",
    "initialize",
    "is_running_in_sandbox",
    "read_messages",
    "respond",
    "sweep_stale",
    "write_messages",
]
