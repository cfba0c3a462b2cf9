"""
消息队列存储（共享 JSON 数组文件）。

约束：
- 队列文件是唯一的事实来源：每次 CLI 调用都是新进程，不在内存中缓存。
- 读取：文件不存在、JSON 解析失败或根节点不是数组时视为空队列；后两种会记录 WARNING，
  并在 `QueueSnapshot.error` 中给出可区分的 `QueueReadError`（`strict=True` 时直接抛出）。
- 单条记录不符合消息模型时只跳过该条（WARNING），其原始 dict 保留在
  `QueueSnapshot.unparsed` 中，`update(...)` 写回时按原位置放回。
- 写入：整体重写；先写 `<file>.tmp` 再 `os.replace`，读者不会看到半截文件。
- 变更：`update(fn)` 在旁路锁文件（`messages.json.lock`）的 `flock` 排他锁内执行读-改-写。
  平台没有 `fcntl` 时不加锁。
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
import json
import logging
import os
from pathlib import Path
import threading
from typing import Any, Callable, Iterator, List, Optional, Protocol, Sequence, Tuple, TypeVar

from pydantic import ValidationError

from sandbox_relay.core.errors import QueueReadError
from sandbox_relay.queue.models import Message

logger = logging.getLogger(__name__)

try:
    import fcntl
except ImportError:  # pragma: no cover (non-POSIX)
    fcntl = None  # type: ignore[assignment]

_T = TypeVar("_T")

# fn(messages) -> (new_messages | None, result)；new_messages 为 None 表示不需要写回。
Mutation = Callable[[List[Message]], Tuple[Optional[List[Message]], _T]]


@dataclass(frozen=True)
class QueueSnapshot:
    """一次读取的结果：消息列表 + 可选的读取错误。"""

    messages: List[Message] = field(default_factory=list)
    error: Optional[QueueReadError] = None
    # (原数组下标, 原始记录)
    unparsed: List[Tuple[int, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None


class MessageStore(Protocol):
    """队列存储接口（文件实现之外可替换为内存实现）。"""

    def load(self) -> QueueSnapshot: ...

    def read(self) -> List[Message]: ...

    def write(self, messages: List[Message]) -> None: ...

    def update(self, fn: Mutation[_T]) -> _T: ...


def _parse_messages(text: str, *, source: str) -> QueueSnapshot:
    """
    把 JSON 文本解析为消息快照。

    异常：
    - QueueReadError：JSON 无效或根节点不是数组（单条记录无效不算）
    """

    try:
        raw = json.loads(text) if text.strip() else []
    except json.JSONDecodeError as exc:
        raise QueueReadError(source, f"invalid JSON: {exc.msg} (line {exc.lineno})") from exc
    if not isinstance(raw, list):
        raise QueueReadError(source, "root must be a JSON array")
    messages: List[Message] = []
    unparsed: List[Tuple[int, Any]] = []
    for index, item in enumerate(raw):
        try:
            messages.append(Message.from_wire(item))
        except ValidationError as exc:
            logger.warning(
                "Skipping invalid message record #%d in %s (%d error(s)); it is kept as-is",
                index,
                source,
                exc.error_count(),
            )
            unparsed.append((index, item))
    return QueueSnapshot(messages=messages, unparsed=unparsed)


def _dump_messages(messages: List[Message], unparsed: Sequence[Tuple[int, Any]] = ()) -> str:
    payload: List[Any] = [m.to_json_dict() for m in messages]
    for index, item in unparsed:
        payload.insert(min(index, len(payload)), item)
    return json.dumps(payload, ensure_ascii=False, indent=2)


class JsonFileMessageStore:
    """
    基于单个 JSON 文件的队列存储。

    参数：
    - path：队列文件路径（父目录不存在时写入会自动创建）
    - strict：为 True 时解析失败抛 `QueueReadError`，否则按空队列处理
    """

    def __init__(self, path: Path, *, strict: bool = False) -> None:
        self.path = Path(path)
        self.strict = strict
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._thread_lock = threading.RLock()

    def load(self) -> QueueSnapshot:
        """读取队列并返回快照（不抛异常，除非 strict）。"""

        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return QueueSnapshot()
        except OSError as exc:
            err = QueueReadError(str(self.path), str(exc))
            return self._on_read_error(err)
        try:
            return _parse_messages(text, source=str(self.path))
        except QueueReadError as err:
            return self._on_read_error(err)

    def _on_read_error(self, err: QueueReadError) -> QueueSnapshot:
        if self.strict:
            raise err
        logger.warning("Message queue %s is unreadable, treating as empty: %s", self.path, err.details.get("reason"))
        return QueueSnapshot(error=err)

    def read(self) -> List[Message]:
        return self.load().messages

    def write(self, messages: List[Message]) -> None:
        """整体重写队列文件（原子替换）。"""

        self._write_text(_dump_messages(messages))

    def _write_text(self, text: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(text, encoding="utf-8")
        os.replace(tmp, self.path)

    def update(self, fn: Mutation[_T]) -> _T:
        """在排他锁内读-改-写；`fn` 返回 `(new_messages | None, result)`。"""

        with self._locked():
            snapshot = self.load()
            new_messages, result = fn(list(snapshot.messages))
            if new_messages is not None:
                self._write_text(_dump_messages(new_messages, snapshot.unparsed))
            return result

    @contextmanager
    def _locked(self) -> Iterator[None]:
        # flock 以打开的文件描述为单位；同进程内多线程额外用 RLock 互斥。
        with self._thread_lock:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            with self.lock_path.open("a", encoding="utf-8") as handle:
                if fcntl is not None:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    if fcntl is not None:
                        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class InMemoryMessageStore:
    """进程内队列存储（测试与嵌入场景使用）。"""

    def __init__(self, messages: Optional[List[Message]] = None) -> None:
        self._messages: List[Message] = [m.model_copy(deep=True) for m in (messages or [])]
        self._lock = threading.RLock()

    def load(self) -> QueueSnapshot:
        with self._lock:
            return QueueSnapshot(messages=[m.model_copy(deep=True) for m in self._messages])

    def read(self) -> List[Message]:
        return self.load().messages

    def write(self, messages: List[Message]) -> None:
        with self._lock:
            self._messages = [m.model_copy(deep=True) for m in messages]

    def update(self, fn: Mutation[_T]) -> _T:
        with self._lock:
            new_messages, result = fn(self.read())
            if new_messages is not None:
                self.write(new_messages)
            return result
