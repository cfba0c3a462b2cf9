"""
队列垃圾回收：清理超过最大存活时间的消息。

回收对象包括：发送方超时后遗留的 pending 消息、迟到的响应、
以及 host daemon 启动标记。判定只看时间戳，不看状态。
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple, TYPE_CHECKING

from sandbox_relay.queue.models import Message, now_ms

if TYPE_CHECKING:
    from sandbox_relay.queue.mailbox import MessageQueue

logger = logging.getLogger(__name__)

HOST_MAX_AGE_MS = 60_000
SANDBOX_MAX_AGE_MS = 300_000


def sweep_stale(messages: List[Message], *, max_age_ms: int, now: Optional[int] = None) -> Tuple[List[Message], int]:
    """返回 `(保留的消息, 删除数)`；`now - timestamp >= max_age_ms` 的消息被删除。"""

    current = now_ms() if now is None else now
    kept = [m for m in messages if current - m.timestamp < max_age_ms]
    return kept, len(messages) - len(kept)


class GarbageCollector:
    """
    绑定到一个队列的回收器（监听循环每处理完一批调用一次）。

    参数：
    - queue：`MessageQueue`
    - max_age_ms：最大存活时间（host 默认 60s，sandbox 默认 300s）
    """

    def __init__(self, queue: "MessageQueue", *, max_age_ms: int = HOST_MAX_AGE_MS) -> None:
        if max_age_ms < 0:
            raise ValueError("max_age_ms must be >= 0")
        self.queue = queue
        self.max_age_ms = max_age_ms

    def collect(self, *, now: Optional[int] = None) -> int:
        removed = self.queue.cleanup(max_age_ms=self.max_age_ms, now=now)
        if removed:
            logger.info("Removed %d stale message(s) older than %dms", removed, self.max_age_ms)
        return removed
