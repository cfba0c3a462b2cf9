"""
队列操作（基于 `MessageStore` 的请求/响应语义）。

消息状态只前进不回退：pending → claimed → done。
所有修改都通过 `store.update(...)` 完成，保证在文件锁内读-改-写。
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from sandbox_relay.queue.gc import sweep_stale
from sandbox_relay.queue.models import Message, MessageResponse, Origin, now_ms
from sandbox_relay.queue.store import MessageStore

logger = logging.getLogger(__name__)


class MessageQueue:
    """对单个队列存储的高层操作集合。"""

    def __init__(self, store: MessageStore) -> None:
        self.store = store

    def enqueue(self, *, origin: Origin, action: str, args: Optional[List[str]] = None) -> str:
        """追加一条 pending 消息并返回其 id。"""

        msg = Message.create(origin=origin, action=action, args=args)

        def _append(messages: List[Message]) -> Tuple[Optional[List[Message]], str]:
            taken = {m.id for m in messages}
            while msg.id in taken:
                msg.id = Message.create(origin=origin, action=action).id
            messages.append(msg)
            return messages, msg.id

        message_id = self.store.update(_append)
        logger.debug("Enqueued %s from %s (id=%s)", action, origin, message_id)
        return message_id

    def fetch_pending(self, *, origin: Origin) -> List[Message]:
        """返回 `from == origin` 的 pending 消息（保持插入顺序）。"""

        return [m for m in self.store.read() if m.is_pending and m.origin == origin]

    def get(self, message_id: str) -> Optional[Message]:
        for m in self.store.read():
            if m.id == message_id:
                return m
        return None

    def claim(self, message_id: str, *, claimer: str) -> bool:
        """
        认领一条消息（pending → claimed 的比较并交换）。

        返回：
        - True：本调用者赢得认领，应执行该消息
        - False：消息不存在或已被他人认领/处理
        """

        def _cas(messages: List[Message]) -> Tuple[Optional[List[Message]], bool]:
            for m in messages:
                if m.id != message_id:
                    continue
                if not m.is_pending:
                    return None, False
                m.status = "claimed"
                m.claimed_by = claimer
                return messages, True
            return None, False

        won = self.store.update(_cas)
        if not won:
            logger.debug("Claim lost for %s by %s", message_id, claimer)
        return won

    def respond(self, message_id: str, response: MessageResponse) -> bool:
        """
        写入响应并把消息标记为 done。

        返回：
        - False：消息不存在（可能已被 GC 回收）或已经有响应
        """

        def _answer(messages: List[Message]) -> Tuple[Optional[List[Message]], bool]:
            for m in messages:
                if m.id != message_id:
                    continue
                if m.is_done:
                    return None, False
                m.status = "done"
                m.response = response
                return messages, True
            return None, False

        written = self.store.update(_answer)
        if not written:
            logger.debug("Response for %s dropped (missing or already answered)", message_id)
        return written

    def take_response(self, message_id: str) -> Optional[MessageResponse]:
        """若消息已 done，则从队列移除并返回其响应；否则返回 None 且不修改队列。"""

        def _take(messages: List[Message]) -> Tuple[Optional[List[Message]], Optional[MessageResponse]]:
            for i, m in enumerate(messages):
                if m.id == message_id and m.is_done:
                    del messages[i]
                    return messages, m.response or MessageResponse(success=False, error="empty response")
            return None, None

        # 先无锁探测，避免每个轮询周期都争抢文件锁。
        current = self.get(message_id)
        if current is None or not current.is_done:
            return None
        return self.store.update(_take)

    def initialize(self) -> None:
        """
        host daemon 启动标记：重置队列为一条 done 的 `daemon_started` 消息。

        仍为 pending 的请求保留在标记之后，由 daemon 启动时处理；其余记录（已完成、被认领但
        处理方已退出的）丢弃。
        """

        marker = Message.create(origin="host", action="daemon_started")
        marker.status = "done"
        marker.response = MessageResponse.ok("Daemon started")
        self.store.update(lambda messages: ([marker, *(m for m in messages if m.is_pending)], None))

    def stats(self) -> Dict[str, int]:
        messages = self.store.read()
        return {
            "total": len(messages),
            "pending": sum(1 for m in messages if m.is_pending),
            "claimed": sum(1 for m in messages if m.status == "claimed"),
            "done": sum(1 for m in messages if m.is_done),
        }

    def cleanup(self, *, max_age_ms: int, now: Optional[int] = None) -> int:
        """删除 `now - timestamp >= max_age_ms` 的消息（任何状态），返回删除数。"""

        cutoff_now = now_ms() if now is None else now

        def _sweep(messages: List[Message]) -> Tuple[Optional[List[Message]], int]:
            kept, removed = sweep_stale(messages, max_age_ms=max_age_ms, now=cutoff_now)
            return (kept if removed else None), removed

        removed = self.store.update(_sweep)
        if removed:
            logger.debug("Garbage-collected %d stale message(s)", removed)
        return removed
