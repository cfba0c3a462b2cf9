from __future__ import annotations

from pathlib import Path
import threading
import time
from typing import List

from sandbox_relay.listener.loop import Listener
from sandbox_relay.queue.gc import GarbageCollector
from sandbox_relay.queue.mailbox import MessageQueue
from sandbox_relay.queue.models import Message, MessageResponse, now_ms
from sandbox_relay.queue.sender import await_response
from sandbox_relay.queue.store import JsonFileMessageStore


def _queue(tmp_path: Path) -> MessageQueue:
    return MessageQueue(JsonFileMessageStore(tmp_path / ".sandbox_relay" / "messages.json"))


def _echo_handler(seen: List[str]):  # type: ignore[no-untyped-def]
    def _handle(message: Message) -> MessageResponse:
        seen.append(message.action)
        return MessageResponse.ok(" ".join(message.args or []) or message.action)

    return _handle


def test_run_once_handles_only_matching_origin(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    a = queue.enqueue(origin="sandbox", action="notify", args=["hi"])
    b = queue.enqueue(origin="host", action="exec", args=["ls"])
    seen: List[str] = []

    count = Listener(queue, sender_origin="sandbox", handler=_echo_handler(seen)).run_once()

    assert count == 1
    assert seen == ["notify"]
    assert queue.get(a).response == MessageResponse.ok("hi")  # type: ignore[union-attr]
    assert queue.get(b).status == "pending"  # type: ignore[union-attr]


def test_handler_exception_becomes_failed_response(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    mid = queue.enqueue(origin="sandbox", action="boom")

    def _explode(_m: Message) -> MessageResponse:
        raise RuntimeError("kaput")

    Listener(queue, sender_origin="sandbox", handler=_explode).run_once()
    msg = queue.get(mid)
    assert msg is not None and msg.status == "done"
    assert msg.response is not None and msg.response.success is False
    assert "kaput" in (msg.response.error or "")


def test_claimed_message_is_not_executed_twice(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    mid = queue.enqueue(origin="sandbox", action="deploy")
    seen: List[str] = []
    first = Listener(queue, sender_origin="sandbox", handler=_echo_handler(seen), name="one")
    second = Listener(queue, sender_origin="sandbox", handler=_echo_handler(seen), name="two")

    # 第二个监听者先认领，第一个监听者的 claim 失败
    pending = queue.fetch_pending(origin="sandbox")
    assert queue.claim(mid, claimer="two")
    assert first._handle(pending[0]) is False
    assert seen == []
    assert second.run_once() == 0


def test_processing_guard_rejects_reentrant_batch(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    queue.enqueue(origin="sandbox", action="slow")
    inner_counts: List[int] = []
    listener: Listener

    def _reenter(message: Message) -> MessageResponse:
        inner_counts.append(listener.run_once())
        return MessageResponse.ok()

    listener = Listener(queue, sender_origin="sandbox", handler=_reenter)
    assert listener.run_once() == 1
    assert inner_counts == [0]


def test_run_once_runs_gc_after_batch(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    stale = Message(id="old", origin="sandbox", action="notify", timestamp=now_ms() - 120_000)
    queue.store.write([stale])
    listener = Listener(
        queue,
        sender_origin="host",
        handler=_echo_handler([]),
        gc=GarbageCollector(queue, max_age_ms=60_000),
    )
    listener.run_once()
    assert queue.store.read() == []


def test_serve_forever_drains_backlog_and_new_requests(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    backlog = queue.enqueue(origin="sandbox", action="early")
    seen: List[str] = []
    listener = Listener(
        queue,
        sender_origin="sandbox",
        handler=_echo_handler(seen),
        interval_ms=200,
        watch_path=tmp_path / ".sandbox_relay" / "messages.json",
    )
    t = threading.Thread(target=listener.serve_forever, kwargs={"install_signal_handlers": False})
    t.start()
    try:
        first = await_response(queue, backlog, timeout_ms=5000, poll_interval_ms=20)
        assert first is not None and first.output == "early"

        started = time.monotonic()
        later = queue.enqueue(origin="sandbox", action="notify", args=["later"])
        second = await_response(queue, later, timeout_ms=5000, poll_interval_ms=20)
        assert second is not None and second.output == "later"
        assert time.monotonic() - started < 3
    finally:
        listener.stop()
        t.join(timeout=5)
    assert not t.is_alive()
    assert seen == ["early", "notify"]


def test_serve_forever_without_watch_dir_uses_timer(tmp_path: Path) -> None:
    queue = MessageQueue(JsonFileMessageStore(tmp_path / "later" / "messages.json"))
    listener = Listener(
        queue,
        sender_origin="sandbox",
        handler=_echo_handler([]),
        interval_ms=50,
        watch_path=tmp_path / "later" / "messages.json",
    )
    t = threading.Thread(target=listener.serve_forever, kwargs={"install_signal_handlers": False})
    t.start()
    try:
        mid = queue.enqueue(origin="sandbox", action="ping")
        resp = await_response(queue, mid, timeout_ms=5000, poll_interval_ms=20)
        assert resp is not None and resp.success
    finally:
        listener.stop()
        t.join(timeout=5)
    assert listener.stopped
