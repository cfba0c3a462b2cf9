from __future__ import annotations

import asyncio
from pathlib import Path
import threading
import time

import pytest

from sandbox_relay.core.errors import SandboxStateUnavailableError
from sandbox_relay.queue import await_response, enqueue, read_messages, respond
from sandbox_relay.queue.mailbox import MessageQueue
from sandbox_relay.queue.models import MessageResponse
from sandbox_relay.queue.sender import RelayClient, await_response_async
from sandbox_relay.queue.store import InMemoryMessageStore, JsonFileMessageStore


def test_await_response_returns_written_response_and_removes_message(tmp_path: Path) -> None:
    path = tmp_path / "messages.json"
    mid = enqueue(path, "sandbox", "ping")
    respond(path, mid, MessageResponse.ok("pong"))

    started = time.monotonic()
    resp = await_response(path, mid, 5000)
    assert resp == MessageResponse(success=True, output="pong")
    assert time.monotonic() - started < 0.5
    assert read_messages(path) == []
    # 第二次等待：消息已被移除
    assert await_response(path, mid, 150) is None


def test_await_response_sees_late_response_within_one_poll(tmp_path: Path) -> None:
    path = tmp_path / "messages.json"
    mid = enqueue(path, "sandbox", "ping")

    def _answer() -> None:
        time.sleep(0.2)
        respond(path, mid, MessageResponse.ok("pong"))

    t = threading.Thread(target=_answer)
    t.start()
    started = time.monotonic()
    resp = await_response(path, mid, 5000, poll_interval_ms=100)
    elapsed = time.monotonic() - started
    t.join()

    assert resp is not None and resp.output == "pong"
    assert elapsed < 1.0


def test_await_response_timeout_leaves_message_pending(tmp_path: Path) -> None:
    path = tmp_path / "messages.json"
    mid = enqueue(path, "sandbox", "ping")

    started = time.monotonic()
    assert await_response(path, mid, 200, poll_interval_ms=100) is None
    assert time.monotonic() - started >= 0.19

    remaining = read_messages(path)
    assert [(m.id, m.status) for m in remaining] == [(mid, "pending")]


def test_await_response_polls_at_configured_interval() -> None:
    queue = MessageQueue(InMemoryMessageStore())
    mid = queue.enqueue(origin="sandbox", action="ping")
    sleeps = []
    now = [0.0]

    def _sleep(sec: float) -> None:
        sleeps.append(sec)
        now[0] += sec

    from sandbox_relay.queue.sender import await_response as await_on_queue

    assert await_on_queue(queue, mid, timeout_ms=1000, poll_interval_ms=250, sleep=_sleep, clock=lambda: now[0]) is None
    assert sleeps == [0.25, 0.25, 0.25, 0.25]


def test_await_response_async(tmp_path: Path) -> None:
    queue = MessageQueue(JsonFileMessageStore(tmp_path / "messages.json"))
    mid = queue.enqueue(origin="sandbox", action="ping")

    async def _main():  # type: ignore[no-untyped-def]
        async def _answer() -> None:
            await asyncio.sleep(0.15)
            queue.respond(mid, MessageResponse.ok("pong"))

        task = asyncio.create_task(_answer())
        resp = await await_response_async(queue, mid, timeout_ms=3000, poll_interval_ms=50)
        await task
        return resp

    resp = asyncio.run(_main())
    assert resp is not None and resp.output == "pong"


def test_relay_client_timeout_is_failure_data(tmp_path: Path) -> None:
    client = RelayClient.for_workspace(tmp_path, poll_interval_ms=20)
    resp = client.request("notify", ["hi"], timeout_ms=60)
    assert resp.success is False
    assert "timed out after 60ms" in (resp.error or "")


def test_relay_client_ping_and_availability(tmp_path: Path) -> None:
    client = RelayClient.for_workspace(tmp_path, poll_interval_ms=10)
    assert client.is_available() is False

    def _daemon() -> None:
        deadline = time.monotonic() + 3
        while time.monotonic() < deadline:
            for m in client.queue.fetch_pending(origin="sandbox"):
                client.queue.respond(m.id, MessageResponse.ok("pong"))
                return
            time.sleep(0.01)

    t = threading.Thread(target=_daemon)
    t.start()
    assert client.ping(timeout_ms=3000) is True
    t.join()
    assert client.is_available() is True


def test_require_available_raises_structured_error(tmp_path: Path) -> None:
    client = RelayClient.for_workspace(tmp_path / "missing")
    with pytest.raises(SandboxStateUnavailableError) as ei:
        client.require_available()
    issue = ei.value.to_issue()
    assert issue.code == "STATE_DIR_UNAVAILABLE"
    assert issue.details["path"].endswith(".sandbox_relay")


def test_notify_via_targets_chat_action(tmp_path: Path) -> None:
    client = RelayClient.for_workspace(tmp_path, poll_interval_ms=10)
    with pytest.raises(ValueError):
        client.notify_via("pager", "x")
    resp = client.notify_via("slack", "deployed", timeout_ms=30)
    assert resp.success is False
    pending = client.queue.fetch_pending(origin="sandbox")
    assert [(m.action, m.args) for m in pending] == [("slack_notify", ["deployed"])]


def test_request_async_times_out(tmp_path: Path) -> None:
    client = RelayClient.for_workspace(tmp_path, poll_interval_ms=10)
    resp = asyncio.run(client.request_async("ping", timeout_ms=50))
    assert resp.success is False
    assert "timed out after 50ms" in (resp.error or "")


def test_ping_defaults_to_configured_timeout(tmp_path: Path) -> None:
    client = RelayClient.for_workspace(tmp_path, poll_interval_ms=10, ping_timeout_ms=40)
    seen = []
    real_request = client.request

    def _request(action, args=None, *, timeout_ms=0):  # type: ignore[no-untyped-def]
        seen.append(timeout_ms)
        return real_request(action, args, timeout_ms=timeout_ms)

    client.request = _request  # type: ignore[method-assign]
    started = time.monotonic()
    assert client.ping() is False
    assert time.monotonic() - started < 2
    assert client.ping(timeout_ms=20) is False
    assert seen == [40, 20]
