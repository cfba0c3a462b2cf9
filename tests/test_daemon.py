from __future__ import annotations

from pathlib import Path
import threading
import time
from typing import List

import httpx
import pytest

from sandbox_relay.config.loader import load_config_dicts
from sandbox_relay.core.errors import FrameworkError
from sandbox_relay.daemon import HostDaemon, daemon_status
from sandbox_relay.notifications.backends import NotificationBackends
from sandbox_relay.queue.models import Message, now_ms
from sandbox_relay.queue.sender import RelayClient


def _daemon(tmp_path: Path, overlay: dict | None = None) -> HostDaemon:
    cfg = load_config_dicts([overlay or {}])
    backends = NotificationBackends(cfg, client=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200))))
    return HostDaemon(cfg, workspace_root=tmp_path, backends=backends)


def _wait_for(predicate, timeout: float = 5.0) -> bool:  # type: ignore[no-untyped-def]
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_start_refuses_inside_sandbox(tmp_path: Path) -> None:
    d = _daemon(tmp_path)
    with pytest.raises(FrameworkError) as ei:
        d.start(in_sandbox=True)
    assert ei.value.code == "DAEMON_IN_SANDBOX"
    assert not d.paths.messages_path.exists()


def test_handle_routes_through_action_table(tmp_path: Path) -> None:
    d = _daemon(tmp_path, {"daemon": {"actions": {"hello": {"command": "echo hello"}}}})
    assert d.handle(Message.create(origin="sandbox", action="hello", args=["world"])).output == "hello world"
    assert d.handle(Message.create(origin="sandbox", action="ping")).output == "pong"
    unknown = d.handle(Message.create(origin="sandbox", action="nope"))
    assert unknown.success is False and unknown.error is not None and unknown.error.startswith("Unknown action: nope")


def test_describe_actions_uses_summaries(tmp_path: Path) -> None:
    d = _daemon(tmp_path, {"daemon": {"actions": {"build": {"command": "make", "description": "Build it"}}}})
    described = d.describe_actions()
    assert described["build"] == "Build it"
    assert list(described)[:1] == ["ping"]


def test_status_before_and_after_start(tmp_path: Path) -> None:
    before = daemon_status(workspace_root=tmp_path)
    assert before.exists is False
    assert "File exists: no" in before.render()

    client = RelayClient.for_workspace(tmp_path)
    client.queue.enqueue(origin="sandbox", action="ping")
    after = daemon_status(workspace_root=tmp_path)
    assert after.exists is True
    assert (after.total, after.pending) == (1, 1)
    assert "Pending messages: 1" in after.render()


def test_daemon_serves_requests_until_stopped(tmp_path: Path) -> None:
    d = _daemon(tmp_path, {"queue": {"listener_interval_ms": 100}})
    d.paths.state_dir.mkdir(parents=True)
    stale = Message(id="stale", origin="sandbox", action="ping", timestamp=now_ms() - 600_000, status="done")
    d.queue.store.write([stale])

    lines: List[str] = []
    t = threading.Thread(target=d.start, kwargs={"in_sandbox": False, "echo": lines.append, "install_signal_handlers": False})
    t.start()
    try:
        assert _wait_for(lambda: any(l.startswith("Watching") for l in lines))
        client = RelayClient.for_workspace(tmp_path, poll_interval_ms=10)
        assert client.ping(timeout_ms=5000) is True
        ids = [m.id for m in d.queue.store.read()]
        assert "stale" not in ids
    finally:
        d.stop()
        t.join(timeout=5)
    assert not t.is_alive()
    assert lines[0] == "Daemon started"
    assert any(l.startswith("  ping:") for l in lines)
    assert lines[-1] == "Shutting down daemon..."
