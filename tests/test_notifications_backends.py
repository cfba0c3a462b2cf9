from __future__ import annotations

import json
from typing import List

import httpx
import pytest

from sandbox_relay.config.loader import load_config_dicts
from sandbox_relay.core.errors import NotificationError
from sandbox_relay.notifications.backends import DEFAULT_MESSAGE, NotificationBackends, ntfy_url


def _backends(overlay: dict, handler) -> NotificationBackends:  # type: ignore[no-untyped-def]
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return NotificationBackends(load_config_dicts([overlay]), client=client)


def test_ntfy_url_strips_trailing_slash() -> None:
    cfg = load_config_dicts([{"notifications": {"ntfy": {"topic": "abc", "server": "https://n.example/"}}}])
    assert ntfy_url(cfg) == "https://n.example/abc"
    assert ntfy_url(load_config_dicts([])) is None


def test_telegram_posts_once_per_chat_id() -> None:
    seen: List[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    b = _backends({"chat": {"telegram": {"bot_token": "T0K", "allowed_chat_ids": ["1", "2"]}}}, _handler)
    assert b.send_telegram("hello") == "Sent to Telegram"
    assert [r.url.path for r in seen] == ["/botT0K/sendMessage"] * 2
    assert [json.loads(r.content)["chat_id"] for r in seen] == ["1", "2"]
    assert json.loads(seen[0].content)["text"] == "hello"


def test_telegram_api_error_body() -> None:
    b = _backends(
        {"chat": {"telegram": {"bot_token": "t", "allowed_chat_ids": ["1"]}}},
        lambda req: httpx.Response(200, json={"ok": False, "description": "chat not found"}),
    )
    with pytest.raises(NotificationError, match="chat not found"):
        b.send_telegram("x")


def test_slack_uses_bearer_and_checks_ok_flag() -> None:
    seen: List[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": False, "error": "channel_not_found"})

    b = _backends({"chat": {"slack": {"bot_token": "xoxb", "allowed_channel_ids": ["C1"]}}}, _handler)
    resp = b.deliver("slack", ["hi"])
    assert resp.success is False
    assert resp.error == "Slack API error: channel_not_found"
    assert seen[0].headers["Authorization"] == "Bearer xoxb"


def test_discord_uses_bot_auth_header() -> None:
    seen: List[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "m1"})

    b = _backends({"chat": {"discord": {"bot_token": "D", "allowed_channel_ids": ["99"]}}}, _handler)
    resp = b.deliver("discord", ["deployed"])
    assert resp.success is True and resp.output == "Sent to Discord"
    assert seen[0].headers["Authorization"] == "Bot D"
    assert seen[0].url.path.endswith("/channels/99/messages")
    assert json.loads(seen[0].content) == {"content": "deployed"}


@pytest.mark.parametrize(
    "backend,error",
    [
        ("ntfy", "ntfy topic is not configured"),
        ("telegram", "Telegram not configured"),
        ("slack", "Slack not configured"),
        ("discord", "Discord not configured"),
        ("pager", "Unknown notification backend: pager"),
    ],
)
def test_unconfigured_backends_fail_as_data(backend: str, error: str) -> None:
    resp = _backends({}, lambda req: httpx.Response(200)).deliver(backend, ["x"])
    assert resp.success is False
    assert resp.error == error


def test_empty_message_uses_default_text() -> None:
    seen: List[bytes] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.content)
        return httpx.Response(200)

    b = _backends({"notifications": {"ntfy": {"topic": "t"}}}, _handler)
    assert b.deliver("ntfy", []).success is True
    assert seen == [DEFAULT_MESSAGE.encode("utf-8")]


def test_transport_error_becomes_failure() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    b = _backends({"notifications": {"ntfy": {"topic": "t"}}}, _handler)
    resp = b.deliver("ntfy", ["x"])
    assert resp.success is False
    assert "Request failed" in (resp.error or "")
