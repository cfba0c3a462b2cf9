from __future__ import annotations

from pathlib import Path
import sys
from typing import List

import httpx

from sandbox_relay.actions.runner import ActionRunner, build_shell_command
from sandbox_relay.actions.table import action_table_for
from sandbox_relay.config.loader import load_config_dicts
from sandbox_relay.notifications.backends import NotificationBackends


def _runner(tmp_path: Path, overlay: dict, *, handler=None, output_limit: int = 4000) -> ActionRunner:  # type: ignore[no-untyped-def]
    cfg = load_config_dicts([overlay])
    client = httpx.Client(transport=httpx.MockTransport(handler or (lambda req: httpx.Response(200))))
    return ActionRunner(
        action_table_for(cfg),
        backends=NotificationBackends(cfg, client=client),
        cwd=tmp_path,
        timeout_ms=10_000,
        output_limit=output_limit,
    )


def test_build_shell_command_quotes_each_arg() -> None:
    assert build_shell_command("echo", None) == "echo"
    assert build_shell_command("echo", ["a b", "it's"]) == "echo 'a b' 'it'\"'\"'s'"


def test_ping_builtin_outputs_pong(tmp_path: Path) -> None:
    resp = _runner(tmp_path, {}).run("ping")
    assert resp.success is True
    assert resp.output == "pong"


def test_configured_action_receives_args(tmp_path: Path) -> None:
    overlay = {"daemon": {"actions": {"say": {"command": "printf '%s|'"}}}}
    resp = _runner(tmp_path, overlay).run("say", ["one two", "$HOME"])
    assert resp.success is True
    assert resp.output == "one two|$HOME|"


def test_failure_prefers_stderr_then_exit_code(tmp_path: Path) -> None:
    overlay = {
        "daemon": {
            "actions": {
                "loud": {"command": "echo boom >&2; exit 3"},
                "quiet": {"command": "exit 4"},
            }
        }
    }
    runner = _runner(tmp_path, overlay)
    loud = runner.run("loud")
    assert loud.success is False and loud.error == "boom"
    quiet = runner.run("quiet")
    assert quiet.success is False and quiet.error == "Exit code: 4"


def test_output_truncated_past_limit(tmp_path: Path) -> None:
    overlay = {"daemon": {"actions": {"big": {"command": f"{sys.executable} -c \"print('x' * 5000)\""}}}}
    resp = _runner(tmp_path, overlay).run("big")
    assert resp.success is True
    assert resp.output is not None
    assert resp.output == "x" * 4000 + "\n...(truncated)"


def test_unknown_action_is_failure_data(tmp_path: Path) -> None:
    resp = _runner(tmp_path, {}).run("deploy")
    assert resp.success is False
    assert resp.error is not None and resp.error.startswith("Unknown action: deploy. Available: ping")


def test_ntfy_notify_posts_message(tmp_path: Path) -> None:
    seen: List[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "1"})

    overlay = {"notifications": {"provider": "ntfy", "ntfy": {"topic": "t1", "server": "https://push.example"}}}
    resp = _runner(tmp_path, overlay, handler=_handler).run("notify", ["build", "done"])
    assert resp.success is True
    assert str(seen[0].url) == "https://push.example/t1"
    assert seen[0].content == b"build done"


def test_http_failure_becomes_response_data(tmp_path: Path) -> None:
    overlay = {"chat": {"telegram": {"bot_token": "tok", "allowed_chat_ids": ["42"]}}}
    resp = _runner(tmp_path, overlay, handler=lambda req: httpx.Response(500)).run("telegram_notify", ["hi"])
    assert resp.success is False
    assert "HTTP 500" in (resp.error or "")
