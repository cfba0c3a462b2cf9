"""
sandbox-relay CLI（action / notify / listen / daemon / queue）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- 面向用户的输出写 stdout/stderr；日志写 stderr（`--debug` 时为 DEBUG 级）
- `main()` 返回退出码而不是直接 `sys.exit`，便于测试

退出码：
- 0：成功
- 1：未知 action、daemon 不可用、超时、响应失败、子进程失败（直接执行时透传非零退出码）
- 2：参数错误
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
import sys
from typing import Optional, Sequence

from sandbox_relay import __version__
from sandbox_relay.actions.dispatcher import ActionDispatcher
from sandbox_relay.actions.runner import ActionRunner
from sandbox_relay.actions.table import action_table_for, build_builtin_actions, resolve_action_table
from sandbox_relay.config.loader import RelayConfig, load_relay_config
from sandbox_relay.core.errors import ConfigError, FrameworkError
from sandbox_relay.core.utf8 import ensure_utf8_stdio
from sandbox_relay.daemon import HostDaemon, daemon_status
from sandbox_relay.listener.handlers import SandboxHandlers
from sandbox_relay.listener.loop import Listener
from sandbox_relay.notifications.backends import DEFAULT_MESSAGE, NotificationBackends
from sandbox_relay.queue.gc import GarbageCollector
from sandbox_relay.queue.mailbox import MessageQueue
from sandbox_relay.queue.paths import SANDBOX_WORKSPACE, get_relay_paths, is_running_in_sandbox
from sandbox_relay.queue.sender import RelayClient
from sandbox_relay.queue.store import JsonFileMessageStore

logger = logging.getLogger("sandbox_relay.cli")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def _err(text: str) -> None:
    print(text, file=sys.stderr)


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logging.getLogger("sandbox_relay").setLevel(logging.DEBUG if debug else logging.INFO)


def _workspace_root(args: argparse.Namespace, *, in_sandbox: bool) -> Path:
    raw = getattr(args, "workspace_root", None)
    if raw:
        return Path(str(raw)).expanduser().resolve()
    return SANDBOX_WORKSPACE if in_sandbox else Path.cwd().resolve()


def _load_config(args: argparse.Namespace, workspace_root: Path, *, require_project: bool) -> Optional[RelayConfig]:
    """加载配置；失败时向 stderr 输出原因并返回 None。"""

    overlays = [Path(p) for p in (getattr(args, "config", None) or [])]
    try:
        return load_relay_config(workspace_root=workspace_root, overlay_paths=overlays, require_project=require_project)
    except ConfigError as exc:
        if exc.code == "CONFIG_NOT_FOUND":
            _err(f"Failed to load config: {exc.message}")
            _err(f"Create {get_relay_paths(workspace_root=workspace_root).config_yaml_path} first.")
        else:
            _err(f"Invalid config: {exc.message}")
            for item in exc.details.get("errors", []):
                _err(f"  {item.get('loc')}: {item.get('msg')}")
        return None


def _client(config: RelayConfig, workspace_root: Path) -> RelayClient:
    return RelayClient.for_workspace(
        workspace_root,
        poll_interval_ms=config.queue.poll_interval_ms,
        ping_timeout_ms=config.timeouts.ping_ms,
        strict=config.queue.strict_reads,
    )


def _build_parser() -> argparse.ArgumentParser:
    """构建 CLI argparse parser。"""

    parser = argparse.ArgumentParser(
        prog="sandbox-relay",
        description="Sandbox-to-host request relay and action dispatcher.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    root_sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        p.add_argument("--workspace-root", default=None, help="Project root (default: /workspace in sandbox, else cwd).")
        p.add_argument("--config", action="append", default=[], help="Overlay config YAML/JSON path (repeatable).")
        p.add_argument("-d", "--debug", action="store_true", help="Verbose logging to stderr.")

    action_p = root_sub.add_parser("action", help="Run a built-in or configured action")
    _add_common_flags(action_p)
    action_p.add_argument("-l", "--list", action="store_true", help="List available actions.")
    action_p.add_argument("--timeout-ms", type=int, default=None, help="Queue response timeout (default: timeouts.action_ms).")
    action_p.add_argument("name", nargs="?", help="Action name.")
    action_p.add_argument("action_args", nargs=argparse.REMAINDER, help="Arguments passed to the action.")

    notify_p = root_sub.add_parser("notify", help="Send a notification (via the daemon when inside the sandbox)")
    _add_common_flags(notify_p)
    notify_p.add_argument("-a", "--action", default="notify", help="Daemon action to call (default: notify).")
    notify_p.add_argument("message", nargs="*", help="Notification text.")

    listen_p = root_sub.add_parser("listen", help="Sandbox listener for host-originated requests")
    _add_common_flags(listen_p)
    listen_p.add_argument("--once", action="store_true", help="Process pending requests once and exit.")

    daemon_p = root_sub.add_parser("daemon", help="Host daemon")
    daemon_sub = daemon_p.add_subparsers(dest="daemon_cmd", required=True)
    _add_common_flags(daemon_sub.add_parser("start", help="Start the daemon (host only)"))
    _add_common_flags(daemon_sub.add_parser("status", help="Show queue status"))

    queue_p = root_sub.add_parser("queue", help="Queue maintenance")
    queue_sub = queue_p.add_subparsers(dest="queue_cmd", required=True)
    _add_common_flags(queue_sub.add_parser("status", help="Show queue counts"))
    cleanup_p = queue_sub.add_parser("cleanup", help="Remove stale messages")
    _add_common_flags(cleanup_p)
    cleanup_p.add_argument("--max-age-ms", type=int, default=None, help="Maximum age (default: queue.host_gc_max_age_ms).")

    return parser


def _handle_action(args: argparse.Namespace) -> int:
    in_sandbox = is_running_in_sandbox()
    ws = _workspace_root(args, in_sandbox=in_sandbox)
    config = _load_config(args, ws, require_project=True)
    if config is None:
        return EXIT_FAILURE

    table = action_table_for(config)
    if args.list or not args.name or args.name == "help":
        print(table.render_list())
        if len(table):
            print("")
            print("Run an action: sandbox-relay action <name> [args...]")
            print("Note: built-in actions require the daemon to be running.")
        return EXIT_OK

    dispatcher = ActionDispatcher(
        table,
        location="sandbox" if in_sandbox else "host",
        client=_client(config, ws),
        cwd=ws,
        timeout_ms=args.timeout_ms or config.timeouts.action_ms,
        echo=print,
    )
    outcome = dispatcher.dispatch(args.name, list(args.action_args or []))
    if outcome.response is not None and outcome.response.output:
        print("")
        print(outcome.response.output)
    if outcome.exit_code == EXIT_OK:
        print("")
        print(f"Action '{args.name}' completed successfully.")
    elif outcome.error:
        _err(outcome.error)
    return outcome.exit_code


def _handle_notify(args: argparse.Namespace) -> int:
    in_sandbox = is_running_in_sandbox()
    ws = _workspace_root(args, in_sandbox=in_sandbox)
    action = args.action or "notify"
    text = " ".join(args.message or []).strip()
    if not text and action == "notify":
        text = DEFAULT_MESSAGE

    if in_sandbox:
        config = _load_config(args, ws, require_project=False)
        if config is None:
            return EXIT_FAILURE
        client = _client(config, ws)
        if not client.is_available():
            _err("Error: shared state directory is not mounted in the sandbox.")
            return EXIT_FAILURE
        print("Message sent. Waiting for daemon response...")
        timeout_ms = config.timeouts.ping_ms if action == "ping" else config.timeouts.notify_ms
        response = client.request(action, [text] if text else None, timeout_ms=timeout_ms)
        if not response.success:
            _err(f"Failed: {response.error}")
            return EXIT_FAILURE
        if action == "ping":
            print(f"Daemon is responsive: {response.output}")
        else:
            print("Notification sent successfully.")
            logger.debug("Daemon output: %s", response.output)
        return EXIT_OK

    config = _load_config(args, ws, require_project=True)
    if config is None:
        return EXIT_FAILURE
    table = resolve_action_table(build_builtin_actions(config), {})
    if "notify" not in table:
        _err("No notification method configured.")
        _err("Set notifications.provider (ntfy or command) in the project config.")
        return EXIT_FAILURE
    with NotificationBackends(config) as backends:
        runner = ActionRunner(table, backends=backends, cwd=ws, timeout_ms=config.timeouts.notify_ms)
        response = runner.run("notify", [text])
    if not response.success:
        _err(f"Failed: {response.error}")
        return EXIT_FAILURE
    print("Notification sent directly.")
    return EXIT_OK


def _handle_listen(args: argparse.Namespace) -> int:
    in_sandbox = is_running_in_sandbox()
    if not in_sandbox:
        _err("Error: 'listen' runs inside the sandbox. Use 'daemon start' on the host.")
        return EXIT_FAILURE
    ws = _workspace_root(args, in_sandbox=True)
    config = _load_config(args, ws, require_project=False)
    if config is None:
        return EXIT_FAILURE

    paths = get_relay_paths(workspace_root=ws)
    queue = MessageQueue(JsonFileMessageStore(paths.messages_path, strict=config.queue.strict_reads))
    handlers = SandboxHandlers(config, paths=paths)
    listener = Listener(
        queue,
        sender_origin="host",
        handler=handlers,
        gc=GarbageCollector(queue, max_age_ms=config.queue.sandbox_gc_max_age_ms),
        name="sandbox-listener",
        interval_ms=config.queue.listener_interval_ms,
        watch_path=paths.messages_path,
    )

    if args.once:
        count = listener.run_once()
        print(f"Processed {count} message(s).")
        return EXIT_OK

    print("Sandbox Listener")
    print("-" * 40)
    print(f"Messages file: {paths.messages_path}")
    print(f"Supported actions: {', '.join(handlers.supported)}")
    print("Press Ctrl+C to stop.")
    listener.serve_forever()
    print("Stopping listener...")
    return EXIT_OK


def _handle_daemon(args: argparse.Namespace) -> int:
    in_sandbox = is_running_in_sandbox()
    ws = _workspace_root(args, in_sandbox=in_sandbox)

    if args.daemon_cmd == "status":
        print(daemon_status(workspace_root=ws).render())
        print("")
        print("To start the daemon: sandbox-relay daemon start")
        return EXIT_OK

    if in_sandbox:
        _err("Error: 'daemon start' should run on the host, not inside the sandbox.")
        return EXIT_FAILURE
    config = _load_config(args, ws, require_project=True)
    if config is None:
        return EXIT_FAILURE
    try:
        HostDaemon(config, workspace_root=ws).start(in_sandbox=False)
    except FrameworkError as exc:
        _err(f"Error: {exc.message}")
        return EXIT_FAILURE
    return EXIT_OK


def _handle_queue(args: argparse.Namespace) -> int:
    in_sandbox = is_running_in_sandbox()
    ws = _workspace_root(args, in_sandbox=in_sandbox)
    config = _load_config(args, ws, require_project=False)
    if config is None:
        return EXIT_FAILURE
    paths = get_relay_paths(workspace_root=ws)
    queue = MessageQueue(JsonFileMessageStore(paths.messages_path))

    if args.queue_cmd == "cleanup":
        max_age = args.max_age_ms
        if max_age is None:
            max_age = config.queue.sandbox_gc_max_age_ms if in_sandbox else config.queue.host_gc_max_age_ms
        removed = queue.cleanup(max_age_ms=max_age)
        print(f"Removed {removed} message(s) older than {max_age}ms.")
        return EXIT_OK

    stats = queue.stats()
    print(f"Messages file: {paths.messages_path}")
    for key in ("total", "pending", "claimed", "done"):
        print(f"{key.capitalize()}: {stats[key]}")
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]。

    返回：
    - int：exit code（不会直接 sys.exit）。
    """

    ensure_utf8_stdio()

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        # `--help`/`--version` 为 0，参数错误为 2
        code = exc.code
        if code is None:
            return EXIT_USAGE
        return int(code)

    _configure_logging(bool(getattr(args, "debug", False)))

    handlers = {
        "action": _handle_action,
        "notify": _handle_notify,
        "listen": _handle_listen,
        "daemon": _handle_daemon,
        "queue": _handle_queue,
    }
    handler = handlers.get(args.command)
    if handler is None:
        _err(f"Unknown command: {args.command}")
        return EXIT_USAGE
    return handler(args)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
