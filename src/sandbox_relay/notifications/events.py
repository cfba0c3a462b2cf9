"""
会话事件通知与 daemon 事件钩子。

会话工具在关键节点（任务完成、全部完成、单轮结束、出错）调用 `notify_event(...)`：
1) 发送一条普通通知（sandbox 内优先经 daemon，失败或不可用时回退本地命令）
2) 触发 `daemon.events` 中为该事件配置的全部钩子（每个钩子一次 daemon 请求）
"""

from __future__ import annotations

import logging
from pathlib import Path
import shlex
from typing import Dict, List, Literal, Optional

from sandbox_relay.config.loader import EventName, RelayConfig
from sandbox_relay.core.executor import Executor
from sandbox_relay.queue.models import MessageResponse
from sandbox_relay.queue.sender import RelayClient

logger = logging.getLogger(__name__)

NotificationEvent = Literal["prd_complete", "iteration_complete", "run_stopped", "task_complete", "error"]

DEFAULT_EVENT_MESSAGES: Dict[str, str] = {
    "prd_complete": "PRD complete! All tasks finished.",
    "iteration_complete": "Iteration complete.",
    "run_stopped": "Run stopped.",
    "task_complete": "Task complete.",
    "error": "An error occurred.",
}

_EVENT_MAP: Dict[str, EventName] = {
    "prd_complete": "ralph_complete",
    "task_complete": "task_complete",
    "iteration_complete": "iteration_complete",
    "error": "error",
    "run_stopped": "error",
}


def map_notification_event(event: str) -> Optional[EventName]:
    """把会话通知事件映射为 daemon 事件名；无对应时返回 None。"""

    return _EVENT_MAP.get(event)


def render_event_message(template: Optional[str], *, task: Optional[str] = None, error: Optional[str] = None) -> str:
    """替换 `{{task}}` / `{{error}}` 占位符（未提供上下文的占位符原样保留）。"""

    text = template or ""
    if task:
        text = text.replace("{{task}}", task)
    if error:
        text = text.replace("{{error}}", error)
    return text


def trigger_events(
    config: RelayConfig,
    event: EventName,
    *,
    client: RelayClient,
    task: Optional[str] = None,
    error: Optional[str] = None,
) -> List[MessageResponse]:
    """
    依次执行某事件的全部钩子。

    返回：
    - 每个钩子的响应（顺序与配置一致）；daemon 不可用时返回空列表。

    说明：
    - 单个钩子失败只记录日志，不影响后续钩子。
    """

    handlers = config.daemon.events.get(event) or []
    if not handlers:
        logger.debug("No handlers configured for event %s", event)
        return []
    if not client.is_available():
        logger.info("Daemon not available, skipping %d handler(s) for %s", len(handlers), event)
        return []

    results: List[MessageResponse] = []
    for handler in handlers:
        args = list(handler.args)
        message = render_event_message(handler.message, task=task, error=error)
        if message:
            args.append(message)
        logger.debug("Triggering %s: action=%s args=%r", event, handler.action, args)
        response = client.request(handler.action, args, timeout_ms=config.timeouts.notify_ms)
        if not response.success:
            logger.warning("Event handler %s for %s failed: %s", handler.action, event, response.error)
        results.append(response)
    return results


def _local_notify_command(config: RelayConfig) -> Optional[str]:
    if config.notifications.provider == "command" and config.notifications.command:
        return config.notifications.command
    return config.notify_command


def send_notification(
    event: str,
    message: Optional[str] = None,
    *,
    config: RelayConfig,
    client: Optional[RelayClient] = None,
    in_sandbox: bool = False,
    executor: Optional[Executor] = None,
    cwd: Optional[Path] = None,
) -> bool:
    """
    发送一条会话通知（尽力而为，失败不抛异常）。

    返回：
    - True：经 daemon 送达，或本地通知命令已启动
    - False：未配置任何通知方式，或全部失败
    """

    text = message or DEFAULT_EVENT_MESSAGES.get(event, event)

    if in_sandbox and client is not None and client.is_available():
        response = client.notify(text, timeout_ms=config.timeouts.notify_ms)
        if response.success:
            return True
        logger.info("Daemon notification failed (%s); falling back to local command", response.error)

    command = _local_notify_command(config)
    if not command or not command.strip():
        logger.debug("No notification command configured, skipping notification")
        return False
    argv = shlex.split(command) + [text]
    try:
        (executor or Executor()).spawn_detached(argv, cwd=cwd or Path.cwd())
    except OSError as exc:
        logger.warning("Failed to start notification command %r: %s", argv[0], exc)
        return False
    return True


def notify_event(
    event: str,
    message: Optional[str] = None,
    *,
    config: RelayConfig,
    client: Optional[RelayClient] = None,
    in_sandbox: bool = False,
    task: Optional[str] = None,
    error: Optional[str] = None,
) -> bool:
    """普通通知 + daemon 事件钩子。返回普通通知是否送达。"""

    sent = send_notification(event, message, config=config, client=client, in_sandbox=in_sandbox)
    daemon_event = map_notification_event(event)
    if daemon_event is not None and client is not None:
        trigger_events(config, daemon_event, client=client, task=task, error=error)
    return sent
