"""
通知后端（HTTP）：ntfy / Telegram / Slack / Discord。

说明：
- 只负责“发出一条通知”，不实现聊天机器人的接收与应答。
- 每个 `send_*` 在失败时抛 `NotificationError`；`deliver(...)` 把结果统一转换为
  `MessageResponse`，供 daemon 写回队列。
- `httpx.Client` 可注入（测试使用 `httpx.MockTransport`）。
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from sandbox_relay.config.loader import RelayConfig
from sandbox_relay.core.errors import NotificationError
from sandbox_relay.queue.models import MessageResponse

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"
SLACK_API = "https://slack.com/api"
DISCORD_API = "https://discord.com/api/v10"

DEFAULT_MESSAGE = "Session notification"


def ntfy_url(config: RelayConfig) -> Optional[str]:
    """ntfy 目标 URL（`<server>/<topic>`）；未配置 topic 时为 None。"""

    ntfy = config.notifications.ntfy
    if not ntfy.topic:
        return None
    server = (ntfy.server or "https://ntfy.sh").rstrip("/")
    return f"{server}/{ntfy.topic}"


class NotificationBackends:
    """
    绑定到一份配置的 HTTP 通知发送器。

    参数：
    - config：生效配置（读取凭据与目标 id）
    - client：可选的 `httpx.Client`；不传时按需创建并在 `close()` 时释放
    """

    def __init__(self, config: RelayConfig, *, client: Optional[httpx.Client] = None) -> None:
        self._config = config
        self._client = client
        self._owns_client = client is None

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=httpx.Timeout(self._config.http.timeout_sec))
        return self._client

    def close(self) -> None:
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "NotificationBackends":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = self._http().post(url, **kwargs)
            resp.raise_for_status()
            return resp
        except httpx.HTTPStatusError as exc:
            raise NotificationError(f"HTTP {exc.response.status_code} from {exc.request.url.host}") from exc
        except httpx.TimeoutException as exc:
            raise NotificationError(f"Timed out contacting {exc.request.url.host}") from exc
        except httpx.RequestError as exc:
            raise NotificationError(f"Request failed: {exc}") from exc

    def send_ntfy(self, message: str) -> str:
        url = ntfy_url(self._config)
        if url is None:
            raise NotificationError("ntfy topic is not configured")
        self._post(url, content=message.encode("utf-8"))
        return f"Sent to {url}"

    def send_telegram(self, message: str) -> str:
        tg = self._config.chat.telegram
        if not tg.bot_token:
            raise NotificationError("Telegram not configured")
        if not tg.allowed_chat_ids:
            raise NotificationError("No chat IDs configured for Telegram")
        url = f"{TELEGRAM_API}/bot{tg.bot_token}/sendMessage"
        for chat_id in tg.allowed_chat_ids:
            resp = self._post(url, json={"chat_id": chat_id, "text": message})
            body = _json_or_empty(resp)
            if body.get("ok") is False:
                raise NotificationError(f"Telegram API error: {body.get('description', 'unknown error')}")
        return "Sent to Telegram"

    def send_slack(self, message: str) -> str:
        sl = self._config.chat.slack
        if not sl.bot_token:
            raise NotificationError("Slack not configured")
        if not sl.allowed_channel_ids:
            raise NotificationError("No channel IDs configured for Slack")
        headers = {"Authorization": f"Bearer {sl.bot_token}"}
        for channel in sl.allowed_channel_ids:
            resp = self._post(f"{SLACK_API}/chat.postMessage", json={"channel": channel, "text": message}, headers=headers)
            body = _json_or_empty(resp)
            if not body.get("ok", False):
                raise NotificationError(f"Slack API error: {body.get('error', 'unknown error')}")
        return "Sent to Slack"

    def send_discord(self, message: str) -> str:
        dc = self._config.chat.discord
        if not dc.bot_token:
            raise NotificationError("Discord not configured")
        if not dc.allowed_channel_ids:
            raise NotificationError("No channel IDs configured for Discord")
        headers = {"Authorization": f"Bot {dc.bot_token}"}
        for channel in dc.allowed_channel_ids:
            self._post(f"{DISCORD_API}/channels/{channel}/messages", json={"content": message}, headers=headers)
        return "Sent to Discord"

    def senders(self) -> Dict[str, Callable[[str], str]]:
        return {
            "ntfy": self.send_ntfy,
            "telegram": self.send_telegram,
            "slack": self.send_slack,
            "discord": self.send_discord,
        }

    def deliver(self, backend: str, args: Optional[List[str]] = None) -> MessageResponse:
        """
        发送通知并把结果转成响应数据（不抛异常）。

        参数：
        - backend：ntfy / telegram / slack / discord
        - args：通知正文片段（以空格拼接；为空时使用默认文案）
        """

        sender = self.senders().get(backend)
        if sender is None:
            return MessageResponse.fail(f"Unknown notification backend: {backend}")
        message = " ".join(args or []).strip() or DEFAULT_MESSAGE
        try:
            return MessageResponse.ok(sender(message))
        except NotificationError as exc:
            logger.warning("%s notification failed: %s", backend, exc)
            return MessageResponse.fail(str(exc))


def _json_or_empty(resp: httpx.Response) -> Dict[str, object]:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
