"""
sandbox-relay：sandbox 与 host daemon 之间基于共享 JSON 文件的请求/响应通道与 action 分发。

主要入口：
- `sandbox_relay.queue`：enqueue / await_response / fetch_pending / respond / cleanup
- `sandbox_relay.actions`：内置 + 用户配置 action 的合并解析与分发
- `sandbox_relay.listener`：一次性与常驻监听循环
- `sandbox_relay.cli.main`：`sandbox-relay` 命令行
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
