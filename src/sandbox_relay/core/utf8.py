"""
CLI 入口的 UTF-8 输出兜底。

在 `C` locale 或部分容器镜像中 stdout/stderr 可能是 ASCII 编码，
打印通知正文（常含非 ASCII 字符）时会触发 `UnicodeEncodeError`。
入口应尽早调用 `ensure_utf8_stdio()`。
"""

from __future__ import annotations

import sys


def ensure_utf8_stdio() -> None:
    """best-effort 将 stdout/stderr reconfigure 为 UTF-8（失败不阻断启动）。"""

    for stream in (sys.stdout, sys.stderr):
        reconfigure = getattr(stream, "reconfigure", None)
        if not callable(reconfigure):
            continue
        try:
            reconfigure(encoding="utf-8", errors="replace")
        except (ValueError, OSError):
            continue
