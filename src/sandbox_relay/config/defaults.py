"""
内置默认配置加载器。

默认配置通过 `importlib.resources` 随 package 分发，不依赖 repo 相对路径。
"""

from __future__ import annotations

from importlib.resources import files
from typing import Any, Dict

import yaml


def load_default_config_dict() -> Dict[str, Any]:
    """
    读取内置默认配置（YAML）并返回 dict。

    返回：
    - dict：用于与项目 overlay 做深度合并（语义见 `sandbox_relay.config.loader`）

    异常：
    - RuntimeError：资源缺失或内容不是 mapping(dict)
    """

    try:
        text = files("sandbox_relay.assets").joinpath("default.yaml").read_text(encoding="utf-8")
    except (FileNotFoundError, ModuleNotFoundError) as exc:  # pragma: no cover
        raise RuntimeError("failed to load embedded default config") from exc

    obj = yaml.safe_load(text) or {}
    if not isinstance(obj, dict):
        raise RuntimeError("embedded default config root must be a mapping(dict)")
    return obj
