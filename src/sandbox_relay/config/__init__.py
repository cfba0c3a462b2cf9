from __future__ import annotations

from sandbox_relay.config.loader import RelayConfig, load_config, load_config_dicts, load_relay_config

__all__ = ["RelayConfig", "load_config", "load_config_dicts", "load_relay_config"]
