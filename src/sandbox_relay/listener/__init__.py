from __future__ import annotations

from sandbox_relay.listener.handlers import SandboxHandlers
from sandbox_relay.listener.loop import Listener, MessageHandler

__all__ = ["Listener", "MessageHandler", "SandboxHandlers"]
