"""Nimbus - turn orchestration for a terminal AI coding assistant."""

__version__ = "0.1.0"

from nimbus.chat_session import ChatSession, TurnOptions
from nimbus.config import Config
from nimbus.engine import AgentEngine, EngineCallbacks, EngineRequest
from nimbus.exceptions import EngineError

__all__ = [
    "AgentEngine",
    "ChatSession",
    "Config",
    "EngineCallbacks",
    "EngineError",
    "EngineRequest",
    "TurnOptions",
    "__version__",
]
