"""Contract between the turn orchestrator and the agent engine.

The engine owns the model calls and the tool loop. The orchestrator hands it
an :class:`EngineRequest` and receives progress through awaited
:class:`EngineCallbacks` while :meth:`AgentEngine.run` is suspended.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from nimbus.models import ContextManagedEvent, EngineResult, Message, ToolCall
from nimbus.provider import EngineConfig
from nimbus.tools import ToolRegistry


class EngineCallbacks:
    """Progress hooks invoked by the engine. Every hook is awaited."""

    async def on_token(self, text: str) -> None:
        pass

    async def on_reasoning(self, text: str) -> None:
        pass

    async def on_tool_call(self, tool_call: ToolCall) -> None:
        pass

    async def on_tool_result(self, tool_call: ToolCall, result: str) -> None:
        pass

    async def on_step_complete(self, step: int, input_tokens: int, output_tokens: int) -> None:
        pass

    async def on_status_change(self, status: str) -> None:
        pass

    async def on_context_managed(self, event: ContextManagedEvent) -> None:
        pass

    async def on_error(self, error: BaseException) -> None:
        pass


@dataclass
class EngineRequest:
    """Everything the engine needs for one run."""

    messages: list[Message]
    tools: ToolRegistry
    config: EngineConfig
    abort: asyncio.Event
    callbacks: EngineCallbacks
    session_id: str
    system_prompt: str = ""
    existing_summary: Any = None
    tool_metadata: dict[str, Any] = field(default_factory=dict)


class AgentEngine(ABC):
    """Runs the model/tool loop for a single turn."""

    @abstractmethod
    async def run(self, request: EngineRequest) -> EngineResult:
        """Drive the run to completion.

        Should return promptly (or raise) once ``request.abort`` is set.
        Provider failures are best raised as :class:`EngineError`.
        """
        pass
