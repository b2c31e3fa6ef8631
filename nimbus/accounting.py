"""Token totals and context-window occupancy."""

import math
from typing import Any

from nimbus.models import ContextUsage, EngineResult, TokenUsage

DEFAULT_CONTEXT_WINDOW = 128_000

# Reported occupancy stays below 100%.
MAX_CONTEXT_PERCENT = 99

MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    "gpt-5-mini": 128_000,
    "o3-mini": 128_000,
    "gpt-5.3-codex": 272_000,
    "gpt-5.2-codex": 272_000,
    "gpt-5.1-codex": 128_000,
    "gpt-5.1-codex-max": 128_000,
    "gpt-5.1-codex-mini": 128_000,
    "gpt-5-codex": 400_000,
    "codex-mini": 200_000,
    "kimi-k2.5-free": 128_000,
    "minimax-m2.1-free": 128_000,
    "trinity-large-preview-free": 128_000,
    "glm-4.7-free": 128_000,
    "big-pickle": 128_000,
    # OpenRouter
    "anthropic/claude-sonnet-4": 200_000,
    "anthropic/claude-3.5-sonnet": 200_000,
    "google/gemini-2.5-pro-preview": 1_000_000,
    "google/gemini-2.5-flash-preview": 1_000_000,
    "deepseek/deepseek-r1": 128_000,
    "deepseek/deepseek-chat-v3": 128_000,
    "openai/gpt-4o": 128_000,
    "openai/o3-mini": 128_000,
    "meta-llama/llama-4-maverick": 128_000,
    "moonshotai/kimi-k2": 128_000,
}


def context_window_for(model: str | None) -> int:
    return MODEL_CONTEXT_WINDOWS.get(model or "", DEFAULT_CONTEXT_WINDOW)


def compute_context_usage(prompt_tokens: int, limit: int) -> ContextUsage:
    """Occupancy of ``limit`` by the latest prompt, as a 0-99 percentage."""
    used = max(0, int(prompt_tokens))
    if limit <= 0:
        limit = DEFAULT_CONTEXT_WINDOW
    # Half-up rounding; Python's round() is banker's rounding.
    percent = math.floor(used / limit * 100 + 0.5)
    return ContextUsage(used=used, limit=limit, percent=min(MAX_CONTEXT_PERCENT, percent))


class TokenAccountant:
    """Running token counters for one chat session.

    ``tokens`` is what the session has consumed so far: the lifetime totals
    last loaded from storage plus whatever the running turn has reported.
    """

    def __init__(self) -> None:
        self.tokens = TokenUsage()
        self.session_tokens: TokenUsage | None = None
        self.context_usage = ContextUsage()
        self.last_prompt_tokens = 0

    def _baseline(self) -> TokenUsage:
        return self.session_tokens or TokenUsage()

    def update_context(self, prompt_tokens: int, model: str | None) -> ContextUsage:
        """Recompute occupancy from the most recent single call's prompt size."""
        self.last_prompt_tokens = prompt_tokens
        self.context_usage = compute_context_usage(prompt_tokens, context_window_for(model))
        return self.context_usage

    def record_step(self, input_tokens: int, output_tokens: int) -> TokenUsage:
        """Live counters reported by the engine mid-run (cumulative for the run)."""
        base = self._baseline()
        self.tokens = TokenUsage(input=base.input + input_tokens, output=base.output + output_tokens)
        return self.tokens

    def add_result(self, result: EngineResult) -> TokenUsage:
        base = self._baseline()
        self.tokens = TokenUsage(
            input=base.input + (result.input_tokens or 0),
            output=base.output + (result.output_tokens or 0),
        )
        return self.tokens

    async def refresh_totals(self, store: Any, session_id: str) -> TokenUsage:
        """Reload lifetime totals from storage, the authoritative source."""
        totals = await store.get_session_token_totals(session_id)
        self.session_tokens = totals
        if totals.input > 0 or totals.output > 0:
            self.tokens = TokenUsage(input=totals.input, output=totals.output)
        return totals

    def reset(self) -> None:
        self.tokens = TokenUsage()
        self.session_tokens = None
        self.context_usage = ContextUsage()
        self.last_prompt_tokens = 0
