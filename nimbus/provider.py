"""Resolve the provider connection and model settings handed to the engine."""

import platform
import re
import time
from dataclasses import dataclass, field

from nimbus import __version__
from nimbus.accounting import context_window_for
from nimbus.config import AgentConfig, Config, ProviderConfig

CODEX_PROVIDER = "openai-codex"
OPENROUTER_PROVIDER = "openrouter"
ZEN_PROVIDER = "opencode-zen"

DEFAULT_MAX_RESPONSE_TOKENS = 16_384

_REASONING_MODELS = {
    "gpt-5-mini",
    "gpt-5-codex",
    "gpt-5.1-codex",
    "gpt-5.1-codex-max",
    "gpt-5.1-codex-mini",
    "gpt-5.2-codex",
    "gpt-5.3-codex",
    "codex-mini",
    "o3-mini",
    "deepseek/deepseek-r1",
    "openai/o3-mini",
}
_NON_REASONING_MODELS = {
    "kimi-k2.5-free",
    "minimax-m2.1-free",
    "trinity-large-preview-free",
    "glm-4.7-free",
    "big-pickle",
}
_O_SERIES_RE = re.compile(r"^o\d")


@dataclass
class ResolvedProvider:
    """Connection details for one engine run."""

    base_url: str
    api_key: str | None = None
    type: str | None = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class EngineConfig:
    """Model/provider settings for one engine run."""

    model: str
    provider: ResolvedProvider
    agent: AgentConfig
    context_window: int
    max_response_tokens: int = DEFAULT_MAX_RESPONSE_TOKENS
    temperature: float | None = None
    max_tokens: int | None = None
    parallel_tool_calls: bool = True
    reasoning_effort: str | None = None

    @property
    def enable_reasoning_effort(self) -> bool:
        return self.reasoning_effort is not None


def model_supports_reasoning(model: str) -> bool:
    """Known reasoning models, else a name heuristic (codex, o-series, r1)."""
    if model in _REASONING_MODELS:
        return True
    if model in _NON_REASONING_MODELS:
        return False
    name = model.lower().rsplit("/", 1)[-1]
    return "codex" in name or bool(_O_SERIES_RE.match(name)) or "-r1" in name


def _from_config(provider: ProviderConfig) -> ResolvedProvider:
    api_key = provider.api_key or (provider.auth.access_token if provider.auth else "") or None
    return ResolvedProvider(
        base_url=provider.base_url,
        api_key=api_key,
        type=provider.type,
        headers=dict(provider.headers),
    )


def _auto_provider_key(model: str) -> str | None:
    lowered = model.lower()
    if "codex" in lowered:
        return CODEX_PROVIDER
    if "/" in model:
        return OPENROUTER_PROVIDER
    if "-free" in lowered or lowered == "big-pickle":
        return ZEN_PROVIDER
    return None


def resolve_provider(
    config: Config,
    model: str,
    provider_override: str | None = None,
    session_id: str | None = None,
) -> ResolvedProvider:
    """Pick the provider entry for ``model`` and add backend-specific headers."""
    resolved = _from_config(config.provider)
    if provider_override and provider_override in config.providers:
        resolved = _from_config(config.providers[provider_override])
    elif not provider_override:
        key = _auto_provider_key(model)
        if key and key in config.providers:
            resolved = _from_config(config.providers[key])

    base_url = resolved.base_url or ""
    request_tag = session_id or f"nc-{int(time.time() * 1000)}"

    if ("localhost" in base_url or "127.0.0.1" in base_url) and not resolved.api_key:
        resolved.api_key = "ollama"

    if "chatgpt.com/backend-api/codex" in base_url:
        resolved.base_url = re.sub(r"/responses/?$", "", base_url).rstrip("/")
        resolved.headers.update({
            "originator": "nimbus",
            "User-Agent": f"nimbus/{__version__} ({platform.system().lower()} {platform.machine()})",
            "session_id": request_tag,
        })

    if "opencode.ai/zen" in base_url:
        resolved.headers.update({
            "x-opencode-session": request_tag,
            "x-opencode-request": f"req-{int(time.time() * 1000)}",
            "x-opencode-project": "nimbus",
        })

    if "openrouter.ai" in base_url:
        resolved.headers.update({
            "HTTP-Referer": "https://github.com/nimbus-code/nimbus",
            "X-Title": "Nimbus",
        })

    return resolved


def resolve_engine_config(
    config: Config,
    model_override: str | None = None,
    provider_override: str | None = None,
    session_id: str | None = None,
    reasoning_effort_override: str | None = None,
) -> EngineConfig:
    model = model_override or config.model.model

    if reasoning_effort_override == "off":
        reasoning_effort = None
    else:
        reasoning_effort = (
            reasoning_effort_override
            or config.model.reasoning_effort
            or ("medium" if model_supports_reasoning(model) else None)
        )
        if reasoning_effort == "off":
            reasoning_effort = None

    return EngineConfig(
        model=model,
        provider=resolve_provider(config, model, provider_override, session_id),
        agent=config.agent,
        context_window=context_window_for(model),
        max_response_tokens=config.model.max_tokens or DEFAULT_MAX_RESPONSE_TOKENS,
        temperature=config.model.temperature,
        max_tokens=config.model.max_tokens,
        parallel_tool_calls=config.model.parallel_tool_calls,
        reasoning_effort=reasoning_effort,
    )
