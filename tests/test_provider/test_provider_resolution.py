from nimbus.config import Config, CredentialRecord, ModelConfig, ProviderConfig
from nimbus.provider import model_supports_reasoning, resolve_engine_config, resolve_provider


def _config(**providers: ProviderConfig) -> Config:
    return Config(providers=providers)


def test_codex_models_route_to_codex_provider_with_headers():
    config = _config(
        **{
            "openai-codex": ProviderConfig(
                base_url="https://chatgpt.com/backend-api/codex/responses",
                auth=CredentialRecord(type="oauth", access_token="tok"),
            )
        }
    )

    resolved = resolve_provider(config, "gpt-5-codex", session_id="sess_1")

    assert resolved.base_url == "https://chatgpt.com/backend-api/codex"
    assert resolved.api_key == "tok"
    assert resolved.headers["originator"] == "nimbus"
    assert resolved.headers["session_id"] == "sess_1"


def test_slash_models_route_to_openrouter():
    config = _config(openrouter=ProviderConfig(api_key="or-key", base_url="https://openrouter.ai/api/v1"))

    resolved = resolve_provider(config, "anthropic/claude-sonnet-4")

    assert resolved.api_key == "or-key"
    assert resolved.headers["X-Title"] == "Nimbus"


def test_explicit_override_wins_over_model_routing():
    config = _config(
        openrouter=ProviderConfig(api_key="or-key", base_url="https://openrouter.ai/api/v1"),
        local=ProviderConfig(base_url="http://localhost:11434/v1"),
    )

    resolved = resolve_provider(config, "anthropic/claude-sonnet-4", provider_override="local")

    assert resolved.base_url == "http://localhost:11434/v1"
    assert resolved.api_key == "ollama"


def test_unknown_routing_falls_back_to_default_provider():
    config = Config(provider=ProviderConfig(api_key="default-key"))

    resolved = resolve_provider(config, "gpt-5-mini")

    assert resolved.api_key == "default-key"
    assert resolved.base_url == "https://api.openai.com/v1"


def test_model_supports_reasoning():
    assert model_supports_reasoning("gpt-5-mini") is True
    assert model_supports_reasoning("o4-mini") is True
    assert model_supports_reasoning("some/thing-r1") is True
    assert model_supports_reasoning("big-pickle") is False
    assert model_supports_reasoning("llama3.2") is False


def test_engine_config_reasoning_effort_overrides():
    config = Config(model=ModelConfig(model="gpt-5-mini"))

    assert resolve_engine_config(config).reasoning_effort == "medium"
    assert resolve_engine_config(config, reasoning_effort_override="high").reasoning_effort == "high"
    off = resolve_engine_config(config, reasoning_effort_override="off")
    assert off.reasoning_effort is None
    assert off.enable_reasoning_effort is False
    assert resolve_engine_config(config, model_override="llama3.2").reasoning_effort is None


def test_engine_config_uses_model_context_window():
    config = Config()

    engine_config = resolve_engine_config(config, model_override="gpt-5-codex")

    assert engine_config.model == "gpt-5-codex"
    assert engine_config.context_window == 400_000
