import pytest
from pydantic import ValidationError

from openrouter_assistant.config import AssistantConfig, ModelSpec
from openrouter_assistant.logging import redact_text


def test_config_reads_environment(monkeypatch):
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-or-v1-abc")
    monkeypatch.setenv("ASSISTANT_MODELS", "acme/one, acme/two:free ,")
    monkeypatch.setenv("MAX_SAME_MODEL_ATTEMPTS", "5")
    monkeypatch.setenv("BLOCK_ON_REPEATED_RATE_LIMIT", "true")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.test,https://b.test")

    cfg = AssistantConfig()
    assert cfg.openrouter_api_key == "sk-or-v1-abc"
    assert [m.id for m in cfg.models] == ["acme/one", "acme/two:free"]
    assert cfg.cors_allow_origins == ["https://a.test", "https://b.test"]

    policy = cfg.retry_policy()
    assert policy.max_same_model_attempts == 5
    assert policy.block_on_repeated_rate_limit is True


def test_config_defaults(monkeypatch):
    for name in ("ASSISTANT_MODELS", "QUOTA_COOLDOWN_SECONDS", "EVOLUTION_API_URL", "FALLBACK_ENABLED"):
        monkeypatch.delenv(name, raising=False)

    cfg = AssistantConfig()
    assert cfg.models == []
    assert cfg.quota_cooldown_seconds == 60
    assert cfg.default_temperature == 0.5
    assert cfg.default_max_tokens == 1024
    assert cfg.retry_policy().fallback_enabled is True
    assert cfg.whatsapp_configured is False


def test_config_rejects_invalid_values():
    with pytest.raises(ValidationError):
        AssistantConfig(max_same_model_attempts=0)
    with pytest.raises(ValidationError):
        AssistantConfig(default_temperature=3.0)
    with pytest.raises(ValidationError):
        ModelSpec(id="   ")


def test_redact_text_masks_keys_and_bearer_tokens():
    out = redact_text("Authorization: Bearer abcdef123456 key=sk-or-v1-0123456789abcdef", secrets=[])
    assert "abcdef123456" not in out
    assert "sk-or-v1-0123456789abcdef" not in out
    assert redact_text("token is hunter2", secrets=["hunter2"]) == "token is [REDACTED]"
