from app.core.config import DEFAULT_CORS_ORIGINS
from app.core.config import Settings
from app.core.config import get_settings


def test_config_defaults(monkeypatch):
    for name in ("UPSTREAM_BASE_URL", "DEFAULT_MODEL", "STREAM_GENERATION", "MAX_FILE_SIZE"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings(_env_file=None)

    assert settings.default_model == "qwen2.5-32b"
    assert settings.strict_model_lookup is False
    assert settings.stream_generation is True
    assert settings.max_tokens == 20_000
    assert settings.max_file_size == 10 * 1024 * 1024
    assert settings.replay_chunk_size == 10
    assert settings.llm_read_timeout is None
    assert settings.conversation_path == "/open-api/langchain-chat/chat/chat"
    assert settings.messages_path == "/open-api/oneapi/v1/chat/completions"
    assert settings.ws_path == "/ws"
    assert settings.cors_allowed_origins == DEFAULT_CORS_ORIGINS


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("UPSTREAM_BASE_URL", "http://llm.internal:9000/")
    monkeypatch.setenv("DEFAULT_MODEL", "Qwen3-32B")
    monkeypatch.setenv("STREAM_GENERATION", "false")
    monkeypatch.setenv("LLM_READ_TIMEOUT", "30")

    settings = Settings(_env_file=None)

    # Trailing slash is stripped so endpoint paths can be appended
    assert settings.upstream_base_url == "http://llm.internal:9000"
    assert settings.default_model == "Qwen3-32B"
    assert settings.stream_generation is False
    assert settings.llm_read_timeout == 30.0


def test_cors_origins_from_comma_separated_string():
    settings = Settings(_env_file=None, cors_allowed_origins="http://a.test, http://b.test")
    assert settings.cors_allowed_origins == ["http://a.test", "http://b.test"]


def test_cors_origins_empty_falls_back_to_defaults():
    settings = Settings(_env_file=None, cors_allowed_origins="")
    assert settings.cors_allowed_origins == DEFAULT_CORS_ORIGINS


def test_get_settings_is_cached():
    assert get_settings() is get_settings()
