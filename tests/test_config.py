import pytest

from config import XAI_BASE_URL, ConfigError, load_settings

CONFIG_VARS = (
    "ENVIRONMENT",
    "STRICT_ENV_VALIDATION",
    "PORT",
    "PUBLIC_BASE_URL",
    "CORS_ORIGINS",
    "DATABASE_URL",
    "DB_CONNECT_TIMEOUT_SECONDS",
    "DB_STATEMENT_TIMEOUT_MS",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "STRIPE_WEBHOOK_TOLERANCE_SECONDS",
    "STRIPE_PRODUCT_NAME",
    "STRIPE_PRICE_CENTS",
    "STRIPE_CURRENCY",
    "STRIPE_MAX_NETWORK_RETRIES",
    "EXTERNAL_TIMEOUT_SECONDS",
    "LLM_API_KEY",
    "LLM_BASE_URL",
    "LLM_MODEL",
    "LLM_TEMPERATURE",
    "LLM_MAX_TOKENS",
    "OPENAI_API_KEY",
    "XAI_API_KEY",
    "ADMIN_SECRET",
)


@pytest.fixture
def env(monkeypatch):
    for name in CONFIG_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/oneclick")
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_123")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-openai")
    return monkeypatch


def test_defaults(env):
    settings = load_settings()

    assert settings.port == 3000
    assert settings.public_base_url == "http://localhost:3000"
    assert settings.success_url == "http://localhost:3000/success"
    assert settings.cancel_url == "http://localhost:3000/cancel"
    assert settings.cors_origins == ("*",)
    assert settings.stripe_price_cents == 1200
    assert settings.stripe_product_name == "OneClick Reply Pro"
    assert settings.llm_api_key == "sk-openai"
    assert settings.llm_model == "gpt-4.1-mini"
    assert settings.strict is False


def test_missing_required_values_reported_together(env):
    env.delenv("DATABASE_URL")
    env.delenv("STRIPE_WEBHOOK_SECRET")

    with pytest.raises(ConfigError) as excinfo:
        load_settings()

    message = str(excinfo.value)
    assert "DATABASE_URL is required." in message
    assert "STRIPE_WEBHOOK_SECRET is required." in message


def test_empty_string_counts_as_unset(env):
    env.setenv("STRIPE_SECRET_KEY", "  ")

    with pytest.raises(ConfigError, match="STRIPE_SECRET_KEY"):
        load_settings()


def test_bad_numbers_rejected(env):
    env.setenv("EXTERNAL_TIMEOUT_SECONDS", "soon")

    with pytest.raises(ConfigError, match="EXTERNAL_TIMEOUT_SECONDS"):
        load_settings()


def test_xai_key_selects_xai_endpoint(env):
    env.delenv("OPENAI_API_KEY")
    env.setenv("XAI_API_KEY", "xai-key")

    settings = load_settings()

    assert settings.llm_api_key == "xai-key"
    assert settings.llm_base_url == XAI_BASE_URL
    assert settings.llm_model.startswith("grok")


def test_missing_llm_key_only_warns(env, caplog):
    env.delenv("OPENAI_API_KEY")

    settings = load_settings()

    assert settings.llm_api_key is None
    assert "No LLM API key" in caplog.text


def test_production_is_strict(env):
    env.setenv("ENVIRONMENT", "production")
    env.setenv("PUBLIC_BASE_URL", "http://api.example.com")

    with pytest.raises(ConfigError) as excinfo:
        load_settings()

    message = str(excinfo.value)
    assert "https" in message
    assert "ADMIN_SECRET is required." in message


def test_production_config_passes(env):
    env.setenv("ENVIRONMENT", "production")
    env.setenv("PUBLIC_BASE_URL", "https://api.example.com/")
    env.setenv("ADMIN_SECRET", "a" * 32)
    env.setenv("CORS_ORIGINS", "https://app.example.com/, https://mail.google.com")

    settings = load_settings()

    assert settings.strict is True
    assert settings.success_url == "https://api.example.com/success"
    assert settings.cors_origins == ("https://app.example.com", "https://mail.google.com")


def test_settings_are_immutable(env):
    settings = load_settings()

    with pytest.raises(Exception):
        settings.port = 8080
