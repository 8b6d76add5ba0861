from __future__ import annotations

import logging
import os
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger("oneclick.config")

OPENAI_BASE_URL = "https://api.openai.com/v1"
XAI_BASE_URL = "https://api.x.ai/v1"
OPENAI_DEFAULT_MODEL = "gpt-4.1-mini"
XAI_DEFAULT_MODEL = "grok-3-mini"


class ConfigError(RuntimeError):
    pass


class Settings(BaseModel):
    """Process-wide configuration, read once at startup."""

    model_config = ConfigDict(frozen=True)

    environment: str = "development"
    strict: bool = False
    port: int = 3000
    public_base_url: str = "http://localhost:3000"
    cors_origins: tuple[str, ...] = ("*",)

    database_url: str | None = None
    db_connect_timeout_seconds: int = 5
    db_statement_timeout_ms: int = 5000

    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_webhook_tolerance_seconds: int = 300
    stripe_product_name: str = "OneClick Reply Pro"
    stripe_price_cents: int = 1200
    stripe_currency: str = "usd"
    stripe_max_network_retries: int = 0

    external_timeout_seconds: float = 15.0

    llm_api_key: str | None = None
    llm_base_url: str = OPENAI_BASE_URL
    llm_model: str = OPENAI_DEFAULT_MODEL
    llm_temperature: float = 0.5
    llm_max_tokens: int = 200

    admin_secret: str | None = None

    @property
    def success_url(self) -> str:
        return f"{self.public_base_url}/success"

    @property
    def cancel_url(self) -> str:
        return f"{self.public_base_url}/cancel"


def _env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _bool_env(name: str, default: str | None = None) -> bool:
    raw = _env(name, default)
    if raw is None:
        return False
    return raw.lower() in {"1", "true", "yes"}


def _parse_origins(value: str | None) -> tuple[str, ...]:
    if not value:
        return ("*",)
    origins: list[str] = []
    for origin in value.split(","):
        origin = origin.strip()
        if not origin:
            continue
        if origin == "*":
            return ("*",)
        origins.append(origin.rstrip("/"))
    return tuple(origins) or ("*",)


def _number(name: str, default: str, cast, errors: list[str]):
    raw = _env(name, default) or default
    try:
        return cast(raw)
    except ValueError:
        errors.append(f"{name} must be a number.")
        return cast(default)


def _llm_settings() -> tuple[str | None, str, str]:
    """Pick the LLM credential and matching endpoint defaults.

    An explicit LLM_API_KEY wins. Otherwise an xAI key selects the xAI
    endpoint and model, and an OpenAI key selects OpenAI's.
    """
    api_key = _env("LLM_API_KEY")
    base_url = OPENAI_BASE_URL
    model = OPENAI_DEFAULT_MODEL
    if not api_key:
        xai_key = _env("XAI_API_KEY")
        if xai_key:
            api_key = xai_key
            base_url = XAI_BASE_URL
            model = XAI_DEFAULT_MODEL
        else:
            api_key = _env("OPENAI_API_KEY")
    return api_key, _env("LLM_BASE_URL", base_url) or base_url, _env("LLM_MODEL", model) or model


def load_settings() -> Settings:
    """Build and validate Settings from the environment.

    All problems are collected and raised together as one ConfigError so a
    misconfigured deploy fails once with the full list.
    """
    errors: list[str] = []
    warnings: list[str] = []

    environment = (_env("ENVIRONMENT", "development") or "development").lower()
    if os.getenv("STRICT_ENV_VALIDATION") is not None:
        strict = _bool_env("STRICT_ENV_VALIDATION", "true")
    else:
        strict = environment in {"production", "prod"}

    port = _number("PORT", "3000", int, errors)
    public_base_url = (_env("PUBLIC_BASE_URL") or f"http://localhost:{port}").rstrip("/")
    parsed_base = urlparse(public_base_url)
    if parsed_base.scheme not in {"http", "https"} or not parsed_base.netloc:
        errors.append("PUBLIC_BASE_URL must be an absolute http(s) URL.")
    elif strict and parsed_base.scheme != "https":
        errors.append("PUBLIC_BASE_URL must use https in production.")

    database_url = _env("DATABASE_URL")
    if not database_url:
        errors.append("DATABASE_URL is required.")

    stripe_secret_key = _env("STRIPE_SECRET_KEY")
    if not stripe_secret_key:
        errors.append("STRIPE_SECRET_KEY is required.")
    stripe_webhook_secret = _env("STRIPE_WEBHOOK_SECRET")
    if not stripe_webhook_secret:
        errors.append("STRIPE_WEBHOOK_SECRET is required.")

    price_cents = _number("STRIPE_PRICE_CENTS", "1200", int, errors)
    if price_cents <= 0:
        errors.append("STRIPE_PRICE_CENTS must be positive.")

    llm_api_key, llm_base_url, llm_model = _llm_settings()
    if not llm_api_key:
        warnings.append("No LLM API key set; /generate will fail.")

    admin_secret = _env("ADMIN_SECRET")
    if not admin_secret:
        if strict:
            errors.append("ADMIN_SECRET is required.")
        else:
            warnings.append("ADMIN_SECRET is not set; admin endpoints disabled.")
    elif strict and len(admin_secret) < 16:
        errors.append("ADMIN_SECRET must be at least 16 characters.")

    settings_kwargs = dict(
        environment=environment,
        strict=strict,
        port=port,
        public_base_url=public_base_url,
        cors_origins=_parse_origins(_env("CORS_ORIGINS")),
        database_url=database_url,
        db_connect_timeout_seconds=_number("DB_CONNECT_TIMEOUT_SECONDS", "5", int, errors),
        db_statement_timeout_ms=_number("DB_STATEMENT_TIMEOUT_MS", "5000", int, errors),
        stripe_secret_key=stripe_secret_key,
        stripe_webhook_secret=stripe_webhook_secret,
        stripe_webhook_tolerance_seconds=_number(
            "STRIPE_WEBHOOK_TOLERANCE_SECONDS", "300", int, errors
        ),
        stripe_product_name=_env("STRIPE_PRODUCT_NAME", "OneClick Reply Pro"),
        stripe_price_cents=price_cents,
        stripe_currency=(_env("STRIPE_CURRENCY", "usd") or "usd").lower(),
        stripe_max_network_retries=_number("STRIPE_MAX_NETWORK_RETRIES", "0", int, errors),
        external_timeout_seconds=_number("EXTERNAL_TIMEOUT_SECONDS", "15", float, errors),
        llm_api_key=llm_api_key,
        llm_base_url=llm_base_url,
        llm_model=llm_model,
        llm_temperature=_number("LLM_TEMPERATURE", "0.5", float, errors),
        llm_max_tokens=_number("LLM_MAX_TOKENS", "200", int, errors),
        admin_secret=admin_secret,
    )

    if errors:
        raise ConfigError("Config errors: " + "; ".join(errors))
    for warning in warnings:
        logger.warning(warning)
    return Settings(**settings_kwargs)
