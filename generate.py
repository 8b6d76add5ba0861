from __future__ import annotations

import inspect
import logging
from functools import lru_cache
from typing import TYPE_CHECKING, Any

from langchain_core.messages import HumanMessage, SystemMessage

from config import Settings

if TYPE_CHECKING:
    from langchain_openai import ChatOpenAI

logger = logging.getLogger("oneclick.generate")

SYSTEM_PROMPT = "You are a professional sales assistant. Keep replies concise."

INSTRUCTIONS = {
    "followup": "Write a short and polite follow-up email.",
    "confident": "Rewrite this email to sound confident and professional.",
    "polite": "Rewrite this email to sound polite and friendly.",
    "shorten": "Rewrite this email to be shorter and clearer.",
}
DEFAULT_INSTRUCTION = "Write a professional reply to this inbound email."

EMPTY_REPLY = "No reply generated."


class GenerationError(RuntimeError):
    pass


def instruction_for(reply_type: str | None) -> str:
    if not reply_type:
        return DEFAULT_INSTRUCTION
    return INSTRUCTIONS.get(reply_type.strip().lower(), DEFAULT_INSTRUCTION)


def build_messages(email_text: str | None, reply_type: str | None) -> list:
    return [
        SystemMessage(content=SYSTEM_PROMPT),
        HumanMessage(content=f"{instruction_for(reply_type)}\n\n{email_text or ''}"),
    ]


def _llm_kwargs(settings: Settings) -> dict[str, Any]:
    from langchain_openai import ChatOpenAI

    params = inspect.signature(ChatOpenAI.__init__).parameters
    kwargs: dict[str, Any] = {"model": settings.llm_model}

    if "api_key" in params:
        kwargs["api_key"] = settings.llm_api_key
    else:
        kwargs["openai_api_key"] = settings.llm_api_key
    if "base_url" in params:
        kwargs["base_url"] = settings.llm_base_url
    else:
        kwargs["openai_api_base"] = settings.llm_base_url
    kwargs["temperature"] = settings.llm_temperature
    if "max_completion_tokens" in params and "max_tokens" not in params:
        kwargs["max_completion_tokens"] = settings.llm_max_tokens
    else:
        kwargs["max_tokens"] = settings.llm_max_tokens
    if "timeout" in params:
        kwargs["timeout"] = settings.external_timeout_seconds
    else:
        kwargs["request_timeout"] = settings.external_timeout_seconds
    kwargs["max_retries"] = 1
    return kwargs


@lru_cache(maxsize=4)
def get_llm(settings: Settings) -> "ChatOpenAI":
    from langchain_openai import ChatOpenAI

    if not settings.llm_api_key:
        raise GenerationError("No LLM API key is configured.")
    return ChatOpenAI(**_llm_kwargs(settings))


def _reply_text(response: Any) -> str:
    """Pull the text out of a chat response.

    Providers return either a plain string or a list of content blocks.
    """
    content = getattr(response, "content", response)
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type", "text") == "text":
                parts.append(str(block.get("text") or ""))
        return "".join(parts).strip()
    return ""


def generate_reply(llm: Any, email_text: str | None, reply_type: str | None) -> str:
    try:
        response = llm.invoke(build_messages(email_text, reply_type))
    except Exception as exc:
        raise GenerationError(str(exc)) from exc
    return _reply_text(response) or EMPTY_REPLY
