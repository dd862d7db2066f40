"""
Quote Commander — LLM Provider Factory + Bounded Invocation

Single point of LLM construction and invocation. The turn processor and
the Commander both receive a langchain BaseChatModel built here and call
it only through `complete` / `complete_or_fallback`, which put an explicit
deadline on every request.

Configuration (in priority order):
  1. Explicit `provider` argument to create_llm()
  2. LLM_PROVIDER environment variable
  3. default_provider in llm_config.yaml
  4. Auto-detect from available API key env vars

Model aliasing:
  Code uses logical model names ("default", "fast", "standard"). The alias
  table in llm_config.yaml maps them to provider-specific identifiers.
  Provider-specific names pass through unchanged.

Supported providers:
  openai   — OpenAI direct (langchain-openai)
  azure    — Azure OpenAI Service (langchain-openai)
  google   — Google Gemini (langchain-google-genai)
  bedrock  — Amazon Bedrock (langchain-aws)

Timeout contract:
  A call that outlives its budget is cancelled by asyncio.wait_for and its
  late result is never observed. `complete_or_fallback` turns timeouts and
  provider errors into the caller's fallback value instead of raising.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

logger = logging.getLogger("quote_commander.llm")


# ═══════════════════════════════════════════════════════════════════════
# Configuration loading
# ═══════════════════════════════════════════════════════════════════════

_CONFIG_PATHS = [
    Path(os.environ.get("LLM_CONFIG_PATH", "")),
    Path.cwd() / "llm_config.yaml",
    Path(__file__).parent.parent / "llm_config.yaml",
]

_config_cache: dict | None = None


def _load_config() -> dict:
    """Load and cache the LLM config file. Falls back to built-in defaults."""
    global _config_cache
    if _config_cache is not None:
        return _config_cache

    for p in _CONFIG_PATHS:
        if str(p) not in ("", ".") and p.is_file():
            with open(p) as f:
                _config_cache = yaml.safe_load(f) or {}
            return _config_cache

    _config_cache = _BUILTIN_DEFAULTS
    return _config_cache


_BUILTIN_DEFAULTS: dict = {
    "default_provider": None,
    "aliases": {
        "default": {"openai": "gpt-4o-mini", "azure": "gpt-4o-mini", "google": "gemini-2.0-flash"},
        "fast": {"openai": "gpt-4o-mini", "azure": "gpt-4o-mini", "google": "gemini-2.0-flash"},
        "standard": {"openai": "gpt-4o", "azure": "gpt-4o", "google": "gemini-2.5-pro"},
    },
    "model_to_provider": {
        "gpt-4o": "openai",
        "gpt-4o-mini": "openai",
        "gemini-2.0-flash": "google",
        "gemini-2.5-pro": "google",
    },
    "provider_settings": {},
}


def _aliases() -> dict[str, dict[str, str]]:
    return _load_config().get("aliases", {})

def _model_to_provider() -> dict[str, str]:
    return _load_config().get("model_to_provider", {})

def _provider_settings() -> dict:
    return _load_config().get("provider_settings", {}) or {}


def reload_config() -> None:
    """Force reload of the config file. Useful for testing."""
    global _config_cache
    _config_cache = None


# ═══════════════════════════════════════════════════════════════════════
# Provider detection
# ═══════════════════════════════════════════════════════════════════════

def detect_provider() -> str:
    """
    Detect LLM provider. Priority:
      1. LLM_PROVIDER env var
      2. default_provider in llm_config.yaml
      3. Auto-detect from API key env vars
    """
    explicit = os.environ.get("LLM_PROVIDER", "").lower().strip()
    if explicit:
        return explicit

    cfg_default = _load_config().get("default_provider")
    if cfg_default:
        return cfg_default.lower().strip()

    if os.environ.get("AZURE_OPENAI_ENDPOINT") and os.environ.get("AZURE_OPENAI_API_KEY"):
        return "azure"
    if os.environ.get("OPENAI_API_KEY"):
        return "openai"
    if os.environ.get("GOOGLE_API_KEY"):
        return "google"
    if os.environ.get("AWS_DEFAULT_REGION") or os.environ.get("AWS_PROFILE"):
        return "bedrock"

    raise EnvironmentError(
        "No LLM provider detected. Set one of:\n"
        "  LLM_PROVIDER=openai|azure|google|bedrock\n"
        "  Or set default_provider in llm_config.yaml\n"
        "  Or set provider API key env vars (OPENAI_API_KEY, GOOGLE_API_KEY, ...)"
    )


def resolve_model(model: str, provider: str) -> str:
    """Resolve a logical alias to a provider-specific model ID."""
    if model == "default":
        env_model = os.environ.get("LLM_DEFAULT_MODEL", "").strip()
        if env_model:
            return env_model

    alias_map = _aliases().get(model)
    if alias_map and provider in alias_map:
        return alias_map[provider]
    return model


# ═══════════════════════════════════════════════════════════════════════
# Provider factories (lazy imports)
# ═══════════════════════════════════════════════════════════════════════

def _create_openai(model: str, temperature: float, **kwargs) -> BaseChatModel:
    from langchain_openai import ChatOpenAI
    return ChatOpenAI(model=model, temperature=temperature, **kwargs)


def _create_azure(model: str, temperature: float, **kwargs) -> BaseChatModel:
    from langchain_openai import AzureChatOpenAI
    settings = _provider_settings().get("azure", {})
    return AzureChatOpenAI(
        azure_deployment=model,
        azure_endpoint=os.environ["AZURE_OPENAI_ENDPOINT"],
        api_key=os.environ.get("AZURE_OPENAI_API_KEY"),
        api_version=os.environ.get(
            "AZURE_OPENAI_VERSION",
            settings.get("api_version", "2024-12-01-preview"),
        ),
        temperature=temperature,
        **kwargs,
    )


def _create_google(model: str, temperature: float, **kwargs) -> BaseChatModel:
    from langchain_google_genai import ChatGoogleGenerativeAI
    return ChatGoogleGenerativeAI(model=model, temperature=temperature, **kwargs)


def _create_bedrock(model: str, temperature: float, **kwargs) -> BaseChatModel:
    from langchain_aws import ChatBedrock
    settings = _provider_settings().get("bedrock", {})
    kwargs.pop("timeout", None)
    return ChatBedrock(
        model_id=model,
        model_kwargs={"temperature": temperature},
        region_name=os.environ.get("AWS_DEFAULT_REGION", settings.get("region", "us-east-1")),
        **kwargs,
    )


_FACTORIES = {
    "openai":  _create_openai,
    "azure":   _create_azure,
    "google":  _create_google,
    "bedrock": _create_bedrock,
}


def create_llm(
    model: str = "default",
    temperature: float = 0.1,
    provider: str | None = None,
    **kwargs,
) -> BaseChatModel:
    """
    Create an LLM instance.

    Args:
        model:       Logical alias ("default", "fast", "standard")
                     or provider-specific model name.
        temperature: Sampling temperature.
        provider:    Force a provider. If None, auto-detected.
        **kwargs:    Passed through to the underlying LangChain constructor.
    """
    if provider is None:
        provider = _model_to_provider().get(model) or detect_provider()

    provider = provider.lower().strip()
    if provider not in _FACTORIES:
        raise ValueError(
            f"Unknown provider '{provider}'. "
            f"Supported: {', '.join(_FACTORIES.keys())}"
        )

    resolved = resolve_model(model, provider)

    # Client-level socket timeout; per-call budgets are enforced by complete()
    timeout = kwargs.pop("timeout", None)
    if timeout is None:
        env_timeout = os.environ.get("LLM_TIMEOUT_SECONDS", "").strip()
        if env_timeout:
            timeout = int(env_timeout)
        else:
            cfg_timeout = _load_config().get("timeout_seconds")
            if cfg_timeout:
                timeout = int(cfg_timeout)
    if timeout:
        kwargs["timeout"] = timeout

    return _FACTORIES[provider](resolved, temperature, **kwargs)


def try_create_llm(model: str = "default", temperature: float = 0.1, **kwargs) -> BaseChatModel | None:
    """
    create_llm() for long-running services: when no provider can be built
    (missing package or credentials) log it and return None, so callers
    run on their scripted fallbacks instead of refusing to start.
    """
    try:
        return create_llm(model, temperature, **kwargs)
    except Exception as e:
        logger.warning("LLM '%s' unavailable, scripted fallbacks only: %s: %s",
                       model, type(e).__name__, e)
        return None


# ═══════════════════════════════════════════════════════════════════
# Bounded Invocation
# ═══════════════════════════════════════════════════════════════════

class LLMTimeout(Exception):
    """The LLM did not answer within its budget."""

    def __init__(self, timeout: float):
        super().__init__(f"LLM call exceeded {timeout:.2f}s")
        self.timeout = timeout


@dataclass
class LLMResult:
    """Outcome of a bounded completion. `content` is always usable."""
    content: str
    used_fallback: bool = False
    error: str = ""


def _message_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict):
                parts.append(str(block.get("text", "")))
            else:
                parts.append(str(block))
        return "".join(parts)
    return str(content)


async def complete(
    llm: BaseChatModel,
    prompt: str,
    timeout: float,
    system: str = "",
) -> str:
    """
    Invoke the model with a hard deadline.

    Raises LLMTimeout when the deadline passes; provider errors propagate.
    """
    messages: list[Any] = []
    if system:
        messages.append(SystemMessage(content=system))
    messages.append(HumanMessage(content=prompt))

    logger.debug("LLM request (%d chars, timeout=%.2fs)", len(prompt), timeout)
    try:
        response = await asyncio.wait_for(llm.ainvoke(messages), timeout=timeout)
    except asyncio.TimeoutError:
        raise LLMTimeout(timeout) from None
    text = _message_text(response)
    logger.debug("LLM response (%d chars)", len(text))
    return text


async def complete_or_fallback(
    llm: BaseChatModel | None,
    prompt: str,
    timeout: float,
    fallback: str,
    system: str = "",
) -> LLMResult:
    """
    Invoke the model; on timeout, error, or an empty answer return `fallback`.

    Cancellation of the surrounding task is not swallowed.
    """
    if llm is None:
        return LLMResult(content=fallback, used_fallback=True, error="no llm configured")
    try:
        text = (await complete(llm, prompt, timeout, system=system)).strip()
    except LLMTimeout as e:
        logger.warning("LLM timeout, using fallback: %s", e)
        return LLMResult(content=fallback, used_fallback=True, error=str(e))
    except Exception as e:
        logger.warning("LLM error, using fallback: %s: %s", type(e).__name__, e)
        return LLMResult(content=fallback, used_fallback=True, error=f"{type(e).__name__}: {e}")
    if not text:
        return LLMResult(content=fallback, used_fallback=True, error="empty response")
    return LLMResult(content=text)
