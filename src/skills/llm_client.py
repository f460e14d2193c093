"""
Model client -- the only place the engine talks to a language model.

Providers:
  mock       echo the prompt back, no network (default; tests / offline)
  openai     Chat Completions
  anthropic  Messages

The router is the only caller.  ``llm_timeout_seconds`` (unless overridden)
bounds each request twice: the SDK client gets it as its httpx timeout, which
is per phase (connect, read, write, pool), and the whole call runs on a worker
thread whose result is awaited for at most that long.  A reply that trickles
in past the deadline raises ``LLMTimeout``; the worker is abandoned, not
killed.  Retries are disabled.
SDKs are imported on first use; they live in the ``llm`` extra.
"""
from __future__ import annotations

import importlib
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from types import ModuleType
from typing import Callable

from src.core.config import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)

_DEFAULT_SYSTEM = "You are a precise analytics assistant."
_MAX_TOKENS = 256

_POOL = ThreadPoolExecutor(max_workers=4, thread_name_prefix="llm")


class LLMUnavailable(RuntimeError):
    """The selected provider cannot be used (missing key or SDK)."""


class LLMTimeout(TimeoutError):
    """No reply within the overall deadline."""


def _api_key(provider: str) -> str:
    key = getattr(get_settings(), f"{provider}_api_key", "")
    if not key:
        raise LLMUnavailable(
            f"{provider}_api_key is not set; export {provider.upper()}_API_KEY or add it to .env"
        )
    return key


def _sdk(module: str) -> ModuleType:
    try:
        return importlib.import_module(module)
    except ImportError as exc:
        raise LLMUnavailable(
            f"Provider SDK '{module}' is missing; install the llm extra (pip install '.[llm]')"
        ) from exc


# ── Providers ────────────────────────────────────────────

def _mock(prompt: str, system: str, timeout: float) -> str:
    logger.debug("Mock model call, echoing prompt")
    return f"[MOCK] {prompt[:200]}"


def _openai(prompt: str, system: str, timeout: float) -> str:
    key = _api_key("openai")
    client = _sdk("openai").OpenAI(api_key=key, timeout=timeout, max_retries=0)
    response = client.chat.completions.create(
        model=get_settings().openai_model,
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ],
        temperature=0.0,
        max_tokens=_MAX_TOKENS,
    )
    return response.choices[0].message.content or ""


def _anthropic(prompt: str, system: str, timeout: float) -> str:
    key = _api_key("anthropic")
    client = _sdk("anthropic").Anthropic(api_key=key, timeout=timeout, max_retries=0)
    response = client.messages.create(
        model=get_settings().anthropic_model,
        max_tokens=_MAX_TOKENS,
        system=system,
        messages=[{"role": "user", "content": prompt}],
    )
    return response.content[0].text if response.content else ""


_PROVIDERS: dict[str, Callable[[str, str, float], str]] = {
    "mock": _mock,
    "openai": _openai,
    "anthropic": _anthropic,
}


# ── Public API ───────────────────────────────────────────

def is_mock(provider: str | None = None) -> bool:
    """True when model calls are disabled."""
    return (provider or get_settings().llm_provider).lower() == "mock"


def call_llm(
    prompt: str,
    provider: str | None = None,
    *,
    system: str = _DEFAULT_SYSTEM,
    timeout: float | None = None,
) -> str:
    """Send *prompt* to *provider* (settings default) and return the reply text.

    Raises ``NotImplementedError`` for an unknown provider, ``LLMUnavailable``
    for a missing key or SDK, ``LLMTimeout`` past the overall deadline, and
    whatever the SDK raises on transport failure.
    """
    settings = get_settings()
    name = (provider or settings.llm_provider).lower()
    fn = _PROVIDERS.get(name)
    if fn is None:
        raise NotImplementedError(
            f"LLM provider '{name}' is not supported; choose from: {', '.join(_PROVIDERS)}"
        )
    if timeout is None:
        timeout = settings.llm_timeout_seconds

    logger.info("LLM call provider=%s prompt_len=%d timeout=%.1fs", name, len(prompt), timeout)
    future = _POOL.submit(fn, prompt, system, timeout)
    try:
        text = future.result(timeout=timeout)
    except FutureTimeout as exc:
        future.cancel()
        raise LLMTimeout(f"LLM provider '{name}' gave no reply within {timeout:.1f}s") from exc
    logger.info("LLM reply from %s (%d chars)", name, len(text))
    return text
