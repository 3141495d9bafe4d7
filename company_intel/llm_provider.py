"""
LLM provider clients and the ordered per-tenant fallback chain.

Architecture:
  - ProviderConfig: one tenant provider entry (provider, model, api_key, enabled, priority)
  - Provider callers: openai (SDK), anthropic (SDK), gemini (generateContent over HTTP)
  - ProviderFallbackChain: eligible entries sorted by priority, first success wins

Environment default (used only when a tenant has no eligible provider):
  LLM_PROVIDER          = openai | anthropic | gemini   (default: openai)
  LLM_MODEL             = model id                     (default per provider)
  LLM_TEMPERATURE       = 0.7
  LLM_TIMEOUT_S         = 60
  OPENAI_API_KEY / OPENAI_BASE_URL
  ANTHROPIC_API_KEY
  GEMINI_API_KEY
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import requests

from company_intel.env import env_float, env_int
from company_intel.errors import PipelineError

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_MODELS: dict[str, str] = {
    "openai": "gpt-5-mini",
    "anthropic": "claude-sonnet-4-6",
    "gemini": "gemini-2.5-flash",
}
ANTHROPIC_API_VERSION = "2023-06-01"
GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"


@dataclass
class ProviderConfig:
    provider: str
    model: str = ""
    api_key: str = ""
    enabled: bool = True
    priority: int = 100
    base_url: str = ""
    temperature: float = 0.7
    max_tokens: int = 1024
    timeout_s: float = 60.0

    def __post_init__(self) -> None:
        self.provider = self.provider.strip().lower()
        if not self.model:
            self.model = DEFAULT_PROVIDER_MODELS.get(self.provider, "")

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ProviderConfig":
        return cls(
            provider=str(raw.get("provider", "")),
            model=str(raw.get("model") or ""),
            api_key=str(raw.get("api_key") or raw.get("apiKey") or ""),
            enabled=bool(raw.get("enabled", True)),
            priority=int(raw.get("priority", 100)),
            base_url=str(raw.get("base_url") or raw.get("baseUrl") or ""),
            temperature=float(raw.get("temperature", 0.7)),
            max_tokens=int(raw.get("max_tokens") or raw.get("maxTokens") or 1024),
        )

    @property
    def eligible(self) -> bool:
        return self.enabled and bool(self.api_key.strip())

    def describe(self) -> dict[str, Any]:
        """Safe for logging; never includes the key."""
        return {
            "provider": self.provider,
            "model": self.model,
            "enabled": self.enabled,
            "priority": self.priority,
            "has_api_key": bool(self.api_key.strip()),
        }


def default_provider_settings() -> list[ProviderConfig]:
    """Entries a new tenant starts with: all disabled until a key is set."""
    return [
        ProviderConfig(provider=name, model=model, enabled=False, priority=index)
        for index, (name, model) in enumerate(DEFAULT_PROVIDER_MODELS.items(), start=1)
    ]


@dataclass
class LLMUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    model: str = ""
    latency_ms: float = 0.0


@dataclass
class ProviderAttempt:
    provider: str
    model: str
    ok: bool
    error: str = ""
    latency_ms: float = 0.0


@dataclass
class ChatCompletion:
    content: str
    provider: str
    model: str
    usage: LLMUsage
    attempts: list[ProviderAttempt] = field(default_factory=list)


class ProviderChainExhaustedError(PipelineError):
    def __init__(self, *, code: str, message: str, attempts: list[ProviderAttempt]) -> None:
        super().__init__(code=code, message=message, error_class="upstream", retryable=True)
        self.attempts = attempts


ProviderCaller = Callable[[ProviderConfig, list[dict[str, str]]], tuple[str, LLMUsage]]


def _import_openai() -> Any:
    try:
        import openai  # type: ignore
    except ImportError as exc:
        raise RuntimeError("openai package is required for the openai provider; install openai") from exc
    return openai


def _import_anthropic() -> Any:
    try:
        import anthropic  # type: ignore
    except ImportError as exc:
        raise RuntimeError("anthropic package is required for the anthropic provider; install anthropic") from exc
    return anthropic


def _split_system(messages: list[dict[str, str]]) -> tuple[str | None, list[dict[str, str]]]:
    system: str | None = None
    rest: list[dict[str, str]] = []
    for msg in messages:
        if msg["role"] == "system":
            system = msg["content"] if system is None else f"{system}\n\n{msg['content']}"
        else:
            rest.append({"role": msg["role"], "content": msg["content"]})
    return system, rest


def call_openai(config: ProviderConfig, messages: list[dict[str, str]]) -> tuple[str, LLMUsage]:
    openai = _import_openai()
    kwargs: dict[str, Any] = {"api_key": config.api_key, "timeout": config.timeout_s}
    if config.base_url:
        kwargs["base_url"] = config.base_url
    client = openai.OpenAI(**kwargs)

    t0 = time.monotonic()
    response = client.chat.completions.create(
        model=config.model,
        messages=messages,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
    )
    content = response.choices[0].message.content or ""
    usage_data = response.usage
    usage = LLMUsage(
        prompt_tokens=getattr(usage_data, "prompt_tokens", 0) if usage_data else 0,
        completion_tokens=getattr(usage_data, "completion_tokens", 0) if usage_data else 0,
        total_tokens=getattr(usage_data, "total_tokens", 0) if usage_data else 0,
        model=config.model,
        latency_ms=round((time.monotonic() - t0) * 1000, 1),
    )
    return content, usage


def call_anthropic(config: ProviderConfig, messages: list[dict[str, str]]) -> tuple[str, LLMUsage]:
    anthropic = _import_anthropic()
    client = anthropic.Anthropic(api_key=config.api_key, timeout=config.timeout_s)
    system, rest = _split_system(messages)
    kwargs: dict[str, Any] = {
        "model": config.model,
        "max_tokens": config.max_tokens,
        "temperature": config.temperature,
        "messages": rest,
    }
    if system:
        kwargs["system"] = system

    t0 = time.monotonic()
    response = client.messages.create(**kwargs)
    content = "".join(getattr(block, "text", "") for block in response.content)
    usage_data = getattr(response, "usage", None)
    prompt_tokens = int(getattr(usage_data, "input_tokens", 0) or 0)
    completion_tokens = int(getattr(usage_data, "output_tokens", 0) or 0)
    usage = LLMUsage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
        model=config.model,
        latency_ms=round((time.monotonic() - t0) * 1000, 1),
    )
    return content, usage


def call_gemini(config: ProviderConfig, messages: list[dict[str, str]]) -> tuple[str, LLMUsage]:
    system, rest = _split_system(messages)
    body: dict[str, Any] = {
        "contents": [
            {"role": "model" if m["role"] == "assistant" else "user", "parts": [{"text": m["content"]}]}
            for m in rest
        ],
        "generationConfig": {
            "maxOutputTokens": config.max_tokens,
            "temperature": config.temperature,
        },
    }
    if system:
        body["systemInstruction"] = {"parts": [{"text": system}]}

    t0 = time.monotonic()
    response = requests.post(
        f"{config.base_url or GEMINI_API_BASE}/{config.model}:generateContent",
        json=body,
        headers={"x-goog-api-key": config.api_key},
        timeout=config.timeout_s,
    )
    if not response.ok:
        raise RuntimeError(f"Gemini API error {response.status_code}: {response.text[:200]}")
    data = response.json()
    candidates = data.get("candidates") or []
    parts = ((candidates[0].get("content") or {}).get("parts") or []) if candidates else []
    content = "".join(str(p.get("text", "")) for p in parts)
    meta = data.get("usageMetadata") or {}
    usage = LLMUsage(
        prompt_tokens=int(meta.get("promptTokenCount", 0)),
        completion_tokens=int(meta.get("candidatesTokenCount", 0)),
        total_tokens=int(meta.get("totalTokenCount", 0)),
        model=config.model,
        latency_ms=round((time.monotonic() - t0) * 1000, 1),
    )
    return content, usage


PROVIDER_CALLERS: dict[str, ProviderCaller] = {
    "openai": call_openai,
    "anthropic": call_anthropic,
    "gemini": call_gemini,
}


def providers_from_env(environ: Mapping[str, str] | None = None) -> list[ProviderConfig]:
    """Single process-wide provider, used only when a tenant has none of its own."""
    env = os.environ if environ is None else environ
    provider = env.get("LLM_PROVIDER", "openai").strip().lower() or "openai"
    key_var = {
        "openai": "OPENAI_API_KEY",
        "anthropic": "ANTHROPIC_API_KEY",
        "gemini": "GEMINI_API_KEY",
    }.get(provider, "")
    api_key = env.get(key_var, "").strip() if key_var else ""
    if not api_key:
        return []
    return [
        ProviderConfig(
            provider=provider,
            model=env.get("LLM_MODEL", "").strip(),
            api_key=api_key,
            enabled=True,
            priority=1,
            base_url=env.get("OPENAI_BASE_URL", "").strip() if provider == "openai" else "",
            temperature=env_float(env, "LLM_TEMPERATURE", default=0.7),
            timeout_s=float(env_int(env, "LLM_TIMEOUT_S", default=60, minimum=1)),
        )
    ]


def order_providers(providers: list[ProviderConfig]) -> list[ProviderConfig]:
    """Eligible entries by ascending priority; ties keep their configured order."""
    return sorted((p for p in providers if p.eligible), key=lambda p: p.priority)


class ProviderFallbackChain:
    """Try each eligible provider in priority order and return the first answer.

    A provider that raises or returns an empty completion counts as failed and
    the next one is tried. When nothing is left the chain raises
    ``ProviderChainExhaustedError`` naming the primary provider's failure.
    """

    def __init__(
        self,
        *,
        callers: Mapping[str, ProviderCaller] | None = None,
        default_providers: list[ProviderConfig] | None = None,
    ) -> None:
        self.callers = dict(PROVIDER_CALLERS if callers is None else callers)
        self.default_providers = list(default_providers or [])

    def complete(self, messages: list[dict[str, str]], providers: list[ProviderConfig]) -> ChatCompletion:
        ordered = order_providers(providers) or order_providers(self.default_providers)
        if not ordered:
            raise ProviderChainExhaustedError(
                code="LLM_NO_PROVIDER_CONFIGURED",
                message="no enabled LLM provider with an API key is configured",
                attempts=[],
            )

        attempts: list[ProviderAttempt] = []
        for config in ordered:
            t0 = time.monotonic()
            caller = self.callers.get(config.provider)
            try:
                if caller is None:
                    raise RuntimeError(f"unknown LLM provider: {config.provider}")
                content, usage = caller(config, messages)
                if not content.strip():
                    raise RuntimeError("empty completion")
            except Exception as exc:
                latency_ms = round((time.monotonic() - t0) * 1000, 1)
                attempts.append(
                    ProviderAttempt(
                        provider=config.provider,
                        model=config.model,
                        ok=False,
                        error=f"{type(exc).__name__}: {exc}",
                        latency_ms=latency_ms,
                    )
                )
                logger.warning(
                    "llm_provider_failed provider=%s model=%s error=%s",
                    config.provider,
                    config.model,
                    type(exc).__name__,
                )
                continue
            attempts.append(
                ProviderAttempt(
                    provider=config.provider,
                    model=config.model,
                    ok=True,
                    latency_ms=usage.latency_ms or round((time.monotonic() - t0) * 1000, 1),
                )
            )
            if len(attempts) > 1:
                logger.info(
                    "llm_fallback_used provider=%s model=%s failed_before=%s",
                    config.provider,
                    config.model,
                    len(attempts) - 1,
                )
            return ChatCompletion(
                content=content,
                provider=config.provider,
                model=config.model,
                usage=usage,
                attempts=attempts,
            )

        primary = attempts[0]
        raise ProviderChainExhaustedError(
            code="LLM_PROVIDERS_EXHAUSTED",
            message=(
                f"all {len(attempts)} LLM provider(s) failed; "
                f"primary {primary.provider}/{primary.model}: {primary.error}"
            ),
            attempts=attempts,
        )

    def chat(self, messages: list[dict[str, str]], providers: list[ProviderConfig]) -> str:
        return self.complete(messages, providers).content
