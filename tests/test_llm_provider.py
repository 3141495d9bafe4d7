"""Tests for the provider fallback chain and provider callers."""

from __future__ import annotations

import os
from unittest import mock

import pytest

from company_intel import llm_provider
from company_intel.llm_provider import (
    LLMUsage,
    ProviderChainExhaustedError,
    ProviderConfig,
    ProviderFallbackChain,
    default_provider_settings,
    order_providers,
    providers_from_env,
)
from conftest import FakeResponse

MESSAGES = [
    {"role": "system", "content": "be brief"},
    {"role": "user", "content": "hello"},
]


class RecordingCaller:
    def __init__(self, outcome):
        self.outcome = outcome
        self.calls: list[ProviderConfig] = []

    def __call__(self, config, messages):
        self.calls.append(config)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome, LLMUsage(model=config.model, latency_ms=5.0)


def _provider(name: str, priority: int, **kwargs) -> ProviderConfig:
    return ProviderConfig(provider=name, api_key=f"{name}-key", priority=priority, **kwargs)


class TestProviderConfig:
    def test_from_dict_accepts_camel_case_keys(self):
        config = ProviderConfig.from_dict(
            {"provider": " OpenAI ", "apiKey": "sk-1", "baseUrl": "https://proxy.test/v1", "maxTokens": 256}
        )
        assert config.provider == "openai"
        assert config.model == "gpt-5-mini"
        assert config.api_key == "sk-1"
        assert config.base_url == "https://proxy.test/v1"
        assert config.max_tokens == 256
        assert config.eligible is True

    def test_disabled_or_keyless_entries_are_not_eligible(self):
        assert ProviderConfig(provider="openai", api_key="k", enabled=False).eligible is False
        assert ProviderConfig(provider="openai", api_key="   ").eligible is False

    def test_describe_never_contains_the_key(self):
        described = _provider("anthropic", 1).describe()
        assert described["has_api_key"] is True
        assert "anthropic-key" not in str(described)

    def test_default_settings_start_disabled(self):
        defaults = default_provider_settings()
        assert [p.provider for p in defaults] == ["openai", "anthropic", "gemini"]
        assert all(not p.enabled for p in defaults)

    def test_order_providers_sorts_by_priority_and_drops_ineligible(self):
        ordered = order_providers(
            [
                _provider("gemini", 3),
                ProviderConfig(provider="openai", priority=0),
                _provider("anthropic", 1),
            ]
        )
        assert [p.provider for p in ordered] == ["anthropic", "gemini"]


class TestProvidersFromEnv:
    def test_no_key_means_no_default_provider(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            assert providers_from_env() == []

    def test_anthropic_from_env(self):
        env = {"LLM_PROVIDER": "anthropic", "ANTHROPIC_API_KEY": "ak", "LLM_MODEL": "claude-x", "LLM_TIMEOUT_S": "15"}
        (config,) = providers_from_env(env)
        assert config.provider == "anthropic"
        assert config.model == "claude-x"
        assert config.timeout_s == 15.0
        assert config.base_url == ""

    def test_openai_base_url_is_passed_through(self):
        env = {"OPENAI_API_KEY": "sk", "OPENAI_BASE_URL": "https://proxy.test/v1"}
        (config,) = providers_from_env(env)
        assert config.provider == "openai"
        assert config.base_url == "https://proxy.test/v1"


class TestProviderFallbackChain:
    def test_first_success_wins_and_later_providers_are_not_called(self):
        first = RecordingCaller(RuntimeError("rate limited"))
        second = RecordingCaller("answer from anthropic")
        third = RecordingCaller("never used")
        chain = ProviderFallbackChain(callers={"openai": first, "anthropic": second, "gemini": third})

        completion = chain.complete(
            MESSAGES,
            [_provider("gemini", 3), _provider("openai", 1), _provider("anthropic", 2)],
        )

        assert completion.content == "answer from anthropic"
        assert completion.provider == "anthropic"
        assert [a.ok for a in completion.attempts] == [False, True]
        assert "rate limited" in completion.attempts[0].error
        assert len(first.calls) == 1
        assert third.calls == []

    def test_all_failures_raise_naming_the_primary(self):
        chain = ProviderFallbackChain(
            callers={
                "openai": RecordingCaller(RuntimeError("quota exceeded")),
                "anthropic": RecordingCaller(RuntimeError("overloaded")),
            }
        )
        with pytest.raises(ProviderChainExhaustedError) as exc_info:
            chain.complete(MESSAGES, [_provider("openai", 1), _provider("anthropic", 2)])

        err = exc_info.value
        assert err.code == "LLM_PROVIDERS_EXHAUSTED"
        assert err.retryable is True
        assert "all 2 LLM provider(s) failed" in err.message
        assert "openai/gpt-5-mini" in err.message
        assert "quota exceeded" in err.message
        assert len(err.attempts) == 2

    def test_empty_completion_counts_as_failure(self):
        backup = RecordingCaller("real answer")
        chain = ProviderFallbackChain(callers={"openai": RecordingCaller("   "), "gemini": backup})
        completion = chain.complete(MESSAGES, [_provider("openai", 1), _provider("gemini", 2)])
        assert completion.content == "real answer"
        assert "empty completion" in completion.attempts[0].error

    def test_no_eligible_provider(self):
        chain = ProviderFallbackChain(callers={})
        with pytest.raises(ProviderChainExhaustedError) as exc_info:
            chain.complete(MESSAGES, [ProviderConfig(provider="openai", enabled=False, api_key="k")])
        assert exc_info.value.code == "LLM_NO_PROVIDER_CONFIGURED"
        assert exc_info.value.attempts == []

    def test_default_providers_only_used_without_tenant_providers(self):
        tenant_caller = RecordingCaller("tenant answer")
        default_caller = RecordingCaller("default answer")
        chain = ProviderFallbackChain(
            callers={"openai": tenant_caller, "gemini": default_caller},
            default_providers=[_provider("gemini", 1)],
        )

        assert chain.chat(MESSAGES, []) == "default answer"
        assert chain.chat(MESSAGES, [_provider("openai", 5)]) == "tenant answer"
        assert len(default_caller.calls) == 1

    def test_unknown_provider_is_a_failed_attempt(self):
        chain = ProviderFallbackChain(callers={"openai": RecordingCaller("ok")})
        completion = chain.complete(MESSAGES, [_provider("mistral", 1), _provider("openai", 2)])
        assert completion.provider == "openai"
        assert "unknown LLM provider" in completion.attempts[0].error


class TestGeminiCaller:
    def test_generate_content_request_shape(self, monkeypatch):
        captured = {}

        def _fake_post(url, **kwargs):
            captured["url"] = url
            captured.update(kwargs)
            return FakeResponse(
                200,
                {
                    "candidates": [{"content": {"parts": [{"text": "hi "}, {"text": "there"}]}}],
                    "usageMetadata": {"promptTokenCount": 7, "candidatesTokenCount": 2, "totalTokenCount": 9},
                },
            )

        monkeypatch.setattr(llm_provider.requests, "post", _fake_post)
        content, usage = llm_provider.call_gemini(
            _provider("gemini", 1),
            MESSAGES + [{"role": "assistant", "content": "earlier"}],
        )

        assert content == "hi there"
        assert usage.total_tokens == 9
        assert captured["url"].endswith("/gemini-2.5-flash:generateContent")
        assert captured["headers"] == {"x-goog-api-key": "gemini-key"}
        assert captured["json"]["systemInstruction"] == {"parts": [{"text": "be brief"}]}
        assert [c["role"] for c in captured["json"]["contents"]] == ["user", "model"]

    def test_http_error_raises(self, monkeypatch):
        monkeypatch.setattr(
            llm_provider.requests,
            "post",
            lambda url, **kwargs: FakeResponse(403, {}, text="forbidden", reason="Forbidden"),
        )
        with pytest.raises(RuntimeError, match="Gemini API error 403"):
            llm_provider.call_gemini(_provider("gemini", 1), MESSAGES)


class TestAnthropicCaller:
    def test_system_prompt_is_split_out(self, monkeypatch):
        captured = {}

        class _Block:
            text = "bonjour"

        class _Usage:
            input_tokens = 4
            output_tokens = 1

        class _Messages:
            def create(self, **kwargs):
                captured.update(kwargs)
                return mock.Mock(content=[_Block()], usage=_Usage())

        class _Client:
            def __init__(self, **kwargs):
                captured["client_kwargs"] = kwargs
                self.messages = _Messages()

        monkeypatch.setattr(llm_provider, "_import_anthropic", lambda: mock.Mock(Anthropic=_Client))
        content, usage = llm_provider.call_anthropic(_provider("anthropic", 1), MESSAGES)

        assert content == "bonjour"
        assert usage.total_tokens == 5
        assert captured["system"] == "be brief"
        assert captured["messages"] == [{"role": "user", "content": "hello"}]
        assert captured["client_kwargs"]["api_key"] == "anthropic-key"
