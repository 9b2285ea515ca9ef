"""Tests for LLM assessment providers."""

import json
from types import SimpleNamespace
from unittest.mock import Mock

import httpx
import pytest

from aiobscura.assessment.providers import create_provider, resolve_api_key
from aiobscura.assessment.providers.anthropic_provider import AnthropicProvider
from aiobscura.assessment.providers.ollama_provider import OllamaProvider
from aiobscura.assessment.providers.openai_provider import OpenAIProvider
from aiobscura.config import LLMProviderType, LLMSettings
from aiobscura.exceptions import ConfigError, LLMError, NetworkError


class TestCreateProvider:
    """Tests for the provider factory."""

    def test_ollama_needs_no_key(self):
        provider = create_provider(
            LLMSettings(provider=LLMProviderType.OLLAMA, model="llama3.2")
        )

        assert isinstance(provider, OllamaProvider)
        assert provider.model_name == "llama3.2"

    @pytest.mark.parametrize(
        "provider_type,env_var",
        [
            (LLMProviderType.CLAUDE, "ANTHROPIC_API_KEY"),
            (LLMProviderType.OPENAI, "OPENAI_API_KEY"),
        ],
    )
    def test_hosted_providers_need_a_key(self, provider_type: LLMProviderType, env_var: str):
        with pytest.raises(ConfigError, match=env_var):
            create_provider(LLMSettings(provider=provider_type, model="m"))

    def test_key_from_environment(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-env")
        settings = LLMSettings(provider=LLMProviderType.CLAUDE, model="claude-haiku")

        assert resolve_api_key(settings) == "sk-ant-env"
        assert isinstance(create_provider(settings), AnthropicProvider)

    def test_configured_key_wins(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        settings = LLMSettings(provider=LLMProviderType.OPENAI, model="gpt-4o-mini", api_key="sk-cfg")

        assert resolve_api_key(settings) == "sk-cfg"

    def test_openai_endpoint_gets_api_prefix(self):
        settings = LLMSettings(
            provider=LLMProviderType.OPENAI,
            model="gpt-4o-mini",
            api_key="sk-cfg",
            endpoint="http://localhost:8080/",
        )

        provider = create_provider(settings)

        assert isinstance(provider, OpenAIProvider)
        assert str(provider.client.base_url).rstrip("/") == "http://localhost:8080/v1"


class TestOllamaProvider:
    def test_generate_request(self):
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/generate"
            seen.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={
                    "model": "llama3.2",
                    "response": '{"goal_clarity": 0.8}',
                    "prompt_eval_count": 120,
                    "eval_count": 30,
                },
            )

        provider = OllamaProvider("llama3.2", transport=httpx.MockTransport(handler))

        response = provider.complete("system", "user")

        assert response.content == '{"goal_clarity": 0.8}'
        assert response.total_tokens == 150
        assert seen[0]["system"] == "system"
        assert seen[0]["prompt"] == "user"
        assert seen[0]["stream"] is False

    def test_server_error(self):
        provider = OllamaProvider(
            "llama3.2",
            transport=httpx.MockTransport(lambda r: httpx.Response(500, text="model not loaded")),
        )

        with pytest.raises(NetworkError) as exc_info:
            provider.complete("system", "user")

        assert exc_info.value.retryable is True

    def test_unreachable(self):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        provider = OllamaProvider("llama3.2", transport=httpx.MockTransport(refuse))

        with pytest.raises(NetworkError, match="ollama request failed"):
            provider.complete("system", "user")

    def test_missing_response_field(self):
        provider = OllamaProvider(
            "llama3.2",
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"done": True})),
        )

        with pytest.raises(LLMError, match="missing 'response'"):
            provider.complete("system", "user")


class TestAnthropicProvider:
    def test_text_blocks_are_joined(self):
        provider = AnthropicProvider(api_key="sk-ant", model="claude-haiku")
        provider.client = Mock()
        provider.client.messages.create.return_value = SimpleNamespace(
            content=[
                SimpleNamespace(type="text", text='{"sycophancy": '),
                SimpleNamespace(type="text", text="0.2}"),
            ],
            usage=SimpleNamespace(input_tokens=200, output_tokens=12),
            model="claude-haiku",
        )

        response = provider.complete("system", "user", max_tokens=300)

        assert response.content == '{"sycophancy": 0.2}'
        assert response.prompt_tokens == 200
        kwargs = provider.client.messages.create.call_args.kwargs
        assert kwargs["system"] == "system"
        assert kwargs["messages"] == [{"role": "user", "content": "user"}]
        assert kwargs["max_tokens"] == 300

    def test_empty_answer(self):
        provider = AnthropicProvider(api_key="sk-ant", model="claude-haiku")
        provider.client = Mock()
        provider.client.messages.create.return_value = SimpleNamespace(
            content=[], usage=None, model="claude-haiku"
        )

        with pytest.raises(LLMError, match="claude returned an empty answer"):
            provider.complete("system", "user")


class TestOpenAIProvider:
    def test_json_mode_request(self):
        provider = OpenAIProvider(api_key="sk", model="gpt-4o-mini")
        provider.client = Mock()
        provider.client.chat.completions.create.return_value = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content='{"autonomy_level": 1.0}'))],
            usage=SimpleNamespace(prompt_tokens=50, completion_tokens=8),
            model="gpt-4o-mini",
        )

        response = provider.complete("system", "user")

        assert response.content == '{"autonomy_level": 1.0}'
        assert response.total_tokens == 58
        kwargs = provider.client.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"][0] == {"role": "system", "content": "system"}

    def test_missing_content(self):
        provider = OpenAIProvider(api_key="sk", model="gpt-4o-mini")
        provider.client = Mock()
        provider.client.chat.completions.create.return_value = SimpleNamespace(
            choices=[], usage=None, model="gpt-4o-mini"
        )

        with pytest.raises(LLMError):
            provider.complete("system", "user")
