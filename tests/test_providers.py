"""
Unit tests for the network providers.

SDK clients are mocked; no request leaves the process.
"""

from unittest.mock import Mock, patch

import httpx
import openai
import pytest
from ollama import ResponseError

from ai_request_guard.config.loader import ProviderConfig, ProviderType
from ai_request_guard.core.errors import ErrorType, LLMError
from ai_request_guard.providers.base import LLMProvider
from ai_request_guard.providers.factory import create_provider, create_providers
from ai_request_guard.providers.ollama_provider import OllamaProvider
from ai_request_guard.providers.openai_provider import OpenAIProvider

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def completion(content="The harvest was plentiful.", prompt_tokens=12, completion_tokens=6):
    response = Mock()
    response.choices = [Mock(message=Mock(content=content))]
    response.usage = Mock(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
    return response


def openai_provider_raising(exc):
    client = Mock()
    client.chat.completions.create.side_effect = exc
    return OpenAIProvider(model="gpt-4", client=client)


class TestOpenAIProvider:
    """Test OpenAI provider behavior and error mapping."""

    @patch('ai_request_guard.providers.openai_provider.OpenAI')
    def test_init_builds_client(self, mock_openai_class):
        provider = OpenAIProvider(model="gpt-4", timeout_seconds=5.0)

        mock_openai_class.assert_called_once_with(base_url=None, timeout=5.0, max_retries=0)
        assert provider.is_available()
        assert isinstance(provider, LLMProvider)

    def test_init_missing_model(self):
        with pytest.raises(ValueError, match="model is required"):
            OpenAIProvider(model="")

    @patch('ai_request_guard.providers.openai_provider.OpenAI')
    def test_missing_credentials(self, mock_openai_class):
        """A client that cannot be built surfaces as a non-retryable error per call."""
        mock_openai_class.side_effect = openai.OpenAIError("The api_key client option must be set")
        provider = OpenAIProvider(model="gpt-4")

        assert not provider.is_available()
        with pytest.raises(LLMError) as exc_info:
            provider.call_llm("hello")
        assert exc_info.value.http_status == 401
        assert not exc_info.value.is_retryable

    def test_successful_call(self):
        client = Mock()
        client.chat.completions.create.return_value = completion()
        provider = OpenAIProvider(model="gpt-4", client=client)

        response = provider.call_llm("Describe the harvest")

        client.chat.completions.create.assert_called_once_with(
            model="gpt-4",
            messages=[{"role": "user", "content": "Describe the harvest"}],
        )
        assert response.text == "The harvest was plentiful."
        assert response.total_tokens == 18
        assert response.provider == "openai"
        assert provider.get_token_usage().input_tokens == 12

        provider.reset_token_usage()
        assert provider.get_token_usage().total_tokens == 0

    @pytest.mark.parametrize("exc,error_type,status", [
        (openai.APITimeoutError(request=REQUEST), ErrorType.TIMEOUT, None),
        (openai.APIConnectionError(request=REQUEST), ErrorType.NETWORK_ERROR, None),
        (
            openai.RateLimitError("slow down", response=httpx.Response(429, request=REQUEST), body=None),
            ErrorType.RATE_LIMITED,
            429,
        ),
        (
            openai.InternalServerError("boom", response=httpx.Response(503, request=REQUEST), body=None),
            ErrorType.API_ERROR,
            503,
        ),
        (
            openai.BadRequestError("bad", response=httpx.Response(400, request=REQUEST), body=None),
            ErrorType.API_ERROR,
            400,
        ),
    ])
    def test_error_mapping(self, exc, error_type, status):
        with pytest.raises(LLMError) as exc_info:
            openai_provider_raising(exc).call_llm("hello")
        assert exc_info.value.error_type == error_type
        assert exc_info.value.http_status == status
        assert exc_info.value.provider == "openai"

    def test_client_errors_are_not_retryable(self):
        exc = openai.BadRequestError("bad", response=httpx.Response(400, request=REQUEST), body=None)
        with pytest.raises(LLMError) as exc_info:
            openai_provider_raising(exc).call_llm("hello")
        assert not exc_info.value.is_retryable

    def test_empty_content_is_invalid(self):
        client = Mock()
        client.chat.completions.create.return_value = completion(content=None)
        with pytest.raises(LLMError) as exc_info:
            OpenAIProvider(model="gpt-4", client=client).call_llm("hello")
        assert exc_info.value.error_type == ErrorType.INVALID_RESPONSE

    def test_missing_usage_is_invalid(self):
        response = completion()
        response.usage = None
        client = Mock()
        client.chat.completions.create.return_value = response
        with pytest.raises(LLMError) as exc_info:
            OpenAIProvider(model="gpt-4", client=client).call_llm("hello")
        assert exc_info.value.error_type == ErrorType.INVALID_RESPONSE


class TestOllamaProvider:
    """Test Ollama provider behavior and error mapping."""

    def test_successful_call(self):
        client = Mock()
        client.generate.return_value = {"response": " Grain stores are low. ", "prompt_eval_count": 20, "eval_count": 7}
        provider = OllamaProvider(model="gemma3:12b", client=client)

        response = provider.call_llm("How are the stores?")

        client.generate.assert_called_once_with(model="gemma3:12b", prompt="How are the stores?")
        assert response.text == "Grain stores are low."
        assert (response.input_tokens, response.completion_tokens) == (20, 7)
        assert response.provider == "ollama"

    def test_missing_counts_are_estimated(self):
        client = Mock()
        client.generate.return_value = {"response": "12345678"}
        response = OllamaProvider(model="llama3", client=client).call_llm("abcdefghijkl")
        assert (response.input_tokens, response.completion_tokens) == (3, 2)

    def test_empty_response_is_invalid(self):
        client = Mock()
        client.generate.return_value = {"response": "   "}
        with pytest.raises(LLMError) as exc_info:
            OllamaProvider(model="llama3", client=client).call_llm("hello")
        assert exc_info.value.error_type == ErrorType.INVALID_RESPONSE

    @pytest.mark.parametrize("exc,error_type", [
        (ResponseError("too many requests", 429), ErrorType.RATE_LIMITED),
        (ResponseError("model 'llama3' not found", 404), ErrorType.API_ERROR),
        (httpx.ReadTimeout("timed out"), ErrorType.TIMEOUT),
        (ConnectionError("connection refused"), ErrorType.NETWORK_ERROR),
    ])
    def test_error_mapping(self, exc, error_type):
        client = Mock()
        client.generate.side_effect = exc
        with pytest.raises(LLMError) as exc_info:
            OllamaProvider(model="llama3", client=client).call_llm("hello")
        assert exc_info.value.error_type == error_type

    def test_is_available(self):
        client = Mock()
        client.list.return_value = {"models": [{"model": "llama3:latest"}]}
        assert OllamaProvider(model="llama3", client=client).is_available()
        assert not OllamaProvider(model="mistral", client=client).is_available()

        client.list.side_effect = ConnectionError("refused")
        assert not OllamaProvider(model="llama3", client=client).is_available()


class TestFactory:
    """Test provider construction from configuration."""

    @patch('ai_request_guard.providers.openai_provider.OpenAI')
    def test_create_openai(self, mock_openai_class):
        provider = create_provider(ProviderConfig(type=ProviderType.OPENAI, model="gpt-4", timeout_seconds=20))
        assert isinstance(provider, OpenAIProvider)
        assert provider.timeout_seconds == 20

    @patch('ai_request_guard.providers.ollama_provider.ollama.Client')
    def test_create_ollama(self, mock_client_class):
        provider = create_provider(ProviderConfig(
            type=ProviderType.OLLAMA, model="llama3", base_url="http://gpu-box:11434",
        ))
        assert isinstance(provider, OllamaProvider)
        mock_client_class.assert_called_once_with(host="http://gpu-box:11434", timeout=10.0)

    @patch('ai_request_guard.providers.ollama_provider.ollama.Client')
    @patch('ai_request_guard.providers.openai_provider.OpenAI')
    def test_create_providers_in_priority_order(self, mock_openai_class, mock_client_class):
        providers = create_providers([
            ProviderConfig(type=ProviderType.OLLAMA, model="llama3", priority=1),
            ProviderConfig(type=ProviderType.OPENAI, model="gpt-4", priority=0),
        ])
        assert [p.get_provider_name() for p in providers] == ["openai", "ollama"]
