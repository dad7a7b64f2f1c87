"""
OpenAI chat completions provider.

Maps SDK failures onto the error taxonomy so the recovery manager can decide
what to do with them. The SDK reads OPENAI_API_KEY from the environment.
"""

import logging
import time
from typing import Any, Optional

import openai
from openai import OpenAI

from ai_request_guard.core.errors import ErrorType, LLMError
from ai_request_guard.core.token_counter import TokenUsage

from .base import ProviderResponse

logger = logging.getLogger(__name__)

PROVIDER_NAME = "openai"


class OpenAIProvider:
    """Single-prompt chat completion against the OpenAI API."""

    def __init__(
        self,
        model: str,
        timeout_seconds: float = 10.0,
        base_url: Optional[str] = None,
        client: Optional[Any] = None,
    ):
        """Initialize the provider.

        Args:
            model: OpenAI model name (required)
            timeout_seconds: Network timeout per call
            base_url: Alternative API endpoint
            client: Preconfigured client; built from the environment if omitted

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.model_name = model
        self.timeout_seconds = timeout_seconds
        self.usage = TokenUsage(0, 0)
        self.total_requests = 0
        self._setup_error: Optional[str] = None

        if client is None:
            try:
                client = OpenAI(base_url=base_url, timeout=timeout_seconds, max_retries=0)
            except openai.OpenAIError as e:
                # Usually a missing API key; the chain skips past this provider
                logger.warning("OpenAI client unavailable: %s", e)
                self._setup_error = str(e)
        self.client = client

    def call_llm(self, prompt: str) -> ProviderResponse:
        """Run one completion.

        Raises:
            LLMError: Classified failure of the call
        """
        if self.client is None:
            raise LLMError(
                ErrorType.API_ERROR,
                f"OpenAI client not configured: {self._setup_error}",
                http_status=401,
                provider=PROVIDER_NAME,
            )

        started = time.perf_counter()
        try:
            response = self.client.chat.completions.create(
                model=self.model_name,
                messages=[{"role": "user", "content": prompt}],
            )
        except openai.APITimeoutError as e:
            raise LLMError(ErrorType.TIMEOUT, str(e), provider=PROVIDER_NAME)
        except openai.APIConnectionError as e:
            raise LLMError(ErrorType.NETWORK_ERROR, str(e), provider=PROVIDER_NAME)
        except openai.RateLimitError as e:
            raise LLMError(ErrorType.RATE_LIMITED, str(e), http_status=429, provider=PROVIDER_NAME)
        except openai.APIStatusError as e:
            raise LLMError(ErrorType.API_ERROR, str(e), http_status=e.status_code, provider=PROVIDER_NAME)
        latency_ms = int((time.perf_counter() - started) * 1000)

        if not response.choices or response.choices[0].message.content is None:
            raise LLMError(ErrorType.INVALID_RESPONSE, "OpenAI response has no content", provider=PROVIDER_NAME)

        usage = response.usage
        if not usage:
            raise LLMError(
                ErrorType.INVALID_RESPONSE,
                "OpenAI response missing usage information",
                provider=PROVIDER_NAME,
            )

        self.usage = self.usage + TokenUsage(usage.prompt_tokens, usage.completion_tokens)
        self.total_requests += 1
        return ProviderResponse(
            text=response.choices[0].message.content,
            input_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            latency_ms=latency_ms,
            provider=PROVIDER_NAME,
            model=self.model_name,
        )

    def is_available(self) -> bool:
        return self.client is not None

    def get_provider_name(self) -> str:
        return PROVIDER_NAME

    def get_token_usage(self) -> TokenUsage:
        return self.usage

    def reset_token_usage(self) -> None:
        self.usage = TokenUsage(0, 0)
        self.total_requests = 0
