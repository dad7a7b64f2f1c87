"""
Ollama provider for locally hosted models.
"""

import logging
import time
from typing import Any, Optional

import httpx
import ollama
from ollama import ResponseError

from ai_request_guard.core.errors import ErrorType, LLMError
from ai_request_guard.core.token_counter import TokenUsage, estimate_tokens

from .base import ProviderResponse

logger = logging.getLogger(__name__)

PROVIDER_NAME = "ollama"


class OllamaProvider:
    """Text generation through a local Ollama server."""

    def __init__(
        self,
        model: str,
        host: Optional[str] = None,
        timeout_seconds: float = 60.0,
        client: Optional[Any] = None,
    ):
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        self.model_name = model
        self.host = host
        self.timeout_seconds = timeout_seconds
        self.client = client or ollama.Client(host=host, timeout=timeout_seconds)
        self.usage = TokenUsage(0, 0)
        self.total_requests = 0

    def call_llm(self, prompt: str) -> ProviderResponse:
        started = time.perf_counter()
        try:
            response = self.client.generate(model=self.model_name, prompt=prompt)
        except ResponseError as exc:
            status = getattr(exc, "status_code", None)
            if status == 429:
                raise LLMError(ErrorType.RATE_LIMITED, exc.error, http_status=status, provider=PROVIDER_NAME)
            raise LLMError(ErrorType.API_ERROR, exc.error, http_status=status, provider=PROVIDER_NAME)
        except (TimeoutError, httpx.TimeoutException) as exc:
            raise LLMError(ErrorType.TIMEOUT, str(exc), provider=PROVIDER_NAME)
        except ConnectionError as exc:
            raise LLMError(ErrorType.NETWORK_ERROR, str(exc), provider=PROVIDER_NAME)
        latency_ms = int((time.perf_counter() - started) * 1000)

        text = (response.get("response") or "").strip()
        if not text:
            raise LLMError(ErrorType.INVALID_RESPONSE, "Ollama returned an empty response", provider=PROVIDER_NAME)

        # Counts are absent when the prompt was served from Ollama's own cache
        input_tokens = response.get("prompt_eval_count") or estimate_tokens(prompt)
        completion_tokens = response.get("eval_count") or estimate_tokens(text)

        self.usage = self.usage + TokenUsage(input_tokens, completion_tokens)
        self.total_requests += 1
        return ProviderResponse(
            text=text,
            input_tokens=input_tokens,
            completion_tokens=completion_tokens,
            latency_ms=latency_ms,
            provider=PROVIDER_NAME,
            model=self.model_name,
        )

    def is_available(self) -> bool:
        """Whether the server answers and has the model pulled."""
        try:
            listing = self.client.list()
        except (ResponseError, ConnectionError) as exc:
            logger.debug("Ollama at %s unavailable: %s", self.host, exc)
            return False
        names = {model.get("model") or model.get("name") for model in listing.get("models", [])}
        return self.model_name in names or f"{self.model_name}:latest" in names

    def get_provider_name(self) -> str:
        return PROVIDER_NAME

    def get_token_usage(self) -> TokenUsage:
        return self.usage

    def reset_token_usage(self) -> None:
        self.usage = TokenUsage(0, 0)
        self.total_requests = 0
