"""Local Ollama assessment provider (``POST /api/generate``)."""

import logging

import httpx

from aiobscura.assessment.providers.base import (
    LLMProvider,
    LLMResponse,
    status_error,
    usage_or_zero,
)
from aiobscura.exceptions import LLMError, NetworkError

logger = logging.getLogger(__name__)


class OllamaProvider(LLMProvider):
    """Non-streaming generate calls against an Ollama server."""

    provider_name = "ollama"

    def __init__(
        self,
        model: str,
        endpoint: str = "http://localhost:11434",
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ):
        super().__init__(model)
        self._client = httpx.Client(
            base_url=endpoint.rstrip("/"), timeout=timeout, transport=transport
        )
        logger.info(f"Assessing with ollama model {model} at {endpoint}")

    def close(self) -> None:
        self._client.close()

    def _request(self, system_prompt, user_prompt, max_tokens, temperature) -> LLMResponse:
        payload = {
            "model": self._model,
            "system": system_prompt,
            "prompt": user_prompt,
            "stream": False,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }
        try:
            response = self._client.post("/api/generate", json=payload)
        except httpx.HTTPError as e:
            raise NetworkError(f"ollama request failed: {e}", retryable=True) from e
        if response.status_code >= 400:
            raise status_error("ollama", response.status_code, response.text)

        try:
            body = response.json()
        except ValueError as e:
            raise LLMError(f"ollama returned invalid JSON: {e}") from e
        text = body.get("response") if isinstance(body, dict) else None
        if not isinstance(text, str):
            raise LLMError("ollama response missing 'response' field")

        return LLMResponse(
            content=text,
            prompt_tokens=usage_or_zero(body.get("prompt_eval_count")),
            completion_tokens=usage_or_zero(body.get("eval_count")),
            model=body.get("model", self._model),
            raw_response=body,
        )
