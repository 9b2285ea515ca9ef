"""Claude assessment provider (Anthropic messages API)."""

import logging

import anthropic
from anthropic import Anthropic

from aiobscura.assessment.providers.base import LLMProvider, LLMResponse, status_error
from aiobscura.exceptions import NetworkError

logger = logging.getLogger(__name__)


class AnthropicProvider(LLMProvider):
    """Claude models through the Anthropic SDK. SDK retries are off; the caller decides."""

    provider_name = "claude"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        timeout: float = 60.0,
    ):
        if not api_key:
            raise ValueError("Anthropic API key is required")
        super().__init__(model)
        self.client = Anthropic(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)
        logger.info(f"Assessing with claude model {model}")

    def _request(self, system_prompt, user_prompt, max_tokens, temperature) -> LLMResponse:
        try:
            message = self.client.messages.create(
                model=self._model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
            )
        except anthropic.APIStatusError as e:
            raise status_error("claude", e.status_code, e.message) from e
        except anthropic.APIError as e:
            raise NetworkError(f"claude request failed: {e}", retryable=True) from e

        # Thinking and tool_use blocks carry no answer text
        text = "".join(
            block.text for block in message.content if getattr(block, "type", None) == "text"
        )
        usage = message.usage
        return LLMResponse(
            content=text,
            prompt_tokens=usage.input_tokens if usage else 0,
            completion_tokens=usage.output_tokens if usage else 0,
            model=message.model,
            raw_response=message,
        )
