"""OpenAI assessment provider (chat completions in JSON mode)."""

import logging

import openai
from openai import OpenAI

from aiobscura.assessment.providers.base import LLMProvider, LLMResponse, status_error
from aiobscura.exceptions import NetworkError

logger = logging.getLogger(__name__)


class OpenAIProvider(LLMProvider):
    provider_name = "openai"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        timeout: float = 60.0,
    ):
        if not api_key:
            raise ValueError("OpenAI API key is required")
        super().__init__(model)
        self.client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)
        logger.info(f"Assessing with openai model {model}")

    def _request(self, system_prompt, user_prompt, max_tokens, temperature) -> LLMResponse:
        try:
            completion = self.client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                max_tokens=max_tokens,
                temperature=temperature,
                response_format={"type": "json_object"},
            )
        except openai.APIStatusError as e:
            raise status_error("openai", e.status_code, e.message) from e
        except openai.APIError as e:
            raise NetworkError(f"openai request failed: {e}", retryable=True) from e

        text = completion.choices[0].message.content if completion.choices else None
        usage = completion.usage
        return LLMResponse(
            content=text or "",
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
            model=completion.model,
            raw_response=completion,
        )
