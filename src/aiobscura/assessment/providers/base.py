"""Provider interface for session assessment."""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from aiobscura.exceptions import LLMError, NetworkError


@dataclass
class LLMResponse:
    """One answer from an assessment backend.

    Attributes:
        content: Answer text; the assessor looks for a JSON object in it
        prompt_tokens: Input tokens reported by the backend (0 if unknown)
        completion_tokens: Output tokens reported by the backend (0 if unknown)
        model: Model that answered, which may differ from the one requested
        duration_ms: Wall time of the request, filled in by ``complete``
        raw_response: Backend payload, kept for debugging
    """

    content: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model: str = ""
    duration_ms: float = 0.0
    raw_response: Any = None

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


def status_error(provider: str, status_code: int, detail: str) -> NetworkError:
    """NetworkError for an HTTP error status; only 5xx is worth retrying."""
    return NetworkError(
        f"{provider} returned {status_code}: {detail}",
        status_code=status_code,
        retryable=status_code >= 500,
    )


def usage_or_zero(value: Optional[int]) -> int:
    return int(value or 0)


class LLMProvider(ABC):
    """Assessment backend.

    Subclasses send one system/user prompt pair in ``_request``; ``complete``
    times the call and rejects empty answers.
    """

    provider_name: str = ""

    def __init__(self, model: str):
        self._model = model

    @property
    def model_name(self) -> str:
        return self._model

    def close(self) -> None:
        """Release the underlying HTTP client, if the backend keeps one."""

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 600,
        temperature: float = 0.0,
    ) -> LLMResponse:
        """Ask the backend for an assessment.

        Raises:
            NetworkError: If the request could not be completed
            LLMError: If the backend answered without usable text
        """
        started = time.monotonic()
        response = self._request(system_prompt, user_prompt, max_tokens, temperature)
        response.duration_ms = (time.monotonic() - started) * 1000
        if not response.content:
            raise LLMError(f"{self.provider_name} returned an empty answer")
        return response

    @abstractmethod
    def _request(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> LLMResponse:
        """Send one prompt pair and translate the backend's reply."""
        ...
