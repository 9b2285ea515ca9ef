"""
Retry logic with exponential backoff for collector requests.

Retries are local to a single call: a network failure or 5xx response is
retried after 0.5s, 1s, 2s, ... (capped at 30s); a 4xx is fatal at once.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

import httpx

from aiobscura.exceptions import NetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    initial_delay: float = 0.5
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = False


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """
    Delay before the retry following ``attempt`` (0-indexed).

    Returns:
        Delay in seconds
    """
    delay = config.initial_delay * (config.exponential_base**attempt)
    delay = min(delay, config.max_delay)

    if config.jitter:
        # Up to 25% extra so many collectors don't retry in lockstep
        delay += delay * 0.25 * random.random()

    return delay


def check_response(response: httpx.Response) -> None:
    """
    Raise NetworkError for a non-2xx response.

    5xx responses are marked retryable; everything else is not.
    """
    if response.is_success:
        return
    status_code = response.status_code
    raise NetworkError(
        f"HTTP {status_code}: {response.text[:200]}",
        status_code=status_code,
        retryable=status_code >= 500,
    )


def call_with_retry(
    func: Callable[[], T],
    config: RetryConfig,
    description: str = "request",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``func`` until it succeeds, retrying retryable failures.

    ``httpx.RequestError`` is translated to a retryable NetworkError.

    Raises:
        NetworkError: The last failure once retries are exhausted, or the
            first non-retryable failure
    """
    last_error: Optional[NetworkError] = None

    for attempt in range(config.max_retries + 1):
        try:
            return func()
        except httpx.RequestError as e:
            last_error = NetworkError(f"Network error: {e}", retryable=True)
        except NetworkError as e:
            if not e.retryable:
                raise
            last_error = e

        if attempt < config.max_retries:
            delay = calculate_delay(attempt, config)
            logger.warning(
                f"Retry {attempt + 1}/{config.max_retries} for {description}: "
                f"{last_error}, waiting {delay:.2f}s"
            )
            sleep(delay)
        else:
            logger.error(f"Max retries ({config.max_retries}) exceeded for {description}: {last_error}")

    raise last_error or NetworkError(f"{description} failed")

