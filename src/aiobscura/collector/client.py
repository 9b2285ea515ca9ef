"""
HTTP client for the remote collector API.

All calls are synchronous httpx requests. Authentication uses the
collector's API key as a bearer token plus an ``X-Collector-ID`` header.

Usage:
    with CollectorClient.from_settings(settings.collector) as client:
        client.start_session(session_id, start_event)
        client.send_events_with_retry(session_id, events)
        client.complete_session(session_id, outcome="partial", event_count=42)
"""

import logging
import socket
import time
from typing import Any, Callable, Optional, Sequence
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from aiobscura import __version__
from aiobscura.collector.events import CollectorEvent
from aiobscura.collector.models import (
    EventsResponse,
    RegisterResponse,
    SessionCompleteResponse,
    SessionStatusResponse,
)
from aiobscura.collector.retry import RetryConfig, call_with_retry, check_response
from aiobscura.config import CollectorSettings
from aiobscura.exceptions import NetworkError

logger = logging.getLogger(__name__)

COLLECTOR_TYPE = "aiobscura"


def _session_path(session_id: str, suffix: str = "") -> str:
    return f"/sessions/{quote(session_id, safe='')}{suffix}"


def _parse(model: type, response: httpx.Response) -> Any:
    try:
        return model.model_validate(response.json())
    except (ValueError, ValidationError) as e:
        raise NetworkError(
            f"Invalid response from {response.request.url}: {e}",
            status_code=response.status_code,
        ) from e


def register_collector(
    server_url: str,
    workspace_id: str,
    hostname: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
    timeout: float = 30.0,
    transport: Optional[httpx.BaseTransport] = None,
) -> RegisterResponse:
    """
    Register this machine as a collector.

    Args:
        server_url: Base URL of the collector server
        workspace_id: Workspace to register with
        hostname: Hostname of this machine (defaults to socket.gethostname())
        metadata: Extra registration metadata
        timeout: Request timeout in seconds
        transport: Optional httpx transport (tests)

    Returns:
        RegisterResponse with collector_id, api_key and api_key_prefix

    Raises:
        NetworkError: If the server is unreachable or rejects the request
    """
    payload: dict[str, Any] = {
        "collector_type": COLLECTOR_TYPE,
        "collector_version": __version__,
        "hostname": hostname or socket.gethostname(),
        "workspace_id": workspace_id,
    }
    if metadata:
        payload["metadata"] = metadata

    with httpx.Client(
        base_url=server_url.rstrip("/"), timeout=timeout, transport=transport
    ) as client:
        try:
            response = client.post("/collectors/register", json=payload)
        except httpx.RequestError as e:
            raise NetworkError(f"Registration failed: {e}", retryable=True) from e
        check_response(response)
        data = _parse(RegisterResponse, response)

    logger.info(f"Registered collector {data.collector_id} ({data.api_key_prefix}...)")
    return data


class CollectorClient:
    """HTTP client for one configured collector."""

    def __init__(
        self,
        server_url: str,
        collector_id: str,
        api_key: str,
        timeout: float = 30.0,
        retry_config: Optional[RetryConfig] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.server_url = server_url.rstrip("/")
        self.collector_id = collector_id
        self.retry_config = retry_config or RetryConfig()
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=self.server_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "X-Collector-ID": collector_id,
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: CollectorSettings,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "CollectorClient":
        """
        Build a client from ``[collector]`` settings.

        Raises:
            ConfigError: If server_url, collector_id or api_key is missing
        """
        settings.validate_ready()
        return cls(
            server_url=settings.server_url or "",
            collector_id=settings.collector_id or "",
            api_key=settings.api_key or "",
            timeout=float(settings.timeout_secs),
            retry_config=RetryConfig(max_retries=settings.max_retries),
            transport=transport,
            sleep=sleep,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "CollectorClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError(f"{method} {path} timed out: {e}", retryable=True) from e
        except httpx.RequestError as e:
            raise NetworkError(f"{method} {path} failed: {e}", retryable=True) from e

    def start_session(self, session_id: str, event: CollectorEvent) -> None:
        """Send the ``session_start`` event for a session (with retry)."""

        def send() -> None:
            response = self._request("POST", _session_path(session_id, "/start"), json=event.to_wire())
            check_response(response)

        call_with_retry(send, self.retry_config, f"start {session_id}", sleep=self._sleep)

    def send_events(self, session_id: str, events: Sequence[CollectorEvent]) -> EventsResponse:
        """
        Send one batch of events, without retry.

        Raises:
            NetworkError: On transport failure or a non-2xx response
        """
        response = self._request(
            "POST",
            _session_path(session_id, "/events"),
            json={"session_id": session_id, "events": [e.to_wire() for e in events]},
        )
        check_response(response)
        return _parse(EventsResponse, response)

    def send_events_with_retry(
        self, session_id: str, events: Sequence[CollectorEvent]
    ) -> EventsResponse:
        """Send a batch, retrying network errors and 5xx responses."""
        return call_with_retry(
            lambda: self.send_events(session_id, events),
            self.retry_config,
            f"send_events {session_id}",
            sleep=self._sleep,
        )

    def complete_session(
        self,
        session_id: str,
        outcome: str = "partial",
        summary: Optional[str] = None,
        event_count: Optional[int] = None,
    ) -> bool:
        """
        Mark a session completed on the remote.

        Returns:
            The server's ``completed`` flag
        """
        payload: dict[str, Any] = {"outcome": outcome}
        if summary is not None:
            payload["summary"] = summary
        if event_count is not None:
            payload["event_count"] = event_count

        def send() -> SessionCompleteResponse:
            response = self._request("POST", _session_path(session_id, "/complete"), json=payload)
            check_response(response)
            return _parse(SessionCompleteResponse, response)

        result = call_with_retry(send, self.retry_config, f"complete {session_id}", sleep=self._sleep)
        return result.completed

    def get_session_status(self, session_id: str) -> Optional[SessionStatusResponse]:
        """
        Remote status of a session.

        Returns:
            SessionStatusResponse, or None if the server does not know the session
        """
        response = self._request("GET", _session_path(session_id))
        if response.status_code == 404:
            return None
        check_response(response)
        return _parse(SessionStatusResponse, response)

    def health_check(self) -> bool:
        """True if the server answers ``GET /health`` with a 2xx."""
        try:
            return self._request("GET", "/health").is_success
        except NetworkError:
            return False
