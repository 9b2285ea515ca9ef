"""Custom exceptions for aiobscura.

Every error carries a ``kind`` so callers can apply the propagation policy
for that class of failure without matching on concrete types.
"""

from typing import Optional


class AiobscuraError(Exception):
    """Base class for all aiobscura errors."""

    kind = "internal"


class ConfigError(AiobscuraError):
    """Missing or invalid configuration. Fatal at startup."""

    kind = "config"


class SourceIOError(AiobscuraError):
    """Filesystem failure while reading a source file or the store."""

    kind = "io"

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"{path}: {message}")


class ParseError(AiobscuraError):
    """A source file's content could not be normalized."""

    kind = "parse"

    def __init__(self, assistant: str, message: str):
        self.assistant = assistant
        self.message = message
        super().__init__(f"[{assistant}] {message}")


class StorageError(AiobscuraError):
    """SQL or integrity failure in the local store."""

    kind = "storage"


class NetworkError(AiobscuraError):
    """Collector or LLM request failed or timed out."""

    kind = "network"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)


class LLMError(AiobscuraError):
    """The assessor returned an unparseable or non-object response."""

    kind = "llm"


class SessionNotFoundError(AiobscuraError):
    """Publishing or analyzing a session that no longer exists."""

    kind = "session_not_found"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")
