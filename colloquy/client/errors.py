"""Error types raised by the chat client.

Every error carries a machine-readable `kind` (a string, constant per class unless noted)
and an optional numeric `code` (e.g. an HTTP status), so that front ends can map errors
to exit codes or HTTP statuses without matching on message strings.
"""

__all__ = ["ClientError",
           "ConfigurationError",
           "PromptTooLargeError",
           "BackendHandshakeError",
           "TransportError",
           "ResponseTimeoutError",
           "CancellationError",
           "ProtocolError"]

from typing import Any, Optional

class ClientError(Exception):
    """Base class for all errors raised by `colloquy.client`."""

    kind = "client_error"

    def __init__(self, message: str, *, code: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details

    def __str__(self) -> str:
        if self.code is not None:
            return f"{self.message} (code {self.code})"
        return self.message

class ConfigurationError(ClientError):
    """Invalid client settings, e.g. a token budget that does not fit in the context. Fatal at setup."""
    kind = "configuration"

class PromptTooLargeError(ClientError):
    """The newest message alone does not fit in the prompt token budget."""

    kind = "prompt_too_large"

    def __init__(self, max_tokens: int, token_count: int):
        super().__init__(f"Prompt is too long. Max token count is {max_tokens}, but prompt is {token_count} tokens long.")
        self.max_tokens = max_tokens
        self.token_count = token_count
        self.overflow = token_count - max_tokens

class BackendHandshakeError(ClientError):
    """Session creation failed on the remote side.

    `remote_kind` is the error name reported by the backend (e.g. "UnauthorizedRequest"), if any.
    """

    kind = "backend_handshake"

    def __init__(self, message: str, *, remote_kind: Optional[str] = None, code: Optional[int] = None, details: Any = None):
        super().__init__(message, code=code, details=details)
        self.remote_kind = remote_kind

    def __str__(self) -> str:
        if self.remote_kind is not None:
            return f"{self.remote_kind}: {self.message}"
        return super().__str__()

class TransportError(ClientError):
    """Connection-level failure, or a non-success HTTP status.

    `retryable` is a hint for the caller; the client itself never retries.
    """

    kind = "transport"

    def __init__(self, message: str, *, retryable: bool = False, code: Optional[int] = None, details: Any = None):
        super().__init__(message, code=code, details=details)
        self.retryable = retryable

class ResponseTimeoutError(ClientError):
    """No data from the backend within the inactivity window."""
    kind = "timeout"

class CancellationError(ClientError):
    """The request was aborted by the caller."""
    kind = "cancelled"

class ProtocolError(ClientError):
    """The backend sent something we cannot use: an error record, no message, a message from the wrong author, ..."""
    kind = "protocol"
