"""Error types for the vertexgate proxy."""

from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base class for errors that map onto an OpenAI-style error document."""

    status_code = 500
    error_type = "server_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "code": self.status_code,
            }
        }


class ConfigurationError(GatewayError):
    """Raised at startup when the proxy cannot operate, e.g. no credentials."""


class CredentialResolutionError(GatewayError):
    """The project probe answered but no identifier could be extracted."""

    def __init__(self, message: str, body: str = ""):
        super().__init__(message)
        self.body = body


class UpstreamError(GatewayError):
    """
    A non-success answer (or transport failure) from the backend.

    The raw body is kept so the synchronous path can forward it verbatim.
    """

    error_type = "upstream_error"

    def __init__(
        self,
        status_code: int,
        body: bytes = b"",
        content_type: str = "application/json",
        message: Optional[str] = None,
    ):
        if message is None:
            message = f"API error (status {status_code}): {body.decode(errors='replace')}"
        super().__init__(message, status_code=status_code)
        self.body = body
        self.content_type = content_type


class TranslationError(GatewayError):
    """Malformed inbound request. Never retried."""

    status_code = 400
    error_type = "invalid_request_error"
