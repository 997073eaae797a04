"""API key authentication for inbound requests."""

import logging
import secrets
from typing import Iterable, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

PUBLIC_PATHS = ("/health",)


def extract_api_key(request: Request) -> Optional[str]:
    """
    Pull the caller's key from, in order: ``Authorization: Bearer``,
    ``x-goog-api-key`` or the ``key`` query parameter.
    """
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[len("Bearer "):]

    key = request.headers.get("x-goog-api-key")
    if key:
        return key

    key = request.query_params.get("key")
    if key:
        return key
    return None


def auth_error_response(message: str = "Invalid API key") -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={
            "error": {
                "message": message,
                "type": "invalid_request_error",
                "code": "invalid_api_key",
            }
        },
    )


class APIKeyMiddleware(BaseHTTPMiddleware):
    """Rejects requests whose key does not match the configured one."""

    def __init__(self, app, api_key: str = "", public_paths: Iterable[str] = PUBLIC_PATHS):
        super().__init__(app)
        self.api_key = api_key
        self.public_paths = tuple(public_paths)

    async def dispatch(self, request: Request, call_next):
        if not self.api_key or request.url.path in self.public_paths:
            return await call_next(request)

        provided = extract_api_key(request)
        if not provided or not secrets.compare_digest(provided.encode(), self.api_key.encode()):
            logger.warning(f"Rejected request to {request.url.path}: invalid API key")
            return auth_error_response()
        return await call_next(request)
