"""Backend handling for the vertexgate proxy."""

import asyncio
import logging
import ssl
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx

from .config import Settings
from .credentials import AuthInfo, CredentialPool
from .errors import CredentialResolutionError, UpstreamError
from .utils import vertex_host

logger = logging.getLogger(__name__)

T = TypeVar("T")

UrlBuilder = Callable[[AuthInfo], str]


@dataclass
class RetryPolicy:
    max_retries: int = 3
    interval: float = 1.0
    switch_credential: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=max(0, settings.max_retries),
            interval=max(0, settings.retry_interval_ms) / 1000.0,
            switch_credential=settings.switch_credential,
        )


def create_http_client(settings: Settings) -> httpx.AsyncClient:
    """The one pooled client shared by all upstream calls, with fixed timeouts."""
    verify: Any = True
    if settings.ssl_cert_file:
        verify = ssl.create_default_context(cafile=settings.ssl_cert_file)
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.timeout),
        limits=httpx.Limits(
            max_connections=100, max_keepalive_connections=100, keepalive_expiry=90.0
        ),
        proxy=settings.proxy_url or None,
        verify=verify,
    )


def native_url(
    auth: AuthInfo,
    model: str,
    action: str,
    api_version: str = "v1beta1",
    location: Optional[str] = None,
) -> str:
    """
    URL of a generation-schema call, e.g.
    https://{host}/v1beta1/projects/{project}/locations/{location}/publishers/google/models/{model}:{action}
    """
    location = location or auth.location
    url = (
        f"https://{vertex_host(location)}/{api_version}/projects/{auth.project_id}"
        f"/locations/{location}/publishers/google/models/{model}:{action}"
        f"?key={auth.api_key}"
    )
    if action == "streamGenerateContent":
        url += "&alt=sse"
    return url


def openai_url(auth: AuthInfo) -> str:
    return (
        f"https://{vertex_host(auth.location)}/v1beta1/projects/{auth.project_id}"
        f"/locations/{auth.location}/endpoints/openapi/chat/completions"
        f"?key={auth.api_key}"
    )


def gemini_location(model: str, default: str) -> str:
    """Newer model families are only served from the global endpoint."""
    if "gemini-2.5" in model or "gemini-3" in model:
        return "global"
    return default


def _content_type(response: httpx.Response) -> str:
    return response.headers.get("content-type", "application/json")


def _body_kwargs(payload: Any) -> Dict[str, Any]:
    if isinstance(payload, (bytes, str)):
        return {"content": payload, "headers": {"Content-Type": "application/json"}}
    return {"json": payload}


class UpstreamClient:
    """
    Issues calls to the backend, spreading them over the credential pool.

    Every call runs inside :meth:`with_failover`: at most ``max_retries + 1``
    attempts, a fixed pause between attempts, and, when enabled and more than
    one key exists, a different key on each retry.
    """

    def __init__(
        self,
        pool: CredentialPool,
        http_client: httpx.AsyncClient,
        retry: Optional[RetryPolicy] = None,
    ):
        self.pool = pool
        self.http_client = http_client
        self.retry = retry or RetryPolicy()

    async def aclose(self) -> None:
        await self.http_client.aclose()

    async def with_failover(
        self, operation: Callable[[AuthInfo], Awaitable[T]], label: str
    ) -> T:
        last_error: Optional[Exception] = None
        key_index: Optional[int] = None

        for attempt in range(self.retry.max_retries + 1):
            if key_index is None:
                credential = self.pool.pick()
            else:
                credential = self.pool.pick_at(key_index)

            start = time.monotonic()
            try:
                auth = await self.pool.authorize(credential)
                result = await operation(auth)
            except (UpstreamError, CredentialResolutionError) as e:
                last_error = e
                logger.warning(
                    f"{label} attempt {attempt + 1} failed: key_index={credential.index}, "
                    f"error={e.message}"
                )
                if self.retry.switch_credential and self.pool.count() > 1:
                    key_index = self.pool.next_index(credential.index)
                else:
                    key_index = credential.index
                if attempt < self.retry.max_retries:
                    await asyncio.sleep(self.retry.interval)
                continue

            latency = time.monotonic() - start
            logger.info(
                f"{label} success: key_index={credential.index}, latency={latency:.3f}s"
            )
            return result

        if last_error is None:
            raise UpstreamError(502, message=f"{label}: no attempt made")
        raise last_error

    async def _post(self, url: str, payload: Any) -> httpx.Response:
        try:
            response = await self.http_client.post(url, **_body_kwargs(payload))
        except httpx.RequestError as e:
            raise UpstreamError(502, message=f"request failed: {e}") from e
        if response.status_code != 200:
            raise UpstreamError(response.status_code, response.content, _content_type(response))
        return response

    async def _open_stream(self, url: str, payload: Any) -> httpx.Response:
        request = self.http_client.build_request("POST", url, **_body_kwargs(payload))
        try:
            response = await self.http_client.send(request, stream=True)
        except httpx.RequestError as e:
            raise UpstreamError(502, message=f"request failed: {e}") from e
        if response.status_code != 200:
            try:
                body = await response.aread()
            finally:
                await response.aclose()
            raise UpstreamError(response.status_code, body, _content_type(response))
        return response

    async def post(self, build_url: UrlBuilder, payload: Any, label: str) -> httpx.Response:
        """POST with failover; returns the fully read 200 response."""

        async def attempt(auth: AuthInfo) -> httpx.Response:
            return await self._post(build_url(auth), payload)

        return await self.with_failover(attempt, label)

    async def open_stream(
        self, build_url: UrlBuilder, payload: Any, label: str
    ) -> httpx.Response:
        """
        Open a streaming POST with failover.

        Only failures up to the response headers are retried; the caller owns
        the returned response and must close it.
        """

        async def attempt(auth: AuthInfo) -> httpx.Response:
            return await self._open_stream(build_url(auth), payload)

        return await self.with_failover(attempt, label)

    async def generate_content(self, model: str, body: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.post(
            lambda auth: native_url(auth, model, "generateContent"),
            body,
            f"GenerateContent model={model}",
        )
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(
                502, response.content, message=f"failed to decode response: {e}"
            ) from e

    async def stream_generate_content(
        self, model: str, body: Dict[str, Any]
    ) -> httpx.Response:
        return await self.open_stream(
            lambda auth: native_url(auth, model, "streamGenerateContent"),
            body,
            f"StreamGenerateContent model={model}",
        )

    async def chat_completions(self, payload: Dict[str, Any]) -> httpx.Response:
        return await self.post(openai_url, payload, f"ChatCompletions model={payload.get('model')}")

    async def stream_chat_completions(self, payload: Dict[str, Any]) -> httpx.Response:
        return await self.open_stream(
            openai_url, payload, f"ChatCompletions stream model={payload.get('model')}"
        )

    async def forward_generate(self, model: str, action: str, body: bytes) -> httpx.Response:
        """Forward a native call unchanged to the v1 endpoint."""

        def build_url(auth: AuthInfo) -> str:
            location = gemini_location(model, auth.location)
            return native_url(auth, model, action, api_version="v1", location=location)

        if action == "streamGenerateContent":
            return await self.open_stream(build_url, body, f"Gemini {action} model={model}")
        return await self.post(build_url, body, f"Gemini {action} model={model}")
