import json

import httpx
import pytest
from fastapi.testclient import TestClient

from vertexgate.api import create_app
from vertexgate.catalog import ModelCatalog
from vertexgate.config import Settings

# Mock backend payloads
MOCK_GEMINI_RESPONSE = {
    "candidates": [
        {
            "index": 0,
            "content": {
                "role": "model",
                "parts": [
                    {"text": "<vertex_think_tag>The user greets me.</vertex_think_tag>"},
                    {"text": "Hello there, how may I assist you today?"},
                ],
            },
            "finishReason": "STOP",
        }
    ],
    "usageMetadata": {
        "promptTokenCount": 9,
        "candidatesTokenCount": 12,
        "totalTokenCount": 31,
        "thoughtsTokenCount": 10,
    },
}

MOCK_GEMINI_TOOL_RESPONSE = {
    "candidates": [
        {
            "index": 0,
            "content": {
                "role": "model",
                "parts": [
                    {"functionCall": {"name": "get_weather", "args": {"city": "Paris"}}}
                ],
            },
            "finishReason": "STOP",
        }
    ],
    "usageMetadata": {"promptTokenCount": 20, "candidatesTokenCount": 5, "totalTokenCount": 25},
}

MOCK_GEMINI_STREAM_CHUNKS = [
    {"candidates": [{"content": {"role": "model", "parts": [{"text": "<vertex_think_tag>plan"}]}}]},
    {
        "candidates": [
            {"content": {"role": "model", "parts": [{"text": "ning</vertex_think_tag>Hello"}]}}
        ]
    },
    {
        "candidates": [
            {
                "content": {"role": "model", "parts": [{"text": " world"}]},
                "finishReason": "STOP",
            }
        ],
        "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 2, "totalTokenCount": 6},
    },
]

MOCK_OPENAI_COMPLETION = {
    "id": "chatcmpl-123",
    "object": "chat.completion",
    "created": 1677652288,
    "model": "google/gemini-2.5-pro",
    "choices": [
        {
            "index": 0,
            "message": {
                "role": "assistant",
                "content": "<vertex_think_tag>2+2 is basic arithmetic</vertex_think_tag>The answer is 4.",
            },
            "finish_reason": "stop",
        }
    ],
    "usage": {"prompt_tokens": 8, "completion_tokens": 20, "total_tokens": 28},
}

MOCK_OPENAI_STREAM_CHUNKS = [
    {
        "id": "chatcmpl-123",
        "object": "chat.completion.chunk",
        "created": 1694268190,
        "model": "google/gemini-2.5-pro",
        "choices": [
            {"index": 0, "delta": {"role": "assistant", "content": "<vertex_think_tag>step"}}
        ],
    },
    {
        "id": "chatcmpl-123",
        "object": "chat.completion.chunk",
        "created": 1694268190,
        "model": "google/gemini-2.5-pro",
        "choices": [{"index": 0, "delta": {"content": "s</vertex_th"}}],
    },
    {
        "id": "chatcmpl-123",
        "object": "chat.completion.chunk",
        "created": 1694268190,
        "model": "google/gemini-2.5-pro",
        "choices": [{"index": 0, "delta": {"content": "ink_tag>Answer"}}],
    },
    {
        "id": "chatcmpl-123",
        "object": "chat.completion.chunk",
        "created": 1694268190,
        "model": "google/gemini-2.5-pro",
        "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 3, "completion_tokens": 5, "total_tokens": 8},
    },
]

MOCK_PROBE_ERROR = {
    "error": {
        "code": 403,
        "message": "Permission denied on resource project unknown. "
        "Consumer projects/discovered-123 is not allowed.",
        "status": "PERMISSION_DENIED",
    }
}

MOCK_UPSTREAM_ERROR = {
    "error": {"code": 429, "message": "Resource exhausted.", "status": "RESOURCE_EXHAUSTED"}
}

CHAT_REQUEST = {
    "model": "gemini-2.5-pro",
    "messages": [{"role": "user", "content": "Hello!"}],
}


def sse_body(chunks, done=False) -> bytes:
    """Encode payloads the way the backend streams them."""
    lines = [f"data: {json.dumps(chunk)}\r\n\r\n" for chunk in chunks]
    if done:
        lines.append("data: [DONE]\r\n\r\n")
    return "".join(lines).encode()


def sse_response(chunks, done=False) -> httpx.Response:
    return httpx.Response(
        200, content=sse_body(chunks, done), headers={"content-type": "text/event-stream"}
    )


def parse_events(lines):
    """Decode the non-empty ``data:`` lines of a proxy stream."""
    events = []
    for line in lines:
        if not line.strip():
            continue
        payload = line[len("data: "):]
        if payload == "[DONE]":
            events.append("[DONE]")
        else:
            events.append(json.loads(payload))
    return events


class UpstreamRecorder:
    """Answers mock transport requests with a handler and keeps what it saw."""

    def __init__(self, handler):
        self.handler = handler
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    @property
    def keys(self):
        return [request.url.params.get("key") for request in self.requests]

    def json(self, index=-1):
        return json.loads(self.requests[index].content)


def mock_http_client(handler):
    recorder = UpstreamRecorder(handler)
    return httpx.AsyncClient(transport=httpx.MockTransport(recorder)), recorder


# Shared fixtures
@pytest.fixture
def settings(tmp_path):
    """Three keys, a fixed project and no retry delay"""
    return Settings(
        api_keys=["key-0", "key-1", "key-2"],
        round_robin=True,
        project_id="test-project",
        retry_interval_ms=0,
        models_file="",
        log_dir=str(tmp_path / "logs"),
    )


@pytest.fixture
def make_client(settings):
    """Build a TestClient whose upstream calls go to ``handler``"""

    def factory(handler, **overrides):
        app_settings = settings.model_copy(update=overrides)
        http_client, recorder = mock_http_client(handler)
        app = create_app(app_settings, http_client=http_client, catalog=ModelCatalog())
        return TestClient(app), recorder

    return factory


@pytest.fixture
def gemini_ok(make_client):
    """Client whose backend always answers with MOCK_GEMINI_RESPONSE"""
    return make_client(lambda request: httpx.Response(200, json=MOCK_GEMINI_RESPONSE))
