"""Streaming response handling for the vertexgate proxy."""

import json
import logging
import time
import uuid
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx
from pydantic import ValidationError

from .models import (
    ChatCompletionChunk,
    Choice,
    Delta,
    FunctionCallDelta,
    ToolCallDelta,
    Usage,
)
from .translation import (
    candidate_parts,
    convert_usage,
    function_call_to_tool_call,
    map_finish_reason,
)
from .utils import ReasoningSplitter

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

DONE_EVENT = b"data: [DONE]\n\n"


def new_request_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


def sse_event(payload: Any) -> bytes:
    if not isinstance(payload, str):
        payload = json.dumps(payload)
    return f"data: {payload}\n\n".encode()


class ChunkEmitter:
    """
    Serializes deltas into ``chat.completion.chunk`` events for one stream.

    All events share the stream's id, creation time and model. The finish
    event can be produced only once.
    """

    def __init__(self, model: str, request_id: Optional[str] = None, created: Optional[int] = None):
        self.model = model
        self.request_id = request_id or new_request_id()
        self.created = created if created is not None else int(time.time())
        self.finished = False

    def event(
        self,
        delta: Delta,
        finish_reason: Optional[str] = None,
        usage: Optional[Usage] = None,
    ) -> bytes:
        chunk = ChatCompletionChunk(
            id=self.request_id,
            created=self.created,
            model=self.model,
            choices=[Choice(index=0, delta=delta, finish_reason=finish_reason)],
            usage=usage,
        )
        data = chunk.model_dump(exclude_none=True)
        data["choices"][0].setdefault("delta", {})
        data["choices"][0].setdefault("finish_reason", None)
        return sse_event(data)

    def role(self) -> bytes:
        return self.event(Delta(role="assistant"))

    def text(self, content: str, reasoning: str) -> List[bytes]:
        """Reasoning goes out before content when one fragment yields both."""
        events = []
        if reasoning:
            events.append(self.event(Delta(reasoning_content=reasoning)))
        if content:
            events.append(self.event(Delta(content=content)))
        return events

    def tool_calls(self, calls: List[ToolCallDelta]) -> bytes:
        return self.event(Delta(tool_calls=calls))

    def finish(self, finish_reason: Optional[str], usage: Optional[Usage] = None) -> bytes:
        if self.finished:
            return b""
        self.finished = True
        return self.event(Delta(), finish_reason=finish_reason or "stop", usage=usage)

    def error(self, message: str, error_type: str = "server_error") -> bytes:
        return sse_event({"error": {"message": message, "type": error_type}})

    def raw(self, payload: str) -> bytes:
        return sse_event(payload)

    def done(self) -> bytes:
        return DONE_EVENT


async def iter_sse_data(response: httpx.Response) -> AsyncGenerator[str, None]:
    """Yield the payload of each ``data:`` line until the stream or ``[DONE]`` ends."""
    async for line in response.aiter_lines():
        line = line.strip()
        if not line.startswith("data:"):
            continue
        payload = line[len("data:"):].strip()
        if payload == "[DONE]":
            break
        if payload:
            yield payload


def _parse_usage(data: Any) -> Optional[Usage]:
    if not isinstance(data, dict):
        return None
    try:
        return Usage.model_validate(data)
    except ValidationError:
        logger.warning(f"Ignoring malformed usage block: {data}")
        return None


async def stream_gemini_events(
    response: httpx.Response,
    emitter: ChunkEmitter,
    tag: str = "vertex_think_tag",
) -> AsyncGenerator[bytes, None]:
    """
    Translate a native SSE stream into chat completion chunks.

    Text parts run through a :class:`ReasoningSplitter`; function calls become
    tool call deltas with their own index. The upstream response is closed when
    the generator ends, including when the client goes away mid-stream.
    """
    splitter = ReasoningSplitter(tag)
    finish_reason = None
    usage = None
    tool_index = 0

    try:
        yield emitter.role()
        try:
            async for payload in iter_sse_data(response):
                try:
                    chunk = json.loads(payload)
                except json.JSONDecodeError:
                    logger.warning(f"Forwarding unparseable chunk: {payload[:200]}")
                    yield emitter.raw(payload)
                    continue
                if not isinstance(chunk, dict):
                    yield emitter.raw(payload)
                    continue

                if chunk.get("usageMetadata"):
                    usage = convert_usage(chunk["usageMetadata"])

                candidates = chunk.get("candidates") or []
                if not candidates:
                    continue
                candidate = candidates[0]

                reason = map_finish_reason(candidate.get("finishReason"))
                if reason:
                    finish_reason = reason

                for part in candidate_parts(candidate):
                    if part.get("text"):
                        content, reasoning = splitter.feed(part["text"])
                        for event in emitter.text(content, reasoning):
                            yield event
                    if part.get("functionCall"):
                        call = function_call_to_tool_call(part["functionCall"])
                        yield emitter.tool_calls(
                            [
                                ToolCallDelta(
                                    index=tool_index,
                                    id=call.id,
                                    type="function",
                                    function=FunctionCallDelta(
                                        name=call.function.name,
                                        arguments=call.function.arguments,
                                    ),
                                )
                            ]
                        )
                        tool_index += 1
        except httpx.HTTPError as e:
            logger.error(f"Upstream stream failed after output started: {str(e)}")
            yield emitter.error(f"upstream stream interrupted: {str(e)}")

        content, reasoning = splitter.flush()
        for event in emitter.text(content, reasoning):
            yield event
        yield emitter.finish(finish_reason, usage)
        yield emitter.done()
    finally:
        await response.aclose()


async def stream_openai_events(
    response: httpx.Response,
    emitter: ChunkEmitter,
    tag: str = "vertex_think_tag",
) -> AsyncGenerator[bytes, None]:
    """
    Re-emit an OpenAI-compatible stream with tagged reasoning moved out of
    ``delta.content`` into ``delta.reasoning_content``.
    """
    splitter = ReasoningSplitter(tag)
    finish_reason = None
    usage = None

    try:
        yield emitter.role()
        try:
            async for payload in iter_sse_data(response):
                try:
                    chunk = json.loads(payload)
                except json.JSONDecodeError:
                    logger.warning(f"Forwarding unparseable chunk: {payload[:200]}")
                    yield emitter.raw(payload)
                    continue
                if not isinstance(chunk, dict):
                    yield emitter.raw(payload)
                    continue

                if chunk.get("usage"):
                    usage = _parse_usage(chunk["usage"]) or usage

                choices = chunk.get("choices") or []
                if not choices or not isinstance(choices[0], dict):
                    continue
                choice = choices[0]
                delta: Dict[str, Any] = choice.get("delta") or {}

                upstream_reasoning = delta.get("reasoning_content")
                if isinstance(upstream_reasoning, str) and upstream_reasoning:
                    yield emitter.event(Delta(reasoning_content=upstream_reasoning))

                text = delta.get("content")
                if isinstance(text, str) and text:
                    content, reasoning = splitter.feed(text)
                    for event in emitter.text(content, reasoning):
                        yield event

                if delta.get("tool_calls"):
                    try:
                        calls = [ToolCallDelta.model_validate(tc) for tc in delta["tool_calls"]]
                    except ValidationError:
                        logger.warning(f"Forwarding malformed tool call delta: {payload[:200]}")
                        yield emitter.raw(payload)
                    else:
                        yield emitter.tool_calls(calls)

                if choice.get("finish_reason"):
                    finish_reason = choice["finish_reason"]
        except httpx.HTTPError as e:
            logger.error(f"Upstream stream failed after output started: {str(e)}")
            yield emitter.error(f"upstream stream interrupted: {str(e)}")

        content, reasoning = splitter.flush()
        for event in emitter.text(content, reasoning):
            yield event
        yield emitter.finish(finish_reason, usage)
        yield emitter.done()
    finally:
        await response.aclose()


async def forward_lines(response: httpx.Response) -> AsyncGenerator[bytes, None]:
    """Relay an upstream SSE stream line by line without touching its payloads."""
    try:
        async for line in response.aiter_lines():
            yield f"{line}\n".encode()
    except httpx.HTTPError as e:
        logger.error(f"Gemini stream interrupted: {str(e)}")
    finally:
        await response.aclose()
