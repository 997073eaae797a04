"""
Request/response translation between the OpenAI chat schema and the Gemini
generateContent schema.

Everything here is a pure function of its inputs; no network, no shared state.
"""

import json
import logging
import re
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

from .catalog import ModelAlias, ModelCatalog
from .models import (
    ChatCompletionRequest,
    ChatCompletionResponse,
    Choice,
    CompletionTokensDetails,
    ContentPart,
    FunctionCall,
    GoogleExtension,
    ImageURL,
    Message,
    ResponseMessage,
    SafetySetting,
    ThinkingConfig,
    ToolCall,
    Usage,
)
from .utils import split_reasoning

logger = logging.getLogger(__name__)

SAFETY_CATEGORIES = [
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
    "HARM_CATEGORY_CIVIC_INTEGRITY",
]

DEFAULT_SAFETY_SETTINGS = [
    SafetySetting(category=category, threshold="BLOCK_NONE")
    for category in SAFETY_CATEGORIES
]

FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
}

TOOL_CHOICE_MODES = {"none": "NONE", "auto": "AUTO", "required": "ANY"}

IMAGE_MIME_TYPES = ["image/jpeg", "image/gif", "image/webp"]

MARKDOWN_IMAGE_PATTERN = re.compile(r"!\[.*?\]\((data:[^)]+)\)")


def new_tool_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def extract_text_content(content: Any) -> str:
    """
    Extract the text of a message.

    Content is either a plain string or a list of parts; text parts are
    joined with newlines and anything else is ignored.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    texts = []
    for part in content:
        if isinstance(part, ContentPart) and part.type == "text" and part.text:
            texts.append(part.text)
    return "\n".join(texts)


def parse_image_url(url: str) -> Optional[Dict[str, Any]]:
    """
    Turn a data URL (raw or inside a markdown image) into an inlineData part.

    Plain http(s) URLs are never fetched; they yield None.
    """
    if url.startswith("data:"):
        header, sep, data = url.partition(",")
        if not sep:
            return None
        mime_type = "image/png"
        for candidate in IMAGE_MIME_TYPES:
            if candidate in header:
                mime_type = candidate
                break
        return {"inlineData": {"mimeType": mime_type, "data": data}}

    match = MARKDOWN_IMAGE_PATTERN.search(url)
    if match:
        return parse_image_url(match.group(1))
    return None


def _convert_part(part: ContentPart) -> Optional[Dict[str, Any]]:
    if part.type == "text":
        return {"text": part.text} if part.text else None
    if part.type == "image_url" and part.image_url is not None:
        url = part.image_url.url if isinstance(part.image_url, ImageURL) else part.image_url
        return parse_image_url(url)
    return None


def convert_content_to_parts(content: Any) -> List[Dict[str, Any]]:
    if content is None:
        return []
    if isinstance(content, str):
        return [{"text": content}] if content else []
    parts = []
    for item in content:
        converted = _convert_part(item)
        if converted is not None:
            parts.append(converted)
    return parts


def _parse_arguments(arguments: str) -> Dict[str, Any]:
    try:
        args = json.loads(arguments) if arguments else {}
    except json.JSONDecodeError:
        return {}
    return args if isinstance(args, dict) else {}


def _tool_response_payload(text: str) -> Dict[str, Any]:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return {"result": text}
    if isinstance(parsed, dict):
        return parsed
    return {"result": text}


def convert_messages(
    messages: List[Message],
) -> Tuple[List[Dict[str, Any]], Optional[Dict[str, Any]]]:
    """
    Convert chat messages to Gemini contents plus an optional system instruction.
    """
    system_texts: List[str] = []
    contents: List[Dict[str, Any]] = []
    tool_names: Dict[str, str] = {}

    for message in messages:
        if message.role == "system":
            text = extract_text_content(message.content)
            if text:
                system_texts.append(text)

        elif message.role == "user":
            parts = convert_content_to_parts(message.content)
            if parts:
                contents.append({"role": "user", "parts": parts})

        elif message.role == "assistant":
            parts = []
            if message.tool_calls:
                # Tool calls win; any accompanying text is dropped.
                for tool_call in message.tool_calls:
                    if tool_call.id:
                        tool_names[tool_call.id] = tool_call.function.name
                    parts.append(
                        {
                            "functionCall": {
                                "name": tool_call.function.name,
                                "args": _parse_arguments(tool_call.function.arguments),
                            }
                        }
                    )
            else:
                text = extract_text_content(message.content)
                if text:
                    parts.append({"text": text})
            if parts:
                contents.append({"role": "model", "parts": parts})

        elif message.role == "tool":
            name = message.name or tool_names.get(message.tool_call_id or "", "")
            contents.append(
                {
                    "role": "user",
                    "parts": [
                        {
                            "functionResponse": {
                                "name": name,
                                "response": _tool_response_payload(
                                    extract_text_content(message.content)
                                ),
                            }
                        }
                    ],
                }
            )

        else:
            logger.warning(f"Dropping message with unsupported role: {message.role}")

    system_instruction = None
    if system_texts:
        system_instruction = {"parts": [{"text": "\n".join(system_texts)}]}
    return contents, system_instruction


def convert_tool_choice(tool_choice: Any) -> Optional[Dict[str, Any]]:
    if isinstance(tool_choice, str):
        mode = TOOL_CHOICE_MODES.get(tool_choice)
        if mode is None:
            return None
        return {"functionCallingConfig": {"mode": mode}}

    if isinstance(tool_choice, dict) and tool_choice.get("type") == "function":
        function = tool_choice.get("function")
        if isinstance(function, dict) and isinstance(function.get("name"), str):
            return {
                "functionCallingConfig": {
                    "mode": "ANY",
                    "allowedFunctionNames": [function["name"]],
                }
            }
    return None


def build_generation_config(
    request: ChatCompletionRequest, alias: Optional[ModelAlias] = None
) -> Dict[str, Any]:
    config: Dict[str, Any] = {}
    if request.temperature is not None:
        config["temperature"] = request.temperature
    if request.top_p is not None:
        config["topP"] = request.top_p
    if request.top_k is not None:
        config["topK"] = request.top_k

    max_tokens = request.max_completion_tokens
    if max_tokens is None:
        max_tokens = request.max_tokens
    if max_tokens is not None:
        config["maxOutputTokens"] = max_tokens

    if isinstance(request.stop, str):
        config["stopSequences"] = [request.stop]
    elif request.stop:
        config["stopSequences"] = list(request.stop)

    if request.n is not None and request.n > 1:
        config["candidateCount"] = request.n

    if request.response_format is not None and request.response_format.type == "json_object":
        config["responseMimeType"] = "application/json"

    if alias is not None and alias.thinking_budget is not None:
        config["thinkingConfig"] = {"thinkingBudget": alias.thinking_budget}
    return config


def to_gemini_request(
    request: ChatCompletionRequest,
    catalog: ModelCatalog,
    default_safety: Optional[List[SafetySetting]] = None,
) -> Tuple[Dict[str, Any], str]:
    """
    Translate an OpenAI chat request into a Gemini request body.

    Returns:
        The request body and the physical model id to address
    """
    model_id, alias = catalog.resolve(request.model)
    contents, system_instruction = convert_messages(request.messages)

    body: Dict[str, Any] = {"contents": contents}
    if system_instruction is not None:
        body["systemInstruction"] = system_instruction

    generation_config = build_generation_config(request, alias)
    if generation_config:
        body["generationConfig"] = generation_config

    declarations = [
        tool.function.model_dump(exclude_none=True)
        for tool in request.tools or []
        if tool.type == "function"
    ]
    if declarations:
        body["tools"] = [{"functionDeclarations": declarations}]

    if request.tool_choice is not None:
        tool_config = convert_tool_choice(request.tool_choice)
        if tool_config is not None:
            body["toolConfig"] = tool_config

    safety = request.safety_settings or default_safety
    if safety:
        body["safetySettings"] = [s.model_dump() for s in safety]

    return body, model_id


def map_finish_reason(reason: Optional[str]) -> Optional[str]:
    """
    Map a Gemini finish reason onto the OpenAI vocabulary.

    Unknown non-empty reasons become "stop"; an empty reason stays empty (None).
    """
    if not reason:
        return None
    return FINISH_REASONS.get(reason, "stop")


def function_call_to_tool_call(function_call: Dict[str, Any]) -> ToolCall:
    return ToolCall(
        id=new_tool_call_id(),
        function=FunctionCall(
            name=function_call.get("name", ""),
            arguments=json.dumps(function_call.get("args") or {}),
        ),
    )


def convert_usage(usage_metadata: Optional[Dict[str, Any]]) -> Optional[Usage]:
    if not usage_metadata:
        return None
    usage = Usage(
        prompt_tokens=usage_metadata.get("promptTokenCount", 0),
        completion_tokens=usage_metadata.get("candidatesTokenCount", 0),
        total_tokens=usage_metadata.get("totalTokenCount", 0),
    )
    thoughts = usage_metadata.get("thoughtsTokenCount", 0)
    if thoughts:
        usage.completion_tokens_details = CompletionTokensDetails(reasoning_tokens=thoughts)
    return usage


def candidate_parts(candidate: Dict[str, Any]) -> List[Dict[str, Any]]:
    content = candidate.get("content") or {}
    return content.get("parts") or []


def from_gemini_response(
    response: Dict[str, Any],
    model: str,
    request_id: str,
    tag: str = "vertex_think_tag",
    created: Optional[int] = None,
) -> ChatCompletionResponse:
    """Translate a complete Gemini answer into an OpenAI chat completion."""
    choices = []
    for i, candidate in enumerate(response.get("candidates") or []):
        parts = candidate_parts(candidate)
        text = "".join(part["text"] for part in parts if part.get("text"))
        content, reasoning = split_reasoning(text, tag)
        tool_calls = [
            function_call_to_tool_call(part["functionCall"])
            for part in parts
            if part.get("functionCall")
        ]

        message = ResponseMessage(content=content)
        if reasoning:
            message.reasoning_content = reasoning
        if tool_calls:
            message.tool_calls = tool_calls
            if not content:
                message.content = None

        choices.append(
            Choice(
                index=candidate.get("index", i),
                message=message,
                finish_reason=map_finish_reason(candidate.get("finishReason")),
            )
        )

    return ChatCompletionResponse(
        id=request_id,
        created=created if created is not None else int(time.time()),
        model=model,
        choices=choices,
        usage=convert_usage(response.get("usageMetadata")),
    )


def build_passthrough_request(
    request: ChatCompletionRequest,
    model_id: str,
    alias: Optional[ModelAlias],
    tag: str,
) -> Dict[str, Any]:
    """
    Payload for the OpenAI-compatible endpoint: the inbound request with the
    model rewritten and the ``google`` extension block attached.
    """
    payload = request.model_dump(exclude_none=True, exclude={"safety_settings"})
    payload["model"] = f"google/{model_id}"

    thinking = ThinkingConfig(include_thoughts=True)
    if alias is not None:
        thinking.thinking_budget = alias.thinking_budget

    extension = GoogleExtension(
        safety_settings=request.safety_settings or DEFAULT_SAFETY_SETTINGS,
        thought_tag_marker=tag,
        thinking_config=thinking,
    )
    payload["google"] = extension.model_dump(exclude_none=True)
    return payload


def process_openai_response(data: Dict[str, Any], tag: str) -> Dict[str, Any]:
    """Move tagged reasoning out of the first choice's content."""
    choices = data.get("choices")
    if not choices or not isinstance(choices[0], dict):
        return data
    message = choices[0].get("message")
    if not isinstance(message, dict):
        return data
    text = message.get("content")
    if not isinstance(text, str) or not text:
        return data

    content, reasoning = split_reasoning(text, tag)
    message["content"] = content
    if reasoning:
        message["reasoning_content"] = reasoning
        logger.info(f"Extracted reasoning: {len(reasoning)} chars, content: {len(content)} chars")
    return data
