# transport.py
# LLM transport: request/response contract, error taxonomy, and the
# OpenRouter client built on the OpenAI SDK.
#
# Conversation history is kept in block form (text / tool_use / tool_result /
# image). This module is the only place that knows the chat-completions wire
# shape; the runner never sees it.
#
# The client makes exactly one attempt per call. Retrying, backoff and
# rate-limit sleeps belong to the runner.

from __future__ import annotations

import json
import time
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Annotated, Any, Literal, Mapping, Protocol, Union

import httpx
import openai
from openai import OpenAI
from pydantic import BaseModel, Field

from agent_runner.config import Settings, load_settings
from agent_runner.models import (
    ImageBlock,
    Message,
    TextBlock,
    ToolDefinition,
    ToolResultBlock,
    ToolUseBlock,
)

DEFAULT_MAX_TOKENS = 4096

StopReason = Literal["end_turn", "tool_use", "max_tokens", "stop_sequence"]

_STOP_REASONS: dict[str, StopReason] = {
    "stop": "end_turn",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "length": "max_tokens",
    "content_filter": "stop_sequence",
}


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0


class ChatRequest(BaseModel):
    system: str
    messages: list[Message]
    tools: list[ToolDefinition] = Field(default_factory=list)
    max_tokens: int = DEFAULT_MAX_TOKENS
    model: str | None = None


class ChatResponse(BaseModel):
    id: str = ""
    model: str = ""
    content: list[Annotated[Union[TextBlock, ToolUseBlock], Field(discriminator="type")]]
    stop_reason: StopReason
    usage: Usage = Field(default_factory=Usage)

    def text(self) -> str:
        """All text blocks joined by newlines."""
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))

    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]


class ChatClient(Protocol):
    def chat(self, request: ChatRequest) -> ChatResponse: ...


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ErrorKind(str, Enum):
    AUTH = "auth"
    RATE_LIMITED = "rate_limited"
    OVERLOADED = "overloaded"
    CLIENT = "client"
    OTHER = "other"


class TransportError(Exception):
    """
    A classified transport failure.

    status is the HTTP status code, or 0 when the request never got a
    response (connection refused, timeout).
    """

    def __init__(
        self,
        message: str,
        status: int,
        error_type: str | None = None,
        retry_after_ms: int | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.error_type = error_type
        self.retry_after_ms = retry_after_ms

    @property
    def is_rate_limited(self) -> bool:
        return self.status == 429

    @property
    def is_auth_error(self) -> bool:
        return self.status in (401, 403)

    @property
    def is_overloaded(self) -> bool:
        return self.status == 0 or self.status >= 500

    @property
    def kind(self) -> ErrorKind:
        if self.is_rate_limited:
            # Without a server delay there is nothing to wait on; back off instead.
            if self.retry_after_ms is not None:
                return ErrorKind.RATE_LIMITED
            return ErrorKind.OVERLOADED
        if self.is_overloaded:
            return ErrorKind.OVERLOADED
        if self.is_auth_error:
            return ErrorKind.AUTH
        if 400 <= self.status < 500:
            return ErrorKind.CLIENT
        return ErrorKind.OTHER

    @property
    def is_retryable(self) -> bool:
        return self.kind in (ErrorKind.RATE_LIMITED, ErrorKind.OVERLOADED)

    @classmethod
    def from_openai(cls, exc: openai.APIError) -> TransportError:
        if isinstance(exc, openai.APIStatusError):
            return cls(
                exc.message,
                exc.status_code,
                _error_type(exc.body),
                parse_retry_after(exc.response.headers),
            )
        if isinstance(exc, openai.APITimeoutError):
            return cls(str(exc), 0, "timeout")
        if isinstance(exc, openai.APIConnectionError):
            return cls(str(exc), 0, "connection_error")
        return cls(str(exc), 0, "api_error")


def _error_type(body: Any) -> str | None:
    if not isinstance(body, dict):
        return None
    error = body.get("error", body)
    if isinstance(error, dict):
        return error.get("type") or error.get("code")
    return None


def parse_retry_after(headers: Mapping[str, str]) -> int | None:
    """
    Server-provided retry delay in milliseconds, or None.

    Accepts `retry-after-ms`, or `retry-after` as seconds or an HTTP date.
    """
    raw_ms = headers.get("retry-after-ms")
    if raw_ms:
        try:
            return max(0, int(float(raw_ms)))
        except ValueError:
            pass

    raw = headers.get("retry-after")
    if not raw:
        return None
    try:
        return max(0, int(float(raw) * 1000))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    return max(0, int((when.timestamp() - time.time()) * 1000))


# ---------------------------------------------------------------------------
# Wire translation
# ---------------------------------------------------------------------------


def _image_part(block: ImageBlock) -> dict[str, Any]:
    return {
        "type": "image_url",
        "image_url": {"url": f"data:{block.media_type};base64,{block.data}"},
    }


def _split_tool_result(block: ToolResultBlock) -> tuple[str, list[ImageBlock]]:
    if isinstance(block.content, str):
        return block.content, []
    texts = [b.text for b in block.content if isinstance(b, TextBlock)]
    images = [b for b in block.content if isinstance(b, ImageBlock)]
    return "\n".join(texts), images


def to_openai_messages(system: str, messages: list[Message]) -> list[dict[str, Any]]:
    """
    Flatten block history into chat-completions messages.

    tool_result blocks become `tool` messages. Images attached to tool
    results cannot ride on a `tool` message, so they follow in a user
    message right after the tool messages of that turn.
    """
    out: list[dict[str, Any]] = []
    if system:
        out.append({"role": "system", "content": system})

    for message in messages:
        if isinstance(message.content, str):
            out.append({"role": message.role, "content": message.content})
            continue

        if message.role == "assistant":
            text = "\n".join(b.text for b in message.content if isinstance(b, TextBlock))
            tool_calls = [
                {
                    "id": b.id,
                    "type": "function",
                    "function": {"name": b.name, "arguments": json.dumps(b.input)},
                }
                for b in message.content
                if isinstance(b, ToolUseBlock)
            ]
            entry: dict[str, Any] = {"role": "assistant", "content": text or None}
            if tool_calls:
                entry["tool_calls"] = tool_calls
            out.append(entry)
            continue

        parts: list[dict[str, Any]] = []
        tool_images: list[ImageBlock] = []
        for block in message.content:
            if isinstance(block, ToolResultBlock):
                text, images = _split_tool_result(block)
                if block.is_error and not text.lower().startswith("error"):
                    text = f"Error: {text}"
                out.append({"role": "tool", "tool_call_id": block.tool_use_id, "content": text})
                tool_images.extend(images)
            elif isinstance(block, TextBlock):
                parts.append({"type": "text", "text": block.text})
            elif isinstance(block, ImageBlock):
                parts.append(_image_part(block))

        if tool_images:
            parts.append({"type": "text", "text": "Image output from the tool call(s) above:"})
            parts.extend(_image_part(img) for img in tool_images)
        if parts:
            out.append({"role": "user", "content": parts})

    return out


def to_openai_tool(definition: ToolDefinition) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": definition.name,
            "description": definition.description,
            "parameters": definition.input_schema,
        },
    }


def from_openai_completion(completion: Any) -> ChatResponse:
    choice = completion.choices[0]
    message = choice.message

    content: list[TextBlock | ToolUseBlock] = []
    if message.content:
        content.append(TextBlock(text=message.content))
    for call in message.tool_calls or []:
        raw_args = call.function.arguments or "{}"
        try:
            args = json.loads(raw_args, strict=False)
        except json.JSONDecodeError:
            args = {"_raw_arguments": raw_args}
        if not isinstance(args, dict):
            args = {"value": args}
        content.append(ToolUseBlock(id=call.id, name=call.function.name, input=args))

    stop_reason = _STOP_REASONS.get(choice.finish_reason or "stop", "end_turn")
    # Some providers report "stop" even when tool calls are present.
    if any(isinstance(b, ToolUseBlock) for b in content):
        stop_reason = "tool_use"

    usage = Usage()
    if completion.usage is not None:
        details = getattr(completion.usage, "prompt_tokens_details", None)
        cached = getattr(details, "cached_tokens", None) or 0
        usage = Usage(
            input_tokens=max(0, (completion.usage.prompt_tokens or 0) - cached),
            output_tokens=completion.usage.completion_tokens or 0,
            cache_read_input_tokens=cached,
        )

    return ChatResponse(
        id=completion.id or "",
        model=completion.model or "",
        content=content,
        stop_reason=stop_reason,
        usage=usage,
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class OpenRouterClient:
    """
    ChatClient backed by the OpenAI SDK, pointed at OpenRouter by default.

    Example:
        client = OpenRouterClient(model="anthropic/claude-sonnet-4")
        response = client.chat(ChatRequest(system="...", messages=[...]))
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        settings: Settings | None = None,
        client: OpenAI | None = None,
    ) -> None:
        settings = settings or load_settings()
        self._model = model or settings.model
        self._client = client or OpenAI(
            base_url=base_url or settings.base_url,
            api_key=api_key or settings.api_key,
            timeout=httpx.Timeout(settings.request_timeout, connect=10.0),
            max_retries=0,
        )

    @property
    def model(self) -> str:
        return self._model

    def chat(self, request: ChatRequest) -> ChatResponse:
        kwargs: dict[str, Any] = {
            "model": request.model or self._model,
            "messages": to_openai_messages(request.system, request.messages),
            "max_tokens": request.max_tokens,
        }
        if request.tools:
            kwargs["tools"] = [to_openai_tool(t) for t in request.tools]

        try:
            completion = self._client.chat.completions.create(**kwargs)
        except openai.APIError as exc:
            raise TransportError.from_openai(exc) from exc

        if not completion.choices:
            raise TransportError("Response contained no choices", 502, "empty_response")
        return from_openai_completion(completion)
