# events.py
# Typed event stream emitted by the runner.
#
# Events form a closed union discriminated on `type`. Observers subscribe
# through EventBus and receive events in emission order. A listener that
# raises is logged and skipped; it never reaches the runner or other
# listeners.

from __future__ import annotations

import logging
import time
from typing import Annotated, Any, Callable, Literal, Union

from pydantic import BaseModel, Field

from agent_runner.models import AgentResult, AgentStatus, Discovery, Message, ToolResult

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------


class StatusChangeEvent(BaseModel):
    type: Literal["status_change"] = "status_change"
    status: AgentStatus
    message: str | None = None


class ThinkingEvent(BaseModel):
    """Text the model produced alongside (or instead of) tool calls."""

    type: Literal["thinking"] = "thinking"
    text: str


class MessageEvent(BaseModel):
    type: Literal["message"] = "message"
    role: Literal["user", "assistant"]
    content: str


class ConversationEvent(BaseModel):
    """Running snapshot of the full history after each append."""

    type: Literal["conversation"] = "conversation"
    messages: list[Message]


class ToolCallEvent(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    tool_use_id: str
    tool_name: str
    input: dict[str, Any]


class ToolResultEvent(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    tool_name: str
    result: ToolResult


class DiscoveryEvent(BaseModel):
    type: Literal["discovery"] = "discovery"
    discovery: Discovery


class ErrorEvent(BaseModel):
    """`fatal` marks the single terminal error of a run; `stopped` marks deliberate cancellation."""

    type: Literal["error"] = "error"
    error: str
    fatal: bool = False
    stopped: bool = False


class RateLimitEvent(BaseModel):
    type: Literal["rate_limit"] = "rate_limit"
    waiting: bool
    wait_ms: int | None = None
    message: str | None = None
    timestamp: float = Field(default_factory=time.time)


class UsageUpdateEvent(BaseModel):
    type: Literal["usage_update"] = "usage_update"
    current_usage: int
    cached_tokens_read: int = 0


class CompleteEvent(BaseModel):
    type: Literal["complete"] = "complete"
    result: AgentResult


AgentEvent = Annotated[
    Union[
        StatusChangeEvent,
        ThinkingEvent,
        MessageEvent,
        ConversationEvent,
        ToolCallEvent,
        ToolResultEvent,
        DiscoveryEvent,
        ErrorEvent,
        RateLimitEvent,
        UsageUpdateEvent,
        CompleteEvent,
    ],
    Field(discriminator="type"),
]

AgentEventListener = Callable[[AgentEvent], None]


# ---------------------------------------------------------------------------
# Bus
# ---------------------------------------------------------------------------


class EventBus:
    """Callback registry with per-listener failure isolation."""

    def __init__(self) -> None:
        self._listeners: list[AgentEventListener] = []

    def on(self, listener: AgentEventListener) -> Callable[[], None]:
        """Subscribe. Returns a callable that removes the subscription."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: AgentEvent) -> None:
        # Iterate over a copy so listeners may unsubscribe during delivery.
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Agent event listener failed on %s event", event.type)

    def __len__(self) -> int:
        return len(self._listeners)
