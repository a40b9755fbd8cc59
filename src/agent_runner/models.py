# models.py
# Data contracts for the agent runner.
# No business logic lives here — pure schema and validation.

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Callable, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageBlock(BaseModel):
    """Base64 image, used for vision follow-up on tool output."""

    type: Literal["image"] = "image"
    media_type: Literal["image/png", "image/jpeg", "image/gif", "image/webp"]
    data: str = Field(..., description="Base64 payload without the data-URL prefix.")


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str | list[Annotated[Union[TextBlock, ImageBlock], Field(discriminator="type")]]
    is_error: bool = False


ContentBlock = Annotated[
    Union[TextBlock, ImageBlock, ToolUseBlock, ToolResultBlock],
    Field(discriminator="type"),
]


class Message(BaseModel):
    """One conversation turn. History is an append-only list of these."""

    role: Literal["user", "assistant"]
    content: str | list[ContentBlock]

    def blocks(self) -> list[Any]:
        """Content as a block list; plain-string content becomes one text block."""
        if isinstance(self.content, str):
            return [TextBlock(text=self.content)]
        return list(self.content)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class ToolResult(BaseModel):
    """Uniform envelope every tool returns."""

    success: bool
    output: str = Field(..., description="Human-readable text the model sees.")
    data: Any = Field(default=None, description="Opaque payload; may carry includeImage + dataUrl.")


class ToolDefinition(BaseModel):
    """Schema-only view of a tool, as sent to the transport."""

    name: str
    description: str
    input_schema: dict[str, Any]


class Tool(BaseModel):
    """A named capability the model may invoke. Executed by the runner, never by the model."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    description: str
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )
    execute: Callable[[dict[str, Any]], ToolResult] = Field(..., exclude=True, repr=False)

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            input_schema=self.input_schema,
        )


# ---------------------------------------------------------------------------
# Discoveries and usage
# ---------------------------------------------------------------------------


DiscoveryType = Literal["file", "directory", "data_type", "pattern", "relationship"]


class Discovery(BaseModel):
    """A structured fact derived from tool output. `id` is the dedup key."""

    id: str
    type: DiscoveryType
    path: str | None = None
    description: str
    metadata: dict[str, Any] | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class TokenUsage(BaseModel):
    input: int = Field(default=0, ge=0)
    output: int = Field(default=0, ge=0)


# ---------------------------------------------------------------------------
# Agent configuration, state and results
# ---------------------------------------------------------------------------


AgentStatus = Literal["idle", "running", "complete", "error"]


class AgentConfig(BaseModel):
    """One persona: prompt, tool catalog and budgets. Never mutated after creation."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    description: str = ""
    system_prompt: str
    tools: tuple[Tool, ...] = ()
    max_iterations: int = Field(default=50, ge=1)
    max_tokens: int | None = Field(default=None, ge=1)
    checkpoint_interval: int = Field(default=3, ge=0, description="0 disables periodic checkpoints.")

    @field_validator("tools")
    @classmethod
    def _unique_tool_names(cls, tools: tuple[Tool, ...]) -> tuple[Tool, ...]:
        seen: set[str] = set()
        for tool in tools:
            if tool.name in seen:
                raise ValueError(f"Duplicate tool name in catalog: {tool.name!r}")
            seen.add(tool.name)
        return tools

    def find_tool(self, name: str) -> Tool | None:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None


class ExecutionState(BaseModel):
    """Mutable run state. Owned and written by exactly one runner."""

    status: AgentStatus = "idle"
    messages: list[Message] = Field(default_factory=list)
    discoveries: list[Discovery] = Field(default_factory=list)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    current_response: Any = None
    error: str | None = None


class CheckpointData(BaseModel):
    """Minimum state needed to resume without re-issuing completed transport calls."""

    messages: list[Message]
    discoveries: list[Discovery]
    token_usage: TokenUsage
    iteration: int = Field(..., ge=0, description="Iterations fully recorded in messages.")


class AgentResult(BaseModel):
    """Terminal artifact. Same shape for every terminal path."""

    success: bool
    summary: str
    discoveries: list[Discovery]
    conversation_history: list[Message]
    token_usage: TokenUsage
    stopped: bool = False
