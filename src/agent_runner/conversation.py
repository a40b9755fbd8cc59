# conversation.py
# Structural validation for conversation history and manual edits.
#
# The runner only ever appends. Editing a past message is an external,
# explicitly unsafe operation; it must pass validate_message_edit first.

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, ValidationError

from agent_runner.models import Message, ToolResultBlock, ToolUseBlock


class ValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ConversationEditError(ValueError):
    """Raised when a manual history edit fails validation."""

    def __init__(self, result: ValidationResult) -> None:
        self.result = result
        super().__init__("; ".join(result.errors) or "Invalid conversation edit")


def validate_message(message: Any) -> ValidationResult:
    """Check one message, given either as a Message or as raw dict data."""
    if isinstance(message, Message):
        raw = message.model_dump()
    elif isinstance(message, dict):
        raw = message
    else:
        return ValidationResult(valid=False, errors=["Message must be an object"])

    errors: list[str] = []
    if raw.get("role") not in ("user", "assistant"):
        errors.append('Message role must be "user" or "assistant"')

    content = raw.get("content")
    if content is None or content == "" or content == []:
        errors.append("Message must have content")
    elif not isinstance(content, (str, list)):
        errors.append("Message content must be a string or a list of content blocks")

    if not errors:
        try:
            Message.model_validate(raw)
        except ValidationError as exc:
            for err in exc.errors():
                location = ".".join(str(p) for p in err["loc"])
                errors.append(f"{location}: {err['msg']}")

    return ValidationResult(valid=not errors, errors=errors)


def validate_message_sequence(messages: list[Message]) -> ValidationResult:
    """
    Validate every message and the tool_use / tool_result pairing.

    A tool_result whose id was never emitted by an earlier tool_use is a
    warning rather than an error: the transport may still accept it, but the
    conversation no longer means what it did.
    """
    errors: list[str] = []
    warnings: list[str] = []
    tool_use_ids: set[str] = set()

    for index, message in enumerate(messages):
        result = validate_message(message)
        errors.extend(f"Message {index}: {e}" for e in result.errors)
        warnings.extend(f"Message {index}: {w}" for w in result.warnings)
        if not result.valid or isinstance(message.content, str):
            continue

        for block in message.content:
            if message.role == "assistant" and isinstance(block, ToolUseBlock):
                tool_use_ids.add(block.id)
            elif message.role == "user" and isinstance(block, ToolResultBlock):
                if block.tool_use_id not in tool_use_ids:
                    warnings.append(
                        f"Message {index}: tool_result references unknown tool_use_id: "
                        f"{block.tool_use_id}"
                    )

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def validate_message_edit(messages: list[Message], index: int, new_message: Message) -> ValidationResult:
    """Validate replacing `messages[index]` with `new_message`."""
    own = validate_message(new_message)
    errors = list(own.errors)
    warnings = list(own.warnings)

    if index < 0 or index >= len(messages):
        errors.append("Edit index out of bounds")
        return ValidationResult(valid=False, errors=errors, warnings=warnings)

    if messages[index].role != new_message.role:
        errors.append(
            f"Edit changes role from {messages[index].role!r} to {new_message.role!r}"
        )

    edited = list(messages)
    edited[index] = new_message
    sequence = validate_message_sequence(edited)
    errors.extend(sequence.errors)
    warnings.extend(sequence.warnings)

    if isinstance(new_message.content, list):
        if any(isinstance(b, ToolResultBlock) for b in new_message.content):
            warnings.append(
                "Editing tool_result blocks may invalidate subsequent messages that depend on these results"
            )
        if any(isinstance(b, ToolUseBlock) for b in new_message.content):
            warnings.append("Editing tool_use blocks may invalidate subsequent tool_result messages")

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)
