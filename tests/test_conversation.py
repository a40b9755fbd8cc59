from agent_runner.conversation import (
    ConversationEditError,
    validate_message,
    validate_message_edit,
    validate_message_sequence,
)
from agent_runner.models import Message, TextBlock, ToolResultBlock, ToolUseBlock


def _history():
    return [
        Message(role="user", content="Explore."),
        Message(role="assistant", content=[ToolUseBlock(id="call_1", name="list_directory", input={})]),
        Message(role="user", content=[ToolResultBlock(tool_use_id="call_1", content="2 items")]),
        Message(role="assistant", content="Done."),
    ]


def test_validate_message_accepts_raw_dicts():
    assert validate_message({"role": "user", "content": "hi"}).valid
    assert validate_message({"role": "user", "content": [{"type": "text", "text": "hi"}]}).valid


def test_validate_message_errors():
    empty = validate_message({"role": "user", "content": ""})
    assert not empty.valid
    assert "Message must have content" in empty.errors

    bad_role = validate_message({"role": "system", "content": "hi"})
    assert bad_role.errors == ['Message role must be "user" or "assistant"']

    bad_block = validate_message({"role": "user", "content": [{"type": "video"}]})
    assert not bad_block.valid

    assert not validate_message("hi").valid


def test_sequence_warns_on_orphan_tool_result():
    history = _history()
    history[2] = Message(role="user", content=[ToolResultBlock(tool_use_id="call_9", content="?")])

    result = validate_message_sequence(history)

    assert result.valid
    assert result.warnings == ["Message 2: tool_result references unknown tool_use_id: call_9"]


def test_edit_out_of_bounds_and_role_change():
    history = _history()

    out_of_bounds = validate_message_edit(history, 4, Message(role="assistant", content="x"))
    assert out_of_bounds.errors == ["Edit index out of bounds"]

    role_change = validate_message_edit(history, 0, Message(role="assistant", content="x"))
    assert not role_change.valid


def test_edit_of_tool_blocks_warns():
    history = _history()

    result = validate_message_edit(
        history,
        2,
        Message(role="user", content=[ToolResultBlock(tool_use_id="call_1", content="3 items")]),
    )

    assert result.valid
    assert any("tool_result" in w for w in result.warnings)


def test_plain_text_edit_is_clean():
    result = validate_message_edit(_history(), 3, Message(role="assistant", content=[TextBlock(text="Finished.")]))
    assert result.valid
    assert result.warnings == []


def test_edit_error_carries_result():
    result = validate_message_edit(_history(), 7, Message(role="user", content="x"))
    err = ConversationEditError(result)
    assert err.result is result
    assert str(err) == "Edit index out of bounds"
