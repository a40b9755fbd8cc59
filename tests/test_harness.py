import pytest

from conftest import StubClient, make_config, make_tool, text_response, tool_response

from agent_runner.conversation import ConversationEditError
from agent_runner.discovery import EXTRACTORS
from agent_runner.harness import AgentRunner
from agent_runner.models import (
    CheckpointData,
    Discovery,
    ImageBlock,
    Message,
    TextBlock,
    TokenUsage,
    ToolResult,
    ToolResultBlock,
)
from agent_runner.transport import TransportError


def _runner(config, client, fake_sleep, **kwargs):
    runner = AgentRunner(config, client, sleep=fake_sleep, **kwargs)
    events = []
    runner.on(events.append)
    return runner, events


def _types(events):
    return [e.type for e in events]


def _terminal(events):
    return [e for e in events if e.type == "complete" or (e.type == "error" and e.fatal)]


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------


def test_text_only_response_completes_with_summary(fake_sleep):
    client = StubClient([text_response("done")])
    runner, events = _runner(make_config(), client, fake_sleep)

    result = runner.run("Say done.")

    assert result.success is True
    assert result.summary == "done"
    assert result.token_usage == TokenUsage(input=10, output=5)
    assert len(client.requests) == 1
    assert [m.role for m in result.conversation_history] == ["user", "assistant"]
    assert runner.state.status == "complete"


def test_event_order_for_single_turn(fake_sleep):
    runner, events = _runner(make_config(), StubClient([text_response("done")]), fake_sleep)
    runner.run("go")

    assert _types(events) == [
        "status_change",
        "message",
        "conversation",
        "usage_update",
        "thinking",
        "message",
        "conversation",
        "status_change",
        "complete",
    ]
    assert events[0].status == "running"
    assert events[-2].status == "complete"


def test_request_carries_system_prompt_tools_and_history(fake_sleep):
    client = StubClient([tool_response(("noop", {})), text_response("done")])
    runner, _ = _runner(make_config(make_tool("noop")), client, fake_sleep)
    runner.run("go")

    first, second = client.requests
    assert first.system == "You are a test agent."
    assert [t.name for t in first.tools] == ["noop"]
    assert len(first.messages) == 1
    assert len(second.messages) == 3
    assert second.messages[2].content[0].tool_use_id == "toolu_noop_0"


def test_runner_is_single_use(fake_sleep):
    runner, _ = _runner(make_config(), StubClient([text_response("done")]), fake_sleep)
    runner.run("go")
    with pytest.raises(RuntimeError, match="already been started"):
        runner.run("again")


# ---------------------------------------------------------------------------
# Tool dispatch
# ---------------------------------------------------------------------------


def test_tools_run_in_request_order_and_failures_are_isolated(fake_sleep):
    calls = []

    def ok(name):
        def execute(args):
            calls.append(name)
            return ToolResult(success=True, output=f"{name} ok")

        return execute

    def boom(args):
        calls.append("B")
        raise RuntimeError("boom")

    config = make_config(make_tool("A", ok("A")), make_tool("B", boom), make_tool("C", ok("C")))
    client = StubClient([tool_response(("A", {}), ("B", {}), ("C", {})), text_response("done")])
    runner, events = _runner(config, client, fake_sleep)

    result = runner.run("go")

    assert result.success is True
    assert calls == ["A", "B", "C"]

    results_message = result.conversation_history[2]
    assert results_message.role == "user"
    assert [b.tool_use_id for b in results_message.content] == ["toolu_A_0", "toolu_B_1", "toolu_C_2"]
    assert [b.is_error for b in results_message.content] == [False, True, False]
    assert results_message.content[1].content == "Tool execution error: boom"

    tool_events = [e for e in events if e.type in ("tool_call", "tool_result")]
    assert [(e.type, e.tool_name) for e in tool_events] == [
        ("tool_call", "A"),
        ("tool_result", "A"),
        ("tool_call", "B"),
        ("tool_result", "B"),
        ("tool_call", "C"),
        ("tool_result", "C"),
    ]
    non_fatal = [e for e in events if e.type == "error" and not e.fatal]
    assert len(non_fatal) == 1


def test_unknown_tool_becomes_error_result(fake_sleep):
    client = StubClient([tool_response(("missing", {"x": 1})), text_response("done")])
    runner, events = _runner(make_config(make_tool("noop")), client, fake_sleep)

    result = runner.run("go")

    block = result.conversation_history[2].content[0]
    assert block.is_error is True
    assert block.content == "Unknown tool: missing"
    tool_result = next(e for e in events if e.type == "tool_result")
    assert tool_result.result.success is False
    assert result.success is True


def test_failed_tool_result_is_flagged_as_error(fake_sleep):
    tool = make_tool("flaky", lambda args: ToolResult(success=False, output="nope"))
    client = StubClient([tool_response(("flaky", {})), text_response("done")])
    runner, _ = _runner(make_config(tool), client, fake_sleep)

    result = runner.run("go")

    block = result.conversation_history[2].content[0]
    assert block.is_error is True
    assert block.content == "nope"


def test_image_payload_becomes_text_and_image_blocks(fake_sleep):
    tool = make_tool(
        "shoot",
        lambda args: ToolResult(
            success=True,
            output="Screenshot captured",
            data={"includeImage": True, "dataUrl": "data:image/png;base64,iVBORw0KGgo="},
        ),
    )
    client = StubClient([tool_response(("shoot", {})), text_response("done")])
    runner, _ = _runner(make_config(tool), client, fake_sleep)

    result = runner.run("go")

    block = result.conversation_history[2].content[0]
    assert isinstance(block, ToolResultBlock)
    text, image = block.content
    assert text == TextBlock(text="Screenshot captured")
    assert image == ImageBlock(media_type="image/png", data="iVBORw0KGgo=")


def test_malformed_image_payload_falls_back_to_text(fake_sleep):
    tool = make_tool(
        "shoot",
        lambda args: ToolResult(
            success=True, output="Screenshot captured", data={"includeImage": True, "dataUrl": "not-a-url"}
        ),
    )
    client = StubClient([tool_response(("shoot", {})), text_response("done")])
    runner, _ = _runner(make_config(tool), client, fake_sleep)

    result = runner.run("go")

    assert result.conversation_history[2].content[0].content == "Screenshot captured"


def test_malformed_discovery_payload_keeps_tool_result_and_run(fake_sleep):
    saved: list[CheckpointData] = []
    tool = make_tool("list_directory", lambda args: ToolResult(success=True, output="odd", data=[{"path": 5}]))
    client = StubClient([tool_response(("list_directory", {"path": ""})), text_response("done")])
    runner, _ = _runner(make_config(tool), client, fake_sleep, on_checkpoint=saved.append)

    result = runner.run("go")

    assert result.success is True
    assert result.discoveries == []
    assert [m.role for m in result.conversation_history] == ["user", "assistant", "user", "assistant"]
    assert result.conversation_history[2].content[0].tool_use_id == "toolu_list_directory_0"
    assert [m.role for m in saved[-1].messages] == ["user", "assistant", "user", "assistant"]


def test_raising_extractor_is_contained(fake_sleep, monkeypatch):
    def explode(tool_input, result):
        raise TypeError("bad payload")

    monkeypatch.setitem(EXTRACTORS, "exploding", explode)
    tool = make_tool("exploding", lambda args: ToolResult(success=True, output="ok", data={}))
    client = StubClient([tool_response(("exploding", {})), text_response("done")])
    runner, events = _runner(make_config(tool), client, fake_sleep)

    result = runner.run("go")

    assert result.success is True
    block = result.conversation_history[2].content[0]
    assert block.content == "ok"
    assert block.is_error is False
    assert not [e for e in events if e.type == "discovery"]


def test_discoveries_are_deduplicated_by_id(fake_sleep):
    listing = [{"name": "a.csv", "kind": "file", "path": "a.csv"}]
    tool = make_tool("list_directory", lambda args: ToolResult(success=True, output="1 item", data=listing))
    client = StubClient(
        [
            tool_response(("list_directory", {"path": ""})),
            tool_response(("list_directory", {"path": ""})),
            text_response("done"),
        ]
    )
    runner, events = _runner(make_config(tool), client, fake_sleep)

    result = runner.run("go")

    assert [d.id for d in result.discoveries] == ["file-a.csv"]
    assert len([e for e in events if e.type == "discovery"]) == 1


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


def test_overload_gives_up_after_consecutive_error_cap(fake_sleep, sleeps):
    client = StubClient([TransportError("Overloaded", 529)], repeat_last=True)
    runner, events = _runner(make_config(), client, fake_sleep)

    result = runner.run("go")

    assert result.success is False
    assert len(client.requests) == 3
    assert sleeps == [2, 4]
    retries = [e for e in events if e.type == "error" and not e.fatal]
    assert len(retries) == 2
    assert "attempt 1/3" in retries[0].error
    assert len(_terminal(events)) == 1


def test_overload_then_success_recovers(fake_sleep, sleeps):
    client = StubClient([TransportError("Bad gateway", 502), text_response("done")])
    runner, _ = _runner(make_config(), client, fake_sleep)

    result = runner.run("go")

    assert result.success is True
    assert sleeps == [2]


def test_rate_limit_waits_server_delay_then_resumes(fake_sleep, sleeps):
    client = StubClient([TransportError("Too many requests", 429, retry_after_ms=2000), text_response("done")])
    runner, events = _runner(make_config(), client, fake_sleep)

    result = runner.run("go")

    assert result.success is True
    assert sleeps == [2.0]
    rate_events = [e for e in events if e.type == "rate_limit"]
    assert [e.waiting for e in rate_events] == [True, False]
    assert rate_events[0].wait_ms == 2000
    assert not [e for e in events if e.type == "error"]


def test_rate_limit_waits_do_not_count_toward_error_cap(fake_sleep, sleeps):
    limited = TransportError("Too many requests", 429, retry_after_ms=100)
    overloaded = TransportError("Overloaded", 529)
    client = StubClient([overloaded, limited, overloaded, limited, text_response("done")])
    runner, _ = _runner(make_config(), client, fake_sleep)

    result = runner.run("go")

    assert result.success is True
    assert sleeps == [2, 0.1, 4, 0.1]


def test_rate_limit_wait_budget_is_bounded(fake_sleep):
    client = StubClient([TransportError("Too many requests", 429, retry_after_ms=10)], repeat_last=True)
    runner, events = _runner(make_config(), client, fake_sleep, max_rate_limit_waits=2)

    result = runner.run("go")

    assert result.success is False
    assert len(client.requests) == 3


def test_auth_error_is_fatal_immediately(fake_sleep, sleeps):
    client = StubClient([TransportError("Invalid API key", 401)])
    runner, events = _runner(make_config(), client, fake_sleep)

    result = runner.run("go")

    assert result.success is False
    assert len(client.requests) == 1
    assert sleeps == []
    assert result.summary == "Agent error: Invalid API key"
    assert runner.state.error == "Invalid API key"


def test_unexpected_client_exception_is_fatal(fake_sleep):
    client = StubClient([KeyError("surprise")])
    runner, events = _runner(make_config(), client, fake_sleep)

    result = runner.run("go")

    assert result.success is False
    assert len(_terminal(events)) == 1


# ---------------------------------------------------------------------------
# Budgets and termination
# ---------------------------------------------------------------------------


def test_iteration_budget_exhaustion(fake_sleep):
    client = StubClient([tool_response(("noop", {}))], repeat_last=True)
    runner, events = _runner(make_config(make_tool("noop"), max_iterations=2), client, fake_sleep)

    result = runner.run("go")

    assert result.success is False
    assert len(client.requests) == 2
    assert "maximum iterations" in result.summary
    assert runner.state.error == "Maximum iterations reached"
    assert runner.iteration == 2


@pytest.mark.parametrize(
    "script",
    [
        [text_response("done")],
        [tool_response(("noop", {})), text_response("done")],
        [TransportError("Invalid API key", 401)],
        [TransportError("Overloaded", 529)] * 3,
    ],
    ids=["complete", "tools-then-complete", "auth", "overloaded"],
)
def test_exactly_one_terminal_event(fake_sleep, script):
    runner, events = _runner(make_config(make_tool("noop")), StubClient(script), fake_sleep)
    runner.run("go")

    terminal = _terminal(events)
    assert len(terminal) == 1
    assert events[-1] is terminal[0]


def test_raising_listener_does_not_abort_run(fake_sleep):
    runner, events = _runner(make_config(), StubClient([text_response("done")]), fake_sleep)

    def broken(event):
        raise ValueError("listener bug")

    runner.on(broken)
    result = runner.run("go")

    assert result.success is True
    assert events[-1].type == "complete"


def test_unsubscribed_listener_stops_receiving(fake_sleep):
    runner = AgentRunner(make_config(), StubClient([text_response("done")]), sleep=fake_sleep)
    seen = []
    unsubscribe = runner.on(seen.append)
    unsubscribe()
    runner.run("go")
    assert seen == []


# ---------------------------------------------------------------------------
# Stop and checkpoints
# ---------------------------------------------------------------------------


def test_stop_from_inside_tool_and_resume_without_transport_calls(fake_sleep):
    holder = {}

    def stop_now(args):
        holder["runner"].stop()
        return ToolResult(success=True, output="stopping")

    config = make_config(make_tool("stopper", stop_now))
    saved: list[CheckpointData] = []
    client = StubClient([tool_response(("stopper", {}))])
    runner, events = _runner(config, client, fake_sleep, on_checkpoint=saved.append)
    holder["runner"] = runner

    result = runner.run("go")

    assert result.success is False
    assert result.stopped is True
    assert len(client.requests) == 1
    stop_error = _terminal(events)[0]
    assert stop_error.stopped is True and stop_error.fatal is True

    checkpoint = saved[-1]
    assert checkpoint.iteration == 1
    assert [m.role for m in checkpoint.messages] == ["user", "assistant", "user"]

    resumed_saved: list[CheckpointData] = []
    resumed_client = StubClient([])
    resumed = AgentRunner(config, resumed_client, on_checkpoint=resumed_saved.append, sleep=fake_sleep)
    resumed.on(lambda event: resumed.stop() if event.type == "status_change" else None)

    resumed_result = resumed.resume(checkpoint)

    assert resumed_result.stopped is True
    assert resumed_client.requests == []
    assert resumed_saved[-1].model_dump_json() == checkpoint.model_dump_json()


def test_resume_continues_from_recorded_history(fake_sleep):
    checkpoint = CheckpointData(
        messages=[Message(role="user", content="go")],
        discoveries=[Discovery(id="file-a.txt", type="file", path="a.txt", description="File: a.txt")],
        token_usage=TokenUsage(input=100, output=50),
        iteration=3,
    )
    client = StubClient([text_response("done")])
    runner, events = _runner(make_config(), client, fake_sleep)

    result = runner.resume(checkpoint)

    assert events[0].type == "status_change"
    assert events[0].message == "Resuming..."
    assert events[1].type == "discovery"
    assert events[1].discovery.id == "file-a.txt"
    assert result.success is True
    assert result.token_usage == TokenUsage(input=110, output=55)
    assert [d.id for d in result.discoveries] == ["file-a.txt"]
    assert runner.iteration == 4
    assert len(client.requests[0].messages) == 1
    # The snapshot itself is never mutated by the resumed run.
    assert len(checkpoint.messages) == 1


def test_periodic_checkpoints_record_completed_iterations(fake_sleep):
    saved: list[CheckpointData] = []
    client = StubClient([tool_response(("noop", {}))] * 3 + [text_response("done")])
    config = make_config(make_tool("noop"), checkpoint_interval=2)
    runner, _ = _runner(config, client, fake_sleep, on_checkpoint=saved.append)

    runner.run("go")

    assert [c.iteration for c in saved] == [1, 3, 4]
    assert len(saved[0].messages) == 3
    assert len(saved[-1].messages) == 8


def test_failing_checkpoint_callback_does_not_abort_run(fake_sleep):
    def broken(data):
        raise OSError("disk full")

    runner, _ = _runner(make_config(), StubClient([text_response("done")]), fake_sleep, on_checkpoint=broken)
    assert runner.run("go").success is True


def test_fatal_transport_error_saves_checkpoint(fake_sleep):
    saved: list[CheckpointData] = []
    client = StubClient([tool_response(("noop", {})), TransportError("Invalid API key", 401)])
    runner, _ = _runner(make_config(make_tool("noop")), client, fake_sleep, on_checkpoint=saved.append)

    runner.run("go")

    assert saved[-1].iteration == 1
    assert len(saved[-1].messages) == 3


# ---------------------------------------------------------------------------
# Manual history edits
# ---------------------------------------------------------------------------


def test_replace_message_validates_and_checkpoints(fake_sleep):
    saved: list[CheckpointData] = []
    runner, _ = _runner(
        make_config(), StubClient([text_response("done")]), fake_sleep, on_checkpoint=saved.append
    )
    runner.run("go")

    with pytest.raises(ConversationEditError, match="role"):
        runner.replace_message(0, Message(role="assistant", content="swapped"))
    with pytest.raises(ConversationEditError, match="out of bounds"):
        runner.replace_message(9, Message(role="user", content="nowhere"))

    snapshot = runner.replace_message(0, Message(role="user", content="Say done twice."))

    assert snapshot.messages[0].content == "Say done twice."
    assert saved[-1].messages[0].content == "Say done twice."
