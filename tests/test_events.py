from pydantic import TypeAdapter

from agent_runner.event_log import EventLogger, format_event
from agent_runner.events import (
    AgentEvent,
    ConversationEvent,
    ErrorEvent,
    EventBus,
    RateLimitEvent,
    StatusChangeEvent,
    ToolResultEvent,
)
from agent_runner.models import ToolResult


def test_event_union_round_trips_through_json():
    adapter = TypeAdapter(AgentEvent)
    event = ErrorEvent(error="boom", fatal=True)
    assert adapter.validate_json(event.model_dump_json()) == event


def test_bus_isolates_listener_failures():
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("listener bug")

    bus.on(broken)
    bus.on(seen.append)
    bus.emit(StatusChangeEvent(status="running"))

    assert len(seen) == 1
    assert len(bus) == 2


def test_listener_may_unsubscribe_during_delivery():
    bus = EventBus()
    seen = []

    def once(event):
        seen.append(event)
        unsubscribe()

    unsubscribe = bus.on(once)
    bus.emit(StatusChangeEvent(status="running"))
    bus.emit(StatusChangeEvent(status="complete"))

    assert len(seen) == 1
    assert len(bus) == 0


def test_format_event():
    result = ToolResultEvent(
        tool_use_id="call_1", tool_name="read_file", result=ToolResult(success=True, output="x" * 600)
    )
    text = format_event("exploration", result)
    assert text.startswith("[EXPLORATION]\nTOOL RESULT: read_file\nSuccess: True\n")
    assert text.rstrip().endswith("x" * 500 + "...")

    stopped = format_event("exploration", ErrorEvent(error="Agent execution was stopped", fatal=True, stopped=True))
    assert "STOPPED: Agent execution was stopped" in stopped

    waiting = format_event("x", RateLimitEvent(waiting=True, wait_ms=2000, message="Rate limited"))
    assert "RATE LIMIT: Waiting 2000ms - Rate limited" in waiting

    assert format_event("x", ConversationEvent(messages=[])) is None


def test_event_logger_writes_session_file(tmp_path):
    logger = EventLogger(tmp_path, "session_1")
    listener = logger.listener("explore")
    listener(StatusChangeEvent(status="running", message="Resuming..."))
    listener(ConversationEvent(messages=[]))
    logger.log("explore", "pipeline started")
    logger.close()

    content = (tmp_path / "agent-log-session_1.txt").read_text()
    assert "STATUS: running - Resuming..." in content
    assert "[EXPLORE] pipeline started" in content
    assert "conversation" not in content.lower()
