# event_log.py
# File logger for agent events: one timestamped block per event, written
# through a dedicated stdlib logger so it never mixes with terminal output.

from __future__ import annotations

import json
import logging
from pathlib import Path

from agent_runner.events import AgentEvent


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def format_event(phase: str, event: AgentEvent) -> str | None:
    """Render one event as log lines, or None for events not worth logging."""
    lines = [f"[{phase.upper()}]"]

    if event.type == "status_change":
        lines.append(f"STATUS: {event.status}" + (f" - {event.message}" if event.message else ""))
    elif event.type == "thinking":
        lines.append(f"THINKING: {_clip(event.text, 200)}")
    elif event.type == "tool_call":
        lines.append(f"TOOL CALL: {event.tool_name}")
        lines.append(f"Input: {json.dumps(event.input, default=str)}")
    elif event.type == "tool_result":
        lines.append(f"TOOL RESULT: {event.tool_name}")
        lines.append(f"Success: {event.result.success}")
        lines.append(f"Output: {_clip(event.result.output, 500)}")
    elif event.type == "discovery":
        lines.append(f"DISCOVERY: {event.discovery.type} - {event.discovery.description}")
        if event.discovery.path:
            lines.append(f"Path: {event.discovery.path}")
    elif event.type == "error":
        kind = "STOPPED" if event.stopped else "FATAL" if event.fatal else "ERROR"
        lines.append(f"{kind}: {event.error}")
    elif event.type == "complete":
        result = event.result
        lines.append(f"COMPLETE: {'SUCCESS' if result.success else 'FAILED'}")
        lines.append(f"Summary: {result.summary}")
        lines.append(f"Discoveries: {len(result.discoveries)}")
        lines.append(f"Tokens: {result.token_usage.input} in / {result.token_usage.output} out")
    elif event.type == "rate_limit":
        if event.waiting:
            lines.append(f"RATE LIMIT: Waiting {event.wait_ms}ms - {event.message or ''}")
        else:
            lines.append(f"RATE LIMIT: {event.message or 'resumed'}")
    elif event.type == "message":
        lines.append(f"MESSAGE [{event.role}]: {_clip(event.content, 200)}")
    else:
        return None

    return "\n".join(lines) + "\n"


class EventLogger:
    """
    Appends formatted events to `<log_dir>/agent-log-<session_id>.txt`.

    Use `logger.listener(phase)` as a runner event listener and call close()
    when the pipeline is done.
    """

    def __init__(self, log_dir: str | Path, session_id: str) -> None:
        self.path = Path(log_dir) / f"agent-log-{session_id}.txt"
        self.path.parent.mkdir(parents=True, exist_ok=True)

        self._logger = logging.getLogger(f"agent_runner.event_log.{session_id}")
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False
        self._handler = logging.FileHandler(self.path, encoding="utf-8")
        self._handler.setFormatter(logging.Formatter("[%(asctime)s] %(message)s"))
        self._logger.addHandler(self._handler)

    def log_event(self, phase: str, event: AgentEvent) -> None:
        text = format_event(phase, event)
        if text is not None:
            self._logger.info(text)

    def log(self, phase: str, message: str) -> None:
        self._logger.info("[%s] %s\n", phase.upper(), message)

    def listener(self, phase: str):
        return lambda event: self.log_event(phase, event)

    def close(self) -> None:
        self._handler.flush()
        self._logger.removeHandler(self._handler)
        self._handler.close()
