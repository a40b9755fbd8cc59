# persistence.py
# JSON-file checkpoint store.
#
# Best effort by contract: the runner hands checkpoints over and moves on.
# A failed write falls back to a trimmed snapshot (last 10 messages) and is
# otherwise logged, never raised.

from __future__ import annotations

import logging
import os
import secrets
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Literal

from pydantic import BaseModel, Field, ValidationError

from agent_runner.models import CheckpointData, Discovery, Message, TokenUsage

logger = logging.getLogger(__name__)

MINIMAL_MESSAGE_COUNT = 10

CheckpointStatus = Literal["running", "paused", "complete", "error"]


class AgentCheckpoint(BaseModel):
    """A CheckpointData snapshot plus the session bookkeeping around it."""

    session_id: str
    agent_name: str | None = None
    messages: list[Message]
    discoveries: list[Discovery]
    token_usage: TokenUsage
    iteration: int
    status: CheckpointStatus = "running"
    error: str | None = None
    last_updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_checkpoint_data(self) -> CheckpointData:
        return CheckpointData(
            messages=self.messages,
            discoveries=self.discoveries,
            token_usage=self.token_usage,
            iteration=self.iteration,
        )


class ResumableSummary(BaseModel):
    session_id: str
    agent_name: str | None
    discoveries: int
    iteration: int
    status: CheckpointStatus
    last_updated_at: datetime


def new_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class CheckpointStore:
    """One JSON file per session under `directory`."""

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    def _path(self, session_id: str) -> Path:
        return self._directory / f"{session_id}.json"

    def _write(self, checkpoint: AgentCheckpoint) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self._path(checkpoint.session_id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(checkpoint.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp, path)

    def save(
        self,
        session_id: str,
        data: CheckpointData,
        *,
        agent_name: str | None = None,
        status: CheckpointStatus = "running",
        error: str | None = None,
    ) -> bool:
        """Persist a snapshot. Returns False if even the trimmed fallback failed."""
        checkpoint = AgentCheckpoint(
            session_id=session_id,
            agent_name=agent_name,
            messages=data.messages,
            discoveries=data.discoveries,
            token_usage=data.token_usage,
            iteration=data.iteration,
            status=status,
            error=error,
        )
        try:
            self._write(checkpoint)
            return True
        except OSError as exc:
            logger.warning("Failed to save full checkpoint %s, trying minimal: %s", session_id, exc)

        minimal = checkpoint.model_copy(update={"messages": checkpoint.messages[-MINIMAL_MESSAGE_COUNT:]})
        try:
            self._write(minimal)
            return True
        except OSError:
            logger.exception("Failed to save even minimal checkpoint %s", session_id)
            return False

    def load(self, session_id: str) -> AgentCheckpoint | None:
        path = self._path(session_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return AgentCheckpoint.model_validate_json(raw)
        except ValidationError:
            logger.warning("Checkpoint %s is corrupted; ignoring it", path)
            return None

    def clear(self, session_id: str) -> None:
        self._path(session_id).unlink(missing_ok=True)

    def list_sessions(self) -> list[ResumableSummary]:
        """Stored sessions, most recently updated first."""
        if not self._directory.is_dir():
            return []
        summaries = []
        for path in self._directory.glob("*.json"):
            checkpoint = self.load(path.stem)
            if checkpoint is None:
                continue
            summaries.append(
                ResumableSummary(
                    session_id=checkpoint.session_id,
                    agent_name=checkpoint.agent_name,
                    discoveries=len(checkpoint.discoveries),
                    iteration=checkpoint.iteration,
                    status=checkpoint.status,
                    last_updated_at=checkpoint.last_updated_at,
                )
            )
        return sorted(summaries, key=lambda s: s.last_updated_at, reverse=True)

    def callback(
        self, session_id: str, agent_name: str | None = None
    ) -> Callable[[CheckpointData], None]:
        """A checkpoint callback for AgentRunner bound to one session."""

        def on_checkpoint(data: CheckpointData) -> None:
            self.save(session_id, data, agent_name=agent_name)

        return on_checkpoint
