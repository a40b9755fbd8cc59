# agents.py
# The three personas. Each is the same AgentRunner with a different system
# prompt, tool catalog and budget. Nothing else changes between them.

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

from pydantic import BaseModel, Field

from agent_runner.events import AgentEventListener
from agent_runner.harness import AgentRunner, CheckpointCallback
from agent_runner.models import AgentConfig, AgentResult, CheckpointData, Discovery, ToolResultBlock, ToolUseBlock
from agent_runner.presentation import PresentationRenderer, create_presentation_tools
from agent_runner.rate_limiter import RateLimiter
from agent_runner.tools import create_code_writer_tools, create_file_system_tools
from agent_runner.transport import ChatClient

# ---------------------------------------------------------------------------
# System Prompts
# ---------------------------------------------------------------------------

EXPLORATION_SYSTEM_PROMPT = """\
You are a Data Exploration Agent. Your job is to systematically explore a directory \
of exported personal data (a streaming-service export, a fitness-tracker export and \
so on) and document its structure for a code-writing agent that will analyze it next.

Work breadth-first:
1. List the root directory, then each subdirectory that looks relevant.
2. For interesting files, check get_file_info first, then read a sample with read_file.
3. Record precise format details for every data file:
   - file type (CSV, TSV, JSON, JSONL, ...)
   - for delimited files: every column header, in order
   - for JSON: object vs array, key names, nesting
   - field types and date/time formats

Skip binary files (just note them). Sample large files instead of reading them fully. \
When a pattern repeats (dated folders, numbered parts), sample one and describe the pattern.

When you are done, reply WITHOUT calling tools and give a summary with: directory \
structure, key data files (path, type, columns or structure, example values), the \
kinds of data present, and which of them carry timestamps usable for a year-in-review.\
"""

CODE_WRITER_SYSTEM_PROMPT = """\
You are a Code-Writing Agent. You receive the findings of an exploration agent and \
write Python code that turns the user's data into insights for a year-in-review summary.

Tools:
- read_file: look at the actual content of a data file before relying on it.
- execute_code: run Python. `read_file(path)` returns parsed rows / JSON; assign the \
final value to `result`.

Process:
1. Confirm the structure of the key files with read_file.
2. Write code for one insight at a time and execute it often.
3. Fix errors and handle messy data (missing fields, nulls, bad dates).
4. Finish with code whose `result` is a list of insight objects:
   {"id": str, "type": "statistic" | "ranking" | "timeline" | "comparison" |
    "distribution" | "achievement", "category": str, "title": str,
    "value": object, "metadata": {"unit"?: str, "timeframe"?: str, "source"?: str,
    "userName"?: str}}
5. If you find the user's name, put it in one insight's metadata as userName.

Focus on the current year, with lifetime totals as supporting context. When the \
final code runs cleanly, stop calling tools and summarize what you produced.\
"""

PRESENTATION_SYSTEM_PROMPT = """\
You are a Presentation Design Agent. You turn structured insights about a user's \
year into a celebratory, animated, self-contained HTML presentation.

Design rules:
- one insight per slide, big bold numbers, short personal copy
- smooth animations and auto-advance (3-5 seconds per slide)
- an intro slide and a closing "trophy case" summary slide
- everything inline (CSS, JS); animation libraries only via CDN

Workflow: plan the slides, render with execute_presentation_code, inspect the result \
with screenshot_presentation, and refine until the layout is clean and readable. \
When satisfied, stop calling tools and describe the final presentation.\
"""


# ---------------------------------------------------------------------------
# Agent handle
# ---------------------------------------------------------------------------


class Agent:
    """A configured runner plus the prompt (or checkpoint) it starts from."""

    def __init__(
        self,
        runner: AgentRunner,
        initial_prompt: str,
        resume_from: CheckpointData | None = None,
    ) -> None:
        self.runner = runner
        self.initial_prompt = initial_prompt
        self.resume_from = resume_from

    @property
    def name(self) -> str:
        return self.runner.config.name

    def run(self) -> AgentResult:
        if self.resume_from is not None:
            return self.runner.resume(self.resume_from)
        return self.runner.run(self.initial_prompt)

    def stop(self) -> None:
        self.runner.stop()

    def on(self, listener: AgentEventListener) -> Callable[[], None]:
        return self.runner.on(listener)


def _runner(
    config: AgentConfig,
    client: ChatClient,
    on_checkpoint: CheckpointCallback | None,
    rate_limiter: RateLimiter | None,
) -> AgentRunner:
    return AgentRunner(config, client, on_checkpoint=on_checkpoint, rate_limiter=rate_limiter)


# ---------------------------------------------------------------------------
# Explorer
# ---------------------------------------------------------------------------


def create_exploration_agent(
    root: str | Path,
    client: ChatClient,
    *,
    max_iterations: int = 30,
    on_checkpoint: CheckpointCallback | None = None,
    resume_from: CheckpointData | None = None,
    rate_limiter: RateLimiter | None = None,
) -> Agent:
    config = AgentConfig(
        name="ExplorationAgent",
        description="Explores a directory to understand its data structure",
        system_prompt=EXPLORATION_SYSTEM_PROMPT,
        tools=tuple(create_file_system_tools(root)),
        max_iterations=max_iterations,
        checkpoint_interval=2,
    )
    prompt = (
        "Please explore this directory and help me understand what data is available. "
        'I want to create a "Year in Review" summary from this exported data.'
    )
    return Agent(_runner(config, client, on_checkpoint, rate_limiter), prompt, resume_from)


class ExplorationFindings(BaseModel):
    directories: list[str] = Field(default_factory=list)
    data_files: list[dict[str, str]] = Field(default_factory=list)
    data_types: list[str] = Field(default_factory=list)
    schemas: dict[str, dict[str, Any]] = Field(default_factory=dict)


def parse_exploration_result(result: AgentResult) -> ExplorationFindings:
    """Structured view of an exploration run, built from its discoveries."""
    findings = ExplorationFindings()
    for d in result.discoveries:
        if d.type == "directory":
            findings.directories.append(d.path or d.description)
        elif d.type in ("file", "data_type"):
            file_type = (d.metadata or {}).get("fileType") or "unknown"
            findings.data_files.append(
                {"path": d.path or "", "type": str(file_type), "description": d.description}
            )
        if d.type == "data_type" and d.metadata:
            file_type = d.metadata.get("fileType")
            if file_type and file_type not in findings.data_types:
                findings.data_types.append(file_type)
            if d.path:
                findings.schemas[d.path] = d.metadata
    return findings


# ---------------------------------------------------------------------------
# Code writer
# ---------------------------------------------------------------------------


def format_discoveries(discoveries: list[Discovery]) -> str:
    """Render discoveries as the markdown brief handed to the code writer."""
    data_types = [d for d in discoveries if d.type == "data_type"]
    files = [d for d in discoveries if d.type == "file"]
    patterns = [d for d in discoveries if d.type == "pattern"]

    lines = ["# Exploration Discoveries", ""]
    if data_types:
        lines += ["## Data Files Found", ""]
        for d in data_types:
            meta = d.metadata or {}
            lines.append(f"### {d.path}")
            lines.append(f"- Description: {d.description}")
            if meta.get("fileType"):
                lines.append(f"- Type: {meta['fileType']}")
            if meta.get("columns"):
                lines.append(f"- Columns ({len(meta['columns'])}): {', '.join(meta['columns'])}")
            if meta.get("jsonStructure"):
                lines.append(f"- Structure: {meta['jsonStructure']}")
            if meta.get("delimiter"):
                lines.append(f"- Delimiter: {meta['delimiter']!r}")
            lines.append("")

    if files:
        lines += ["## Other Files", ""]
        lines += [f"- {f.path}: {f.description}" for f in files[:20]]
        if len(files) > 20:
            lines.append(f"... and {len(files) - 20} more files")
        lines.append("")

    if patterns:
        lines += ["## Patterns", ""]
        lines += [f"- {p.description}" for p in patterns]
        lines.append("")

    lines.append("**Important**: Use the EXACT column names and file paths shown above in your code!")
    return "\n".join(lines)


def create_code_writer_agent(
    root: str | Path,
    client: ChatClient,
    discoveries: list[Discovery],
    *,
    max_iterations: int = 25,
    additional_guidance: str | None = None,
    on_checkpoint: CheckpointCallback | None = None,
    resume_from: CheckpointData | None = None,
    rate_limiter: RateLimiter | None = None,
    code_timeout: float = 30.0,
) -> Agent:
    config = AgentConfig(
        name="CodeWriterAgent",
        description="Writes Python code to analyze data and generate insights",
        system_prompt=CODE_WRITER_SYSTEM_PROMPT,
        tools=tuple(create_code_writer_tools(root, code_timeout)),
        max_iterations=max_iterations,
        checkpoint_interval=3,
    )
    prompt = (
        "Based on the exploration findings below, write Python code to analyze this data "
        'and generate interesting insights for a "Year in Review" summary.\n\n'
        f"{format_discoveries(discoveries)}\n\n"
        "Please:\n"
        "1. Examine the data files to understand their actual structure\n"
        "2. Write code to generate 5-15 interesting insights\n"
        "3. Execute your code and iterate on any errors\n"
        "4. Leave the final list of insight objects in `result`"
    )
    if additional_guidance:
        prompt += f"\n\nAdditional guidance: {additional_guidance}"
    return Agent(_runner(config, client, on_checkpoint, rate_limiter), prompt, resume_from)


def parse_insights_from_result(result: AgentResult) -> list[dict[str, Any]]:
    """The most recent non-empty list returned by a successful execute_code call."""
    for message in reversed(result.conversation_history):
        if message.role != "user" or isinstance(message.content, str):
            continue
        for block in reversed(message.content):
            if not isinstance(block, ToolResultBlock) or block.is_error:
                continue
            if not isinstance(block.content, str) or "Result:\n" not in block.content:
                continue
            _, _, raw = block.content.rpartition("Result:\n")
            try:
                value = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if isinstance(value, list) and value:
                return value
    return []


# ---------------------------------------------------------------------------
# Presentation designer
# ---------------------------------------------------------------------------


def create_presentation_agent(
    renderer: PresentationRenderer,
    client: ChatClient,
    *,
    summary: str,
    insights: list[dict[str, Any]],
    user_name: str | None = None,
    on_screenshot: Callable[[str], None] | None = None,
    on_checkpoint: CheckpointCallback | None = None,
    resume_from: CheckpointData | None = None,
    rate_limiter: RateLimiter | None = None,
) -> Agent:
    config = AgentConfig(
        name="PresentationAgent",
        description="Creates animated year-in-review presentations",
        system_prompt=PRESENTATION_SYSTEM_PROMPT,
        tools=tuple(create_presentation_tools(renderer, on_screenshot)),
        max_iterations=15,
        max_tokens=16384,
        checkpoint_interval=3,
    )
    greeting = (
        f"The user's name is: {user_name}"
        if user_name
        else "User name not available - use generic greetings."
    )
    prompt = (
        f"{greeting}\n\n## Summary of Analysis\n{summary}\n\n"
        f"## Data Insights\n{json.dumps(insights, indent=2, default=str)}\n\n"
        "Create an animated, celebratory year-in-review presentation from these insights. "
        "Render it, screenshot it, and refine until it looks polished."
    )
    return Agent(_runner(config, client, on_checkpoint, rate_limiter), prompt, resume_from)


def extract_presentation_html(result: AgentResult) -> str | None:
    """HTML from the last execute_presentation_code call in the history."""
    for message in reversed(result.conversation_history):
        if message.role != "assistant" or isinstance(message.content, str):
            continue
        for block in reversed(message.content):
            if isinstance(block, ToolUseBlock) and block.name == "execute_presentation_code":
                html = block.input.get("html")
                if html is not None:
                    return str(html)
    return None
