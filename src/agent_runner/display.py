# display.py
# All terminal output for the agent runner.
#
# This module owns presentation entirely. The runner never formats strings —
# display subscribes to the event stream via render_event(). Swap this file
# to change the entire UI.
#
# Colour language:
#   cyan    — status / routing events
#   blue    — model text
#   yellow  — rate limits, checkpoints and discoveries
#   green   — success / confirmed
#   red     — failures and halts
#   magenta — tool calls and their results

import json

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from agent_runner.events import (
    AgentEvent,
    CompleteEvent,
    DiscoveryEvent,
    ErrorEvent,
    RateLimitEvent,
    StatusChangeEvent,
    ThinkingEvent,
    ToolCallEvent,
    ToolResultEvent,
)
from agent_runner.models import AgentResult, CheckpointData

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


# ---------------------------------------------------------------------------
# Run entry
# ---------------------------------------------------------------------------


def banner(agent_name: str, model: str, max_iterations: int) -> None:
    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]{agent_name}[/bold cyan]\n"
            "[dim]Tool-using agent loop with checkpoint / resume[/dim]\n\n"
            f"[dim]Model          :[/dim] [white]{model}[/white]\n"
            f"[dim]Max iterations :[/dim] [white]{max_iterations}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def resuming(checkpoint: CheckpointData) -> None:
    console.print()
    console.print(
        _label("CHECKPOINT", "yellow"),
        f"[yellow] Resuming at iteration {checkpoint.iteration} with "
        f"{len(checkpoint.messages)} messages and {len(checkpoint.discoveries)} discoveries.[/yellow]",
    )


# ---------------------------------------------------------------------------
# Event rendering
# ---------------------------------------------------------------------------


def status_changed(event: StatusChangeEvent) -> None:
    console.print()
    suffix = f" — {event.message}" if event.message else ""
    color = {"complete": "green", "error": "red"}.get(event.status, "cyan")
    console.print(Rule(f"[{color}]{event.status.upper()}{suffix}[/{color}]", style=color))


def thinking(event: ThinkingEvent) -> None:
    console.print(f"  [blue]Thought[/blue]  [dim white]{_mono(event.text, 300)}[/dim white]")


def tool_call(event: ToolCallEvent) -> None:
    console.print(
        f"  [magenta]Action[/magenta]   [bold white]{event.tool_name}[/bold white]"
        f"  [dim]{_mono(json.dumps(event.input), 160)}[/dim]"
    )


def tool_result(event: ToolResultEvent) -> None:
    mark = "[bold green]✓[/bold green]" if event.result.success else "[bold red]✗[/bold red]"
    first_line = event.result.output.splitlines()[0] if event.result.output else ""
    console.print(f"  [magenta]Observe[/magenta]  {mark} [white]{_mono(first_line, 140)}[/white]")


def discovery(event: DiscoveryEvent) -> None:
    d = event.discovery
    console.print(f"  [yellow]+ {d.type}[/yellow] [dim]{_mono(d.description, 120)}[/dim]")


def error(event: ErrorEvent) -> None:
    if event.fatal:
        halt(event.error)
    else:
        console.print(f"  [red]! {_mono(event.error, 200)}[/red]")


def rate_limit(event: RateLimitEvent) -> None:
    if event.waiting:
        console.print()
        console.print(
            _label("RATE LIMIT", "yellow"),
            f"[yellow] {event.message or ''} ({event.wait_ms} ms)[/yellow]",
        )
    elif event.message:
        console.print(f"  [green]{event.message}[/green]")


def complete(event: CompleteEvent) -> None:
    final_result(event.result)


_RENDERERS = {
    "status_change": status_changed,
    "thinking": thinking,
    "tool_call": tool_call,
    "tool_result": tool_result,
    "discovery": discovery,
    "error": error,
    "rate_limit": rate_limit,
    "complete": complete,
}


def render_event(event: AgentEvent) -> None:
    """Event listener entry point. Event types without a renderer are ignored."""
    renderer = _RENDERERS.get(event.type)
    if renderer is not None:
        renderer(event)


# ---------------------------------------------------------------------------
# Final result
# ---------------------------------------------------------------------------


def discovery_summary(result: AgentResult) -> None:
    if not result.discoveries:
        return
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="dim",
        show_header=True,
        header_style="bold dim",
        padding=(0, 1),
    )
    table.add_column("Type", width=12)
    table.add_column("Path", style="white")
    table.add_column("Description", style="dim white")

    for d in result.discoveries:
        table.add_row(d.type, d.path or "", _mono(d.description, 60))

    console.print(Panel(table, title="[dim]DISCOVERIES[/dim]", border_style="dim", padding=(0, 1)))


def final_result(result: AgentResult) -> None:
    console.print()
    color = "green" if result.success else "red"
    console.print(
        Panel(
            f"[white]{result.summary}[/white]\n\n"
            f"[dim]Tokens: {result.token_usage.input} in / {result.token_usage.output} out · "
            f"{len(result.discoveries)} discoveries[/dim]",
            title=_label("RESULT", color),
            border_style=color,
            padding=(1, 2),
        )
    )
    console.print()


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{reason}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()
