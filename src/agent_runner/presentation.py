# presentation.py
# Presentation-designer tools. Rendering itself (a sandboxed page plus a
# screenshot of it) is an external collaborator behind PresentationRenderer;
# these tools only adapt it to the tool envelope, including the includeImage
# convention that triggers vision follow-up.

from __future__ import annotations

from typing import Callable, Protocol

from pydantic import BaseModel

from agent_runner.models import Tool, ToolResult


class RenderResult(BaseModel):
    success: bool
    error: str | None = None
    console: list[str] = []


class ScreenshotResult(BaseModel):
    success: bool
    data_url: str | None = None
    error: str | None = None


class PresentationRenderer(Protocol):
    def render(self, html: str) -> RenderResult: ...

    def screenshot(self) -> ScreenshotResult: ...


def _tool_execute_presentation_code(renderer: PresentationRenderer, args: dict) -> ToolResult:
    html = args.get("html", "")
    if not html.strip():
        return ToolResult(success=False, output="Error: no HTML provided.")

    rendered = renderer.render(html)
    if not rendered.success:
        return ToolResult(
            success=False,
            output=f"Presentation failed to render: {rendered.error}",
            data={"console": rendered.console},
        )

    output = f"Presentation rendered ({len(html)} characters of HTML)."
    if rendered.console:
        output += "\n\nConsole output:\n" + "\n".join(rendered.console)
    output += "\n\nUse screenshot_presentation to check how it looks."
    return ToolResult(success=True, output=output, data={"console": rendered.console})


def _tool_screenshot_presentation(
    renderer: PresentationRenderer,
    on_screenshot: Callable[[str], None] | None,
    args: dict,
) -> ToolResult:
    shot = renderer.screenshot()
    if not shot.success or not shot.data_url:
        return ToolResult(success=False, output=f"Screenshot failed: {shot.error or 'no image produced'}")

    if on_screenshot is not None:
        on_screenshot(shot.data_url)

    reason = (args or {}).get("reason")
    output = "Screenshot captured. Analyze the image to check layout, readability and styling."
    if reason:
        output = f"{output}\nReason: {reason}"
    return ToolResult(
        success=True,
        output=output,
        data={"includeImage": True, "dataUrl": shot.data_url},
    )


def create_presentation_tools(
    renderer: PresentationRenderer,
    on_screenshot: Callable[[str], None] | None = None,
) -> list[Tool]:
    return [
        Tool(
            name="execute_presentation_code",
            description=(
                "Render a complete, self-contained HTML document (inline CSS and JS) as the "
                "presentation. Replaces any previously rendered presentation."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "html": {"type": "string", "description": "Full HTML document."},
                    "description": {"type": "string", "description": "What changed in this version."},
                },
                "required": ["html"],
            },
            execute=lambda args: _tool_execute_presentation_code(renderer, args),
        ),
        Tool(
            name="screenshot_presentation",
            description=(
                "Capture a screenshot of the current presentation. The image is returned to "
                "you for visual inspection. Call after execute_presentation_code."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "reason": {"type": "string", "description": "Optional: why the screenshot is taken."},
                },
                "required": [],
            },
            execute=lambda args: _tool_screenshot_presentation(renderer, on_screenshot, args),
        ),
    ]
