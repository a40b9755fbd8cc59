import pytest

from agent_runner.models import AgentConfig, TextBlock, Tool, ToolResult, ToolUseBlock
from agent_runner.transport import ChatRequest, ChatResponse, Usage


class StubClient:
    """Scripted ChatClient. Each script item is a ChatResponse or an exception to raise."""

    def __init__(self, script, repeat_last=False):
        self.script = list(script)
        self.repeat_last = repeat_last
        self.requests: list[ChatRequest] = []

    def chat(self, request: ChatRequest) -> ChatResponse:
        self.requests.append(request)
        if len(self.script) > 1 or not self.repeat_last:
            item = self.script.pop(0)
        else:
            item = self.script[0]
        if isinstance(item, Exception):
            raise item
        return item


def text_response(text, input_tokens=10, output_tokens=5):
    return ChatResponse(
        id="msg_text",
        content=[TextBlock(text=text)],
        stop_reason="end_turn",
        usage=Usage(input_tokens=input_tokens, output_tokens=output_tokens),
    )


def tool_response(*calls, text=None):
    content = [TextBlock(text=text)] if text else []
    for i, (name, args) in enumerate(calls):
        content.append(ToolUseBlock(id=f"toolu_{name}_{i}", name=name, input=args))
    return ChatResponse(
        id="msg_tool",
        content=content,
        stop_reason="tool_use",
        usage=Usage(input_tokens=20, output_tokens=8),
    )


def make_tool(name, fn=None):
    return Tool(
        name=name,
        description=f"{name} test tool",
        execute=fn or (lambda args: ToolResult(success=True, output=f"{name} ok")),
    )


def make_config(*tools, max_iterations=10, checkpoint_interval=0):
    return AgentConfig(
        name="TestAgent",
        system_prompt="You are a test agent.",
        tools=tuple(tools),
        max_iterations=max_iterations,
        checkpoint_interval=checkpoint_interval,
    )


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    return sleeps.append
