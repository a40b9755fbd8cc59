# harness.py
# Agent execution engine.
#
# The runner is the kernel. The model is a passive responder — this class
# owns all control flow, tool dispatch, state, retries and checkpoints.
# Observers see everything through the event stream and never touch state.
#
# Control flow per iteration:
#   stop requested? → iteration budget → periodic checkpoint
#   → transport call (with retry policy) → final answer?  → complete
#                                        → tool_use?      → dispatch tools
#                                                           → aggregate results → loop
#
# Exactly one iteration is in flight at a time. Tools requested in one turn
# run sequentially, in request order.

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from agent_runner.conversation import ConversationEditError, validate_message_edit
from agent_runner.discovery import extract_discoveries, merge_discoveries
from agent_runner.events import (
    AgentEvent,
    AgentEventListener,
    CompleteEvent,
    ConversationEvent,
    DiscoveryEvent,
    ErrorEvent,
    EventBus,
    MessageEvent,
    RateLimitEvent,
    StatusChangeEvent,
    ThinkingEvent,
    ToolCallEvent,
    ToolResultEvent,
    UsageUpdateEvent,
)
from agent_runner.models import (
    AgentConfig,
    AgentResult,
    CheckpointData,
    ExecutionState,
    Message,
    ToolResult,
    ToolResultBlock,
    ToolUseBlock,
)
from agent_runner.rate_limiter import RateLimiter, RateLimiterEvent
from agent_runner.tools import create_tool_result, create_tool_result_with_image, wants_image
from agent_runner.transport import (
    DEFAULT_MAX_TOKENS,
    ChatClient,
    ChatRequest,
    ChatResponse,
    ErrorKind,
    TransportError,
)

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_ERRORS = 3
MAX_RATE_LIMIT_WAITS = 10

CheckpointCallback = Callable[[CheckpointData], None]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class AgentStopped(Exception):
    """Raised inside the loop when a stop request is honoured. Always terminal."""


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class AgentRunner:
    """
    Runs one agent persona against a chat transport.

    A runner executes a single run: call run() or resume() once, then read
    the returned AgentResult. stop() may be called from any thread or from
    an event listener; it takes effect at the next iteration boundary.
    In-flight transport calls and tool executions are never interrupted.

    Example:
        runner = AgentRunner(config, OpenRouterClient(), on_checkpoint=store_cb)
        runner.on(display.render_event)
        result = runner.run("Explore this directory.")
    """

    def __init__(
        self,
        config: AgentConfig,
        client: ChatClient,
        *,
        on_checkpoint: CheckpointCallback | None = None,
        checkpoint_interval: int | None = None,
        rate_limiter: RateLimiter | None = None,
        max_consecutive_errors: int = MAX_CONSECUTIVE_ERRORS,
        max_rate_limit_waits: int = MAX_RATE_LIMIT_WAITS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._client = client
        self._on_checkpoint = on_checkpoint
        self._checkpoint_interval = (
            config.checkpoint_interval if checkpoint_interval is None else checkpoint_interval
        )
        self._rate_limiter = rate_limiter or RateLimiter(sleep=sleep)
        self._max_consecutive_errors = max_consecutive_errors
        self._max_rate_limit_waits = max_rate_limit_waits
        self._sleep = sleep

        self._bus = EventBus()
        self._stop_requested = threading.Event()
        self._state = ExecutionState()
        self._completed_iterations = 0
        self._running = False

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def config(self) -> AgentConfig:
        return self._config

    @property
    def state(self) -> ExecutionState:
        """Live state. Read it; do not write it."""
        return self._state

    @property
    def iteration(self) -> int:
        """Number of iterations fully recorded in the history."""
        return self._completed_iterations

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    def on(self, listener: AgentEventListener) -> Callable[[], None]:
        return self._bus.on(listener)

    def stop(self) -> None:
        self._stop_requested.set()

    def run(self, initial_prompt: str) -> AgentResult:
        self._begin()
        self._state.messages.append(Message(role="user", content=initial_prompt))

        self._emit(StatusChangeEvent(status="running"))
        self._emit(MessageEvent(role="user", content=initial_prompt))
        self._emit_conversation()
        return self._execute_loop()

    def resume(self, checkpoint: CheckpointData) -> AgentResult:
        """Continue from a snapshot without re-issuing the turns it already records."""
        self._begin()
        self._state.messages = [m.model_copy(deep=True) for m in checkpoint.messages]
        self._state.discoveries = [d.model_copy(deep=True) for d in checkpoint.discoveries]
        self._state.token_usage = checkpoint.token_usage.model_copy()
        self._completed_iterations = checkpoint.iteration

        self._emit(StatusChangeEvent(status="running", message="Resuming..."))
        for discovery in self._state.discoveries:
            self._emit(DiscoveryEvent(discovery=discovery))
        self._emit_conversation()
        return self._execute_loop()

    def checkpoint(self) -> CheckpointData:
        return CheckpointData(
            messages=list(self._state.messages),
            discoveries=list(self._state.discoveries),
            token_usage=self._state.token_usage.model_copy(),
            iteration=self._completed_iterations,
        )

    def replace_message(self, index: int, message: Message) -> CheckpointData:
        """
        Validated replace of a past message, for manual edits between runs.

        Raises ConversationEditError if the edit breaks the history and
        RuntimeError while the loop is active. On success a fresh snapshot
        is pushed through the checkpoint callback and returned.
        """
        if self._running:
            raise RuntimeError("Cannot edit conversation history while the agent is running.")

        validation = validate_message_edit(self._state.messages, index, message)
        if not validation.valid:
            raise ConversationEditError(validation)
        for warning in validation.warnings:
            logger.warning("Conversation edit: %s", warning)

        self._state.messages[index] = message
        self._emit_conversation()
        self._save_checkpoint()
        return self.checkpoint()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _begin(self) -> None:
        if self._state.status != "idle":
            raise RuntimeError(f"{self._config.name} has already been started.")
        self._stop_requested.clear()
        self._state.status = "running"

    def _execute_loop(self) -> AgentResult:
        self._running = True
        unsubscribe = self._rate_limiter.on(self._forward_rate_limit)
        try:
            return self._loop()
        except AgentStopped as exc:
            return self._fail(str(exc), stopped=True)
        except TransportError as exc:
            self._save_checkpoint()
            return self._fail(str(exc))
        except Exception as exc:
            logger.exception("%s failed unexpectedly", self._config.name)
            self._save_checkpoint()
            return self._fail(str(exc) or type(exc).__name__)
        finally:
            unsubscribe()
            self._running = False

    def _loop(self) -> AgentResult:
        state = self._state
        tool_definitions = [tool.definition() for tool in self._config.tools]

        while True:
            if self._stop_requested.is_set():
                self._save_checkpoint()
                raise AgentStopped("Agent execution was stopped")

            iteration = self._completed_iterations + 1
            if iteration > self._config.max_iterations:
                self._save_checkpoint()
                return self._fail(
                    "Maximum iterations reached",
                    summary="Agent reached maximum iterations without completing.",
                )

            if self._checkpoint_interval and iteration % self._checkpoint_interval == 0:
                self._save_checkpoint()

            request = ChatRequest(
                system=self._config.system_prompt,
                messages=list(state.messages),
                tools=tool_definitions,
                max_tokens=self._config.max_tokens or DEFAULT_MAX_TOKENS,
            )
            response = self._call_transport(request)

            state.current_response = response
            state.token_usage.input += response.usage.input_tokens
            state.token_usage.output += response.usage.output_tokens
            self._rate_limiter.record_usage(
                response.usage.input_tokens,
                response.usage.output_tokens,
                response.usage.cache_creation_input_tokens,
                response.usage.cache_read_input_tokens,
            )

            text = response.text()
            if text:
                self._emit(ThinkingEvent(text=text))

            tool_uses = response.tool_uses()
            state.messages.append(Message(role="assistant", content=list(response.content)))

            if not tool_uses:
                self._completed_iterations = iteration
                self._emit(MessageEvent(role="assistant", content=text))
                self._emit_conversation()
                return self._complete(text)

            self._emit_conversation()
            results = [self._invoke_tool(tool_use) for tool_use in tool_uses]
            state.messages.append(Message(role="user", content=results))
            self._completed_iterations = iteration
            self._emit_conversation()

    def _call_transport(self, request: ChatRequest) -> ChatResponse:
        """
        One logical transport call with the retry policy applied.

        Rate limits with a server delay wait that exact delay and do not
        touch the consecutive-error counter. Overloads back off 2**n seconds
        and count toward the cap. Everything else propagates as fatal.
        """
        consecutive_errors = 0
        rate_limit_waits = 0

        while True:
            try:
                return self._client.chat(request)
            except TransportError as exc:
                kind = exc.kind

                if kind is ErrorKind.RATE_LIMITED and rate_limit_waits < self._max_rate_limit_waits:
                    rate_limit_waits += 1
                    self._save_checkpoint()
                    self._rate_limiter.handle_rate_limit(exc.retry_after_ms or 0)
                    continue

                if kind is ErrorKind.OVERLOADED:
                    consecutive_errors += 1
                    if consecutive_errors < self._max_consecutive_errors:
                        self._save_checkpoint()
                        self._emit(
                            ErrorEvent(
                                error=f"API error (attempt {consecutive_errors}/"
                                f"{self._max_consecutive_errors}): {exc}. Retrying..."
                            )
                        )
                        self._sleep(2**consecutive_errors)
                        continue

                raise

    def _invoke_tool(self, tool_use: ToolUseBlock) -> ToolResultBlock:
        """Run one requested tool inside a failure boundary. Never raises."""
        self._emit(ToolCallEvent(tool_use_id=tool_use.id, tool_name=tool_use.name, input=tool_use.input))

        tool = self._config.find_tool(tool_use.name)
        if tool is None:
            result = ToolResult(success=False, output=f"Unknown tool: {tool_use.name}")
            self._emit(ToolResultEvent(tool_use_id=tool_use.id, tool_name=tool_use.name, result=result))
            return create_tool_result(tool_use.id, result.output, is_error=True)

        try:
            result = ToolResult.model_validate(tool.execute(dict(tool_use.input)))
        except Exception as exc:
            message = f"Tool execution error: {exc}"
            result = ToolResult(success=False, output=message)
            self._emit(ErrorEvent(error=message))
            self._emit(ToolResultEvent(tool_use_id=tool_use.id, tool_name=tool_use.name, result=result))
            return create_tool_result(tool_use.id, message, is_error=True)

        self._emit(ToolResultEvent(tool_use_id=tool_use.id, tool_name=tool_use.name, result=result))

        try:
            found = extract_discoveries(tool_use.name, tool_use.input, result)
        except Exception:
            # Extraction failures yield no discoveries; the tool_result is still recorded.
            logger.exception("Discovery extraction failed for %s", tool_use.name)
            found = []
        for discovery in merge_discoveries(self._state.discoveries, found):
            self._emit(DiscoveryEvent(discovery=discovery))

        if wants_image(result):
            try:
                return create_tool_result_with_image(
                    tool_use.id, result.output, result.data["dataUrl"], is_error=not result.success
                )
            except ValueError:
                logger.warning("Tool %s returned a malformed image data URL", tool_use.name)
        return create_tool_result(tool_use.id, result.output, is_error=not result.success)

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def _result(self, success: bool, summary: str, stopped: bool = False) -> AgentResult:
        return AgentResult(
            success=success,
            summary=summary,
            discoveries=list(self._state.discoveries),
            conversation_history=list(self._state.messages),
            token_usage=self._state.token_usage.model_copy(),
            stopped=stopped,
        )

    def _complete(self, summary: str) -> AgentResult:
        self._state.status = "complete"
        self._emit(StatusChangeEvent(status="complete"))
        self._save_checkpoint()
        result = self._result(True, summary)
        self._emit(CompleteEvent(result=result))
        return result

    def _fail(self, error: str, summary: str | None = None, stopped: bool = False) -> AgentResult:
        self._state.status = "error"
        self._state.error = error
        self._emit(StatusChangeEvent(status="error", message=error))
        self._emit(ErrorEvent(error=error, fatal=True, stopped=stopped))
        return self._result(False, summary or f"Agent error: {error}", stopped=stopped)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _emit(self, event: AgentEvent) -> None:
        self._bus.emit(event)

    def _emit_conversation(self) -> None:
        self._emit(ConversationEvent(messages=list(self._state.messages)))

    def _save_checkpoint(self) -> None:
        if self._on_checkpoint is None:
            return
        try:
            self._on_checkpoint(self.checkpoint())
        except Exception:
            logger.exception("Checkpoint callback failed for %s", self._config.name)

    def _forward_rate_limit(self, event: RateLimiterEvent) -> None:
        if event.type == "waiting":
            self._emit(RateLimitEvent(waiting=True, wait_ms=event.wait_ms, message=event.message))
        elif event.type == "resumed":
            self._emit(RateLimitEvent(waiting=False, message=event.message))
        else:
            self._emit(
                UsageUpdateEvent(
                    current_usage=event.current_usage or 0,
                    cached_tokens_read=event.cached_tokens_read or 0,
                )
            )
