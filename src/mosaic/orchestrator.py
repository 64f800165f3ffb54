"""The agent loop.

One turn: append the user message, then repeatedly ask the backend for
a reply, pull tool directives out of it and run them through the
middleware chain, folding every result back into the history, until the
model answers without a directive or the iteration cap is reached.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from .config import SessionConfig
from .context_management import estimate_tokens
from .cost_tracker import CostTracker
from .errors import AIError, TurnCancelled
from .interrupt import CancelToken, run_cancellable
from .logger import get_logger, log_exception, truncate
from .models import Agent, AgentContext, Message, ToolCall, universal_agent
from .planning import ExecutionPlan, IntentionAnalyzer, TaskPlanner
from .prompts import build_system_prompt, load_persona
from .snapshots import RestoreResult
from .streaming_client import BackendClient, ChatResponse, DeltaCallback
from .tool_call_parser import extract_tool_calls
from .tools.middleware import (
    Middleware,
    SnapshotMiddleware,
    ToolInvocation,
    ToolMetrics,
    compose,
    registry_handler,
)
from .tools.registry import ToolRegistry, ToolResult

DONE = "done"
CAP_EXHAUSTED = "cap_exhausted"
FAILED = "failed"
CANCELLED = "cancelled"

OLLAMA_CONTINUATION = (
    "Continue with your analysis and provide a complete response based on the tool results above."
)


@dataclass
class OrchestratorEvent:
    """Progress notification for hosts (CLI rendering, tests)."""

    kind: str
    iteration: int = 0
    message: Optional[Message] = None
    tool_call: Optional[ToolCall] = None
    result: Optional[ToolResult] = None
    detail: str = ""


EventCallback = Callable[[OrchestratorEvent], None]


@dataclass
class TurnResult:
    status: str
    message: str = ""
    iterations: int = 0
    tools_used: List[str] = field(default_factory=list)
    duration_ms: float = 0.0
    tokens: int = 0
    error: Optional[AIError] = None
    plan: Optional[ExecutionPlan] = None

    @property
    def ok(self) -> bool:
        return self.status == DONE


# ── Tool-result rendering ────────────────────────────────────

def format_tool_block(message: Message) -> str:
    """Rewrite a tool message into the block the model sees on the next call."""
    call, result = message.tool_call, message.tool_result
    if call is None or result is None:
        return message.content

    params = json.dumps(call.parameters, indent=2, default=str)
    parts = [f'Tool "{call.tool_name}" executed with parameters:\n{params}']
    if result.success:
        parts.append(f"Result: SUCCESS\n{result.to_message()}")
        parts.append("Next: use this result to continue, or answer the user if the task is complete.")
    else:
        parts.append(f"Result: FAILED\nError: {result.error}")
        if result.error == "rejected":
            parts.append("The user rejected this call. Do not repeat it unchanged; "
                         "ask the user or take a different approach.")
        else:
            parts.append("Consider checking the parameters or trying an alternative tool.")
    if result.metadata:
        parts.append(f"Additional context: {json.dumps(result.metadata, default=str)}")
    return "\n\n".join(parts)


@dataclass
class _Turn:
    """Mutable bookkeeping for the turn in flight."""

    user_index: int
    started: float = field(default_factory=time.monotonic)
    status: str = FAILED
    message: str = ""
    iterations: int = 0
    tools_used: List[str] = field(default_factory=list)
    tokens: int = 0
    error: Optional[AIError] = None
    assistant: Optional[Message] = None

    def result(self, plan: Optional[ExecutionPlan]) -> TurnResult:
        return TurnResult(
            status=self.status,
            message=self.message,
            iterations=self.iterations,
            tools_used=list(self.tools_used),
            duration_ms=(time.monotonic() - self.started) * 1000,
            tokens=self.tokens,
            error=self.error,
            plan=plan,
        )


class Orchestrator:
    """Drives turns against one backend with one tool registry."""

    def __init__(
        self,
        backend: BackendClient,
        registry: ToolRegistry,
        config: SessionConfig,
        agent: Optional[Agent] = None,
        middlewares: Sequence[Middleware] = (),
        snapshot_middleware: Optional[SnapshotMiddleware] = None,
        cost_tracker: Optional[CostTracker] = None,
        logger: Optional[logging.Logger] = None,
        on_event: Optional[EventCallback] = None,
        stream: bool = True,
        on_delta: Optional[DeltaCallback] = None,
        on_reasoning: Optional[DeltaCallback] = None,
    ):
        self.backend = backend
        self.registry = registry
        self.config = config
        self.log = logger or get_logger("orchestrator")
        self.agent = agent or universal_agent(load_persona(config))
        self.snapshot_middleware = snapshot_middleware
        self.cost_tracker = cost_tracker or CostTracker()
        self.on_event = on_event
        self.stream = stream
        self.on_delta = on_delta
        self.on_reasoning = on_reasoning

        self.context = AgentContext(working_directory=Path(config.workspace_path).resolve())
        self.metrics = ToolMetrics(logger=self.log)
        layers: List[Any] = list(middlewares)
        if snapshot_middleware is not None:
            layers.append(snapshot_middleware)
        layers.append(self.metrics)
        layers.append(registry_handler(registry, allowed=self.agent.available_tools))
        self._execute = compose(*layers)

        self.turns: List[TurnResult] = []
        self._token: Optional[CancelToken] = None
        self._undone_messages: List[List[Message]] = []

    # ── Context ──────────────────────────────────────────────

    @property
    def history(self) -> List[Message]:
        return self.context.conversation_history

    def get_context(self) -> AgentContext:
        return self.context

    def set_context(self, context: AgentContext) -> None:
        self.context = context
        self._undone_messages = []

    def reset_context(self) -> None:
        """Forget the conversation, the redo stack and any pending snapshot captures."""
        self.context = AgentContext(
            working_directory=self.context.working_directory,
            environment=dict(self.context.environment),
        )
        self._undone_messages = []
        if self.snapshot_middleware is not None:
            self.snapshot_middleware.discard()
            self.snapshot_middleware.store.clear()
        self.log.info("Context reset")

    def tool_schemas(self) -> List[Dict[str, Any]]:
        return [s for s in self.registry.get_all_tool_schemas() if self.agent.allows(s["name"])]

    def cancel(self, reason: str = "user") -> None:
        """Stop the turn in flight, if any."""
        if self._token is not None:
            self._token.cancel(reason)

    def _emit(self, kind: str, **kwargs: Any) -> None:
        if self.on_event is not None:
            self.on_event(OrchestratorEvent(kind=kind, **kwargs))

    # ── Entry points ─────────────────────────────────────────

    async def execute_task(self, text: str, cancel_token: Optional[CancelToken] = None) -> TurnResult:
        return await self._run_turn(text, None, cancel_token or CancelToken())

    async def execute_task_with_planning(
        self, text: str, cancel_token: Optional[CancelToken] = None
    ) -> TurnResult:
        """Analyze intent and draft a plan, then run the same loop with the plan as context."""
        token = cancel_token or CancelToken()
        self._token = token
        schemas = self.tool_schemas()
        names = [s["name"] for s in schemas]

        analyzer = IntentionAnalyzer(self.backend, self.cost_tracker, logger=self.log)
        planner = TaskPlanner(self.backend, self.cost_tracker, logger=self.log)
        try:
            intention = await analyzer.analyze_intent(text, names, token)
            plan = await planner.create_plan(text, intention, schemas, token)
        except TurnCancelled as e:
            turn = _Turn(user_index=len(self.history), status=CANCELLED, message="Turn cancelled.")
            result = turn.result(None)
            self.turns.append(result)
            self._token = None
            self.log.info("Turn @%d cancelled while planning (%s)", turn.user_index, e.reason)
            self._emit(CANCELLED, detail=e.reason)
            return result
        self.log.info("Plan: %s (%d steps, intent confidence %.2f)",
                      truncate(plan.goal, 120), len(plan.steps), intention.confidence)

        self.context.metadata["intention"] = intention.model_dump()
        self.context.metadata["plan"] = plan.model_dump()
        try:
            return await self._run_turn(text, plan, token)
        finally:
            self.context.metadata.pop("intention", None)
            self.context.metadata.pop("plan", None)

    # ── The loop ─────────────────────────────────────────────

    async def _run_turn(self, text: str, plan: Optional[ExecutionPlan], token: CancelToken) -> TurnResult:
        self._token = token
        self._undone_messages = []
        turn = _Turn(user_index=len(self.history))
        self.history.append(Message(role="user", content=text))
        self.log.info("Turn @%d started: %s", turn.user_index, truncate(text, 200))

        try:
            await self._iterate(turn, plan, token)
        except TurnCancelled as e:
            turn.status = CANCELLED
            turn.message = "Turn cancelled."
            if turn.assistant is not None:
                turn.assistant.interrupted = True
            self.log.info("Turn @%d cancelled (%s)", turn.user_index, e.reason)
            self._emit(CANCELLED, iteration=turn.iterations, message=turn.assistant, detail=e.reason)
        except AIError as e:
            turn.status = FAILED
            turn.error = e
            turn.message = f"[error] {e.message}"
            error_message = Message(role="assistant", content=turn.message, is_error=True)
            self.history.append(error_message)
            log_exception(self.log, f"Turn @{turn.user_index} failed", e)
            self._emit("turn_failed", iteration=turn.iterations, message=error_message, detail=e.type.value)
        finally:
            if self.snapshot_middleware is not None:
                snapshot = self.snapshot_middleware.commit(turn.user_index, truncate(text, 80))
                if snapshot is not None:
                    self.log.info("Snapshot @%d: %d file(s)", turn.user_index, len(snapshot.files))
            result = turn.result(plan)
            self.turns.append(result)
            self._token = None
            self.log.info("Turn @%d %s: iterations=%d tools=%d tokens=%d duration=%.0fms",
                          turn.user_index, result.status, result.iterations,
                          len(result.tools_used), result.tokens, result.duration_ms)
        return result

    async def _iterate(self, turn: _Turn, plan: Optional[ExecutionPlan], token: CancelToken) -> None:
        max_iterations = self.config.max_iterations
        while turn.iterations < max_iterations:
            token.raise_if_cancelled()
            turn.iterations += 1
            self._emit("iteration_start", iteration=turn.iterations)

            response = await self._ask_backend(turn, plan, token)
            assistant = Message(
                role="assistant",
                content=response.content,
                reasoning=response.reasoning,
                interrupted=response.interrupted,
            )
            self.history.append(assistant)
            turn.assistant = assistant
            self._emit("assistant_message", iteration=turn.iterations, message=assistant)
            if response.interrupted:
                raise TurnCancelled(token.reason or "user")

            calls = extract_tool_calls(response.content)
            self._record_usage(turn, response, len(calls))
            if not calls:
                turn.status = DONE
                turn.message = response.content
                self._emit("turn_complete", iteration=turn.iterations, message=assistant)
                return

            await self._run_tools(turn, calls, token)

        turn.status = CAP_EXHAUSTED
        turn.message = f"Stopped after {max_iterations} iterations without a final answer."
        self.log.warning("Turn @%d hit the iteration cap (%d)", turn.user_index, max_iterations)
        self._emit(CAP_EXHAUSTED, iteration=turn.iterations, detail=turn.message)

    async def _ask_backend(self, turn: _Turn, plan: Optional[ExecutionPlan], token: CancelToken) -> ChatResponse:
        messages = self.build_messages(plan)
        if not self.stream:
            return await self.backend.send_message(messages, cancel_token=token)

        partial: List[str] = []

        def on_delta(text: str) -> None:
            partial.append(text)
            if self.on_delta is not None:
                self.on_delta(text)

        try:
            return await self.backend.send_message_stream(
                messages, on_delta, on_reasoning=self.on_reasoning, cancel_token=token,
            )
        except TurnCancelled:
            if partial:
                interrupted = Message(role="assistant", content="".join(partial), interrupted=True)
                self.history.append(interrupted)
                turn.assistant = interrupted
            raise

    async def _run_tools(self, turn: _Turn, calls: List[ToolCall], token: CancelToken) -> None:
        for call in calls:
            if not self.agent.allows(call.tool_name):
                self.log.info("Skipping %s: not available to agent %s", call.tool_name, self.agent.id)
                self._emit("tool_skipped", iteration=turn.iterations, tool_call=call)
                continue

            token.raise_if_cancelled()
            self._emit("tool_start", iteration=turn.iterations, tool_call=call)
            invocation = ToolInvocation(
                name=call.tool_name,
                parameters=call.parameters,
                context=self.context,
                timeout=self.config.tool_timeout,
            )
            result = await run_cancellable(self._execute(invocation), token)
            self.history.append(Message(
                role="tool",
                content=result.to_message(),
                tool_call=call,
                tool_result=result,
                is_error=not result.success,
            ))
            turn.tools_used.append(call.tool_name)
            self.log.debug("Tool %s -> %s", call.tool_name,
                           "ok" if result.success else truncate(result.error or "", 200))
            self._emit("tool_result", iteration=turn.iterations, tool_call=call, result=result)

            if not self.config.enable_tool_chaining:
                break

    def _record_usage(self, turn: _Turn, response: ChatResponse, tool_calls: int) -> None:
        input_tokens, output_tokens = response.input_tokens, response.output_tokens
        if not response.usage:
            output_tokens = estimate_tokens(response.content)
        turn.tokens += input_tokens + output_tokens
        self.cost_tracker.record_call(
            model=response.model or self.backend.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_ms=response.duration_ms,
            tool_calls=tool_calls,
            finish_reason=response.finish_reason,
        )

    def build_messages(self, plan: Optional[ExecutionPlan] = None) -> List[Dict[str, Any]]:
        """System prompt followed by the history, tool results rewritten for the wire."""
        system = build_system_prompt(
            self.agent.system_prompt,
            self.tool_schemas(),
            plan,
            workspace_path=str(self.context.working_directory),
        )
        keep_tool_role = self.backend.keeps_tool_role
        messages: List[Dict[str, Any]] = [{"role": "system", "content": system}]
        for m in self.history:
            if m.is_error and m.role == "assistant":
                continue
            if m.role == "tool":
                messages.append({"role": "tool" if keep_tool_role else "user",
                                 "content": format_tool_block(m)})
            else:
                messages.append(m.to_dict())

        if keep_tool_role and messages[-1]["role"] == "assistant":
            messages.append({"role": "user", "content": OLLAMA_CONTINUATION})
        return messages

    # ── Undo / redo ──────────────────────────────────────────

    def undo(self, to_message_index: int) -> RestoreResult:
        """Restore files changed after ``to_message_index`` and drop later messages."""
        count = len(self.history)
        if self.snapshot_middleware is not None:
            result = self.snapshot_middleware.store.undo(to_message_index, count)
        else:
            result = RestoreResult(message_count=max(0, count - to_message_index - 1))
        removed = self.history[to_message_index + 1:]
        del self.history[to_message_index + 1:]
        self._undone_messages.append(removed)
        self.log.info("Undo to @%d: %d message(s) removed", to_message_index, len(removed))
        return result

    def undo_last_turn(self) -> Optional[RestoreResult]:
        """Undo everything from the most recent user message on, or None if there is none."""
        for index in range(len(self.history) - 1, -1, -1):
            if self.history[index].role == "user":
                return self.undo(index - 1)
        return None

    def redo(self) -> Optional[RestoreResult]:
        """Reapply the most recent undo; None when there is nothing to redo."""
        if not self._undone_messages:
            return None
        result: Optional[RestoreResult] = None
        if self.snapshot_middleware is not None:
            result = self.snapshot_middleware.store.redo()
        messages = self._undone_messages.pop()
        self.history.extend(messages)
        if result is None:
            result = RestoreResult(message_count=len(messages))
        return result
