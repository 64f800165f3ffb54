"""Composable middleware around tool execution.

The Orchestrator never calls ToolRegistry.execute directly; it calls a
Handler built with compose(), e.g.

    execute = compose(approval, snapshots, metrics, registry_handler(registry))

Each middleware receives the invocation and the next handler, and may
short-circuit (approval rejection), act before (snapshot capture) or
after (metrics) the call.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Collection, Dict, List, Optional

from ..logger import get_logger
from ..snapshots import FileSnapshot, SnapshotStore
from .registry import ToolRegistry, ToolResult

if TYPE_CHECKING:
    from ..models import AgentContext


@dataclass
class ToolInvocation:
    name: str
    parameters: Dict[str, Any]
    context: "AgentContext"
    timeout: Optional[float] = None


Handler = Callable[[ToolInvocation], Awaitable[ToolResult]]
Middleware = Callable[[ToolInvocation, Handler], Awaitable[ToolResult]]


def registry_handler(registry: ToolRegistry, allowed: Optional[Collection[str]] = None) -> Handler:
    """The innermost handler: dispatch to the registry."""
    async def _execute(invocation: ToolInvocation) -> ToolResult:
        return await registry.execute(
            invocation.name,
            invocation.parameters,
            invocation.context,
            timeout=invocation.timeout,
            allowed=allowed,
        )
    return _execute


def compose(*layers: Any) -> Handler:
    """compose(m1, m2, ..., base) -> handler where m1 runs outermost."""
    if not layers:
        raise ValueError("compose() needs at least a base handler")
    *middlewares, handler = layers
    for middleware in reversed(middlewares):
        handler = _bind(middleware, handler)
    return handler


def _bind(middleware: Middleware, call_next: Handler) -> Handler:
    async def _handler(invocation: ToolInvocation) -> ToolResult:
        return await middleware(invocation, call_next)
    return _handler


# ── Snapshots ────────────────────────────────────────────────

MUTATING_TOOLS = frozenset({"write_file", "update_file", "delete_file"})


class SnapshotMiddleware:
    """Capture each file's pre-turn state before a mutating tool touches it.

    Captures accumulate until commit(), which the Orchestrator calls once
    per turn with the index of the turn's user message.
    """

    def __init__(self, store: SnapshotStore, mutating: Collection[str] = MUTATING_TOOLS,
                 logger: Optional[logging.Logger] = None):
        self.store = store
        self.mutating = frozenset(mutating)
        self.log = logger or get_logger("snapshots")
        self._pending: Dict[str, FileSnapshot] = {}

    async def __call__(self, invocation: ToolInvocation, call_next: Handler) -> ToolResult:
        path = invocation.parameters.get("path")
        if invocation.name in self.mutating and isinstance(path, str):
            resolved = str(invocation.context.resolve_path(path))
            if resolved not in self._pending:
                try:
                    self._pending[resolved] = FileSnapshot.capture(resolved)
                except OSError as e:
                    self.log.warning("Could not snapshot %s: %s", resolved, e)
        return await call_next(invocation)

    @property
    def pending(self) -> List[FileSnapshot]:
        return list(self._pending.values())

    def commit(self, message_index: int, message_preview: str):
        """Store this turn's captures as one ConversationSnapshot."""
        files, self._pending = list(self._pending.values()), {}
        if not files:
            return None
        return self.store.create_snapshot(message_index, message_preview, files)

    def discard(self) -> None:
        self._pending = {}


# ── Metrics ──────────────────────────────────────────────────

class ToolMetrics:
    """Per-tool call counts, timings and error counts.

    Also usable as a middleware: every call that passes through is timed
    and recorded.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._lock = threading.Lock()
        self._per_tool: Dict[str, Dict[str, float]] = {}
        self.log = logger or get_logger("tools.metrics")

    async def __call__(self, invocation: ToolInvocation, call_next: Handler) -> ToolResult:
        t0 = time.monotonic()
        result = await call_next(invocation)
        self.record(invocation.name, (time.monotonic() - t0) * 1000, result.success)
        return result

    def record(self, tool_name: str, elapsed_ms: float, success: bool) -> None:
        with self._lock:
            entry = self._per_tool.setdefault(tool_name, {
                "count": 0, "total_ms": 0.0, "errors": 0, "max_ms": 0.0,
            })
            entry["count"] += 1
            entry["total_ms"] += elapsed_ms
            entry["max_ms"] = max(entry["max_ms"], elapsed_ms)
            if not success:
                entry["errors"] += 1
        self.log.debug("tool_metric: %s elapsed=%.1fms success=%s", tool_name, elapsed_ms, success)

    def summary(self) -> Dict[str, Dict[str, float]]:
        with self._lock:
            return {
                name: {
                    "count": e["count"],
                    "avg_ms": round(e["total_ms"] / e["count"], 1) if e["count"] else 0.0,
                    "max_ms": round(e["max_ms"], 1),
                    "errors": e["errors"],
                }
                for name, e in self._per_tool.items()
            }
