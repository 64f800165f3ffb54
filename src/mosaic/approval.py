"""Human approval for tools with side effects.

The middleware pauses a tool call, hands an ApprovalRequest to the
host's async confirm callback and waits for the answer for as long as
it takes. Nothing here times out.
"""

import difflib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from .logger import get_logger
from .tools.file_tools import apply_line_updates
from .tools.middleware import Handler, ToolInvocation
from .tools.registry import ToolResult

SENSITIVE_TOOLS = frozenset({
    "write_file",
    "update_file",
    "delete_file",
    "create_directory",
    "execute_shell",
})

PREVIEW_MAX_LINES = 60


def needs_approval(tool_name: str) -> bool:
    return tool_name in SENSITIVE_TOOLS


@dataclass
class ApprovalRequest:
    tool_name: str
    parameters: Dict[str, Any]
    preview: str


@dataclass
class ApprovalDecision:
    approved: bool
    # Skip prompting for the rest of the session
    approve_all: bool = False
    feedback: Optional[str] = None

    @classmethod
    def approve(cls) -> "ApprovalDecision":
        return cls(approved=True)

    @classmethod
    def reject(cls, feedback: Optional[str] = None) -> "ApprovalDecision":
        return cls(approved=False, feedback=feedback)


ConfirmCallback = Callable[[ApprovalRequest], Awaitable[Union[bool, ApprovalDecision]]]


# ── Previews ─────────────────────────────────────────────────

def _clip(lines, limit: int = PREVIEW_MAX_LINES) -> str:
    lines = list(lines)
    if len(lines) > limit:
        lines = lines[:limit] + [f"... ({len(lines) - limit} more lines)"]
    return "\n".join(line.rstrip("\n") for line in lines)


def _read(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8", errors="replace") if path.is_file() else None
    except OSError:
        return None


def _diff(path: Path, before: str, after: str) -> str:
    diff = difflib.unified_diff(
        before.splitlines(keepends=True),
        after.splitlines(keepends=True),
        fromfile=f"a/{path.name}",
        tofile=f"b/{path.name}",
    )
    text = _clip(diff)
    return text or "(no changes)"


def build_preview(invocation: ToolInvocation) -> str:
    """Human-readable summary of what the tool is about to do."""
    name, params = invocation.name, invocation.parameters
    raw_path = params.get("path")
    path = invocation.context.resolve_path(raw_path) if isinstance(raw_path, str) else None

    if name == "execute_shell":
        return f"$ {params.get('command', '')}"
    if name == "write_file" and path is not None:
        before = _read(path)
        content = str(params.get("content", ""))
        if before is None:
            return f"Create {path}\n" + _clip(content.splitlines())
        return f"Overwrite {path}\n" + _diff(path, before, content)
    if name == "update_file" and path is not None:
        before = _read(path)
        updates = params.get("updates")
        if before is not None and isinstance(updates, list):
            try:
                after, _ = apply_line_updates(before, updates)
                return f"Edit {path}\n" + _diff(path, before, after)
            except ValueError as e:
                return f"Edit {path} (invalid update: {e})"
        return f"Edit {path}"
    if name == "delete_file" and path is not None:
        return f"Delete {path}"
    if name == "create_directory" and path is not None:
        return f"Create directory {path}"
    return f"{name} {json.dumps(params, default=str)}"


# ── Middleware ───────────────────────────────────────────────

class ApprovalMiddleware:
    """Gate sensitive tools behind the host's confirm callback."""

    def __init__(
        self,
        confirm: ConfirmCallback,
        requires_approval: Callable[[str], bool] = needs_approval,
        logger: Optional[logging.Logger] = None,
    ):
        self.confirm = confirm
        self.requires_approval = requires_approval
        self.approve_all = False
        self.log = logger or get_logger("approval")

    def reset(self) -> None:
        self.approve_all = False

    async def __call__(self, invocation: ToolInvocation, call_next: Handler) -> ToolResult:
        if self.approve_all or not self.requires_approval(invocation.name):
            return await call_next(invocation)

        request = ApprovalRequest(
            tool_name=invocation.name,
            parameters=dict(invocation.parameters),
            preview=build_preview(invocation),
        )
        self.log.info("Awaiting approval for %s", invocation.name)
        answer = await self.confirm(request)
        decision = answer if isinstance(answer, ApprovalDecision) else ApprovalDecision(approved=bool(answer))

        if not decision.approved:
            self.log.info("Rejected %s", invocation.name)
            metadata = {"feedback": decision.feedback} if decision.feedback else None
            return ToolResult(success=False, error="rejected", metadata=metadata)

        if decision.approve_all:
            self.log.info("Approve-all enabled for the rest of the session")
            self.approve_all = True
        return await call_next(invocation)
