"""Conversation and agent data types."""

import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .tools.registry import ToolResult


def new_tool_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


@dataclass
class ToolCall:
    """A tool directive recovered from model output."""

    tool_name: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_tool_call_id)


@dataclass
class Message:
    """A chat message."""

    role: str  # "system", "user", "assistant", "tool"
    content: str = ""
    tool_call: Optional[ToolCall] = None
    tool_result: Optional[ToolResult] = None
    timestamp: float = field(default_factory=time.time)
    reasoning: Optional[str] = None
    interrupted: bool = False
    is_error: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a backend-ready dictionary (role + content only)."""
        return {"role": self.role, "content": self.content}


@dataclass
class AgentContext:
    """Everything a turn needs, passed by reference into every tool call."""

    working_directory: Path = field(default_factory=lambda: Path.cwd())
    conversation_history: List[Message] = field(default_factory=list)
    environment: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def resolve_path(self, path: str) -> Path:
        """Resolve ``path`` against the working directory."""
        p = Path(path).expanduser()
        if not p.is_absolute():
            p = Path(self.working_directory) / p
        return p.resolve()


@dataclass
class Agent:
    """A persona plus the tools it is allowed to call."""

    id: str
    name: str
    description: str
    system_prompt: str
    available_tools: List[str] = field(default_factory=list)

    def allows(self, tool_name: str) -> bool:
        return tool_name in self.available_tools


UNIVERSAL_TOOLS = [
    "read_file",
    "write_file",
    "update_file",
    "delete_file",
    "list_directory",
    "create_directory",
    "file_exists",
    "execute_shell",
    "search_code",
]


def universal_agent(system_prompt: str) -> Agent:
    """The default do-everything coding agent."""
    return Agent(
        id="universal",
        name="Universal Agent",
        description="Reads, searches and edits the workspace and runs shell commands.",
        system_prompt=system_prompt,
        available_tools=list(UNIVERSAL_TOOLS),
    )
