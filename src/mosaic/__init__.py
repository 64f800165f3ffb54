"""Multi-provider coding agent: tool orchestration, approvals and undo."""

from .config import ProviderConfig, RetrySettings, SessionConfig
from .cost_tracker import CostTracker
from .errors import AIError, AIErrorType, TurnCancelled
from .interrupt import CancelToken
from .models import Agent, AgentContext, Message, ToolCall, universal_agent
from .orchestrator import Orchestrator, OrchestratorEvent, TurnResult
from .providers import create_backend
from .snapshots import SnapshotStore
from .tools import ToolRegistry, ToolResult, create_default_registry

__version__ = "0.1.0"
__all__ = [
    "ProviderConfig",
    "RetrySettings",
    "SessionConfig",
    "CostTracker",
    "AIError",
    "AIErrorType",
    "TurnCancelled",
    "CancelToken",
    "Agent",
    "AgentContext",
    "Message",
    "ToolCall",
    "universal_agent",
    "Orchestrator",
    "OrchestratorEvent",
    "TurnResult",
    "create_backend",
    "SnapshotStore",
    "ToolRegistry",
    "ToolResult",
    "create_default_registry",
]
