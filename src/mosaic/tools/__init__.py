"""Built-in tools and the registry/middleware they run through."""

from .registry import ParamType, Tool, ToolParameter, ToolRegistry, ToolResult
from .file_tools import FILE_TOOLS, apply_line_updates
from .shell_tools import SHELL_TOOLS, run_shell_command
from .search_tools import SEARCH_TOOLS
from .middleware import (
    Handler,
    SnapshotMiddleware,
    ToolInvocation,
    ToolMetrics,
    compose,
    registry_handler,
)


def create_default_registry(registry: ToolRegistry = None) -> ToolRegistry:
    """Register every built-in tool."""
    registry = registry or ToolRegistry()
    for tool in FILE_TOOLS + SHELL_TOOLS + SEARCH_TOOLS:
        registry.register(tool)
    return registry


__all__ = [
    "ParamType",
    "Tool",
    "ToolParameter",
    "ToolRegistry",
    "ToolResult",
    "ToolInvocation",
    "Handler",
    "SnapshotMiddleware",
    "ToolMetrics",
    "compose",
    "registry_handler",
    "apply_line_updates",
    "run_shell_command",
    "create_default_registry",
]
