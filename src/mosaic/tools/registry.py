"""Tool registry for managing available tools."""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Collection, Dict, List, Optional

from pydantic import BaseModel

from ..errors import ToolError, ToolExecutionError, ToolTimeout, ToolUnknown
from ..logger import get_logger, log_exception, truncate

if TYPE_CHECKING:
    from ..models import AgentContext


class ToolResult(BaseModel):
    """Result of a tool execution."""

    success: bool
    data: Any = None
    error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_message(self) -> str:
        """Convert result to a message string for the LLM."""
        if self.success:
            if isinstance(self.data, str):
                return self.data
            return json.dumps(self.data, indent=2, default=str)
        return f"Error: {self.error}"


# ── Parameter schema ─────────────────────────────────────────

class ParamType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"

    def accepts(self, value: Any) -> bool:
        if self is ParamType.STRING:
            return isinstance(value, str)
        if self is ParamType.NUMBER:
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        if self is ParamType.BOOLEAN:
            return isinstance(value, bool)
        if self is ParamType.ARRAY:
            return isinstance(value, list)
        return isinstance(value, dict)


@dataclass
class ToolParameter:
    name: str
    type: ParamType
    description: str = ""
    required: bool = False
    default: Any = None

    def to_schema(self) -> Dict[str, Any]:
        schema: Dict[str, Any] = {"type": self.type.value, "description": self.description}
        if self.default is not None:
            schema["default"] = self.default
        return schema


ToolFunction = Callable[[Dict[str, Any], "AgentContext"], Awaitable[Any]]


@dataclass
class Tool:
    """Definition of a tool that can be called by the model."""

    name: str
    description: str
    function: ToolFunction
    parameters: List[ToolParameter] = field(default_factory=list)

    def to_schema(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": {
                "type": "object",
                "properties": {p.name: p.to_schema() for p in self.parameters},
                "required": [p.name for p in self.parameters if p.required],
            },
        }

    def validate(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Check ``params`` against the declared schema and fill in defaults.

        Raises ToolExecutionError on a missing required parameter or a
        value of the wrong type. Undeclared parameters pass through.
        """
        if not isinstance(params, dict):
            raise ToolExecutionError(self.name, f"parameters for '{self.name}' must be an object")
        checked = dict(params)
        for p in self.parameters:
            value = checked.get(p.name)
            if value is None:
                if p.required:
                    raise ToolExecutionError(
                        self.name, f"missing required parameter '{p.name}' for '{self.name}'"
                    )
                if p.default is not None:
                    checked[p.name] = p.default
                continue
            if not p.type.accepts(value):
                raise ToolExecutionError(
                    self.name,
                    f"parameter '{p.name}' for '{self.name}' must be {p.type.value}, "
                    f"got {type(value).__name__}",
                )
        return checked

    async def execute(self, params: Dict[str, Any], context: "AgentContext") -> ToolResult:
        """Run the tool; wrap plain return values and crashes into ToolResult."""
        try:
            result = await self.function(params, context)
        except ToolError:
            raise
        except Exception as e:
            raise ToolExecutionError(self.name, f"{type(e).__name__}: {e}") from e
        if isinstance(result, ToolResult):
            return result
        return ToolResult(success=True, data=result)


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._tools: Dict[str, Tool] = {}
        self.log = logger or get_logger("tools")

    def register(self, tool: Tool) -> None:
        """Register a tool. A second tool with the same name replaces the first."""
        if tool.name in self._tools:
            self.log.warning("Tool '%s' registered twice; the later registration wins", tool.name)
        self._tools[tool.name] = tool

    def tool(
        self,
        name: str,
        description: str,
        parameters: Optional[List[ToolParameter]] = None,
    ) -> Callable[[ToolFunction], ToolFunction]:
        """Decorator to register an async function as a tool."""
        def decorator(func: ToolFunction) -> ToolFunction:
            self.register(Tool(name=name, description=description, function=func,
                               parameters=parameters or []))
            return func
        return decorator

    def get(self, name: str) -> Optional[Tool]:
        """Get a tool by name."""
        return self._tools.get(name)

    def list_tools(self) -> List[Tool]:
        """List all registered tools."""
        return list(self._tools.values())

    def get_tool_schema(self, name: str) -> Optional[Dict[str, Any]]:
        tool = self.get(name)
        return tool.to_schema() if tool else None

    def get_all_tool_schemas(self) -> List[Dict[str, Any]]:
        return [tool.to_schema() for tool in self._tools.values()]

    async def execute(
        self,
        name: str,
        params: Dict[str, Any],
        context: "AgentContext",
        timeout: Optional[float] = None,
        allowed: Optional[Collection[str]] = None,
    ) -> ToolResult:
        """Execute a tool by name. Never raises for tool-level failures."""
        try:
            if allowed is not None and name not in allowed:
                raise ToolExecutionError(name, f"Tool '{name}' is not available to this agent")
            tool = self.get(name)
            if tool is None:
                raise ToolUnknown(name)
            checked = tool.validate(params)
            try:
                return await asyncio.wait_for(tool.execute(checked, context), timeout)
            except asyncio.TimeoutError:
                raise ToolTimeout(name, timeout or 0.0) from None
        except ToolTimeout as e:
            self.log.warning("Tool %s timed out after %.1fs", name, e.timeout)
            return ToolResult(success=False, error="timeout", metadata={"timeout_seconds": e.timeout})
        except ToolError as e:
            if isinstance(e.__cause__, Exception):
                log_exception(self.log, f"Tool {name} crashed", e.__cause__)
            else:
                self.log.warning("Tool %s failed: %s", name, truncate(str(e)))
            return ToolResult(success=False, error=str(e))
