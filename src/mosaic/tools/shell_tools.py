"""Shell command execution tool."""

import asyncio
import os
import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional

from ..context_management import truncate_output
from .file_tools import PathOutsideWorkspace, resolve_in_workspace
from .registry import ParamType, Tool, ToolParameter, ToolResult

if TYPE_CHECKING:
    from ..models import AgentContext

DEFAULT_TIMEOUT = 25.0


@dataclass
class ShellResult:
    """Result of a shell command execution."""

    stdout: str
    stderr: str
    return_code: int
    timed_out: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stdout": truncate_output(self.stdout),
            "stderr": truncate_output(self.stderr),
            "return_code": self.return_code,
            "timed_out": self.timed_out,
        }


async def run_shell_command(
    command: str,
    cwd: Optional[str] = None,
    timeout: float = DEFAULT_TIMEOUT,
    env: Optional[Dict[str, str]] = None,
) -> ShellResult:
    """Execute a shell command.

    Args:
        command: The command to execute.
        cwd: Working directory for the command.
        timeout: Timeout in seconds; the process is killed when it expires.
        env: Full environment for the child, or None to inherit.

    Returns:
        ShellResult with stdout, stderr, and return code.
    """
    if sys.platform == "win32":
        command = f'powershell -NoProfile -Command "{command}"'

    process = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env=env,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return ShellResult(
            stdout="",
            stderr=f"Command timed out after {timeout} seconds",
            return_code=-1,
            timed_out=True,
        )
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise

    return ShellResult(
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        return_code=process.returncode or 0,
    )


async def execute_shell(params: Dict[str, Any], context: "AgentContext") -> ToolResult:
    cwd = context.working_directory
    if params.get("cwd"):
        try:
            cwd = resolve_in_workspace(params["cwd"], context)
        except PathOutsideWorkspace as e:
            return ToolResult(success=False, error=str(e))
        if not cwd.is_dir():
            return ToolResult(success=False, error=f"Directory not found: {params['cwd']}")

    env = None
    if context.environment:
        env = {**os.environ, **context.environment}

    timeout = float(params.get("timeout") or DEFAULT_TIMEOUT)
    try:
        result = await run_shell_command(params["command"], cwd=str(cwd), timeout=timeout, env=env)
    except OSError as e:
        return ToolResult(success=False, error=f"Could not start command: {e}")

    data = result.to_dict()
    if result.timed_out:
        return ToolResult(success=False, error=result.stderr, data=data)
    if result.return_code != 0:
        return ToolResult(
            success=False,
            error=f"Command exited with code {result.return_code}",
            data=data,
        )
    return ToolResult(success=True, data=data, metadata={"cwd": str(cwd)})


SHELL_TOOLS = [
    Tool(
        name="execute_shell",
        description=(
            "Run a shell command in the workspace and return stdout, stderr and the exit code. "
            "Use for builds, tests, git and other CLI tools."
        ),
        function=execute_shell,
        parameters=[
            ToolParameter("command", ParamType.STRING, "The command line to run", required=True),
            ToolParameter("cwd", ParamType.STRING, "Working directory relative to the workspace"),
            ToolParameter("timeout", ParamType.NUMBER, "Seconds before the command is killed",
                          default=DEFAULT_TIMEOUT),
        ],
    ),
]
