"""File operation tools.

Every tool resolves relative paths against ``context.working_directory``
and refuses paths outside it. Expected failures (missing file, bad
range, path escaping the workspace) come back as ToolResult(success=False)
rather than exceptions.
"""

import fnmatch
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Tuple

import aiofiles

from ..context_management import truncate_file_content
from .registry import ParamType, Tool, ToolParameter, ToolResult

if TYPE_CHECKING:
    from ..models import AgentContext

LIST_DIRECTORY_LIMIT = 500


class PathOutsideWorkspace(ValueError):
    pass


def resolve_in_workspace(raw_path: str, context: "AgentContext") -> Path:
    """Resolve ``raw_path`` against the working directory, rejecting escapes."""
    root = Path(context.working_directory).resolve()
    path = context.resolve_path(raw_path)
    if path != root and root not in path.parents:
        raise PathOutsideWorkspace(f"Path is outside the workspace: {raw_path}")
    return path


def _fail(message: str, **metadata: Any) -> ToolResult:
    return ToolResult(success=False, error=message, metadata=metadata or None)


# ── Line-range updates ───────────────────────────────────────

def _split_lines(text: str) -> List[str]:
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines = lines[:-1]
    return lines


def apply_line_updates(content: str, updates: List[Dict[str, Any]]) -> Tuple[str, int]:
    """Apply 1-indexed inclusive line-range replacements.

    Each update is {"start_line", "end_line", "new_content"} (camelCase
    keys are accepted too). Updates are applied bottom-up so earlier
    line numbers stay valid. Returns (new content, lines changed).
    Raises ValueError on an invalid or overlapping range.
    """
    lines = _split_lines(content)
    had_final_newline = content.endswith("\n")

    normalized = []
    for u in updates:
        if not isinstance(u, dict):
            raise ValueError("each update must be an object")
        start = u.get("start_line", u.get("startLine"))
        end = u.get("end_line", u.get("endLine"))
        new = u.get("new_content", u.get("newContent", ""))
        if not isinstance(start, int) or not isinstance(end, int):
            raise ValueError("start_line and end_line must be integers")
        if start < 1 or end < start - 1 or end > len(lines):
            raise ValueError(f"Invalid line range: {start}-{end}. File has {len(lines)} lines.")
        normalized.append((start, end, str(new)))

    normalized.sort(key=lambda t: t[0], reverse=True)
    for (s1, _e1, _n1), (_s2, e2, _n2) in zip(normalized, normalized[1:]):
        if e2 >= s1:
            raise ValueError("update ranges overlap")

    changed = 0
    for start, end, new in normalized:
        new_lines = _split_lines(new)
        lines[start - 1:end] = new_lines
        changed += max(end - start + 1, len(new_lines))

    result = "\n".join(lines)
    if had_final_newline and lines:
        result += "\n"
    return result, changed


# ── Tools ────────────────────────────────────────────────────

async def read_file(params: Dict[str, Any], context: "AgentContext") -> ToolResult:
    try:
        path = resolve_in_workspace(params["path"], context)
    except PathOutsideWorkspace as e:
        return _fail(str(e))
    if not path.is_file():
        return _fail(f"File not found: {params['path']}")

    async with aiofiles.open(path, "r", encoding="utf-8", errors="replace") as f:
        content = await f.read()

    lines = content.splitlines(keepends=True)
    offset = int(params.get("offset") or 0)
    limit = params.get("limit")
    if offset or limit is not None:
        end = offset + int(limit) if limit is not None else len(lines)
        content = "".join(lines[offset:end])
    return ToolResult(
        success=True,
        data=truncate_file_content(content),
        metadata={"path": str(path), "total_lines": len(lines)},
    )


async def write_file(params: Dict[str, Any], context: "AgentContext") -> ToolResult:
    try:
        path = resolve_in_workspace(params["path"], context)
    except PathOutsideWorkspace as e:
        return _fail(str(e))
    if path.is_dir():
        return _fail(f"Path is a directory: {params['path']}")

    existed = path.exists()
    content = params["content"]
    path.parent.mkdir(parents=True, exist_ok=True)
    async with aiofiles.open(path, "w", encoding="utf-8") as f:
        await f.write(content)
    return ToolResult(
        success=True,
        data=f"Successfully wrote {len(content)} characters to {params['path']}",
        metadata={"path": str(path), "created": not existed},
    )


async def update_file(params: Dict[str, Any], context: "AgentContext") -> ToolResult:
    try:
        path = resolve_in_workspace(params["path"], context)
    except PathOutsideWorkspace as e:
        return _fail(str(e))
    if not path.is_file():
        return _fail(f"File not found: {params['path']}")

    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        content = await f.read()
    try:
        new_content, changed = apply_line_updates(content, params["updates"])
    except ValueError as e:
        return _fail(str(e), path=str(path))

    async with aiofiles.open(path, "w", encoding="utf-8") as f:
        await f.write(new_content)
    return ToolResult(
        success=True,
        data=f"Updated {params['path']} ({len(params['updates'])} range(s), {changed} line(s))",
        metadata={"path": str(path), "lines_changed": changed},
    )


async def delete_file(params: Dict[str, Any], context: "AgentContext") -> ToolResult:
    try:
        path = resolve_in_workspace(params["path"], context)
    except PathOutsideWorkspace as e:
        return _fail(str(e))
    if not path.exists():
        return _fail(f"File not found: {params['path']}")
    if path.is_dir():
        return _fail(f"Path is a directory, not a file: {params['path']}")
    path.unlink()
    return ToolResult(success=True, data=f"Deleted {params['path']}", metadata={"path": str(path)})


async def list_directory(params: Dict[str, Any], context: "AgentContext") -> ToolResult:
    raw = params.get("path") or "."
    try:
        path = resolve_in_workspace(raw, context)
    except PathOutsideWorkspace as e:
        return _fail(str(e))
    if not path.exists():
        return _fail(f"Directory not found: {raw}")
    if not path.is_dir():
        return _fail(f"Not a directory: {raw}")

    recursive = bool(params.get("recursive", False))
    pattern = params.get("pattern")
    iterator = path.rglob("*") if recursive else path.iterdir()

    entries = []
    for item in sorted(iterator):
        if pattern and not fnmatch.fnmatch(item.name, pattern):
            continue
        try:
            is_dir = item.is_dir()
            entries.append({
                "name": str(item.relative_to(path)),
                "type": "directory" if is_dir else "file",
                "size": None if is_dir else item.stat().st_size,
            })
        except OSError:
            continue
        if len(entries) >= LIST_DIRECTORY_LIMIT:
            break
    return ToolResult(
        success=True,
        data=entries,
        metadata={"path": str(path), "count": len(entries), "truncated": len(entries) >= LIST_DIRECTORY_LIMIT},
    )


async def create_directory(params: Dict[str, Any], context: "AgentContext") -> ToolResult:
    try:
        path = resolve_in_workspace(params["path"], context)
    except PathOutsideWorkspace as e:
        return _fail(str(e))
    if path.is_file():
        return _fail(f"A file already exists at {params['path']}")
    try:
        path.mkdir(parents=bool(params.get("recursive", True)), exist_ok=True)
    except FileNotFoundError:
        return _fail(f"Parent directory does not exist: {params['path']}")
    return ToolResult(success=True, data=f"Created directory {params['path']}", metadata={"path": str(path)})


async def file_exists(params: Dict[str, Any], context: "AgentContext") -> ToolResult:
    try:
        path = resolve_in_workspace(params["path"], context)
    except PathOutsideWorkspace as e:
        return _fail(str(e))
    kind = "directory" if path.is_dir() else "file" if path.exists() else None
    return ToolResult(success=True, data={"exists": kind is not None, "type": kind})


def _path_param(description: str) -> ToolParameter:
    return ToolParameter("path", ParamType.STRING, description, required=True)


FILE_TOOLS = [
    Tool(
        name="read_file",
        description="Read a text file from the workspace, optionally a window of lines.",
        function=read_file,
        parameters=[
            _path_param("Path to the file, relative to the workspace"),
            ToolParameter("offset", ParamType.NUMBER, "Line to start from (0-based)", default=0),
            ToolParameter("limit", ParamType.NUMBER, "Maximum number of lines to return"),
        ],
    ),
    Tool(
        name="write_file",
        description="Create or overwrite a file with the given content. Parent directories are created.",
        function=write_file,
        parameters=[
            _path_param("Path to the file, relative to the workspace"),
            ToolParameter("content", ParamType.STRING, "Full new file content", required=True),
        ],
    ),
    Tool(
        name="update_file",
        description=(
            "Replace line ranges in an existing file. Line numbers are 1-indexed and inclusive. "
            "Read the file first to get exact line numbers."
        ),
        function=update_file,
        parameters=[
            _path_param("Path to the file, relative to the workspace"),
            ToolParameter(
                "updates", ParamType.ARRAY,
                "List of {start_line, end_line, new_content} replacements", required=True,
            ),
        ],
    ),
    Tool(
        name="delete_file",
        description="Delete a file from the workspace.",
        function=delete_file,
        parameters=[_path_param("Path to the file to delete")],
    ),
    Tool(
        name="list_directory",
        description="List files and directories.",
        function=list_directory,
        parameters=[
            ToolParameter("path", ParamType.STRING, "Directory to list", default="."),
            ToolParameter("recursive", ParamType.BOOLEAN, "List subdirectories too", default=False),
            ToolParameter("pattern", ParamType.STRING, "Glob filter on entry names, e.g. *.py"),
        ],
    ),
    Tool(
        name="create_directory",
        description="Create a directory (and missing parents).",
        function=create_directory,
        parameters=[
            _path_param("Directory to create"),
            ToolParameter("recursive", ParamType.BOOLEAN, "Create missing parents", default=True),
        ],
    ),
    Tool(
        name="file_exists",
        description="Check whether a path exists and whether it is a file or a directory.",
        function=file_exists,
        parameters=[_path_param("Path to check")],
    ),
]
