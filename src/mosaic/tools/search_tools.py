"""Code search tool: regex or literal search across workspace files."""

import fnmatch
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .file_tools import PathOutsideWorkspace, resolve_in_workspace
from .registry import ParamType, Tool, ToolParameter, ToolResult

if TYPE_CHECKING:
    from ..models import AgentContext

IGNORED_DIRS = frozenset({
    ".git", "node_modules", "__pycache__", ".venv", "venv", "dist", "build",
    ".mypy_cache", ".pytest_cache", ".mosaic_output",
})
MAX_FILE_BYTES = 1_000_000


@dataclass
class SearchMatch:
    """A search match result."""

    file_path: str
    line_number: int
    line_content: str
    context_before: List[str]
    context_after: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file": self.file_path,
            "line": self.line_number,
            "text": self.line_content,
            "context_before": self.context_before,
            "context_after": self.context_after,
        }


def lexical_search(
    root: Path,
    pattern: "re.Pattern[str]",
    file_extensions: Optional[List[str]] = None,
    include_ignored_dirs: bool = False,
    max_results: int = 50,
    context_lines: int = 1,
) -> List[SearchMatch]:
    """Walk ``root`` and return matches of ``pattern``, at most ``max_results``."""
    exts = [e if e.startswith(".") else f".{e}" for e in (file_extensions or [])]
    results: List[SearchMatch] = []

    for dirpath, dirs, files in os.walk(root):
        if not include_ignored_dirs:
            dirs[:] = sorted(d for d in dirs if d not in IGNORED_DIRS and not d.startswith("."))
        for file_name in sorted(files):
            if exts and not any(fnmatch.fnmatch(file_name, f"*{e}") for e in exts):
                continue
            file_path = Path(dirpath) / file_name
            try:
                if file_path.stat().st_size > MAX_FILE_BYTES:
                    continue
                with open(file_path, "r", encoding="utf-8", errors="replace") as f:
                    lines = f.readlines()
            except OSError:
                continue

            for i, line in enumerate(lines):
                if not pattern.search(line):
                    continue
                start_ctx = max(0, i - context_lines)
                end_ctx = min(len(lines), i + context_lines + 1)
                results.append(SearchMatch(
                    file_path=str(file_path.relative_to(root)),
                    line_number=i + 1,
                    line_content=line.rstrip(),
                    context_before=[l.rstrip() for l in lines[start_ctx:i]],
                    context_after=[l.rstrip() for l in lines[i + 1:end_ctx]],
                ))
                if len(results) >= max_results:
                    return results
    return results


async def search_code(params: Dict[str, Any], context: "AgentContext") -> ToolResult:
    try:
        root = resolve_in_workspace(params.get("directory") or ".", context)
    except PathOutsideWorkspace as e:
        return ToolResult(success=False, error=str(e))
    if not root.is_dir():
        return ToolResult(success=False, error=f"Directory not found: {params.get('directory')}")

    flags = 0 if params.get("case_sensitive") else re.IGNORECASE
    try:
        pattern = re.compile(params["pattern"], flags)
    except re.error:
        pattern = re.compile(re.escape(params["pattern"]), flags)

    max_results = int(params.get("max_results") or 50)
    matches = lexical_search(
        root,
        pattern,
        file_extensions=params.get("file_extensions"),
        include_ignored_dirs=bool(params.get("include_ignored_dirs", False)),
        max_results=max_results,
    )
    return ToolResult(
        success=True,
        data=[m.to_dict() for m in matches],
        metadata={"count": len(matches), "truncated": len(matches) >= max_results},
    )


SEARCH_TOOLS = [
    Tool(
        name="search_code",
        description=(
            "Search file contents in the workspace with a regular expression "
            "(falls back to a literal search if the pattern is not a valid regex)."
        ),
        function=search_code,
        parameters=[
            ToolParameter("pattern", ParamType.STRING, "Regex or literal text to find", required=True),
            ToolParameter("directory", ParamType.STRING, "Directory to search, relative to the workspace",
                          default="."),
            ToolParameter("file_extensions", ParamType.ARRAY, "Only search these extensions, e.g. [\".py\"]"),
            ToolParameter("include_ignored_dirs", ParamType.BOOLEAN,
                          "Also search .git, node_modules, build output and similar", default=False),
            ToolParameter("max_results", ParamType.NUMBER, "Maximum matches to return", default=50),
            ToolParameter("case_sensitive", ParamType.BOOLEAN, "Match case exactly", default=False),
        ],
    ),
]
