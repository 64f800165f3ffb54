"""System prompt and planning prompt builders."""

import json
import platform
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from .logger import get_logger

if TYPE_CHECKING:
    from .config import SessionConfig
    from .planning import ExecutionPlan, IntentionAnalysis

_log = get_logger("prompts")

DEFAULT_PERSONA = """You are Mosaic, a careful software engineer working inside the user's workspace.

- Never modify code you haven't read. Read first, understand, then edit.
- Only make changes that were asked for or are clearly necessary.
- When a tool fails, read the error and try a different approach instead of repeating the call.
- When the task is done, answer in plain text without any tool directive."""


def load_persona(config: "SessionConfig") -> str:
    """Return the persona text for a session.

    Looks at ``config.persona_path``, then ``<workspace>/.mosaic/persona.md``,
    then ``<workspace>/agent.md``. Falls back to DEFAULT_PERSONA.
    """
    workspace = Path(config.workspace_path)
    candidates = []
    if config.persona_path:
        path = Path(config.persona_path).expanduser()
        candidates.append(path if path.is_absolute() else workspace / path)
    candidates.append(workspace / ".mosaic" / "persona.md")
    candidates.append(workspace / "agent.md")

    for path in candidates:
        if not path.is_file():
            continue
        try:
            content = path.read_text(encoding="utf-8").strip()
        except OSError as e:
            _log.warning("Failed to read persona %s: %s", path, e)
            continue
        if content:
            _log.debug("Loaded persona (%d chars) from %s", len(content), path)
            return content
    return DEFAULT_PERSONA


def _shell_name() -> str:
    if platform.system() == "Windows":
        return "PowerShell"
    return os.path.basename(os.environ.get("SHELL", "bash"))


def format_tool_catalogue(tool_schemas: Sequence[Dict[str, Any]]) -> str:
    blocks = []
    for schema in tool_schemas:
        params = json.dumps(schema.get("parameters", {}), indent=2)
        blocks.append(
            f"### {schema['name']}\n"
            f"Description: {schema.get('description', '')}\n"
            f"Parameters: {params}"
        )
    return "\n\n".join(blocks)


def format_plan(plan: "ExecutionPlan") -> str:
    lines = [f"Goal: {plan.goal}"]
    for step in plan.steps:
        line = f"{step.step_number}. {step.description}"
        if step.tool_name:
            line += f" [{step.tool_name}]"
        if step.depends_on:
            line += f" (after step {', '.join(str(d) for d in step.depends_on)})"
        lines.append(line)
    if plan.estimated_duration:
        lines.append(f"Estimated duration: {plan.estimated_duration}")
    return "\n".join(lines)


def build_system_prompt(
    persona: str,
    tool_schemas: Sequence[Dict[str, Any]],
    plan: Optional["ExecutionPlan"] = None,
    workspace_path: Optional[str] = None,
) -> str:
    """Persona, tool catalogue, tool-call format rules and an optional plan."""
    sections = [persona.strip()]

    env = [f"Operating system: {platform.system()} {platform.release()}", f"Shell: {_shell_name()}"]
    if workspace_path:
        env.insert(0, f"Workspace: {workspace_path}")
    sections.append("## Environment\n\n" + "\n".join(env))

    if tool_schemas:
        sections.append("## Available Tools\n\n" + format_tool_catalogue(tool_schemas))
        sections.append(TOOL_USAGE_RULES)

    if plan is not None and plan.steps:
        sections.append(
            "## Suggested Plan\n\n"
            "This plan is advisory. Adapt it when tool results show a better path.\n\n"
            + format_plan(plan)
        )
    return "\n\n".join(sections)


TOOL_USAGE_RULES = """## Tool Usage

To call a tool, reply with a JSON object, preferably inside a ```json block:

{"tool": "tool_name", "parameters": {"param": "value"}}

To call several tools in sequence, reply with a JSON array:

[
  {"tool": "read_file", "parameters": {"path": "setup.py"}},
  {"tool": "search_code", "parameters": {"pattern": "def main"}}
]

Rules:
1. Tools run one after another in the order given. Their results come back in the next message.
2. Paths are relative to the workspace.
3. Tools that change files or run commands may need the user's approval. A rejected call returns the error "rejected"; do not retry it unchanged.
4. Use shell syntax that fits the operating system above.
5. When you have the final answer, reply without any tool JSON.
6. Respond in the user's language."""


# ── Planning prompts ─────────────────────────────────────────

INTENTION_PROMPT = """Analyze the user's request to determine the intent and the tools it needs.

Respond with JSON only:

{
  "primary_intent": "Clear description of the user's goal",
  "confidence": 0.8,
  "required_tools": ["tool1", "tool2"],
  "suggested_approach": "Brief step-by-step approach",
  "complexity": "simple|moderate|complex",
  "estimated_steps": 3
}

Guidelines:
1. For code or file work, search before reading and read before editing.
2. Select only tools that help complete the task.
3. Base confidence on how clear the request is.

Available tools: {tools}"""


PLANNER_PROMPT = """Break the user's request into concrete steps using the available tools.

Respond with JSON only:

{
  "goal": "What the user wants to achieve",
  "steps": [
    {
      "step_number": 1,
      "description": "What this step does",
      "tool_name": "tool_to_use",
      "parameters": {"param": "value"},
      "expected_output": "Expected result",
      "depends_on": []
    }
  ],
  "total_steps": 1,
  "estimated_duration": "30 seconds"
}

Start with context gathering for code changes, and include a verification step when it matters.

Primary intent: {intent}
Complexity: {complexity}
Suggested tools: {tools}

Available tools:
{schemas}"""


def build_intention_prompt(available_tools: Sequence[str]) -> str:
    return INTENTION_PROMPT.replace("{tools}", ", ".join(available_tools) or "(none)")


def build_planner_prompt(intention: "IntentionAnalysis", tool_schemas: List[Dict[str, Any]]) -> str:
    return (
        PLANNER_PROMPT
        .replace("{intent}", intention.primary_intent)
        .replace("{complexity}", intention.complexity)
        .replace("{tools}", ", ".join(intention.required_tools) or "(none)")
        .replace("{schemas}", json.dumps(tool_schemas, indent=2))
    )
