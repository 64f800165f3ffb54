"""Intention analysis and advisory task planning.

Both steps ask the backend for strict JSON and fall back to a
deterministic answer when the reply is unusable or the backend fails.
A plan is never enforced; the Orchestrator only folds it into the
system prompt.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .context_management import estimate_tokens
from .cost_tracker import CostTracker
from .errors import AIError, PlanningParseFailure
from .interrupt import CancelToken
from .logger import get_logger, truncate
from .prompts import build_intention_prompt, build_planner_prompt
from .streaming_client import BackendClient, ChatResponse

INTENTION_SOURCE = "intention_analysis"
PLANNING_SOURCE = "task_planning"

COMPLEXITIES = ("simple", "moderate", "complex")
FALLBACK_CONFIDENCE = 0.6


class _PlanningModel(BaseModel):
    # Backends answer in snake_case or camelCase
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class IntentionAnalysis(_PlanningModel):
    primary_intent: str = "Process user request"
    confidence: float = 0.5
    required_tools: List[str] = Field(default_factory=list)
    suggested_approach: str = "Direct approach"
    complexity: str = "moderate"
    estimated_steps: int = 1

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float:
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.5
        return min(1.0, max(0.0, value))

    @field_validator("complexity", mode="before")
    @classmethod
    def _known_complexity(cls, v: Any) -> str:
        value = str(v or "").lower()
        return value if value in COMPLEXITIES else "moderate"


class TaskStep(_PlanningModel):
    step_number: int
    description: str
    tool_name: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    expected_output: Optional[str] = None
    depends_on: Optional[List[int]] = None


class ExecutionPlan(_PlanningModel):
    goal: str
    steps: List[TaskStep] = Field(default_factory=list)
    total_steps: int = 0
    estimated_duration: Optional[str] = None


def extract_json_object(text: str) -> Dict[str, Any]:
    """Parse the outermost {...} in ``text``; PlanningParseFailure otherwise."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise PlanningParseFailure("no JSON object in reply")
    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        raise PlanningParseFailure(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise PlanningParseFailure("reply JSON is not an object")
    return data


def _mentions(text: str, words: Sequence[str]) -> bool:
    return re.search(r"\b(?:%s)(?:e?s)?\b" % "|".join(words), text) is not None


CODE_WORDS = ("code", "file", "function", "class", "bug", "fix", "add", "implement", "change", "update")
WORKSPACE_WORDS = ("workspace", "project", "codebase", "repository", "repo", "analy[sz]e",
                   "understand", "explore", "structure", "overview")
CREATE_WORDS = ("create", "new", "write", "generate")
SHELL_WORDS = ("run", "execute", "test", "build", "install", "command")


def classify_intent(request: str, available_tools: Sequence[str]) -> IntentionAnalysis:
    """Keyword classifier used when the backend gives no usable analysis."""
    lower = request.lower()
    needs_code = _mentions(lower, CODE_WORDS)
    needs_workspace = _mentions(lower, WORKSPACE_WORDS)

    wanted: List[str] = []
    if needs_workspace:
        wanted += ["list_directory", "search_code"]
    if needs_code:
        wanted += ["search_code", "read_file", "update_file"]
    if _mentions(lower, CREATE_WORDS):
        wanted += ["create_directory", "write_file"]
    if _mentions(lower, SHELL_WORDS):
        wanted.append("execute_shell")

    required: List[str] = []
    for name in wanted:
        if name in available_tools and name not in required:
            required.append(name)
    if not required:
        required = list(available_tools[:3])

    context_first = needs_code or needs_workspace
    return IntentionAnalysis(
        primary_intent="Process user request",
        confidence=FALLBACK_CONFIDENCE,
        required_tools=required,
        suggested_approach=(
            "Explore the workspace structure, search the relevant code, then act"
            if context_first else "Analyze the request and use the appropriate tools"
        ),
        complexity="moderate",
        estimated_steps=3 if context_first else 2,
    )


STEP_DESCRIPTIONS = {
    "read_file": "Read and analyze relevant file contents",
    "write_file": "Create a file with the content the request asks for",
    "update_file": "Update an existing file",
    "delete_file": "Remove the specified file",
    "list_directory": "List directory contents to understand the structure",
    "create_directory": "Create the directories the task needs",
    "file_exists": "Check that the file exists before proceeding",
    "execute_shell": "Run a shell command to accomplish the task",
    "search_code": "Search the codebase for relevant code",
}

DURATIONS = {"simple": "10 seconds", "moderate": "30 seconds", "complex": "1 minute"}


def fallback_plan(request: str, intention: IntentionAnalysis) -> ExecutionPlan:
    """One step per required tool, each chained to the step two before it."""
    steps = []
    for k, tool in enumerate(intention.required_tools, start=1):
        steps.append(TaskStep(
            step_number=k,
            description=STEP_DESCRIPTIONS.get(tool, f"Use {tool} to process the request"),
            tool_name=tool,
            parameters={},
            expected_output="Tool execution result",
            depends_on=[k - 2] if k > 2 else None,
        ))
    if not steps:
        steps.append(TaskStep(
            step_number=1,
            description="Analyze and respond to the request",
            expected_output="Response to user",
        ))
    return ExecutionPlan(
        goal=intention.primary_intent or request,
        steps=steps,
        total_steps=len(steps),
        estimated_duration=DURATIONS.get(intention.complexity, "30 seconds"),
    )


class _PlanningStep:
    source = ""

    def __init__(self, backend: BackendClient, cost_tracker: Optional[CostTracker] = None,
                 logger: Optional[logging.Logger] = None):
        self.backend = backend
        self.cost_tracker = cost_tracker
        self.log = logger or get_logger("planning")

    async def _ask(self, system: str, user: str, cancel_token: Optional[CancelToken] = None) -> Optional[str]:
        """One backend call; None when the backend failed. Cancellation propagates."""
        messages = [{"role": "system", "content": system}, {"role": "user", "content": user}]
        try:
            response = await self.backend.send_message(messages, cancel_token=cancel_token)
        except AIError as e:
            self.log.warning("%s call failed, using fallback: %s", self.source, e)
            self._record(messages, None)
            return None
        self._record(messages, response)
        return response.content

    def _record(self, messages: List[Dict[str, str]], response: Optional[ChatResponse]) -> None:
        if self.cost_tracker is None:
            return
        input_tokens = response.input_tokens if response else 0
        output_tokens = response.output_tokens if response else 0
        if response is not None and not response.usage:
            input_tokens = estimate_tokens("\n".join(m["content"] for m in messages))
            output_tokens = estimate_tokens(response.content)
        self.cost_tracker.record_call(
            model=self.backend.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_ms=response.duration_ms if response else 0.0,
            finish_reason=response.finish_reason if response else "error",
            source=self.source,
        )


class IntentionAnalyzer(_PlanningStep):
    source = INTENTION_SOURCE

    async def analyze_intent(
        self,
        request: str,
        available_tools: Sequence[str],
        cancel_token: Optional[CancelToken] = None,
    ) -> IntentionAnalysis:
        content = await self._ask(
            build_intention_prompt(available_tools),
            f'Analyze this request: "{request}"',
            cancel_token,
        )
        if content is not None:
            try:
                return self._parse(content)
            except PlanningParseFailure as e:
                self.log.info("Unusable intention reply (%s): %s", e, truncate(content, 200))
        return classify_intent(request, available_tools)

    @staticmethod
    def _parse(content: str) -> IntentionAnalysis:
        data = extract_json_object(content)
        try:
            return IntentionAnalysis.model_validate(data)
        except ValidationError as e:
            raise PlanningParseFailure(str(e)) from e


class TaskPlanner(_PlanningStep):
    source = PLANNING_SOURCE

    async def create_plan(
        self,
        request: str,
        intention: IntentionAnalysis,
        tool_schemas: List[Dict[str, Any]],
        cancel_token: Optional[CancelToken] = None,
    ) -> ExecutionPlan:
        content = await self._ask(
            build_planner_prompt(intention, tool_schemas),
            f'Create an execution plan for: "{request}"',
            cancel_token,
        )
        if content is not None:
            try:
                return self._parse(content, request)
            except PlanningParseFailure as e:
                self.log.info("Unusable plan reply (%s): %s", e, truncate(content, 200))
        return fallback_plan(request, intention)

    @staticmethod
    def _parse(content: str, request: str) -> ExecutionPlan:
        data = extract_json_object(content)
        data.setdefault("goal", request)
        try:
            plan = ExecutionPlan.model_validate(data)
        except ValidationError as e:
            raise PlanningParseFailure(str(e)) from e
        if not plan.total_steps:
            plan.total_steps = len(plan.steps)
        return plan
