"""Intention analysis, planning and their fallbacks."""

import asyncio
import json
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from mosaic.cost_tracker import CostTracker
from mosaic.errors import AIError, AIErrorType, PlanningParseFailure, TurnCancelled
from mosaic.interrupt import CancelToken
from mosaic.models import UNIVERSAL_TOOLS
from mosaic.planning import (
    INTENTION_SOURCE,
    PLANNING_SOURCE,
    IntentionAnalysis,
    IntentionAnalyzer,
    TaskPlanner,
    classify_intent,
    extract_json_object,
    fallback_plan,
)
from mosaic.streaming_client import ChatResponse
from mosaic.tools import create_default_registry


class OneShotBackend:
    model = "gpt-4o-mini"

    def __init__(self, reply, usage=None):
        self.reply = reply
        self.usage = usage or {}
        self.messages = None

    async def send_message(self, messages, cancel_token=None):
        self.messages = messages
        if isinstance(self.reply, Exception):
            raise self.reply
        return ChatResponse(content=self.reply, usage=self.usage)


def analyze(backend, request="fix the login bug", tracker=None):
    analyzer = IntentionAnalyzer(backend, tracker)
    return asyncio.run(analyzer.analyze_intent(request, UNIVERSAL_TOOLS))


def plan_for(backend, intention, request="fix the login bug", tracker=None):
    planner = TaskPlanner(backend, tracker)
    schemas = create_default_registry().get_all_tool_schemas()
    return asyncio.run(planner.create_plan(request, intention, schemas))


class TestExtractJson:

    def test_object_inside_prose(self):
        assert extract_json_object('Sure! {"a": {"b": 1}} Hope that helps.') == {"a": {"b": 1}}

    @pytest.mark.parametrize("text", ["no json here", "{not json}", "} backwards {"])
    def test_failures(self, text):
        with pytest.raises(PlanningParseFailure):
            extract_json_object(text)


class TestIntentionAnalysis:

    def test_camel_case_reply(self):
        reply = json.dumps({
            "primaryIntent": "Fix a bug",
            "confidence": 0.8,
            "requiredTools": ["search_code", "update_file"],
            "suggestedApproach": "Find then patch",
            "complexity": "moderate",
            "estimatedSteps": 2,
        })
        intention = analyze(OneShotBackend(reply))
        assert intention.primary_intent == "Fix a bug"
        assert intention.required_tools == ["search_code", "update_file"]
        assert intention.estimated_steps == 2

    def test_snake_case_in_fenced_block(self):
        reply = '```json\n{"primary_intent": "Explore", "confidence": 0.7, "required_tools": ["list_directory"]}\n```'
        intention = analyze(OneShotBackend(reply))
        assert intention.primary_intent == "Explore"
        assert intention.required_tools == ["list_directory"]

    def test_values_are_normalized(self):
        intention = IntentionAnalysis.model_validate({"confidence": 7, "complexity": "EPIC"})
        assert intention.confidence == 1.0
        assert intention.complexity == "moderate"

    def test_garbage_falls_back_to_keywords(self):
        intention = analyze(OneShotBackend("I think you should fix it."))
        assert intention.confidence == 0.6
        assert intention.required_tools[:3] == ["search_code", "read_file", "update_file"]

    def test_cancellation_is_not_swallowed(self):
        token = CancelToken()
        token.cancel("test")

        class CancelledBackend(OneShotBackend):
            async def send_message(self, messages, cancel_token=None):
                self.token = cancel_token
                cancel_token.raise_if_cancelled()

        backend = CancelledBackend("{}")
        analyzer = IntentionAnalyzer(backend, CostTracker())
        with pytest.raises(TurnCancelled):
            asyncio.run(analyzer.analyze_intent("fix it", UNIVERSAL_TOOLS, token))
        assert backend.token is token

    def test_backend_error_falls_back(self):
        backend = OneShotBackend(AIError(AIErrorType.RATE_LIMITED, "slow down"))
        tracker = CostTracker()
        intention = analyze(backend, tracker=tracker)
        assert intention.confidence == 0.6
        assert tracker.get_last_call().finish_reason == "error"


class TestClassifyIntent:

    def test_workspace_request(self):
        intention = classify_intent("give me an overview of this project", UNIVERSAL_TOOLS)
        assert intention.required_tools == ["list_directory", "search_code"]
        assert intention.estimated_steps == 3

    def test_create_and_run(self):
        intention = classify_intent("write a script and run it", UNIVERSAL_TOOLS)
        assert "write_file" in intention.required_tools
        assert "execute_shell" in intention.required_tools

    def test_unavailable_tools_are_dropped(self):
        intention = classify_intent("run the tests", ["read_file"])
        assert intention.required_tools == ["read_file"]

    def test_nothing_matches_uses_first_tools(self):
        intention = classify_intent("hello", UNIVERSAL_TOOLS)
        assert intention.required_tools == UNIVERSAL_TOOLS[:3]
        assert intention.estimated_steps == 2

    @pytest.mark.parametrize("request_text", ["address the feedback", "insert a newline", "the runtime is slow"])
    def test_keywords_match_whole_words(self, request_text):
        intention = classify_intent(request_text, UNIVERSAL_TOOLS)
        assert intention.required_tools == UNIVERSAL_TOOLS[:3]
        assert intention.estimated_steps == 2

    def test_plural_keywords_match(self):
        intention = classify_intent("the tests fail in two classes", UNIVERSAL_TOOLS)
        assert "execute_shell" in intention.required_tools
        assert "update_file" in intention.required_tools


class TestPlanning:

    def test_camel_case_plan(self):
        reply = json.dumps({
            "goal": "Fix login",
            "steps": [
                {"stepNumber": 1, "description": "Find the handler", "toolName": "search_code",
                 "parameters": {"pattern": "def login"}},
                {"stepNumber": 2, "description": "Patch it", "toolName": "update_file", "dependsOn": [1]},
            ],
            "estimatedDuration": "1 minute",
        })
        plan = plan_for(OneShotBackend(reply), IntentionAnalysis())
        assert plan.total_steps == 2
        assert plan.steps[0].parameters == {"pattern": "def login"}
        assert plan.steps[1].depends_on == [1]
        assert plan.estimated_duration == "1 minute"

    def test_missing_goal_uses_request(self):
        reply = '{"steps": [{"step_number": 1, "description": "Answer"}]}'
        plan = plan_for(OneShotBackend(reply), IntentionAnalysis(), request="say hi")
        assert plan.goal == "say hi"

    def test_invalid_step_falls_back(self):
        reply = '{"goal": "x", "steps": [{"description": "no number"}]}'
        intention = IntentionAnalysis(required_tools=["read_file"])
        plan = plan_for(OneShotBackend(reply), intention)
        assert [s.tool_name for s in plan.steps] == ["read_file"]

    def test_fallback_plan_shape(self):
        intention = IntentionAnalysis(
            primary_intent="Refactor",
            required_tools=["search_code", "read_file", "update_file", "execute_shell"],
            complexity="complex",
        )
        plan = fallback_plan("refactor it", intention)
        assert plan.goal == "Refactor"
        assert plan.total_steps == 4
        assert [s.depends_on for s in plan.steps] == [None, None, [1], [2]]
        assert plan.estimated_duration == "1 minute"

    def test_fallback_plan_without_tools(self):
        plan = fallback_plan("hi", IntentionAnalysis(required_tools=[]))
        assert len(plan.steps) == 1
        assert plan.steps[0].tool_name is None

    def test_prompt_lists_tool_parameters(self):
        backend = OneShotBackend("{}")
        plan_for(backend, IntentionAnalysis(primary_intent="Fix", required_tools=["read_file"]))
        system = backend.messages[0]["content"]
        assert "read_file" in system
        assert "Fix" in system


class TestCostAccounting:

    def test_calls_are_tagged_and_estimated(self):
        tracker = CostTracker()
        analyze(OneShotBackend('{"primary_intent": "x"}'), tracker=tracker)
        plan_for(OneShotBackend('{"goal": "x", "steps": []}',
                                usage={"prompt_tokens": 100, "completion_tokens": 20}),
                 IntentionAnalysis(), tracker=tracker)

        first, second = tracker.calls
        assert first.source == INTENTION_SOURCE
        assert first.input_tokens > 0
        assert second.source == PLANNING_SOURCE
        assert (second.input_tokens, second.output_tokens) == (100, 20)
        assert tracker.user_summary().total_calls == 0
        assert tracker.summary().total_calls == 2
