"""The agent loop against a scripted backend."""

import asyncio
import json
import os
import sys
import time

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from mosaic.config import SessionConfig
from mosaic.cost_tracker import CostTracker
from mosaic.errors import AIError, AIErrorType, TurnCancelled
from mosaic.interrupt import CancelToken, run_cancellable
from mosaic.models import Agent, Message
from mosaic.orchestrator import (
    CANCELLED,
    CAP_EXHAUSTED,
    DONE,
    FAILED,
    OLLAMA_CONTINUATION,
    Orchestrator,
    format_tool_block,
)
from mosaic.snapshots import SnapshotStore
from mosaic.streaming_client import ChatResponse
from mosaic.tools import SnapshotMiddleware, Tool, ToolResult, create_default_registry


class ScriptedBackend:
    """Replays canned replies; the last one repeats once the script runs out."""

    model = "stub-model"

    def __init__(self, *replies, keeps_tool_role=False):
        self.replies = list(replies)
        self.keeps_tool_role = keeps_tool_role
        self.requests = []

    def _next(self):
        reply = self.replies[min(len(self.requests) - 1, len(self.replies) - 1)]
        if isinstance(reply, Exception):
            raise reply
        return ChatResponse(content=reply, model=self.model,
                            usage={"prompt_tokens": 10, "completion_tokens": 5})

    async def send_message(self, messages, cancel_token=None):
        self.requests.append(messages)
        return self._next()

    async def send_message_stream(self, messages, on_delta, on_reasoning=None, cancel_token=None):
        self.requests.append(messages)
        response = self._next()
        on_delta(response.content)
        return response


def directive(tool, **params):
    return json.dumps({"tool": tool, "parameters": params})


def make(tmp_path, backend, snapshots=False, agent=None, **overrides):
    config = SessionConfig(workspace_path=tmp_path, **overrides)
    events = []
    snapshot_middleware = SnapshotMiddleware(SnapshotStore()) if snapshots else None
    orchestrator = Orchestrator(
        backend,
        create_default_registry(),
        config,
        agent=agent,
        snapshot_middleware=snapshot_middleware,
        on_event=events.append,
    )
    return orchestrator, events


def run(orchestrator, text="do it"):
    return asyncio.run(orchestrator.execute_task(text))


class TestLoop:

    def test_plain_answer_finishes_in_one_iteration(self, tmp_path):
        backend = ScriptedBackend("Hello there.")
        orchestrator, events = make(tmp_path, backend)
        result = run(orchestrator, "hi")

        assert result.status == DONE
        assert result.ok
        assert result.message == "Hello there."
        assert result.iterations == 1
        assert result.tokens == 15
        assert [m.role for m in orchestrator.history] == ["user", "assistant"]
        assert events[-1].kind == "turn_complete"

    def test_tool_result_is_fed_back(self, tmp_path):
        (tmp_path / "notes.txt").write_text("remember the milk")
        backend = ScriptedBackend(directive("read_file", path="notes.txt"), "It says to remember the milk.")
        orchestrator, _ = make(tmp_path, backend)
        result = run(orchestrator)

        assert result.status == DONE
        assert result.tools_used == ["read_file"]
        assert [m.role for m in orchestrator.history] == ["user", "assistant", "tool", "assistant"]

        second_request = backend.requests[1]
        tool_block = second_request[-1]
        assert tool_block["role"] == "user"
        assert 'Tool "read_file" executed with parameters' in tool_block["content"]
        assert "Result: SUCCESS" in tool_block["content"]
        assert "remember the milk" in tool_block["content"]

    def test_iteration_cap(self, tmp_path):
        backend = ScriptedBackend(directive("list_directory", path="."))
        orchestrator, events = make(tmp_path, backend, max_iterations=3)
        result = run(orchestrator)

        assert result.status == CAP_EXHAUSTED
        assert result.iterations == 3
        assert len(backend.requests) == 3
        assert not result.ok
        assert events[-1].kind == CAP_EXHAUSTED

    @pytest.mark.parametrize("chaining,expected", [(True, 3), (False, 1)])
    def test_tool_chaining(self, tmp_path, chaining, expected):
        calls = [{"tool": "file_exists", "parameters": {"path": name}} for name in ("a", "b", "c")]
        backend = ScriptedBackend(json.dumps(calls), "checked")
        orchestrator, _ = make(tmp_path, backend, enable_tool_chaining=chaining)
        result = run(orchestrator)

        assert result.status == DONE
        assert len(result.tools_used) == expected
        assert sum(1 for m in orchestrator.history if m.role == "tool") == expected

    def test_failed_tool_is_reported_not_raised(self, tmp_path):
        backend = ScriptedBackend(directive("read_file", path="missing.txt"), "The file is missing.")
        orchestrator, _ = make(tmp_path, backend)
        result = run(orchestrator)

        assert result.status == DONE
        tool_message = orchestrator.history[2]
        assert tool_message.is_error
        assert "Result: FAILED" in backend.requests[1][-1]["content"]

    def test_tools_outside_the_agent_are_skipped(self, tmp_path):
        agent = Agent(id="reader", name="Reader", description="", system_prompt="Read only.",
                      available_tools=["read_file"])
        backend = ScriptedBackend(directive("write_file", path="x.txt", content="no"), "ok")
        orchestrator, events = make(tmp_path, backend, agent=agent)
        result = run(orchestrator)

        assert result.status == DONE
        assert not (tmp_path / "x.txt").exists()
        assert "tool_skipped" in [e.kind for e in events]
        assert [s["name"] for s in orchestrator.tool_schemas()] == ["read_file"]

    def test_backend_failure_ends_the_turn(self, tmp_path):
        backend = ScriptedBackend(AIError(AIErrorType.SERVER_ERROR, "upstream exploded"))
        orchestrator, events = make(tmp_path, backend)
        result = run(orchestrator)

        assert result.status == FAILED
        assert result.error.type == AIErrorType.SERVER_ERROR
        last = orchestrator.history[-1]
        assert last.is_error
        assert last.content == "[error] upstream exploded"
        assert events[-1].kind == "turn_failed"

        # The error line is never sent back to the model
        backend.replies = ["recovered"]
        assert run(orchestrator, "again").ok
        sent = backend.requests[-1]
        assert all("[error]" not in m["content"] for m in sent)

    def test_cancel_mid_stream_keeps_partial_reply(self, tmp_path):
        class CancellingBackend(ScriptedBackend):
            async def send_message_stream(self, messages, on_delta, on_reasoning=None, cancel_token=None):
                self.requests.append(messages)
                on_delta("Half an ans")
                raise TurnCancelled("user")

        orchestrator, _ = make(tmp_path, CancellingBackend())
        result = run(orchestrator)

        assert result.status == CANCELLED
        last = orchestrator.history[-1]
        assert last.role == "assistant"
        assert last.interrupted
        assert last.content == "Half an ans"

    def test_cancel_while_tool_runs(self, tmp_path):
        finished = []

        async def slow(params, ctx):
            await asyncio.sleep(5)
            finished.append(True)

        registry = create_default_registry()
        registry.register(Tool(name="slow", description="Takes its time", function=slow))
        agent = Agent(id="waiter", name="Waiter", description="", system_prompt="Wait.",
                      available_tools=["slow"])
        backend = ScriptedBackend(directive("slow"), "never reached")
        orchestrator = Orchestrator(backend, registry, SessionConfig(workspace_path=tmp_path), agent=agent)
        token = CancelToken()

        async def scenario():
            asyncio.get_running_loop().call_later(0.1, token.cancel, "test")
            return await orchestrator.execute_task("wait for it", cancel_token=token)

        started = time.monotonic()
        result = asyncio.run(scenario())

        assert result.status == CANCELLED
        assert time.monotonic() - started < 2
        assert finished == []
        assert result.tools_used == []
        assert not any(m.role == "tool" for m in orchestrator.history)
        assert len(backend.requests) == 1

    def test_usage_is_recorded_per_call(self, tmp_path):
        backend = ScriptedBackend(directive("file_exists", path="a"), "done")
        orchestrator, _ = make(tmp_path, backend)
        run(orchestrator)
        summary = orchestrator.cost_tracker.summary()
        assert summary.total_calls == 2
        assert summary.total_tool_calls == 1
        assert summary.total_tokens == 30


class TestBuildMessages:

    def test_system_prompt_lists_tools(self, tmp_path):
        orchestrator, _ = make(tmp_path, ScriptedBackend("x"))
        system = orchestrator.build_messages()[0]
        assert system["role"] == "system"
        assert "### read_file" in system["content"]
        assert "### execute_shell" in system["content"]

    def test_ollama_keeps_tool_role_and_gets_continuation(self, tmp_path):
        backend = ScriptedBackend("x", keeps_tool_role=True)
        orchestrator, _ = make(tmp_path, backend)
        orchestrator.history.extend([
            Message(role="user", content="look"),
            Message(role="tool", content="found",
                    tool_result=ToolResult(success=True, data="found")),
            Message(role="assistant", content="Looking..."),
        ])
        messages = orchestrator.build_messages()
        assert [m["role"] for m in messages] == ["system", "user", "tool", "assistant", "user"]
        assert messages[-1]["content"] == OLLAMA_CONTINUATION

    def test_no_continuation_after_user_message(self, tmp_path):
        orchestrator, _ = make(tmp_path, ScriptedBackend("x", keeps_tool_role=True))
        orchestrator.history.append(Message(role="user", content="hi"))
        assert orchestrator.build_messages()[-1] == {"role": "user", "content": "hi"}


def test_format_tool_block_for_rejection():
    from mosaic.models import ToolCall

    message = Message(
        role="tool",
        tool_call=ToolCall("write_file", {"path": "a"}),
        tool_result=ToolResult(success=False, error="rejected", metadata={"feedback": "not now"}),
    )
    block = format_tool_block(message)
    assert "Result: FAILED" in block
    assert "The user rejected this call" in block
    assert '"feedback": "not now"' in block


class TestUndoRedo:

    def test_undo_last_turn_restores_files_and_history(self, tmp_path):
        target = tmp_path / "app.py"
        target.write_text("print('v1')\n")
        backend = ScriptedBackend(directive("write_file", path="app.py", content="print('v2')\n"), "Updated.")
        orchestrator, _ = make(tmp_path, backend, snapshots=True)
        assert run(orchestrator, "bump the version").ok
        assert target.read_text() == "print('v2')\n"
        assert len(orchestrator.history) == 4

        undo = orchestrator.undo_last_turn()
        assert undo.ok
        assert target.read_text() == "print('v1')\n"
        assert orchestrator.history == []

        redo = orchestrator.redo()
        assert redo is not None
        assert target.read_text() == "print('v2')\n"
        assert [m.role for m in orchestrator.history] == ["user", "assistant", "tool", "assistant"]
        assert orchestrator.redo() is None

    def test_new_turn_clears_redo(self, tmp_path):
        orchestrator, _ = make(tmp_path, ScriptedBackend("fine"), snapshots=True)
        run(orchestrator, "one")
        orchestrator.undo_last_turn()
        run(orchestrator, "two")
        assert orchestrator.redo() is None

    def test_undo_without_user_message(self, tmp_path):
        orchestrator, _ = make(tmp_path, ScriptedBackend("x"))
        assert orchestrator.undo_last_turn() is None

    def test_reset_context_forgets_everything(self, tmp_path):
        (tmp_path / "a.txt").write_text("a")
        backend = ScriptedBackend(directive("write_file", path="a.txt", content="b"), "ok")
        orchestrator, _ = make(tmp_path, backend, snapshots=True)
        run(orchestrator)
        orchestrator.reset_context()
        assert orchestrator.history == []
        assert not orchestrator.snapshot_middleware.store.can_undo()


class TestPlanning:

    def test_plan_is_advisory_context(self, tmp_path):
        intention = {
            "primaryIntent": "List the project",
            "confidence": 0.9,
            "requiredTools": ["list_directory"],
            "complexity": "simple",
            "estimatedSteps": 1,
        }
        plan = {
            "goal": "Show the project layout",
            "steps": [{"stepNumber": 1, "description": "List the root", "toolName": "list_directory"}],
        }
        backend = ScriptedBackend(json.dumps(intention), json.dumps(plan), "Here is the layout.")
        tracker = CostTracker()
        orchestrator = Orchestrator(backend, create_default_registry(),
                                    SessionConfig(workspace_path=tmp_path), cost_tracker=tracker)
        result = asyncio.run(orchestrator.execute_task_with_planning("what is in here?"))

        assert result.ok
        assert result.plan.goal == "Show the project layout"
        assert result.plan.total_steps == 1
        system = backend.requests[2][0]["content"]
        assert "## Suggested Plan" in system
        assert "1. List the root [list_directory]" in system
        assert "plan" not in orchestrator.context.metadata

        assert tracker.summary().total_calls == 3
        assert tracker.user_summary().total_calls == 1

    def test_unusable_planning_replies_fall_back(self, tmp_path):
        backend = ScriptedBackend("no idea", "still no json", "answer")
        orchestrator, _ = make(tmp_path, backend)
        result = asyncio.run(orchestrator.execute_task_with_planning("fix the bug in parser.py"))

        assert result.ok
        assert result.plan.steps
        assert result.plan.steps[0].tool_name == "search_code"

    def test_cancel_during_planning(self, tmp_path):
        class StallingBackend(ScriptedBackend):
            async def send_message(self, messages, cancel_token=None):
                self.requests.append(messages)
                await run_cancellable(asyncio.sleep(3), cancel_token)
                return self._next()

        backend = StallingBackend("{}")
        orchestrator, events = make(tmp_path, backend)
        token = CancelToken()

        async def scenario():
            asyncio.get_running_loop().call_later(0.1, token.cancel, "test")
            return await orchestrator.execute_task_with_planning("plan this", cancel_token=token)

        started = time.monotonic()
        result = asyncio.run(scenario())

        assert result.status == CANCELLED
        assert time.monotonic() - started < 1
        assert len(backend.requests) == 1
        assert orchestrator.history == []
        assert orchestrator.turns == [result]
        assert events[-1].kind == CANCELLED
