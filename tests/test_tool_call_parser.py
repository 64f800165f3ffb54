"""Tool directive extraction from free-form model replies."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from mosaic.tool_call_parser import extract_tool_calls, iter_object_spans


def names(calls):
    return [c.tool_name for c in calls]


class TestExtractToolCalls:

    def test_plain_text_has_no_calls(self):
        assert extract_tool_calls("plain text") == []
        assert extract_tool_calls("") == []

    def test_single_object(self):
        calls = extract_tool_calls('{"tool": "read_file", "parameters": {"path": "setup.py"}}')
        assert names(calls) == ["read_file"]
        assert calls[0].parameters == {"path": "setup.py"}

    def test_object_in_fenced_block_with_prose(self):
        reply = """Let me look at the config first.

```json
{"tool": "read_file", "parameters": {"path": "config/app.json"}}
```
"""
        calls = extract_tool_calls(reply)
        assert names(calls) == ["read_file"]

    def test_array_of_two_in_order(self):
        reply = ('[{"tool": "list_directory", "parameters": {"path": "."}}, '
                 '{"tool": "read_file", "parameters": {"path": "a.txt"}}]')
        calls = extract_tool_calls(reply)
        assert names(calls) == ["list_directory", "read_file"]

    def test_array_elements_need_parameters(self):
        reply = '[{"tool": "list_directory"}, {"tool": "read_file", "parameters": {"path": "a"}}]'
        assert names(extract_tool_calls(reply)) == ["read_file"]

    def test_array_objects_are_not_double_counted(self):
        reply = 'Plan:\n[{"tool": "a", "parameters": {}}, {"tool": "b", "parameters": {}}]\nDone.'
        assert names(extract_tool_calls(reply)) == ["a", "b"]

    def test_independent_objects_in_source_order(self):
        reply = ('First {"tool": "search_code", "parameters": {"pattern": "def main"}} '
                 'and then {"tool": "read_file", "parameters": {"path": "main.py"}}.')
        assert names(extract_tool_calls(reply)) == ["search_code", "read_file"]

    def test_object_without_parameters_defaults_to_empty(self):
        calls = extract_tool_calls('{"tool": "list_directory"}')
        assert names(calls) == ["list_directory"]
        assert calls[0].parameters == {}

    def test_malformed_json_yields_nothing(self):
        assert extract_tool_calls('{"tool": "read_file", "parameters": {"path": }') == []
        assert extract_tool_calls('[{"tool": "read_file", "parameters": ]') == []

    def test_malformed_span_is_skipped(self):
        reply = '{"tool": broken} then {"tool": "file_exists", "parameters": {"path": "x"}}'
        assert names(extract_tool_calls(reply)) == ["file_exists"]

    def test_braces_inside_strings(self):
        reply = '{"tool": "write_file", "parameters": {"path": "a.js", "content": "if (x) { y(); }"}}'
        calls = extract_tool_calls(reply)
        assert calls[0].parameters["content"] == "if (x) { y(); }"

    def test_nested_directive_inside_wrapper_object(self):
        reply = '{"thought": "need data", "action": {"tool": "read_file", "parameters": {"path": "b"}}}'
        assert names(extract_tool_calls(reply)) == ["read_file"]

    def test_brackets_in_prose_fall_back_to_objects(self):
        reply = 'Options [a] or [b]: {"tool": "read_file", "parameters": {"path": "c"}}'
        assert names(extract_tool_calls(reply)) == ["read_file"]

    def test_ids_are_unique(self):
        reply = '[{"tool": "a", "parameters": {}}, {"tool": "a", "parameters": {}}]'
        calls = extract_tool_calls(reply)
        assert len({c.id for c in calls}) == 2
        assert all(c.id.startswith("call_") for c in calls)

    def test_non_object_parameters_rejected(self):
        assert extract_tool_calls('{"tool": "read_file", "parameters": "setup.py"}') == []


def test_iter_object_spans_ignores_quoted_braces():
    text = 'x {"a": "}"} y {"b": 1}'
    spans = list(iter_object_spans(text))
    assert [text[s:e] for s, e in spans] == ['{"a": "}"}', '{"b": 1}']
