import pytest

from ghostwriter.realtime.coercion import coerce_string_list, parse_arguments
from ghostwriter.realtime.extraction import extract_text, extract_tool_calls, sanitize_transcript

CALL = {
    "type": "function_call",
    "call_id": "call_1",
    "name": "get_project",
    "arguments": '{"projectId": "p1"}',
}


@pytest.mark.parametrize(
    "event",
    [
        {"type": "response.done", "response": {"id": "resp_1", "output": [CALL]}},
        {
            "type": "response.required_action",
            "response": {"id": "resp_1", "required_action": {"submit_tool_outputs": {"tool_calls": [CALL]}}},
        },
        {"type": "response.required_action", "response_id": "resp_1", "required_action": {"tool_calls": [CALL]}},
        {"type": "conversation.item.created", "response_id": "resp_1", "item": CALL},
    ],
    ids=["response_output", "response_required_action", "top_level_required_action", "conversation_item"],
)
def test_equivalent_shapes_yield_one_invocation(event):
    calls = extract_tool_calls(event)
    assert len(calls) == 1
    call = calls[0]
    assert call.id == "call_1"
    assert call.name == "get_project"
    assert call.arguments == {"projectId": "p1"}
    assert call.response_id == "resp_1"


def test_delta_events_are_skipped():
    event = {
        "type": "response.function_call_arguments.delta",
        "call_id": "call_1",
        "name": "get_project",
        "delta": '{"proj',
    }
    assert extract_tool_calls(event) == []


def test_call_seen_twice_in_one_event_is_reported_once():
    event = {"type": "response.done", "item": CALL, "response": {"id": "resp_1", "output": [CALL]}}
    calls = extract_tool_calls(event)
    assert [call.id for call in calls] == ["call_1"]
    assert calls[0].response_id == "resp_1"


def test_call_id_prefers_call_id_over_item_id():
    event = {
        "type": "response.output_item.done",
        "response_id": "resp_2",
        "item": {"type": "function_call", "id": "item_9", "call_id": "call_9", "name": "list_projects", "arguments": "{}"},
    }
    assert extract_tool_calls(event)[0].id == "call_9"


def test_echoed_session_tools_are_not_calls():
    event = {
        "type": "session.updated",
        "session": {"tools": [{"type": "function", "name": "list_projects", "id": "tool_1"}]},
    }
    assert extract_tool_calls(event) == []


def test_arguments_still_streaming_are_none():
    event = {"type": "response.output_item.added", "response_id": "resp_3", "item": {**CALL, "arguments": ""}}
    call = extract_tool_calls(event)[0]
    assert call.arguments is None
    assert not call.has_arguments


def test_parse_arguments_shapes():
    assert parse_arguments({"a": 1}) == {"a": 1}
    assert parse_arguments("  ") is None
    assert parse_arguments('{"a": 1}') == {"a": 1}
    assert parse_arguments("[1, 2]") == {}
    assert parse_arguments("{not json") is None
    assert parse_arguments(42) is None


def test_coerce_string_list_accepts_json_arrays_and_lists():
    assert coerce_string_list('["a", "b"]') == ["a", "b"]
    assert coerce_string_list(["a", " ", "b"]) == ["a", "b"]
    assert coerce_string_list("item_1") == ["item_1"]
    assert coerce_string_list(None) == []


def test_extract_text_from_nested_content():
    content = [{"type": "input_text", "text": "Hello"}, {"type": "audio", "transcript": "world"}]
    assert extract_text({"content": content}) == "Hello world"
    assert extract_text({"content": [{"type": "audio"}]}) is None


def test_sanitize_transcript_collapses_whitespace():
    assert sanitize_transcript("  so \n the   idea ") == "so the idea"
