"""Recovering text and tool-call invocations from realtime event bodies.

The realtime protocol has placed tool calls in several spots over time. Each
spot is handled by a named strategy; strategies run in priority order and the
first occurrence of a call id wins.
"""

import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ghostwriter.realtime.coercion import parse_arguments

_WHITESPACE = re.compile(r"\s+")

_CALL_ID_KEYS = ("call_id", "tool_call_id", "id")
_NAME_KEYS = ("name", "tool_name")
_TYPE_KEYS = ("type", "kind")
_CALL_TYPES = {"tool_call", "function_call"}


@dataclass
class ToolCallInvocation:
    id: str
    name: str
    arguments: dict[str, Any] | None
    response_id: str | None = None
    raw_arguments: Any = field(default=None, repr=False)

    @property
    def has_arguments(self) -> bool:
        return bool(self.arguments)


def sanitize_transcript(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def extract_text(value: Any) -> str | None:
    """Find speech/text content in an arbitrarily nested value.

    Strings are returned as is; lists join the text of their parts with spaces;
    mappings prefer ``text``, then ``transcript``, then recurse into ``content``.
    Returns None when nothing textual is present.
    """
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts = [part for part in (extract_text(item) for item in value) if part]
        return " ".join(parts) if parts else None
    if isinstance(value, Mapping):
        if isinstance(value.get("text"), str):
            return value["text"]
        if isinstance(value.get("transcript"), str):
            return value["transcript"]
        if "content" in value:
            return extract_text(value["content"])
    return None


def _first_string(node: Mapping, keys: Iterable[str]) -> str | None:
    for key in keys:
        value = node.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _raw_arguments(node: Mapping) -> Any:
    if "arguments" in node:
        return node["arguments"]
    if "args" in node:
        return node["args"]
    if isinstance(node.get("input"), Mapping):
        return node["input"]
    parameters = node.get("parameters")
    if isinstance(parameters, Mapping):
        if "arguments" in parameters:
            return parameters["arguments"]
        return parameters
    return None


def _as_invocation(node: Mapping, response_id: str | None) -> ToolCallInvocation | None:
    node_type = _first_string(node, _TYPE_KEYS)
    name = _first_string(node, _NAME_KEYS)
    call_id = _first_string(node, _CALL_ID_KEYS)
    if not (node_type in _CALL_TYPES or name):
        return None
    if not call_id or not name:
        return None
    raw = _raw_arguments(node)
    return ToolCallInvocation(
        id=call_id,
        name=name,
        arguments=parse_arguments(raw),
        response_id=response_id,
        raw_arguments=raw,
    )


def walk_tool_calls(root: Any, response_id: str | None = None) -> list[ToolCallInvocation]:
    """Depth-first search of ``root`` for tool-call shaped records.

    ``response_id`` is inherited by nested records unless one sets its own.
    Nodes are visited at most once.
    """
    found: list[ToolCallInvocation] = []
    visited: set[int] = set()

    def visit(node: Any, inherited: str | None) -> None:
        if not isinstance(node, (Mapping, list)) or id(node) in visited:
            return
        visited.add(id(node))
        if isinstance(node, list):
            for item in node:
                visit(item, inherited)
            return
        own = node.get("response_id")
        current = own if isinstance(own, str) and own else inherited
        invocation = _as_invocation(node, current)
        if invocation is not None:
            found.append(invocation)
        if "tool_calls" in node:
            visit(node["tool_calls"], current)
        for key, value in node.items():
            if key != "tool_calls":
                visit(value, current)

    visit(root, response_id)
    return found


def event_response_id(event: Mapping) -> str | None:
    response = event.get("response")
    if isinstance(response, Mapping) and isinstance(response.get("id"), str):
        return response["id"]
    value = event.get("response_id")
    return value if isinstance(value, str) and value else None


def from_response_output(event: Mapping) -> list[ToolCallInvocation]:
    response = event.get("response")
    if not isinstance(response, Mapping):
        return []
    return walk_tool_calls(response.get("output"), event_response_id(event))


def from_response_required_action(event: Mapping) -> list[ToolCallInvocation]:
    response = event.get("response")
    if not isinstance(response, Mapping):
        return []
    response_id = event_response_id(event)
    return walk_tool_calls(response.get("required_action"), response_id) + walk_tool_calls(
        response.get("required_actions"), response_id
    )


def from_required_action(event: Mapping) -> list[ToolCallInvocation]:
    response_id = event_response_id(event)
    return walk_tool_calls(event.get("required_action"), response_id) + walk_tool_calls(
        event.get("required_actions"), response_id
    )


def from_conversation_item(event: Mapping) -> list[ToolCallInvocation]:
    item = event.get("item")
    if not isinstance(item, Mapping):
        return []
    return walk_tool_calls(item, event_response_id(event))


def from_event_body(event: Mapping) -> list[ToolCallInvocation]:
    """Last resort: the whole event, minus the echoed session config."""
    body = {key: value for key, value in event.items() if key != "session"}
    return walk_tool_calls(body, event_response_id(event))


ToolCallStrategy = Callable[[Mapping], list[ToolCallInvocation]]

TOOL_CALL_STRATEGIES: tuple[tuple[str, ToolCallStrategy], ...] = (
    ("response_output", from_response_output),
    ("response_required_action", from_response_required_action),
    ("required_action", from_required_action),
    ("conversation_item", from_conversation_item),
    ("event_body", from_event_body),
)


def is_delta_event(event_type: str | None) -> bool:
    return bool(event_type) and ".delta" in event_type


def extract_tool_calls(event: Mapping) -> list[ToolCallInvocation]:
    """All tool calls in one event, deduplicated by call id.

    Streaming delta events only carry argument fragments and are skipped.
    A later strategy may still supply the response id an earlier one lacked.
    """
    if is_delta_event(event.get("type")):
        return []
    calls: dict[str, ToolCallInvocation] = {}
    for _, strategy in TOOL_CALL_STRATEGIES:
        for invocation in strategy(event):
            existing = calls.get(invocation.id)
            if existing is None:
                calls[invocation.id] = invocation
            elif existing.response_id is None and invocation.response_id:
                existing.response_id = invocation.response_id
    return list(calls.values())
