import re
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from ghostwriter.realtime.modes import SessionMode
from ghostwriter.schemas.documents import SECTION_STATUSES
from ghostwriter.schemas.notes import NOTE_TYPES, TODO_STATUSES
from ghostwriter.schemas.projects import BLUEPRINT_FIELDS

_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_SEPARATORS = re.compile(r"[\s\-]+")


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    parameters: Mapping[str, Any]

    def as_payload(self) -> dict[str, Any]:
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": _thaw(self.parameters),
        }


def _freeze(value: Any) -> Any:
    if isinstance(value, dict):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(item) for item in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [_thaw(item) for item in value]
    return value


def _tool(name: str, description: str, properties: dict, required: list[str] | None = None) -> ToolDefinition:
    parameters: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        parameters["required"] = required
    return ToolDefinition(name=name, description=description, parameters=_freeze(parameters))


_PROJECT_ID = {"type": "string", "description": "Project identifier returned by list_projects"}
_MESSAGE_POINTERS = {
    "type": "array",
    "items": {"type": "string"},
    "description": "Transcript message ids or item ids the request is based on",
}

_CATALOG = (
    _tool(
        "list_projects",
        "List the user's most recently updated projects.",
        {"limit": {"type": "integer", "minimum": 1, "maximum": 50}},
    ),
    _tool(
        "get_project",
        "Fetch one project with its blueprint and missing blueprint fields.",
        {"projectId": _PROJECT_ID},
    ),
    _tool(
        "create_project",
        "Create a new writing project once the title and content type are known.",
        {
            "title": {"type": "string"},
            "contentType": {
                "type": "string",
                "description": "e.g. article, blog_post, newsletter, book_chapter, speech",
            },
            "goal": {"type": "string"},
        },
        ["title", "contentType"],
    ),
    _tool(
        "update_project_metadata",
        "Update a project's title, content type, goal or status.",
        {
            "projectId": _PROJECT_ID,
            "title": {"type": "string"},
            "contentType": {"type": "string"},
            "goal": {"type": "string"},
            "status": {"type": "string", "enum": ["draft", "active", "archived", "intake"]},
        },
    ),
    _tool(
        "sync_blueprint_field",
        "Save one blueprint field as soon as the user has answered it.",
        {
            "projectId": _PROJECT_ID,
            "field": {"type": "string", "enum": list(BLUEPRINT_FIELDS)},
            "value": {
                "description": "Field value. voiceGuardrails accepts {tone, structure, content}.",
            },
            "transcriptId": {"type": "string"},
        },
        ["field", "value"],
    ),
    _tool(
        "commit_blueprint",
        "Mark the blueprint complete once every required field is captured.",
        {"projectId": _PROJECT_ID},
    ),
    _tool(
        "assign_project_to_session",
        "Bind the live session to a project.",
        {"projectId": _PROJECT_ID},
        ["projectId"],
    ),
    _tool(
        "list_notes",
        "List recent notes captured for the project.",
        {"projectId": _PROJECT_ID, "limit": {"type": "integer", "minimum": 1, "maximum": 100}},
    ),
    _tool(
        "list_todos",
        "List TODOs for the project, open items first.",
        {"projectId": _PROJECT_ID},
    ),
    _tool(
        "create_note",
        "Capture a fact, story, style cue, voice cue, TODO or summary.",
        {
            "projectId": _PROJECT_ID,
            "noteType": {"type": "string", "enum": list(NOTE_TYPES)},
            "content": {"type": "string"},
            "sourceMessageIds": _MESSAGE_POINTERS,
            "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        },
        ["noteType", "content"],
    ),
    _tool(
        "update_todo_status",
        "Move a TODO between open, in_review and resolved.",
        {
            "todoId": {"type": "string"},
            "status": {"type": "string", "enum": list(TODO_STATUSES)},
        },
        ["todoId", "status"],
    ),
    _tool(
        "record_transcript_pointer",
        "Link the blueprint to the transcript moment it came from.",
        {
            "projectId": _PROJECT_ID,
            "messageId": {"type": "string"},
            "transcriptId": {"type": "string"},
        },
    ),
    _tool(
        "get_document_workspace",
        "Read the current draft, its sections and progress.",
        {"projectId": _PROJECT_ID},
    ),
    _tool(
        "apply_document_edits",
        "Replace the whole document with dictated Markdown and sections.",
        {
            "projectId": _PROJECT_ID,
            "markdown": {"type": "string"},
            "summary": {"type": "string"},
            "sections": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "heading": {"type": "string"},
                        "content": {"type": "string"},
                        "status": {"type": "string", "enum": list(SECTION_STATUSES)},
                        "order": {"type": "integer"},
                    },
                    "required": ["heading"],
                },
            },
        },
        ["markdown"],
    ),
    _tool(
        "manage_outline",
        "Add, rename, reorder or remove document sections.",
        {
            "projectId": _PROJECT_ID,
            "operations": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "action": {"type": "string", "enum": ["add", "rename", "reorder", "remove"]},
                        "heading": {"type": "string"},
                        "newHeading": {"type": "string"},
                        "position": {"type": "integer"},
                        "status": {"type": "string", "enum": list(SECTION_STATUSES)},
                    },
                    "required": ["action", "heading"],
                },
            },
        },
        ["operations"],
    ),
    _tool(
        "queue_draft_update",
        "Ask the background ghostwriter to revise the draft. Returns immediately.",
        {
            "projectId": _PROJECT_ID,
            "urgency": {"type": "string", "enum": ["low", "normal", "high"]},
            "messagePointers": _MESSAGE_POINTERS,
            "transcriptAnchors": {"type": "array", "items": {"type": "string"}},
            "promptContext": {
                "description": "Extra guidance such as {activeSection, focus}",
            },
        },
    ),
)

TOOL_CATALOG: Mapping[str, ToolDefinition] = MappingProxyType({tool.name: tool for tool in _CATALOG})

_INTAKE_TOOLS = (
    "list_projects",
    "get_project",
    "create_project",
    "update_project_metadata",
    "sync_blueprint_field",
    "commit_blueprint",
    "assign_project_to_session",
)

TOOLSET_BY_MODE: Mapping[SessionMode, tuple[str, ...]] = MappingProxyType(
    {
        SessionMode.INTAKE: _INTAKE_TOOLS,
        SessionMode.BLUEPRINT: _INTAKE_TOOLS
        + (
            "list_notes",
            "list_todos",
            "create_note",
            "update_todo_status",
            "record_transcript_pointer",
            "get_document_workspace",
        ),
        SessionMode.GHOSTWRITING: (
            "get_project",
            "get_document_workspace",
            "manage_outline",
            "queue_draft_update",
            "apply_document_edits",
            "create_note",
            "list_notes",
            "list_todos",
            "update_todo_status",
            "record_transcript_pointer",
        ),
    }
)

TOOLS_ALLOWING_EMPTY_ARGS = frozenset(
    {"list_projects", "queue_draft_update", "get_project", "get_document_workspace"}
)


def normalize_tool_name(name: str) -> str:
    """``syncBlueprintField`` / ``sync-blueprint field`` -> ``sync_blueprint_field``."""
    snake = _CAMEL_BOUNDARY.sub(r"\1_\2", name.strip())
    return _SEPARATORS.sub("_", snake).lower()


def tools_for(mode: SessionMode) -> list[ToolDefinition]:
    return [TOOL_CATALOG[name] for name in TOOLSET_BY_MODE[mode]]


def is_tool_allowed(mode: SessionMode, name: str) -> bool:
    return normalize_tool_name(name) in TOOLSET_BY_MODE[mode]


def disallowed_tools(mode: SessionMode) -> list[str]:
    allowed = set(TOOLSET_BY_MODE[mode])
    return [name for name in TOOL_CATALOG if name not in allowed]


def disallowed_reason(mode: SessionMode, name: str) -> str:
    if mode is SessionMode.GHOSTWRITING:
        return (
            f'Tool "{name}" is disabled in ghostwriting mode. '
            "Use manage_outline for structure changes and queue_draft_update for content."
        )
    return f'Tool "{name}" is unavailable in {mode.value} mode.'


def tools_signature(mode: SessionMode) -> tuple[str, ...]:
    return TOOLSET_BY_MODE[mode]
