from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import structlog
from pydantic.alias_generators import to_camel

from ghostwriter.realtime.coercion import (
    clamp_int,
    coerce_choice,
    coerce_confidence,
    coerce_id,
    coerce_note_type,
    coerce_outline_operations,
    coerce_prompt_context,
    coerce_sections,
    coerce_string_list,
    coerce_text,
    coerce_todo_status,
    coerce_voice_guardrails,
)
from ghostwriter.realtime.collaborators import Collaborators
from ghostwriter.realtime.context import SessionContext
from ghostwriter.realtime.drafts import DraftQueueCoordinator
from ghostwriter.realtime.errors import MissingRequiredArgument, ToolCallError, UnresolvedMessagePointer
from ghostwriter.realtime.resolver import ProjectIdResolver
from ghostwriter.schemas.documents import Workspace
from ghostwriter.schemas.projects import BLUEPRINT_FIELDS, ProjectBundle

logger = structlog.get_logger()

ProjectListener = Callable[[ProjectBundle], Awaitable[None]]
WorkspaceListener = Callable[[Workspace], Awaitable[None]]

_POINTER_KEYS = (
    "messageId",
    "message_id",
    "transcriptId",
    "transcript_id",
    "messagePointer",
    "message_pointer",
    "itemId",
    "item_id",
    "pointer",
)
_URGENCIES = ("low", "normal", "high")
_PROJECT_STATUSES = ("draft", "active", "archived", "intake")


def _first(args: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if args.get(key) is not None:
            return args[key]
    return None


def _require(value: Any, argument: str) -> Any:
    if value is None:
        raise MissingRequiredArgument(argument)
    return value


class ToolHandlers:
    """One coroutine per catalog tool, each performing a single collaborator call."""

    def __init__(
        self,
        context: SessionContext,
        collaborators: Collaborators,
        resolver: ProjectIdResolver,
        drafts: DraftQueueCoordinator,
        *,
        listing_limit: int = 20,
        on_project_change: ProjectListener | None = None,
        on_workspace_change: WorkspaceListener | None = None,
    ) -> None:
        self.context = context
        self.stores = collaborators
        self.resolver = resolver
        self.drafts = drafts
        self.listing_limit = listing_limit
        self.on_project_change = on_project_change
        self.on_workspace_change = on_workspace_change
        self._handlers: dict[str, Callable[[dict[str, Any], str], Awaitable[Any]]] = {
            "list_projects": self.list_projects,
            "get_project": self.get_project,
            "create_project": self.create_project,
            "update_project_metadata": self.update_project_metadata,
            "sync_blueprint_field": self.sync_blueprint_field,
            "commit_blueprint": self.commit_blueprint,
            "assign_project_to_session": self.assign_project_to_session,
            "list_notes": self.list_notes,
            "list_todos": self.list_todos,
            "create_note": self.create_note,
            "update_todo_status": self.update_todo_status,
            "record_transcript_pointer": self.record_transcript_pointer,
            "get_document_workspace": self.get_document_workspace,
            "apply_document_edits": self.apply_document_edits,
            "manage_outline": self.manage_outline,
            "queue_draft_update": self.queue_draft_update,
        }

    async def execute(self, name: str, args: dict[str, Any], tool_call_id: str) -> Any:
        handler = self._handlers.get(name)
        if handler is None:
            raise ToolCallError(f'Unknown tool "{name}"')
        return await handler(args, tool_call_id)

    def _require_session(self) -> str:
        session_id = self.context.session_id
        if not session_id:
            raise MissingRequiredArgument("sessionId")
        return session_id

    def _durable_message_id(self, candidates: list[str]) -> str | None:
        for candidate in candidates:
            try:
                return self.context.pointers.require(candidate)
            except UnresolvedMessagePointer as exc:
                logger.debug("message_pointer_unresolved", pointer=exc.pointer)
        return None

    async def _project_changed(self, bundle: ProjectBundle) -> dict[str, Any]:
        if self.on_project_change is not None and bundle.project_id == self.context.project_id:
            await self.on_project_change(bundle)
        return bundle.to_wire()

    async def _workspace_changed(self, workspace: Workspace) -> dict[str, Any]:
        if self.on_workspace_change is not None:
            await self.on_workspace_change(workspace)
        return workspace.to_wire()

    async def list_projects(self, args: dict[str, Any], tool_call_id: str) -> dict[str, Any]:
        limit = clamp_int(args.get("limit"), self.listing_limit, 1, 50)
        bundles = await self.stores.projects.list_projects(limit)
        self.context.cached_projects = list(bundles)
        return {
            "projects": [bundle.to_wire() for bundle in bundles],
            "count": len(bundles),
        }

    async def get_project(self, args: dict[str, Any], tool_call_id: str) -> dict[str, Any]:
        project_id = self.resolver.resolve(args)
        bundle = await self.stores.projects.get_project(project_id)
        if bundle is None:
            raise ToolCallError(f"Project {project_id} not found")
        self.context.cached_projects = [bundle]
        return await self._project_changed(bundle)

    async def create_project(self, args: dict[str, Any], tool_call_id: str) -> dict[str, Any]:
        title = _require(coerce_text(args.get("title")), "title")
        content_type = _require(
            coerce_text(_first(args, "contentType", "content_type")), "contentType"
        )
        bundle = await self.stores.projects.create_project(
            title=title, content_type=content_type, goal=coerce_text(args.get("goal"))
        )
        self.context.cached_projects = [bundle, *self.context.cached_projects]
        logger.info("project_created", project_id=bundle.project_id)
        return bundle.to_wire()

    async def update_project_metadata(self, args: dict[str, Any], tool_call_id: str) -> dict[str, Any]:
        project_id = self.resolver.resolve(args, ignore=("title", "name"))
        changes = {
            "title": coerce_text(args.get("title")),
            "content_type": coerce_text(_first(args, "contentType", "content_type")),
            "goal": coerce_text(args.get("goal")),
            "status": coerce_choice(args.get("status"), _PROJECT_STATUSES),
        }
        if not any(value is not None for value in changes.values()):
            raise MissingRequiredArgument("title, contentType, goal or status")
        bundle = await self.stores.projects.update_project_metadata(project_id, **changes)
        return await self._project_changed(bundle)

    async def sync_blueprint_field(self, args: dict[str, Any], tool_call_id: str) -> dict[str, Any]:
        project_id = self.resolver.resolve(args, ignore=("field", "value"))
        raw_field = _require(coerce_text(args.get("field")), "field")
        field = raw_field if raw_field in BLUEPRINT_FIELDS else to_camel(raw_field)
        if field not in BLUEPRINT_FIELDS:
            raise ToolCallError(f"Unknown blueprint field {raw_field!r}")
        if "value" not in args:
            raise MissingRequiredArgument("value")
        if field == "voiceGuardrails":
            value = coerce_voice_guardrails(args["value"])
        else:
            value = coerce_text(args["value"])
        bundle = await self.stores.projects.sync_blueprint_field(
            project_id,
            field=field,
            value=value,
            session_id=self.context.session_id,
            message_id=self.context.pointers.resolve(_first(args, "transcriptId", "messageId")),
        )
        return await self._project_changed(bundle)

    async def commit_blueprint(self, args: dict[str, Any], tool_call_id: str) -> dict[str, Any]:
        project_id = self.resolver.resolve(args)
        bundle = await self.stores.projects.commit_blueprint(
            project_id, session_id=self.context.session_id
        )
        return await self._project_changed(bundle)

    async def assign_project_to_session(self, args: dict[str, Any], tool_call_id: str) -> dict[str, Any]:
        session_id = self._require_session()
        project_id = self.resolver.resolve(args)
        bundle = await self.stores.projects.get_project(project_id)
        if bundle is None:
            raise ToolCallError(f"Project {project_id} not found")
        await self.stores.sessions.assign_project(session_id, project_id)
        if self.context.record is not None:
            self.context.record.project_id = project_id
        logger.info("session_project_assigned", session_id=session_id, project_id=project_id)
        return {
            "sessionId": session_id,
            "projectId": project_id,
            "project": await self._project_changed(bundle),
        }

    async def list_notes(self, args: dict[str, Any], tool_call_id: str) -> dict[str, Any]:
        project_id = self.resolver.resolve(args)
        limit = clamp_int(args.get("limit"), 20, 1, 100)
        notes = await self.stores.notes.list_notes(project_id, limit)
        return {"projectId": project_id, "notes": [note.to_wire() for note in notes]}

    async def list_todos(self, args: dict[str, Any], tool_call_id: str) -> dict[str, Any]:
        project_id = self.resolver.resolve(args)
        todos = await self.stores.notes.list_todos(project_id)
        return {"projectId": project_id, "todos": [todo.to_wire() for todo in todos]}

    async def create_note(self, args: dict[str, Any], tool_call_id: str) -> dict[str, Any]:
        project_id = self.resolver.resolve(args, ignore=("content",))
        note_type = _require(coerce_note_type(_first(args, "noteType", "note_type", "type")), "noteType")
        content = _require(coerce_text(args.get("content")), "content")
        pointers = coerce_string_list(
            _first(args, "sourceMessageIds", "source_message_ids", "messagePointers", "messageIds")
        )
        resolved, unresolved = self.context.pointers.partition(pointers)
        created = await self.stores.notes.create_note(
            project_id,
            note_type=note_type,
            content=content,
            session_id=self.context.session_id,
            source_message_ids=resolved,
            confidence=coerce_confidence(args.get("confidence")),
        )
        result = created.to_wire()
        if unresolved:
            result["unresolvedMessagePointers"] = unresolved
        return result

    async def update_todo_status(self, args: dict[str, Any], tool_call_id: str) -> dict[str, Any]:
        todo_id = _require(coerce_id(_first(args, "todoId", "todo_id", "id")), "todoId")
        status = _require(coerce_todo_status(args.get("status")), "status")
        todo = await self.stores.notes.update_todo_status(todo_id, status)
        return todo.to_wire()

    async def record_transcript_pointer(self, args: dict[str, Any], tool_call_id: str) -> dict[str, Any]:
        session_id = self._require_session()
        project_id = self.resolver.resolve(args, ignore=_POINTER_KEYS)
        candidates = [
            text
            for text in (coerce_text(args.get(key)) for key in _POINTER_KEYS)
            if text
        ]
        candidates.extend(coerce_string_list(_first(args, "messagePointers", "message_pointers")))
        message_id = self._durable_message_id(candidates)
        if message_id is None and not candidates:
            return {"skipped": True, "reason": "transcript_not_persisted_yet"}
        bundle = await self.stores.projects.record_transcript_pointer(
            project_id,
            session_id=session_id,
            message_id=message_id,
            item_id=None if message_id else candidates[0],
        )
        return await self._project_changed(bundle)

    async def get_document_workspace(self, args: dict[str, Any], tool_call_id: str) -> dict[str, Any]:
        project_id = self.resolver.resolve(args)
        workspace = await self.stores.documents.get_workspace(project_id)
        return await self._workspace_changed(workspace)

    async def apply_document_edits(self, args: dict[str, Any], tool_call_id: str) -> dict[str, Any]:
        project_id = self.resolver.resolve(args, ignore=("markdown", "sections", "summary"))
        markdown = args.get("markdown")
        if not isinstance(markdown, str) or not markdown.strip():
            raise MissingRequiredArgument("markdown")
        workspace = await self.stores.documents.apply_edits(
            project_id,
            markdown=markdown,
            sections=coerce_sections(args.get("sections")),
            summary=coerce_text(args.get("summary")),
        )
        return await self._workspace_changed(workspace)

    async def manage_outline(self, args: dict[str, Any], tool_call_id: str) -> dict[str, Any]:
        project_id = self.resolver.resolve(args, ignore=("operations", "operation"))
        raw = _first(args, "operations", "operation")
        operations = coerce_outline_operations(raw if raw is not None else args)
        if not operations:
            raise MissingRequiredArgument("operations")
        workspace = await self.stores.documents.manage_outline(project_id, operations)
        return await self._workspace_changed(workspace)

    async def queue_draft_update(self, args: dict[str, Any], tool_call_id: str) -> dict[str, Any]:
        project_id = self.resolver.resolve(
            args,
            ignore=(
                "messagePointers",
                "message_pointers",
                "transcriptAnchors",
                "transcript_anchors",
                "promptContext",
                "prompt_context",
                "context",
            ),
        )
        return await self.drafts.queue(
            project_id=project_id,
            tool_call_id=tool_call_id,
            urgency=coerce_choice(args.get("urgency"), _URGENCIES),
            message_pointers=coerce_string_list(_first(args, "messagePointers", "message_pointers")),
            transcript_anchors=coerce_string_list(
                _first(args, "transcriptAnchors", "transcript_anchors")
            ),
            prompt_context=coerce_prompt_context(
                _first(args, "promptContext", "prompt_context", "context")
            ),
        )
