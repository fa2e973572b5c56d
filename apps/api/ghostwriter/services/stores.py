"""Collaborator implementations backed by the SQL services.

Every call runs in its own short-lived database session so the realtime core
never holds a session across awaits on the network.
"""

from collections.abc import Sequence
from typing import Any

from sqlalchemy.ext.asyncio import async_sessionmaker

from ghostwriter.realtime.collaborators import Collaborators
from ghostwriter.schemas.documents import DraftJobOut, OutlineOperation, SectionInput, Workspace
from ghostwriter.schemas.notes import NoteCreated, NoteOut, TodoOut
from ghostwriter.schemas.projects import ProjectBundle, VoiceGuardrails
from ghostwriter.services.document_service import DocumentService
from ghostwriter.services.drafting_service import DraftQueueWorker
from ghostwriter.services.llm_client import LLMClient
from ghostwriter.services.note_service import NoteService
from ghostwriter.services.project_service import ProjectService
from ghostwriter.services.session_service import SessionService
from ghostwriter.services.transcript_service import TranscriptService


class _SqlStore:
    service_class: type

    def __init__(self, sessionmaker: async_sessionmaker) -> None:
        self._sessionmaker = sessionmaker

    async def _call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        async with self._sessionmaker() as db:
            return await getattr(self.service_class(db), method)(*args, **kwargs)


class SqlProjectStore(_SqlStore):
    service_class = ProjectService

    async def list_projects(self, limit: int = 20) -> list[ProjectBundle]:
        return await self._call("list_projects", limit)

    async def get_project(self, project_id: str) -> ProjectBundle | None:
        return await self._call("get_project", project_id)

    async def create_project(self, *, title: str, content_type: str, goal: str | None = None) -> ProjectBundle:
        return await self._call("create_project", title=title, content_type=content_type, goal=goal)

    async def update_project_metadata(self, project_id: str, **changes: str | None) -> ProjectBundle:
        return await self._call("update_project_metadata", project_id, **changes)

    async def sync_blueprint_field(
        self,
        project_id: str,
        *,
        field: str,
        value: str | VoiceGuardrails | None,
        session_id: str | None = None,
        message_id: str | None = None,
    ) -> ProjectBundle:
        return await self._call(
            "sync_blueprint_field",
            project_id,
            field=field,
            value=value,
            session_id=session_id,
            message_id=message_id,
        )

    async def commit_blueprint(self, project_id: str, *, session_id: str | None = None) -> ProjectBundle:
        return await self._call("commit_blueprint", project_id, session_id=session_id)

    async def record_transcript_pointer(
        self,
        project_id: str,
        *,
        session_id: str,
        message_id: str | None = None,
        item_id: str | None = None,
    ) -> ProjectBundle:
        return await self._call(
            "record_transcript_pointer", project_id, session_id=session_id, message_id=message_id, item_id=item_id
        )


class SqlSessionStore(_SqlStore):
    service_class = SessionService

    async def create_session(
        self, *, project_id: str | None, noise_profile: str, language: str, defer_project: bool = False
    ) -> str:
        return await self._call(
            "create_session",
            project_id=project_id,
            noise_profile=noise_profile,
            language=language,
            defer_project=defer_project,
        )

    async def update_realtime_id(self, session_id: str, realtime_session_id: str) -> None:
        await self._call("update_realtime_id", session_id, realtime_session_id)

    async def complete_session(self, session_id: str) -> None:
        await self._call("complete_session", session_id)

    async def set_noise_profile(self, session_id: str, noise_profile: str) -> None:
        await self._call("set_noise_profile", session_id, noise_profile)

    async def assign_project(self, session_id: str, project_id: str) -> None:
        await self._call("assign_project", session_id, project_id)

    async def set_language(self, session_id: str, language: str) -> None:
        await self._call("set_language", session_id, language)


class SqlTranscriptStore(_SqlStore):
    service_class = TranscriptService

    async def append_message(
        self, *, session_id: str, speaker: str, transcript: str, timestamp: float, event_id: str | None = None
    ) -> str:
        return await self._call(
            "append_message",
            session_id=session_id,
            speaker=speaker,
            transcript=transcript,
            timestamp=timestamp,
            event_id=event_id,
        )

    async def save_transcript_chunk(self, *, project_id: str, session_id: str, chunk: dict[str, Any]) -> None:
        await self._call("save_transcript_chunk", project_id=project_id, session_id=session_id, chunk=chunk)

    async def finalize_transcript(self, *, project_id: str, session_id: str) -> None:
        await self._call("finalize_transcript", project_id=project_id, session_id=session_id)


class SqlNoteStore(_SqlStore):
    service_class = NoteService

    async def create_note(
        self,
        project_id: str,
        *,
        note_type: str,
        content: str,
        session_id: str | None = None,
        source_message_ids: Sequence[str] = (),
        confidence: float | None = None,
    ) -> NoteCreated:
        return await self._call(
            "create_note",
            project_id,
            note_type=note_type,
            content=content,
            session_id=session_id,
            source_message_ids=source_message_ids,
            confidence=confidence,
        )

    async def list_notes(self, project_id: str, limit: int = 50) -> list[NoteOut]:
        return await self._call("list_notes", project_id, limit)

    async def list_todos(self, project_id: str) -> list[TodoOut]:
        return await self._call("list_todos", project_id)

    async def update_todo_status(self, todo_id: str, status: str) -> TodoOut:
        return await self._call("update_todo_status", todo_id, status)


class SqlDocumentStore(_SqlStore):
    service_class = DocumentService

    async def get_workspace(self, project_id: str) -> Workspace:
        return await self._call("get_workspace", project_id)

    async def apply_edits(
        self, project_id: str, *, markdown: str, sections: Sequence[SectionInput], summary: str | None = None
    ) -> Workspace:
        return await self._call("apply_edits", project_id, markdown=markdown, sections=sections, summary=summary)

    async def manage_outline(self, project_id: str, operations: Sequence[OutlineOperation]) -> Workspace:
        return await self._call("manage_outline", project_id, operations)

    async def enqueue_draft_update(
        self,
        project_id: str,
        *,
        session_id: str | None,
        urgency: str | None = None,
        summary: str | None = None,
        message_pointers: Sequence[str] = (),
        transcript_anchors: Sequence[str] = (),
        prompt_context: Any = None,
    ) -> DraftJobOut:
        return await self._call(
            "enqueue_draft_update",
            project_id,
            session_id=session_id,
            urgency=urgency,
            summary=summary,
            message_pointers=message_pointers,
            transcript_anchors=transcript_anchors,
            prompt_context=prompt_context,
        )


def build_collaborators(sessionmaker: async_sessionmaker, llm_client: LLMClient | None = None) -> Collaborators:
    return Collaborators(
        projects=SqlProjectStore(sessionmaker),
        sessions=SqlSessionStore(sessionmaker),
        transcripts=SqlTranscriptStore(sessionmaker),
        notes=SqlNoteStore(sessionmaker),
        documents=SqlDocumentStore(sessionmaker),
        drafts=DraftQueueWorker(sessionmaker, llm_client or LLMClient()),
    )
