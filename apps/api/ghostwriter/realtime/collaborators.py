"""Interfaces the realtime core consumes. Implementations live in ``ghostwriter.services``."""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from ghostwriter.schemas.documents import (
    DraftJobOut,
    DraftOutcome,
    OutlineOperation,
    SectionInput,
    Workspace,
)
from ghostwriter.schemas.notes import NoteCreated, NoteOut, TodoOut
from ghostwriter.schemas.projects import ProjectBundle, VoiceGuardrails


class ProjectStore(Protocol):
    async def list_projects(self, limit: int = 20) -> list[ProjectBundle]: ...

    async def get_project(self, project_id: str) -> ProjectBundle | None: ...

    async def create_project(
        self, *, title: str, content_type: str, goal: str | None = None
    ) -> ProjectBundle: ...

    async def update_project_metadata(
        self,
        project_id: str,
        *,
        title: str | None = None,
        content_type: str | None = None,
        goal: str | None = None,
        status: str | None = None,
    ) -> ProjectBundle: ...

    async def sync_blueprint_field(
        self,
        project_id: str,
        *,
        field: str,
        value: str | VoiceGuardrails | None,
        session_id: str | None = None,
        message_id: str | None = None,
    ) -> ProjectBundle: ...

    async def commit_blueprint(
        self, project_id: str, *, session_id: str | None = None
    ) -> ProjectBundle: ...

    async def record_transcript_pointer(
        self,
        project_id: str,
        *,
        session_id: str,
        message_id: str | None = None,
        item_id: str | None = None,
    ) -> ProjectBundle: ...


class SessionStore(Protocol):
    async def create_session(
        self,
        *,
        project_id: str | None,
        noise_profile: str,
        language: str,
        defer_project: bool = False,
    ) -> str: ...

    async def update_realtime_id(self, session_id: str, realtime_session_id: str) -> None: ...

    async def complete_session(self, session_id: str) -> None: ...

    async def set_noise_profile(self, session_id: str, noise_profile: str) -> None: ...

    async def assign_project(self, session_id: str, project_id: str) -> None: ...

    async def set_language(self, session_id: str, language: str) -> None: ...


class TranscriptStore(Protocol):
    async def append_message(
        self,
        *,
        session_id: str,
        speaker: str,
        transcript: str,
        timestamp: float,
        event_id: str | None = None,
    ) -> str: ...

    async def save_transcript_chunk(
        self, *, project_id: str, session_id: str, chunk: dict[str, Any]
    ) -> None: ...

    async def finalize_transcript(self, *, project_id: str, session_id: str) -> None: ...


class NoteStore(Protocol):
    async def create_note(
        self,
        project_id: str,
        *,
        note_type: str,
        content: str,
        session_id: str | None = None,
        source_message_ids: Sequence[str] = (),
        confidence: float | None = None,
    ) -> NoteCreated: ...

    async def list_notes(self, project_id: str, limit: int = 50) -> list[NoteOut]: ...

    async def list_todos(self, project_id: str) -> list[TodoOut]: ...

    async def update_todo_status(self, todo_id: str, status: str) -> TodoOut: ...


class DocumentStore(Protocol):
    async def get_workspace(self, project_id: str) -> Workspace: ...

    async def apply_edits(
        self,
        project_id: str,
        *,
        markdown: str,
        sections: Sequence[SectionInput],
        summary: str | None = None,
    ) -> Workspace: ...

    async def manage_outline(
        self, project_id: str, operations: Sequence[OutlineOperation]
    ) -> Workspace: ...

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
    ) -> DraftJobOut: ...


class DraftWorker(Protocol):
    async def claim_job(self, job_id: str) -> DraftJobOut | None: ...

    async def run_job(self, job: DraftJobOut) -> DraftOutcome: ...


@dataclass
class Collaborators:
    projects: ProjectStore
    sessions: SessionStore
    transcripts: TranscriptStore
    notes: NoteStore
    documents: DocumentStore
    drafts: DraftWorker
