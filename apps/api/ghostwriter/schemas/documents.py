from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from ghostwriter.schemas.common import CamelModel

SectionStatus = Literal["drafting", "needs_detail", "complete"]
SECTION_STATUSES: tuple[str, ...] = ("drafting", "needs_detail", "complete")
DraftJobStatus = Literal["queued", "running", "complete", "error"]


class SectionInput(CamelModel):
    heading: str
    content: str = ""
    status: SectionStatus | None = None
    order: int | None = None


class OutlineOperation(CamelModel):
    action: Literal["add", "rename", "reorder", "remove"]
    heading: str
    new_heading: str | None = None
    position: int | None = None
    status: SectionStatus | None = None


class SectionOut(CamelModel):
    id: str
    heading: str
    content: str
    order: int
    status: str
    version: int


class DocumentOut(CamelModel):
    id: str
    project_id: str
    latest_draft_markdown: str
    summary: str | None = None
    status: str
    updated_at: datetime


class SectionProgress(CamelModel):
    heading: str
    status: str


class WorkspaceProgress(CamelModel):
    word_count: int
    section_statuses: list[SectionProgress]


class Workspace(CamelModel):
    document: DocumentOut | None = None
    sections: list[SectionOut] = []
    progress: WorkspaceProgress


class DraftJobOut(CamelModel):
    id: str
    project_id: str
    session_id: str | None = None
    status: str
    summary: str | None = None
    urgency: str | None = None
    message_pointers: list[str] = []
    transcript_anchors: list[str] = []
    prompt_context: Any = None
    attempt_count: int = 0
    error: str | None = None
    created_at: datetime
    updated_at: datetime


class DraftOutcome(CamelModel):
    processed: bool
    job_id: str | None = None
    project_id: str | None = None
    status: DraftJobStatus | None = None
    summary: str | None = None
    error: str | None = None
    attempt: int | None = None


class DraftResponse(BaseModel):
    """Structured output the drafting model must return."""

    markdown: str = Field(description="Full updated document in Markdown")
    sections: list[SectionInput] = Field(default_factory=list)
    summary: str = Field(description="One or two sentences describing what changed")
