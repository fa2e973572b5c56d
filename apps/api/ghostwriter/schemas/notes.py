from datetime import datetime
from typing import Literal

from ghostwriter.schemas.common import CamelModel

NoteType = Literal["fact", "story", "style", "voice", "todo", "summary"]
TodoStatus = Literal["open", "in_review", "resolved"]

NOTE_TYPES: tuple[str, ...] = ("fact", "story", "style", "voice", "todo", "summary")
TODO_STATUSES: tuple[str, ...] = ("open", "in_review", "resolved")


class NoteOut(CamelModel):
    id: str
    project_id: str
    session_id: str | None = None
    note_type: str
    content: str
    source_message_ids: list[str] = []
    confidence: float | None = None
    resolved: bool = False
    created_at: datetime


class TodoOut(CamelModel):
    id: str
    project_id: str
    note_id: str | None = None
    label: str
    status: str
    created_at: datetime
    resolved_at: datetime | None = None


class NoteCreated(CamelModel):
    note: NoteOut
    todo: TodoOut | None = None
