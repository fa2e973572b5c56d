from collections.abc import Sequence

from sqlalchemy import case, select
from sqlalchemy.ext.asyncio import AsyncSession

from ghostwriter.models.note import Note, Todo
from ghostwriter.models.session import utcnow
from ghostwriter.schemas.notes import NOTE_TYPES, TODO_STATUSES, NoteCreated, NoteOut, TodoOut


class TodoNotFound(LookupError):
    def __init__(self, todo_id: str) -> None:
        super().__init__(f"TODO {todo_id} not found")
        self.todo_id = todo_id


_TODO_ORDER = case(
    {status: index for index, status in enumerate(TODO_STATUSES)},
    value=Todo.status,
    else_=len(TODO_STATUSES),
)


class NoteService:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

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
        if note_type not in NOTE_TYPES:
            raise ValueError(f"Unsupported note type {note_type!r}")
        note = Note(
            project_id=project_id,
            session_id=session_id,
            note_type=note_type,
            content=content,
            source_message_ids=list(source_message_ids),
            confidence=confidence,
        )
        self.db.add(note)
        await self.db.flush()
        todo = None
        if note_type == "todo":
            todo = Todo(project_id=project_id, note_id=note.id, label=content, status="open")
            self.db.add(todo)
        await self.db.commit()
        return NoteCreated(
            note=NoteOut.model_validate(note),
            todo=TodoOut.model_validate(todo) if todo is not None else None,
        )

    async def list_notes(self, project_id: str, limit: int = 50) -> list[NoteOut]:
        result = await self.db.execute(
            select(Note)
            .where(Note.project_id == project_id)
            .order_by(Note.created_at.desc())
            .limit(limit)
        )
        return [NoteOut.model_validate(note) for note in result.scalars().all()]

    async def list_todos(self, project_id: str) -> list[TodoOut]:
        result = await self.db.execute(
            select(Todo)
            .where(Todo.project_id == project_id)
            .order_by(_TODO_ORDER, Todo.created_at.desc())
        )
        return [TodoOut.model_validate(todo) for todo in result.scalars().all()]

    async def update_todo_status(self, todo_id: str, status: str) -> TodoOut:
        if status not in TODO_STATUSES:
            raise ValueError(f"Unsupported TODO status {status!r}")
        todo = await self.db.get(Todo, todo_id)
        if todo is None:
            raise TodoNotFound(todo_id)
        todo.status = status
        if status == "resolved":
            todo.resolved_at = utcnow()
            if todo.note_id:
                note = await self.db.get(Note, todo.note_id)
                if note is not None:
                    note.resolved = True
        else:
            todo.resolved_at = None
        await self.db.commit()
        return TodoOut.model_validate(todo)
