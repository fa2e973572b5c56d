from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ghostwriter.models.message import Message, ProjectTranscript
from ghostwriter.models.session import utcnow


def merge_chunk(items: list[dict[str, Any]], chunk: dict[str, Any]) -> list[dict[str, Any]]:
    """Merge ``chunk`` into ``items`` by item id, keeping the earliest createdAt."""
    item_id = chunk.get("itemId")
    merged = [dict(item) for item in items]
    for index, item in enumerate(merged):
        if item_id is not None and item.get("itemId") == item_id:
            combined = {**item, **{key: value for key, value in chunk.items() if value is not None}}
            created = [value for value in (item.get("createdAt"), chunk.get("createdAt")) if value is not None]
            if created:
                combined["createdAt"] = min(created)
            merged[index] = combined
            return merged
    merged.append(dict(chunk))
    return merged


class TranscriptService:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def append_message(
        self,
        *,
        session_id: str,
        speaker: str,
        transcript: str,
        timestamp: float,
        event_id: str | None = None,
    ) -> str:
        message = Message(
            session_id=session_id,
            speaker=speaker,
            transcript=transcript,
            timestamp=timestamp,
            tags=[f"event:{event_id}"] if event_id else [],
        )
        self.db.add(message)
        await self.db.commit()
        return message.id

    async def list_messages(self, session_id: str) -> list[Message]:
        result = await self.db.execute(
            select(Message).where(Message.session_id == session_id).order_by(Message.timestamp.asc())
        )
        return list(result.scalars().all())

    async def _transcript(self, project_id: str, session_id: str) -> ProjectTranscript | None:
        result = await self.db.execute(
            select(ProjectTranscript).where(
                ProjectTranscript.project_id == project_id,
                ProjectTranscript.session_id == session_id,
            )
        )
        return result.scalar_one_or_none()

    async def save_transcript_chunk(
        self, *, project_id: str, session_id: str, chunk: dict[str, Any]
    ) -> None:
        transcript = await self._transcript(project_id, session_id)
        if transcript is None:
            transcript = ProjectTranscript(project_id=project_id, session_id=session_id, items=[])
            self.db.add(transcript)
        transcript.items = merge_chunk(transcript.items or [], chunk)
        transcript.updated_at = utcnow()
        await self.db.commit()

    async def finalize_transcript(self, *, project_id: str, session_id: str) -> None:
        transcript = await self._transcript(project_id, session_id)
        if transcript is None:
            return
        transcript.finalized_at = utcnow()
        await self.db.commit()

    async def recent_excerpts(self, project_id: str, limit: int = 20) -> list[dict[str, Any]]:
        """The latest message items across the project's session transcripts."""
        result = await self.db.execute(
            select(ProjectTranscript)
            .where(ProjectTranscript.project_id == project_id)
            .order_by(ProjectTranscript.updated_at.desc())
            .limit(5)
        )
        items: list[dict[str, Any]] = []
        for transcript in result.scalars().all():
            items.extend(item for item in transcript.items or [] if item.get("text"))
        items.sort(key=lambda item: item.get("createdAt") or 0)
        return items[-limit:]
