from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ghostwriter.models.session import Base, JSONType, new_id, utcnow


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("realtime_sessions.id"), index=True
    )
    speaker: Mapped[str] = mapped_column(String(20))
    transcript: Mapped[str] = mapped_column(Text)
    timestamp: Mapped[float] = mapped_column(Float)
    tags: Mapped[list] = mapped_column(JSONType, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ProjectTranscript(Base):
    __tablename__ = "project_transcripts"
    __table_args__ = (
        UniqueConstraint("project_id", "session_id", name="uq_project_session_transcript"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    project_id: Mapped[str] = mapped_column(String(36), ForeignKey("projects.id"), index=True)
    session_id: Mapped[str] = mapped_column(String(36), ForeignKey("realtime_sessions.id"))
    items: Mapped[list] = mapped_column(JSONType, default=list)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
