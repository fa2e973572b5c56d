import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

UiEventType = Literal[
    "session.status",
    "session.mode",
    "transcript.partial",
    "transcript.final",
    "voice.activity",
    "draft.progress",
    "system.ping",
]


class UiEvent(BaseModel):
    """Envelope for events pushed to the browser over the session WebSocket."""

    event_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    handle: str
    type: UiEventType
    ts_created: datetime
    schema_version: str = "1.0"
    payload: dict = Field(default_factory=dict)
