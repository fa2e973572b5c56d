import bisect
import time
import uuid
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ghostwriter.config import Settings, settings
from ghostwriter.realtime.modes import InstructionContext, SessionMode
from ghostwriter.realtime.resolver import MessagePointerTable
from ghostwriter.schemas.projects import ProjectBundle


class SessionStatus(str, Enum):
    IDLE = "idle"
    REQUESTING_PERMISSIONS = "requesting-permissions"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ENDED = "ended"
    ERROR = "error"


class Speaker(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class TranscriptFragment:
    id: str
    speaker: Speaker
    text: str
    timestamp: float
    message_id: str | None = None


@dataclass
class SessionRecord:
    session_id: str
    project_id: str | None
    started_at: float
    language: str
    noise_profile: str
    realtime_session_id: str | None = None


@dataclass
class DraftProgress:
    status: str = "idle"
    job_id: str | None = None
    summary: str | None = None
    error: str | None = None
    updated_at: float | None = None


@dataclass(frozen=True)
class DiagnosticEntry:
    timestamp: float
    category: str
    message: str
    data: dict[str, Any] | None = None


class DiagnosticLog:
    """In-memory log of the most recent entries per category."""

    def __init__(self, limits: dict[str, int], default_limit: int = 50) -> None:
        self._limits = limits
        self._default_limit = default_limit
        self._entries: dict[str, deque[DiagnosticEntry]] = {}

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "DiagnosticLog":
        config = config or settings
        return cls(
            {
                "connection": config.connection_log_limit,
                "server_event": config.server_event_log_limit,
                "tool_error": config.server_event_log_limit,
            },
            default_limit=config.server_event_log_limit,
        )

    def add(self, category: str, message: str, data: dict[str, Any] | None = None) -> None:
        entries = self._entries.get(category)
        if entries is None:
            entries = deque(maxlen=self._limits.get(category, self._default_limit))
            self._entries[category] = entries
        entries.append(DiagnosticEntry(time.time(), category, message, data))

    def entries(self, category: str) -> list[DiagnosticEntry]:
        return list(self._entries.get(category, ()))

    def snapshot(self) -> dict[str, list[dict[str, Any]]]:
        return {
            category: [
                {"timestamp": entry.timestamp, "message": entry.message, "data": entry.data}
                for entry in entries
            ]
            for category, entries in self._entries.items()
        }

    def clear(self) -> None:
        self._entries.clear()


class BoundedIdSet:
    """Remembers the most recent ``capacity`` ids, evicting the oldest first."""

    def __init__(self, capacity: int | None = None) -> None:
        self.capacity = capacity if capacity is not None else settings.handled_tool_call_limit
        self._ids: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, item: str) -> bool:
        return item in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, item: str) -> None:
        self._ids[item] = None
        self._ids.move_to_end(item)
        while len(self._ids) > self.capacity:
            self._ids.popitem(last=False)

    def clear(self) -> None:
        self._ids.clear()


@dataclass
class SessionContext:
    """Everything owned by one session generation.

    Components receive this object explicitly; teardown clears it.
    """

    language: str
    noise_profile: str
    turn_detection: str
    generation: str = field(default_factory=lambda: uuid.uuid4().hex)
    record: SessionRecord | None = None
    instruction_context: InstructionContext = field(default_factory=InstructionContext)
    draft_progress: DraftProgress = field(default_factory=DraftProgress)
    transcripts: list[TranscriptFragment] = field(default_factory=list)
    persisted_fragments: set[str] = field(default_factory=set)
    partial_text: dict[Speaker, str] = field(default_factory=dict)
    speaking: dict[Speaker, bool] = field(
        default_factory=lambda: {Speaker.USER: False, Speaker.ASSISTANT: False}
    )
    pointers: MessagePointerTable = field(default_factory=MessagePointerTable)
    handled_tool_calls: BoundedIdSet = field(default_factory=BoundedIdSet)
    cached_projects: list[ProjectBundle] = field(default_factory=list)
    project_bundle: ProjectBundle | None = None
    bypass_blueprint: bool = False
    mode_override: SessionMode | None = None
    diagnostics: DiagnosticLog = field(default_factory=DiagnosticLog.from_settings)
    completed: bool = False

    @property
    def session_id(self) -> str | None:
        return self.record.session_id if self.record else None

    @property
    def project_id(self) -> str | None:
        return self.record.project_id if self.record else None

    def add_transcript(self, fragment: TranscriptFragment) -> bool:
        """Insert in timestamp order; False when the fragment id was already seen."""
        if fragment.id in self.persisted_fragments:
            return False
        self.persisted_fragments.add(fragment.id)
        timestamps = [item.timestamp for item in self.transcripts]
        self.transcripts.insert(bisect.bisect_right(timestamps, fragment.timestamp), fragment)
        return True

    def retire(self) -> None:
        """Invalidate the generation so in-flight work from it is ignored."""
        self.generation = f"retired-{self.generation}"
        self.pointers.clear()
        self.handled_tool_calls.clear()

    def clear(self) -> None:
        self.pointers.clear()
        self.handled_tool_calls.clear()
        self.partial_text.clear()
        self.speaking = {Speaker.USER: False, Speaker.ASSISTANT: False}
        self.cached_projects = []
        self.project_bundle = None
        self.record = None
