from ghostwriter.models.document import Document, DocumentSection, DraftJob
from ghostwriter.models.message import Message, ProjectTranscript
from ghostwriter.models.note import Note, Todo
from ghostwriter.models.project import Project, ProjectBlueprint
from ghostwriter.models.session import Base, RealtimeSession

__all__ = [
    "Base",
    "Document",
    "DocumentSection",
    "DraftJob",
    "Message",
    "Note",
    "Project",
    "ProjectBlueprint",
    "ProjectTranscript",
    "RealtimeSession",
    "Todo",
]
