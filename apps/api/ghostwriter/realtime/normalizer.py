import json
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from ghostwriter.realtime.context import Speaker
from ghostwriter.realtime.extraction import (
    ToolCallInvocation,
    extract_text,
    extract_tool_calls,
    sanitize_transcript,
)
from ghostwriter.realtime.instructions import PROGRESS_TAG, RESULT_TAG

logger = structlog.get_logger()

_USER_DELTA = "conversation.item.input_audio_transcription.delta"
_USER_COMPLETED = "conversation.item.input_audio_transcription.completed"
_ASSISTANT_TEXT_DELTAS = {
    "response.output_text.delta",
    "response.text.delta",
    "response.audio_transcript.delta",
    "response.output_audio_transcript.delta",
}
_ASSISTANT_TEXT_DONE = {
    "response.output_text.done",
    "response.text.done",
    "response.audio_transcript.done",
    "response.output_audio_transcript.done",
}
_ASSISTANT_AUDIO_DELTAS = {"response.audio.delta", "response.output_audio.delta"}
_ASSISTANT_STOPPED = {
    "response.audio.completed",
    "response.audio.done",
    "response.output_audio.done",
    "response.done",
    "response.completed",
}
_ITEM_EVENTS = {"conversation.item.created", "conversation.item.added", "conversation.item.done"}


@dataclass(frozen=True)
class ConversationItem:
    item_id: str | None
    item_type: str | None
    role: str | None
    status: str | None
    text: str | None
    previous_item_id: str | None
    payload: Mapping[str, Any]

    def as_chunk(self, event_type: str) -> dict[str, Any]:
        return {
            "itemId": self.item_id,
            "type": self.item_type,
            "role": self.role,
            "status": self.status,
            "text": self.text,
            "previousItemId": self.previous_item_id,
            "eventType": event_type,
            "createdAt": time.time(),
        }


@dataclass(frozen=True)
class FinalTranscript:
    key: str
    speaker: Speaker
    text: str
    item: ConversationItem | None = None


@dataclass
class NormalizedEvent:
    event_type: str
    event_id: str | None
    raw: dict[str, Any]
    session_id: str | None = None
    activity: list[tuple[Speaker, bool]] = field(default_factory=list)
    partial: tuple[Speaker, str] | None = None
    finals: list[FinalTranscript] = field(default_factory=list)
    conversation_item: ConversationItem | None = None
    progress: dict[str, Any] | None = None
    tool_calls: list[ToolCallInvocation] = field(default_factory=list)
    error: str | None = None


def decode_payload(payload: str | bytes | Mapping) -> dict[str, Any] | None:
    if isinstance(payload, Mapping):
        return dict(payload)
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            logger.warning("realtime_event_undecodable", error=str(exc))
            return None
    try:
        event = json.loads(payload)
    except json.JSONDecodeError as exc:
        logger.warning("realtime_event_invalid_json", error=str(exc))
        return None
    return event if isinstance(event, dict) else None


def parse_tagged_message(text: str | None, tag: str) -> dict[str, Any] | None:
    """``"TAG::{...}"`` -> the JSON object, else None."""
    prefix = f"{tag}::"
    if not text or not text.startswith(prefix):
        return None
    try:
        payload = json.loads(text[len(prefix):])
    except json.JSONDecodeError:
        logger.warning("tagged_message_invalid_json", tag=tag)
        return None
    return payload if isinstance(payload, dict) else None


def _string(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


class EventNormalizer:
    """Decodes inbound control-channel events for one session.

    Holds per-item partial transcript buffers; everything else is stateless.
    """

    def __init__(self) -> None:
        self._buffers: dict[Speaker, dict[str, str]] = {Speaker.USER: {}, Speaker.ASSISTANT: {}}

    def reset(self) -> None:
        for buffer in self._buffers.values():
            buffer.clear()

    def buffered(self, speaker: Speaker, key: str) -> str | None:
        return self._buffers[speaker].get(key)

    def normalize(self, payload: str | bytes | Mapping) -> NormalizedEvent | None:
        event = decode_payload(payload)
        if event is None:
            return None
        event_type = event.get("type") if isinstance(event.get("type"), str) else ""
        normalized = NormalizedEvent(
            event_type=event_type,
            event_id=_string(event.get("event_id")),
            raw=event,
        )

        if event_type == "session.created":
            session = event.get("session")
            if isinstance(session, Mapping):
                normalized.session_id = _string(session.get("id"))
        elif event_type == "error":
            error = event.get("error")
            if isinstance(error, Mapping) and isinstance(error.get("message"), str):
                normalized.error = error["message"]
            else:
                normalized.error = json.dumps(error)
        elif event_type == "input_audio_buffer.speech_started":
            normalized.activity.append((Speaker.USER, True))
        elif event_type == "input_audio_buffer.speech_stopped":
            normalized.activity.append((Speaker.USER, False))
        elif event_type in _ASSISTANT_AUDIO_DELTAS:
            normalized.activity.append((Speaker.ASSISTANT, True))
        elif event_type in _ASSISTANT_STOPPED:
            normalized.activity.append((Speaker.ASSISTANT, False))
        elif event_type == _USER_DELTA:
            self._append(normalized, Speaker.USER, self._user_key(event), event.get("delta"))
        elif event_type == _USER_COMPLETED:
            key = self._user_key(event)
            text = _string(event.get("transcript")) or self._buffers[Speaker.USER].get(key)
            self._finish(normalized, Speaker.USER, key, text)
        elif event_type in _ASSISTANT_TEXT_DELTAS:
            self._append(normalized, Speaker.ASSISTANT, self._assistant_key(event), event.get("delta"))
        elif event_type in _ASSISTANT_TEXT_DONE:
            key = self._assistant_key(event)
            text = (
                _string(event.get("text"))
                or _string(event.get("transcript"))
                or self._buffers[Speaker.ASSISTANT].get(key)
            )
            self._finish(normalized, Speaker.ASSISTANT, key, text)
        elif event_type in _ITEM_EVENTS:
            self._conversation_item(normalized, event)

        normalized.tool_calls = extract_tool_calls(event)
        return normalized

    # Keys match the "role-itemid" keys of conversation item finals so the same
    # utterance seen through both paths yields one fragment.
    @staticmethod
    def _user_key(event: Mapping) -> str:
        item_id = _string(event.get("item_id"))
        return f"user-{item_id}" if item_id else _string(event.get("event_id")) or "user"

    @staticmethod
    def _assistant_key(event: Mapping) -> str:
        item_id = _string(event.get("item_id"))
        if item_id:
            return f"assistant-{item_id}"
        return _string(event.get("response_id")) or _string(event.get("event_id")) or "assistant"

    def _append(self, normalized: NormalizedEvent, speaker: Speaker, key: str, delta: Any) -> None:
        if not isinstance(delta, str) or not delta:
            return
        buffer = self._buffers[speaker]
        buffer[key] = buffer.get(key, "") + delta
        normalized.partial = (speaker, buffer[key])

    def _finish(self, normalized: NormalizedEvent, speaker: Speaker, key: str, text: str | None) -> None:
        self._buffers[speaker].pop(key, None)
        cleaned = sanitize_transcript(text or "")
        normalized.partial = (speaker, "")
        if cleaned:
            normalized.finals.append(FinalTranscript(key=key, speaker=speaker, text=cleaned))

    def _conversation_item(self, normalized: NormalizedEvent, event: Mapping) -> None:
        raw_item = event.get("item")
        if not isinstance(raw_item, Mapping):
            return
        item = ConversationItem(
            item_id=_string(raw_item.get("id")),
            item_type=_string(raw_item.get("type")),
            role=_string(raw_item.get("role")),
            status=_string(raw_item.get("status")),
            text=extract_text(raw_item.get("content")),
            previous_item_id=_string(event.get("previous_item_id")),
            payload=raw_item,
        )
        if item.item_type != "message":
            normalized.conversation_item = item
            return
        if item.role == "system":
            normalized.conversation_item = item
            normalized.progress = parse_tagged_message(item.text, PROGRESS_TAG)
            return
        if item.role in (Speaker.USER.value, Speaker.ASSISTANT.value) and item.item_id:
            text = sanitize_transcript(item.text or "")
            if text and not text.startswith(f"{RESULT_TAG}::"):
                normalized.finals.append(
                    FinalTranscript(
                        key=f"{item.role}-{item.item_id}",
                        speaker=Speaker(item.role),
                        text=text,
                        item=item,
                    )
                )
