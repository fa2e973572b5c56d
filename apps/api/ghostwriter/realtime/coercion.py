"""Coercion of loosely typed tool-call arguments.

Each function accepts whatever shape the model produced for one logical field
and returns a single canonical type. Precedence is documented per function.
"""

import json
import math
from collections.abc import Mapping
from typing import Any

import structlog
from pydantic import ValidationError

from ghostwriter.schemas.documents import SECTION_STATUSES, OutlineOperation, SectionInput
from ghostwriter.schemas.notes import NOTE_TYPES, TODO_STATUSES
from ghostwriter.schemas.projects import VoiceGuardrails

logger = structlog.get_logger()


def parse_arguments(raw: Any) -> dict[str, Any] | None:
    """Normalize a tool call's argument payload to a plain mapping.

    - mapping -> a shallow copy
    - empty/blank string -> None (arguments not streamed yet)
    - JSON string of an object -> that object
    - JSON string of anything else -> {}
    - malformed JSON -> None, logged
    - anything else -> None
    """
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, str):
        if not raw.strip():
            return None
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("tool_arguments_malformed", error=str(exc), raw=raw[:200])
            return None
        return parsed if isinstance(parsed, dict) else {}
    return None


def clamp_int(value: Any, default: int, minimum: int, maximum: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return default
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return default
    return max(minimum, min(maximum, int(value)))


def coerce_text(value: Any) -> str | None:
    """Collapse a scalar-ish value to trimmed text.

    str -> stripped (None when blank); number/bool -> str; list -> ", "-joined
    non-blank entries; mapping -> JSON; anything else -> None.
    """
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple)):
        parts = [part for part in (coerce_text(item) for item in value) if part]
        return ", ".join(parts) if parts else None
    if isinstance(value, Mapping):
        return json.dumps(value)
    return None


def coerce_string_list(value: Any) -> list[str]:
    """None -> []; list -> its non-blank text entries; JSON-array string -> its
    entries; other string -> [string]; other scalar -> [str(value)]."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [text for text in (coerce_text(item) for item in value) if text]
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if stripped.startswith("["):
            try:
                parsed = json.loads(stripped)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                return coerce_string_list(parsed)
        return [stripped]
    text = coerce_text(value)
    return [text] if text else []


def coerce_prompt_context(value: Any) -> Any:
    """JSON string -> parsed value; plain string -> stripped; mapping/list -> as is."""
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        try:
            return json.loads(stripped)
        except json.JSONDecodeError:
            return stripped
    if isinstance(value, (Mapping, list)):
        return value or None
    return value


def coerce_id(value: Any) -> str | None:
    """Only strings count as identifiers; numbers are ordinals, not ids."""
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def coerce_choice(value: Any, choices: tuple[str, ...]) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower().replace("-", "_").replace(" ", "_")
    return normalized if normalized in choices else None


def coerce_note_type(value: Any) -> str | None:
    return coerce_choice(value, NOTE_TYPES)


def coerce_todo_status(value: Any) -> str | None:
    return coerce_choice(value, TODO_STATUSES)


def coerce_section_status(value: Any) -> str | None:
    return coerce_choice(value, SECTION_STATUSES)


def coerce_confidence(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return max(0.0, min(1.0, float(value)))


def coerce_voice_guardrails(value: Any) -> VoiceGuardrails | None:
    """String -> tone only; mapping -> tone/structure/content with text values."""
    if isinstance(value, str):
        tone = value.strip()
        return VoiceGuardrails(tone=tone) if tone else None
    if isinstance(value, Mapping):
        guardrails = VoiceGuardrails(
            tone=coerce_text(value.get("tone")),
            structure=coerce_text(value.get("structure")),
            content=coerce_text(value.get("content")),
        )
        return None if guardrails.is_empty() else guardrails
    return None


def coerce_sections(value: Any) -> list[SectionInput]:
    """Accept a list of section mappings (or a JSON string of one); entries
    without a heading are dropped."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return []
    if not isinstance(value, list):
        return []
    sections: list[SectionInput] = []
    for index, entry in enumerate(value):
        if not isinstance(entry, Mapping):
            continue
        heading = coerce_text(entry.get("heading") or entry.get("title"))
        if not heading:
            continue
        order = entry.get("order")
        sections.append(
            SectionInput(
                heading=heading,
                content=entry.get("content") if isinstance(entry.get("content"), str) else "",
                status=coerce_section_status(entry.get("status")),
                order=clamp_int(order, index, 0, 10_000) if order is not None else None,
            )
        )
    return sections


def coerce_outline_operations(value: Any) -> list[OutlineOperation]:
    if isinstance(value, Mapping):
        value = [value]
    if not isinstance(value, list):
        return []
    operations: list[OutlineOperation] = []
    for entry in value:
        if not isinstance(entry, Mapping):
            continue
        action = coerce_choice(entry.get("action") or entry.get("type"), ("add", "rename", "reorder", "remove"))
        heading = coerce_text(entry.get("heading") or entry.get("title"))
        if not action or not heading:
            continue
        position = entry.get("position")
        try:
            operations.append(
                OutlineOperation(
                    action=action,
                    heading=heading,
                    new_heading=coerce_text(entry.get("newHeading") or entry.get("new_heading")),
                    position=clamp_int(position, 0, 0, 10_000) if position is not None else None,
                    status=coerce_section_status(entry.get("status")),
                )
            )
        except ValidationError as exc:
            logger.warning("outline_operation_invalid", error=str(exc))
    return operations
