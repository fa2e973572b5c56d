from typing import Any

from pydantic import BaseModel, field_validator

from ghostwriter.realtime.modes import SessionMode
from ghostwriter.realtime.presets import NOISE_PROFILES, TURN_DETECTION_PRESETS, is_supported_language


def _check_language(value: str | None) -> str | None:
    if value is not None and not is_supported_language(value):
        raise ValueError(f"Unsupported language {value!r}")
    return value


def _check_noise_profile(value: str | None) -> str | None:
    if value is not None and value not in NOISE_PROFILES:
        raise ValueError(f"Unsupported noise profile {value!r}")
    return value


def _check_turn_detection(value: str | None) -> str | None:
    if value is not None and value not in TURN_DETECTION_PRESETS:
        raise ValueError(f"Unsupported turn detection preset {value!r}")
    return value


class SessionSettings(BaseModel):
    language: str | None = None
    noise_profile: str | None = None
    turn_detection: str | None = None

    @field_validator("language")
    @classmethod
    def language_supported(cls, value: str | None) -> str | None:
        return _check_language(value)

    @field_validator("noise_profile")
    @classmethod
    def noise_profile_supported(cls, value: str | None) -> str | None:
        return _check_noise_profile(value)

    @field_validator("turn_detection")
    @classmethod
    def turn_detection_supported(cls, value: str | None) -> str | None:
        return _check_turn_detection(value)


class SessionStart(SessionSettings):
    project_id: str | None = None
    defer_project: bool = False
    bypass_blueprint: bool = False


class SessionContextUpdate(BaseModel):
    mode: SessionMode | None = None
    bypass_blueprint: bool | None = None


class AssignProject(BaseModel):
    project_id: str


class TextMessage(BaseModel):
    text: str

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("text must not be blank")
        return value.strip()


class SessionHandleResponse(BaseModel):
    handle: str
    status: str


class SessionSnapshot(BaseModel):
    handle: str
    status: str
    error: str | None = None
    session_id: str | None = None
    project_id: str | None = None
    mode: str | None = None
    language: str | None = None
    noise_profile: str | None = None
    turn_detection: str | None = None
    transcripts: list[dict[str, Any]] = []
    partials: dict[str, str] = {}
    speaking: dict[str, bool] = {}
    draft_progress: dict[str, Any] | None = None
    diagnostics: dict[str, list[dict[str, Any]]] = {}
