from dataclasses import dataclass
from typing import Any

DEFAULT_LANGUAGE = "en-US"
NOISE_PROFILES: tuple[str, ...] = ("default", "near_field", "far_field")
DEFAULT_NOISE_PROFILE = "near_field"
DEFAULT_TURN_DETECTION = "server_vad"
AUDIO_FORMAT = {"type": "audio/pcm", "rate": 24000}


@dataclass(frozen=True)
class LanguageOption:
    value: str
    label: str


LANGUAGE_OPTIONS: tuple[LanguageOption, ...] = (
    LanguageOption("en-US", "English (US)"),
    LanguageOption("en-GB", "English (UK)"),
    LanguageOption("de-DE", "German"),
    LanguageOption("fr-FR", "French"),
    LanguageOption("es-ES", "Spanish"),
)

TURN_DETECTION_PRESETS: dict[str, dict[str, Any]] = {
    "server_vad": {
        "type": "server_vad",
        "threshold": 0.5,
        "prefix_padding_ms": 300,
        "silence_duration_ms": 500,
    },
    "server_vad_patient": {
        "type": "server_vad",
        "threshold": 0.5,
        "prefix_padding_ms": 300,
        "silence_duration_ms": 900,
    },
    "semantic_vad": {"type": "semantic_vad", "eagerness": "auto"},
    "semantic_vad_low": {"type": "semantic_vad", "eagerness": "low"},
}


def find_language_option(value: str | None) -> LanguageOption:
    for option in LANGUAGE_OPTIONS:
        if option.value == value:
            return option
    return LANGUAGE_OPTIONS[0]


def is_supported_language(value: str | None) -> bool:
    return any(option.value == value for option in LANGUAGE_OPTIONS)


def normalize_noise_profile(value: str | None) -> str:
    return value if value in NOISE_PROFILES else DEFAULT_NOISE_PROFILE


def noise_reduction_config(profile: str) -> dict[str, str] | None:
    if profile == "default":
        return None
    return {"type": profile}


def turn_detection_config(preset: str | None) -> dict[str, Any]:
    config = TURN_DETECTION_PRESETS.get(preset or "", TURN_DETECTION_PRESETS[DEFAULT_TURN_DETECTION])
    return dict(config)
