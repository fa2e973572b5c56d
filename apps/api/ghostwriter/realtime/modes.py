import dataclasses
from dataclasses import dataclass
from enum import Enum


class SessionMode(str, Enum):
    INTAKE = "intake"
    BLUEPRINT = "blueprint"
    GHOSTWRITING = "ghostwriting"


@dataclass(frozen=True)
class SectionSnapshot:
    heading: str
    status: str


@dataclass(frozen=True)
class DraftingSnapshot:
    open_todo_count: int = 0
    sections: tuple[SectionSnapshot, ...] = ()


@dataclass(frozen=True)
class DraftUpdate:
    status: str
    summary: str | None
    updated_at: float


@dataclass(frozen=True)
class InstructionContext:
    """What the model should currently be told. Frozen so changes can be diffed."""

    mode: SessionMode = SessionMode.INTAKE
    missing_fields: tuple[str, ...] = ()
    drafting: DraftingSnapshot | None = None
    latest_draft_update: DraftUpdate | None = None
    blueprint_bypassed: bool = False

    def replace(self, **changes) -> "InstructionContext":
        return dataclasses.replace(self, **changes)


def derive_mode(
    *, has_project: bool, missing_fields: tuple[str, ...] | list[str], bypass_blueprint: bool = False
) -> SessionMode:
    if not has_project:
        return SessionMode.INTAKE
    if missing_fields and not bypass_blueprint:
        return SessionMode.BLUEPRINT
    return SessionMode.GHOSTWRITING
