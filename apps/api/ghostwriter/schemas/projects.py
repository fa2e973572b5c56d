from datetime import datetime
from typing import Literal

from pydantic.alias_generators import to_snake

from ghostwriter.schemas.common import CamelModel

ProjectStatus = Literal["draft", "active", "archived", "intake"]

BLUEPRINT_FIELDS: tuple[str, ...] = (
    "desiredOutcome",
    "targetAudience",
    "publishingPlan",
    "timeline",
    "materialsInventory",
    "communicationPreferences",
    "budgetRange",
    "voiceGuardrails",
)
REQUIRED_BLUEPRINT_FIELDS: tuple[str, ...] = (
    "desiredOutcome",
    "targetAudience",
    "materialsInventory",
    "communicationPreferences",
    "voiceGuardrails",
)


class VoiceGuardrails(CamelModel):
    tone: str | None = None
    structure: str | None = None
    content: str | None = None

    def is_empty(self) -> bool:
        return not any((self.tone, self.structure, self.content))


class ProjectOut(CamelModel):
    id: str
    title: str
    content_type: str
    goal: str | None = None
    status: str
    created_at: datetime
    updated_at: datetime


class BlueprintOut(CamelModel):
    id: str
    project_id: str
    status: str
    desired_outcome: str | None = None
    target_audience: str | None = None
    publishing_plan: str | None = None
    timeline: str | None = None
    materials_inventory: str | None = None
    communication_preferences: str | None = None
    budget_range: str | None = None
    voice_guardrails: VoiceGuardrails | None = None
    intake_session_id: str | None = None
    intake_message_id: str | None = None
    intake_item_id: str | None = None
    updated_at: datetime | None = None


class BlueprintSummary(CamelModel):
    status: str
    missing_fields: list[str]


class ProjectBundle(CamelModel):
    project_id: str
    project: ProjectOut | None = None
    blueprint: BlueprintOut | None = None
    summary: BlueprintSummary

    @classmethod
    def build(cls, project: ProjectOut, blueprint: BlueprintOut | None) -> "ProjectBundle":
        return cls(
            project_id=project.id,
            project=project,
            blueprint=blueprint,
            summary=summarize_blueprint(blueprint),
        )


def blueprint_attribute(field: str) -> str:
    """Map a camelCase blueprint field name to its attribute name."""
    return to_snake(field)


def blueprint_field_has_value(blueprint: BlueprintOut | None, field: str) -> bool:
    if blueprint is None:
        return False
    value = getattr(blueprint, blueprint_attribute(field), None)
    if value is None:
        return False
    if isinstance(value, VoiceGuardrails):
        return not value.is_empty()
    if isinstance(value, str):
        return bool(value.strip())
    return True


def summarize_blueprint(blueprint: BlueprintOut | None) -> BlueprintSummary:
    missing = [
        field
        for field in REQUIRED_BLUEPRINT_FIELDS
        if not blueprint_field_has_value(blueprint, field)
    ]
    status = blueprint.status if blueprint is not None else "missing"
    return BlueprintSummary(status=status or "draft", missing_fields=missing)
