import json
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from ghostwriter.schemas.documents import DraftJobOut, Workspace
from ghostwriter.schemas.notes import NoteOut, TodoOut
from ghostwriter.schemas.projects import ProjectBundle

MAX_EXISTING_DRAFT_CHARS = 6000
MAX_PROMPT_CONTEXT_CHARS = 800

SECTION_STATUS_LABELS = {
    "drafting": "Drafting",
    "needs_detail": "Needs detail",
    "complete": "Complete",
}

SYSTEM_PROMPT = (
    "You are a background ghostwriting model. You receive interview transcripts, "
    "blueprint details and outstanding TODOs, and return the full updated document. "
    "Write in the client's voice, keep existing structure unless asked to change it, "
    "and never invent facts that are absent from the material."
)


@dataclass
class DraftingInput:
    bundle: ProjectBundle
    workspace: Workspace
    job: DraftJobOut
    todos: Sequence[TodoOut] = ()
    notes: Sequence[NoteOut] = ()
    transcript_items: Sequence[dict[str, Any]] = field(default_factory=list)


def _clean(value: str | None) -> str:
    return " ".join((value or "").split())


def _blueprint_lines(bundle: ProjectBundle) -> list[str]:
    blueprint = bundle.blueprint
    if blueprint is None:
        return ["Blueprint status: unavailable."]
    labels = (
        ("Desired outcome", blueprint.desired_outcome),
        ("Target audience", blueprint.target_audience),
        ("Materials inventory", blueprint.materials_inventory),
        ("Communication preferences", blueprint.communication_preferences),
    )
    lines = [f"Blueprint status: {blueprint.status}."]
    lines += [f"{label}: {_clean(value)}" for label, value in labels if _clean(value)]
    guardrails = blueprint.voice_guardrails
    if guardrails is not None:
        lines += [
            f"Voice {name}: {_clean(value)}"
            for name, value in (("tone", guardrails.tone), ("structure", guardrails.structure), ("content", guardrails.content))
            if _clean(value)
        ]
    return lines


def _transcript_lines(items: Sequence[dict[str, Any]], job: DraftJobOut) -> list[str]:
    if not items:
        return ["No transcript excerpts captured."]
    pointers = set(job.message_pointers)
    anchors = set(job.transcript_anchors)
    ordered = sorted(items, key=lambda item: item.get("createdAt") or 0)
    referenced = [
        item
        for item in ordered
        if item.get("messageId") in pointers or item.get("itemId") in anchors
    ]
    chosen = referenced[-12:] if referenced else ordered[-8:]
    return [
        f"- ({item.get('role') or 'unknown'}) {_clean(item.get('text'))} [ref:{item.get('itemId')}]"
        for item in chosen
    ]


def _feedback(prompt_context: Any) -> list[str]:
    if not isinstance(prompt_context, dict):
        return []
    feedback = prompt_context.get("feedback")
    if isinstance(feedback, str):
        feedback = [feedback]
    if not isinstance(feedback, list):
        return []
    return [_clean(str(entry)) for entry in feedback if _clean(str(entry))]


def build_drafting_prompt(data: DraftingInput) -> list[dict[str, str]]:
    """Chat messages for one drafting job."""
    project = data.bundle.project
    document = data.workspace.document
    markdown = (document.latest_draft_markdown if document else "").strip()
    prompt_context = data.job.prompt_context
    active_section = prompt_context.get("activeSection") if isinstance(prompt_context, dict) else None

    parts: list[str] = ["## Project"]
    if project is not None:
        parts += [
            f"Project: {project.title} ({project.content_type})",
            f"Goal: {_clean(project.goal) or '-'}",
            f"Status: {project.status}",
        ]
    parts += ["", "## Blueprint", *_blueprint_lines(data.bundle)]

    parts += ["", "## Document", f"Existing draft length: {data.workspace.progress.word_count} words"]
    if document is not None and document.summary:
        parts.append(f"Previous summary: {_clean(document.summary)}")
    if not markdown:
        parts.append("Draft status: empty. Begin drafting the requested section.")
    if isinstance(active_section, str) and active_section.strip():
        parts.append(f"Active section focus: {active_section.strip()} (do not edit other sections).")
    if data.job.summary:
        parts.append(f"Most recent request: {_clean(data.job.summary)}")
    if data.job.urgency:
        parts.append(f"Urgency: {_clean(data.job.urgency)}")

    parts += ["", "## Sections"]
    parts += [
        f"{index}. {section.heading} - {SECTION_STATUS_LABELS.get(section.status, section.status)} (v{section.version})"
        for index, section in enumerate(data.workspace.sections, start=1)
    ] or ["No sections saved."]

    open_todos = [todo for todo in data.todos if todo.status != "resolved"]
    parts += ["", "## TODOs"]
    parts += [f"- ({todo.status}) {_clean(todo.label)}" for todo in open_todos] or ["No open TODOs."]

    parts += ["", "## Notes"]
    parts += [f"- [{note.note_type.upper()}] {_clean(note.content)}" for note in list(data.notes)[:8]] or [
        "No recent notes."
    ]

    parts += ["", "## Transcript excerpts", *_transcript_lines(data.transcript_items, data.job)]

    feedback = _feedback(prompt_context)
    if feedback:
        parts += ["", "## Revision feedback to apply", *[f"- {item}" for item in feedback]]

    if markdown:
        excerpt = markdown
        if len(excerpt) > MAX_EXISTING_DRAFT_CHARS:
            excerpt = f"{excerpt[:MAX_EXISTING_DRAFT_CHARS]}\n... existing draft truncated for incremental update."
        parts += ["", "## Existing draft (preserve structure)", "```markdown", excerpt, "```"]

    if prompt_context:
        context_text = json.dumps(prompt_context, indent=2, default=str)
        if len(context_text) > MAX_PROMPT_CONTEXT_CHARS:
            context_text = f"{context_text[:MAX_PROMPT_CONTEXT_CHARS]}\n... context truncated for focus"
        parts += ["", "## Additional context", context_text]

    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": "\n".join(parts)},
    ]
