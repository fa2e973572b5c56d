from ghostwriter.realtime.modes import DraftingSnapshot, DraftUpdate, InstructionContext, SessionMode
from ghostwriter.realtime.presets import find_language_option
from ghostwriter.realtime.tools import TOOLSET_BY_MODE, disallowed_tools

PROGRESS_TAG = "TOOL_PROGRESS"
RESULT_TAG = "TOOL_RESULT"

_ROLE = {
    SessionMode.INTAKE: (
        "You are a ghostwriting partner on a live voice call. "
        "Help the user pick an existing project or start a new one."
    ),
    SessionMode.BLUEPRINT: (
        "You are a ghostwriting partner on a live voice call. "
        "Interview the user to complete the project blueprint before any drafting starts."
    ),
    SessionMode.GHOSTWRITING: (
        "You are a ghostwriter on a live voice call. "
        "Capture the user's ideas and steer the background drafting pipeline."
    ),
}

_WORKFLOW = {
    SessionMode.INTAKE: (
        "Call list_projects first and read back at most five titles.",
        "If the user wants something new, confirm a title and content type, then call create_project.",
        "Once a project is chosen, call assign_project_to_session before moving on.",
    ),
    SessionMode.BLUEPRINT: (
        "Ask about one blueprint field at a time, in plain language.",
        "Call sync_blueprint_field as soon as the user answers; do not batch answers.",
        "When nothing is missing, recap the blueprint and call commit_blueprint after the user agrees.",
        "Capture stray facts, stories and style cues with create_note.",
    ),
    SessionMode.GHOSTWRITING: (
        "Listen for new material, capture it with create_note, and keep the outline current.",
        "Use manage_outline for structural changes such as adding, renaming, reordering or removing sections.",
        "Use queue_draft_update whenever the draft should absorb new material; cite messagePointers when you can.",
        "Only use apply_document_edits when the user dictates a complete replacement document verbatim.",
        "Resolve TODOs with update_todo_status once the user has answered them.",
    ),
}

_DRAFT_STATUS_LINES = {
    "queued": "Draft update queued",
    "running": "Background drafting in progress",
    "complete": "Latest draft update delivered",
    "error": "Background drafting hit an error",
}

_FIRE_AND_FORGET_POLICY = (
    "queue_draft_update is fire-and-forget: it returns status queued immediately and drafting continues in the background.",
    f"System messages starting with {PROGRESS_TAG}:: are informational progress reports. "
    "Never wait for them, never promise the user a finished draft before one arrives, and keep the conversation going.",
    f"System messages starting with {RESULT_TAG}:: echo your tool results; do not read them aloud verbatim.",
)


def join_words(items: list[str] | tuple[str, ...]) -> str:
    """``["a", "b", "c"]`` -> ``"a, b and c"``."""
    if not items:
        return ""
    if len(items) == 1:
        return items[0]
    return f"{', '.join(items[:-1])} and {items[-1]}"


def describe_draft_update(update: DraftUpdate | None) -> str | None:
    if update is None:
        return None
    label = _DRAFT_STATUS_LINES.get(update.status, _DRAFT_STATUS_LINES["queued"])
    if update.summary:
        return f"{label}: {update.summary}"
    return f"{label}."


def describe_progress(snapshot: DraftingSnapshot | None) -> str | None:
    if snapshot is None:
        return None
    if snapshot.open_todo_count:
        plural = "" if snapshot.open_todo_count == 1 else "s"
        todos = f"{snapshot.open_todo_count} open TODO{plural}"
    else:
        todos = "no active TODOs"
    groups: dict[str, list[str]] = {"needs_detail": [], "drafting": [], "complete": []}
    for section in snapshot.sections:
        groups.setdefault(section.status, []).append(section.heading)
    parts = []
    if groups["needs_detail"]:
        parts.append(f"needs detail on {join_words(groups['needs_detail'])}")
    if groups["drafting"]:
        parts.append(f"actively drafting {join_words(groups['drafting'])}")
    if groups["complete"]:
        parts.append(f"complete: {join_words(groups['complete'])}")
    line = f"Progress cues: {todos}"
    if parts:
        line = f"{line}; sections: {'; '.join(parts)}"
    return line


def build_instructions(mode: SessionMode, context: InstructionContext, language: str | None) -> str:
    """Deterministic instruction text for ``mode``. Identical inputs give identical text."""
    lines = [_ROLE[mode], "", "Workflow:"]
    lines.extend(f"- {rule}" for rule in _WORKFLOW[mode])
    lines.append("")
    lines.append(f"Tools you may call: {', '.join(TOOLSET_BY_MODE[mode])}.")
    forbidden = disallowed_tools(mode)
    if forbidden:
        lines.append(f"NEVER call: {', '.join(forbidden)}. Those calls will be rejected in {mode.value} mode.")
    lines.append("Always pass projectId when you know it. Never invent identifiers.")

    if mode is SessionMode.BLUEPRINT and context.missing_fields:
        lines.append(f"Blueprint gaps remaining: {join_words(list(context.missing_fields))}.")
    if mode is SessionMode.INTAKE and context.missing_fields:
        lines.append(f"Blueprint gaps to cover after setup: {join_words(list(context.missing_fields))}.")

    if mode is SessionMode.GHOSTWRITING:
        lines.append("")
        lines.extend(_FIRE_AND_FORGET_POLICY)
        draft_line = describe_draft_update(context.latest_draft_update)
        if draft_line:
            lines.append(f"Latest draft status: {draft_line}")
        progress_line = describe_progress(context.drafting)
        if progress_line:
            lines.append(progress_line)
        if context.blueprint_bypassed:
            lines.append("The user skipped the blueprint; ask for missing context only when the draft needs it.")

    lines.append("")
    lines.append(f"Language: Always respond in {find_language_option(language).label}.")
    return "\n".join(lines)
