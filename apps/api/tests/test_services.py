import pytest

from ghostwriter.config import settings
from ghostwriter.schemas.documents import OutlineOperation, SectionInput
from ghostwriter.schemas.projects import REQUIRED_BLUEPRINT_FIELDS, VoiceGuardrails
from ghostwriter.services.document_service import DocumentService, OutlineError
from ghostwriter.services.drafting_service import DraftingService
from ghostwriter.services.note_service import NoteService, TodoNotFound
from ghostwriter.services.project_service import ProjectNotFound, ProjectService
from ghostwriter.services.transcript_service import merge_chunk


@pytest.mark.asyncio
async def test_new_project_needs_every_required_field(db_session):
    bundle = await ProjectService(db_session).create_project(title=" Launch post ", content_type="article")
    assert bundle.project.title == "Launch post"
    assert bundle.project.status == "intake"
    assert bundle.summary.status == "draft"
    assert bundle.summary.missing_fields == list(REQUIRED_BLUEPRINT_FIELDS)


@pytest.mark.asyncio
async def test_blueprint_sync_and_commit(db_session):
    service = ProjectService(db_session)
    project_id = (await service.create_project(title="Memoir", content_type="book_chapter")).project_id

    bundle = await service.sync_blueprint_field(
        project_id, field="desiredOutcome", value="Land a publisher", session_id="s1", message_id="m1"
    )
    assert "desiredOutcome" not in bundle.summary.missing_fields
    assert bundle.blueprint.intake_message_id == "m1"

    bundle = await service.sync_blueprint_field(project_id, field="voiceGuardrails", value=VoiceGuardrails())
    assert "voiceGuardrails" in bundle.summary.missing_fields
    bundle = await service.sync_blueprint_field(
        project_id, field="voiceGuardrails", value=VoiceGuardrails(tone="plainspoken")
    )
    assert bundle.blueprint.voice_guardrails.tone == "plainspoken"

    bundle = await service.commit_blueprint(project_id, session_id="s1")
    assert bundle.summary.status == "committed"
    assert bundle.project.status == "active"
    assert bundle.project.goal == "Land a publisher"


@pytest.mark.asyncio
async def test_project_validation(db_session):
    service = ProjectService(db_session)
    project_id = (await service.create_project(title="Memoir", content_type="book_chapter")).project_id
    with pytest.raises(ValueError):
        await service.sync_blueprint_field(project_id, field="favouriteColour", value="blue")
    with pytest.raises(ValueError):
        await service.update_project_metadata(project_id, status="shipped")
    with pytest.raises(ProjectNotFound):
        await service.commit_blueprint("nope")
    assert await service.get_project("nope") is None


@pytest.mark.asyncio
async def test_todo_notes_track_resolution(db_session, project):
    notes = NoteService(db_session)
    created = await notes.create_note(project.project_id, note_type="todo", content="Confirm the founding year")
    await notes.create_note(project.project_id, note_type="fact", content="Two founders")
    assert created.todo.status == "open"

    resolved = await notes.update_todo_status(created.todo.id, "resolved")
    assert resolved.resolved_at is not None
    listed = await notes.list_notes(project.project_id)
    assert {note.note_type: note.resolved for note in listed} == {"todo": True, "fact": False}

    with pytest.raises(TodoNotFound):
        await notes.update_todo_status("missing", "open")
    with pytest.raises(ValueError):
        await notes.create_note(project.project_id, note_type="rumour", content="x")


@pytest.mark.asyncio
async def test_outline_operations(db_session, project):
    documents = DocumentService(db_session)
    workspace = await documents.manage_outline(
        project.project_id,
        [
            OutlineOperation(action="add", heading="Intro"),
            OutlineOperation(action="add", heading="Body"),
            OutlineOperation(action="add", heading="intro"),
            OutlineOperation(action="reorder", heading="Body", position=0),
            OutlineOperation(action="rename", heading="Intro", new_heading="Introduction", status="needs_detail"),
        ],
    )
    assert [(section.heading, section.order) for section in workspace.sections] == [
        ("Body", 0),
        ("Introduction", 1),
    ]
    assert workspace.document.latest_draft_markdown == "# Body\n\n# Introduction"
    assert workspace.document.status == "needs_detail"

    with pytest.raises(OutlineError):
        await documents.manage_outline(project.project_id, [OutlineOperation(action="remove", heading="Epilogue")])

    workspace = await documents.manage_outline(project.project_id, [OutlineOperation(action="remove", heading="body")])
    assert [section.heading for section in workspace.sections] == ["Introduction"]


@pytest.mark.asyncio
async def test_apply_edits_replaces_the_draft(db_session, project):
    documents = DocumentService(db_session)
    await documents.apply_edits(
        project.project_id,
        markdown="# Intro\n\nHello",
        sections=[SectionInput(heading="Intro", content="Hello"), SectionInput(heading="Old", content="")],
    )
    workspace = await documents.apply_edits(
        project.project_id,
        markdown="# Intro\n\nHello world",
        sections=[SectionInput(heading="intro", content="Hello world", status="complete")],
        summary="Tightened the intro",
    )
    assert len(workspace.sections) == 1
    section = workspace.sections[0]
    assert section.version == 2
    assert section.status == "complete"
    assert workspace.document.status == "complete"
    assert workspace.document.summary == "Tightened the intro"
    assert workspace.progress.word_count == 4


@pytest.mark.asyncio
async def test_enqueue_merges_into_active_job(db_session, project):
    documents = DocumentService(db_session)
    first = await documents.enqueue_draft_update(
        project.project_id, session_id="s1", message_pointers=["m1"], transcript_anchors=["item_1"]
    )
    second = await documents.enqueue_draft_update(
        project.project_id, session_id="s1", urgency="high", message_pointers=["m2", "m1"]
    )
    assert second.id == first.id
    assert second.message_pointers == ["m1", "m2"]
    assert second.transcript_anchors == ["item_1"]
    assert second.urgency == "high"

    claimed = await documents.claim_next_job()
    assert claimed.id == first.id
    assert claimed.status == "running"
    assert claimed.attempt_count == 1
    assert await documents.claim_next_job() is None


@pytest.mark.asyncio
async def test_finished_job_with_same_summary_is_deduplicated(db_session, project):
    documents = DocumentService(db_session)
    job = await documents.enqueue_draft_update(project.project_id, session_id="s1", summary="Add the origin story")
    await documents.claim_next_job()
    await documents.finish_job(job.id, status="complete", summary="Add the origin story")

    again = await documents.enqueue_draft_update(
        project.project_id, session_id="s1", summary="  add the ORIGIN story ", urgency="high"
    )
    assert again.id == job.id
    assert again.urgency == "high"

    fresh = await documents.enqueue_draft_update(project.project_id, session_id="s1", summary="Rewrite the ending")
    assert fresh.id != job.id


@pytest.mark.asyncio
async def test_enqueue_for_unknown_project(db_session):
    with pytest.raises(ProjectNotFound):
        await DocumentService(db_session).enqueue_draft_update("nope", session_id=None)


def test_merge_chunk_keeps_earliest_created_at():
    items = [{"itemId": "item_1", "text": None, "createdAt": 5.0}]
    merged = merge_chunk(items, {"itemId": "item_1", "text": "hello", "createdAt": 9.0})
    assert merged == [{"itemId": "item_1", "text": "hello", "createdAt": 5.0}]
    assert items[0]["text"] is None
    assert len(merge_chunk(merged, {"itemId": "item_2", "text": "next"})) == 2


@pytest.mark.asyncio
async def test_crashed_draft_is_requeued_then_settles_as_error(db_session, ready_project, fake_llm, monkeypatch):
    async def crash(self, project_id, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(DocumentService, "apply_edits", crash)
    documents = DocumentService(db_session)
    job = await documents.enqueue_draft_update(ready_project.project_id, session_id=None)
    drafting = DraftingService(db_session, fake_llm)

    outcomes = [await drafting.process_next() for _ in range(settings.draft_max_attempts)]

    assert [outcome.status for outcome in outcomes] == ["queued", "queued", "error"]
    assert [outcome.attempt for outcome in outcomes] == [1, 2, 3]
    assert outcomes[-1].error == "disk full"
    assert (await drafting.process_next()).processed is False

    again = await documents.enqueue_draft_update(ready_project.project_id, session_id=None)
    assert again.id != job.id
    assert again.status == "queued"


@pytest.mark.asyncio
async def test_claim_job_only_takes_queued_jobs(db_session, project):
    documents = DocumentService(db_session)
    job = await documents.enqueue_draft_update(project.project_id, session_id="s1")

    claimed = await documents.claim_job(job.id)
    assert claimed.status == "running"
    assert claimed.attempt_count == 1
    assert await documents.claim_job(job.id) is None
    assert await documents.claim_job("missing") is None
