import asyncio
import json

import pytest
from conftest import FakeChannel

from ghostwriter.models import DraftJob
from ghostwriter.realtime.context import SessionContext, SessionRecord
from ghostwriter.realtime.drafts import DraftQueueCoordinator, progress_key
from ghostwriter.realtime.errors import MissingRequiredArgument
from ghostwriter.realtime.outbound import OutboundChannel
from ghostwriter.schemas.documents import DraftJobOut, DraftOutcome
from ghostwriter.services.drafting_service import DraftQueueSweeper
from ghostwriter.services.llm_client import LLMGenerationError


class ExplodingWorker:
    async def claim_job(self, job_id: str) -> DraftJobOut | None:
        raise RuntimeError("worker crashed")

    async def run_job(self, job: DraftJobOut) -> DraftOutcome:
        raise RuntimeError("worker crashed")


def progress(status="running", timestamp=1.0, **extra) -> dict:
    return {"tool": "queue_draft_update", "jobId": "job_1", "status": status, "timestamp": timestamp, **extra}


def progress_payloads(channel: FakeChannel) -> list[dict]:
    return [
        json.loads(message["item"]["content"][0]["text"].split("::", 1)[1])
        for message in channel.sent
        if message["type"] == "conversation.item.create"
        and message["item"]["content"][0]["text"].startswith("TOOL_PROGRESS::")
    ]


def progress_statuses(channel: FakeChannel) -> list[str]:
    return [payload["status"] for payload in progress_payloads(channel)]


def coordinator(context=None, documents=None, worker=None, channel=None, on_progress=None):
    context = context or SessionContext(language="en-US", noise_profile="near_field", turn_detection="server_vad")
    return DraftQueueCoordinator(
        context, documents, worker, OutboundChannel(channel or FakeChannel()), on_progress=on_progress
    )


async def session_context(collaborators, project_id) -> SessionContext:
    session_id = await collaborators.sessions.create_session(
        project_id=project_id, noise_profile="near_field", language="en-US"
    )
    context = SessionContext(language="en-US", noise_profile="near_field", turn_detection="server_vad")
    context.record = SessionRecord(
        session_id=session_id, project_id=project_id, started_at=0.0, language="en-US", noise_profile="near_field"
    )
    return context


def test_progress_is_applied_exactly_once():
    seen = []
    drafts = coordinator(on_progress=seen.append)

    assert drafts.handle_progress(progress()) is True
    assert drafts.handle_progress(progress()) is False
    assert seen == ["running"]
    assert drafts.context.draft_progress.status == "running"
    assert drafts.context.draft_progress.job_id == "job_1"
    assert drafts.context.instruction_context.latest_draft_update.status == "running"


def test_redelivery_with_new_timestamp_counts_as_new():
    drafts = coordinator()
    assert drafts.handle_progress(progress(timestamp=1.0)) is True
    assert drafts.handle_progress(progress(timestamp=2.0)) is True
    assert progress_key(progress(timestamp=1.0)) != progress_key(progress(timestamp=2.0))


def test_foreign_tools_and_unknown_statuses():
    drafts = coordinator()
    assert drafts.handle_progress({"tool": "create_note", "status": "complete"}) is False
    assert drafts.handle_progress(progress(status="exploded")) is True
    assert drafts.context.draft_progress.status == "queued"


@pytest.mark.asyncio
async def test_queue_requires_a_session(collaborators):
    drafts = coordinator(documents=collaborators.documents, worker=collaborators.drafts)
    with pytest.raises(MissingRequiredArgument):
        await drafts.queue(project_id="p1", tool_call_id="call_1")


@pytest.mark.asyncio
async def test_queue_keeps_unpersisted_pointers_as_anchors(collaborators, ready_project):
    project_id = ready_project.project_id
    context = await session_context(collaborators, project_id)
    context.pointers.register_fragment("user-item_1", "msg-1")
    channel = FakeChannel()
    drafts = coordinator(context, collaborators.documents, collaborators.drafts, channel)

    result = await drafts.queue(
        project_id=project_id,
        tool_call_id="call_1",
        urgency="high",
        message_pointers=["item_1", "item_2"],
    )
    await asyncio.gather(*drafts.pending)

    assert result["status"] == "queued"
    assert result["urgency"] == "high"
    assert "item_2" in result["warnings"][0]
    assert progress_statuses(channel) == ["queued", "running", "complete"]


@pytest.mark.asyncio
async def test_drafting_error_is_reported_as_progress(collaborators, ready_project, fake_llm):
    fake_llm.error = LLMGenerationError("model unavailable")
    context = await session_context(collaborators, ready_project.project_id)
    channel = FakeChannel()
    drafts = coordinator(context, collaborators.documents, collaborators.drafts, channel)

    await drafts.queue(project_id=ready_project.project_id, tool_call_id="call_1")
    await asyncio.gather(*drafts.pending)

    assert context.draft_progress.status == "error"
    assert "model unavailable" in context.draft_progress.error
    assert len(fake_llm.calls) == 3
    assert progress_statuses(channel) == ["queued", "running", "queued", "running", "queued", "running", "error"]


@pytest.mark.asyncio
async def test_worker_crash_is_reported_and_logged(collaborators, ready_project):
    context = await session_context(collaborators, ready_project.project_id)
    drafts = coordinator(context, collaborators.documents, ExplodingWorker(), FakeChannel())

    await drafts.queue(project_id=ready_project.project_id, tool_call_id="call_1")
    await asyncio.gather(*drafts.pending)

    assert context.draft_progress.status == "error"
    assert context.draft_progress.error == "worker crashed"
    assert context.diagnostics.entries("tool_error")[0].message == "draft_worker_failed"


@pytest.mark.asyncio
async def test_progress_after_teardown_is_dropped():
    channel = FakeChannel()
    drafts = coordinator(channel=channel)
    generation = drafts.context.generation
    drafts.context.retire()

    assert await drafts.report(progress(), generation) is False
    assert channel.sent == []
    assert drafts.context.draft_progress.status == "idle"


@pytest.mark.asyncio
async def test_transient_failure_is_retried_until_complete(collaborators, ready_project, fake_llm):
    original = fake_llm.complete

    async def flaky(messages, schema):
        if not fake_llm.calls:
            fake_llm.calls.append(messages)
            raise LLMGenerationError("rate limited")
        return await original(messages, schema)

    fake_llm.complete = flaky
    context = await session_context(collaborators, ready_project.project_id)
    channel = FakeChannel()
    drafts = coordinator(context, collaborators.documents, collaborators.drafts, channel)

    await drafts.queue(project_id=ready_project.project_id, tool_call_id="call_1")
    await asyncio.gather(*drafts.pending)

    payloads = progress_payloads(channel)
    assert [payload["status"] for payload in payloads] == ["queued", "running", "queued", "running", "complete"]
    assert payloads[2]["error"] == "rate limited"
    assert payloads[-1]["attempt"] == 2
    assert context.draft_progress.status == "complete"


@pytest.mark.asyncio
async def test_progress_only_describes_the_queued_job(collaborators, ready_project, sessionmaker):
    other = await collaborators.projects.create_project(title="Side project", content_type="article")
    leftover = await collaborators.documents.enqueue_draft_update(other.project_id, session_id=None)
    context = await session_context(collaborators, ready_project.project_id)
    channel = FakeChannel()
    drafts = coordinator(context, collaborators.documents, collaborators.drafts, channel)

    result = await drafts.queue(project_id=ready_project.project_id, tool_call_id="call_1")
    await asyncio.gather(*drafts.pending)

    payloads = progress_payloads(channel)
    assert {payload["jobId"] for payload in payloads} == {result["jobId"]}
    assert {payload["projectId"] for payload in payloads} == {ready_project.project_id}
    assert payloads[-1]["status"] == "complete"
    async with sessionmaker() as db:
        assert (await db.get(DraftJob, leftover.id)).status == "queued"
        assert (await db.get(DraftJob, result["jobId"])).status == "complete"


@pytest.mark.asyncio
async def test_sweeper_drains_jobs_left_behind(collaborators, project, sessionmaker):
    leftover = await collaborators.documents.enqueue_draft_update(project.project_id, session_id=None)
    sweeper = DraftQueueSweeper(collaborators.drafts, interval=0.0, batch_size=5)

    outcomes = await sweeper.sweep()

    assert [(outcome.job_id, outcome.status) for outcome in outcomes] == [(leftover.id, "complete")]
    assert await sweeper.sweep() == []
    async with sessionmaker() as db:
        assert (await db.get(DraftJob, leftover.id)).attempt_count == 1


@pytest.mark.asyncio
async def test_sweeper_leaves_recently_touched_jobs(collaborators, project, sessionmaker):
    fresh = await collaborators.documents.enqueue_draft_update(project.project_id, session_id=None)
    patient = DraftQueueSweeper(collaborators.drafts, interval=60.0, batch_size=5)
    assert await patient.sweep() == []

    eager = DraftQueueSweeper(collaborators.drafts, interval=0.01, batch_size=5)
    eager.start()
    await asyncio.sleep(0.2)
    await eager.stop()

    async with sessionmaker() as db:
        assert (await db.get(DraftJob, fresh.id)).status == "complete"
