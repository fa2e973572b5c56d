import asyncio
import json

import pytest
from conftest import FakeChannel

from ghostwriter.realtime.context import BoundedIdSet, SessionContext, SessionRecord
from ghostwriter.realtime.dispatcher import CallState, ToolDispatcher
from ghostwriter.realtime.drafts import DraftQueueCoordinator
from ghostwriter.realtime.extraction import ToolCallInvocation
from ghostwriter.realtime.modes import SessionMode
from ghostwriter.realtime.outbound import OutboundChannel
from ghostwriter.realtime.resolver import ProjectIdResolver
from ghostwriter.realtime.tool_handlers import ToolHandlers


async def make_context(collaborators, project_id=None, mode=SessionMode.INTAKE) -> SessionContext:
    session_id = await collaborators.sessions.create_session(
        project_id=project_id, noise_profile="near_field", language="en-US"
    )
    context = SessionContext(language="en-US", noise_profile="near_field", turn_detection="server_vad")
    context.record = SessionRecord(
        session_id=session_id,
        project_id=project_id,
        started_at=0.0,
        language="en-US",
        noise_profile="near_field",
    )
    context.instruction_context = context.instruction_context.replace(mode=mode)
    return context


def make_dispatcher(context, collaborators, channel):
    outbound = OutboundChannel(channel)
    drafts = DraftQueueCoordinator(context, collaborators.documents, collaborators.drafts, outbound)
    resolver = ProjectIdResolver(
        listing=lambda: context.cached_projects,
        session_project=lambda: context.project_id,
    )
    handlers = ToolHandlers(context, collaborators, resolver, drafts)
    dispatcher = ToolDispatcher(context, handlers, outbound, mode=lambda: context.instruction_context.mode)
    return dispatcher, drafts


def tool_output(channel: FakeChannel, index: int = 0) -> dict:
    submits = [message for message in channel.sent if message["type"] == "response.submit_tool_outputs"]
    return json.loads(submits[index]["tool_outputs"][0]["output"])


@pytest.mark.asyncio
async def test_sync_blueprint_field_fills_the_gap(collaborators, project):
    context = await make_context(collaborators, project.project_id, SessionMode.BLUEPRINT)
    channel = FakeChannel()
    dispatcher, _ = make_dispatcher(context, collaborators, channel)
    call = ToolCallInvocation(
        id="call_a",
        name="sync_blueprint_field",
        arguments={"projectId": project.project_id, "field": "desiredOutcome", "value": "Grow newsletter to 10k"},
        response_id="resp_1",
    )

    assert await dispatcher.dispatch(call) is True

    assert channel.types() == ["response.submit_tool_outputs", "conversation.item.create", "response.create"]
    assert channel.sent[0]["response_id"] == "resp_1"
    output = tool_output(channel)
    assert output["success"] is True
    assert output["tool_call_id"] == "call_a"
    assert "desiredOutcome" not in output["result"]["summary"]["missingFields"]
    echo = channel.sent[1]["item"]
    assert echo["role"] == "system"
    assert echo["content"][0]["text"].startswith("TOOL_RESULT::")


@pytest.mark.asyncio
async def test_queue_draft_update_waits_for_response_id(collaborators, ready_project):
    project_id = ready_project.project_id
    context = await make_context(collaborators, project_id, SessionMode.GHOSTWRITING)
    channel = FakeChannel()
    dispatcher, drafts = make_dispatcher(context, collaborators, channel)

    early = ToolCallInvocation(id="call_b", name="queue_draft_update", arguments={"projectId": project_id})
    assert await dispatcher.dispatch(early) is False
    assert dispatcher.states["call_b"] is CallState.DEFERRED
    assert dispatcher.deferred == ["call_b"]
    assert channel.sent == []

    ready = ToolCallInvocation(
        id="call_b", name="queue_draft_update", arguments={"projectId": project_id}, response_id="resp_2"
    )
    assert await dispatcher.dispatch(ready) is True
    result = tool_output(channel)["result"]
    assert result["status"] == "queued"
    assert result["projectId"] == project_id
    assert result["summary"] is None
    assert dispatcher.deferred == []

    await asyncio.gather(*drafts.pending)
    progress = [
        json.loads(message["item"]["content"][0]["text"].split("::", 1)[1])
        for message in channel.sent
        if message["type"] == "conversation.item.create"
        and message["item"]["content"][0]["text"].startswith("TOOL_PROGRESS::")
    ]
    assert [payload["status"] for payload in progress] == ["queued", "running", "complete"]
    assert progress[-1]["summary"] == "Drafted the opening scene"
    assert context.draft_progress.status == "complete"

    workspace = await collaborators.documents.get_workspace(project_id)
    assert [section.heading for section in workspace.sections] == ["Opening"]


@pytest.mark.asyncio
async def test_disallowed_tool_is_rejected_with_its_name(collaborators, ready_project):
    context = await make_context(collaborators, ready_project.project_id, SessionMode.GHOSTWRITING)
    channel = FakeChannel()
    dispatcher, _ = make_dispatcher(context, collaborators, channel)
    call = ToolCallInvocation(id="call_c", name="list_projects", arguments={}, response_id="resp_3")

    assert await dispatcher.dispatch(call) is True
    output = tool_output(channel)
    assert output["success"] is False
    assert "list_projects" in output["error"]
    assert context.cached_projects == []


@pytest.mark.asyncio
async def test_disallowed_tool_without_response_id_is_deferred(collaborators):
    context = await make_context(collaborators, None, SessionMode.GHOSTWRITING)
    channel = FakeChannel()
    dispatcher, _ = make_dispatcher(context, collaborators, channel)
    call = ToolCallInvocation(id="call_c2", name="create_project", arguments={"title": "x"})
    assert await dispatcher.dispatch(call) is False
    assert dispatcher.deferred == ["call_c2"]
    assert channel.sent == []


@pytest.mark.asyncio
async def test_each_call_is_answered_once(collaborators, project):
    context = await make_context(collaborators)
    channel = FakeChannel()
    dispatcher, _ = make_dispatcher(context, collaborators, channel)
    call = ToolCallInvocation(id="call_d", name="list_projects", arguments={}, response_id="resp_4")

    assert await dispatcher.dispatch(call) is True
    assert await dispatcher.dispatch(call) is False
    assert channel.types().count("response.submit_tool_outputs") == 1
    assert [bundle.project_id for bundle in context.cached_projects] == [project.project_id]
    assert "call_d" in context.handled_tool_calls


@pytest.mark.asyncio
async def test_create_project_waits_for_complete_arguments(collaborators):
    context = await make_context(collaborators)
    channel = FakeChannel()
    dispatcher, _ = make_dispatcher(context, collaborators, channel)
    partial = ToolCallInvocation(id="call_e", name="create_project", arguments={"title": "Essay"}, response_id="r")
    assert await dispatcher.dispatch(partial) is False
    assert dispatcher.states["call_e"] is CallState.DEFERRED

    complete = ToolCallInvocation(
        id="call_e", name="createProject", arguments={"title": "Essay", "contentType": "article"}, response_id="r"
    )
    assert await dispatcher.dispatch(complete) is True
    assert tool_output(channel)["result"]["project"]["title"] == "Essay"
    assert len(await collaborators.projects.list_projects()) == 1


@pytest.mark.asyncio
async def test_undelivered_result_is_resent_without_rerunning(collaborators, ready_project):
    project_id = ready_project.project_id
    context = await make_context(collaborators, project_id, SessionMode.GHOSTWRITING)
    channel = FakeChannel()
    dispatcher, _ = make_dispatcher(context, collaborators, channel)
    call = ToolCallInvocation(
        id="call_f",
        name="create_note",
        arguments={"noteType": "story", "content": "Started in a garage", "messagePointers": ["item_404"]},
        response_id="resp_5",
    )

    channel.fail = True
    assert await dispatcher.dispatch(call) is False
    assert "call_f" not in context.handled_tool_calls

    channel.fail = False
    assert await dispatcher.dispatch(call) is True
    output = tool_output(channel)
    assert output["success"] is True
    assert output["result"]["unresolvedMessagePointers"] == ["item_404"]
    assert output["result"]["note"]["sourceMessageIds"] == []
    assert len(await collaborators.notes.list_notes(project_id)) == 1


@pytest.mark.asyncio
async def test_missing_project_is_reported_to_the_model(collaborators):
    context = await make_context(collaborators)
    channel = FakeChannel()
    dispatcher, _ = make_dispatcher(context, collaborators, channel)
    call = ToolCallInvocation(id="call_g", name="get_project", arguments={"hint": "the memoir"}, response_id="r")

    assert await dispatcher.dispatch(call) is True
    output = tool_output(channel)
    assert output == {"tool": "get_project", "tool_call_id": "call_g", "success": False, "error": "projectId is required"}
    assert context.diagnostics.entries("tool_error")[0].message == "projectId is required"


@pytest.mark.asyncio
async def test_store_failure_becomes_a_failed_result(collaborators, project):
    context = await make_context(collaborators, project.project_id, SessionMode.BLUEPRINT)
    channel = FakeChannel()
    dispatcher, _ = make_dispatcher(context, collaborators, channel)
    call = ToolCallInvocation(
        id="call_h", name="update_todo_status", arguments={"todoId": "missing", "status": "resolved"}, response_id="r"
    )

    assert await dispatcher.dispatch(call) is True
    output = tool_output(channel)
    assert output["success"] is False
    assert output["error"].startswith("update_todo_status failed:")
    assert dispatcher.states == {}


@pytest.mark.asyncio
async def test_assign_project_updates_the_session(collaborators, project):
    context = await make_context(collaborators)
    channel = FakeChannel()
    dispatcher, _ = make_dispatcher(context, collaborators, channel)
    call = ToolCallInvocation(
        id="call_i",
        name="assign_project_to_session",
        arguments={"projectId": project.project_id},
        response_id="r",
    )

    assert await dispatcher.dispatch(call) is True
    result = tool_output(channel)["result"]
    assert result["sessionId"] == context.session_id
    assert result["projectId"] == project.project_id
    assert context.project_id == project.project_id


@pytest.mark.asyncio
async def test_transcript_pointer_skipped_without_candidates(collaborators, project):
    context = await make_context(collaborators, project.project_id, SessionMode.BLUEPRINT)
    channel = FakeChannel()
    dispatcher, _ = make_dispatcher(context, collaborators, channel)
    call = ToolCallInvocation(
        id="call_j",
        name="record_transcript_pointer",
        arguments={"projectId": project.project_id},
        response_id="r",
    )

    assert await dispatcher.dispatch(call) is True
    assert tool_output(channel)["result"] == {"skipped": True, "reason": "transcript_not_persisted_yet"}


@pytest.mark.asyncio
async def test_store_failure_is_logged_for_diagnostics(collaborators, project):
    context = await make_context(collaborators, project.project_id, SessionMode.BLUEPRINT)
    channel = FakeChannel()
    dispatcher, _ = make_dispatcher(context, collaborators, channel)
    call = ToolCallInvocation(
        id="call_h2", name="update_todo_status", arguments={"todoId": "missing", "status": "resolved"}, response_id="r"
    )

    assert await dispatcher.dispatch(call) is True
    entry = context.diagnostics.entries("tool_error")[0]
    assert entry.message == tool_output(channel)["error"]
    assert entry.data == {"tool": "update_todo_status", "toolCallId": "call_h2"}


@pytest.mark.asyncio
async def test_transcript_pointer_prefers_the_persisted_message(collaborators, project):
    context = await make_context(collaborators, project.project_id, SessionMode.BLUEPRINT)
    context.pointers.register_fragment("user-item_7", "msg-7")
    channel = FakeChannel()
    dispatcher, _ = make_dispatcher(context, collaborators, channel)
    call = ToolCallInvocation(
        id="call_k",
        name="record_transcript_pointer",
        arguments={"projectId": project.project_id, "messagePointers": ["item_missing", "item_7"]},
        response_id="r",
    )

    assert await dispatcher.dispatch(call) is True
    blueprint = tool_output(channel)["result"]["blueprint"]
    assert blueprint["intakeMessageId"] == "msg-7"
    assert blueprint["intakeItemId"] is None
    assert blueprint["intakeSessionId"] == context.session_id


@pytest.mark.asyncio
async def test_unpersisted_transcript_pointer_is_kept_as_an_anchor(collaborators, project):
    context = await make_context(collaborators, project.project_id, SessionMode.BLUEPRINT)
    channel = FakeChannel()
    dispatcher, _ = make_dispatcher(context, collaborators, channel)
    call = ToolCallInvocation(
        id="call_l",
        name="record_transcript_pointer",
        arguments={"projectId": project.project_id, "itemId": "item_9"},
        response_id="r",
    )

    assert await dispatcher.dispatch(call) is True
    blueprint = tool_output(channel)["result"]["blueprint"]
    assert blueprint["intakeMessageId"] is None
    assert blueprint["intakeItemId"] == "item_9"


@pytest.mark.asyncio
async def test_get_project_replaces_the_cached_listing(collaborators, project):
    other = await collaborators.projects.create_project(title="Launch essay", content_type="article")
    context = await make_context(collaborators)
    channel = FakeChannel()
    dispatcher, _ = make_dispatcher(context, collaborators, channel)

    assert await dispatcher.dispatch(
        ToolCallInvocation(id="call_m1", name="list_projects", arguments={}, response_id="r")
    )
    assert [bundle.project_id for bundle in context.cached_projects] == [other.project_id, project.project_id]

    assert await dispatcher.dispatch(
        ToolCallInvocation(
            id="call_m2", name="get_project", arguments={"projectId": project.project_id}, response_id="r"
        )
    )
    assert [bundle.project_id for bundle in context.cached_projects] == [project.project_id]

    assert await dispatcher.dispatch(
        ToolCallInvocation(id="call_m3", name="get_project", arguments={"index": 0}, response_id="r")
    )
    assert tool_output(channel, 2)["result"]["projectId"] == project.project_id


@pytest.mark.asyncio
async def test_handled_calls_forget_the_oldest_past_the_limit(collaborators, project):
    context = await make_context(collaborators)
    context.handled_tool_calls = BoundedIdSet(2)
    channel = FakeChannel()
    dispatcher, _ = make_dispatcher(context, collaborators, channel)
    calls = [
        ToolCallInvocation(id=f"call_n{index}", name="list_projects", arguments={}, response_id="r")
        for index in range(3)
    ]

    for call in calls:
        assert await dispatcher.dispatch(call) is True

    assert len(context.handled_tool_calls) == 2
    assert "call_n0" not in context.handled_tool_calls
    assert "call_n1" in context.handled_tool_calls
    assert "call_n2" in context.handled_tool_calls

    assert await dispatcher.dispatch(calls[2]) is False
    assert await dispatcher.dispatch(calls[0]) is True
    assert channel.types().count("response.submit_tool_outputs") == 4


@pytest.mark.asyncio
async def test_result_of_a_call_in_flight_at_teardown_is_dropped(collaborators, project):
    context = await make_context(collaborators)
    channel = FakeChannel()
    dispatcher, _ = make_dispatcher(context, collaborators, channel)
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow_execute(name, args, tool_call_id):
        started.set()
        await release.wait()
        return {"projects": [], "count": 0}

    dispatcher.handlers.execute = slow_execute
    call = ToolCallInvocation(id="call_o", name="list_projects", arguments={}, response_id="r")
    dispatching = asyncio.create_task(dispatcher.dispatch(call))
    await asyncio.wait_for(started.wait(), timeout=1.0)
    assert dispatcher.states["call_o"] is CallState.EXECUTING

    dispatcher.reset()
    context.retire()
    release.set()

    assert await dispatching is False
    assert channel.sent == []
    assert "call_o" not in context.handled_tool_calls
    assert dispatcher.states == {}
