import json

import pytest

from ghostwriter.main import app
from ghostwriter.realtime.context import SessionStatus
from ghostwriter.realtime.media import MediaSource
from ghostwriter.routers.ws import _handle_control


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["active_sessions"] == 0


@pytest.mark.asyncio
async def test_create_session(client):
    response = await client.post("/sessions", json={"language": "en-GB", "noise_profile": "far_field"})
    assert response.status_code == 201
    data = response.json()
    assert data["status"] in ("idle", "requesting-permissions")
    assert app.state.registry.get(data["handle"]) is not None


@pytest.mark.asyncio
async def test_create_session_rejects_unknown_language(client):
    response = await client.post("/sessions", json={"language": "xx-XX"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_get_session(client, eventually):
    handle = (await client.post("/sessions", json={})).json()["handle"]
    controller = app.state.registry.get(handle)
    await eventually(lambda: controller.status is SessionStatus.REQUESTING_PERMISSIONS)

    app.state.registry.grant(handle).grant(MediaSource())
    await eventually(lambda: controller.status is SessionStatus.CONNECTED)

    response = await client.get(f"/sessions/{handle}")
    assert response.status_code == 200
    data = response.json()
    assert data["handle"] == handle
    assert data["status"] == "connected"
    assert data["mode"] == "intake"
    assert data["session_id"] is not None


@pytest.mark.asyncio
async def test_get_session_not_found(client):
    response = await client.get("/sessions/00000000000000000000000000000000")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_session_actions_once_connected(client, project, eventually):
    handle = (await client.post("/sessions", json={})).json()["handle"]
    controller = app.state.registry.get(handle)
    await eventually(lambda: controller.status is SessionStatus.REQUESTING_PERMISSIONS)
    app.state.registry.grant(handle).grant(MediaSource())
    await eventually(lambda: controller.status is SessionStatus.CONNECTED)

    missing = await client.post(f"/sessions/{handle}/project", json={"project_id": "nope"})
    assert missing.status_code == 404

    assigned = await client.post(f"/sessions/{handle}/project", json={"project_id": project.project_id})
    assert assigned.status_code == 200
    assert assigned.json()["projectId"] == project.project_id

    sent = await client.post(f"/sessions/{handle}/messages", json={"text": "Start with the intro"})
    assert sent.status_code == 202

    settings = await client.patch(f"/sessions/{handle}/settings", json={"turn_detection": "semantic_vad"})
    assert settings.status_code == 200
    assert settings.json()["turn_detection"] == "semantic_vad"

    context = await client.patch(f"/sessions/{handle}/context", json={"bypass_blueprint": True})
    assert context.json()["mode"] == "ghostwriting"

    stopped = await client.post(f"/sessions/{handle}/stop")
    assert stopped.json()["status"] == "ended"
    assert app.state.registry.get(handle) is None


@pytest.mark.asyncio
async def test_message_rejected_before_connect(client):
    handle = (await client.post("/sessions", json={})).json()["handle"]
    response = await client.post(f"/sessions/{handle}/messages", json={"text": "hello"})
    assert response.status_code == 409

    blank = await client.post(f"/sessions/{handle}/messages", json={"text": "   "})
    assert blank.status_code == 422


@pytest.mark.asyncio
async def test_context_requires_a_started_session(client):
    handle = (await client.post("/sessions", json={})).json()["handle"]
    response = await client.patch(f"/sessions/{handle}/context", json={"mode": "ghostwriting"})
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_socket_control_messages(make_controller, connector):
    controller = make_controller()
    await controller.start()

    await _handle_control(controller, json.dumps({"type": "conversation.text", "text": "  Add a quote  "}))
    user_item = next(
        message["item"]
        for message in connector.socket.sent
        if message["type"] == "conversation.item.create" and message["item"]["role"] == "user"
    )
    assert user_item["content"][0]["text"] == "Add a quote"

    await _handle_control(controller, "not json")
    await _handle_control(controller, json.dumps({"type": "session.noise_profile", "noiseProfile": "far_field"}))
    assert controller.context.noise_profile == "far_field"
    with pytest.raises(ValueError):
        await _handle_control(controller, json.dumps({"type": "session.language", "language": "xx-XX"}))

    await _handle_control(controller, json.dumps({"type": "session.stop"}))
    assert controller.status is SessionStatus.ENDED
