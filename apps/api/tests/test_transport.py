import asyncio
import base64

import pytest
from conftest import CREDENTIALS, FakeConnector, FakeRealtimeSocket

from ghostwriter.realtime.errors import ChannelClosed, ChannelTimeout, HandshakeError
from ghostwriter.realtime.media import MediaGrant, MediaSource
from ghostwriter.realtime.transport import ChannelState, ControlChannel, RealtimeTransport


@pytest.mark.asyncio
async def test_open_authenticates_and_waits_for_first_event():
    connector = FakeConnector()
    handle = await RealtimeTransport(connect=connector, open_timeout=0.5).open(None, CREDENTIALS)

    url, kwargs = connector.calls[0]
    assert url == "wss://realtime.test/v1/realtime?model=gpt-realtime"
    assert kwargs["additional_headers"] == {"Authorization": "Bearer test-key"}
    assert handle.channel.state is ChannelState.OPEN
    await handle.close()
    assert connector.socket.closed


@pytest.mark.asyncio
async def test_handshake_failure_is_a_transport_error():
    connector = FakeConnector()
    connector.error = OSError("connection refused")
    with pytest.raises(HandshakeError, match="connection refused"):
        await RealtimeTransport(connect=connector).open(None, CREDENTIALS)


@pytest.mark.asyncio
async def test_channel_that_never_opens_times_out():
    connector = FakeConnector(greet=False)
    with pytest.raises(ChannelTimeout):
        await RealtimeTransport(connect=connector, open_timeout=0.05).open(None, CREDENTIALS)
    assert connector.socket.closed


@pytest.mark.asyncio
async def test_concurrent_waiters_are_released_together():
    socket = FakeRealtimeSocket(greet=False)
    channel = ControlChannel(socket)
    channel.start()
    waiters = [asyncio.create_task(channel.wait_open(1.0)) for _ in range(3)]
    await asyncio.sleep(0)
    socket.feed({"type": "session.created", "session": {"id": "s"}})
    await asyncio.gather(*waiters)
    assert channel.is_open
    await channel.close()


@pytest.mark.asyncio
async def test_closed_channel_rejects_sends_and_waits():
    socket = FakeRealtimeSocket()
    channel = ControlChannel(socket)
    channel.start()
    await channel.wait_open(1.0)
    await channel.send({"type": "response.create"})
    assert socket.sent_types() == ["response.create"]

    await channel.close()
    assert channel.state is ChannelState.CLOSED
    with pytest.raises(ChannelClosed):
        await channel.send({"type": "response.create"})
    with pytest.raises(ChannelClosed):
        await channel.wait_open(0.1)


@pytest.mark.asyncio
async def test_remote_hang_up_ends_message_stream():
    socket = FakeRealtimeSocket()
    channel = ControlChannel(socket)
    channel.start()
    socket.feed({"type": "response.done"})
    socket.hang_up()
    frames = [frame async for frame in channel.messages()]
    assert len(frames) == 2
    assert channel.state is ChannelState.CLOSED


@pytest.mark.asyncio
async def test_assistant_audio_is_tapped():
    received = []
    socket = FakeRealtimeSocket()
    channel = ControlChannel(socket, on_audio=received.append)
    channel.start()
    socket.feed({"type": "response.output_audio.delta", "delta": base64.b64encode(b"\x01\x02").decode()})
    socket.hang_up()
    async for _ in channel.messages():
        pass
    assert received == [b"\x01\x02"]


@pytest.mark.asyncio
async def test_microphone_audio_is_pumped_once_open():
    connector = FakeConnector()
    source = MediaSource()
    source.push(b"\x00\x01")
    source.push(b"")
    handle = await RealtimeTransport(connect=connector, open_timeout=0.5).open(source, CREDENTIALS)
    source.end()
    await asyncio.wait_for(handle._pump, 1.0)

    assert connector.socket.sent == [
        {"type": "input_audio_buffer.append", "audio": base64.b64encode(b"\x00\x01").decode("ascii")}
    ]
    await handle.close()
    await handle.close()


@pytest.mark.asyncio
async def test_media_grant_times_out_as_permission_error():
    grant = MediaGrant()
    with pytest.raises(PermissionError):
        await grant.wait(0.01)
    assert not grant.settled

    grant.deny("Microphone permission denied")
    assert grant.settled
    with pytest.raises(PermissionError, match="denied"):
        await grant.wait(0.01)


@pytest.mark.asyncio
async def test_media_source_drops_oldest_when_full():
    source = MediaSource(maxsize=2)
    for chunk in (b"a", b"b", b"c"):
        source.push(chunk)
    source.end()
    assert [chunk async for chunk in source] == [b"c"]
    assert source.push(b"d") is False
