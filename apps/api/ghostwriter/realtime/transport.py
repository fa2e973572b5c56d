import asyncio
import base64
import contextlib
import json
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog
import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus

from ghostwriter.realtime.errors import ChannelClosed, ChannelTimeout, HandshakeError

logger = structlog.get_logger()

CHANNEL_OPEN_TIMEOUT_SECONDS = 5.0
_AUDIO_DELTA_TYPES = ("response.audio.delta", "response.output_audio.delta")


@dataclass(frozen=True)
class RealtimeCredentials:
    api_key: str
    model: str
    url: str

    @property
    def endpoint(self) -> str:
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}model={self.model}"


class ChannelState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class ControlChannel:
    """Ordered JSON side channel over one realtime WebSocket.

    The channel counts as open once the remote sends its first event.
    Inbound frames are buffered until :meth:`messages` consumes them.
    """

    def __init__(self, websocket: Any, on_audio: Callable[[bytes], None] | None = None) -> None:
        self._websocket = websocket
        self._on_audio = on_audio
        self._state = ChannelState.CONNECTING
        self._opened = asyncio.Event()
        self._closed = asyncio.Event()
        self._inbox: asyncio.Queue[str | bytes | None] = asyncio.Queue()
        self._reader: asyncio.Task | None = None
        self._send_lock = asyncio.Lock()

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ChannelState.OPEN

    def start(self) -> None:
        if self._reader is None:
            self._reader = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        try:
            async for frame in self._websocket:
                if self._state is ChannelState.CONNECTING:
                    self._mark_open()
                self._tap_audio(frame)
                self._inbox.put_nowait(frame)
        except ConnectionClosed as exc:
            logger.info("realtime_channel_closed_by_remote", code=exc.rcvd.code if exc.rcvd else None)
        finally:
            self._mark_closed()

    def _tap_audio(self, frame: str | bytes) -> None:
        if self._on_audio is None or not isinstance(frame, str):
            return
        if not any(event_type in frame for event_type in _AUDIO_DELTA_TYPES):
            return
        try:
            event = json.loads(frame)
        except json.JSONDecodeError:
            return
        if not isinstance(event, dict):
            return
        delta = event.get("delta")
        if event.get("type") in _AUDIO_DELTA_TYPES and isinstance(delta, str):
            self._on_audio(base64.b64decode(delta))

    def _mark_open(self) -> None:
        self._state = ChannelState.OPEN
        self._opened.set()

    def _mark_closed(self) -> None:
        if self._state is ChannelState.CLOSED:
            return
        self._state = ChannelState.CLOSED
        self._closed.set()
        self._inbox.put_nowait(None)

    async def wait_open(self, timeout: float = CHANNEL_OPEN_TIMEOUT_SECONDS) -> None:
        """Wait until open. Every concurrent waiter is released together."""
        if self._state is ChannelState.OPEN:
            return
        if self._state in (ChannelState.CLOSING, ChannelState.CLOSED):
            raise ChannelClosed("Realtime control channel is closed")
        opened = asyncio.ensure_future(self._opened.wait())
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({opened, closed}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            opened.cancel()
            closed.cancel()
        if self._state is ChannelState.OPEN:
            return
        if self._closed.is_set():
            raise ChannelClosed("Realtime control channel closed before opening")
        raise ChannelTimeout(f"Realtime control channel did not open within {timeout:g}s")

    async def send(self, payload: dict[str, Any]) -> None:
        if self._state is not ChannelState.OPEN:
            raise ChannelClosed(f"Cannot send on a {self._state.value} channel")
        async with self._send_lock:
            try:
                await self._websocket.send(json.dumps(payload))
            except ConnectionClosed as exc:
                self._mark_closed()
                raise ChannelClosed("Realtime control channel closed during send") from exc

    async def messages(self) -> AsyncIterator[str | bytes]:
        while True:
            frame = await self._inbox.get()
            if frame is None:
                return
            yield frame

    async def close(self) -> None:
        if self._state is ChannelState.CLOSED:
            if self._reader is not None and not self._reader.done():
                self._reader.cancel()
            return
        self._state = ChannelState.CLOSING
        try:
            await self._websocket.close()
        except Exception as exc:
            logger.warning("realtime_channel_close_failed", error=str(exc))
        if self._reader is not None and self._reader is not asyncio.current_task():
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
        self._mark_closed()


@dataclass
class TransportHandle:
    channel: ControlChannel
    remote_audio: asyncio.Queue[bytes]
    media: AsyncIterator[bytes] | None = None
    _pump: asyncio.Task | None = field(default=None, repr=False)
    _closed: bool = field(default=False, repr=False)

    async def close(self) -> None:
        """Idempotent teardown of the media pump, media source and channel."""
        if self._closed:
            return
        self._closed = True
        if self._pump is not None and self._pump is not asyncio.current_task():
            self._pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._pump
        aclose = getattr(self.media, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except Exception as exc:
                logger.warning("realtime_media_close_failed", error=str(exc))
        await self.channel.close()


async def _pump_media(channel: ControlChannel, media: AsyncIterator[bytes]) -> None:
    try:
        await channel.wait_open()
        async for chunk in media:
            if not chunk:
                continue
            await channel.send(
                {"type": "input_audio_buffer.append", "audio": base64.b64encode(chunk).decode("ascii")}
            )
    except ChannelClosed:
        logger.info("realtime_media_pump_stopped")
    except ChannelTimeout:
        logger.warning("realtime_media_pump_channel_timeout")


class RealtimeTransport:
    """Opens the duplex connection to the realtime model endpoint."""

    def __init__(
        self,
        connect: Callable[..., Any] = websockets.connect,
        open_timeout: float = CHANNEL_OPEN_TIMEOUT_SECONDS,
    ) -> None:
        self._connect = connect
        self.open_timeout = open_timeout

    async def open(
        self, media: AsyncIterator[bytes] | None, credentials: RealtimeCredentials
    ) -> TransportHandle:
        try:
            websocket = await self._connect(
                credentials.endpoint,
                additional_headers={"Authorization": f"Bearer {credentials.api_key}"},
                max_size=None,
            )
        except InvalidStatus as exc:
            raise HandshakeError(exc.response.status_code) from exc
        except (InvalidHandshake, OSError, asyncio.TimeoutError) as exc:
            raise HandshakeError(None, str(exc)) from exc

        remote_audio: asyncio.Queue[bytes] = asyncio.Queue()
        channel = ControlChannel(websocket, on_audio=remote_audio.put_nowait)
        channel.start()
        handle = TransportHandle(channel=channel, remote_audio=remote_audio, media=media)
        if media is not None:
            handle._pump = asyncio.create_task(_pump_media(channel, media))

        try:
            await channel.wait_open(self.open_timeout)
        except Exception:
            await handle.close()
            raise
        logger.info("realtime_transport_open", model=credentials.model)
        return handle
