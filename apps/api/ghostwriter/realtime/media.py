import asyncio
from collections.abc import AsyncIterator


class MediaSource:
    """Local microphone audio as an async iterator of PCM16 chunks.

    Fed by whoever owns the capture (the browser WebSocket); ends when
    :meth:`end` is called or the iterator is closed.
    """

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=maxsize)
        self._ended = False

    @property
    def ended(self) -> bool:
        return self._ended

    def push(self, chunk: bytes) -> bool:
        if self._ended:
            return False
        try:
            self._queue.put_nowait(chunk)
        except asyncio.QueueFull:
            # drop the oldest chunk rather than block the socket reader
            self._queue.get_nowait()
            self._queue.put_nowait(chunk)
        return True

    def end(self) -> None:
        if self._ended:
            return
        self._ended = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(None)

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._chunks()

    async def _chunks(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk

    async def aclose(self) -> None:
        self.end()


class MediaGrant:
    """One-shot handoff of a :class:`MediaSource` to a starting session."""

    def __init__(self) -> None:
        self._future: asyncio.Future[MediaSource] = asyncio.get_running_loop().create_future()

    @property
    def settled(self) -> bool:
        return self._future.done()

    def grant(self, source: MediaSource) -> None:
        if not self._future.done():
            self._future.set_result(source)

    def deny(self, reason: str = "Microphone permission denied") -> None:
        if not self._future.done():
            self._future.set_exception(PermissionError(reason))

    async def wait(self, timeout: float) -> MediaSource:
        try:
            return await asyncio.wait_for(asyncio.shield(self._future), timeout)
        except asyncio.TimeoutError as exc:
            raise PermissionError("Microphone was not granted in time") from exc
