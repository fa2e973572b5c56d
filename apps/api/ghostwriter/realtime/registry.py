import asyncio
from collections.abc import Callable

import structlog

from ghostwriter.realtime.lifecycle import RealtimeSessionController, StartOptions
from ghostwriter.realtime.media import MediaGrant

logger = structlog.get_logger()


class SessionRegistry:
    """In-process map of live session controllers, keyed by handle.

    Starting a session waits for the browser's audio socket to hand over a
    media source through the handle's :class:`MediaGrant`.
    """

    def __init__(
        self,
        factory: Callable[[], RealtimeSessionController],
        media_timeout: float = 30.0,
    ) -> None:
        self._factory = factory
        self.media_timeout = media_timeout
        self._controllers: dict[str, RealtimeSessionController] = {}
        self._grants: dict[str, MediaGrant] = {}
        self._starts: dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._controllers)

    def create(self) -> RealtimeSessionController:
        controller = self._factory()
        self._controllers[controller.handle] = controller
        self._grants[controller.handle] = MediaGrant()
        return controller

    def get(self, handle: str) -> RealtimeSessionController | None:
        return self._controllers.get(handle)

    def grant(self, handle: str) -> MediaGrant | None:
        return self._grants.get(handle)

    def start(self, controller: RealtimeSessionController, options: StartOptions) -> asyncio.Task:
        grant = self._grants[controller.handle]

        async def media_provider():
            return await grant.wait(self.media_timeout)

        task = asyncio.create_task(controller.start(options, media_provider))
        self._starts[controller.handle] = task
        task.add_done_callback(lambda _: self._starts.pop(controller.handle, None))
        return task

    def remove(self, handle: str) -> RealtimeSessionController | None:
        grant = self._grants.pop(handle, None)
        if grant is not None:
            grant.deny("Session removed")
        return self._controllers.pop(handle, None)

    async def close_all(self) -> None:
        for task in list(self._starts.values()):
            task.cancel()
        for handle, controller in list(self._controllers.items()):
            try:
                await controller.stop("Server shutting down")
            except Exception:
                logger.exception("session_shutdown_failed", handle=handle)
            controller.cancel_background()
        self._controllers.clear()
        self._grants.clear()
        logger.info("realtime_sessions_closed")
