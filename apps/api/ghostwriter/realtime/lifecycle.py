import asyncio
import contextlib
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

import structlog

from ghostwriter.config import Settings, settings as default_settings
from ghostwriter.realtime.collaborators import Collaborators
from ghostwriter.realtime.context import (
    BoundedIdSet,
    DiagnosticLog,
    SessionContext,
    SessionRecord,
    SessionStatus,
    TranscriptFragment,
)
from ghostwriter.realtime.dispatcher import ToolDispatcher
from ghostwriter.realtime.drafts import DraftQueueCoordinator
from ghostwriter.realtime.errors import ChannelClosed
from ghostwriter.realtime.modes import DraftingSnapshot, SectionSnapshot, SessionMode, derive_mode
from ghostwriter.realtime.normalizer import EventNormalizer, FinalTranscript, NormalizedEvent
from ghostwriter.realtime.outbound import OutboundChannel
from ghostwriter.realtime.presets import is_supported_language, normalize_noise_profile
from ghostwriter.realtime.publisher import SessionUpdatePublisher
from ghostwriter.realtime.resolver import ProjectIdResolver
from ghostwriter.realtime.tool_handlers import ToolHandlers
from ghostwriter.realtime.transport import RealtimeCredentials, RealtimeTransport, TransportHandle
from ghostwriter.schemas.documents import Workspace
from ghostwriter.schemas.events import UiEvent
from ghostwriter.schemas.projects import ProjectBundle

logger = structlog.get_logger()

MediaProvider = Callable[[], Awaitable[AsyncIterator[bytes] | None]]
UiListener = Callable[[dict[str, Any]], Awaitable[bool]]


@dataclass
class StartOptions:
    project_id: str | None = None
    defer_project: bool = False
    language: str | None = None
    noise_profile: str | None = None
    turn_detection: str | None = None
    bypass_blueprint: bool = False


class RealtimeSessionController:
    """Lifecycle of one realtime conversation:
    idle -> requesting-permissions -> connecting -> connected -> ended, with
    error reachable from any non-idle state.

    Owns the :class:`SessionContext` and wires every per-session component to
    it. Completion of the stored session is latched so it happens once.
    """

    def __init__(
        self,
        collaborators: Collaborators,
        transport: RealtimeTransport,
        credentials: RealtimeCredentials,
        config: Settings = default_settings,
    ) -> None:
        self.handle = uuid.uuid4().hex
        self.collaborators = collaborators
        self.transport = transport
        self.credentials = credentials
        self.config = config
        self.status = SessionStatus.IDLE
        self.error: str | None = None
        self.status_message: str | None = None
        self.options = StartOptions()
        self.context: SessionContext | None = None

        self._generation: str | None = None
        self._stopping = False
        self._handle: TransportHandle | None = None
        self._reader: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._listeners: list[UiListener] = []

        self.normalizer = EventNormalizer()
        self.outbound: OutboundChannel | None = None
        self.publisher: SessionUpdatePublisher | None = None
        self.dispatcher: ToolDispatcher | None = None
        self.drafts: DraftQueueCoordinator | None = None

    # listeners

    def add_listener(self, listener: UiListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: UiListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def emit(self, event_type: str, payload: dict[str, Any]) -> None:
        event = UiEvent(
            handle=self.handle,
            type=event_type,
            ts_created=datetime.now(UTC),
            payload=payload,
        ).model_dump(mode="json")
        stale: list[UiListener] = []
        for listener in list(self._listeners):
            if not await listener(event):
                stale.append(listener)
        for listener in stale:
            self.remove_listener(listener)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _set_status(self, status: SessionStatus, message: str | None = None) -> None:
        self.status = status
        self.status_message = message
        if self.context is not None:
            self.context.diagnostics.add("connection", status.value, {"message": message} if message else None)
        logger.info("realtime_session_status", handle=self.handle, status=status.value, message=message)
        self._spawn(self.emit("session.status", {"status": status.value, "message": message, "error": self.error}))

    @property
    def remote_audio(self) -> asyncio.Queue[bytes] | None:
        return self._handle.remote_audio if self._handle is not None else None

    def _is_current(self, generation: str | None) -> bool:
        return generation is not None and generation == self._generation

    # start / stop

    async def start(self, options: StartOptions | None = None, media_provider: MediaProvider | None = None) -> None:
        if self.status in (
            SessionStatus.REQUESTING_PERMISSIONS,
            SessionStatus.CONNECTING,
            SessionStatus.CONNECTED,
        ):
            return
        if options is not None:
            self.options = options
        options = self.options
        language = options.language if is_supported_language(options.language) else self.config.default_language
        context = SessionContext(
            language=language,
            noise_profile=normalize_noise_profile(options.noise_profile or self.config.default_noise_profile),
            turn_detection=options.turn_detection or self.config.default_turn_detection,
            bypass_blueprint=options.bypass_blueprint,
            handled_tool_calls=BoundedIdSet(self.config.handled_tool_call_limit),
            diagnostics=DiagnosticLog.from_settings(self.config),
        )
        generation = context.generation
        self.context = context
        self._generation = generation
        self.error = None
        self._set_status(SessionStatus.REQUESTING_PERMISSIONS)

        try:
            media = await media_provider() if media_provider is not None else None
            if not self._is_current(generation):
                return
            self._set_status(SessionStatus.CONNECTING)

            session_id = await self.collaborators.sessions.create_session(
                project_id=options.project_id,
                noise_profile=context.noise_profile,
                language=context.language,
                defer_project=options.defer_project,
            )
            if not self._is_current(generation):
                await self.collaborators.sessions.complete_session(session_id)
                return
            context.record = SessionRecord(
                session_id=session_id,
                project_id=options.project_id,
                started_at=time.time(),
                language=context.language,
                noise_profile=context.noise_profile,
            )
            structlog.contextvars.bind_contextvars(session_id=session_id)
            if options.project_id:
                context.project_bundle = await self.collaborators.projects.get_project(options.project_id)
            self._wire(context)
            await self.refresh_instruction_context()

            handle = await self.transport.open(media, self.credentials)
            if not self._is_current(generation):
                await handle.close()
                return
            self._handle = handle
            self.outbound.attach(handle.channel)
            self._reader = asyncio.create_task(self._read_loop(handle, generation))
            await self.publisher.flush()
            if not self._is_current(generation):
                return
            self._set_status(SessionStatus.CONNECTED)
        except Exception as exc:
            if not self._is_current(generation):
                return
            logger.error("realtime_session_start_failed", handle=self.handle, error=str(exc))
            self.error = str(exc) or exc.__class__.__name__
            await self._teardown()
            self._set_status(SessionStatus.ERROR, self.error)

    def _wire(self, context: SessionContext) -> None:
        self.normalizer = EventNormalizer()
        self.outbound = OutboundChannel(open_timeout=self.config.channel_open_timeout_seconds)
        self.publisher = SessionUpdatePublisher(
            context,
            self.outbound,
            model=self.credentials.model,
            transcription_model=self.config.transcription_model,
            debounce_seconds=self.config.instructions_debounce_seconds,
        )
        self.drafts = DraftQueueCoordinator(
            context,
            self.collaborators.documents,
            self.collaborators.drafts,
            self.outbound,
            on_progress=self._on_draft_progress,
            retry_delay=self.config.draft_retry_delay_seconds,
        )
        resolver = ProjectIdResolver(
            listing=lambda: context.cached_projects,
            session_project=lambda: context.project_id,
        )
        handlers = ToolHandlers(
            context,
            self.collaborators,
            resolver,
            self.drafts,
            listing_limit=self.config.project_listing_limit,
            on_project_change=self._on_project_change,
            on_workspace_change=self._on_workspace_change,
        )
        self.dispatcher = ToolDispatcher(
            context,
            handlers,
            self.outbound,
            mode=lambda: context.instruction_context.mode,
        )

    async def stop(self, reason: str | None = None) -> None:
        if self.status in (SessionStatus.IDLE, SessionStatus.ENDED) or self._stopping:
            return
        self._stopping = True
        context = self.context
        try:
            self._generation = None
            await self._teardown()
            if context is not None and context.record is not None and not context.completed:
                context.completed = True
                await self._complete(context.record)
            if context is not None:
                context.clear()
            self._set_status(SessionStatus.ENDED, reason)
        finally:
            self._stopping = False
            structlog.contextvars.unbind_contextvars("session_id")

    async def _complete(self, record: SessionRecord) -> None:
        try:
            await self.collaborators.sessions.complete_session(record.session_id)
        except Exception as exc:
            logger.error("session_complete_failed", session_id=record.session_id, error=str(exc))
        if not record.project_id:
            return
        try:
            await self.collaborators.transcripts.finalize_transcript(
                project_id=record.project_id, session_id=record.session_id
            )
        except Exception as exc:
            logger.error("transcript_finalize_failed", session_id=record.session_id, error=str(exc))

    async def _teardown(self) -> None:
        """Release everything tied to the current generation. Safe to repeat."""
        if self.publisher is not None:
            self.publisher.reset()
        if self.outbound is not None:
            self.outbound.close()
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        handle, self._handle = self._handle, None
        if handle is not None:
            await handle.close()
        self.normalizer.reset()
        if self.dispatcher is not None:
            self.dispatcher.reset()
        if self.context is not None:
            self.context.retire()

    def cancel_background(self) -> None:
        if self.drafts is not None:
            self.drafts.cancel_pending()
        for task in list(self._background):
            task.cancel()

    # inbound events

    async def _read_loop(self, handle: TransportHandle, generation: str) -> None:
        async for frame in handle.channel.messages():
            if not self._is_current(generation):
                return
            try:
                await self.handle_frame(frame)
            except ChannelClosed:
                break
            except Exception:
                logger.exception("realtime_event_handling_failed", handle=self.handle)
        if self._is_current(generation) and not self._stopping:
            logger.warning("realtime_channel_closed", handle=self.handle)
            self._spawn(self.stop("Realtime connection closed"))

    async def handle_frame(self, frame: str | bytes | dict) -> NormalizedEvent | None:
        context = self.context
        event = self.normalizer.normalize(frame)
        if event is None or context is None:
            return None
        context.diagnostics.add("server_event", event.event_type or "unknown")

        if event.session_id and context.record is not None:
            context.record.realtime_session_id = event.session_id
            try:
                await self.collaborators.sessions.update_realtime_id(context.record.session_id, event.session_id)
            except Exception as exc:
                logger.error("realtime_id_update_failed", error=str(exc))
        if event.error:
            logger.warning("realtime_server_error", error=event.error)
            context.diagnostics.add("connection", "server_error", {"error": event.error})

        for speaker, speaking in event.activity:
            if context.speaking.get(speaker) != speaking:
                context.speaking[speaker] = speaking
                await self.emit("voice.activity", {"speaker": speaker.value, "speaking": speaking})
        if event.partial is not None:
            speaker, text = event.partial
            context.partial_text[speaker] = text
            await self.emit("transcript.partial", {"speaker": speaker.value, "text": text})
        for final in event.finals:
            await self._finalize(final, event)

        item = event.conversation_item
        if item is not None:
            await self._save_chunk(item.as_chunk(event.event_type))
        if event.progress is not None and self.drafts is not None:
            self.drafts.handle_progress(event.progress)

        if self.dispatcher is not None:
            for call in event.tool_calls:
                await self.dispatcher.dispatch(call)
        return event

    async def _finalize(self, final: FinalTranscript, event: NormalizedEvent) -> None:
        context = self.context
        fragment = TranscriptFragment(id=final.key, speaker=final.speaker, text=final.text, timestamp=time.time())
        if not context.add_transcript(fragment):
            return
        context.partial_text.pop(final.speaker, None)
        context.speaking[final.speaker] = False
        await self.emit(
            "transcript.final",
            {
                "id": fragment.id,
                "speaker": fragment.speaker.value,
                "text": fragment.text,
                "timestamp": fragment.timestamp,
            },
        )
        record = context.record
        if record is None:
            return
        try:
            message_id = await self.collaborators.transcripts.append_message(
                session_id=record.session_id,
                speaker=final.speaker.value,
                transcript=final.text,
                timestamp=fragment.timestamp,
                event_id=event.event_id,
            )
        except Exception as exc:
            logger.error("transcript_append_failed", fragment_id=fragment.id, error=str(exc))
            context.diagnostics.add("tool_error", "transcript_append_failed", {"fragmentId": fragment.id})
            return
        fragment.message_id = message_id
        context.pointers.register_fragment(final.key, message_id)
        item_id = final.item.item_id if final.item is not None else event.raw.get("item_id")
        if item_id:
            context.pointers.register(item_id, message_id)
        await self._save_chunk(
            {
                "itemId": item_id or final.key,
                "type": "message",
                "role": final.speaker.value,
                "text": final.text,
                "messageId": message_id,
                "eventType": event.event_type,
                "createdAt": fragment.timestamp,
            }
        )

    async def _save_chunk(self, chunk: dict[str, Any]) -> None:
        context = self.context
        if context is None or context.record is None or not context.record.project_id:
            return
        try:
            await self.collaborators.transcripts.save_transcript_chunk(
                project_id=context.record.project_id,
                session_id=context.record.session_id,
                chunk=chunk,
            )
        except Exception as exc:
            logger.error("transcript_chunk_failed", item_id=chunk.get("itemId"), error=str(exc))

    # instruction context

    def update_instruction_context(self, **changes: Any) -> bool:
        context = self.context
        if context is None:
            return False
        updated = context.instruction_context.replace(**changes)
        if updated == context.instruction_context:
            return False
        mode_changed = updated.mode != context.instruction_context.mode
        context.instruction_context = updated
        if self.publisher is not None:
            self.publisher.schedule()
        if mode_changed:
            self._spawn(self.emit("session.mode", {"mode": updated.mode.value}))
        return True

    async def refresh_instruction_context(self, workspace: Workspace | None = None) -> None:
        """Derive mode and dynamic fragments from the session's project state."""
        context = self.context
        if context is None:
            return
        project_id = context.project_id
        bundle = context.project_bundle
        if bundle is not None and bundle.project_id != project_id:
            bundle = None
        missing = tuple(bundle.summary.missing_fields) if bundle is not None else ()
        mode = context.mode_override or derive_mode(
            has_project=bool(project_id),
            missing_fields=missing,
            bypass_blueprint=context.bypass_blueprint,
        )
        drafting = context.instruction_context.drafting
        if mode is SessionMode.GHOSTWRITING and project_id:
            drafting = await self._drafting_snapshot(project_id, workspace) or drafting
        self.update_instruction_context(
            mode=mode,
            missing_fields=missing,
            drafting=drafting,
            blueprint_bypassed=context.bypass_blueprint,
        )

    async def _drafting_snapshot(self, project_id: str, workspace: Workspace | None) -> DraftingSnapshot | None:
        try:
            if workspace is None:
                workspace = await self.collaborators.documents.get_workspace(project_id)
            todos = await self.collaborators.notes.list_todos(project_id)
        except Exception as exc:
            logger.error("drafting_snapshot_failed", project_id=project_id, error=str(exc))
            return None
        return DraftingSnapshot(
            open_todo_count=sum(1 for todo in todos if todo.status != "resolved"),
            sections=tuple(SectionSnapshot(section.heading, section.status) for section in workspace.sections),
        )

    async def _on_project_change(self, bundle: ProjectBundle) -> None:
        if self.context is None:
            return
        self.context.project_bundle = bundle
        await self.refresh_instruction_context()

    async def _on_workspace_change(self, workspace: Workspace) -> None:
        if self.context is None or self.context.instruction_context.mode is not SessionMode.GHOSTWRITING:
            return
        await self.refresh_instruction_context(workspace)

    def _on_draft_progress(self, status: str) -> None:
        if self.publisher is not None:
            self.publisher.schedule()
        if self.context is not None:
            progress = self.context.draft_progress
            self._spawn(
                self.emit(
                    "draft.progress",
                    {
                        "status": progress.status,
                        "jobId": progress.job_id,
                        "summary": progress.summary,
                        "error": progress.error,
                    },
                )
            )
        if status == "complete":
            self._spawn(self.refresh_instruction_context())

    # UI actions

    def _require_context(self) -> SessionContext:
        if self.context is None or self.context.record is None:
            raise RuntimeError("Session is not active")
        return self.context

    async def assign_project(self, project_id: str) -> ProjectBundle:
        context = self._require_context()
        bundle = await self.collaborators.projects.get_project(project_id)
        if bundle is None:
            raise LookupError(f"Project {project_id} not found")
        await self.collaborators.sessions.assign_project(context.record.session_id, project_id)
        context.record.project_id = project_id
        context.project_bundle = bundle
        await self.refresh_instruction_context()
        return bundle

    async def send_text(self, text: str) -> bool:
        if self.status is not SessionStatus.CONNECTED or self.outbound is None:
            return False
        return await self.outbound.send_user_text(text)

    async def set_language(self, language: str) -> None:
        if not is_supported_language(language):
            raise ValueError(f"Unsupported language {language!r}")
        self.options = replace(self.options, language=language)
        context = self.context
        if context is None or context.record is None:
            return
        context.language = language
        context.record.language = language
        await self.collaborators.sessions.set_language(context.record.session_id, language)
        if self.publisher is not None:
            self.publisher.schedule()

    async def set_noise_profile(self, noise_profile: str) -> None:
        noise_profile = normalize_noise_profile(noise_profile)
        self.options = replace(self.options, noise_profile=noise_profile)
        context = self.context
        if context is None or context.record is None:
            return
        context.noise_profile = noise_profile
        context.record.noise_profile = noise_profile
        await self.collaborators.sessions.set_noise_profile(context.record.session_id, noise_profile)
        if self.publisher is not None:
            self.publisher.schedule()

    def set_turn_detection(self, preset: str) -> None:
        self.options = replace(self.options, turn_detection=preset)
        if self.context is None:
            return
        self.context.turn_detection = preset
        if self.publisher is not None:
            self.publisher.schedule()

    async def set_context(self, *, mode: SessionMode | None = None, bypass_blueprint: bool | None = None) -> None:
        context = self._require_context()
        context.mode_override = mode
        if bypass_blueprint is not None:
            context.bypass_blueprint = bypass_blueprint
        await self.refresh_instruction_context()

    def snapshot(self) -> dict[str, Any]:
        context = self.context
        snapshot: dict[str, Any] = {
            "handle": self.handle,
            "status": self.status.value,
            "error": self.error,
        }
        if context is None:
            return snapshot
        snapshot.update(
            session_id=context.session_id,
            project_id=context.project_id,
            mode=context.instruction_context.mode.value,
            language=context.language,
            noise_profile=context.noise_profile,
            turn_detection=context.turn_detection,
            transcripts=[
                {
                    "id": fragment.id,
                    "speaker": fragment.speaker.value,
                    "text": fragment.text,
                    "timestamp": fragment.timestamp,
                    "messageId": fragment.message_id,
                }
                for fragment in context.transcripts
            ],
            partials={speaker.value: text for speaker, text in context.partial_text.items() if text},
            speaking={speaker.value: value for speaker, value in context.speaking.items()},
            draft_progress={
                "status": context.draft_progress.status,
                "jobId": context.draft_progress.job_id,
                "summary": context.draft_progress.summary,
                "error": context.draft_progress.error,
                "updatedAt": context.draft_progress.updated_at,
            },
            diagnostics=context.diagnostics.snapshot(),
        )
        return snapshot
