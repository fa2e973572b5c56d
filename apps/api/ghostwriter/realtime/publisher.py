import asyncio
import json
from typing import Any

import structlog

from ghostwriter.realtime.context import SessionContext
from ghostwriter.realtime.instructions import build_instructions
from ghostwriter.realtime.outbound import OutboundChannel
from ghostwriter.realtime.presets import (
    AUDIO_FORMAT,
    noise_reduction_config,
    turn_detection_config,
)
from ghostwriter.realtime.tools import tools_for, tools_signature

logger = structlog.get_logger()


class SessionUpdatePublisher:
    """Pushes ``session.update`` messages carrying only what changed.

    Mutations call :meth:`schedule`; bursts collapse into one push once the
    state settles for ``debounce_seconds``.
    """

    def __init__(
        self,
        context: SessionContext,
        outbound: OutboundChannel,
        *,
        model: str,
        transcription_model: str,
        debounce_seconds: float = 0.05,
    ) -> None:
        self.context = context
        self.outbound = outbound
        self.model = model
        self.transcription_model = transcription_model
        self.debounce_seconds = debounce_seconds
        self._last_sent: dict[str, Any] = {}
        self._pending: asyncio.Task | None = None
        self.push_count = 0

    def _audio(self) -> dict[str, Any]:
        return {
            "input": {
                "format": dict(AUDIO_FORMAT),
                "transcription": {
                    "model": self.transcription_model,
                    "language": self.context.language.split("-")[0],
                },
                "noise_reduction": noise_reduction_config(self.context.noise_profile),
                "turn_detection": turn_detection_config(self.context.turn_detection),
            },
            "output": {"format": dict(AUDIO_FORMAT)},
        }

    def _parts(self) -> dict[str, tuple[Any, Any]]:
        mode = self.context.instruction_context.mode
        audio = self._audio()
        instructions = build_instructions(mode, self.context.instruction_context, self.context.language)
        return {
            "model": (self.model, self.model),
            "audio": (audio, json.dumps(audio, sort_keys=True)),
            "tools": ([tool.as_payload() for tool in tools_for(mode)], tools_signature(mode)),
            "instructions": (instructions, instructions),
        }

    def pending_update(self) -> tuple[dict[str, Any], dict[str, Any]] | None:
        """(session payload, signatures) for the parts that differ from the last push."""
        changed: dict[str, Any] = {}
        signatures: dict[str, Any] = {}
        for key, (value, signature) in self._parts().items():
            if self._last_sent.get(key) != signature:
                changed[key] = value
                signatures[key] = signature
        if not changed:
            return None
        session: dict[str, Any] = {"type": "realtime", **changed}
        if "tools" in changed:
            session["tool_choice"] = "auto"
        return session, signatures

    async def flush(self) -> bool:
        if self._pending is not None and self._pending is not asyncio.current_task():
            self._pending.cancel()
        self._pending = None
        update = self.pending_update()
        if update is None:
            return False
        session, signatures = update
        sent = await self.outbound.update_session(session)
        if sent:
            self._last_sent.update(signatures)
            self.push_count += 1
            logger.info("session_update_pushed", fields=sorted(signatures))
        return sent

    def schedule(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = asyncio.create_task(self._debounced_flush())

    async def _debounced_flush(self) -> None:
        try:
            await asyncio.sleep(self.debounce_seconds)
            await self.flush()
        except asyncio.CancelledError:
            return

    def reset(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None
        self._last_sent.clear()
