import asyncio
import json
from dataclasses import dataclass
from typing import Any, Protocol

import structlog

from ghostwriter.realtime.errors import ChannelClosed, ChannelTimeout
from ghostwriter.realtime.instructions import PROGRESS_TAG, RESULT_TAG

logger = structlog.get_logger()


class Channel(Protocol):
    async def wait_open(self, timeout: float = ...) -> None: ...

    async def send(self, payload: dict[str, Any]) -> None: ...


@dataclass
class ToolResult:
    tool: str
    tool_call_id: str
    success: bool
    result: Any = None
    error: str | None = None

    def payload(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "tool": self.tool,
            "tool_call_id": self.tool_call_id,
            "success": self.success,
        }
        if self.success:
            body["result"] = self.result
        else:
            body["error"] = self.error
        return body


def system_message(text: str) -> dict[str, Any]:
    return {
        "type": "conversation.item.create",
        "item": {
            "type": "message",
            "role": "system",
            "content": [{"type": "input_text", "text": text}],
        },
    }


def tagged_text(tag: str, payload: dict[str, Any]) -> str:
    return f"{tag}::{json.dumps(payload, default=str)}"


class OutboundChannel:
    """Serialized writes to the control channel for one session generation.

    Every method reports whether the message actually went out. Once closed,
    late writers (background drafting, stale dispatches) are dropped.
    """

    def __init__(self, channel: Channel | None = None, open_timeout: float = 5.0) -> None:
        self._channel = channel
        self._open_timeout = open_timeout
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def attach(self, channel: Channel) -> None:
        self._channel = channel

    def close(self) -> None:
        self._closed = True

    async def _send_all(self, messages: list[dict[str, Any]]) -> bool:
        if self._closed or self._channel is None:
            return False
        async with self._lock:
            if self._closed:
                return False
            try:
                await self._channel.wait_open(self._open_timeout)
                for message in messages:
                    await self._channel.send(message)
            except (ChannelClosed, ChannelTimeout) as exc:
                logger.warning(
                    "outbound_send_failed",
                    message_types=[message.get("type") for message in messages],
                    error=str(exc),
                )
                return False
        return True

    async def send(self, message: dict[str, Any]) -> bool:
        return await self._send_all([message])

    async def update_session(self, session: dict[str, Any]) -> bool:
        return await self.send({"type": "session.update", "session": session})

    async def send_user_text(self, text: str) -> bool:
        return await self._send_all(
            [
                {
                    "type": "conversation.item.create",
                    "item": {
                        "type": "message",
                        "role": "user",
                        "content": [{"type": "input_text", "text": text}],
                    },
                },
                {"type": "response.create"},
            ]
        )

    async def submit_tool_result(self, result: ToolResult, response_id: str | None) -> bool:
        """Structured tool output, its tagged system echo, then resume generation."""
        if not response_id:
            return False
        body = result.payload()
        return await self._send_all(
            [
                {
                    "type": "response.submit_tool_outputs",
                    "response_id": response_id,
                    "tool_outputs": [
                        {
                            "tool_call_id": result.tool_call_id,
                            "output": json.dumps(body, default=str),
                        }
                    ],
                },
                system_message(tagged_text(RESULT_TAG, body)),
                {"type": "response.create"},
            ]
        )

    async def inject_progress(self, payload: dict[str, Any]) -> bool:
        return await self.send(system_message(tagged_text(PROGRESS_TAG, payload)))
