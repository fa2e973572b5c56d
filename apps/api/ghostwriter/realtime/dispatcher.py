from collections.abc import Callable
from enum import Enum

import structlog

from ghostwriter.realtime.context import SessionContext
from ghostwriter.realtime.errors import PersistenceFailure, ToolCallError, ToolDisallowed
from ghostwriter.realtime.extraction import ToolCallInvocation
from ghostwriter.realtime.modes import SessionMode
from ghostwriter.realtime.outbound import OutboundChannel, ToolResult
from ghostwriter.realtime.tool_handlers import ToolHandlers
from ghostwriter.realtime.tools import (
    TOOLS_ALLOWING_EMPTY_ARGS,
    disallowed_reason,
    is_tool_allowed,
    normalize_tool_name,
)

logger = structlog.get_logger()


class CallState(str, Enum):
    OBSERVED = "observed"
    DEFERRED = "deferred"
    READY = "ready"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


def deferral_reason(name: str, call: ToolCallInvocation) -> str | None:
    """Why ``call`` cannot run yet, or None when it is ready."""
    if not call.response_id:
        return "missing_response_id"
    if not call.arguments and name not in TOOLS_ALLOWING_EMPTY_ARGS:
        return "arguments_incomplete"
    if name == "create_project":
        args = call.arguments or {}
        if not args.get("title") or not (args.get("contentType") or args.get("content_type")):
            return "arguments_incomplete"
    return None


class ToolDispatcher:
    """Runs each observed tool call at most once and replies exactly once.

    A call is only marked handled after its result has been sent. If sending
    fails the computed result is kept and re-sent on the next sighting, so the
    side effect is never repeated.
    """

    def __init__(
        self,
        context: SessionContext,
        handlers: ToolHandlers,
        outbound: OutboundChannel,
        mode: Callable[[], SessionMode],
    ) -> None:
        self.context = context
        self.handlers = handlers
        self.outbound = outbound
        self._mode = mode
        self.states: dict[str, CallState] = {}
        self._undelivered: dict[str, ToolResult] = {}

    @property
    def deferred(self) -> list[str]:
        return [call_id for call_id, state in self.states.items() if state is CallState.DEFERRED]

    async def dispatch(self, call: ToolCallInvocation) -> bool:
        """Process one sighting of ``call``. Returns True once its result is sent."""
        if call.id in self.context.handled_tool_calls:
            return False
        if self.states.get(call.id) is CallState.EXECUTING:
            return False

        pending = self._undelivered.get(call.id)
        if pending is not None:
            return await self._deliver(pending, call)

        self.states.setdefault(call.id, CallState.OBSERVED)
        name = normalize_tool_name(call.name)
        mode = self._mode()
        generation = self.context.generation

        if not is_tool_allowed(mode, name):
            if not call.response_id:
                self.states[call.id] = CallState.DEFERRED
                return False
            rejection = ToolDisallowed(name, mode.value, disallowed_reason(mode, name))
            logger.warning("tool_call_disallowed", tool=name, mode=mode.value, tool_call_id=call.id)
            result = ToolResult(tool=name, tool_call_id=call.id, success=False, error=str(rejection))
            self.states[call.id] = CallState.FAILED
            return await self._deliver(result, call)

        reason = deferral_reason(name, call)
        if reason is not None:
            self.states[call.id] = CallState.DEFERRED
            logger.debug("tool_call_deferred", tool=name, tool_call_id=call.id, reason=reason)
            return False

        self.states[call.id] = CallState.READY
        result = await self._execute(name, call)
        if generation != self.context.generation:
            self.states.pop(call.id, None)
            logger.info("tool_result_dropped_stale_session", tool=name, tool_call_id=call.id)
            return False
        return await self._deliver(result, call)

    async def _execute(self, name: str, call: ToolCallInvocation) -> ToolResult:
        self.states[call.id] = CallState.EXECUTING
        logger.info("tool_call_executing", tool=name, tool_call_id=call.id)
        try:
            output = await self.handlers.execute(name, call.arguments or {}, call.id)
        except ToolCallError as exc:
            return self._failure(name, call, str(exc))
        except Exception as exc:
            failure = PersistenceFailure(f"{name} failed: {exc}")
            logger.exception("tool_call_persistence_failed", tool=name, tool_call_id=call.id)
            return self._failure(name, call, str(failure))
        self.states[call.id] = CallState.COMPLETED
        logger.info("tool_call_completed", tool=name, tool_call_id=call.id)
        return ToolResult(tool=name, tool_call_id=call.id, success=True, result=output)

    def _failure(self, name: str, call: ToolCallInvocation, message: str) -> ToolResult:
        self.states[call.id] = CallState.FAILED
        self.context.diagnostics.add("tool_error", message, {"tool": name, "toolCallId": call.id})
        return ToolResult(tool=name, tool_call_id=call.id, success=False, error=message)

    async def _deliver(self, result: ToolResult, call: ToolCallInvocation) -> bool:
        sent = await self.outbound.submit_tool_result(result, call.response_id)
        if not sent:
            self._undelivered[call.id] = result
            logger.warning("tool_result_not_sent", tool=result.tool, tool_call_id=call.id)
            return False
        self._undelivered.pop(call.id, None)
        self.context.handled_tool_calls.add(call.id)
        self.states.pop(call.id, None)
        return True

    def reset(self) -> None:
        self.states.clear()
        self._undelivered.clear()
