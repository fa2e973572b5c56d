class RealtimeError(Exception):
    """Base class for realtime session failures."""


class TransportError(RealtimeError):
    """Control channel or handshake failure. Fatal to the session."""


class HandshakeError(TransportError):
    def __init__(self, status: int | None, detail: str = "") -> None:
        self.status = status
        self.detail = detail
        message = "Realtime handshake failed"
        if status is not None:
            message = f"{message} with status {status}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ChannelTimeout(TransportError):
    """Control channel did not open in time."""


class ChannelClosed(TransportError):
    """Control channel closed or not open for sending."""


class ToolCallError(RealtimeError):
    """Recoverable tool failure, reported back to the model as a result."""


class ToolDisallowed(ToolCallError):
    def __init__(self, tool: str, mode: str, message: str) -> None:
        self.tool = tool
        self.mode = mode
        super().__init__(message)


class MissingProjectId(ToolCallError):
    def __init__(self) -> None:
        super().__init__("projectId is required")


class MissingRequiredArgument(ToolCallError):
    def __init__(self, argument: str) -> None:
        self.argument = argument
        super().__init__(f"{argument} is required")


class UnresolvedMessagePointer(RealtimeError):
    def __init__(self, pointer: str) -> None:
        self.pointer = pointer
        super().__init__(f"Message pointer {pointer!r} has not been persisted yet")


class PersistenceFailure(ToolCallError):
    """A collaborator store call raised."""


class DraftWorkerFailure(RealtimeError):
    """Background drafting failed; reported over the progress side channel."""
