"""
Error taxonomy for the orchestration core.

Every error raised by a request handler ends up as an ``error`` frame sent
back to the client; the message text is what the client displays, so keep
messages short and user-facing.
"""

from __future__ import annotations


class LoremasterError(Exception):
    """Base class for all errors raised by the orchestration core."""


# --- Sessions & protocol ---------------------------------------------------


class AuthError(LoremasterError):
    """The auth handshake is missing a world id or any usable API key."""


class UnauthenticatedError(LoremasterError):
    """A request arrived on a connection that has not authenticated."""

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class ForbiddenError(LoremasterError):
    """A non-GM session attempted a GM-only operation."""

    def __init__(self, message: str = "This action requires GM permissions"):
        super().__init__(message)


class UnknownOperationError(LoremasterError):
    """The inbound frame ``type`` is not a known operation."""

    def __init__(self, op_type: object):
        super().__init__(f"Unknown message type: {op_type}")
        self.op_type = op_type


class InvalidRequestError(LoremasterError):
    """A request payload is missing a required field or has a bad value."""


class NotFoundError(LoremasterError):
    """A referenced conversation or canon entry does not exist for this world."""


# --- Tools -----------------------------------------------------------------


class UnknownToolError(LoremasterError):
    """The LLM asked for a tool that is not in the tool registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class NoClientConnectedError(LoremasterError):
    """No live session exists for the world a tool call targets."""

    def __init__(self, world_id: str, message: str | None = None):
        super().__init__(message or f"No client connected for world {world_id}")
        self.world_id = world_id


class ToolTimeoutError(LoremasterError):
    """The game client did not return a tool result before the deadline."""

    def __init__(self, tool_name: str, timeout: float):
        super().__init__(f"Tool execution timeout: {tool_name} (no result after {timeout:g}s)")
        self.tool_name = tool_name
        self.timeout = timeout


class ToolExecutionError(LoremasterError):
    """The game client reported that a tool failed."""


# --- Batches ---------------------------------------------------------------


class BatchNotFoundError(LoremasterError):
    """A veto or regenerate referenced a batch that does not exist."""

    def __init__(self, batch_id: str):
        super().__init__(f"Batch not found: {batch_id}")
        self.batch_id = batch_id


class BatchTransitionError(LoremasterError):
    """A batch status change is not allowed by the batch lifecycle."""

    def __init__(self, batch_id: str, current: str, requested: str):
        super().__init__(f"Batch {batch_id} cannot move from '{current}' to '{requested}'")
        self.batch_id = batch_id
        self.current = current
        self.requested = requested


# --- Collaborators ---------------------------------------------------------


class ProviderError(LoremasterError):
    """The LLM provider call failed. The provider's message is passed through."""

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class StorageError(LoremasterError):
    """The persistence layer is unavailable or was used before initialization."""
