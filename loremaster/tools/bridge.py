"""
Tool Call Bridge: run a tool inside the game client and wait for the answer.

The server pushes a ``tool-execute`` frame to the world's connection and
parks an asyncio future under a fresh call id. The client answers with a
``tool-result`` frame whose id is matched back here through ``deliver``.

Each request ends exactly once: resolved by a matching delivery, rejected
by a delivered error, by the deadline, or by the world disconnecting.
Deliveries for ids that are no longer pending are ignored.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from loremaster.config.logging import get_logger
from loremaster.errors import NoClientConnectedError, ToolExecutionError, ToolTimeoutError
from loremaster.tools.base import ToolAdapter
from loremaster.tools.definitions import ToolRegistry

if TYPE_CHECKING:
    from loremaster.server.sessions import SessionRegistry

logger = get_logger(__name__)

DEFAULT_TOOL_TIMEOUT = 30.0


@dataclass
class PendingToolCall:
    call_id: str
    world_id: str
    tool_name: str
    future: asyncio.Future
    deadline: float
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)


class ToolCallBridge:
    """
    Correlates outbound tool requests with results arriving from game clients.

    Args:
        sessions: Registry used to find the live connection for a world
        tool_registry: Tool names accepted for execution
        timeout: Seconds to wait for a result before giving up
    """

    def __init__(
        self,
        sessions: SessionRegistry,
        tool_registry: ToolRegistry,
        timeout: float = DEFAULT_TOOL_TIMEOUT,
    ):
        self.sessions = sessions
        self.tool_registry = tool_registry
        self.timeout = timeout
        self._pending: dict[str, PendingToolCall] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, call_id: str) -> bool:
        return call_id in self._pending

    async def request(self, world_id: str, tool_name: str, tool_input: dict[str, Any]) -> Any:
        """
        Ask the world's game client to execute a tool and return its result.

        Raises:
            UnknownToolError: If the tool is not registered (nothing is sent)
            NoClientConnectedError: If the world has no live session, or it
                disconnects before answering
            ToolTimeoutError: If no result arrives before the deadline
            ToolExecutionError: If the client reports that the tool failed
        """
        self.tool_registry.validate(tool_name)

        session = self.sessions.lookup(world_id)
        if session is None:
            raise NoClientConnectedError(world_id)

        loop = asyncio.get_running_loop()
        call_id = f"tool_{uuid.uuid4().hex}"
        pending = PendingToolCall(
            call_id=call_id,
            world_id=world_id,
            tool_name=tool_name,
            future=loop.create_future(),
            deadline=loop.time() + self.timeout,
        )
        pending.timer = loop.call_later(self.timeout, self._expire, call_id)
        self._pending[call_id] = pending

        logger.info(f"Executing tool {tool_name} for world {world_id} ({call_id})")
        try:
            try:
                await session.push({
                    "type": "tool-execute",
                    "callId": call_id,
                    "toolCallId": call_id,
                    "toolName": tool_name,
                    "toolInput": tool_input,
                })
            except Exception as e:
                raise NoClientConnectedError(
                    world_id, f"Could not reach the client for world {world_id}: {e}"
                ) from e
            return await pending.future
        finally:
            pending.timer.cancel()
            self._pending.pop(call_id, None)

    def deliver(
        self,
        call_id: str,
        result: Any = None,
        error: str | None = None,
        world_id: str | None = None,
    ) -> bool:
        """
        Complete a pending call with the client's answer.

        A result sent from another world's connection does not match.

        Returns:
            True if a pending call matched, False if the id was unknown or late
        """
        pending = self._pending.get(call_id)
        if pending is None or (world_id is not None and pending.world_id != world_id):
            logger.debug(f"Ignoring result for unknown or expired tool call {call_id}")
            return False

        del self._pending[call_id]
        pending.timer.cancel()
        if pending.future.done():
            return False
        if error:
            pending.future.set_exception(ToolExecutionError(error))
        else:
            pending.future.set_result(result)
        return True

    def fail_pending(self, world_id: str, reason: str | None = None) -> int:
        """Reject every pending call for a world whose connection has gone away."""
        failed = 0
        for call_id, pending in list(self._pending.items()):
            if pending.world_id != world_id:
                continue
            del self._pending[call_id]
            pending.timer.cancel()
            if not pending.future.done():
                pending.future.set_exception(NoClientConnectedError(world_id, reason))
                failed += 1

        if failed:
            logger.warning(f"Failed {failed} pending tool call(s) for world {world_id}")
        return failed

    def _expire(self, call_id: str) -> None:
        pending = self._pending.pop(call_id, None)
        if pending is None or pending.future.done():
            return
        logger.warning(f"Tool {pending.tool_name} timed out after {self.timeout:g}s ({call_id})")
        pending.future.set_exception(ToolTimeoutError(pending.tool_name, self.timeout))

    def adapter_for_world(self, world_id: str) -> ClientToolAdapter:
        return ClientToolAdapter(self, world_id)


class ClientToolAdapter(ToolAdapter):
    """Tool adapter that executes every call in one world's game client."""

    def __init__(self, bridge: ToolCallBridge, world_id: str):
        self.bridge = bridge
        self.world_id = world_id

    async def call(self, tool_name: str, arguments: dict[str, Any]) -> Any:
        return await self.bridge.request(self.world_id, tool_name, arguments)

    async def list_tools(self) -> list[dict[str, Any]]:
        return self.bridge.tool_registry.definitions()
