"""
Request/response dispatcher.

Inbound frames are JSON objects ``{type, requestId, ...payload}``. The
``type`` selects exactly one handler from the closed ``OperationType`` set.
Whatever the handler returns is wrapped as a success frame; whatever it
raises is logged and wrapped as an error frame. A failing request never
closes the connection.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel

from loremaster.config.logging import get_logger
from loremaster.errors import LoremasterError, UnknownOperationError

logger = get_logger(__name__)


class OperationType(str, Enum):
    AUTH = "auth"
    CHAT = "chat"
    CHAT_BATCH = "chat-batch"
    VETO = "veto"
    REGENERATE = "regenerate"
    HISTORY = "history"
    TOOL_RESULT = "tool-result"
    NEW_CONVERSATION = "new-conversation"
    LIST_CONVERSATIONS = "list-conversations"
    GET_CONVERSATION = "get-conversation"
    DELETE_CONVERSATION = "delete-conversation"
    RENAME_CONVERSATION = "rename-conversation"
    CLEAR_CONVERSATION = "clear-conversation"
    SWITCH_CONVERSATION = "switch-conversation"
    PUBLISH_TO_CANON = "publish-to-canon"
    LIST_CANON = "list-canon"
    UPDATE_CANON = "update-canon"
    DELETE_CANON = "delete-canon"


# handler(connection, payload) -> data for the success frame
Handler = Callable[[Any, dict[str, Any]], Awaitable[Any]]


def success_frame(op_type: str, request_id: Any, data: Any) -> dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json", by_alias=True)
    return {"type": op_type, "requestId": request_id, "success": True, "data": data}


def error_frame(request_id: Any, message: str) -> dict[str, Any]:
    return {"type": "error", "requestId": request_id, "success": False, "error": message}


class Dispatcher:
    """
    Routes frames to handlers by operation type.

    Args:
        handlers: One handler per ``OperationType``; a missing entry is a
            construction error
    """

    def __init__(self, handlers: dict[OperationType, Handler]):
        missing = [op.value for op in OperationType if op not in handlers]
        if missing:
            raise ValueError(f"No handler registered for: {', '.join(missing)}")
        self._handlers = dict(handlers)

    @staticmethod
    def resolve(op_type: Any) -> OperationType:
        try:
            return OperationType(op_type)
        except ValueError:
            raise UnknownOperationError(op_type) from None

    async def dispatch(self, connection: Any, frame: dict[str, Any]) -> dict[str, Any]:
        """Run the handler for one decoded frame and return the response frame."""
        request_id = frame.get("requestId")
        op_type = frame.get("type")
        try:
            operation = self.resolve(op_type)
            payload = {k: v for k, v in frame.items() if k not in ("type", "requestId")}
            data = await self._handlers[operation](connection, payload)
            return success_frame(operation.value, request_id, data)
        except LoremasterError as e:
            logger.warning(f"Request {op_type} ({request_id}) failed: {e}")
            return error_frame(request_id, str(e))
        except Exception as e:
            logger.error(f"Request {op_type} ({request_id}) raised: {e}", exc_info=True)
            return error_frame(request_id, str(e) or e.__class__.__name__)

    async def handle_raw(self, connection: Any, raw: str | bytes) -> dict[str, Any]:
        """Decode a text frame and dispatch it. Malformed JSON yields an error frame."""
        try:
            frame = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f"Discarding malformed frame: {e}")
            return error_frame(None, "Invalid message format")
        if not isinstance(frame, dict):
            return error_frame(None, "Invalid message format")
        return await self.dispatch(connection, frame)
