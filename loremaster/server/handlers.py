"""
Operation handlers.

One coroutine per ``OperationType``. Each takes the calling connection and
the frame payload (camelCase keys, as the client sends them) and returns
the ``data`` of the success frame. Raised errors are turned into error
frames by the dispatcher.

Chat-like operations (``chat``, ``chat-batch``, ``veto``, ``regenerate``)
share one path: store the user turn, build bounded history and canon,
build the system prompt, resolve the turn with tools running in the
caller's game client, store the answer.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from loremaster.batch.coordinator import BatchCoordinator
from loremaster.config.logging import get_logger
from loremaster.context.manager import ContextManager
from loremaster.context.summarizer import Summarizer
from loremaster.errors import (
    AuthError,
    ForbiddenError,
    InvalidRequestError,
    NotFoundError,
)
from loremaster.llm.models import LLMResponse
from loremaster.llm.orchestrator import LLMOrchestrator
from loremaster.llm.prompts import PromptBuilder
from loremaster.server.dispatcher import Handler, OperationType
from loremaster.server.sessions import Identity, Session, SessionRegistry
from loremaster.storage.conversation_store import ConversationStore
from loremaster.storage.credentials_store import CredentialsStore
from loremaster.storage.models import CanonEntry, Conversation, MessageRole
from loremaster.tools.bridge import ToolCallBridge

logger = get_logger(__name__)


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def _context(payload: dict[str, Any]) -> dict[str, Any]:
    context = payload.get("context") or {}
    if not isinstance(context, dict):
        raise InvalidRequestError("'context' must be an object")
    return context


def _int_field(payload: dict[str, Any], name: str, default: int) -> int:
    value = payload.get(name, default)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise InvalidRequestError(f"'{name}' must be an integer") from e


def _required_text(payload: dict[str, Any], name: str, message: str) -> str:
    value = payload.get(name)
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequestError(message)
    return value.strip()


class RequestHandlers:
    """
    Implements every protocol operation on top of the core components.

    Args:
        sessions: Session registry (authentication, GM presence)
        store: Conversation store
        credentials: Per-world API keys
        coordinator: Batch coordinator
        context_manager: History and canon windows
        orchestrator: Tool-use resolution loop
        bridge: Tool call bridge, also the target of ``tool-result`` frames
        prompts: System prompt builder
        summarizer: Optional; when set, old history is summarized instead of dropped
    """

    def __init__(
        self,
        sessions: SessionRegistry,
        store: ConversationStore,
        credentials: CredentialsStore,
        coordinator: BatchCoordinator,
        context_manager: ContextManager,
        orchestrator: LLMOrchestrator,
        bridge: ToolCallBridge,
        prompts: PromptBuilder,
        summarizer: Summarizer | None = None,
    ):
        self.sessions = sessions
        self.store = store
        self.credentials = credentials
        self.coordinator = coordinator
        self.context_manager = context_manager
        self.orchestrator = orchestrator
        self.bridge = bridge
        self.prompts = prompts
        self.summarizer = summarizer

    def handlers(self) -> dict[OperationType, Handler]:
        return {
            OperationType.AUTH: self.auth,
            OperationType.CHAT: self.chat,
            OperationType.CHAT_BATCH: self.chat_batch,
            OperationType.VETO: self.veto,
            OperationType.REGENERATE: self.regenerate,
            OperationType.HISTORY: self.history,
            OperationType.TOOL_RESULT: self.tool_result,
            OperationType.NEW_CONVERSATION: self.new_conversation,
            OperationType.LIST_CONVERSATIONS: self.list_conversations,
            OperationType.GET_CONVERSATION: self.get_conversation,
            OperationType.DELETE_CONVERSATION: self.delete_conversation,
            OperationType.RENAME_CONVERSATION: self.rename_conversation,
            OperationType.CLEAR_CONVERSATION: self.clear_conversation,
            OperationType.SWITCH_CONVERSATION: self.switch_conversation,
            OperationType.PUBLISH_TO_CANON: self.publish_to_canon,
            OperationType.LIST_CANON: self.list_canon,
            OperationType.UPDATE_CANON: self.update_canon,
            OperationType.DELETE_CANON: self.delete_canon,
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _session(self, connection: Any) -> Session:
        return self.sessions.require_auth(self.sessions.session_for(connection))

    def _gm_session(self, connection: Any) -> Session:
        return self.sessions.require_gm(self.sessions.session_for(connection))

    async def _api_key(self, world_id: str) -> str:
        api_key = await self.credentials.get_api_key(world_id)
        if not api_key:
            raise AuthError(
                "API key not found for this world. Please re-authenticate with your API key."
            )
        return api_key

    async def _owned_conversation(self, session: Session, conversation_id: Any) -> Conversation:
        if not conversation_id:
            raise InvalidRequestError("conversationId is required")
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation not found: {conversation_id}")
        if conversation.world_id != session.world_id:
            raise ForbiddenError("Conversation does not belong to this world")
        return conversation

    async def _owned_canon(self, session: Session, canon_id: Any) -> CanonEntry:
        if not canon_id:
            raise InvalidRequestError("Canon ID is required")
        entry = await self.store.get_canon_entry(_int_field({"canonId": canon_id}, "canonId", 0))
        if entry is None or entry.world_id != session.world_id:
            raise NotFoundError(f"Canon message not found: {canon_id}")
        return entry

    async def _history(self, api_key: str, conversation_id: str) -> list[dict[str, Any]]:
        if self.summarizer is not None:
            window = await self.summarizer.window_with_summary(api_key, conversation_id)
            return list(window.messages)
        return await self.context_manager.get_messages_for_context(conversation_id)

    async def _generate(
        self,
        session: Session,
        api_key: str,
        conversation_id: str,
        user_message: str,
        context: dict[str, Any],
        *,
        batch: bool = False,
        correction: str | None = None,
        private: bool = False,
    ) -> LLMResponse:
        """Resolve one turn whose user message is already stored in ``conversation_id``."""
        history = await self._history(api_key, conversation_id)
        # The newest turn must reach the model even if it alone exceeds the budget
        if not history or history[-1]["content"] != user_message:
            history.append({"role": MessageRole.USER.value, "content": user_message})

        canon = await self.context_manager.get_canon_for_context(session.world_id)
        system_prompt = self.prompts.build(
            context,
            world_name=session.world_name,
            canon=canon.messages,
            batch=batch,
            correction=correction,
            private=private,
            gm_present=self.sessions.has_active_gm(session.world_id),
        )

        response = await self.orchestrator.generate_response(
            api_key,
            system_prompt,
            history,
            self.bridge.adapter_for_world(session.world_id),
        )
        logger.info(
            f"World {session.world_id}: response with {len(response.tool_calls)} tool call(s), "
            f"{response.usage.total_tokens} tokens"
        )
        return response

    # ------------------------------------------------------------------
    # Session & chat
    # ------------------------------------------------------------------

    async def auth(self, connection: Any, payload: dict[str, Any]) -> dict[str, Any]:
        identity = Identity(
            world_name=payload.get("worldName"),
            user_id=payload.get("userId"),
            user_name=payload.get("userName") or "Unknown",
            is_gm=payload.get("isGM") is True,
        )
        previous = self.sessions.lookup(payload.get("worldId") or "")
        session = await self.sessions.authenticate(
            connection, payload.get("worldId"), identity, payload.get("apiKey")
        )
        # Calls sent to the replaced client can no longer be answered
        if previous is not None and previous.connection is not connection:
            self.bridge.fail_pending(session.world_id, "Game client reconnected")
        return {
            "worldId": session.world_id,
            "isGM": session.is_gm,
            "message": "Authentication successful",
        }

    async def chat(self, connection: Any, payload: dict[str, Any]) -> dict[str, Any]:
        session = self._session(connection)
        message = _required_text(payload, "message", "Message is required")
        context = _context(payload)

        is_private = payload.get("isPrivate") is True
        if is_private and not session.is_gm:
            raise ForbiddenError("Private chat mode requires GM permissions")

        api_key = await self._api_key(session.world_id)
        conversation = await self.store.get_or_create_conversation(
            session.world_id, title=context.get("sceneName") or "Session"
        )
        await self.store.add_message(
            conversation.id, MessageRole.USER, message, {**context, "isPrivate": is_private}
        )

        response = await self._generate(
            session, api_key, conversation.id, message, context, private=is_private
        )
        record = await self.store.add_message(
            conversation.id, MessageRole.ASSISTANT, response.text, {"isPrivate": is_private}
        )

        return {
            "response": response.text,
            "conversationId": conversation.id,
            "messageId": record.id,
            "isPrivate": is_private,
            "canPublish": is_private and session.is_gm,
            "usage": _dump(response.usage),
        }

    async def chat_batch(self, connection: Any, payload: dict[str, Any]) -> dict[str, Any]:
        session = self._session(connection)
        context = _context(payload)
        api_key = await self._api_key(session.world_id)

        processed = await self.coordinator.process_batch(session.world_id, payload, context)
        response = await self._generate(
            session,
            api_key,
            processed.conversation_id,
            processed.user_message,
            context,
            batch=True,
        )
        record = await self.store.add_message(
            processed.conversation_id,
            MessageRole.ASSISTANT,
            response.text,
            {"batchId": processed.batch_id},
        )
        await self.coordinator.complete_batch(processed.batch_id, record.id)

        return {
            "response": response.text,
            "conversationId": processed.conversation_id,
            "messageId": record.id,
            "batchId": processed.batch_id,
            "participantCount": processed.participant_count,
            "usage": _dump(response.usage),
        }

    async def veto(self, connection: Any, payload: dict[str, Any]) -> dict[str, Any]:
        session = self._gm_session(connection)
        context = _context(payload)
        api_key = await self._api_key(session.world_id)

        processed = await self.coordinator.process_veto(session.world_id, payload, context)
        await self.coordinator.resubmit(processed.original_batch_id)

        response = await self._generate(
            session,
            api_key,
            processed.conversation_id,
            processed.veto_message,
            context,
            batch=True,
            correction=processed.correction,
        )
        record = await self.store.add_message(
            processed.conversation_id,
            MessageRole.ASSISTANT,
            response.text,
            {"batchId": processed.original_batch_id, "vetoed": True},
        )
        await self.coordinator.complete_batch(processed.original_batch_id, record.id)

        return {
            "response": response.text,
            "conversationId": processed.conversation_id,
            "messageId": record.id,
            "originalBatchId": processed.original_batch_id,
            "usage": _dump(response.usage),
        }

    async def regenerate(self, connection: Any, payload: dict[str, Any]) -> dict[str, Any]:
        session = self._gm_session(connection)
        context = _context(payload)
        api_key = await self._api_key(session.world_id)

        processed = await self.coordinator.process_regenerate(session.world_id, payload, context)
        response = await self._generate(
            session,
            api_key,
            processed.conversation_id,
            processed.user_message,
            context,
            batch=True,
        )
        record = await self.store.add_message(
            processed.conversation_id,
            MessageRole.ASSISTANT,
            response.text,
            {"batchId": processed.batch_id, "regeneratedFrom": processed.original_batch_id},
        )
        await self.coordinator.complete_batch(processed.batch_id, record.id)

        return {
            "response": response.text,
            "conversationId": processed.conversation_id,
            "messageId": record.id,
            "batchId": processed.batch_id,
            "originalBatchId": processed.original_batch_id,
            "usage": _dump(response.usage),
        }

    async def tool_result(self, connection: Any, payload: dict[str, Any]) -> dict[str, Any]:
        session = self._session(connection)
        call_id = payload.get("toolCallId") or payload.get("callId")
        if not call_id:
            raise InvalidRequestError("toolCallId is required")

        matched = self.bridge.deliver(
            call_id, payload.get("result"), payload.get("error"), world_id=session.world_id
        )
        return {"acknowledged": True, "matched": matched}

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def history(self, connection: Any, payload: dict[str, Any]) -> dict[str, Any]:
        session = self._session(connection)
        conversation_id = payload.get("conversationId")

        if not conversation_id:
            conversations = await self.store.list_conversations(session.world_id)
            return {"conversations": [_dump(c) for c in conversations]}

        await self._owned_conversation(session, conversation_id)
        messages = await self.store.get_messages(conversation_id, _int_field(payload, "limit", 50))
        return {"messages": [_dump(m) for m in messages]}

    async def new_conversation(self, connection: Any, payload: dict[str, Any]) -> dict[str, Any]:
        session = self._session(connection)
        title = (payload.get("title") or "").strip() or "New Session"
        conversation = await self.store.create_conversation(session.world_id, title)
        return {"conversation": _dump(conversation)}

    async def list_conversations(self, connection: Any, payload: dict[str, Any]) -> dict[str, Any]:
        session = self._session(connection)
        conversations = []
        for conversation in await self.store.list_conversations(session.world_id):
            stats = await self.store.get_conversation_stats(conversation.id)
            conversations.append({**_dump(conversation), "stats": _dump(stats)})
        return {"conversations": conversations}

    async def get_conversation(self, connection: Any, payload: dict[str, Any]) -> dict[str, Any]:
        session = self._session(connection)
        conversation = await self._owned_conversation(session, payload.get("conversationId"))

        result: dict[str, Any] = {
            "conversation": _dump(conversation),
            "stats": _dump(await self.store.get_conversation_stats(conversation.id)),
        }
        if payload.get("includeMessages", True):
            messages = await self.store.get_messages(conversation.id, _int_field(payload, "limit", 50))
            result["messages"] = [_dump(m) for m in messages]
        return result

    async def delete_conversation(self, connection: Any, payload: dict[str, Any]) -> dict[str, Any]:
        session = self._gm_session(connection)
        conversation = await self._owned_conversation(session, payload.get("conversationId"))
        await self.store.delete_conversation(conversation.id)
        return {"message": "Conversation deleted", "conversationId": conversation.id}

    async def rename_conversation(self, connection: Any, payload: dict[str, Any]) -> dict[str, Any]:
        session = self._session(connection)
        title = _required_text(payload, "title", "Title is required")
        conversation = await self._owned_conversation(session, payload.get("conversationId"))
        await self.store.update_conversation_title(conversation.id, title)
        return {"message": "Conversation renamed", "conversationId": conversation.id, "title": title}

    async def clear_conversation(self, connection: Any, payload: dict[str, Any]) -> dict[str, Any]:
        session = self._gm_session(connection)
        conversation = await self._owned_conversation(session, payload.get("conversationId"))
        await self.store.clear_conversation(conversation.id)
        return {"message": "Conversation cleared", "conversationId": conversation.id}

    async def switch_conversation(self, connection: Any, payload: dict[str, Any]) -> dict[str, Any]:
        session = self._session(connection)
        conversation = await self._owned_conversation(session, payload.get("conversationId"))
        # The current conversation is the most recently updated one
        await self.store.touch_conversation(conversation.id)
        conversation = await self.store.get_conversation(conversation.id)
        return {"message": "Switched conversation", "conversation": _dump(conversation)}

    # ------------------------------------------------------------------
    # Canon
    # ------------------------------------------------------------------

    async def publish_to_canon(self, connection: Any, payload: dict[str, Any]) -> dict[str, Any]:
        session = self._gm_session(connection)
        content = _required_text(payload, "content", "Content is required for publishing to canon")

        conversation = await self.store.get_or_create_conversation(session.world_id)
        entry = await self.store.publish_to_canon(
            session.world_id,
            conversation.id,
            content,
            published_by=session.user_id,
            published_by_name=session.user_name,
            original_message_id=_int_field(payload, "messageId", 0) or None,
            scene_context=payload.get("sceneContext"),
        )
        return {"canonId": entry.id, "message": "Published to canon"}

    async def list_canon(self, connection: Any, payload: dict[str, Any]) -> dict[str, Any]:
        session = self._session(connection)
        limit = _int_field(payload, "limit", 100)
        offset = _int_field(payload, "offset", 0)

        entries = await self.store.get_canon_entries(session.world_id, limit, offset)
        total = await self.store.get_canon_count(session.world_id)
        return {
            "canon": [_dump(e) for e in entries],
            "total": total,
            "hasMore": offset + len(entries) < total,
        }

    async def update_canon(self, connection: Any, payload: dict[str, Any]) -> dict[str, Any]:
        session = self._gm_session(connection)
        content = _required_text(payload, "content", "Content is required")
        entry = await self._owned_canon(session, payload.get("canonId"))
        await self.store.update_canon_entry(entry.id, content, session.user_id)
        return {"canonId": entry.id, "message": "Canon updated"}

    async def delete_canon(self, connection: Any, payload: dict[str, Any]) -> dict[str, Any]:
        session = self._gm_session(connection)
        entry = await self._owned_canon(session, payload.get("canonId"))
        await self.store.delete_canon_entry(entry.id)
        return {"canonId": entry.id, "message": "Canon retconned (deleted)"}
