"""
WebSocket server.

Wires the components together and runs the accept loop. Every inbound
frame is dispatched in its own task: a chat request waiting for a tool
result must not block the ``tool-result`` frame that completes it, which
arrives on the same connection.

``GET /health`` on the same port answers ``200 OK`` for load balancers.
"""

from __future__ import annotations

import asyncio
import json
from http import HTTPStatus
from typing import Any

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from loremaster.batch.coordinator import BatchCoordinator
from loremaster.config.logging import get_logger
from loremaster.config.settings import Settings
from loremaster.context.manager import ContextManager
from loremaster.context.summarizer import Summarizer
from loremaster.llm.gateway import LiteLLMGateway
from loremaster.llm.orchestrator import LLMOrchestrator
from loremaster.llm.prompts import PromptBuilder, load_system_template
from loremaster.server.dispatcher import Dispatcher
from loremaster.server.handlers import RequestHandlers
from loremaster.server.sessions import SessionRegistry
from loremaster.storage.conversation_store import ConversationStore
from loremaster.storage.credentials_store import CredentialsStore
from loremaster.tools.bridge import ToolCallBridge
from loremaster.tools.definitions import ToolRegistry

logger = get_logger(__name__)


class LoremasterServer:
    """
    The orchestration core behind a WebSocket endpoint.

    Example:
        >>> async with LoremasterServer(settings) as server:
        ...     await server.serve_forever()

    Args:
        settings: Application settings
        store: Conversation store to use instead of one at ``settings.storage.db_path``
        gateway: LLM gateway to use instead of a LiteLLM one
        system_template: Prompt template text instead of ``prompts/system.txt``
    """

    def __init__(
        self,
        settings: Settings,
        store: ConversationStore | None = None,
        gateway: LiteLLMGateway | None = None,
        system_template: str | None = None,
    ):
        self.settings = settings
        self.store = store or ConversationStore(settings.storage.db_path)
        self.gateway = gateway or LiteLLMGateway(settings.llm)
        self._system_template = system_template
        self._server: Server | None = None
        self._initialized = False

        self.credentials = CredentialsStore(self.store)
        self.sessions = SessionRegistry(self.credentials)
        self.bridge = ToolCallBridge(
            self.sessions, ToolRegistry(), timeout=settings.tools.timeout_seconds
        )
        self.context_manager = ContextManager(
            self.store,
            max_history_tokens=settings.context.max_history_tokens,
            max_canon_tokens=settings.context.max_canon_tokens,
            recent_message_count=settings.context.recent_message_count,
        )
        self.coordinator = BatchCoordinator(self.store)
        self.orchestrator = LLMOrchestrator(
            self.gateway, max_tool_rounds=settings.llm.max_tool_rounds
        )
        self.dispatcher: Dispatcher | None = None

    async def initialize(self) -> None:
        """Open storage, load the prompt template and build the dispatcher."""
        if self._initialized:
            return

        await self.store.initialize()
        template = self._system_template or await load_system_template()

        summarizer = None
        if self.settings.context.summarize_enabled:
            summarizer = Summarizer(self.gateway, self.context_manager)

        handlers = RequestHandlers(
            sessions=self.sessions,
            store=self.store,
            credentials=self.credentials,
            coordinator=self.coordinator,
            context_manager=self.context_manager,
            orchestrator=self.orchestrator,
            bridge=self.bridge,
            prompts=PromptBuilder(template),
            summarizer=summarizer,
        )
        self.dispatcher = Dispatcher(handlers.handlers())
        self._initialized = True
        logger.info(f"Loremaster core initialized (model: {self.settings.llm.model})")

    async def shutdown(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        await self.store.shutdown()
        self._initialized = False
        logger.info("Loremaster core shut down")

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()
        return False

    async def start(self) -> Server:
        """Start listening. Returns once the socket is bound."""
        await self.initialize()
        self._server = await serve(
            self.handle_connection,
            self.settings.server.host,
            self.settings.server.port,
            process_request=self._process_request,
            max_size=self.settings.server.max_frame_bytes,
        )
        logger.info(
            f"Listening on ws://{self.settings.server.host}:{self.settings.server.port}"
        )
        return self._server

    async def serve_forever(self) -> None:
        server = self._server or await self.start()
        await server.serve_forever()

    @staticmethod
    def _process_request(connection: ServerConnection, request: Request) -> Response | None:
        if request.path == "/health":
            return connection.respond(HTTPStatus.OK, "OK\n")
        return None

    async def handle_connection(self, websocket: Any) -> None:
        """Read frames from one client until it disconnects."""
        if self.dispatcher is None:
            raise RuntimeError("Server not initialized. Call await server.initialize() first")

        logger.info(f"Client connected: {getattr(websocket, 'remote_address', None)}")
        in_flight: set[asyncio.Task] = set()
        try:
            async for raw in websocket:
                task = asyncio.create_task(self._handle_frame(websocket, raw))
                in_flight.add(task)
                task.add_done_callback(in_flight.discard)
        except ConnectionClosed as e:
            logger.info(f"Connection closed: {e}")
        finally:
            self._on_disconnect(websocket)

    async def _handle_frame(self, websocket: Any, raw: str | bytes) -> None:
        response = await self.dispatcher.handle_raw(websocket, raw)
        try:
            await websocket.send(json.dumps(response))
        except ConnectionClosed:
            logger.debug(f"Client gone before response to {response.get('type')} could be sent")

    def _on_disconnect(self, websocket: Any) -> None:
        session = self.sessions.unregister(websocket)
        if session is None:
            return
        # Only fail tool calls if no newer connection took over the world
        if self.sessions.lookup(session.world_id) is None:
            self.bridge.fail_pending(session.world_id, "Game client disconnected")
        logger.info(f"Client disconnected from world {session.world_id}")
