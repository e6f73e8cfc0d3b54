"""
WebSocket Server for the chat engine

A thin communication layer between the frontend and the chat session. It
handles WebSocket connections and message routing only; every socket gets its
own ``ChatSession``.
"""

from __future__ import annotations

import contextlib
import json
import logging
import uuid
from typing import Any

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ValidationError

from cara.chat.chat_orchestrator import ChatOrchestrator
from cara.chat.chat_session import ChatSession
from cara.chat.models import ChatMessage, ConversationContext
from cara.config import Configuration
from cara.errors import ChatError
from cara.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class ChatPayload(BaseModel):
    """User text plus free-form client metadata."""

    text: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class WebSocketMessage(BaseModel):
    """Client request envelope."""

    request_id: str
    payload: ChatPayload
    action: str = "chat"


class WebSocketResponse(BaseModel):
    """Server event envelope; one per chat event."""

    request_id: str
    status: str  # "processing", "chunk", "completed", "error"
    chunk: dict[str, Any] = Field(default_factory=dict)


class WebSocketServer:
    """
    Serves ``/ws/chat``. Parses requests, forwards them to the socket's
    ``ChatSession`` and translates session events into response envelopes.
    """

    def __init__(
        self,
        orchestrator: ChatOrchestrator,
        registry: ToolRegistry,
        configuration: Configuration,
    ):
        self.orchestrator = orchestrator
        self.registry = registry
        self.configuration = configuration
        self.app = self._create_app()
        self.sessions: dict[WebSocket, ChatSession] = {}

    def _create_app(self) -> FastAPI:
        app = FastAPI(title="Cara WebSocket Chat Server")

        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @app.websocket("/ws/chat")
        async def websocket_endpoint(websocket: WebSocket):  # type: ignore
            await self._handle_websocket_connection(websocket)

        @app.get("/")
        async def root():  # type: ignore
            return {"message": "Cara WebSocket Chat Server"}

        @app.get("/health")
        async def health():  # type: ignore
            return {"status": "healthy"}

        return app

    def create_session(self) -> ChatSession:
        retry_config = self.configuration.get_retry_config()
        return ChatSession(
            self.orchestrator,
            self.registry,
            context=ConversationContext.new(self.configuration.get_system_prompt()),
            retry_attempts=retry_config["max_attempts"],
            retry_delay=retry_config["delay_seconds"],
            queue_size=self.configuration.get_event_queue_size(),
        )

    async def _handle_websocket_connection(self, websocket: WebSocket):
        await websocket.accept()
        self.sessions[websocket] = self.create_session()
        logger.info("WebSocket connection established. Total connections: %d", len(self.sessions))

        message_data: dict[str, Any] = {}
        try:
            while True:
                data = await websocket.receive_text()
                try:
                    message_data = json.loads(data)
                except json.JSONDecodeError:
                    await self._send_error_response(websocket, "unknown", "Invalid JSON")
                    continue

                if message_data.get("action") == "chat":
                    await self._handle_chat_message(websocket, message_data)
                elif message_data.get("action") == "clear_session":
                    await self._handle_clear_session(websocket, message_data)
                else:
                    logger.warning("Unknown message format: %s", message_data)
                    await self._send_error_response(
                        websocket,
                        message_data.get("request_id", "unknown"),
                        "Unknown message format. Expected 'action': 'chat' or 'clear_session'",
                    )

        except WebSocketDisconnect:
            logger.info("WebSocket disconnected")
        except Exception as e:
            logger.error("WebSocket error: %s", e)
            with contextlib.suppress(Exception):
                await self._send_error_response(
                    websocket, message_data.get("request_id", "unknown"), f"Server error: {e!s}"
                )
        finally:
            await self._disconnect_websocket(websocket)

    async def _handle_chat_message(self, websocket: WebSocket, message_data: dict[str, Any]):
        """Validate a chat request, submit it to the session and relay its events."""
        try:
            ws_message = WebSocketMessage.model_validate(message_data)
        except ValidationError as e:
            await self._send_error_response(
                websocket, message_data.get("request_id", "unknown"), f"Invalid message format: {e}"
            )
            return

        request_id = ws_message.request_id
        user_message = ws_message.payload.text
        session = self.sessions[websocket]

        try:
            stream = session.submit(user_message)
        except ValueError:
            await self._send_error_response(websocket, request_id, "Message must not be blank")
            return
        except ChatError as e:
            await self._send_error_response(websocket, request_id, str(e))
            return

        logger.info("Received chat message: %s...", user_message[:50])
        await self._send(websocket, WebSocketResponse(request_id=request_id, status="processing"))

        try:
            async for chat_message in stream:
                await self._send_chat_response(websocket, request_id, chat_message)
        except Exception:
            stream.cancel()
            raise

    async def _handle_clear_session(self, websocket: WebSocket, message_data: dict[str, Any]):
        request_id = message_data.get("request_id", str(uuid.uuid4()))

        try:
            self.sessions[websocket].reset()
        except ChatError as e:
            await self._send_error_response(websocket, request_id, f"Clear session failed: {e}")
            return

        logger.info("Session cleared")
        await self._send(
            websocket,
            WebSocketResponse(request_id=request_id, status="completed", chunk={"type": "session_cleared"}),
        )

    async def _send(self, websocket: WebSocket, response: WebSocketResponse):
        await websocket.send_text(response.model_dump_json())

    async def _send_error_response(self, websocket: WebSocket, request_id: str, error_message: str):
        await self._send(
            websocket, WebSocketResponse(request_id=request_id, status="error", chunk={"error": error_message})
        )

    async def _send_chat_response(self, websocket: WebSocket, request_id: str, chat_message: ChatMessage):
        """Send a chat event to the frontend."""
        logger.debug("Sending WebSocket message: type=%s, content=%s...", chat_message.type, chat_message.content[:50])

        if chat_message.type == "text":
            response = WebSocketResponse(
                request_id=request_id,
                status="chunk",
                chunk={"type": "text", "data": chat_message.content, "metadata": chat_message.metadata},
            )
        elif chat_message.type in ("tool_execution", "retry"):
            response = WebSocketResponse(
                request_id=request_id,
                status="processing",
                chunk={"type": chat_message.type, "data": chat_message.content, "metadata": chat_message.metadata},
            )
        elif chat_message.type == "end":
            response = WebSocketResponse(request_id=request_id, status="completed")
        else:
            response = WebSocketResponse(
                request_id=request_id,
                status="error",
                chunk={"error": chat_message.content, "metadata": chat_message.metadata},
            )

        await self._send(websocket, response)

    async def _disconnect_websocket(self, websocket: WebSocket):
        session = self.sessions.pop(websocket, None)
        if session is not None:
            await session.close()
        logger.info("WebSocket connection closed. Total connections: %d", len(self.sessions))

    async def start_server(self):
        websocket_config = self.configuration.get_websocket_config()
        host = websocket_config["host"]
        port = websocket_config["port"]

        logger.info("Starting WebSocket server on %s:%s", host, port)

        server_config = uvicorn.Config(self.app, host=host, port=port, log_level="info")
        server = uvicorn.Server(server_config)

        try:
            await server.serve()
        finally:
            logger.info("Shutting down WebSocket server...")
            for session in list(self.sessions.values()):
                await session.close()


async def run_websocket_server(
    orchestrator: ChatOrchestrator,
    registry: ToolRegistry,
    configuration: Configuration,
) -> None:
    server = WebSocketServer(orchestrator, registry, configuration)
    await server.start_server()
