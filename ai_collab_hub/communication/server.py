"""
HTTP/WebSocket Transport for AI Collaboration Hub

Exposes the tool dispatcher over HTTP, live message push over
WebSocket, and the health query for external monitoring.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Dict, Iterator, Optional

from fastapi import Body, FastAPI, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, StreamingResponse

from ..core.errors import (BackendUnavailable, BudgetExceeded, Conflict, CoordinationError,
                           DanglingReference, InvalidArgument, NotFound, ProposalClosed,
                           ProviderUnavailable)

if TYPE_CHECKING:
    from ..main import CollabHubWorkspace

logger = logging.getLogger(__name__)

STATUS_CODES = {
    NotFound: 404,
    DanglingReference: 409,
    Conflict: 409,
    ProposalClosed: 409,
    BudgetExceeded: 429,
    InvalidArgument: 400,
    BackendUnavailable: 503,
    ProviderUnavailable: 503,
}


def status_code_for(error: CoordinationError) -> int:
    for kind, code in STATUS_CODES.items():
        if isinstance(error, kind):
            return code
    return 500


def error_body(error: CoordinationError) -> Dict[str, Any]:
    return {"error": error.to_dict()}


def _closing(first: Optional[str], chunks: Iterator[str]) -> Iterator[str]:
    try:
        if first is not None:
            yield first
        for chunk in chunks:
            yield chunk
    finally:
        chunks.close()


class HubServer:
    """
    Network surface of the collaboration hub.

    Features:
    - Tool catalogue and tool calls over HTTP
    - Chunked streaming of AI responses
    - WebSocket push channel per agent, with tool calls over the same socket
    - Typed errors mapped to HTTP status codes
    - Health endpoint for external monitoring
    """

    def __init__(self, workspace: "CollabHubWorkspace"):
        """
        Initialize the transport.

        Args:
            workspace: Workspace owning the core components
        """
        self.workspace = workspace
        self.dispatcher = workspace.dispatcher
        self.message_hub = workspace.message_hub

        self.app = FastAPI(title="AI Collaboration Hub")
        self._setup_routes()

    def _setup_routes(self):
        """Setup FastAPI routes."""

        @self.app.exception_handler(CoordinationError)
        async def coordination_error(request, exc: CoordinationError):
            return JSONResponse(status_code=status_code_for(exc), content=error_body(exc))

        @self.app.get("/tools")
        def list_tools():
            """Tool catalogue with argument schemas."""
            return {"tools": self.dispatcher.list_tools()}

        @self.app.post("/tools/stream_ai_response/stream")
        def stream_ai_response(arguments: Optional[Dict[str, Any]] = Body(default=None)):
            """Stream an AI response as plain text chunks."""
            chunks = self.dispatcher.stream(arguments)
            # pull the first chunk here so routing errors get a proper status code
            try:
                first = next(chunks)
            except StopIteration:
                first = None
            return StreamingResponse(_closing(first, chunks), media_type="text/plain")

        @self.app.post("/tools/{name}")
        def call_tool(name: str, arguments: Optional[Dict[str, Any]] = Body(default=None)):
            """Run one tool."""
            return {"tool": name, "result": self.dispatcher.call_tool(name, arguments)}

        @self.app.get("/health")
        def health():
            """Backend health, provider circuits and aggregate counts."""
            return self.workspace.get_health()

        @self.app.websocket("/ws/{agent_id}")
        async def websocket_endpoint(websocket: WebSocket, agent_id: str):
            """Live message push for one agent."""
            await websocket.accept()
            await self._serve_agent(websocket, agent_id)

    async def _serve_agent(self, websocket: WebSocket, agent_id: str):
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def channel(message: Dict[str, Any]):
            loop.call_soon_threadsafe(queue.put_nowait, message)

        await run_in_threadpool(self.message_hub.register_agent, agent_id)
        self.message_hub.subscribe(agent_id, channel)
        logger.info(f"WebSocket client connected: {agent_id}")
        await websocket.send_json({"type": "connected", "agentId": agent_id})

        pusher = asyncio.create_task(self._push_loop(websocket, queue))
        try:
            while True:
                data = await websocket.receive_json()
                await self._handle_client_message(websocket, agent_id, data)
        except WebSocketDisconnect:
            pass
        finally:
            self.message_hub.unsubscribe(agent_id, channel)
            pusher.cancel()
            logger.info(f"WebSocket client disconnected: {agent_id}")

    async def _push_loop(self, websocket: WebSocket, queue: asyncio.Queue):
        while True:
            message = await queue.get()
            try:
                await websocket.send_json({"type": "message", "message": message})
            except Exception as e:
                logger.warning(f"WebSocket push failed: {e}")
                return

    async def _handle_client_message(self, websocket: WebSocket, agent_id: str,
                                     data: Dict[str, Any]):
        """Handle a tool call sent over the socket."""
        request_id = data.get("id") if isinstance(data, dict) else None
        if not isinstance(data, dict) or data.get("type") != "tool":
            await websocket.send_json({
                "type": "error", "id": request_id,
                "error": InvalidArgument("Expected a tool message", agentId=agent_id).to_dict(),
            })
            return

        try:
            result = await run_in_threadpool(
                self.dispatcher.call_tool, data.get("name", ""), data.get("arguments")
            )
        except CoordinationError as e:
            await websocket.send_json({"type": "error", "id": request_id, "error": e.to_dict()})
            return
        await websocket.send_json({"type": "tool_result", "id": request_id, "result": result})

    def run(self):
        """Run the server with uvicorn."""
        import uvicorn
        server = self.workspace.config.server
        logger.info(f"Starting AI Collaboration Hub on {server.host}:{server.port}")
        uvicorn.run(self.app, host=server.host, port=server.port)


def create_app(workspace: "CollabHubWorkspace") -> FastAPI:
    return HubServer(workspace).app
