"""WebSocket transport for the broadcast hub.

A small Starlette application: ``/ws`` accepts observers and feeds their
frames to the hub, ``/health`` reports connection statistics. ``serve``
runs it under uvicorn inside the caller's event loop so the MCP server
and the hub share one loop.
"""

from __future__ import annotations

import logging

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from .broadcast import BroadcastHub, WSMessage
from .models import now_iso


logger = logging.getLogger("pdl.ws")


def create_app(hub: BroadcastHub) -> Starlette:
    """Build the Starlette app bound to a hub."""

    async def websocket_endpoint(websocket: WebSocket) -> None:
        await websocket.accept()
        hub.connect(websocket, session_id=websocket.query_params.get("session_id"))
        await hub.send(websocket, WSMessage(type="ping", payload={"message": "PDL WebSocket Server connected"}))

        try:
            while True:
                raw = await websocket.receive_text()
                await hub.handle_message(websocket, raw)
        except WebSocketDisconnect:
            logger.debug("WebSocket closed by client")
        finally:
            hub.disconnect(websocket)

    async def health(request: Request) -> JSONResponse:
        return JSONResponse({
            "status": "ok",
            "service": "pdl_broadcast",
            "timestamp": now_iso(),
            **hub.get_stats(),
        })

    return Starlette(
        routes=[
            WebSocketRoute("/ws", websocket_endpoint),
            Route("/health", health),
        ]
    )


async def serve(hub: BroadcastHub, host: str = "127.0.0.1", port: int = 8080) -> None:
    """Run the transport until cancelled."""
    config = uvicorn.Config(create_app(hub), host=host, port=port, log_level="warning", lifespan="off")
    server = uvicorn.Server(config)
    logger.info(f"WebSocket server listening on ws://{host}:{port}/ws")
    await server.serve()
