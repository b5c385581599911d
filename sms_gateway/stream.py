"""
Event channel application, served on its own port.

Clients open a WebSocket at / (or /events) and receive every event
published while they are connected:

    {"type": "received" | "sent" | "status", "data": {...}, "timestamp": ...}

Anything a client sends is answered with an "ack" frame and otherwise ignored.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket

from sms_gateway import __version__
from sms_gateway.config import settings
from sms_gateway.hub import hub

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    hub.start()
    logger.info("Event channel started", extra={"port": settings.event_port})
    yield
    # Close open subscriber sockets before the listener goes away
    hub.close()
    logger.info("Event channel stopped")


events_app = FastAPI(
    title="SMS Gateway Events",
    version=__version__,
    lifespan=lifespan,
)


async def event_stream(websocket: WebSocket) -> None:
    await websocket.accept()
    await hub.attach(websocket)


events_app.add_api_websocket_route("/", event_stream)
events_app.add_api_websocket_route("/events", event_stream)
