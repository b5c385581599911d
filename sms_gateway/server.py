"""
Run the HTTP API and the event channel together under uvicorn.

Both listeners share one event loop. When either is told to exit
(SIGINT/SIGTERM reach only one of them), the hub closes its subscribers
and both listeners shut down; in-flight HTTP requests complete.
"""

import asyncio
import logging

import uvicorn

from sms_gateway.config import settings
from sms_gateway.hub import hub
from sms_gateway.logging_utils import setup_logging

logger = logging.getLogger(__name__)


def build_servers() -> tuple[uvicorn.Server, uvicorn.Server]:
    from sms_gateway.main import app
    from sms_gateway.stream import events_app

    # log_config=None keeps the JSON logging set up by setup_logging()
    http_server = uvicorn.Server(uvicorn.Config(
        app,
        host=settings.HOST,
        port=settings.PORT,
        log_config=None,
    ))
    events_server = uvicorn.Server(uvicorn.Config(
        events_app,
        host=settings.HOST,
        port=settings.event_port,
        log_config=None,
    ))
    return http_server, events_server


async def _supervise(servers: tuple[uvicorn.Server, ...], poll_interval: float = 0.1) -> None:
    while not any(server.should_exit for server in servers):
        await asyncio.sleep(poll_interval)
    logger.info("Shutdown requested")
    hub.close()
    for server in servers:
        server.should_exit = True


async def serve() -> None:
    servers = build_servers()
    logger.info(
        "Starting SMS gateway",
        extra={"host": settings.HOST, "port": settings.PORT, "event_port": settings.event_port},
    )
    await asyncio.gather(*(server.serve() for server in servers), _supervise(servers))


def run() -> None:
    """Console entry point."""
    setup_logging(settings.LOG_LEVEL)
    asyncio.run(serve())
