"""
Status aggregation: liveness and capability flags, derived on every call.
"""

import threading

from sms_gateway.config import settings
from sms_gateway.inbox import read_capable
from sms_gateway.schemas import StatusResponse
from sms_gateway.transport import Transport


class ServiceState:
    """Running flag flipped by the HTTP application lifespan."""

    def __init__(self):
        self._lock = threading.Lock()
        self._running = False

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    def set_running(self, running: bool) -> None:
        with self._lock:
            self._running = running


service_state = ServiceState()


def build_status(transport: Transport) -> StatusResponse:
    return StatusResponse(
        status="running" if service_state.running else "stopped",
        send_capable=transport.can_send(),
        read_capable=read_capable(),
        port=settings.PORT,
        event_port=settings.event_port,
    )
