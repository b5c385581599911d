"""
Message transports: the capability that attempts delivery of an outbound
message and reports ok/failure.

- LoopbackTransport records the message in the store's sent folder, standing
  in for the device radio.
- HttpRelayTransport hands the message to an upstream HTTP relay.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from starlette.concurrency import run_in_threadpool

from sms_gateway.config import settings
from sms_gateway.models import MessageKind
from sms_gateway.storage import SessionLocal, insert_message

logger = logging.getLogger(__name__)

PERMISSION_ERROR = "SEND_SMS permission not granted"


@dataclass(frozen=True)
class SendOutcome:
    ok: bool
    error: Optional[str] = None


class Transport:
    """Base transport. Subclasses implement has_feature() and _deliver()."""

    name = "base"

    def has_feature(self) -> bool:
        raise NotImplementedError

    def can_send(self) -> bool:
        """Feature present and send permission granted."""
        return settings.SEND_PERMISSION and self.has_feature()

    async def send(self, to: str, body: str) -> SendOutcome:
        """
        Attempt delivery.

        Failures are returned as outcomes; only unexpected errors raise.
        """
        if not settings.SEND_PERMISSION:
            return SendOutcome(ok=False, error=PERMISSION_ERROR)
        if not self.has_feature():
            return SendOutcome(ok=False, error=f"{self.name} transport unavailable")
        return await self._deliver(to, body)

    async def _deliver(self, to: str, body: str) -> SendOutcome:
        raise NotImplementedError


class LoopbackTransport(Transport):
    name = "loopback"

    def has_feature(self) -> bool:
        return True

    async def _deliver(self, to: str, body: str) -> SendOutcome:
        def record() -> None:
            with SessionLocal() as db:
                insert_message(db, address=to, body=body, kind=MessageKind.SENT.value, read=True)

        await run_in_threadpool(record)
        logger.info(f"Loopback delivered message to {to}")
        return SendOutcome(ok=True)


class HttpRelayTransport(Transport):
    """POSTs {to, message} to TRANSPORT_URL; any 2xx counts as delivered."""

    name = "http"

    def __init__(self, url: Optional[str], timeout: float):
        self.url = url
        self.timeout = timeout

    def has_feature(self) -> bool:
        return bool(self.url)

    async def _deliver(self, to: str, body: str) -> SendOutcome:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json={"to": to, "message": body})
        except httpx.HTTPError as e:
            logger.error(f"Relay request failed: {e}")
            return SendOutcome(ok=False, error=f"relay unreachable: {e}")

        if response.is_success:
            return SendOutcome(ok=True)
        logger.error(f"Relay rejected message: HTTP {response.status_code}")
        return SendOutcome(ok=False, error=f"relay returned HTTP {response.status_code}")


def get_transport() -> Transport:
    """
    Build the configured transport.

    Rebuilt on every call so capability flags always reflect current settings.
    """
    if settings.TRANSPORT == "http":
        return HttpRelayTransport(settings.TRANSPORT_URL, settings.TRANSPORT_TIMEOUT_SECONDS)
    return LoopbackTransport()
