"""
Send orchestration: hand a message to the transport and announce the
outcome on the event channel.

Two response policies (SEND_MODE):
- async: reply as soon as the request is accepted; delivery runs in a
  background task and its outcome only appears in the 'sent' event.
- sync: wait for the transport and reply with its outcome.

In both modes the messageId in the reply is the one carried by the event.
"""

import asyncio
import logging

from sms_gateway.config import settings
from sms_gateway.events import sent_event
from sms_gateway.hub import EventHub, hub
from sms_gateway.metrics import record_send_outcome
from sms_gateway.schemas import SendRequest, SendResponse
from sms_gateway.transport import SendOutcome, Transport
from sms_gateway.utils import generate_message_id

logger = logging.getLogger(__name__)


class SendOrchestrator:

    def __init__(self, event_hub: EventHub, timeout: float):
        self.hub = event_hub
        self.timeout = timeout
        self._pending: set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def submit(self, request: SendRequest, transport: Transport, mode: str) -> SendResponse:
        """
        Accept a validated send request.

        Args:
            request: Validated body of POST /send
            transport: Delivery capability to use
            mode: "async" or "sync"
        """
        message_id = generate_message_id()
        logger.info(f"Send accepted: {message_id} to {request.to} ({mode})")

        if mode == "sync":
            outcome = await self.dispatch(message_id, request.to, request.message, transport)
            return SendResponse(success=outcome.ok, message_id=message_id, error=outcome.error)

        task = asyncio.create_task(
            self.dispatch(message_id, request.to, request.message, transport),
            name=f"send-{message_id}",
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        record_send_outcome("accepted")
        return SendResponse(success=True, message_id=message_id)

    async def dispatch(self, message_id: str, to: str, body: str, transport: Transport) -> SendOutcome:
        """
        Run one transport call and publish its 'sent' event.

        Never raises: timeouts and transport errors become failed outcomes.
        """
        try:
            outcome = await asyncio.wait_for(transport.send(to, body), self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Transport timed out for {message_id}")
            outcome = SendOutcome(ok=False, error=f"transport timed out after {self.timeout}s")
        except Exception as e:
            logger.exception(f"Transport raised for {message_id}")
            outcome = SendOutcome(ok=False, error=str(e) or type(e).__name__)

        if outcome.ok:
            logger.info(f"Message {message_id} sent")
        else:
            logger.warning(f"Message {message_id} failed: {outcome.error}")
        record_send_outcome("success" if outcome.ok else "failure")

        self.hub.publish(sent_event(
            message_id=message_id,
            to=to,
            body=body,
            success=outcome.ok,
            error=outcome.error,
        ))
        return outcome

    async def drain(self, timeout: float) -> int:
        """
        Wait for in-flight sends, cancelling whatever outlives timeout.

        Returns:
            Number of sends cancelled
        """
        pending = set(self._pending)
        if not pending:
            return 0
        logger.info(f"Waiting for {len(pending)} in-flight sends")
        _, unfinished = await asyncio.wait(pending, timeout=timeout)
        for task in unfinished:
            task.cancel()
        if unfinished:
            logger.warning(f"Cancelled {len(unfinished)} sends at shutdown")
        return len(unfinished)


orchestrator = SendOrchestrator(hub, timeout=settings.TRANSPORT_TIMEOUT_SECONDS)


def get_orchestrator() -> SendOrchestrator:
    """Dependency returning the process-wide orchestrator."""
    return orchestrator
