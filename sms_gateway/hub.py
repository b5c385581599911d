"""
Publish/subscribe hub for the event channel.

The hub owns the set of open subscriber connections. Producers on any
thread or event loop call publish(); the hub hands the encoded frame to
every subscriber's own queue and returns. Socket writes happen in a
per-subscriber writer task, outside the hub lock, so a slow or broken
subscriber only ever affects itself.
"""

import asyncio
import enum
import logging
import threading
from typing import Any, Optional

from sms_gateway import metrics
from sms_gateway.config import settings
from sms_gateway.events import EventEnvelope, ack_event, decode_client_frame, status_event

logger = logging.getLogger(__name__)

# WebSocket close codes
CLOSE_GOING_AWAY = 1001
CLOSE_INTERNAL_ERROR = 1011
CLOSE_TRY_AGAIN_LATER = 1013

# Queued after the last frame when the hub shuts down
_CLOSE = object()


class SubscriberState(str, enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class Subscriber:
    """
    One event channel connection.

    offer() may be called from any thread; everything else runs on the
    event loop that accepted the connection.
    """

    def __init__(
        self,
        hub: "EventHub",
        websocket: Any,
        loop: asyncio.AbstractEventLoop,
        queue_size: int,
        send_timeout: float,
    ):
        self.hub = hub
        self.websocket = websocket
        self.loop = loop
        self.send_timeout = send_timeout
        self.state = SubscriberState.CONNECTING
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._writer: Optional[asyncio.Task] = None
        self._close_code: Optional[int] = None

    def offer(self, frame: Any) -> bool:
        """
        Hand a frame to this subscriber without blocking.

        Returns:
            False if the subscriber is closed or its event loop is gone
        """
        if self.state is SubscriberState.CLOSED:
            return False
        try:
            self.loop.call_soon_threadsafe(self._enqueue, frame)
        except RuntimeError:
            # Event loop closed underneath the connection
            self.state = SubscriberState.CLOSED
            metrics.record_subscriber_dropped("loop_closed")
            return False
        return True

    def close(self) -> None:
        """Close the connection after frames already queued."""
        self.offer(_CLOSE)

    def _enqueue(self, frame: Any) -> None:
        if self.state is SubscriberState.CLOSED:
            return
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            if frame is _CLOSE:
                self._stop(CLOSE_GOING_AWAY)
            else:
                logger.warning("Subscriber queue full, dropping subscriber")
                self._drop("queue_overflow", CLOSE_TRY_AGAIN_LATER)

    def _drop(self, reason: str, close_code: int) -> None:
        if self.state is SubscriberState.CLOSED:
            return
        metrics.record_subscriber_dropped(reason)
        self.hub.discard(self)
        self._stop(close_code)

    def _stop(self, close_code: int) -> None:
        self.state = SubscriberState.CLOSED
        self._close_code = close_code
        if self._writer is not None and self._writer is not asyncio.current_task():
            self._writer.cancel()

    async def _write_loop(self) -> None:
        while True:
            frame = await self._queue.get()
            if frame is _CLOSE:
                self._stop(CLOSE_GOING_AWAY)
                return
            try:
                await asyncio.wait_for(self.websocket.send_text(frame), self.send_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Subscriber send exceeded {self.send_timeout}s, dropping subscriber")
                self._drop("send_timeout", CLOSE_TRY_AGAIN_LATER)
                return
            except Exception as e:
                logger.warning(f"Subscriber send failed, dropping subscriber: {e}")
                self._drop("send_failed", CLOSE_INTERNAL_ERROR)
                return

    async def _read_loop(self) -> None:
        while True:
            try:
                message = await self.websocket.receive()
            except RuntimeError as e:
                logger.debug(f"Subscriber receive ended: {e}")
                return
            if message["type"] == "websocket.disconnect":
                return
            frame = decode_client_frame(message.get("text"))
            logger.debug(f"Client frame received: {frame.type.value}")
            self._enqueue(ack_event().to_frame())

    async def serve(self) -> None:
        """Pump frames until the client leaves or the hub drops us."""
        if self.state is SubscriberState.CLOSED:
            await self._close_socket(self._close_code or CLOSE_GOING_AWAY)
            return
        self._writer = asyncio.create_task(self._write_loop())
        reader = asyncio.create_task(self._read_loop())
        try:
            await asyncio.wait({self._writer, reader}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (self._writer, reader):
                task.cancel()
            await asyncio.gather(self._writer, reader, return_exceptions=True)
            self.state = SubscriberState.CLOSED
            if self._close_code is not None:
                await self._close_socket(self._close_code)

    async def _close_socket(self, code: int) -> None:
        try:
            await asyncio.wait_for(self.websocket.close(code=code), self.send_timeout)
        except Exception as e:
            logger.debug(f"Closing subscriber socket failed: {e}")


class EventHub:
    """
    Registry of open subscribers and the broadcast operation over it.

    The lock covers membership changes and the iteration that hands a
    frame to each subscriber queue, which keeps every subscriber's
    event order identical. It is never held across a socket write.
    """

    def __init__(self, queue_size: int = 256, send_timeout: float = 5.0):
        self.queue_size = queue_size
        self.send_timeout = send_timeout
        self._lock = threading.Lock()
        self._subscribers: list[Subscriber] = []
        self._accepting = True

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def start(self) -> None:
        """Accept subscribers again after close()."""
        with self._lock:
            self._accepting = True

    def publish(self, event: EventEnvelope) -> int:
        """
        Broadcast an event to every open subscriber.

        Safe to call from any thread. Never blocks on a subscriber and
        never raises on a subscriber's behalf.

        Returns:
            Number of subscribers the event was handed to
        """
        frame = event.to_frame()
        stale = []
        with self._lock:
            for subscriber in self._subscribers:
                if not subscriber.offer(frame):
                    stale.append(subscriber)
            delivered = len(self._subscribers) - len(stale)

        for subscriber in stale:
            self.discard(subscriber)

        metrics.record_event_published(event.type.value)
        logger.debug(f"Published {event.type.value} event to {delivered} subscribers")
        return delivered

    def discard(self, subscriber: Subscriber) -> bool:
        """Remove a subscriber; returns False if it was already gone."""
        with self._lock:
            try:
                self._subscribers.remove(subscriber)
            except ValueError:
                return False
            count = len(self._subscribers)
        metrics.set_subscriber_count(count)
        return True

    async def attach(self, websocket: Any) -> None:
        """
        Run an accepted connection as a subscriber until it closes.

        Joining broadcasts a status event with the new connection count
        to every subscriber, the newcomer included.
        """
        subscriber = Subscriber(
            self,
            websocket,
            asyncio.get_running_loop(),
            queue_size=self.queue_size,
            send_timeout=self.send_timeout,
        )
        with self._lock:
            accepting = self._accepting
            if accepting:
                self._subscribers.append(subscriber)
                subscriber.state = SubscriberState.OPEN
                count = len(self._subscribers)

        if not accepting:
            logger.info("Hub closed, refusing subscriber")
            subscriber.state = SubscriberState.CLOSED
            await subscriber._close_socket(CLOSE_GOING_AWAY)
            return

        metrics.set_subscriber_count(count)
        logger.info("Subscriber connected", extra={"clients": count})
        self.publish(status_event(count))

        try:
            await subscriber.serve()
        finally:
            self.discard(subscriber)
            logger.info("Subscriber disconnected", extra={"clients": self.subscriber_count})

    def close(self) -> None:
        """
        Stop accepting subscribers and close every open connection.

        Frames queued before the call are still delivered.
        """
        with self._lock:
            self._accepting = False
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            subscriber.close()
        logger.info(f"Event hub closed, {len(subscribers)} subscribers notified")


# Shared by the HTTP application (producer) and the event channel (consumers)
hub = EventHub(
    queue_size=settings.EVENT_QUEUE_SIZE,
    send_timeout=settings.EVENT_SEND_TIMEOUT_SECONDS,
)
