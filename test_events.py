"""
Tests for the event channel and the publish/subscribe hub.

Tests cover:
- Status on connect, acks for client frames, /events alias
- Identical ordering across subscribers, no replay for late joiners
- Events produced by POST /send and POST /webhook
- Dropping failing, slow and overflowing subscribers in isolation
- Hub shutdown and cross-thread publishing
"""

import asyncio
import json
import re

from sms_gateway.events import (
    ClientFrameType,
    EventType,
    ack_event,
    decode_client_frame,
    received_event,
    sent_event,
    status_event,
)
from sms_gateway.hub import EventHub, Subscriber, SubscriberState, hub


class FakeSocket:
    """Stand-in for an accepted WebSocket."""

    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.fail = fail
        self.delay = delay
        self.sent = []
        self.send_attempts = 0
        self.closed_with = None
        self._incoming = asyncio.Queue()

    async def send_text(self, frame: str) -> None:
        self.send_attempts += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionResetError("peer gone")
        self.sent.append(json.loads(frame))

    async def receive(self) -> dict:
        return await self._incoming.get()

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code

    def send_from_client(self, text: str) -> None:
        self._incoming.put_nowait({"type": "websocket.receive", "text": text})

    def disconnect(self) -> None:
        self._incoming.put_nowait({"type": "websocket.disconnect", "code": 1000})


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestEventChannel:
    """Test the WebSocket endpoint through the event channel app."""

    def test_status_on_connect(self, events_client):
        with events_client.websocket_connect("/") as ws:
            frame = ws.receive_json()

        assert frame["type"] == "status"
        assert frame["data"] == {"connected": "true", "clients": "1"}
        assert isinstance(frame["timestamp"], int)

    def test_events_alias(self, events_client):
        with events_client.websocket_connect("/events") as ws:
            frame = ws.receive_json()

        assert frame["type"] == "status"

    def test_ack_for_json_frame(self, events_client):
        with events_client.websocket_connect("/") as ws:
            ws.receive_json()
            ws.send_json({"type": "ping"})
            frame = ws.receive_json()

        assert frame["type"] == "ack"
        assert frame["data"] == {"received": "true"}

    def test_ack_for_non_json_frame(self, events_client):
        """Test unparsable client text is acknowledged, not rejected."""
        with events_client.websocket_connect("/") as ws:
            ws.receive_json()
            ws.send_text("this is not json")
            frame = ws.receive_json()

        assert frame["type"] == "ack"

    def test_ack_only_to_sender(self, events_client):
        with events_client.websocket_connect("/") as first:
            first.receive_json()
            with events_client.websocket_connect("/") as second:
                first.receive_json()
                second.receive_json()

                second.send_text("hello")
                assert second.receive_json()["type"] == "ack"

                hub.publish(received_event("1", "+15550001111", "hi", 1_700_000_000_000))
                assert first.receive_json()["type"] == "received"
                assert second.receive_json()["type"] == "received"

    def test_subscribers_see_same_order(self, events_client):
        """Test events published while both are connected arrive in order for both."""
        with events_client.websocket_connect("/") as first:
            assert first.receive_json()["data"]["clients"] == "1"
            with events_client.websocket_connect("/") as second:
                assert first.receive_json()["data"]["clients"] == "2"
                assert second.receive_json()["data"]["clients"] == "2"

                for i in range(5):
                    hub.publish(received_event(str(i), "+15550001111", f"msg {i}", 1_700_000_000_000 + i))

                first_ids = [first.receive_json()["data"]["id"] for _ in range(5)]
                second_ids = [second.receive_json()["data"]["id"] for _ in range(5)]

        assert first_ids == ["0", "1", "2", "3", "4"]
        assert second_ids == first_ids

    def test_late_subscriber_gets_no_replay(self, events_client):
        hub.publish(received_event("early", "+15550001111", "before", 1_700_000_000_000))

        with events_client.websocket_connect("/") as ws:
            assert ws.receive_json()["type"] == "status"
            hub.publish(received_event("late", "+15550001111", "after", 1_700_000_000_001))
            frame = ws.receive_json()

        assert frame["data"]["id"] == "late"


class TestEventsFromRoutes:
    """Test events produced by the HTTP application."""

    def test_send_publishes_sent_event(self, client, events_client, auth_headers):
        with events_client.websocket_connect("/") as ws:
            ws.receive_json()

            response = client.post(
                "/send",
                json={"to": "+15551234567", "message": "hi"},
                headers=auth_headers,
            )
            frame = ws.receive_json()

        assert frame["type"] == "sent"
        assert frame["data"]["messageId"] == response.json()["messageId"]
        assert frame["data"]["to"] == "+15551234567"
        assert frame["data"]["body"] == "hi"
        assert frame["data"]["success"] == "true"
        assert re.match(r"^\d+$", frame["data"]["timestamp"])

    def test_webhook_publishes_received_event(self, client, events_client, auth_headers):
        with events_client.websocket_connect("/") as ws:
            ws.receive_json()

            response = client.post(
                "/webhook",
                json={"from": "+15550001111", "body": "incoming", "timestamp": 1_700_000_000_000},
                headers=auth_headers,
            )
            frame = ws.receive_json()

        assert frame["type"] == "received"
        assert frame["data"] == {
            "id": response.json()["id"],
            "from": "+15550001111",
            "body": "incoming",
            "timestamp": "1700000000000",
        }


class TestEventHub:
    """Unit tests for the hub with fake sockets."""

    def test_publish_without_subscribers(self):
        assert EventHub().publish(ack_event()) == 0

    def test_closed_subscriber_not_counted(self):
        """Test a subscriber closed but not yet discarded is skipped and removed."""
        async def scenario():
            event_hub = EventHub()
            subscriber = Subscriber(
                event_hub, FakeSocket(), asyncio.get_running_loop(), queue_size=4, send_timeout=1.0
            )
            subscriber.state = SubscriberState.CLOSED
            event_hub._subscribers.append(subscriber)
            return event_hub, event_hub.publish(ack_event())

        event_hub, delivered = asyncio.run(scenario())

        assert delivered == 0
        assert event_hub.subscriber_count == 0

    def test_subscriber_on_closed_loop_not_counted(self):
        loop = asyncio.new_event_loop()
        loop.close()
        event_hub = EventHub()
        subscriber = Subscriber(event_hub, object(), loop, queue_size=4, send_timeout=1.0)
        subscriber.state = SubscriberState.OPEN
        event_hub._subscribers.append(subscriber)

        assert event_hub.publish(ack_event()) == 0
        assert subscriber.state is SubscriberState.CLOSED
        assert event_hub.subscriber_count == 0

    def test_failing_subscriber_dropped(self):
        """Test a subscriber whose send fails is closed with 1011 and others continue."""
        async def scenario():
            event_hub = EventHub(queue_size=16, send_timeout=0.5)
            good, bad = FakeSocket(), FakeSocket(fail=True)

            good_task = asyncio.create_task(event_hub.attach(good))
            await wait_until(lambda: len(good.sent) == 1)
            bad_task = asyncio.create_task(event_hub.attach(bad))
            await wait_until(bad_task.done)

            delivered = event_hub.publish(sent_event("sms_1_1234", "+15551234567", "hi", True))
            await wait_until(lambda: len(good.sent) == 3)
            good.disconnect()
            await good_task
            return event_hub, good, bad, delivered

        event_hub, good, bad, delivered = asyncio.run(scenario())

        assert bad.closed_with == 1011
        assert delivered == 1
        assert [frame["type"] for frame in good.sent] == ["status", "status", "sent"]
        assert good.closed_with is None
        assert event_hub.subscriber_count == 0

    def test_slow_subscriber_dropped(self):
        """Test a send exceeding the timeout closes that subscriber with 1013."""
        async def scenario():
            event_hub = EventHub(queue_size=16, send_timeout=0.1)
            good, slow = FakeSocket(), FakeSocket(delay=2.0)

            good_task = asyncio.create_task(event_hub.attach(good))
            await wait_until(lambda: len(good.sent) == 1)
            slow_task = asyncio.create_task(event_hub.attach(slow))
            await asyncio.wait_for(slow_task, 2.0)

            event_hub.publish(received_event("1", "+15550001111", "hi", 1))
            await wait_until(lambda: len(good.sent) == 3)
            good.disconnect()
            await good_task
            return good, slow

        good, slow = asyncio.run(scenario())

        assert slow.closed_with == 1013
        assert slow.sent == []
        assert [frame["type"] for frame in good.sent] == ["status", "status", "received"]

    def test_queue_overflow_drops_subscriber(self):
        async def scenario():
            event_hub = EventHub(queue_size=1, send_timeout=5.0)
            stuck = FakeSocket(delay=5.0)

            task = asyncio.create_task(event_hub.attach(stuck))
            await wait_until(lambda: stuck.send_attempts == 1)

            event_hub.publish(received_event("1", "+15550001111", "a", 1))
            event_hub.publish(received_event("2", "+15550001111", "b", 2))
            await asyncio.wait_for(task, 2.0)
            return event_hub, stuck

        event_hub, stuck = asyncio.run(scenario())

        assert stuck.closed_with == 1013
        assert event_hub.subscriber_count == 0

    def test_close_shuts_subscribers_and_refuses_new(self):
        async def scenario():
            event_hub = EventHub()
            first = FakeSocket()

            task = asyncio.create_task(event_hub.attach(first))
            await wait_until(lambda: len(first.sent) == 1)
            event_hub.close()
            await asyncio.wait_for(task, 2.0)

            refused = FakeSocket()
            await asyncio.wait_for(event_hub.attach(refused), 2.0)

            event_hub.start()
            accepted = FakeSocket()
            accepted_task = asyncio.create_task(event_hub.attach(accepted))
            await wait_until(lambda: len(accepted.sent) == 1)
            accepted.disconnect()
            await accepted_task
            return first, refused, accepted

        first, refused, accepted = asyncio.run(scenario())

        assert first.closed_with == 1001
        assert refused.closed_with == 1001
        assert refused.sent == []
        assert accepted.sent[0]["data"]["clients"] == "1"

    def test_client_frames_acked(self):
        async def scenario():
            event_hub = EventHub()
            sock = FakeSocket()

            task = asyncio.create_task(event_hub.attach(sock))
            await wait_until(lambda: len(sock.sent) == 1)
            sock.send_from_client('{"type": "subscribe"}')
            sock.send_from_client("garbage")
            await wait_until(lambda: len(sock.sent) == 3)
            sock.disconnect()
            await task
            return sock

        sock = asyncio.run(scenario())

        assert [frame["type"] for frame in sock.sent] == ["status", "ack", "ack"]

    def test_publish_from_another_thread(self):
        async def scenario():
            event_hub = EventHub()
            sock = FakeSocket()

            task = asyncio.create_task(event_hub.attach(sock))
            await wait_until(lambda: len(sock.sent) == 1)
            delivered = await asyncio.to_thread(
                event_hub.publish, received_event("7", "+15550001111", "hi", 1)
            )
            await wait_until(lambda: len(sock.sent) == 2)
            sock.disconnect()
            await task
            return sock, delivered

        sock, delivered = asyncio.run(scenario())

        assert delivered == 1
        assert sock.sent[1]["data"]["id"] == "7"


class TestEventVocabulary:

    def test_status_event(self):
        event = status_event(3)

        assert event.type is EventType.STATUS
        assert event.data == {"connected": "true", "clients": "3"}

    def test_sent_event_omits_missing_error(self):
        event = sent_event("sms_1_1234", "+1", "hi", True)

        assert "error" not in event.data
        assert event.data["success"] == "true"

    def test_sent_event_with_error(self):
        event = sent_event("sms_1_1234", "+1", "hi", False, error="radio off")

        assert event.data["success"] == "false"
        assert event.data["error"] == "radio off"

    def test_frame_is_json(self):
        frame = json.loads(ack_event().to_frame())

        assert frame["type"] == "ack"
        assert frame["data"] == {"received": "true"}
        assert isinstance(frame["timestamp"], int)

    def test_decode_known_types(self):
        assert decode_client_frame('{"type": "ping"}').type is ClientFrameType.PING
        assert decode_client_frame('{"type": "subscribe"}').type is ClientFrameType.SUBSCRIBE
        assert decode_client_frame('{"type": "unsubscribe"}').type is ClientFrameType.UNSUBSCRIBE

    def test_decode_unrecognized(self):
        for text in [None, "", "not json", "[1, 2]", '{"type": "dance"}', '{"kind": "ping"}', "42"]:
            assert decode_client_frame(text).type is ClientFrameType.UNRECOGNIZED
