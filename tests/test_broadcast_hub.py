"""Tests for the real-time broadcast hub and its WebSocket bridge."""

import asyncio
import json
from datetime import datetime, timezone

import pytest

from chatrelay.api.routes.realtime import OVERFLOW_CLOSE_CODE, _pump
from chatrelay.realtime.hub import BroadcastHub, ObserverClosed, WebSocketObserver

from helpers import BrokenObserver, RecordingObserver


class TestBroadcastHub:
    def test_publish_to_all_observers(self):
        hub = BroadcastHub()
        first, second = RecordingObserver(), RecordingObserver()
        hub.register(first)
        hub.register(second)

        delivered = hub.publish("message_incoming", {"id": "m1"})

        assert delivered == 2
        assert first.envelopes == [{"event": "message_incoming", "data": {"id": "m1"}}]
        # serialized once, same text for everyone
        assert first.texts == second.texts

    def test_publish_without_observers(self):
        assert BroadcastHub().publish("message_incoming", {}) == 0

    def test_broken_observer_removed(self):
        hub = BroadcastHub()
        good = RecordingObserver()
        hub.register(good)
        hub.register(BrokenObserver())

        assert hub.publish("message_incoming", {"id": "m1"}) == 1
        assert len(hub) == 1
        assert hub.publish("message_incoming", {"id": "m2"}) == 1
        assert [e["data"]["id"] for e in good.envelopes] == ["m1", "m2"]

    def test_unregister(self):
        hub = BroadcastHub()
        observer = RecordingObserver()
        hub.register(observer)
        hub.unregister(observer)
        hub.unregister(observer)

        assert hub.publish("message_deleted", {"id": "m1"}) == 0
        assert observer.texts == []

    def test_non_json_values_are_stringified(self):
        hub = BroadcastHub()
        observer = RecordingObserver()
        hub.register(observer)

        hub.publish("message_outgoing", {"at": datetime(2024, 1, 1, tzinfo=timezone.utc)})

        assert json.loads(observer.texts[0])["data"]["at"].startswith("2024-01-01")


class TestWebSocketObserver:
    def test_send_is_delivered_on_loop(self):
        async def scenario():
            observer = WebSocketObserver(asyncio.get_running_loop())
            observer.send("hello")
            return await asyncio.wait_for(observer.next_message(), timeout=1)

        assert asyncio.run(scenario()) == "hello"

    def test_closed_observer_raises(self):
        async def scenario():
            observer = WebSocketObserver(asyncio.get_running_loop())
            observer.close()
            with pytest.raises(ObserverClosed):
                observer.send("hello")

        asyncio.run(scenario())

    def test_overflow_closes_observer(self):
        async def scenario():
            observer = WebSocketObserver(asyncio.get_running_loop(), maxsize=1)
            observer.send("one")
            observer.send("two")
            await asyncio.sleep(0)
            return observer

        observer = asyncio.run(scenario())
        assert observer.closed

    def test_overflow_ends_next_message(self):
        async def scenario():
            observer = WebSocketObserver(asyncio.get_running_loop(), maxsize=1)
            observer.send("one")
            observer.send("two")
            await asyncio.sleep(0)
            with pytest.raises(ObserverClosed):
                await asyncio.wait_for(observer.next_message(), timeout=1)

        asyncio.run(scenario())

    def test_close_wakes_waiting_reader(self):
        async def scenario():
            observer = WebSocketObserver(asyncio.get_running_loop())
            reader = asyncio.create_task(observer.next_message())
            await asyncio.sleep(0)
            observer.close()
            with pytest.raises(ObserverClosed):
                await asyncio.wait_for(reader, timeout=1)

        asyncio.run(scenario())

    def test_lagging_socket_closed_with_retry_code(self):
        class FakeSocket:
            def __init__(self):
                self.sent = []
                self.close_code = None

            async def send_text(self, text):
                self.sent.append(text)

            async def close(self, code=1000):
                self.close_code = code

        async def scenario():
            observer = WebSocketObserver(asyncio.get_running_loop(), maxsize=1)
            socket = FakeSocket()
            pump = asyncio.create_task(_pump(socket, observer))
            await asyncio.sleep(0)
            observer.send("one")
            observer.send("two")
            observer.send("three")
            await asyncio.wait_for(pump, timeout=1)
            return socket

        socket = asyncio.run(scenario())
        assert socket.close_code == OVERFLOW_CLOSE_CODE

    def test_closed_observer_is_dropped_by_hub(self):
        async def scenario():
            hub = BroadcastHub()
            observer = WebSocketObserver(asyncio.get_running_loop())
            hub.register(observer)
            observer.close()
            return hub.publish("message_incoming", {}), len(hub)

        assert asyncio.run(scenario()) == (0, 0)
