"""
Tests for the session event bus.
"""

import json

import pytest

from sessionkit import events


class TestPublish:
    """Delivery of the session-expired event"""

    def test_publish_without_subscribers_is_noop(self, bus):
        bus.publish()
        assert bus.subscriber_count == 0

    def test_handlers_run_in_registration_order(self, bus):
        calls = []
        bus.subscribe(lambda: calls.append("first"))
        bus.subscribe(lambda: calls.append("second"))

        bus.publish()

        assert calls == ["first", "second"]

    def test_unsubscribe_stops_delivery(self, bus):
        calls = []
        unsubscribe = bus.subscribe(lambda: calls.append("x"))
        unsubscribe()
        unsubscribe()

        bus.publish()

        assert calls == []
        assert bus.subscriber_count == 0

    def test_failing_handler_does_not_stop_others(self, bus, log_stream):
        calls = []

        def broken():
            raise RuntimeError("boom")

        bus.subscribe(broken)
        bus.subscribe(lambda: calls.append("ok"))

        bus.publish()

        assert calls == ["ok"]
        assert "Session-expired handler failed." in log_stream.getvalue()

    def test_handle_unauthorized_publishes(self, bus):
        calls = []
        bus.subscribe(lambda: calls.append("expired"))
        bus.handle_unauthorized()
        assert calls == ["expired"]

    def test_publish_logs_event(self, bus, log_stream):
        bus.publish()
        entry = json.loads(log_stream.getvalue().splitlines()[-1])
        assert entry["extra"]["event"] == "SESSION_EXPIRED"


class TestAsyncHandlers:
    """Handlers returning awaitables"""

    @pytest.mark.asyncio
    async def test_async_handler_is_awaited_by_join(self, bus):
        calls = []

        async def handler():
            calls.append("async")

        bus.subscribe(handler)
        bus.publish()
        await bus.join()

        assert calls == ["async"]

    @pytest.mark.asyncio
    async def test_async_handler_failure_is_logged(self, bus, log_stream):
        async def handler():
            raise RuntimeError("async boom")

        bus.subscribe(handler)
        bus.publish()
        await bus.join()

        assert "async boom" in log_stream.getvalue()

    def test_async_handler_without_loop_is_dropped(self, bus, log_stream):
        async def handler():
            pass

        bus.subscribe(handler)
        bus.publish()

        assert "no running event loop" in log_stream.getvalue()



def test_default_bus_is_created_once(monkeypatch, logger):
    monkeypatch.setattr(events, "_bus_instance", None)
    monkeypatch.setattr(events, "get_logger", lambda name: logger)

    first = events.get_session_events()

    assert first is events.get_session_events()
    assert isinstance(first, events.SessionEventBus)
