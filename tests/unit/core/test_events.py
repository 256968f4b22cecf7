"""Unit tests for the internal event bus."""

import pytest

from gesturevision.core.events import ConfigChange, EventBus, InternalEvent


class TestEventBus:
    """Test EventBus publish/subscribe."""

    @pytest.mark.asyncio
    async def test_delivery_in_subscription_order(self):
        bus = EventBus()
        calls = []

        async def first(event):
            calls.append(("first", event.kind))

        async def second(event):
            calls.append(("second", event.kind))

        bus.add_observer(first)
        bus.add_observer(second)
        await bus.publish(InternalEvent.CONFIG_RELOADED, ConfigChange(config={}))

        assert calls == [
            ("first", InternalEvent.CONFIG_RELOADED),
            ("second", InternalEvent.CONFIG_RELOADED),
        ]

    @pytest.mark.asyncio
    async def test_event_filter(self):
        bus = EventBus()
        received = []

        async def observer(event):
            received.append(event.kind)

        bus.add_observer(observer, events={InternalEvent.MANIFESTS_CHANGED})
        await bus.publish(InternalEvent.CONFIG_RELOADED)
        await bus.publish(InternalEvent.MANIFESTS_CHANGED)

        assert received == [InternalEvent.MANIFESTS_CHANGED]

    @pytest.mark.asyncio
    async def test_observer_error_is_isolated(self):
        bus = EventBus()
        received = []

        async def broken(event):
            raise RuntimeError("boom")

        async def healthy(event):
            received.append(event.payload)

        bus.add_observer(broken)
        bus.add_observer(healthy)
        await bus.publish(InternalEvent.STREAM_STATUS_CHANGED, "payload")

        assert received == ["payload"]

    @pytest.mark.asyncio
    async def test_remove_observer(self):
        bus = EventBus()
        received = []

        async def observer(event):
            received.append(event)

        bus.add_observer(observer)
        bus.add_observer(observer)
        assert bus.observer_count == 1

        bus.remove_observer(observer)
        await bus.publish(InternalEvent.CONFIG_PATCHED)

        assert received == []
        assert bus.observer_count == 0
