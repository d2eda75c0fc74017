"""
Unit tests for the pull-based inbox (`check_messages`) on the bus transport.
Both subscriptions share one timeout, so an empty check costs one timeout,
not two.
"""
import asyncio
import time

import pytest

from agentrelay.presence import PresenceStore, MemoryPresenceBackend
from agentrelay.router import MessageRouter, NO_MESSAGES
from agentrelay.transport.base import TransportCapabilityError
from agentrelay.transport.bus import BusTransport


@pytest.fixture
def bus(fake_redis):
    return BusTransport("redis://unused", "agents", client=fake_redis)


@pytest.fixture
def bus_presence(bus, clock):
    return PresenceStore(MemoryPresenceBackend(), clock=clock, default_route=bus.route_for)


@pytest.fixture
def bus_router(bus_presence, bus):
    return MessageRouter(bus_presence, bus)


@pytest.mark.asyncio
async def test_empty_inbox_waits_one_shared_timeout(bus_router, bus_presence):
    agent = await bus_presence.register("api", "x")

    started = time.monotonic()
    text = await bus_router.check_messages(agent.id, timeout=0.4)
    elapsed = time.monotonic() - started

    assert text == NO_MESSAGES
    assert elapsed < 0.75


@pytest.mark.asyncio
async def test_direct_message_arrives_in_dm_section(bus_router, bus_presence):
    sender = await bus_presence.register("lead", "x")
    agent = await bus_presence.register("api", "y")

    check = asyncio.create_task(bus_router.check_messages(agent.id, timeout=0.5))
    await asyncio.sleep(0.05)
    result = await bus_router.direct_message(sender.id, "api", "please review")
    text = await check

    assert result.ok
    assert text.startswith("Direct messages:\n")
    assert "[DM from lead] please review" in text
    assert "Broadcasts:" not in text


@pytest.mark.asyncio
async def test_broadcast_subject_traffic_arrives_in_broadcast_section(bus_router, bus_presence, bus):
    agent = await bus_presence.register("api", "y")

    check = asyncio.create_task(bus_router.check_messages(agent.id, timeout=0.5))
    await asyncio.sleep(0.05)
    await bus.deliver(bus.broadcast_subject(), "[ops] maintenance at 18:00")
    text = await check

    assert text.startswith("Broadcasts:\n")
    assert "[ops] maintenance at 18:00" in text


@pytest.mark.asyncio
async def test_both_sections_when_both_subjects_have_traffic(bus_router, bus_presence, bus):
    agent = await bus_presence.register("api", "y")

    check = asyncio.create_task(bus_router.check_messages(agent.id, timeout=0.5))
    await asyncio.sleep(0.05)
    await bus.deliver(bus.dm_subject(agent.id), "for you")
    await bus.deliver(bus.broadcast_subject(), "for everyone")
    text = await check

    dm_part, bc_part = text.split("\n\n")
    assert dm_part.startswith("Direct messages:") and "for you" in dm_part
    assert bc_part.startswith("Broadcasts:") and "for everyone" in bc_part


@pytest.mark.asyncio
async def test_checking_counts_as_heartbeat(bus_router, bus_presence, clock):
    agent = await bus_presence.register("api", "y")
    clock.advance(400)
    assert await bus_presence.list() == []

    await bus_router.check_messages(agent.id, timeout=0.05)

    assert [a.id for a in await bus_presence.list()] == [agent.id]


@pytest.mark.asyncio
async def test_direct_transport_has_no_inbox(presence, transport):
    router = MessageRouter(presence, transport)
    agent = await presence.register("api", "y")
    with pytest.raises(TransportCapabilityError):
        await router.check_messages(agent.id, timeout=0.1)


@pytest.mark.asyncio
async def test_routed_broadcast_is_filed_under_broadcasts(bus_router, bus_presence):
    sender = await bus_presence.register("lead", "x")
    agent = await bus_presence.register("api", "y")

    check = asyncio.create_task(bus_router.check_messages(agent.id, timeout=0.5))
    await asyncio.sleep(0.05)
    result = await bus_router.broadcast(sender.id, "deploy at noon")
    text = await check

    assert result.delivered == 1
    assert text.startswith("Broadcasts:\n")
    assert "[lead] deploy at noon" in text
    assert "Direct messages:" not in text


@pytest.mark.asyncio
async def test_overrunning_listener_keeps_what_arrived(fake_redis, clock, monkeypatch):
    class StuckBus(BusTransport):
        async def collect(self, subject, max_count, timeout, sink=None):
            if subject == self.broadcast_subject():
                return await super().collect(subject, max_count, timeout, sink=sink)
            # Receives one message, then ignores its deadline
            sink.append({"kind": "dm", "text": "[DM from lead] early bird"})
            await asyncio.sleep(30)
            return sink

    bus = StuckBus("redis://unused", "agents", client=fake_redis)
    presence = PresenceStore(MemoryPresenceBackend(), clock=clock, default_route=bus.route_for)
    router = MessageRouter(presence, bus)
    agent = await presence.register("api", "y")

    monkeypatch.setattr("agentrelay.router._SUBSCRIBE_GRACE", 0.1)
    started = time.monotonic()
    text = await router.check_messages(agent.id, timeout=0.2)

    assert time.monotonic() - started < 1.0
    assert text == "Direct messages:\n[DM from lead] early bird"
