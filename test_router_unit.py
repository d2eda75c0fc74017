"""
Unit tests for broadcast and direct-message routing.
Deliveries go to the RecordingTransport from conftest, so every attempt
(and every skipped attempt) is observable.
"""
import asyncio

import pytest

from agentrelay.db.models import AgentRecord
from agentrelay.ledger import HistoryLedger
from agentrelay.presence import PresenceStore, MemoryPresenceBackend
from agentrelay.router import MessageRouter
from agentrelay.transport.base import DeliveryResult
from conftest import RecordingTransport


@pytest.fixture
def router(presence, transport):
    return MessageRouter(presence, transport)


async def _register(presence, *names, group=None):
    return [await presence.register(n, f"{n} agent", group=group) for n in names]


# ─────────────────────────────────────────────
# Broadcast
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_broadcast_attempts_every_other_agent(router, presence, transport):
    sender, b, c, d = await _register(presence, "lead", "api", "ui", "db")

    result = await router.broadcast(sender.id, "standup in 5")

    assert result.attempted == 3
    assert result.delivered == 3
    assert sorted(transport.targets) == sorted(a.route_target for a in (b, c, d))
    assert sender.route_target not in transport.targets
    assert all(text == "[lead] standup in 5" for _, text, _ in transport.calls)


@pytest.mark.asyncio
async def test_broadcast_with_no_other_agents_returns_sentinel(router, presence, transport):
    (sender,) = await _register(presence, "lonely")

    result = await router.broadcast(sender.id, "anyone?")

    assert result.no_targets
    assert result.render() == "No other agents to broadcast to"
    assert transport.calls == []


@pytest.mark.asyncio
async def test_broadcast_reports_partial_failure(presence):
    sender, ok_agent, bad_agent = await _register(presence, "lead", "api", "ui")
    transport = RecordingTransport(fail_targets={bad_agent.route_target})
    router = MessageRouter(presence, transport)

    result = await router.broadcast(sender.id, "deploying")

    assert result.attempted == 2
    assert result.delivered == 1
    by_id = {o.agent_id: o for o in result.outcomes}
    assert by_id[ok_agent.id].ok
    assert not by_id[bad_agent.id].ok
    assert "code 1" in by_id[bad_agent.id].reason
    text = result.render()
    assert text.startswith("Broadcast sent to 2 agent(s):")
    assert "✓ api" in text
    assert "✗ ui: snd failed with code 1" in text


@pytest.mark.asyncio
async def test_broadcast_survives_transport_exception(presence):
    sender, boom, fine = await _register(presence, "lead", "api", "ui")
    transport = RecordingTransport(raise_targets={boom.route_target})
    router = MessageRouter(presence, transport)

    result = await router.broadcast(sender.id, "hello")

    assert result.attempted == 2
    assert result.delivered == 1
    assert len(transport.calls) == 2


@pytest.mark.asyncio
async def test_broadcast_skips_stale_and_unroutable_agents(router, presence, transport, clock):
    (old,) = await _register(presence, "old")
    clock.advance(400)
    sender, fresh = await _register(presence, "lead", "api")
    await presence.backend.insert(AgentRecord(
        id="bare-00000000", name="bare", description="", group="default",
        route_target="", registered_at=clock(), last_seen=clock(),
    ))

    result = await router.broadcast(sender.id, "hi")

    assert result.attempted == 1
    assert transport.targets == [fresh.route_target]


@pytest.mark.asyncio
async def test_broadcast_scoped_to_group(router, presence, transport):
    (sender,) = await _register(presence, "lead", group="backend")
    (api,) = await _register(presence, "api", group="backend")
    (ui,) = await _register(presence, "ui", group="frontend")

    result = await router.broadcast(sender.id, "backend only", group="backend")

    assert result.attempted == 1
    assert transport.targets == [api.route_target]


@pytest.mark.asyncio
async def test_broadcast_blank_group_targets_default_group(router, presence, transport):
    (sender,) = await _register(presence, "lead")
    (api,) = await _register(presence, "api")
    await _register(presence, "ui", group="frontend")

    result = await router.broadcast(sender.id, "default only", group="  ")

    assert result.attempted == 1
    assert transport.targets == [api.route_target]


@pytest.mark.asyncio
async def test_broadcast_rejects_unknown_priority(router, presence, transport):
    (sender,) = await _register(presence, "lead")
    with pytest.raises(ValueError):
        await router.broadcast(sender.id, "x", priority="urgent")
    assert transport.calls == []


@pytest.mark.asyncio
async def test_broadcast_runs_deliveries_concurrently(presence):
    sender, *others = await _register(presence, "lead", "a", "b", "c", "d")
    in_flight = 0
    peak = 0

    class SlowTransport(RecordingTransport):
        async def deliver(self, target, text, envelope=None):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.05)
            in_flight -= 1
            return DeliveryResult.success(target)

    router = MessageRouter(presence, SlowTransport())
    result = await router.broadcast(sender.id, "go")

    assert result.delivered == 4
    assert peak == 4


# ─────────────────────────────────────────────
# Direct messages
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_dm_by_full_id(router, presence, transport):
    sender, target = await _register(presence, "lead", "api")

    result = await router.direct_message(sender.id, target.id, "please review")

    assert result.ok
    assert result.render() == "DM sent to api"
    assert transport.calls == [
        (target.route_target, "[DM from lead] please review", transport.calls[0][2])
    ]
    assert transport.calls[0][2]["to"] == target.id


@pytest.mark.asyncio
async def test_dm_by_short_name(router, presence, transport):
    sender, target = await _register(presence, "lead", "api")

    result = await router.direct_message(sender.id, "api", "ping")

    assert result.ok
    assert result.agent.id == target.id


@pytest.mark.asyncio
async def test_dm_unknown_recipient(router, presence, transport):
    (sender,) = await _register(presence, "lead")

    result = await router.direct_message(sender.id, "ghost-00000000", "hello?")

    assert result.status == "not_found"
    assert result.render() == "Agent ghost-00000000 not found"
    assert transport.calls == []


@pytest.mark.asyncio
async def test_dm_to_stale_agent_is_not_found(router, presence, transport, clock):
    (target,) = await _register(presence, "api")
    clock.advance(301)
    (sender,) = await _register(presence, "lead")

    result = await router.direct_message(sender.id, target.id, "still there?")

    assert result.status == "not_found"
    assert transport.calls == []


@pytest.mark.asyncio
async def test_dm_without_route(clock):
    presence = PresenceStore(MemoryPresenceBackend(), clock=clock)
    transport = RecordingTransport()
    router = MessageRouter(presence, transport)
    sender = await presence.register("lead", "x", route_target="main:0.0")
    target = await presence.register("api", "no pane")

    result = await router.direct_message(sender.id, target.id, "hello")

    assert result.status == "no_route"
    assert result.render() == f"Agent {target.id} has no reachable destination"
    assert transport.calls == []


@pytest.mark.asyncio
async def test_dm_delivery_failure(presence):
    sender, target = await _register(presence, "lead", "api")
    router = MessageRouter(presence, RecordingTransport(fail_targets={target.route_target}))

    result = await router.direct_message(sender.id, target.id, "hello")

    assert result.status == "failed"
    assert result.render() == "Failed to send DM: snd failed with code 1"


@pytest.mark.asyncio
async def test_dm_name_collision_recent_policy(router, presence, transport, clock):
    (older,) = await _register(presence, "api")
    clock.advance(10)
    (newer,) = await _register(presence, "api")
    (sender,) = await _register(presence, "lead")

    result = await router.direct_message(sender.id, "api", "which one?")

    assert result.agent.id == newer.id
    assert transport.targets == [newer.route_target]


@pytest.mark.asyncio
async def test_dm_name_collision_strict_policy(presence, transport):
    first, second, sender = await _register(presence, "api", "api", "lead")
    router = MessageRouter(presence, transport, name_policy="strict")

    result = await router.direct_message(sender.id, "api", "which one?")

    assert result.status == "ambiguous"
    assert first.id in result.detail and second.id in result.detail
    assert transport.calls == []


# ─────────────────────────────────────────────
# Ledger recording
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_successful_traffic_is_recorded(db, presence, transport):
    ledger = HistoryLedger(db)
    router = MessageRouter(presence, transport, ledger=ledger)
    sender, target = await _register(presence, "lead", "api")

    await router.broadcast(sender.id, "all hands", priority="high")
    await router.direct_message(sender.id, target.id, "just you")
    await router.direct_message(sender.id, "ghost", "nobody")

    recorded = await ledger.messages_since(0)
    assert [(e.to_agent, e.content, e.priority) for e in recorded] == [
        (None, "all hands", "high"),
        (target.id, "just you", "normal"),
    ]
    assert await ledger.channel_list() == []


@pytest.mark.asyncio
async def test_failed_dm_is_not_recorded(db, presence):
    sender, target = await _register(presence, "lead", "api")
    ledger = HistoryLedger(db)
    router = MessageRouter(
        presence, RecordingTransport(fail_targets={target.route_target}), ledger=ledger,
    )

    await router.direct_message(sender.id, target.id, "lost")

    assert await ledger.messages_since(0) == []
