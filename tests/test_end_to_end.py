"""Start -> entries -> expiry -> webhook -> draw, with both services in one loop."""

import asyncio
import random
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from db import Database
from errors import GiveawayNotFound
from giveaways import GiveawayRegistry
from orchestrator import Orchestrator

WEBHOOK_URL = "http://orchestrator.test/webhook"


class InProcessCollector:
    """CollectorClient stand-in that calls the registry directly."""

    def __init__(self, registry: GiveawayRegistry):
        self.registry = registry
        self.base_url = "in-process"

    async def create(self, *, channel, command, duration, prize, webhook_url, broadcaster_id, is_looping=False):
        return await self.registry.create(channel, command, duration, prize, webhook_url, broadcaster_id)

    async def end(self, giveaway_id, channel=None):
        try:
            await self.registry.end_early(giveaway_id)
        except GiveawayNotFound:
            return False
        return True


class RoutingWebhooks:
    def __init__(self):
        self.orchestrator = None
        self.payloads = []

    async def deliver(self, url, payload):
        self.payloads.append(payload)
        await self.orchestrator.process_giveaway_end(payload)
        return True


async def wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest_asyncio.fixture
async def system(tmp_path, chat):
    db = Database(str(tmp_path / "profiles.db"))
    await db.init()
    await db.upsert_broadcaster("42", "streamer", "broadcaster-token")

    webhooks = RoutingWebhooks()
    registry = GiveawayRegistry(chat, webhooks, join_wait=1, rng=random.Random(5))
    announcer = MagicMock()
    announcer.announce = AsyncMock(return_value=True)
    orchestrator = Orchestrator(db, InProcessCollector(registry), announcer, WEBHOOK_URL)
    webhooks.orchestrator = orchestrator

    yield db, registry, orchestrator, webhooks, announcer
    await registry.shutdown()


@pytest.mark.asyncio
async def test_three_entrants_then_expiry(system, chat):
    db, registry, orchestrator, webhooks, announcer = system

    giveaway_id = await orchestrator.start_giveaway(
        "42", command="!join", duration=0.3, message="gg {user}", prize="Skin"
    )
    assert (await db.get_profile("42"))["active_giveaway_id"] == giveaway_id

    for name in ("alice", "bob", "carol"):
        chat.message("streamer", name, "!join")
    chat.message("streamer", "alice", "!join")
    chat.message("streamer", "dave", "lurking")

    await wait_until(lambda: announcer.announce.await_count == 1)

    assert len(webhooks.payloads) == 1
    assert [e["username"] for e in webhooks.payloads[0]["entries"]] == ["alice", "bob", "carol"]
    message = announcer.announce.await_args.args[2]
    assert message in {f"🎉 Winner is @{name}!" for name in ("alice", "bob", "carol")}
    assert (await db.get_profile("42"))["active_giveaway_id"] is None
    assert giveaway_id not in registry


@pytest.mark.asyncio
async def test_end_early_then_expiry_fires_once(system, chat):
    db, registry, orchestrator, webhooks, announcer = system

    giveaway_id = await orchestrator.start_giveaway(
        "42", command="!join", duration=0.3, message="gg {user}", prize="Skin"
    )
    chat.message("streamer", "alice", "!join")

    assert await orchestrator.end_giveaway("42", giveaway_id) is True
    await asyncio.sleep(0.4)
    assert await orchestrator.end_giveaway("42", giveaway_id) is False

    assert len(webhooks.payloads) == 1
    announcer.announce.assert_awaited_once()
    assert (await db.get_profile("42"))["active_giveaway_id"] is None


@pytest.mark.asyncio
async def test_loop_reopens_until_stopped(system, chat):
    db, registry, orchestrator, webhooks, announcer = system

    first_id = await orchestrator.start_giveaway(
        "42", command="!join", duration=0.3, message="gg {user}", prize="Skin", is_looping=True
    )

    async def restarted():
        profile = await db.get_profile("42")
        return profile["active_giveaway_id"] not in (None, first_id)

    await wait_until(restarted)
    await db.set_looping("42", False)
    second_id = (await db.get_profile("42"))["active_giveaway_id"]
    assert second_id in registry
    assert webhooks.payloads[0]["entries"] == []

    async def cleared():
        return (await db.get_profile("42"))["active_giveaway_id"] is None

    await wait_until(cleared)
    announcer.announce.assert_not_awaited()
    assert len(registry) == 0
