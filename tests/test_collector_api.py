"""Tests for the Entry Collector HTTP surface."""

import asyncio
import random

import pytest
from aiohttp.test_utils import TestClient, TestServer

from collector import build_collector_app
from conftest import FakeChat
from giveaways import GiveawayRegistry

CREATE = {
    "channel": "streamer",
    "command": "!join",
    "duration": 10,
    "webhook_url": "http://orchestrator.test/webhook",
    "broadcaster_id": "42",
    "prize": "Skin",
}


def make_client(chat, webhooks):
    registry = GiveawayRegistry(chat, webhooks, join_wait=1, rng=random.Random(3))
    return registry, TestClient(TestServer(build_collector_app(registry)))


@pytest.mark.asyncio
async def test_create_and_end(chat, webhooks):
    registry, client = make_client(chat, webhooks)
    async with client:
        resp = await client.post("/create", json=CREATE)
        assert resp.status == 200
        data = await resp.json()
        assert data["success"] is True
        giveaway_id = data["id"]
        assert giveaway_id in registry

        chat.message("streamer", "alice", "!join")
        resp = await client.get("/giveaways")
        assert (await resp.json())["giveaways"][0]["entries"] == 1

        resp = await client.post(f"/end/{giveaway_id}")
        assert resp.status == 200
        assert await resp.json() == {"success": True}

        resp = await client.post(f"/end/{giveaway_id}")
        assert resp.status == 404
        assert await resp.json() == {"error": "not found"}

    assert len(webhooks.deliveries) == 1
    assert webhooks.deliveries[0][1]["entries"][0]["username"] == "alice"


@pytest.mark.asyncio
async def test_end_after_expiry_is_not_found(chat, webhooks):
    registry, client = make_client(chat, webhooks)
    async with client:
        resp = await client.post("/create", json={**CREATE, "duration": 0.05})
        giveaway_id = (await resp.json())["id"]

        await asyncio.sleep(0.15)
        resp = await client.post(f"/end/{giveaway_id}")
        assert resp.status == 404

    assert len(webhooks.deliveries) == 1


@pytest.mark.asyncio
async def test_create_busy_channel(chat, webhooks):
    _, client = make_client(chat, webhooks)
    async with client:
        assert (await client.post("/create", json=CREATE)).status == 200
        resp = await client.post("/create", json=CREATE)
        assert resp.status == 409
        assert "error" in await resp.json()


@pytest.mark.asyncio
async def test_create_join_failure(webhooks):
    _, client = make_client(FakeChat(fail_join=True), webhooks)
    async with client:
        resp = await client.post("/create", json=CREATE)
        assert resp.status == 500
        assert (await resp.json())["error"].startswith("Failed to join channel")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"channel": "streamer", "duration": 10},
        {**CREATE, "duration": "soon"},
        {**CREATE, "duration": -5},
        {**CREATE, "duration": "nan"},
        {**CREATE, "duration": "inf"},
        {**CREATE, "duration": "1e400"},
    ],
)
async def test_create_bad_body(chat, webhooks, body):
    registry, client = make_client(chat, webhooks)
    async with client:
        resp = await client.post("/create", json=body)
        assert resp.status == 400
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_health(chat, webhooks):
    _, client = make_client(chat, webhooks)
    async with client:
        resp = await client.get("/health")
        assert await resp.json() == {"ok": True, "active": 0}
