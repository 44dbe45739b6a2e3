from __future__ import annotations

import asyncio

import pytest

from errors import AnnouncementError


class FakeChat:
    """In-memory chat transport with the same surface as TwitchBot."""

    def __init__(self, fail_join: bool = False, fail_announce: bool = False, join_delay: float = 0):
        self.fail_join = fail_join
        self.fail_announce = fail_announce
        self.join_delay = join_delay
        self.listeners: list = []
        self.joined: list[str] = []
        self.said: list[tuple[str, str]] = []
        self.announced: list[tuple[str, str]] = []

    async def join_channel(self, channel: str):
        if self.join_delay:
            await asyncio.sleep(self.join_delay)
        if self.fail_join:
            raise RuntimeError("irc down")
        self.joined.append(channel)

    async def send_message(self, channel: str, text: str):
        self.said.append((channel, text))

    async def announce(self, broadcaster_id: str, text: str):
        if self.fail_announce:
            raise AnnouncementError("bot identity unavailable")
        self.announced.append((broadcaster_id, text))

    def add_entry_listener(self, listener):
        self.listeners.append(listener)

    def remove_entry_listener(self, listener):
        self.listeners.remove(listener)

    def message(self, channel: str, username: str, text: str, badges: dict | None = None, sub_tier: str | None = None):
        for listener in list(self.listeners):
            listener(channel, username, text, badges or {}, sub_tier)


class FakeWebhooks:
    def __init__(self):
        self.deliveries: list[tuple[str, dict]] = []

    async def deliver(self, url: str, payload: dict) -> bool:
        self.deliveries.append((url, payload))
        return True


@pytest.fixture
def chat():
    return FakeChat()


@pytest.fixture
def webhooks():
    return FakeWebhooks()
