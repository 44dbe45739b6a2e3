import asyncio
import logging

from twitchio.ext import commands

from errors import AnnouncementError, ChatJoinError
from twitch_helix import BotIdentity, clean_token


logger = logging.getLogger("TwitchBot")

FLAG_BADGES = ("broadcaster", "moderator", "vip", "subscriber")


def parse_badges(raw) -> dict:
    """Twitch badges tag ("moderator/1,subscriber/3012") or dict -> {name: version}."""
    if not raw:
        return {}
    if isinstance(raw, dict):
        return {str(k): str(v) for k, v in raw.items()}
    out = {}
    for part in str(raw).split(","):
        if not part:
            continue
        name, _, version = part.partition("/")
        out[name] = version
    return out


def sub_tier_from_badges(badges: dict) -> str | None:
    # у subscriber-бейджа версия 2xxx/3xxx означает тир 2/3, остальное тир 1
    version = badges.get("subscriber") or badges.get("founder")
    if version is None:
        return None
    try:
        value = int(version)
    except ValueError:
        return "1000"
    if value >= 3000:
        return "3000"
    if value >= 2000:
        return "2000"
    return "1000"


def badge_flags(badges: dict) -> dict:
    return {name: True for name in FLAG_BADGES if name in badges}


class TwitchBot(commands.Bot):
    """Chat side of the Entry Collector.

    Joins channels on demand and fans every chat message out to the
    listeners registered by live giveaways.
    """

    def __init__(self, config: dict, identity: BotIdentity | None = None):
        self.config = config
        self.ignore_list = [name.lower() for name in self.config.get("ignore_list", [])]
        self.identity = identity or BotIdentity.from_config(config)
        self._entry_listeners: list = []

        super().__init__(
            token=f"oauth:{clean_token(self.config['twitch']['bot_token'])}",
            client_secret=self.config["twitch"]["client_secret"],
            prefix="!",
            initial_channels=[],
        )

    async def event_ready(self):
        nick = getattr(self, "nick", None) or "Unknown"
        user_id = getattr(self, "user_id", None) or "Unknown"
        logger.info(f"Вошли как: {nick} (user_id={user_id})")

    async def event_message(self, message):
        if message.echo:
            return

        author = getattr(message, "author", None)
        channel = getattr(message, "channel", None)
        if not author or not author.name or not channel:
            return
        author_name = author.name.lower()
        if author_name in self.ignore_list:
            return

        tags = getattr(message, "tags", None) or {}
        badges = parse_badges(tags.get("badges") or getattr(author, "badges", None))
        self.dispatch_entry(
            channel.name.lower(),
            author_name,
            getattr(message, "content", "") or "",
            badge_flags(badges),
            sub_tier_from_badges(badges),
        )

    def add_entry_listener(self, listener):
        self._entry_listeners.append(listener)

    def remove_entry_listener(self, listener):
        try:
            self._entry_listeners.remove(listener)
        except ValueError:
            pass

    def dispatch_entry(self, channel: str, username: str, text: str, badges: dict, sub_tier: str | None):
        for listener in list(self._entry_listeners):
            try:
                listener(channel, username, text, badges, sub_tier)
            except Exception as e:
                logger.error(f"Ошибка обработчика сообщений в {channel}: {e}")

    async def join_channel(self, channel: str):
        await self.wait_for_ready()
        if self.get_channel(channel):
            return
        try:
            await self.join_channels([channel])
        except Exception as e:
            raise ChatJoinError(f"Failed to join channel: {e}") from e
        while not self.get_channel(channel):
            await asyncio.sleep(0.2)
        logger.info(f"Присоединились к каналу: {channel}")

    async def send_message(self, channel: str, text: str):
        ch = self.get_channel(channel)
        if not ch:
            raise AnnouncementError(f"not joined to {channel}")
        await ch.send(text)

    async def announce(self, broadcaster_id: str, text: str):
        await self.identity.send(broadcaster_id, text)
        logger.info("Объявление отправлено через Helix")
