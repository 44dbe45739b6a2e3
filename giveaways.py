import asyncio
import enum
import logging
import random
import time
from dataclasses import dataclass, field

from errors import ChannelBusyError, ChatJoinError, GiveawayNotFound


logger = logging.getLogger("Lifecycle")


class GiveawayState(enum.Enum):
    OPEN = "open"
    CONCLUDING = "concluding"
    CONCLUDED = "concluded"


@dataclass(frozen=True)
class Entry:
    username: str
    badges: dict = field(default_factory=dict)
    sub_tier: str | None = None

    def to_dict(self) -> dict:
        return {"username": self.username, "badges": dict(self.badges), "sub_tier": self.sub_tier}


@dataclass(frozen=True)
class Snapshot:
    entries: tuple
    count: int


class EntryLedger:
    """Unique entrants of one giveaway, in arrival order."""

    def __init__(self, command: str):
        self.command = command
        self._entries: list[Entry] = []
        self._seen: set[str] = set()

    def matches(self, message_text: str) -> bool:
        return (message_text or "").strip().startswith(self.command)

    def record_attempt(self, username: str, message_text: str, badges: dict | None, sub_tier: str | None, is_open: bool = True) -> bool:
        if not is_open or not username:
            return False
        if not self.matches(message_text):
            return False
        key = username.lower()
        if key in self._seen:
            return False
        self._seen.add(key)
        self._entries.append(Entry(key, dict(badges or {}), sub_tier))
        return True

    def snapshot(self) -> Snapshot:
        entries = tuple(self._entries)
        return Snapshot(entries, len(entries))


class GiveawayResources:
    """Countdown task, status task and chat listener of one giveaway.

    release() is safe to call any number of times and from inside either
    task.
    """

    def __init__(self, chat):
        self.chat = chat
        self.countdown: asyncio.Task | None = None
        self.status: asyncio.Task | None = None
        self.listener = None
        self.released = False

    def attach(self, listener, countdown: asyncio.Task, status: asyncio.Task):
        self.listener = listener
        self.chat.add_entry_listener(listener)
        self.countdown = countdown
        self.status = status

    def release(self):
        if self.released:
            return
        self.released = True
        if self.listener is not None:
            self.chat.remove_entry_listener(self.listener)
            self.listener = None
        current = asyncio.current_task()
        for task in (self.countdown, self.status):
            if task is not None and task is not current and not task.done():
                task.cancel()


@dataclass
class Giveaway:
    id: str
    channel: str
    command: str
    duration: float
    prize: str
    webhook_url: str | None
    broadcaster_id: str | None
    ledger: EntryLedger
    resources: GiveawayResources
    state: GiveawayState = GiveawayState.OPEN
    created_at: float = field(default_factory=time.time)

    def snapshot(self) -> Snapshot:
        return self.ledger.snapshot()

    def webhook_payload(self) -> dict:
        return {
            "type": "giveaway_ended",
            "entries": [e.to_dict() for e in self.snapshot().entries],
            "broadcaster_id": self.broadcaster_id,
            "original_command": self.command,
        }


class GiveawayRegistry:
    """Live giveaways of one Entry Collector, keyed by id.

    The table is the only record of whether a giveaway has concluded:
    claim() removes the entry without awaiting, so exactly one of the
    countdown and an early-end request gets to run the conclusion.
    """

    def __init__(self, chat, webhooks, status_interval: float = 30, join_wait: float = 10, rng: random.Random | None = None):
        self.chat = chat
        self.webhooks = webhooks
        self.status_interval = status_interval
        self.join_wait = join_wait
        self.rng = rng or random.Random()
        self._live: dict[str, Giveaway] = {}
        self._opening: set[str] = set()
        self._last_id = 0

    def __contains__(self, giveaway_id: str) -> bool:
        return giveaway_id in self._live

    def __len__(self) -> int:
        return len(self._live)

    def get(self, giveaway_id: str) -> Giveaway | None:
        return self._live.get(giveaway_id)

    def list_active(self) -> list[dict]:
        return [
            {
                "id": g.id,
                "channel": g.channel,
                "command": g.command,
                "prize": g.prize,
                "entries": g.snapshot().count,
            }
            for g in self._live.values()
        ]

    def _next_id(self) -> str:
        value = time.time_ns() // 1_000_000
        if value <= self._last_id:
            value = self._last_id + 1
        self._last_id = value
        return str(value)

    def _channel_busy(self, channel: str) -> bool:
        if channel in self._opening:
            return True
        return any(g.channel == channel and g.state is GiveawayState.OPEN for g in self._live.values())

    async def create(self, channel: str, command: str, duration: float, prize: str,
                     webhook_url: str | None = None, broadcaster_id: str | None = None) -> str:
        channel = (channel or "").replace("#", "").strip().lower()
        if self._channel_busy(channel):
            raise ChannelBusyError(channel)

        self._opening.add(channel)
        try:
            logger.info(f"Запуск розыгрыша в {channel}: {command}, {duration} с, приз {prize}")
            try:
                await asyncio.wait_for(self.chat.join_channel(channel), timeout=self.join_wait)
            except asyncio.TimeoutError:
                raise ChatJoinError(f"Failed to join channel: timed out after {self.join_wait}s")
            except ChatJoinError:
                raise
            except Exception as e:
                raise ChatJoinError(f"Failed to join channel: {e}") from e

            try:
                await self.chat.announce(broadcaster_id, f"🎉 Giveaway for {prize} started! Type {command} to enter!")
            except Exception as e:
                logger.error(f"Не удалось объявить старт розыгрыша в {channel}: {e}")

            giveaway = Giveaway(
                id=self._next_id(),
                channel=channel,
                command=command,
                duration=duration,
                prize=prize,
                webhook_url=webhook_url,
                broadcaster_id=broadcaster_id,
                ledger=EntryLedger(command),
                resources=GiveawayResources(self.chat),
            )
            self._live[giveaway.id] = giveaway
        finally:
            self._opening.discard(channel)

        giveaway.resources.attach(
            self._make_listener(giveaway),
            asyncio.create_task(self._countdown(giveaway)),
            asyncio.create_task(self._status_loop(giveaway)),
        )
        logger.info(f"Розыгрыш {giveaway.id} открыт в {channel}")
        return giveaway.id

    def _make_listener(self, giveaway: Giveaway):
        def listener(channel: str, username: str, text: str, badges: dict | None, sub_tier: str | None):
            if channel != giveaway.channel:
                return
            self.record_attempt(giveaway.id, username, text, badges, sub_tier)
        return listener

    def record_attempt(self, giveaway_id: str, username: str, message_text: str,
                       badges: dict | None = None, sub_tier: str | None = None) -> bool:
        giveaway = self._live.get(giveaway_id)
        if giveaway is None:
            return False
        added = giveaway.ledger.record_attempt(
            username, message_text, badges, sub_tier, is_open=giveaway.state is GiveawayState.OPEN
        )
        if added:
            logger.info(f"[{giveaway_id}] Новый участник: @{username}")
        return added

    def snapshot(self, giveaway_id: str) -> Snapshot:
        giveaway = self._live.get(giveaway_id)
        if giveaway is None:
            raise GiveawayNotFound(giveaway_id)
        return giveaway.snapshot()

    def claim(self, giveaway_id: str) -> Giveaway | None:
        giveaway = self._live.pop(giveaway_id, None)
        if giveaway is None:
            return None
        giveaway.state = GiveawayState.CONCLUDING
        giveaway.resources.release()
        return giveaway

    async def end_early(self, giveaway_id: str) -> Giveaway:
        logger.info(f"Запрос на досрочное завершение: {giveaway_id}")
        giveaway = self.claim(giveaway_id)
        if giveaway is None:
            logger.warning(f"Розыгрыш {giveaway_id} не найден (уже завершён?)")
            raise GiveawayNotFound(giveaway_id)
        await self._conclude(giveaway)
        return giveaway

    async def _countdown(self, giveaway: Giveaway):
        await asyncio.sleep(giveaway.duration)
        claimed = self.claim(giveaway.id)
        if claimed is None:
            return
        try:
            await self._conclude(claimed)
        except Exception as e:
            logger.error(f"Ошибка завершения розыгрыша {giveaway.id}: {e}")

    async def _status_loop(self, giveaway: Giveaway):
        while True:
            await asyncio.sleep(self.status_interval)
            if giveaway.id not in self._live:
                logger.info(f"Розыгрыш {giveaway.id} завершён, статус больше не шлём")
                return
            if giveaway.state is not GiveawayState.OPEN:
                continue
            count = giveaway.snapshot().count
            if count == 0:
                continue
            logger.info(f"Статус {giveaway.id}: {count} участников")
            try:
                await self.chat.send_message(
                    giveaway.channel,
                    f"📢 There are currently {count} entries! Type {giveaway.command} to join!",
                )
            except Exception as e:
                logger.error(f"Не удалось отправить статус в {giveaway.channel}: {e}")

    async def _conclude(self, giveaway: Giveaway):
        giveaway.resources.release()
        snapshot = giveaway.snapshot()
        logger.info(f"Завершаем розыгрыш {giveaway.id}: участников {snapshot.count}")

        if snapshot.count:
            winner = snapshot.entries[self.rng.randrange(snapshot.count)]
            logger.info(f"[{giveaway.id}] Победитель в чате: {winner.username}")
            text = f"🏆 Winner is @{winner.username}!"
        else:
            logger.info(f"[{giveaway.id}] Участников нет")
            text = "No one entered the giveaway :("
        try:
            await self.chat.send_message(giveaway.channel, text)
        except Exception as e:
            logger.error(f"Не удалось объявить итог в {giveaway.channel}: {e}")

        if giveaway.webhook_url:
            await self.webhooks.deliver(giveaway.webhook_url, giveaway.webhook_payload())
        giveaway.state = GiveawayState.CONCLUDED

    async def shutdown(self):
        for giveaway_id in list(self._live):
            giveaway = self._live.pop(giveaway_id)
            giveaway.resources.release()
        logger.info("Реестр розыгрышей остановлен")
