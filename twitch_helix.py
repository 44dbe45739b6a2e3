import asyncio
import datetime
import logging

import aiohttp

from errors import AnnouncementError


logger = logging.getLogger("Helix")

HELIX_URL = "https://api.twitch.tv/helix"


def clean_token(raw: str | None) -> str:
    raw = raw or ""
    return raw[len("oauth:"):] if raw.startswith("oauth:") else raw


class HelixClient:
    def __init__(self, client_id: str, client_secret: str):
        self.client_id = client_id
        self.client_secret = client_secret
        self._token: str | None = None
        self._token_expires_at: datetime.datetime | None = None

    async def _ensure_token(self):
        if self._token and self._token_expires_at:
            if datetime.datetime.now() < (self._token_expires_at - datetime.timedelta(seconds=30)):
                return
        await self._fetch_app_token()

    async def _fetch_app_token(self):
        url = "https://id.twitch.tv/oauth2/token"
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "client_credentials",
        }

        delay = 1
        for attempt in range(6):
            try:
                async with aiohttp.ClientSession() as session:
                    async with session.post(url, data=data, timeout=aiohttp.ClientTimeout(total=15)) as resp:
                        payload = await resp.json()
                        if resp.status != 200:
                            raise RuntimeError(f"token_http_{resp.status}: {payload}")

                token = payload.get("access_token")
                expires_in = int(payload.get("expires_in", 0))
                if not token or expires_in <= 0:
                    raise RuntimeError(f"bad_token_payload: {payload}")

                self._token = token
                self._token_expires_at = datetime.datetime.now() + datetime.timedelta(seconds=expires_in)
                logger.info("Helix: app access token получен")
                return
            except Exception as e:
                logger.error(f"Helix: не удалось получить app token (attempt={attempt + 1}): {e}")
                await asyncio.sleep(min(30, delay))
                delay = min(30, delay * 2)

        raise RuntimeError("Helix: app token не получен после ретраев")

    async def get_user(self, user_login: str) -> dict | None:
        await self._ensure_token()
        url = f"{HELIX_URL}/users"
        headers = {
            "Client-ID": self.client_id,
            "Authorization": f"Bearer {self._token}",
        }
        params = {"login": user_login}

        delay = 1
        for attempt in range(6):
            try:
                async with aiohttp.ClientSession() as session:
                    async with session.get(
                        url,
                        headers=headers,
                        params=params,
                        timeout=aiohttp.ClientTimeout(total=15),
                    ) as resp:
                        payload = await resp.json()

                        if resp.status == 401:
                            self._token = None
                            self._token_expires_at = None
                            await self._ensure_token()
                            headers["Authorization"] = f"Bearer {self._token}"
                            continue

                        if resp.status != 200:
                            raise RuntimeError(f"users_http_{resp.status}: {payload}")

                data = payload.get("data", [])
                return data[0] if data else None
            except Exception as e:
                logger.error(f"Helix: ошибка GET /users (attempt={attempt + 1}): {e}")
                await asyncio.sleep(min(30, delay))
                delay = min(30, delay * 2)

        return None

    async def get_user_id(self, user_login: str) -> str | None:
        user = await self.get_user(user_login)
        return user.get("id") if user else None

    async def send_chat_message(self, broadcaster_id: str, sender_id: str, message: str, user_token: str):
        """POST /chat/messages as sender_id. One attempt, AnnouncementError on failure."""
        url = f"{HELIX_URL}/chat/messages"
        headers = {
            "Client-ID": self.client_id,
            "Authorization": f"Bearer {clean_token(user_token)}",
            "Content-Type": "application/json",
        }
        body = {"broadcaster_id": broadcaster_id, "sender_id": sender_id, "message": message}
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(url, headers=headers, json=body, timeout=aiohttp.ClientTimeout(total=15)) as resp:
                    payload = await resp.json(content_type=None)
                    if resp.status != 200:
                        raise AnnouncementError(f"chat_messages_http_{resp.status}: {payload}")
        except aiohttp.ClientError as e:
            raise AnnouncementError(f"chat_messages_request_failed: {e}") from e

        data = (payload or {}).get("data") or [{}]
        if not data[0].get("is_sent", True):
            reason = data[0].get("drop_reason") or {}
            raise AnnouncementError(f"chat_message_dropped: {reason.get('message') or reason}")


class BotIdentity:
    """Bot account used to post into chats through Helix.

    The user id is looked up once per process and cached.
    """

    def __init__(self, helix: HelixClient, bot_nick: str, bot_token: str, bot_id: str | None = None):
        self.helix = helix
        self.bot_nick = bot_nick
        self.bot_token = clean_token(bot_token)
        self._bot_id = bot_id if bot_id and not str(bot_id).upper().startswith("YOUR_") else None

    @classmethod
    def from_config(cls, config: dict, helix: HelixClient | None = None):
        twitch = config["twitch"]
        helix = helix or HelixClient(twitch["client_id"], twitch["client_secret"])
        return cls(helix, twitch["bot_nick"], twitch["bot_token"], twitch.get("bot_id"))

    async def user_id(self) -> str | None:
        if self._bot_id:
            return self._bot_id
        logger.info("bot_id не найден в конфиге, пробуем получить через Helix...")
        try:
            bot_id = await self.helix.get_user_id(self.bot_nick)
        except Exception as e:
            logger.error(f"Ошибка получения bot_id: {e}")
            bot_id = None
        if bot_id:
            logger.info(f"bot_id получен через Helix: {bot_id}")
            self._bot_id = str(bot_id)
        else:
            logger.warning(f"Не удалось получить bot_id для {self.bot_nick}")
        return self._bot_id

    async def send(self, broadcaster_id: str, message: str):
        bot_id = await self.user_id()
        if not bot_id:
            raise AnnouncementError("bot identity unavailable")
        if not broadcaster_id:
            raise AnnouncementError("broadcaster_id is required")
        await self.helix.send_chat_message(broadcaster_id, bot_id, message, self.bot_token)
