import json
import logging

import aiohttp
from aiohttp import web

from db import Database
from errors import AnnouncementError, CollectorUnavailable, GiveawayError, SignatureMismatch
from lottery import SUGGESTED_WEIGHTS, pick_weighted_winner
from twitch_helix import BotIdentity
from webhooks import find_signature, verify_signature


logger = logging.getLogger("Orchestrator")

LOOP_DEFAULTS = {
    "prize": "Nothing",
    "command": "!join",
    "duration": 60,
    "message": "Congrats {user}, you won!",
}


class CollectorClient:
    """HTTP client for the Entry Collector's /create and /end/{id}."""

    def __init__(self, base_url: str, timeout: float | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _post(self, path: str, body: dict) -> tuple[int, dict]:
        kwargs = {}
        if self.timeout:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(f"{self.base_url}{path}", json=body, **kwargs) as resp:
                    try:
                        payload = await resp.json(content_type=None)
                    except ValueError:
                        payload = {}
                    return resp.status, payload or {}
        except aiohttp.ClientError as e:
            raise CollectorUnavailable(f"Bot Worker unreachable: {e}") from e

    async def create(self, *, channel: str, command: str, duration, prize: str | None,
                     webhook_url: str, broadcaster_id: str, is_looping: bool = False) -> str:
        status, data = await self._post("/create", {
            "channel": channel,
            "command": command,
            "duration": duration,
            "prize": prize,
            "is_looping": is_looping,
            "webhook_url": webhook_url,
            "broadcaster_id": broadcaster_id,
        })
        if status >= 400 or not data.get("id"):
            raise GiveawayError(data.get("error") or "Failed to start")
        return str(data["id"])

    async def end(self, giveaway_id: str, channel: str | None = None) -> bool:
        status, _ = await self._post(f"/end/{giveaway_id}", {"channel": channel})
        return status < 400


class WinnerAnnouncer:
    """Posts the winner as the bot, falling back to the broadcaster's own token."""

    def __init__(self, identity: BotIdentity):
        self.identity = identity

    async def announce(self, broadcaster_id: str, access_token: str | None, message: str) -> bool:
        try:
            await self.identity.send(broadcaster_id, message)
            logger.info(f"[Announce] Отправлено от имени бота: {message}")
            return True
        except Exception as e:
            logger.warning(f"⚠️ Бот не смог объявить победителя, пробуем от имени стримера: {e}")

        if not access_token:
            logger.error(f"[Announce] Нет access_token у {broadcaster_id}, объявление пропущено")
            return False
        try:
            await self.identity.helix.send_chat_message(broadcaster_id, broadcaster_id, message, access_token)
            logger.info(f"[Announce Fallback] Отправлено от имени стримера: {message}")
            return True
        except Exception as e:
            logger.error(f"[Announce Fallback] Не удалось объявить победителя: {e}")
            return False


class Orchestrator:
    def __init__(self, db: Database, collector: CollectorClient, announcer: WinnerAnnouncer, webhook_url: str, rng=None):
        self.db = db
        self.collector = collector
        self.announcer = announcer
        self.webhook_url = webhook_url
        self.rng = rng

    async def start_giveaway(self, broadcaster_id: str, *, command: str, duration, message: str,
                             prize: str | None = None, is_looping: bool = False,
                             broadcaster_name: str | None = None) -> str:
        await self.db.upsert_broadcaster(broadcaster_id, broadcaster_name)
        await self.db.save_giveaway_config(
            broadcaster_id,
            is_looping=is_looping,
            prize=prize,
            command=command,
            duration=duration,
            message=message,
        )
        profile = await self.db.get_profile(broadcaster_id)
        channel = profile.get("broadcaster_name")
        if not channel:
            raise GiveawayError("broadcaster_name is unknown")

        giveaway_id = await self.collector.create(
            channel=channel,
            command=command,
            duration=duration,
            prize=prize,
            webhook_url=self.webhook_url,
            broadcaster_id=broadcaster_id,
            is_looping=is_looping,
        )
        await self.db.set_active_giveaway(broadcaster_id, giveaway_id)
        logger.info(f"Розыгрыш {giveaway_id} запущен для {broadcaster_id} (loop={is_looping})")
        return giveaway_id

    async def end_giveaway(self, broadcaster_id: str, giveaway_id: str) -> bool:
        profile = await self.db.get_profile(broadcaster_id)
        channel = profile.get("broadcaster_name") if profile else None
        return await self.collector.end(giveaway_id, channel)

    async def process_giveaway_end(self, payload: dict):
        entries = payload.get("entries") or []
        broadcaster_id = payload.get("broadcaster_id")
        if not broadcaster_id:
            logger.info("Webhook без broadcaster_id, пропускаем")
            return

        profile = await self.db.get_profile(str(broadcaster_id))
        if not profile:
            logger.info(f"Профиль {broadcaster_id} не найден для webhook")
            return

        if profile["is_looping"]:
            await self.restart_loop(profile)
            return

        await self.db.clear_active_giveaway(profile["broadcaster_id"])

        if not entries:
            logger.info(f"Розыгрыш у {broadcaster_id} завершён без участников")
            return

        winner = pick_weighted_winner(entries, profile["weights"], self.rng)
        if winner is None:
            logger.info(f"Пул пуст у {broadcaster_id}, победителя нет")
            return
        logger.info(f"Победитель у {broadcaster_id}: {winner}")
        await self.announcer.announce(profile["broadcaster_id"], profile.get("access_token"), f"🎉 Winner is @{winner}!")

    async def restart_loop(self, profile: dict):
        broadcaster_id = profile["broadcaster_id"]
        logger.info(f"[Loop] Розыгрыш у {broadcaster_id} завершён, перезапускаем...")
        try:
            giveaway_id = await self.collector.create(
                channel=profile.get("broadcaster_name"),
                command=profile.get("current_command") or LOOP_DEFAULTS["command"],
                duration=profile.get("current_duration") or LOOP_DEFAULTS["duration"],
                prize=profile.get("current_prize") or LOOP_DEFAULTS["prize"],
                webhook_url=self.webhook_url,
                broadcaster_id=broadcaster_id,
                is_looping=True,
            )
        except Exception as e:
            logger.error(f"[Loop] Не удалось перезапустить розыгрыш: {e}")
            return
        await self.db.set_active_giveaway(broadcaster_id, giveaway_id)
        logger.info(f"[Loop] Новый розыгрыш {giveaway_id} запущен")


ORCHESTRATOR_KEY = web.AppKey("orchestrator", Orchestrator)
SECRET_KEY = web.AppKey("webhook_secret", str)
API_KEY = web.AppKey("api_key", str)


@web.middleware
async def api_key_mw(request: web.Request, handler):
    expected = request.app.get(API_KEY)
    if expected and request.path.startswith("/api/"):
        if request.headers.get("X-Api-Key") != expected:
            return web.json_response({"error": "unauthorized"}, status=401)
    return await handler(request)


async def webhook(request: web.Request):
    raw = await request.read()
    try:
        verify_signature(request.app.get(SECRET_KEY), raw, find_signature(request.headers))
    except SignatureMismatch:
        logger.warning("Webhook с неверной подписью отклонён")
        return web.Response(status=403, text="Invalid Signature")

    try:
        payload = json.loads(raw or b"{}")
    except ValueError:
        return web.Response(status=400, text="bad json")

    if isinstance(payload, dict) and payload.get("type") == "giveaway_ended":
        try:
            await request.app[ORCHESTRATOR_KEY].process_giveaway_end(payload)
        except Exception as e:
            logger.exception(f"Ошибка обработки webhook: {e}")
    return web.Response(text="OK")


async def _json_body(request: web.Request) -> dict | None:
    try:
        body = await request.json()
    except Exception:
        return None
    return body if isinstance(body, dict) else None


async def api_start(request: web.Request):
    body = await _json_body(request)
    if body is None:
        return web.json_response({"error": "bad json"}, status=400)
    broadcaster_id = body.get("broadcaster_id")
    command, duration, message = body.get("command"), body.get("duration"), body.get("message")
    if not broadcaster_id or not command or not duration or not message:
        return web.json_response({"error": "Missing fields"}, status=400)

    is_looping = bool(body.get("is_looping"))
    orchestrator = request.app[ORCHESTRATOR_KEY]
    try:
        giveaway_id = await orchestrator.start_giveaway(
            str(broadcaster_id),
            command=command,
            duration=duration,
            message=message,
            prize=body.get("prize"),
            is_looping=is_looping,
            broadcaster_name=body.get("broadcaster_name"),
        )
    except CollectorUnavailable as e:
        logger.error(f"Bot Unreachable: {e}")
        return web.json_response({"error": "Bot Worker is offline. Please check bot server logs."}, status=503)
    except GiveawayError as e:
        logger.error(f"Start Error: {e}")
        return web.json_response({"error": str(e)}, status=500)
    return web.json_response({"success": True, "id": giveaway_id, "command": command, "is_looping": is_looping})


async def api_end(request: web.Request):
    body = await _json_body(request)
    if body is None or not body.get("broadcaster_id") or not body.get("giveawayId"):
        return web.json_response({"error": "Missing fields"}, status=400)
    orchestrator = request.app[ORCHESTRATOR_KEY]
    try:
        ended = await orchestrator.end_giveaway(str(body["broadcaster_id"]), str(body["giveawayId"]))
    except CollectorUnavailable as e:
        return web.json_response({"error": str(e)}, status=503)
    if not ended:
        return web.json_response({"error": "Failed to end"}, status=500)
    return web.json_response({"success": True})


async def api_status(request: web.Request):
    broadcaster_id = request.query.get("broadcaster_id")
    if not broadcaster_id:
        return web.json_response({"error": "Missing fields"}, status=400)
    profile = await request.app[ORCHESTRATOR_KEY].db.get_profile(broadcaster_id)
    return web.json_response({"activeId": profile.get("active_giveaway_id") if profile else None})


async def api_stop_loop(request: web.Request):
    body = await _json_body(request)
    if body is None or not body.get("broadcaster_id"):
        return web.json_response({"error": "Missing fields"}, status=400)
    broadcaster_id = str(body["broadcaster_id"])
    await request.app[ORCHESTRATOR_KEY].db.set_looping(broadcaster_id, False)
    logger.info(f"[Loop] Цикл выключен для {broadcaster_id}")
    return web.json_response({"success": True})


async def api_get_weights(request: web.Request):
    broadcaster_id = request.query.get("broadcaster_id")
    if not broadcaster_id:
        return web.json_response({"error": "Missing fields"}, status=400)
    profile = await request.app[ORCHESTRATOR_KEY].db.get_profile(broadcaster_id)
    return web.json_response(profile["weights"] if profile else SUGGESTED_WEIGHTS)


async def api_save_weights(request: web.Request):
    body = await _json_body(request)
    if body is None or not body.get("broadcaster_id") or not isinstance(body.get("weights"), dict):
        return web.json_response({"error": "Missing fields"}, status=400)
    try:
        weights = await request.app[ORCHESTRATOR_KEY].db.save_weights(str(body["broadcaster_id"]), body["weights"])
    except (TypeError, ValueError):
        return web.json_response({"error": "weights must be integers"}, status=400)
    return web.json_response({"success": True, "weights": weights})


def build_orchestrator_app(orchestrator: Orchestrator, webhook_secret: str | None = None,
                           api_key: str | None = None) -> web.Application:
    app = web.Application(middlewares=[api_key_mw])
    app[ORCHESTRATOR_KEY] = orchestrator
    if webhook_secret:
        app[SECRET_KEY] = webhook_secret
    if api_key:
        app[API_KEY] = api_key
    app.router.add_post("/webhook", webhook)
    app.router.add_post("/api/giveaway/start", api_start)
    app.router.add_post("/api/giveaway/end", api_end)
    app.router.add_get("/api/giveaway/status", api_status)
    app.router.add_post("/api/giveaway/stop-loop", api_stop_loop)
    app.router.add_get("/api/settings/weights", api_get_weights)
    app.router.add_post("/api/settings/weights", api_save_weights)
    return app
