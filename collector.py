import logging
import math

from aiohttp import web

from errors import ChannelBusyError, ChatJoinError, GiveawayNotFound
from giveaways import GiveawayRegistry


logger = logging.getLogger("Collector")

REGISTRY_KEY = web.AppKey("registry", GiveawayRegistry)
CREATE_FIELDS = ("channel", "command", "duration")


async def health(request: web.Request):
    registry = request.app[REGISTRY_KEY]
    return web.json_response({"ok": True, "active": len(registry)})


async def list_giveaways(request: web.Request):
    registry = request.app[REGISTRY_KEY]
    return web.json_response({"giveaways": registry.list_active()})


async def create_giveaway(request: web.Request):
    registry = request.app[REGISTRY_KEY]
    try:
        body = await request.json()
    except Exception:
        return web.json_response({"error": "bad json"}, status=400)
    if not isinstance(body, dict):
        return web.json_response({"error": "bad json"}, status=400)

    missing = [name for name in CREATE_FIELDS if not body.get(name)]
    if missing:
        return web.json_response({"error": f"Missing fields: {', '.join(missing)}"}, status=400)
    try:
        duration = float(body["duration"])
    except (TypeError, ValueError):
        return web.json_response({"error": "duration must be a number"}, status=400)
    if not math.isfinite(duration):
        return web.json_response({"error": "duration must be a number"}, status=400)
    if duration <= 0:
        return web.json_response({"error": "duration must be positive"}, status=400)

    broadcaster_id = body.get("broadcaster_id")
    try:
        giveaway_id = await registry.create(
            channel=str(body["channel"]),
            command=str(body["command"]),
            duration=duration,
            prize=str(body.get("prize") or ""),
            webhook_url=body.get("webhook_url"),
            broadcaster_id=str(broadcaster_id) if broadcaster_id is not None else None,
        )
    except ChannelBusyError as e:
        logger.warning(f"Розыгрыш в {e.channel} уже идёт")
        return web.json_response({"error": str(e)}, status=409)
    except ChatJoinError as e:
        logger.error(f"Failed to join channel: {e}")
        return web.json_response({"error": str(e)}, status=500)

    return web.json_response({"success": True, "id": giveaway_id})


async def end_giveaway(request: web.Request):
    registry = request.app[REGISTRY_KEY]
    giveaway_id = request.match_info["giveaway_id"]
    try:
        await registry.end_early(giveaway_id)
    except GiveawayNotFound:
        return web.json_response({"error": "not found"}, status=404)
    return web.json_response({"success": True})


def build_collector_app(registry: GiveawayRegistry) -> web.Application:
    app = web.Application()
    app[REGISTRY_KEY] = registry
    app.router.add_get("/health", health)
    app.router.add_get("/giveaways", list_giveaways)
    app.router.add_post("/create", create_giveaway)
    app.router.add_post("/end/{giveaway_id}", end_giveaway)

    async def on_cleanup(app: web.Application):
        await app[REGISTRY_KEY].shutdown()

    app.on_cleanup.append(on_cleanup)
    return app
