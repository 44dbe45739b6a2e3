import argparse
import asyncio
import logging

import yaml
from aiohttp import web

from bot import TwitchBot
from collector import build_collector_app
from db import Database
from giveaways import GiveawayRegistry
from orchestrator import CollectorClient, Orchestrator, WinnerAnnouncer, build_orchestrator_app
from twitch_helix import BotIdentity, HelixClient
from webhooks import WebhookSender


logger = logging.getLogger("Main")

REQUIRED_TWITCH_KEYS = ("client_id", "client_secret", "bot_nick", "bot_token")


def load_config(path: str) -> dict:
    with open(path, "r") as f:
        config = yaml.safe_load(f) or {}
    for section in ("twitch", "collector", "orchestrator", "database", "logging"):
        config.setdefault(section, {})
    return config


def setup_logging(config: dict):
    logging.basicConfig(
        level=getattr(logging, str(config["logging"].get("level", "INFO")).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(config["logging"].get("file", "giveaways.log")),
            logging.StreamHandler()
        ]
    )


async def run_health_check(config: dict, identity: BotIdentity) -> bool:
    logger.info("=== Проверка бота розыгрышей ===")
    all_good = True

    for key in REQUIRED_TWITCH_KEYS:
        if config["twitch"].get(key):
            logger.info(f"✅ twitch.{key}: задан")
        else:
            logger.error(f"❌ twitch.{key}: отсутствует")
            all_good = False

    if all_good:
        bot_id = await identity.user_id()
        if bot_id:
            logger.info(f"✅ Аккаунт бота {identity.bot_nick}: user_id={bot_id}")
        else:
            logger.error(f"❌ Аккаунт бота {identity.bot_nick} не найден через Helix")
            all_good = False

    if all_good:
        logger.info("✅ Все проверки пройдены")
    else:
        logger.error("❌ Проверки не пройдены, смотри ошибки выше")
    return all_good


async def start_http(app: web.Application, host: str, port: int) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host=host, port=port)
    await site.start()
    logger.info(f"HTTP API запущен на {host}:{port}")
    return runner


async def run_collector(config: dict):
    section = config["collector"]
    identity = BotIdentity.from_config(config)
    await run_health_check(config, identity)

    bot = TwitchBot(config, identity)
    registry = GiveawayRegistry(
        chat=bot,
        webhooks=WebhookSender(secret=section.get("webhook_secret")),
        status_interval=float(section.get("status_interval_seconds", 30)),
        join_wait=float(section.get("join_wait_seconds", 10)),
    )
    runner = await start_http(
        build_collector_app(registry),
        section.get("host", "0.0.0.0"),
        int(section.get("port", 3001)),
    )
    try:
        await bot.start()
    finally:
        await runner.cleanup()
        await bot.close()


async def run_orchestrator(config: dict):
    section = config["orchestrator"]
    db = Database(config["database"].get("db_path", "giveaways.db"))
    await db.init()

    twitch = config["twitch"]
    helix = HelixClient(twitch.get("client_id"), twitch.get("client_secret"))
    identity = BotIdentity(helix, twitch.get("bot_nick"), twitch.get("bot_token"), twitch.get("bot_id"))
    public_url = str(section.get("public_url", "http://localhost:3000")).rstrip("/")
    orchestrator = Orchestrator(
        db=db,
        collector=CollectorClient(section.get("collector_url", "http://localhost:3001")),
        announcer=WinnerAnnouncer(identity),
        webhook_url=f"{public_url}/webhook",
    )
    runner = await start_http(
        build_orchestrator_app(orchestrator, section.get("webhook_secret"), section.get("api_key")),
        section.get("host", "0.0.0.0"),
        int(section.get("port", 3000)),
    )
    logger.info(f"Webhook URL: {orchestrator.webhook_url}")
    logger.info(f"Bot API: {orchestrator.collector.base_url}")
    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()


def main():
    parser = argparse.ArgumentParser(description="Twitch chat giveaways")
    parser.add_argument("service", choices=["collector", "orchestrator"], help="Service to run")
    parser.add_argument("--config", default="config.yaml", help="Path to config.yaml")
    args = parser.parse_args()

    config = load_config(args.config)
    setup_logging(config)

    runner = run_collector if args.service == "collector" else run_orchestrator
    try:
        asyncio.run(runner(config))
    except KeyboardInterrupt:
        logger.info("Остановлено пользователем.")


if __name__ == "__main__":
    main()
