import logging
import random


logger = logging.getLogger("Lottery")

# Веса для новых профилей
DEFAULT_WEIGHTS = {
    "broadcaster": 1,
    "moderator": 5,
    "vip": 1,
    "t3": 1,
    "t2": 1,
    "t1": 1,
    "follower": 1,
    "viewer": 1,
}

# Что показываем в панели, если профиля ещё нет
SUGGESTED_WEIGHTS = {
    "broadcaster": 1000,
    "moderator": 500,
    "vip": 200,
    "t3": 150,
    "t2": 50,
    "t1": 10,
    "follower": 2,
    "viewer": 1,
}

TIER_KEYS = {"1000": "t1", "2000": "t2", "3000": "t3"}
BADGE_PRECEDENCE = ("broadcaster", "moderator", "vip")


def entry_category(entry: dict) -> str:
    """Weight key for one entry: sub tier first, then badges, else viewer."""
    sub_tier = entry.get("sub_tier")
    if sub_tier:
        key = TIER_KEYS.get(str(sub_tier))
        if key:
            return key
        # неизвестный тир ведём как viewer, бейджи не смотрим
        return "viewer"

    badges = entry.get("badges") or {}
    for badge in BADGE_PRECEDENCE:
        if badges.get(badge):
            return badge
    return "viewer"


def entry_weight(entry: dict, weights: dict | None) -> int:
    weights = weights or {}
    try:
        value = int(weights.get(entry_category(entry)) or 0)
    except (TypeError, ValueError):
        value = 0
    # 0 и "не настроено" считаются за 1 билет, отрицательные дают 0
    if value == 0:
        return 1
    return max(0, value)


def build_pool(entries: list[dict], weights: dict | None) -> list[str]:
    pool: list[str] = []
    for entry in entries:
        pool.extend([entry["username"]] * entry_weight(entry, weights))
    return pool


def pick_weighted_winner(entries: list[dict], weights: dict | None, rng: random.Random | None = None) -> str | None:
    """Draw one username with probability proportional to its weight.

    Returns None when the pool is empty (no entries, or every entrant
    weighted to zero).
    """
    pool = build_pool(entries or [], weights)
    if not pool:
        return None
    rng = rng or random
    winner = pool[rng.randrange(len(pool))]
    logger.info(f"Лотерея: пул {len(pool)} билетов, участников {len(entries)}, победитель {winner}")
    return winner
