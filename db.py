import json
import logging

import aiosqlite

from lottery import DEFAULT_WEIGHTS


logger = logging.getLogger("Database")

PROFILE_COLUMNS = (
    "broadcaster_id",
    "broadcaster_name",
    "access_token",
    "is_looping",
    "current_prize",
    "current_command",
    "current_duration",
    "current_message",
    "active_giveaway_id",
    "weights",
)


class Database:
    """Durable per-broadcaster giveaway profiles."""

    def __init__(self, db_path):
        self.db_path = db_path

    async def init(self):
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute('''
                CREATE TABLE IF NOT EXISTS broadcaster_profiles (
                    broadcaster_id TEXT PRIMARY KEY,
                    broadcaster_name TEXT,
                    access_token TEXT,
                    is_looping INTEGER DEFAULT 0,
                    current_prize TEXT,
                    current_command TEXT,
                    current_duration INTEGER,
                    current_message TEXT,
                    active_giveaway_id TEXT,
                    weights TEXT
                )
            ''')

            await db.commit()
            logger.info("Database initialized.")

    @staticmethod
    def _row_to_profile(row) -> dict:
        profile = dict(zip(PROFILE_COLUMNS, row))
        profile["is_looping"] = bool(profile["is_looping"])
        weights = dict(DEFAULT_WEIGHTS)
        if profile["weights"]:
            weights.update(json.loads(profile["weights"]))
        profile["weights"] = weights
        return profile

    async def get_profile(self, broadcaster_id: str) -> dict | None:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"SELECT {', '.join(PROFILE_COLUMNS)} FROM broadcaster_profiles WHERE broadcaster_id = ?",
                (str(broadcaster_id),),
            ) as cursor:
                row = await cursor.fetchone()
                return self._row_to_profile(row) if row else None

    async def ensure_profile(self, db, broadcaster_id: str):
        await db.execute(
            "INSERT OR IGNORE INTO broadcaster_profiles (broadcaster_id, weights) VALUES (?, ?)",
            (str(broadcaster_id), json.dumps(DEFAULT_WEIGHTS)),
        )

    async def _update(self, broadcaster_id: str, **fields):
        assignments = ", ".join(f"{name} = ?" for name in fields)
        async with aiosqlite.connect(self.db_path) as db:
            await self.ensure_profile(db, broadcaster_id)
            await db.execute(
                f"UPDATE broadcaster_profiles SET {assignments} WHERE broadcaster_id = ?",
                (*fields.values(), str(broadcaster_id)),
            )
            await db.commit()

    async def upsert_broadcaster(self, broadcaster_id: str, broadcaster_name: str | None = None, access_token: str | None = None):
        fields = {}
        if broadcaster_name:
            fields["broadcaster_name"] = broadcaster_name.lower()
        if access_token:
            fields["access_token"] = access_token
        if fields:
            await self._update(broadcaster_id, **fields)
        else:
            async with aiosqlite.connect(self.db_path) as db:
                await self.ensure_profile(db, broadcaster_id)
                await db.commit()

    async def save_giveaway_config(self, broadcaster_id: str, *, is_looping: bool, prize: str | None,
                                   command: str, duration: int, message: str | None):
        await self._update(
            broadcaster_id,
            is_looping=1 if is_looping else 0,
            current_prize=prize,
            current_command=command,
            current_duration=duration,
            current_message=message,
        )

    async def set_active_giveaway(self, broadcaster_id: str, giveaway_id: str | None):
        await self._update(broadcaster_id, active_giveaway_id=giveaway_id)

    async def clear_active_giveaway(self, broadcaster_id: str):
        await self.set_active_giveaway(broadcaster_id, None)

    async def set_looping(self, broadcaster_id: str, is_looping: bool):
        await self._update(broadcaster_id, is_looping=1 if is_looping else 0)

    async def save_weights(self, broadcaster_id: str, weights: dict) -> dict:
        cleaned = {}
        for key, value in (weights or {}).items():
            if key not in DEFAULT_WEIGHTS:
                continue
            cleaned[key] = max(0, int(value))
        await self._update(broadcaster_id, weights=json.dumps(cleaned))
        profile = await self.get_profile(broadcaster_id)
        return profile["weights"]

    async def list_profiles(self) -> list[dict]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"SELECT {', '.join(PROFILE_COLUMNS)} FROM broadcaster_profiles ORDER BY broadcaster_id"
            ) as cursor:
                rows = await cursor.fetchall()
                return [self._row_to_profile(row) for row in rows]
