import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite


TIER_LIMITS: Dict[str, Dict[str, int]] = {
    "free": {"free": 200, "premium": 20, "super_premium": 2},
    "premium": {"free": 1500, "premium": 600, "super_premium": 30},
    "admin": {"free": -1, "premium": -1, "super_premium": -1},
}
CREDIT_COLUMNS = {
    "free": "free_credits",
    "premium": "premium_credits",
    "super_premium": "super_premium_credits",
}


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS user_tiers(
                    user_id TEXT PRIMARY KEY,
                    tier TEXT NOT NULL,
                    free_credits INTEGER NOT NULL DEFAULT 0,
                    premium_credits INTEGER NOT NULL DEFAULT 0,
                    super_premium_credits INTEGER NOT NULL DEFAULT 0,
                    last_reset_at TEXT
                );
                CREATE TABLE IF NOT EXISTS user_prefs(
                    user_id TEXT PRIMARY KEY,
                    search_backend TEXT,
                    tavily_api_key TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS guest_usage(
                    anon_id TEXT PRIMARY KEY,
                    count INTEGER NOT NULL,
                    reset_at REAL NOT NULL
                );
                CREATE TABLE IF NOT EXISTS credit_transactions(
                    request_id TEXT PRIMARY KEY,
                    user_id TEXT,
                    model TEXT,
                    using_own_key INTEGER,
                    outcome TEXT,
                    late_outcome TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> int:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    # -- tiers -----------------------------------------------------------------

    async def init_user_tier(self, user_id: str, tier: str = "free") -> dict:
        limits = TIER_LIMITS[tier]
        await self.execute(
            "INSERT OR REPLACE INTO user_tiers(user_id, tier, free_credits, premium_credits, "
            "super_premium_credits, last_reset_at) VALUES (?,?,?,?,?,?)",
            (user_id, tier, limits["free"], limits["premium"], limits["super_premium"], utc_now()),
        )
        return await self.get_user_tier(user_id) or {}

    async def set_credits(self, user_id: str, model_class: str, credits: int) -> None:
        column = CREDIT_COLUMNS[model_class]
        await self.execute(f"UPDATE user_tiers SET {column}=? WHERE user_id=?", (credits, user_id))

    async def get_user_tier(self, user_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT user_id, tier, free_credits, premium_credits, super_premium_credits, last_reset_at "
            "FROM user_tiers WHERE user_id=?",
            (user_id,),
        )
        return dict(row) if row else None

    async def consume_credit(self, user_id: str, model_class: str) -> bool:
        """Debit one credit; a single conditional UPDATE keeps concurrent debits from losing updates."""
        column = CREDIT_COLUMNS[model_class]
        changed = await self.execute(
            f"UPDATE user_tiers SET {column}={column}-1 WHERE user_id=? AND tier!='admin' AND {column}>0",
            (user_id,),
        )
        return changed == 1

    # -- preferences -----------------------------------------------------------

    async def get_user_prefs(self, user_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT user_id, search_backend, tavily_api_key, updated_at FROM user_prefs WHERE user_id=?",
            (user_id,),
        )
        return dict(row) if row else None

    async def save_user_prefs(
        self,
        user_id: str,
        search_backend: Optional[str] = None,
        tavily_api_key: Optional[str] = None,
    ) -> None:
        await self.execute(
            "INSERT INTO user_prefs(user_id, search_backend, tavily_api_key, updated_at) VALUES (?,?,?,?) "
            "ON CONFLICT(user_id) DO UPDATE SET search_backend=excluded.search_backend, "
            "tavily_api_key=excluded.tavily_api_key, updated_at=excluded.updated_at",
            (user_id, search_backend, tavily_api_key, utc_now()),
        )

    # -- guest quota -----------------------------------------------------------

    async def hit_guest_usage(self, anon_id: str, max_messages: int, window_s: int) -> Dict[str, Any]:
        """Count one guest message inside a single write transaction.

        Returns ``{"allowed", "count", "reset_at"}``; a refused hit leaves the counter untouched.
        """
        now = time.time()
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute("SELECT count, reset_at FROM guest_usage WHERE anon_id=?", (anon_id,))
                row = await cursor.fetchone()
                await cursor.close()
                if not row or row["reset_at"] < now:
                    count, reset_at, allowed = 1, now + window_s, True
                elif row["count"] >= max_messages:
                    count, reset_at, allowed = row["count"], row["reset_at"], False
                else:
                    count, reset_at, allowed = row["count"] + 1, row["reset_at"], True
                if allowed:
                    await db.execute(
                        "INSERT INTO guest_usage(anon_id, count, reset_at) VALUES (?,?,?) "
                        "ON CONFLICT(anon_id) DO UPDATE SET count=excluded.count, reset_at=excluded.reset_at",
                        (anon_id, count, reset_at),
                    )
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
        return {"allowed": allowed, "count": count, "reset_at": reset_at}

    async def get_guest_usage(self, anon_id: str) -> Dict[str, Any]:
        row = await self.fetchone("SELECT count, reset_at FROM guest_usage WHERE anon_id=?", (anon_id,))
        if not row or row["reset_at"] < time.time():
            return {"count": 0, "reset_at": None}
        return {"count": row["count"], "reset_at": row["reset_at"]}

    # -- credit transactions ---------------------------------------------------

    async def record_credit_transaction(
        self,
        request_id: str,
        user_id: Optional[str],
        model: str,
        using_own_key: bool,
        outcome: str,
    ) -> bool:
        changed = await self.execute(
            "INSERT OR IGNORE INTO credit_transactions(request_id, user_id, model, using_own_key, outcome, "
            "created_at, updated_at) VALUES (?,?,?,?,?,?,?)",
            (request_id, user_id, model, int(using_own_key), outcome, utc_now(), utc_now()),
        )
        return changed == 1

    async def record_late_outcome(self, request_id: str, late_outcome: str) -> bool:
        changed = await self.execute(
            "UPDATE credit_transactions SET late_outcome=?, updated_at=? "
            "WHERE request_id=? AND late_outcome IS NULL",
            (late_outcome, utc_now(), request_id),
        )
        return changed == 1

    async def get_credit_transaction(self, request_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT request_id, user_id, model, using_own_key, outcome, late_outcome "
            "FROM credit_transactions WHERE request_id=?",
            (request_id,),
        )
        return dict(row) if row else None
