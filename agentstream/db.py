import json
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

import aiosqlite


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
                CREATE TABLE IF NOT EXISTS wallets(
                    user_id TEXT PRIMARY KEY,
                    credits_balance REAL,
                    credits_used_this_month REAL DEFAULT 0,
                    credits_used_total REAL DEFAULT 0,
                    requests_this_month INTEGER DEFAULT 0,
                    current_plan TEXT,
                    subscription_status TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS usage_logs(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT,
                    request_id TEXT,
                    model TEXT,
                    credits_used REAL,
                    request_type TEXT,
                    endpoint TEXT,
                    tokens_used INTEGER,
                    prompt_tokens INTEGER,
                    completion_tokens INTEGER,
                    steps_count INTEGER,
                    response_time_ms INTEGER,
                    status TEXT,
                    error_message TEXT,
                    balance_after REAL,
                    metadata_json TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS transactions(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT,
                    amount REAL,
                    type TEXT,
                    description TEXT,
                    credits_before REAL,
                    credits_after REAL,
                    metadata_json TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS continuations(
                    token TEXT PRIMARY KEY,
                    user_id TEXT,
                    request_id TEXT,
                    state_json TEXT,
                    deferred_usage_json TEXT,
                    status TEXT,
                    created_at TEXT,
                    claimed_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_usage_logs_user ON usage_logs(user_id);
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> int:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(query, params)
            await db.commit()
            rowcount = cursor.rowcount
            await cursor.close()
            return rowcount

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


def json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except Exception:
        return default
