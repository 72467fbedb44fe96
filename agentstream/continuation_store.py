from typing import Optional, Tuple

import aiosqlite

from .db import json_dumps, json_loads, utc_now
from .schemas import ContinuationState, DeferredUsage


class ContinuationStore:
    """Server-side copy of emitted continuation states, keyed by correlation token."""

    def __init__(self, path: str):
        self.path = path

    async def save(self, state: ContinuationState, deferred: DeferredUsage) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT INTO continuations(token, user_id, request_id, state_json, deferred_usage_json, status, "
                "created_at, claimed_at) VALUES (?,?,?,?,?,?,?,?)",
                (
                    state.token,
                    state.user_id,
                    state.request_id,
                    json_dumps(state.model_dump()),
                    json_dumps(deferred.model_dump()),
                    "pending",
                    utc_now(),
                    None,
                ),
            )
            await db.commit()

    async def get(self, token: str) -> Optional[Tuple[ContinuationState, DeferredUsage, str]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT state_json, deferred_usage_json, status FROM continuations WHERE token=?",
                (token,),
            )
            row = await cursor.fetchone()
            await cursor.close()
        if not row:
            return None
        state = ContinuationState.model_validate(json_loads(row["state_json"], {}))
        deferred = DeferredUsage.model_validate(json_loads(row["deferred_usage_json"], {}))
        return state, deferred, row["status"]

    async def claim(self, token: str) -> bool:
        """Mark a pending token as used. Only the first caller gets True."""
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "UPDATE continuations SET status=?, claimed_at=? WHERE token=? AND status='pending'",
                ("claimed", utc_now(), token),
            )
            claimed = cursor.rowcount
            await cursor.close()
            await db.commit()
        return bool(claimed)
