import logging
from typing import Any, Dict, Optional

import aiosqlite

from .db import Database, json_dumps, utc_now
from .pricing import (
    MAX_REQUESTS_PER_MONTH,
    MONTHLY_CREDITS_PER_PLAN,
    calculate_credits_from_tokens,
    plan_value,
)
from .schemas import DeductionResult, Usage, WalletBalance

logger = logging.getLogger("uvicorn.error")


def _wallet_from_row(row: aiosqlite.Row) -> WalletBalance:
    return WalletBalance(
        user_id=row["user_id"],
        credits_balance=float(row["credits_balance"] or 0),
        credits_used_this_month=float(row["credits_used_this_month"] or 0),
        credits_used_total=float(row["credits_used_total"] or 0),
        requests_this_month=int(row["requests_this_month"] or 0),
        current_plan=row["current_plan"] or "free",
        subscription_status=row["subscription_status"] or "inactive",
    )


class CreditLedger:
    """Wallet balances and the append-only usage log."""

    def __init__(self, db: Database):
        self.db = db

    async def get_wallet(self, user_id: str) -> Optional[WalletBalance]:
        if not user_id:
            return None
        row = await self.db.fetchone("SELECT * FROM wallets WHERE user_id=?", (user_id,))
        if row:
            return _wallet_from_row(row)
        # First sight of a user: open a free wallet with the monthly grant.
        now = utc_now()
        await self.db.execute(
            "INSERT OR IGNORE INTO wallets(user_id, credits_balance, credits_used_this_month, credits_used_total, "
            "requests_this_month, current_plan, subscription_status, created_at, updated_at) VALUES (?,?,?,?,?,?,?,?,?)",
            (user_id, float(MONTHLY_CREDITS_PER_PLAN["free"]), 0.0, 0.0, 0, "free", "inactive", now, now),
        )
        row = await self.db.fetchone("SELECT * FROM wallets WHERE user_id=?", (user_id,))
        return _wallet_from_row(row) if row else None

    async def set_plan(self, user_id: str, plan: str, subscription_status: str = "active") -> None:
        await self.get_wallet(user_id)
        await self.db.execute(
            "UPDATE wallets SET current_plan=?, subscription_status=?, updated_at=? WHERE user_id=?",
            (plan, subscription_status, utc_now(), user_id),
        )

    async def check_monthly_request_limit(self, user_id: str) -> Dict[str, Any]:
        wallet = await self.get_wallet(user_id)
        if not wallet:
            return {"allowed": False, "requests_used": 0, "requests_limit": 0, "reason": "Wallet not found"}
        limit = plan_value(MAX_REQUESTS_PER_MONTH, wallet.current_plan)
        used = wallet.requests_this_month
        if used >= limit:
            if wallet.current_plan == "free":
                reason = f"Monthly request limit reached ({limit} requests). Upgrade to a paid plan for more requests."
            else:
                reason = (
                    f"Monthly request limit reached ({limit} requests). "
                    "Your limit resets next month, or upgrade your plan for more."
                )
            return {"allowed": False, "requests_used": used, "requests_limit": limit, "reason": reason}
        return {"allowed": True, "requests_used": used, "requests_limit": limit}

    async def deduct(self, user_id: str, tokens: Usage, metadata: Dict[str, Any]) -> DeductionResult:
        """Charge one request's token usage and append its ledger entry."""
        if not user_id:
            return DeductionResult(success=False, error="Missing user id", error_code="INVALID_USER")
        model = str(metadata.get("model") or "unknown")
        credits = calculate_credits_from_tokens(tokens.input_tokens, tokens.output_tokens, model)
        wallet = await self.get_wallet(user_id)
        if not wallet:
            return DeductionResult(success=False, error="Wallet not found", error_code="NO_WALLET")
        now = utc_now()
        try:
            async with aiosqlite.connect(self.db.path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "UPDATE wallets SET credits_balance=credits_balance-?, "
                    "credits_used_this_month=credits_used_this_month+?, credits_used_total=credits_used_total+?, "
                    "requests_this_month=requests_this_month+1, updated_at=? "
                    "WHERE user_id=? AND credits_balance>=?",
                    (credits, credits, credits, now, user_id, credits),
                )
                updated = cursor.rowcount
                await cursor.close()
                if not updated:
                    await db.rollback()
                    return DeductionResult(
                        success=False,
                        new_balance=wallet.credits_balance,
                        error=f"Insufficient credits. Required: {credits}, Available: {wallet.credits_balance}",
                        error_code="INSUFFICIENT_CREDITS",
                    )
                cursor = await db.execute("SELECT credits_balance FROM wallets WHERE user_id=?", (user_id,))
                row = await cursor.fetchone()
                await cursor.close()
                new_balance = float(row["credits_balance"]) if row else 0.0
                extra = {
                    "usage_source": metadata.get("usage_source"),
                    "fallback_used": metadata.get("fallback_used", False),
                    "continuation_chain": metadata.get("continuation_chain", False),
                    "credits_calculated": credits,
                }
                await db.execute(
                    "INSERT INTO usage_logs(user_id, request_id, model, credits_used, request_type, endpoint, tokens_used, "
                    "prompt_tokens, completion_tokens, steps_count, response_time_ms, status, error_message, balance_after, "
                    "metadata_json, created_at) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                    (
                        user_id,
                        metadata.get("request_id") or "",
                        model,
                        credits,
                        metadata.get("request_type") or "chat",
                        metadata.get("endpoint") or "/api/chat",
                        tokens.input_tokens + tokens.output_tokens,
                        tokens.input_tokens,
                        tokens.output_tokens,
                        int(metadata.get("steps") or 0),
                        int(metadata.get("response_time_ms") or 0),
                        metadata.get("status") or "success",
                        metadata.get("error_message"),
                        new_balance,
                        json_dumps(extra),
                        now,
                    ),
                )
                await db.execute(
                    "INSERT INTO transactions(user_id, amount, type, description, credits_before, credits_after, "
                    "metadata_json, created_at) VALUES (?,?,?,?,?,?,?,?)",
                    (
                        user_id,
                        -credits,
                        "usage",
                        f"{(metadata.get('request_type') or 'chat').capitalize()} request - {model} model",
                        new_balance + credits,
                        new_balance,
                        json_dumps(extra),
                        now,
                    ),
                )
                await db.commit()
        except aiosqlite.Error as exc:
            logger.warning("Ledger write failed for user %s: %s", user_id, exc)
            return DeductionResult(
                success=False,
                new_balance=wallet.credits_balance,
                error="Failed to deduct credits",
                error_code="DATABASE_ERROR",
            )
        logger.info(
            "Deducted %s credits from %s (%s in + %s out tokens, %s steps, model %s)",
            credits,
            user_id,
            tokens.input_tokens,
            tokens.output_tokens,
            metadata.get("steps") or 0,
            model,
        )
        return DeductionResult(success=True, credits_used=credits, new_balance=new_balance)

    async def add_credits(self, user_id: str, credits: float, kind: str, description: str) -> bool:
        wallet = await self.get_wallet(user_id)
        if not wallet:
            return False
        now = utc_now()
        try:
            async with aiosqlite.connect(self.db.path) as db:
                db.row_factory = aiosqlite.Row
                await db.execute(
                    "UPDATE wallets SET credits_balance=credits_balance+?, updated_at=? WHERE user_id=?",
                    (credits, now, user_id),
                )
                cursor = await db.execute("SELECT credits_balance FROM wallets WHERE user_id=?", (user_id,))
                row = await cursor.fetchone()
                await cursor.close()
                after = float(row["credits_balance"]) if row else wallet.credits_balance + credits
                await db.execute(
                    "INSERT INTO transactions(user_id, amount, type, description, credits_before, credits_after, "
                    "metadata_json, created_at) VALUES (?,?,?,?,?,?,?,?)",
                    (user_id, credits, kind, description, after - credits, after, json_dumps({}), now),
                )
                await db.commit()
        except aiosqlite.Error as exc:
            logger.warning("Credit grant for user %s failed: %s", user_id, exc)
            return False
        logger.info("Added %s credits to %s (%s)", credits, user_id, kind)
        return True

    async def list_entries(self, user_id: str, limit: int = 50) -> list[dict]:
        rows = await self.db.fetchall(
            "SELECT request_id, model, credits_used, prompt_tokens, completion_tokens, steps_count, response_time_ms, "
            "status, balance_after, created_at FROM usage_logs WHERE user_id=? ORDER BY id DESC LIMIT ?",
            (user_id, limit),
        )
        return [dict(row) for row in rows]

    async def get_usage_stats(self, user_id: str) -> Dict[str, Any]:
        rows = await self.db.fetchall(
            "SELECT model, credits_used FROM usage_logs WHERE user_id=?",
            (user_id,),
        )
        total = sum(float(row["credits_used"] or 0) for row in rows)
        breakdown: Dict[str, float] = {}
        for row in rows:
            model = row["model"] or "unknown"
            breakdown[model] = breakdown.get(model, 0.0) + float(row["credits_used"] or 0)
        return {
            "total_credits_used": total,
            "total_requests": len(rows),
            "avg_credits_per_request": total / len(rows) if rows else 0.0,
            "model_breakdown": breakdown,
        }
