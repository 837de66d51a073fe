"""Budget Ledger — per-provider LLM spend with daily and period limits.

A job may launch only if its estimated cost fits what is left of both
the provider's daily and period budgets. The ledger is reset at local
midnight (configured timezone); the period budget resets when the
calendar month changes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

import structlog

from research_brain.shell.clock import Clock, from_db, to_db
from research_brain.shell.database import Database

if TYPE_CHECKING:
    from research_brain.shell.config import BudgetConfig

log = structlog.get_logger()

BUDGET_EXCEEDED = "budget exceeded"


@dataclass
class BudgetCheck:
    passed: bool
    reason: str


class BudgetLedger:
    def __init__(self, db: Database, clock: Clock, tz_name: str = "UTC") -> None:
        self._db = db
        self._clock = clock
        self._tz = ZoneInfo(tz_name)

    def local_date(self, dt: datetime) -> date:
        return dt.astimezone(self._tz).date()

    async def seed(self, budgets: dict[str, BudgetConfig]) -> None:
        """Create or update provider limits from config. Spend counters are preserved; the caller commits."""
        now_s = to_db(self._clock.now())
        for provider, budget in budgets.items():
            await self._db.execute(
                """INSERT INTO llm_budgets (provider, daily_budget, used_today, period_budget, used_period, last_reset_at)
                   VALUES (?, ?, 0, ?, 0, ?)
                   ON CONFLICT(provider) DO UPDATE SET
                       daily_budget = excluded.daily_budget,
                       period_budget = excluded.period_budget""",
                (provider, budget.daily_budget_usd, budget.period_budget_usd, now_s),
            )
        log.info("budget.seeded", providers=list(budgets))

    async def get(self, provider: str) -> dict | None:
        return await self._db.fetchone("SELECT * FROM llm_budgets WHERE provider = ?", (provider,))

    async def all(self) -> list[dict]:
        return await self._db.fetchall("SELECT * FROM llm_budgets ORDER BY provider")

    async def check(self, provider: str, estimated_cost: float) -> BudgetCheck:
        """Can a job with this estimated cost launch on this provider now?"""
        row = await self.get(provider)
        if row is None:
            return BudgetCheck(True, "no budget configured")

        if row["used_today"] >= row["daily_budget"]:
            return BudgetCheck(False, f"{provider} daily budget exhausted (${row['used_today']:.2f}/${row['daily_budget']:.2f})")
        if row["used_today"] + estimated_cost > row["daily_budget"]:
            return BudgetCheck(False, f"estimate ${estimated_cost:.2f} exceeds {provider} daily headroom "
                                      f"${row['daily_budget'] - row['used_today']:.2f}")
        if row["used_period"] >= row["period_budget"]:
            return BudgetCheck(False, f"{provider} period budget exhausted (${row['used_period']:.2f}/${row['period_budget']:.2f})")
        if row["used_period"] + estimated_cost > row["period_budget"]:
            return BudgetCheck(False, f"estimate ${estimated_cost:.2f} exceeds {provider} period headroom "
                                      f"${row['period_budget'] - row['used_period']:.2f}")
        return BudgetCheck(True, "ok")

    async def record_spend(self, provider: str, cost_usd: float) -> None:
        """Add reported spend to the provider's counters. Caller commits."""
        cost = max(0.0, cost_usd or 0.0)
        cursor = await self._db.execute(
            "UPDATE llm_budgets SET used_today = used_today + ?, used_period = used_period + ? WHERE provider = ?",
            (cost, cost, provider),
        )
        if cursor.rowcount == 0:
            log.debug("budget.untracked_provider", provider=provider, cost=cost)

    async def quota_snapshot(self) -> dict:
        """Remaining daily/period amounts per provider."""
        snapshot = {}
        for row in await self.all():
            snapshot[row["provider"]] = {
                "daily_remaining": round(max(0.0, row["daily_budget"] - row["used_today"]), 6),
                "period_remaining": round(max(0.0, row["period_budget"] - row["used_period"]), 6),
                "used_today": round(row["used_today"], 6),
                "used_period": round(row["used_period"], 6),
            }
        return snapshot

    async def reset_if_due(self, now: datetime | None = None) -> list[str]:
        """Zero daily (and on month change, period) spend once per local day. Caller commits."""
        now = now or self._clock.now()
        today = self.local_date(now)
        reset = []
        for row in await self.all():
            last = from_db(row["last_reset_at"])
            last_date = self.local_date(last) if last else None
            if last_date == today:
                continue
            new_period = last_date is None or (last_date.year, last_date.month) != (today.year, today.month)
            if new_period:
                await self._db.execute(
                    "UPDATE llm_budgets SET used_today = 0, used_period = 0, last_reset_at = ? WHERE provider = ?",
                    (to_db(now), row["provider"]),
                )
            else:
                await self._db.execute(
                    "UPDATE llm_budgets SET used_today = 0, last_reset_at = ? WHERE provider = ?",
                    (to_db(now), row["provider"]),
                )
            reset.append(row["provider"])
            log.info("budget.daily_reset", provider=row["provider"], period_reset=new_period)
        return reset
