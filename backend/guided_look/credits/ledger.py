"""Monthly credit ledger.

One ledger entry per user tracks how many AI credits were consumed in the
current billing month.  Storage is injected through ``CreditLedgerStore``
so the same ledger logic runs against the database on the server, an
in-memory dict in tests, and local key/value storage in the client
mirror.  A stale ``period_key`` is rolled over on the next read.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Literal, Mapping, Protocol

from ..settings import DEFAULT_TIER_LIMITS


logger = logging.getLogger("guided-look")

Tier = Literal["free", "pro", "premium"]
TIERS: tuple[str, ...] = ("free", "pro", "premium")
UNLIMITED = -1

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def period_key_for(moment: datetime) -> str:
    """Billing period identifier (``YYYY-MM``) for a moment in time."""
    return f"{moment.year:04d}-{moment.month:02d}"


def days_until_reset(moment: datetime) -> int:
    if moment.month == 12:
        next_period = moment.replace(year=moment.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    else:
        next_period = moment.replace(month=moment.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return math.ceil((next_period - moment).total_seconds() / 86400)


def normalize_tier(value: object) -> str:
    text = str(value or "").strip().lower()
    return text if text in TIERS else "free"


@dataclass(frozen=True)
class LedgerEntry:
    tier: str
    period_key: str
    used: int
    updated_at: datetime


@dataclass(frozen=True)
class CreditStatus:
    tier: str
    used: int
    limit: int
    remaining: int
    percent_used: float
    can_use: bool
    days_until_reset: int


class CreditLedgerStore(Protocol):
    async def read(self, key: str) -> LedgerEntry | None:
        ...

    async def write(self, key: str, entry: LedgerEntry) -> None:
        ...


class InMemoryCreditLedgerStore:
    """Dictionary-backed store for tests and single-process tools."""

    def __init__(self) -> None:
        self.entries: dict[str, LedgerEntry] = {}
        self.writes = 0

    async def read(self, key: str) -> LedgerEntry | None:
        return self.entries.get(key)

    async def write(self, key: str, entry: LedgerEntry) -> None:
        self.entries[key] = entry
        self.writes += 1


class CreditLedger:
    """Credit counter of one user for the current billing period.

    ``used`` only grows through ``consume``; the only ways down are
    ``grant_bonus`` (floored at zero) and the explicit ``reset``.
    """

    def __init__(
        self,
        store: CreditLedgerStore,
        key: str,
        *,
        tier: str | None = None,
        tier_limits: Mapping[str, int] | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.key = key
        self.default_tier = normalize_tier(tier) if tier else None
        self.tier_limits = dict(tier_limits or DEFAULT_TIER_LIMITS)
        self.clock = clock

    def limit_for(self, tier: str) -> int:
        return self.tier_limits.get(normalize_tier(tier), self.tier_limits["free"])

    async def _current_entry(self) -> LedgerEntry:
        now = self.clock()
        period = period_key_for(now)
        entry = await self.store.read(self.key)
        if entry is None:
            return LedgerEntry(tier=self.default_tier or "free", period_key=period, used=0, updated_at=now)
        if entry.period_key != period:
            logger.info("Rolling credit ledger %s over from %s to %s", self.key, entry.period_key, period)
            rolled = LedgerEntry(tier=entry.tier, period_key=period, used=0, updated_at=now)
            await self.store.write(self.key, rolled)
            entry = rolled
        if self.default_tier and entry.tier != self.default_tier:
            entry = replace(entry, tier=self.default_tier)
        return entry

    def _status_for(self, entry: LedgerEntry, tier: str) -> CreditStatus:
        limit = self.limit_for(tier)
        if limit == UNLIMITED:
            remaining = UNLIMITED
            percent_used = 0.0
        else:
            remaining = max(0, limit - entry.used)
            percent_used = min(100.0, (entry.used / limit) * 100) if limit else 100.0
        return CreditStatus(
            tier=normalize_tier(tier),
            used=entry.used,
            limit=limit,
            remaining=remaining,
            percent_used=percent_used,
            can_use=limit == UNLIMITED or entry.used < limit,
            days_until_reset=days_until_reset(self.clock()),
        )

    async def get_status(self, tier: str | None = None) -> CreditStatus:
        entry = await self._current_entry()
        return self._status_for(entry, tier or entry.tier)

    async def can_spend(self, amount: int) -> bool:
        status = await self.get_status()
        return status.limit == UNLIMITED or status.remaining >= amount

    async def consume(self, amount: int) -> bool:
        """Debit ``amount`` credits; returns False without mutating when short."""
        if amount <= 0:
            raise ValueError("amount must be positive")
        entry = await self._current_entry()
        status = self._status_for(entry, entry.tier)
        if status.limit != UNLIMITED and status.remaining < amount:
            logger.warning(
                "Not enough credits for %s: need %s, have %s", self.key, amount, status.remaining
            )
            return False
        await self.store.write(
            self.key, replace(entry, used=entry.used + amount, updated_at=self.clock())
        )
        return True

    async def grant_bonus(self, amount: int) -> CreditStatus:
        if amount <= 0:
            raise ValueError("amount must be positive")
        entry = await self._current_entry()
        updated = replace(entry, used=max(0, entry.used - amount), updated_at=self.clock())
        await self.store.write(self.key, updated)
        return self._status_for(updated, updated.tier)

    async def reset(self) -> CreditStatus:
        entry = await self._current_entry()
        updated = replace(entry, used=0, updated_at=self.clock())
        await self.store.write(self.key, updated)
        return self._status_for(updated, updated.tier)

    async def set_tier(self, tier: str) -> CreditStatus:
        entry = await self._current_entry()
        updated = replace(entry, tier=normalize_tier(tier), updated_at=self.clock())
        self.default_tier = updated.tier
        await self.store.write(self.key, updated)
        return self._status_for(updated, updated.tier)
