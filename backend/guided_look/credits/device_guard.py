"""Per-device cap on bonus-credit claims.

Accounts are cheap to create, so reward claims are counted against a
fingerprint of the device instead of the account.  Linked account ids are
kept only to make multi-account devices visible in logs; they never block
a claim on their own.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Mapping, Protocol

from .ledger import Clock, period_key_for, utc_now


logger = logging.getLogger("guided-look")

MAX_REWARDS_PER_DEVICE_PER_PERIOD = 2

FINGERPRINT_TRAITS = (
    "user_agent",
    "accept_language",
    "platform",
    "timezone",
    "screen",
    "client_hint",
)


def derive_device_fingerprint(traits: Mapping[str, object], salt: str = "") -> str:
    """Hash the stable traits of a device into a 64-char hex identifier.

    Unknown trait names are ignored and missing ones hash as empty, so the
    same browser produces the same id regardless of which optional hints
    it sent first.
    """
    parts = [salt]
    for name in FINGERPRINT_TRAITS:
        value = " ".join(str(traits.get(name) or "").split()).lower()
        parts.append(f"{name}={value}")
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def is_device_id(value: str | None) -> bool:
    if not value or len(value) != 64:
        return False
    return all(char in "0123456789abcdef" for char in value)


@dataclass(frozen=True)
class DeviceRewardEntry:
    device_id: str
    period_key: str
    rewards_claimed: int = 0
    linked_account_ids: tuple[str, ...] = field(default_factory=tuple)
    updated_at: datetime | None = None


@dataclass(frozen=True)
class RewardDecision:
    allowed: bool
    reason: str | None = None
    claims_this_period: int = 0


class RewardLimitReached(Exception):
    """Raised when a device already used up its claims for the period."""


class DeviceRewardStore(Protocol):
    async def read(self, device_id: str) -> DeviceRewardEntry | None:
        ...

    async def write(self, entry: DeviceRewardEntry) -> None:
        ...


class InMemoryDeviceRewardStore:
    def __init__(self) -> None:
        self.entries: dict[str, DeviceRewardEntry] = {}

    async def read(self, device_id: str) -> DeviceRewardEntry | None:
        return self.entries.get(device_id)

    async def write(self, entry: DeviceRewardEntry) -> None:
        self.entries[entry.device_id] = entry


class DeviceRewardGuard:
    def __init__(
        self,
        store: DeviceRewardStore,
        device_id: str,
        *,
        max_per_period: int = MAX_REWARDS_PER_DEVICE_PER_PERIOD,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.device_id = device_id
        self.max_per_period = max_per_period
        self.clock = clock

    async def _current_entry(self) -> DeviceRewardEntry:
        period = period_key_for(self.clock())
        entry = await self.store.read(self.device_id)
        if entry is None or entry.period_key != period:
            # Linked accounts survive the rollover; only the claim count resets.
            linked = entry.linked_account_ids if entry else ()
            return DeviceRewardEntry(device_id=self.device_id, period_key=period, linked_account_ids=linked)
        return entry

    async def can_claim_reward(self) -> RewardDecision:
        entry = await self._current_entry()
        if entry.rewards_claimed >= self.max_per_period:
            return RewardDecision(
                allowed=False,
                reason="device_limit_reached",
                claims_this_period=entry.rewards_claimed,
            )
        return RewardDecision(allowed=True, claims_this_period=entry.rewards_claimed)

    async def record_claim(self, account_id: str | None = None) -> DeviceRewardEntry:
        entry = await self._current_entry()
        if entry.rewards_claimed >= self.max_per_period:
            raise RewardLimitReached(self.device_id)
        linked = entry.linked_account_ids
        if account_id and account_id not in linked:
            linked = linked + (account_id,)
            if len(linked) > 1:
                logger.warning(
                    "Device %s has claimed rewards from %d accounts", self.device_id[:12], len(linked)
                )
        updated = replace(
            entry,
            rewards_claimed=entry.rewards_claimed + 1,
            linked_account_ids=linked,
            updated_at=self.clock(),
        )
        await self.store.write(updated)
        return updated
