"""Client-held state: credit mirror, device id and tier.

Everything is stored as JSON strings in a small key/value storage.  Credit
and reward records are namespaced by billing period (``YYYY-MM``); records
of an older period are dropped on the next write.
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Protocol

from .credits.device_guard import DeviceRewardEntry, derive_device_fingerprint, is_device_id
from .credits.ledger import Clock, CreditLedger, LedgerEntry, normalize_tier, period_key_for, utc_now


logger = logging.getLogger("guided-look")

KEY_PREFIX = "guided-look"
CREDITS_KEY_PREFIX = f"{KEY_PREFIX}:credits:"
DEVICE_REWARDS_KEY_PREFIX = f"{KEY_PREFIX}:device-rewards:"
DEVICE_ID_KEY = f"{KEY_PREFIX}:device-id"
TIER_KEY = f"{KEY_PREFIX}:tier"


class KeyValueStorage(Protocol):
    def get(self, key: str) -> str | None:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...

    def keys(self) -> list[str]:
        ...


class InMemoryKeyValueStorage:
    def __init__(self, initial: Mapping[str, str] | None = None) -> None:
        self.data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def remove(self, key: str) -> None:
        self.data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self.data)


class JsonFileKeyValueStorage:
    """Keeps all keys in one JSON object on disk, rewritten on every change."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable local state file %s", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _dump(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")

    def get(self, key: str) -> str | None:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._dump(data)

    def remove(self, key: str) -> None:
        data = self._load()
        if data.pop(key, None) is not None:
            self._dump(data)

    def keys(self) -> list[str]:
        return list(self._load())


def _read_json(storage: KeyValueStorage, key: str) -> dict[str, Any] | None:
    raw = storage.get(key)
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Dropping corrupt local record %s", key)
        storage.remove(key)
        return None
    return value if isinstance(value, dict) else None


def _drop_stale(storage: KeyValueStorage, prefix: str, current_key: str) -> None:
    for key in storage.keys():
        if key.startswith(prefix) and key != current_key:
            storage.remove(key)


class KeyValueCreditLedgerStore:
    """``CreditLedgerStore`` over local storage, one record per billing period."""

    def __init__(self, storage: KeyValueStorage, *, clock: Clock = utc_now) -> None:
        self.storage = storage
        self.clock = clock

    async def read(self, key: str) -> LedgerEntry | None:
        record = _read_json(self.storage, CREDITS_KEY_PREFIX + period_key_for(self.clock()))
        if record is None or record.get("account") != key:
            return None
        return LedgerEntry(
            tier=normalize_tier(record.get("tier")),
            period_key=str(record["periodKey"]),
            used=max(0, int(record.get("used", 0))),
            updated_at=datetime.fromisoformat(record["updatedAt"]),
        )

    async def write(self, key: str, entry: LedgerEntry) -> None:
        storage_key = CREDITS_KEY_PREFIX + entry.period_key
        record = {
            "account": key,
            "tier": entry.tier,
            "periodKey": entry.period_key,
            "used": entry.used,
            "updatedAt": entry.updated_at.isoformat(),
        }
        self.storage.set(storage_key, json.dumps(record))
        _drop_stale(self.storage, CREDITS_KEY_PREFIX, storage_key)


class KeyValueDeviceRewardStore:
    def __init__(self, storage: KeyValueStorage, *, clock: Clock = utc_now) -> None:
        self.storage = storage
        self.clock = clock

    async def read(self, device_id: str) -> DeviceRewardEntry | None:
        record = _read_json(self.storage, DEVICE_REWARDS_KEY_PREFIX + period_key_for(self.clock()))
        if record is None or record.get("deviceId") != device_id:
            return None
        return DeviceRewardEntry(
            device_id=device_id,
            period_key=str(record["periodKey"]),
            rewards_claimed=int(record.get("rewardsClaimed", 0)),
            linked_account_ids=tuple(record.get("linkedAccountIds") or ()),
        )

    async def write(self, entry: DeviceRewardEntry) -> None:
        storage_key = DEVICE_REWARDS_KEY_PREFIX + entry.period_key
        record = {
            "deviceId": entry.device_id,
            "periodKey": entry.period_key,
            "rewardsClaimed": entry.rewards_claimed,
            "linkedAccountIds": list(entry.linked_account_ids),
        }
        self.storage.set(storage_key, json.dumps(record))
        _drop_stale(self.storage, DEVICE_REWARDS_KEY_PREFIX, storage_key)


def load_or_create_device_id(storage: KeyValueStorage, traits: Mapping[str, object], salt: str = "") -> str:
    stored = storage.get(DEVICE_ID_KEY)
    if is_device_id(stored):
        return stored
    device_id = derive_device_fingerprint(traits, salt=salt)
    storage.set(DEVICE_ID_KEY, device_id)
    return device_id


def read_tier(storage: KeyValueStorage) -> str:
    return normalize_tier(storage.get(TIER_KEY))


def write_tier(storage: KeyValueStorage, tier: str) -> str:
    normalized = normalize_tier(tier)
    storage.set(TIER_KEY, normalized)
    return normalized


class LocalCreditMirror:
    """Local copy of the ledger that only follows server-confirmed charges."""

    def __init__(self, storage: KeyValueStorage, account_id: str, *, clock: Clock = utc_now) -> None:
        self.storage = storage
        self.account_id = account_id
        self.store = KeyValueCreditLedgerStore(storage, clock=clock)
        self.ledger = CreditLedger(self.store, account_id, tier=read_tier(storage), clock=clock)
        self.clock = clock

    async def record_charge(self, credits_used: int) -> bool:
        if credits_used <= 0:
            return False
        return await self.ledger.consume(credits_used)

    async def sync(self, server_status: Mapping[str, Any]) -> None:
        """Adopt the server's view of tier and usage for the current period."""
        tier = write_tier(self.storage, str(server_status.get("tier") or "free"))
        self.ledger.default_tier = tier
        now = self.clock()
        entry = await self.store.read(self.account_id) or LedgerEntry(
            tier=tier, period_key=period_key_for(now), used=0, updated_at=now
        )
        used = max(0, int(server_status.get("used", entry.used)))
        await self.store.write(self.account_id, replace(entry, tier=tier, used=used, updated_at=now))
