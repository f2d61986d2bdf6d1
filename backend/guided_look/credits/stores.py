"""SQLAlchemy-backed stores for the credit ledger and the device guard."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import CreditLedgerRecord, DeviceRewardRecord
from .device_guard import DeviceRewardEntry
from .ledger import LedgerEntry, utc_now


class SqlCreditLedgerStore:
    """Ledger rows keyed by user id.  ``write`` commits immediately."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _get(self, key: str) -> CreditLedgerRecord | None:
        result = await self.db.execute(select(CreditLedgerRecord).where(CreditLedgerRecord.user_id == key))
        return result.scalar_one_or_none()

    async def read(self, key: str) -> LedgerEntry | None:
        record = await self._get(key)
        if record is None:
            return None
        return LedgerEntry(
            tier=record.tier,
            period_key=record.period_key,
            used=record.used,
            updated_at=record.updated_at or utc_now(),
        )

    async def write(self, key: str, entry: LedgerEntry) -> None:
        record = await self._get(key)
        if record is None:
            record = CreditLedgerRecord(user_id=key)
            self.db.add(record)
        record.tier = entry.tier
        record.period_key = entry.period_key
        record.used = entry.used
        record.updated_at = entry.updated_at
        await self.db.commit()


class SqlDeviceRewardStore:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _get(self, device_id: str) -> DeviceRewardRecord | None:
        result = await self.db.execute(
            select(DeviceRewardRecord).where(DeviceRewardRecord.device_id == device_id)
        )
        return result.scalar_one_or_none()

    async def read(self, device_id: str) -> DeviceRewardEntry | None:
        record = await self._get(device_id)
        if record is None:
            return None
        return DeviceRewardEntry(
            device_id=record.device_id,
            period_key=record.period_key,
            rewards_claimed=record.rewards_claimed,
            linked_account_ids=tuple(record.linked_account_ids or ()),
            updated_at=record.updated_at,
        )

    async def write(self, entry: DeviceRewardEntry) -> None:
        record = await self._get(entry.device_id)
        if record is None:
            record = DeviceRewardRecord(device_id=entry.device_id)
            self.db.add(record)
        record.period_key = entry.period_key
        record.rewards_claimed = entry.rewards_claimed
        record.linked_account_ids = list(entry.linked_account_ids)
        record.updated_at = entry.updated_at or utc_now()
        await self.db.commit()
