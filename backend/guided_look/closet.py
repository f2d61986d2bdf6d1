"""Saving generated garments to a user's collection."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from .models import ClosetItem


logger = logging.getLogger("guided-look")


class GarmentCollection(Protocol):
    async def save_generated_item(self, image_url: str, prompt: str, metadata: Mapping[str, Any]) -> str:
        """Persist the garment and return the id of the stored item."""
        ...


class SqlGarmentCollection:
    def __init__(self, db: AsyncSession, user_id: str) -> None:
        self.db = db
        self.user_id = user_id

    async def save_generated_item(self, image_url: str, prompt: str, metadata: Mapping[str, Any]) -> str:
        item = ClosetItem(
            user_id=self.user_id,
            image_url=image_url,
            prompt=prompt,
            item_metadata=dict(metadata),
            is_ai_generated=True,
        )
        self.db.add(item)
        await self.db.commit()
        await self.db.refresh(item)
        logger.info("Saved generated garment %s for user %s", item.id, self.user_id)
        return item.id
