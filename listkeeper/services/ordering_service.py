"""Asyncio facade over the ordered list mutations."""

from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from listkeeper.core.manager import OrderedListManager
from listkeeper.repositories.list_repository import ListRepository


class OrderingService:
    """
    Run list mutations from asyncio code.

    Each call hands the synchronous algorithm to AsyncSession.run_sync, so the
    locking, SAVEPOINT and rollback behaviour is identical to the sync API.
    """

    def __init__(self, db: AsyncSession, manager: OrderedListManager):
        self.db = db
        self.manager = manager
        self.repo = ListRepository(db, manager)

    async def append(self, item: Any) -> bool:
        return await self.db.run_sync(self.manager.append, item)

    async def insert_at(self, item: Any, position: int = 1) -> int:
        return await self.db.run_sync(self.manager.insert_at, item, position)

    async def move_higher(self, item: Any) -> bool:
        return await self.db.run_sync(self.manager.move_higher, item)

    async def move_lower(self, item: Any) -> bool:
        return await self.db.run_sync(self.manager.move_lower, item)

    async def move_to_top(self, item: Any) -> bool:
        return await self.db.run_sync(self.manager.move_to_top, item)

    async def move_to_bottom(self, item: Any) -> bool:
        return await self.db.run_sync(self.manager.move_to_bottom, item)

    async def remove_from_list(self, item: Any) -> bool:
        return await self.db.run_sync(self.manager.remove_from_list, item)

    async def decrement_lower_items(self, item: Any) -> bool:
        return await self.db.run_sync(self.manager.decrement_lower_items, item)

    async def ordered_ids(self, item: Any) -> list:
        """Ids of the item's list, top first (no lock)."""
        members = await self.repo.list_items(item)
        return [getattr(member, self.manager.pk_attr) for member in members]
