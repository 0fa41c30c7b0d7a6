"""
List repository - read-only asyncio queries over an ordered list.

These take no lock; a mutation running concurrently may be observed half
way (read committed). Use a snapshot transaction for a consistent view.
"""

from typing import Any, List as ListType, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from listkeeper.core.manager import OrderedListManager


class ListRepository:
    """Repository for ordered list reads."""

    def __init__(self, db: AsyncSession, manager: OrderedListManager):
        self.db = db
        self.manager = manager

    async def list_items(self, item: Any) -> ListType[Any]:
        """All members of the item's list, top first."""
        result = await self.db.execute(self.manager.members_query(item))
        return list(result.scalars().all())

    async def first_item(self, item: Any) -> Optional[Any]:
        result = await self.db.execute(self.manager.first_item_query(item))
        return result.scalars().first()

    async def last_item(self, item: Any) -> Optional[Any]:
        result = await self.db.execute(self.manager.last_item_query(item))
        return result.scalars().first()

    async def last_position(self, item: Any) -> int:
        result = await self.db.execute(self.manager.last_position_query(item))
        return int(result.scalar() or 0)

    async def item_at_offset(self, item: Any, offset: int) -> Optional[Any]:
        if not self.manager.in_list(item):
            return None
        result = await self.db.execute(self.manager.offset_query(item, offset))
        return result.scalars().first()

    async def higher_item(self, item: Any) -> Optional[Any]:
        return await self.item_at_offset(item, -1)

    async def lower_item(self, item: Any) -> Optional[Any]:
        return await self.item_at_offset(item, 1)

    async def higher_items(self, item: Any) -> ListType[Any]:
        if not self.manager.in_list(item):
            return []
        result = await self.db.execute(self.manager.higher_items_query(item))
        return list(result.scalars().all())

    async def lower_items(self, item: Any) -> ListType[Any]:
        if not self.manager.in_list(item):
            return []
        result = await self.db.execute(self.manager.lower_items_query(item))
        return list(result.scalars().all())

    async def is_last(self, item: Any) -> bool:
        if not self.manager.in_list(item):
            return False
        return self.manager.current_position(item) == await self.last_position(item)
