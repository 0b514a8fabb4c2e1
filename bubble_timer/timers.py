"""
Timer Store and Sharing Relationship Store.

Reads degrade to None / [] when the table is unreachable; writes report their
outcome as a bool. Both log the failure.
"""

import logging

from bubble_timer.models import SharingRelationship, Timer, utc_now_iso
from bubble_timer.storage import Item, MemoryTable

logger = logging.getLogger(__name__)

SHARED_WITH_USER_INDEX = "SharedWithUserIndex"


def timer_to_item(timer: Timer) -> Item:
    item = {
        "id": timer.id,
        "user_id": timer.user_id,
        "name": timer.name,
        "total_duration": timer.total_duration,
    }
    if timer.remaining_duration is not None:
        item["remaining_duration"] = timer.remaining_duration
    if timer.end_time is not None:
        item["end_time"] = timer.end_time
    return item


def item_to_timer(item: Item) -> Timer:
    return Timer(
        id=item["id"],
        user_id=item["user_id"],
        name=item["name"],
        total_duration=item["total_duration"],
        remaining_duration=item.get("remaining_duration"),
        end_time=item.get("end_time"),
    )


class TimerStore:
    def __init__(self, table: MemoryTable):
        self.table = table

    async def get_timer(self, timer_id: str) -> Timer | None:
        try:
            item = await self.table.get({"id": timer_id})
            return item_to_timer(item) if item else None
        except Exception:
            logger.exception("Failed to read timer %s", timer_id)
            return None

    async def save_timer(self, timer: Timer) -> bool:
        """Create or replace the whole timer record."""
        try:
            await self.table.put(timer_to_item(timer))
        except Exception:
            logger.exception("Failed to save timer %s", timer.id)
            return False
        logger.debug("Saved timer %s for owner %s", timer.id, timer.user_id)
        return True

    async def delete_timer(self, timer_id: str) -> bool:
        try:
            await self.table.delete({"id": timer_id})
        except Exception:
            logger.exception("Failed to delete timer %s", timer_id)
            return False
        return True


class SharingStore:
    """Directed edges timer -> shared-with user, queryable from both ends."""

    def __init__(self, table: MemoryTable, timers: TimerStore):
        self.table = table
        self.timers = timers

    @staticmethod
    def _key(timer_id: str, user_id: str) -> Item:
        return {"timer_id": timer_id, "shared_with_user": user_id}

    async def add_relationship(self, timer_id: str, user_id: str) -> bool:
        """Add an edge. Adding an existing edge keeps it unchanged."""
        key = self._key(timer_id, user_id)
        try:
            if await self.table.get(key):
                return True
            await self.table.put({**key, "created_at": utc_now_iso()})
        except Exception:
            logger.exception("Failed to share timer %s with %s", timer_id, user_id)
            return False
        logger.info("Timer %s shared with %s", timer_id, user_id)
        return True

    async def remove_relationship(self, timer_id: str, user_id: str) -> bool:
        try:
            await self.table.delete(self._key(timer_id, user_id))
        except Exception:
            logger.exception("Failed to unshare timer %s from %s", timer_id, user_id)
            return False
        logger.info("Timer %s no longer shared with %s", timer_id, user_id)
        return True

    async def get_relationships(self, timer_id: str) -> list[SharingRelationship]:
        try:
            items = await self.table.query(timer_id)
        except Exception:
            logger.exception("Failed to read sharing relationships for timer %s", timer_id)
            return []
        return [
            SharingRelationship(
                timer_id=item["timer_id"],
                shared_with_user_id=item["shared_with_user"],
                created_at=item.get("created_at", ""),
            )
            for item in items
        ]

    async def get_shared_users(self, timer_id: str) -> list[str]:
        return [r.shared_with_user_id for r in await self.get_relationships(timer_id)]

    async def get_timers_shared_with_user(self, user_id: str) -> list[Timer]:
        """Timers shared with `user_id`. Edges whose timer is gone are skipped."""
        try:
            items = await self.table.query_index(SHARED_WITH_USER_INDEX, user_id)
        except Exception:
            logger.exception("Failed to read timers shared with %s", user_id)
            return []

        timers = []
        for item in items:
            timer = await self.timers.get_timer(item["timer_id"])
            if timer:
                timers.append(timer)
        return timers
