"""
Schedule Lock
Lease lock in MongoDB serializing work on one contractor's day across instances
"""

import asyncio
import logging
import time
from datetime import timedelta
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from app.config import get_settings
from app.models.common import generate_id, utc_now
from app.utils.retry import retry

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 0.05


class LockNotAcquired(Exception):
    """Another holder kept the lock for the whole wait period"""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Lock '{key}' is held elsewhere")


class ScheduleLock:
    """
    Async context manager around a document in schedule_locks.

    The document's _id is the lock key, so insert_one either takes the lock
    or fails with a duplicate key. Leases carry expires_at; an expired lease
    left by a crashed holder is removed by the next contender (and by the
    TTL index eventually).

    Usage:
        async with ScheduleLock(db, "route:ctr_1:2026-10-19"):
            ...
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        key: str,
        ttl_seconds: Optional[int] = None,
        wait_seconds: Optional[float] = None
    ):
        settings = get_settings()
        self.db = db
        self.key = key
        self.owner = generate_id("lck")
        self.ttl_seconds = ttl_seconds or settings.ROUTE_LOCK_TTL_SECONDS
        self.wait_seconds = (
            wait_seconds if wait_seconds is not None else settings.ROUTE_LOCK_WAIT_SECONDS
        )

    async def acquire(self) -> None:
        """Take the lease, polling until the wait period runs out"""
        deadline = time.monotonic() + self.wait_seconds

        while True:
            if await self._try_acquire():
                logger.debug(f"Lock {self.key} acquired by {self.owner}")
                return

            if time.monotonic() >= deadline:
                raise LockNotAcquired(self.key)

            await asyncio.sleep(POLL_INTERVAL_SECONDS)

    async def release(self) -> None:
        """Give the lease back (only if still ours)"""
        await self._delete({"_id": self.key, "owner": self.owner})
        logger.debug(f"Lock {self.key} released by {self.owner}")

    async def _try_acquire(self) -> bool:
        now = utc_now()
        try:
            await self._insert({
                "_id": self.key,
                "owner": self.owner,
                "acquired_at": now,
                "expires_at": now + timedelta(seconds=self.ttl_seconds)
            })
            return True
        except DuplicateKeyError:
            pass

        # Break an expired lease so the next attempt can take it
        removed = await self._delete({"_id": self.key, "expires_at": {"$lt": now}})
        if removed:
            logger.warning(f"Removed expired lock {self.key}")
        return False

    @retry()
    async def _insert(self, doc: dict) -> None:
        await self.db.schedule_locks.insert_one(doc)

    @retry()
    async def _delete(self, query: dict) -> int:
        result = await self.db.schedule_locks.delete_one(query)
        return result.deleted_count

    async def __aenter__(self) -> "ScheduleLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()
