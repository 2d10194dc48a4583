"""
MongoDB Connection Management
Motor client lifecycle and the collection indexes the scheduling engine relies on
"""

from typing import Optional
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import ConnectionFailure, PyMongoError
import logging

from app.config import get_settings

logger = logging.getLogger(__name__)


class Database:
    """Process-wide MongoDB handle"""

    client: Optional[AsyncIOMotorClient] = None
    db: Optional[AsyncIOMotorDatabase] = None

    @classmethod
    async def connect(cls) -> None:
        """Open the client, verify it answers, and ensure indexes"""
        settings = get_settings()
        cls.client = AsyncIOMotorClient(
            settings.MONGO_URL,
            maxPoolSize=50,
            serverSelectionTimeoutMS=5000
        )
        try:
            await cls.client.admin.command("ping")
        except ConnectionFailure as e:
            logger.error(f"MongoDB unreachable at startup: {e}")
            raise

        cls.db = cls.client[settings.DB_NAME]
        logger.info(f"Connected to MongoDB database '{settings.DB_NAME}'")
        await create_indexes(cls.db)

    @classmethod
    async def disconnect(cls) -> None:
        if cls.client:
            cls.client.close()
            cls.client = None
            cls.db = None
            logger.info("MongoDB connection closed")

    @classmethod
    async def status(cls) -> str:
        """'connected', 'unreachable' or 'disconnected' for health reporting"""
        if cls.client is None:
            return "disconnected"
        try:
            await cls.client.admin.command("ping")
        except PyMongoError as e:
            logger.warning(f"MongoDB ping failed: {e}")
            return "unreachable"
        return "connected"

    @classmethod
    def get_db(cls) -> AsyncIOMotorDatabase:
        if cls.db is None:
            raise RuntimeError("Database not connected. Call Database.connect() first.")
        return cls.db


async def create_indexes(db: AsyncIOMotorDatabase) -> None:
    """Unique keys back the exclusive-insert paths; the rest serve range queries"""
    await db.contractor_availability.create_index("contractor_id", unique=True)
    await db.contractors.create_index("contractor_id", unique=True)

    await db.jobs.create_index("job_id", unique=True)
    await db.jobs.create_index([("contractor_id", 1), ("date", 1), ("status", 1)])

    # First claim of a day is an insert; the unique key makes it exclusive
    await db.booking_ledgers.create_index("ledger_key", unique=True)

    await db.job_reschedule_history.create_index("record_id", unique=True)
    await db.job_reschedule_history.create_index([("job_id", 1), ("timestamp", 1)])

    await db.job_calendar_events.create_index("job_id", unique=True)

    # TTL cleanup for abandoned route locks
    await db.schedule_locks.create_index("expires_at", expireAfterSeconds=0)

    logger.info("Database indexes ensured")


def get_database() -> AsyncIOMotorDatabase:
    """FastAPI dependency"""
    return Database.get_db()
