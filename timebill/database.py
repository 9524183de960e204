"""MongoDB database connection using Motor (async driver)."""
import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from timebill.config import settings

logger = logging.getLogger(__name__)


class Database:
    """MongoDB database connection manager."""

    client: AsyncIOMotorClient | None = None
    db: AsyncIOMotorDatabase | None = None

    async def connect(self, url: str | None = None, db_name: str | None = None) -> AsyncIOMotorDatabase:
        """Connect to MongoDB. Datetimes come back timezone-aware (UTC)."""
        db_name = db_name or settings.mongodb_db_name
        self.client = AsyncIOMotorClient(url or settings.mongodb_url, tz_aware=True)
        self.db = self.client[db_name]
        logger.info("Connected to MongoDB: %s", db_name)
        return self.db

    async def disconnect(self) -> None:
        """Disconnect from MongoDB."""
        if self.client is not None:
            self.client.close()
            self.client = None
            self.db = None
            logger.info("Disconnected from MongoDB")


# Global database instance
database = Database()
