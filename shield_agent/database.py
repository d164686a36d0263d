import time
from typing import Any, Dict, List, Optional

import structlog
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import IndexModel, ASCENDING, DESCENDING

from .config import settings, Collections

logger = structlog.get_logger()

class DatabaseManager:
    """Optional MongoDB store for scan summaries and shield actions.

    Records are written for observability only and never read back into
    decisions. When no MONGODB_URI is configured every write is a no-op.
    """

    def __init__(self):
        self.mongo_client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None

    @property
    def enabled(self) -> bool:
        return self.database is not None

    async def connect(self):
        """Initialize the MongoDB connection when configured"""
        if not settings.MONGODB_URI:
            logger.warning("MongoDB is disabled - scan history is kept in memory only")
            return

        try:
            self.mongo_client = AsyncIOMotorClient(
                settings.MONGODB_URI,
                maxPoolSize=10,
                serverSelectionTimeoutMS=5000,
                socketTimeoutMS=20000
            )
            self.database = self.mongo_client[settings.MONGO_DB_NAME]

            await self.mongo_client.admin.command('ping')
            logger.info("Connected to MongoDB", database=settings.MONGO_DB_NAME)

            await self._create_indexes()

        except Exception as e:
            logger.error("Failed to connect to MongoDB", error=str(e))
            raise

    async def disconnect(self):
        """Close database connections"""
        if self.mongo_client:
            self.mongo_client.close()
            self.mongo_client = None
            self.database = None
            logger.info("Disconnected from MongoDB")

    async def _create_indexes(self):
        """Create necessary MongoDB indexes"""
        await self.database[Collections.SCANS].create_indexes([
            IndexModel([("timestamp", DESCENDING)]),
            IndexModel([("chain", ASCENDING), ("timestamp", DESCENDING)]),
        ])
        await self.database[Collections.ACTIONS].create_indexes([
            IndexModel([("timestamp", DESCENDING)]),
            IndexModel([("protocol", ASCENDING)]),
        ])
        await self.database[Collections.REBALANCES].create_indexes([
            IndexModel([("timestamp", DESCENDING)]),
        ])
        logger.info("Database indexes created successfully")

    def get_collection(self, collection_name: str):
        """Get MongoDB collection"""
        if self.database is None:
            raise RuntimeError("Database not connected")
        return self.database[collection_name]

    async def record(self, collection_name: str, document: Dict[str, Any]):
        """Insert a document; failures are logged and do not propagate"""
        if not self.enabled:
            return

        try:
            await self.get_collection(collection_name).insert_one(dict(document))
        except Exception as e:
            logger.error("Failed to persist record", collection=collection_name, error=str(e))

    async def recent(self, collection_name: str, limit: int = 50) -> List[Dict[str, Any]]:
        if not self.enabled:
            return []

        cursor = self.get_collection(collection_name).find({}, {"_id": 0}).sort("timestamp", DESCENDING)
        return await cursor.limit(limit).to_list(length=limit)

    async def health_check(self) -> dict:
        """Check database health status"""
        health = {"mongodb": {"status": "disabled", "latency_ms": None}}

        if not self.mongo_client:
            return health

        try:
            start_time = time.time()
            await self.mongo_client.admin.command('ping')
            latency = (time.time() - start_time) * 1000
            health["mongodb"] = {"status": "connected", "latency_ms": round(latency, 2)}
        except Exception as e:
            health["mongodb"] = {"status": "error", "latency_ms": None, "error": str(e)}

        return health

# Global database manager instance
db_manager = DatabaseManager()
