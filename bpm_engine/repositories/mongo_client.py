"""MongoDB Client - Async (Motor) connection and per-organization databases

Each organization gets its own database ``{mongo_db_prefix}{org_id}``;
process instances live in the ``process_instances`` collection.
"""
import re
from typing import Any, Dict, Optional
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from ..config.settings import Settings, settings as default_settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

PROCESS_COLLECTION = "process_instances"

# Global async client instance
_client: Optional[AsyncIOMotorClient] = None

_INVALID_DB_CHARS = re.compile(r"[^a-z0-9_-]+")


def get_client(settings: Optional[Settings] = None) -> AsyncIOMotorClient:
    """Get or create the async MongoDB client"""
    global _client
    settings = settings or default_settings
    if _client is None:
        logger.info(f"Creating async MongoDB client for: {settings.mongo_uri}")
        _client = AsyncIOMotorClient(
            settings.mongo_uri,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=30000,
        )
    return _client


def database_name(org_id: str, settings: Optional[Settings] = None) -> str:
    """Database name for an organization (lowercase, Mongo-safe)"""
    settings = settings or default_settings
    safe_org = _INVALID_DB_CHARS.sub("_", org_id.lower()).strip("_-") or "default"
    return f"{settings.mongo_db_prefix}{safe_org}"


def get_database(org_id: str, settings: Optional[Settings] = None) -> AsyncIOMotorDatabase:
    """Get the database of an organization"""
    client = get_client(settings)
    return client[database_name(org_id, settings)]


async def create_indexes(database: AsyncIOMotorDatabase) -> None:
    """Create indexes on the process collection"""
    processes = database[PROCESS_COLLECTION]
    logger.info(f"Creating MongoDB indexes on {database.name}.{PROCESS_COLLECTION}")

    await processes.create_index("processType")
    await processes.create_index("status")
    await processes.create_index("currentState")
    await processes.create_index("definitionId")
    await processes.create_index("syncStatus")
    await processes.create_index([("createdAt", DESCENDING)], background=True)
    await processes.create_index([("status", ASCENDING), ("updatedAt", DESCENDING)])


async def close_connection() -> None:
    """Close the MongoDB connection"""
    global _client
    if _client is not None:
        _client.close()
        _client = None
        logger.info("MongoDB connection closed")


async def health_check(settings: Optional[Settings] = None) -> Dict[str, Any]:
    """Check MongoDB health"""
    settings = settings or default_settings
    if not settings.local_persistence_enabled:
        return {"status": "disabled"}
    try:
        client = get_client(settings)
        await client.admin.command("ping")
        return {"status": "healthy", "connection": "ok"}
    except Exception as e:
        logger.error(f"MongoDB health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}
