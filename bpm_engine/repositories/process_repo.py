"""Process Repository - Durable local mirror of process instances"""
from typing import Any, Dict, Iterable, List, Optional
from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import DESCENDING, ReplaceOne
from pydantic import ValidationError

from .mongo_client import PROCESS_COLLECTION, create_indexes, get_database
from ..config.settings import Settings
from ..domain.models import ProcessInstance
from ..domain.enums import ProcessStatus, SyncStatus
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ProcessRepository:
    """Repository for process instance documents of one organization"""

    def __init__(self, database: AsyncIOMotorDatabase):
        self._db = database
        self._processes: AsyncIOMotorCollection = database[PROCESS_COLLECTION]

    @classmethod
    def for_organization(cls, org_id: str, settings: Optional[Settings] = None) -> "ProcessRepository":
        return cls(get_database(org_id, settings))

    @property
    def database_name(self) -> str:
        return self._db.name

    async def ensure_indexes(self) -> None:
        await create_indexes(self._db)

    # =========================================================================
    # Writes
    # =========================================================================

    async def save(self, instance: ProcessInstance) -> None:
        """Insert or replace an instance"""
        doc = instance.to_document()
        await self._processes.replace_one({"_id": instance.id}, doc, upsert=True)
        logger.debug(f"Saved process: {instance.id}", extra={"process_id": instance.id})

    async def bulk_save(self, instances: Iterable[ProcessInstance]) -> int:
        """Upsert many instances; returns the number of operations sent"""
        operations = [
            ReplaceOne({"_id": instance.id}, instance.to_document(), upsert=True)
            for instance in instances
        ]
        if not operations:
            return 0
        await self._processes.bulk_write(operations, ordered=False)
        logger.info(f"Bulk saved {len(operations)} processes")
        return len(operations)

    async def delete(self, process_id: str) -> bool:
        result = await self._processes.delete_one({"_id": process_id})
        return result.deleted_count > 0

    async def drop(self) -> None:
        """Drop the whole collection"""
        await self._processes.drop()
        logger.warning(f"Dropped {self._db.name}.{PROCESS_COLLECTION}")

    # =========================================================================
    # Reads
    # =========================================================================

    async def load(self, process_id: str) -> Optional[ProcessInstance]:
        doc = await self._processes.find_one({"_id": process_id})
        return self._to_model(doc) if doc else None

    async def load_all(self) -> List[ProcessInstance]:
        return await self._find({})

    async def load_by_type(self, process_type: str) -> List[ProcessInstance]:
        return await self._find({"processType": process_type})

    async def load_by_status(self, status: ProcessStatus) -> List[ProcessInstance]:
        return await self._find({"status": ProcessStatus(status).value})

    async def load_by_definition(self, definition_id: str) -> List[ProcessInstance]:
        return await self._find({"definitionId": definition_id})

    async def get_needing_sync(self) -> List[ProcessInstance]:
        return await self._find(
            {"syncStatus": {"$in": [SyncStatus.PENDING.value, SyncStatus.ERROR.value]}}
        )

    async def info(self) -> Dict[str, Any]:
        count = await self._processes.count_documents({})
        pending = await self._processes.count_documents(
            {"syncStatus": {"$in": [SyncStatus.PENDING.value, SyncStatus.ERROR.value]}}
        )
        return {"database": self._db.name, "collection": PROCESS_COLLECTION, "count": count, "pending": pending}

    async def _find(self, query: Dict[str, Any]) -> List[ProcessInstance]:
        cursor = self._processes.find(query).sort("createdAt", DESCENDING)
        results: List[ProcessInstance] = []
        async for doc in cursor:
            instance = self._to_model(doc)
            if instance is not None:
                results.append(instance)
        return results

    @staticmethod
    def _to_model(doc: Dict[str, Any]) -> Optional[ProcessInstance]:
        try:
            return ProcessInstance.from_document(doc)
        except ValidationError as e:
            logger.error(
                f"Corrupted process document {doc.get('_id')}: {str(e)[:500]}",
                extra={"process_id": doc.get("_id")}
            )
            return None
