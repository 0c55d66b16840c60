"""Process Store - Authoritative in-memory index of process instances

Callers borrow and return: every read hands out a deep copy, and changes
only become visible (and notify subscribers) through ``add``/``update``.
When a ProcessRepository is attached, writes are mirrored to it
best-effort.
"""
import inspect
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from ..domain.models import ProcessInstance, ProcessPage, ProcessQuery
from ..domain.enums import ProcessStatus, SortOrder, StoreChange, SyncStatus
from ..domain.errors import ConflictError, ProcessNotFoundError
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)

StoreSubscriber = Callable[[StoreChange, Optional[ProcessInstance]], Union[None, Awaitable[None]]]

# camelCase wire name -> attribute name
_FIELD_NAMES: Dict[str, str] = {
    (info.alias or name): name for name, info in ProcessInstance.model_fields.items()
}


def resolve_field(instance: ProcessInstance, path: str) -> Any:
    """Value of a (camel or snake, possibly dotted) field path"""
    head, _, rest = path.partition(".")
    attr = _FIELD_NAMES.get(head, head)
    value = getattr(instance, attr, None)
    for part in rest.split(".") if rest else ():
        if isinstance(value, dict):
            value = value.get(part)
        else:
            return None
    return getattr(value, "value", value)


class ProcessStore:
    """In-memory process index with filter / sort / page and change notification"""

    def __init__(self, repository=None):
        self._processes: Dict[str, ProcessInstance] = {}
        self._subscribers: List[StoreSubscriber] = []
        self.repository = repository

    # =========================================================================
    # Mutations
    # =========================================================================

    async def add(self, instance: ProcessInstance) -> ProcessInstance:
        """Add a new instance; raises ConflictError if the id is taken"""
        if instance.id in self._processes:
            raise ConflictError(
                f"Process {instance.id} already exists",
                details={"process_id": instance.id}
            )
        self._processes[instance.id] = instance.model_copy(deep=True)
        await self._mirror_save(instance)
        await self._notify(StoreChange.ADDED, instance)
        return self.get(instance.id)

    async def update(self, instance: ProcessInstance) -> ProcessInstance:
        """Write back a borrowed instance; raises ProcessNotFoundError"""
        if instance.id not in self._processes:
            raise ProcessNotFoundError(
                f"Process not found: {instance.id}",
                details={"process_id": instance.id}
            )
        self._processes[instance.id] = instance.model_copy(deep=True)
        await self._mirror_save(instance)
        await self._notify(StoreChange.UPDATED, instance)
        return self.get(instance.id)

    async def upsert(self, instance: ProcessInstance, mirror: bool = True) -> ProcessInstance:
        """Add or replace (used when merging remote copies)"""
        change = StoreChange.UPDATED if instance.id in self._processes else StoreChange.ADDED
        self._processes[instance.id] = instance.model_copy(deep=True)
        if mirror:
            await self._mirror_save(instance)
        await self._notify(change, instance)
        return self.get(instance.id)

    async def remove(self, process_id: str) -> bool:
        """Remove an instance from the index (and the local mirror)"""
        instance = self._processes.pop(process_id, None)
        if instance is None:
            return False
        if self.repository is not None:
            try:
                await self.repository.delete(process_id)
            except Exception as e:
                logger.error(f"Failed to delete mirrored process: {e}", extra={"process_id": process_id})
        await self._notify(StoreChange.REMOVED, instance)
        return True

    async def update_sync_status(
        self,
        process_id: str,
        sync_status: SyncStatus,
        rev: Optional[str] = None
    ) -> ProcessInstance:
        """Set the sync bookkeeping fields without touching updated_at"""
        instance = self._processes.get(process_id)
        if instance is None:
            raise ProcessNotFoundError(f"Process {process_id} not found", details={"process_id": process_id})
        instance.sync_status = sync_status
        if rev is not None:
            instance.rev = rev
        if sync_status == SyncStatus.SYNCED:
            instance.last_sync_at = utc_now()
        await self._mirror_save(instance)
        await self._notify(StoreChange.UPDATED, instance)
        return self.get(process_id)

    async def load_processes(self, instances: Iterable[ProcessInstance], replace: bool = True) -> int:
        """Bulk load (initial load from the local mirror or a pull)"""
        if replace:
            self._processes = {}
        count = 0
        for instance in instances:
            if instance is not None and instance.id:
                self._processes[instance.id] = instance.model_copy(deep=True)
                count += 1
        await self._notify(StoreChange.LOADED, None)
        return count

    async def clear(self) -> None:
        """Drop everything from memory (the local mirror is left as is)"""
        self._processes = {}
        await self._notify(StoreChange.CLEARED, None)

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, process_id: str) -> Optional[ProcessInstance]:
        instance = self._processes.get(process_id)
        return instance.model_copy(deep=True) if instance is not None else None

    def require(self, process_id: str) -> ProcessInstance:
        """Get or raise ProcessNotFoundError"""
        instance = self.get(process_id)
        if instance is None:
            raise ProcessNotFoundError(f"Process not found: {process_id}", details={"process_id": process_id})
        return instance

    def has_process(self, process_id: str) -> bool:
        return process_id in self._processes

    def count(self) -> int:
        return len(self._processes)

    def get_all(self) -> List[ProcessInstance]:
        return [p.model_copy(deep=True) for p in self._processes.values()]

    def _filter(self, predicate: Callable[[ProcessInstance], bool]) -> List[ProcessInstance]:
        return [p.model_copy(deep=True) for p in self._processes.values() if predicate(p)]

    def get_by_type(self, process_type: str) -> List[ProcessInstance]:
        return self._filter(lambda p: p.process_type == process_type)

    def get_by_status(self, status: Union[ProcessStatus, str]) -> List[ProcessInstance]:
        status = ProcessStatus(status)
        return self._filter(lambda p: p.status == status)

    def get_by_definition(self, definition_id: str) -> List[ProcessInstance]:
        return self._filter(lambda p: p.definition_id == definition_id)

    def get_by_state(self, current_state: str) -> List[ProcessInstance]:
        return self._filter(lambda p: p.current_state == current_state)

    def get_active(self) -> List[ProcessInstance]:
        return self.get_by_status(ProcessStatus.ACTIVE)

    def get_completed(self) -> List[ProcessInstance]:
        return self.get_by_status(ProcessStatus.COMPLETED)

    def get_processes_needing_sync(self) -> List[ProcessInstance]:
        """Dirty or previously failed instances"""
        return self._filter(lambda p: p.sync_status in (SyncStatus.PENDING, SyncStatus.ERROR))

    def count_by_type(self, process_type: str) -> int:
        return sum(1 for p in self._processes.values() if p.process_type == process_type)

    def count_by_status(self, status: Union[ProcessStatus, str]) -> int:
        status = ProcessStatus(status)
        return sum(1 for p in self._processes.values() if p.status == status)

    def get_statistics(self) -> Dict[str, int]:
        stats = {"total": len(self._processes)}
        for status in ProcessStatus:
            stats[status.value] = self.count_by_status(status)
        stats["needingSync"] = sum(
            1 for p in self._processes.values() if p.sync_status in (SyncStatus.PENDING, SyncStatus.ERROR)
        )
        return stats

    def search(self, criteria: Dict[str, Any]) -> List[ProcessInstance]:
        """
        Instances where every criterion matches a variable or a top-level field

        Example: {"buyerId": "u1", "status": "active"}
        """
        def matches(instance: ProcessInstance) -> bool:
            for key, expected in criteria.items():
                if key in instance.variables and instance.variables[key] == expected:
                    continue
                if resolve_field(instance, key) == getattr(expected, "value", expected):
                    continue
                return False
            return True

        return self._filter(matches)

    def query(self, query: Optional[ProcessQuery] = None) -> ProcessPage:
        """Filter, sort and page"""
        query = query or ProcessQuery()

        def matches(p: ProcessInstance) -> bool:
            if query.definition_id and p.definition_id != query.definition_id:
                return False
            if query.process_type and p.process_type != query.process_type:
                return False
            if query.status and p.status != query.status:
                return False
            if query.current_state and p.current_state != query.current_state:
                return False
            if query.category and (p.category or p.metadata.get("category")) != query.category:
                return False
            if query.sync_status and p.sync_status != query.sync_status:
                return False
            if query.created_from and p.created_at < query.created_from:
                return False
            if query.created_to and p.created_at > query.created_to:
                return False
            return True

        items = [p for p in self._processes.values() if matches(p)]
        items = self._sort(items, query.sort_by, query.sort_order)
        total = len(items)

        end = None if query.limit is None else query.offset + query.limit
        page = [p.model_copy(deep=True) for p in items[query.offset:end]]
        return ProcessPage(items=page, total=total, offset=query.offset, limit=query.limit)

    @staticmethod
    def _sort(items: List[ProcessInstance], sort_by: str, order: SortOrder) -> List[ProcessInstance]:
        """Sort by any field; missing values always last"""
        present = [p for p in items if resolve_field(p, sort_by) is not None]
        missing = [p for p in items if resolve_field(p, sort_by) is None]
        reverse = order == SortOrder.DESC
        try:
            present.sort(key=lambda p: resolve_field(p, sort_by), reverse=reverse)
        except TypeError:
            present.sort(key=lambda p: str(resolve_field(p, sort_by)), reverse=reverse)
        return present + missing

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(self, callback: StoreSubscriber) -> Callable[[], None]:
        """Register a change callback; returns an unsubscribe callable"""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def _notify(self, change: StoreChange, instance: Optional[ProcessInstance]) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(change, instance.model_copy(deep=True) if instance is not None else None)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Process store subscriber failed: {e}", exc_info=True)

    async def _mirror_save(self, instance: ProcessInstance) -> None:
        if self.repository is None:
            return
        try:
            await self.repository.save(instance)
        except Exception as e:
            logger.error(
                f"Failed to mirror process to local database: {e}",
                extra={"process_id": instance.id}
            )
