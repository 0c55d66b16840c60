"""Sync Coordinator - Local store <-> remote document store replication

Push is driven by the ``syncStatus`` dirty bit; pull follows the remote
changes feed. Conflicts resolve by last write wins on ``updatedAt``.
Everything here is best effort: the engine keeps working local-only
when the remote is unreachable.
"""
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from ..config.settings import Settings
from ..domain.models import ProcessInstance, RemoteCredentials, SyncResult
from ..domain.enums import ProcessEvent, SyncStatus
from ..domain.errors import RemoteConflictError, RemoteStoreError
from ..repositories.process_repo import ProcessRepository
from ..repositories.process_store import ProcessStore
from ..repositories.remote_store import RemoteDocumentStore, remote_database_name
from ..scheduler.engine_scheduler import EngineScheduler
from ..utils.events import EventBus
from ..utils.time import format_iso, utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)

SYNC_JOB_ID = "sync:periodic"
PROCESS_DOC_TYPE = "process_instance"

RepositoryFactory = Callable[[str, Settings], ProcessRepository]
RemoteFactory = Callable[[str, str, Optional[RemoteCredentials], float], RemoteDocumentStore]


def _default_repository_factory(org_id: str, settings: Settings) -> ProcessRepository:
    return ProcessRepository.for_organization(org_id, settings)


def _default_remote_factory(
    base_url: str,
    database: str,
    credentials: Optional[RemoteCredentials],
    timeout: float
) -> RemoteDocumentStore:
    return RemoteDocumentStore(base_url, database, credentials=credentials, timeout=timeout)


class SyncCoordinator:
    """Replicates one organization's processes"""

    def __init__(
        self,
        store: ProcessStore,
        bus: EventBus,
        scheduler: EngineScheduler,
        settings: Settings,
        repository_factory: Optional[RepositoryFactory] = None,
        remote_factory: Optional[RemoteFactory] = None
    ):
        self.store = store
        self.bus = bus
        self.scheduler = scheduler
        self.settings = settings
        self.repository_factory = repository_factory or _default_repository_factory
        self.remote_factory = remote_factory or _default_remote_factory
        self.sync_interval_seconds = settings.sync_interval_seconds

        self.org_id: Optional[str] = None
        self.repository: Optional[ProcessRepository] = None
        self.remote: Optional[RemoteDocumentStore] = None
        self.remote_available = False
        self.last_sync_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self._last_seq: Optional[str] = None
        self._syncing = False

    # =========================================================================
    # Setup
    # =========================================================================

    async def initialize(
        self,
        org_id: str,
        remote_url: Optional[str] = None,
        credentials: Optional[RemoteCredentials] = None
    ) -> None:
        """Attach the local mirror, load it, and connect the remote"""
        self.org_id = org_id
        self._last_seq = None

        if self.settings.local_persistence_enabled:
            await self._attach_repository(org_id)

        url = remote_url if remote_url is not None else self.settings.remote_store_url
        if url and url.strip():
            self.remote = self.remote_factory(
                url,
                remote_database_name(org_id, self.settings),
                credentials,
                self.settings.remote_timeout_seconds
            )
            try:
                await self.remote.ensure_database()
                self.remote_available = True
            except RemoteStoreError as e:
                self.remote_available = False
                self.last_error = e.message
                logger.warning(f"Remote store not available, working local-only: {e.message}", extra={"org_id": org_id})
            self.start_periodic_sync()

        logger.info(
            f"Sync initialized for org {org_id} (remote: {'on' if self.remote else 'off'})",
            extra={"org_id": org_id}
        )

    async def _attach_repository(self, org_id: str) -> None:
        try:
            repository = self.repository_factory(org_id, self.settings)
            await repository.ensure_indexes()
            instances = await repository.load_all()
        except Exception as e:
            logger.error(f"Local persistence unavailable, running in memory: {e}", extra={"org_id": org_id})
            return
        loaded = await self.store.load_processes(instances)
        self.repository = repository
        self.store.repository = repository
        logger.info(f"Loaded {loaded} processes from local database", extra={"org_id": org_id})

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    # =========================================================================
    # Sync cycle
    # =========================================================================

    async def sync_pending_processes(self) -> SyncResult:
        """Push dirty instances, then pull remote changes"""
        result = SyncResult(org_id=self.org_id)
        if self._syncing:
            result.skipped, result.reason = True, "sync already in progress"
            return result
        if self.remote is None:
            result.skipped, result.reason = True, "remote sync not configured"
            return result
        if not self.remote_available:
            self.remote_available = await self.remote.exists()
            if not self.remote_available:
                result.skipped, result.reason = True, "remote store unreachable"
                return result

        self._syncing = True
        pending = self.store.get_processes_needing_sync()
        result.total = len(pending)
        await self._emit(ProcessEvent.SYNC_STARTED, {"pending": result.total})

        try:
            for instance in pending:
                outcome = await self._push(instance)
                if outcome == "pushed":
                    result.pushed += 1
                elif outcome == "conflict":
                    result.conflicts += 1
                else:
                    result.failed += 1
            result.pulled = await self.pull_remote_changes()
        except RemoteStoreError as e:
            self.remote_available = False
            self.last_error = e.message
            result.reason = e.message
            logger.error(f"Sync failed: {e.message}", extra={"org_id": self.org_id})
            await self._emit(ProcessEvent.SYNC_ERROR, {"error": e.message, **result.model_dump(by_alias=True)})
            return result
        finally:
            self._syncing = False

        self.last_sync_at = utc_now()
        self.last_error = None
        logger.info(
            f"Sync completed: {result.pushed} pushed, {result.conflicts} conflicts, "
            f"{result.failed} failed, {result.pulled} pulled",
            extra={"org_id": self.org_id}
        )
        await self._emit(ProcessEvent.SYNC_COMPLETED, result.model_dump(by_alias=True))
        return result

    async def _push(self, instance: ProcessInstance) -> str:
        """Push one instance; returns pushed / conflict / failed"""
        try:
            rev = await self.remote.put(self._to_remote_doc(instance))
        except RemoteConflictError:
            return await self._resolve_conflict(instance)
        except RemoteStoreError as e:
            if not await self.remote.exists():
                raise
            logger.warning(f"Push failed: {e.message}", extra={"process_id": instance.id})
            await self._set_sync_status(instance.id, SyncStatus.ERROR)
            return "failed"

        await self._mark_pushed(instance, rev)
        return "pushed"

    async def _mark_pushed(self, pushed: ProcessInstance, rev: str) -> None:
        """SYNCED only if nothing changed locally while the push was in flight"""
        current = self.store.get(pushed.id)
        if current is None:
            return
        if current.updated_at == pushed.updated_at:
            await self.store.update_sync_status(pushed.id, SyncStatus.SYNCED, rev)
        else:
            await self.store.update_sync_status(pushed.id, current.sync_status, rev)

    async def _resolve_conflict(self, local: ProcessInstance) -> str:
        """Last write wins on updatedAt"""
        remote_doc = await self.remote.get(local.id)
        if remote_doc is None:
            local.rev = None
            rev = await self.remote.put(self._to_remote_doc(local))
            await self._mark_pushed(local, rev)
            return "conflict"

        remote_instance = self._parse(remote_doc)
        if remote_instance is not None and remote_instance.updated_at > local.updated_at:
            logger.info("Conflict resolved: remote wins", extra={"process_id": local.id, "action": "sync_conflict"})
            await self._accept_remote(remote_instance, local)
            return "conflict"

        logger.info("Conflict resolved: local wins", extra={"process_id": local.id, "action": "sync_conflict"})
        local.rev = remote_doc.get("_rev")
        rev = await self.remote.put(self._to_remote_doc(local))
        await self._mark_pushed(local, rev)
        return "conflict"

    async def pull_remote_changes(self) -> int:
        """Merge remote changes since the last pull; returns instances taken"""
        if self.remote is None:
            return 0
        feed = await self.remote.changes(self._last_seq)
        pulled = 0
        for doc in feed["docs"]:
            if doc.get("type") != PROCESS_DOC_TYPE:
                continue
            remote_instance = self._parse(doc)
            if remote_instance is None:
                continue
            local = self.store.get(remote_instance.id)
            if local is not None:
                if local.sync_status in (SyncStatus.PENDING, SyncStatus.ERROR):
                    continue
                if local.updated_at >= remote_instance.updated_at:
                    continue
            await self._accept_remote(remote_instance, local)
            pulled += 1
        self._last_seq = feed.get("last_seq")
        return pulled

    async def _accept_remote(self, remote_instance: ProcessInstance, local: Optional[ProcessInstance]) -> None:
        remote_instance.sync_status = SyncStatus.SYNCED
        remote_instance.last_sync_at = utc_now()
        await self.store.upsert(remote_instance)

        if local is None or local.current_state != remote_instance.current_state \
                or local.state_entry != remote_instance.state_entry:
            # Lets the transition engine re-arm for the new state entry
            await self.bus.emit(ProcessEvent.STATE_CHANGED.value, {
                "processId": remote_instance.id,
                "definitionId": remote_instance.definition_id,
                "processType": remote_instance.process_type,
                "state": remote_instance.current_state,
                "status": remote_instance.status.value,
                "from": local.current_state if local else None,
                "to": remote_instance.current_state,
                "context": {"source": "remote"},
                "timestamp": format_iso(remote_instance.updated_at),
            })

    async def force_sync(self, full: bool = False) -> SyncResult:
        """Run a cycle now; ``full`` re-reads the whole changes feed"""
        if full:
            self._last_seq = None
        return await self.sync_pending_processes()

    # =========================================================================
    # Periodic sync
    # =========================================================================

    def start_periodic_sync(self, seconds: Optional[float] = None) -> None:
        if seconds is not None:
            self.sync_interval_seconds = seconds
        self.scheduler.add_interval_job(
            self._periodic_sync,
            self.sync_interval_seconds,
            job_id=SYNC_JOB_ID,
            name="Periodic remote sync"
        )

    def stop_periodic_sync(self) -> None:
        self.scheduler.remove_job(SYNC_JOB_ID)

    def set_sync_interval(self, seconds: float) -> None:
        self.sync_interval_seconds = seconds
        if self.scheduler.has_job(SYNC_JOB_ID):
            self.start_periodic_sync()

    async def _periodic_sync(self) -> None:
        try:
            await self.sync_pending_processes()
        except Exception as e:
            logger.error(f"Periodic sync failed: {e}", exc_info=True, extra={"org_id": self.org_id})

    # =========================================================================
    # Organization / documents
    # =========================================================================

    async def switch_organization(
        self,
        org_id: str,
        remote_url: Optional[str] = None,
        credentials: Optional[RemoteCredentials] = None
    ) -> None:
        """Flush, drop the current tenant from memory and load another"""
        if self.remote is not None and self.remote_available:
            await self.sync_pending_processes()
        await self.cleanup()
        await self.store.clear()
        await self.initialize(org_id, remote_url, credentials)

    async def load_process(self, process_id: str) -> Optional[ProcessInstance]:
        """Memory, then local mirror, then remote"""
        instance = self.store.get(process_id)
        if instance is not None:
            return instance

        if self.repository is not None:
            instance = await self.repository.load(process_id)
            if instance is not None:
                return await self.store.upsert(instance, mirror=False)

        if self.remote is not None and self.remote_available:
            doc = await self.remote.get(process_id)
            instance = self._parse(doc) if doc else None
            if instance is not None:
                instance.sync_status = SyncStatus.SYNCED
                return await self.store.upsert(instance)
        return None

    async def delete_process(self, process_id: str) -> bool:
        """Remove locally and, when possible, remotely"""
        local = self.store.get(process_id)
        removed = await self.store.remove(process_id)
        if local is not None and local.rev and self.remote is not None:
            try:
                await self.remote.delete(process_id, local.rev)
            except RemoteStoreError as e:
                logger.warning(f"Remote delete failed: {e.message}", extra={"process_id": process_id})
        return removed

    async def get_database_info(self) -> Dict[str, Any]:
        info: Dict[str, Any] = {
            "orgId": self.org_id,
            "processCount": self.store.count(),
            "local": None,
            "remote": None,
        }
        if self.repository is not None:
            info["local"] = await self.repository.info()
        if self.remote is not None:
            try:
                info["remote"] = await self.remote.info()
            except RemoteStoreError as e:
                info["remote"] = {"error": e.message}
        return info

    def get_sync_status(self) -> Dict[str, Any]:
        return {
            "orgId": self.org_id,
            "remoteEnabled": self.remote is not None,
            "remoteAvailable": self.remote_available,
            "syncing": self.is_syncing,
            "pending": len(self.store.get_processes_needing_sync()),
            "lastSyncAt": format_iso(self.last_sync_at) if self.last_sync_at else None,
            "lastError": self.last_error,
            "intervalSeconds": self.sync_interval_seconds,
        }

    async def cleanup(self) -> None:
        """Stop periodic sync and release connections"""
        self.stop_periodic_sync()
        if self.remote is not None:
            await self.remote.close()
        self.remote = None
        self.remote_available = False
        self.repository = None
        self.store.repository = None

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _to_remote_doc(instance: ProcessInstance) -> Dict[str, Any]:
        doc = instance.to_document()
        doc["syncStatus"] = SyncStatus.SYNCED.value
        doc.pop("lastSyncAt", None)
        if not instance.rev:
            doc.pop("_rev", None)
        return doc

    @staticmethod
    def _parse(doc: Dict[str, Any]) -> Optional[ProcessInstance]:
        try:
            return ProcessInstance.from_document(doc)
        except ValidationError as e:
            logger.warning(f"Skipping malformed remote document {doc.get('_id')}: {str(e)[:300]}")
            return None

    async def _set_sync_status(self, process_id: str, status: SyncStatus) -> None:
        if self.store.has_process(process_id):
            await self.store.update_sync_status(process_id, status)

    async def _emit(self, event: ProcessEvent, payload: Dict[str, Any]) -> None:
        await self.bus.emit(event.value, {"orgId": self.org_id, "timestamp": format_iso(utc_now()), **payload})
