"""Sync coordinator tests against an in-memory document server"""
from datetime import timedelta

import pytest

from bpm_engine.domain.enums import SyncStatus
from bpm_engine.repositories.remote_store import RemoteDocumentStore
from bpm_engine.runtime import create_runtime
from bpm_engine.utils.time import format_iso, utc_now

from ...factories import make_instance
from ...fake_couch import FakeCouch

REMOTE_URL = "http://couch.test"


@pytest.fixture
def couch():
    return FakeCouch()


@pytest.fixture
async def synced_runtime(settings, couch, approval_definition):
    def remote_factory(base_url, database, credentials, timeout):
        return RemoteDocumentStore(base_url, database, credentials, timeout, transport=couch.transport())

    rt = create_runtime(settings.model_copy(update={"remote_store_url": REMOTE_URL}), remote_factory=remote_factory)
    rt.service.register_definition(approval_definition)
    await rt.start("test-org")
    yield rt
    await rt.stop()


@pytest.fixture
def sync(synced_runtime):
    return synced_runtime.sync


async def create_purchase(runtime, amount=100):
    return await runtime.service.create_process("purchase_approval", variables={"amount": amount})


def remote_copy(instance, **changes):
    doc = instance.to_document()
    doc.update(changes)
    return doc


class TestSetup:
    async def test_database_created_per_organization(self, sync, couch):
        assert "bpm_org_test-org" in couch.databases
        status = sync.get_sync_status()
        assert status["remoteEnabled"] and status["remoteAvailable"]
        assert status["orgId"] == "test-org"

    async def test_without_remote_url_sync_is_skipped(self, runtime):
        result = await runtime.sync.sync_pending_processes()
        assert result.skipped
        assert result.reason == "remote sync not configured"

    async def test_unreachable_remote_at_startup(self, settings, couch):
        couch.reachable = False
        rt = create_runtime(
            settings.model_copy(update={"remote_store_url": REMOTE_URL}),
            remote_factory=lambda url, db, creds, timeout: RemoteDocumentStore(url, db, transport=couch.transport()),
        )
        await rt.start("test-org")
        try:
            status = rt.sync.get_sync_status()
            assert status["remoteEnabled"] and not status["remoteAvailable"]
            assert status["lastError"]
        finally:
            await rt.stop()


class TestPush:
    async def test_pending_instances_are_pushed(self, synced_runtime, sync, couch):
        instance = await create_purchase(synced_runtime)

        result = await sync.sync_pending_processes()

        assert (result.total, result.pushed, result.failed) == (1, 1, 0)
        local = synced_runtime.store.get(instance.id)
        assert local.sync_status == SyncStatus.SYNCED
        assert local.rev.startswith("1-")
        assert local.last_sync_at is not None
        remote = couch.only_db().docs[instance.id]
        assert remote["syncStatus"] == "synced"
        assert "lastSyncAt" not in remote
        assert sync.get_sync_status()["pending"] == 0

    async def test_updates_push_with_current_revision(self, synced_runtime, sync, couch):
        instance = await create_purchase(synced_runtime)
        await sync.sync_pending_processes()

        await synced_runtime.service.transition_state(instance.id, "submitted")
        result = await sync.sync_pending_processes()

        assert result.pushed == 1
        assert result.conflicts == 0
        assert couch.only_db().docs[instance.id]["currentState"] == "submitted"
        assert synced_runtime.store.get(instance.id).rev.startswith("2-")

    async def test_sync_events(self, synced_runtime, sync):
        seen = []
        for name in ("sync.started", "sync.completed"):
            synced_runtime.bus.on(name, lambda event, payload: seen.append(event))
        await create_purchase(synced_runtime)

        await sync.sync_pending_processes()

        assert seen == ["sync.started", "sync.completed"]


class TestConflicts:
    async def test_newer_remote_wins(self, synced_runtime, sync, couch):
        instance = await create_purchase(synced_runtime)
        await sync.sync_pending_processes()
        pushed = synced_runtime.store.get(instance.id)

        later = format_iso(utc_now() + timedelta(hours=1))
        couch.only_db().write(remote_copy(pushed, currentState="submitted", updatedAt=later, _rev=pushed.rev))
        await synced_runtime.service.update_process_variables(instance.id, {"amount": 999})
        changes = []
        synced_runtime.bus.on("process.state_changed", lambda event, payload: changes.append(payload))

        result = await sync.sync_pending_processes()

        local = synced_runtime.store.get(instance.id)
        assert result.conflicts == 1
        assert local.current_state == "submitted"
        assert local.variables["amount"] == 100
        assert local.sync_status == SyncStatus.SYNCED
        assert changes[0]["context"] == {"source": "remote"}

    async def test_newer_local_wins(self, synced_runtime, sync, couch):
        instance = await create_purchase(synced_runtime)
        await sync.sync_pending_processes()
        pushed = synced_runtime.store.get(instance.id)

        earlier = format_iso(pushed.updated_at - timedelta(minutes=5))
        couch.only_db().write(remote_copy(pushed, variables={"amount": 1}, updatedAt=earlier, _rev=pushed.rev))
        await synced_runtime.service.update_process_variables(instance.id, {"amount": 999})

        result = await sync.sync_pending_processes()

        assert result.conflicts == 1
        assert couch.only_db().docs[instance.id]["variables"]["amount"] == 999
        assert synced_runtime.store.get(instance.id).sync_status == SyncStatus.SYNCED


class TestPull:
    async def test_remote_only_instances_are_pulled(self, synced_runtime, sync, couch):
        instance = await create_purchase(synced_runtime)
        doc = remote_copy(instance, _id="process_inst:purchase_1_other")
        doc.pop("_rev", None)
        couch.only_db().write(doc)
        created = []
        synced_runtime.bus.on("process.state_changed", lambda event, payload: created.append(payload["processId"]))

        result = await sync.sync_pending_processes()

        assert result.pulled == 1
        pulled = synced_runtime.store.get("process_inst:purchase_1_other")
        assert pulled.sync_status == SyncStatus.SYNCED
        assert created == ["process_inst:purchase_1_other"]

    async def test_dirty_local_copy_is_not_overwritten(self, synced_runtime, sync, couch):
        instance = await create_purchase(synced_runtime)
        later = format_iso(utc_now() + timedelta(hours=1))
        doc = remote_copy(instance, currentState="submitted", updatedAt=later)
        doc.pop("_rev", None)
        couch.only_db().write(doc)

        assert await sync.pull_remote_changes() == 0
        assert synced_runtime.store.get(instance.id).current_state == "draft"

    async def test_feed_is_read_incrementally(self, synced_runtime, sync, couch):
        instance = await create_purchase(synced_runtime)
        await sync.sync_pending_processes()
        assert await sync.pull_remote_changes() == 0

        doc = remote_copy(instance, _id="process_inst:purchase_3_late")
        doc.pop("_rev", None)
        couch.only_db().write(doc)

        assert await sync.pull_remote_changes() == 1
        assert await sync.pull_remote_changes() == 0
        assert (await sync.force_sync(full=True)).pulled == 0


class TestAvailability:
    async def test_unreachable_remote_keeps_changes_pending(self, synced_runtime, sync, couch):
        instance = await create_purchase(synced_runtime)
        couch.reachable = False

        failed = await sync.sync_pending_processes()
        skipped = await sync.sync_pending_processes()

        assert failed.pushed == 0 and failed.reason
        assert skipped.skipped and skipped.reason == "remote store unreachable"
        assert synced_runtime.store.get(instance.id).sync_status == SyncStatus.PENDING

        couch.reachable = True
        recovered = await sync.sync_pending_processes()
        assert recovered.pushed == 1
        assert sync.get_sync_status()["remoteAvailable"]

    async def test_interval_update_reschedules(self, synced_runtime, sync):
        sync.set_sync_interval(120)
        assert synced_runtime.scheduler.has_job("sync:periodic")
        assert sync.get_sync_status()["intervalSeconds"] == 120

        sync.stop_periodic_sync()
        assert not synced_runtime.scheduler.has_job("sync:periodic")


class TestDocuments:
    async def test_load_process_from_remote(self, synced_runtime, sync, couch):
        instance = await create_purchase(synced_runtime)
        doc = remote_copy(instance, _id="process_inst:purchase_2_remote")
        doc.pop("_rev", None)
        couch.only_db().write(doc)

        loaded = await sync.load_process("process_inst:purchase_2_remote")

        assert loaded is not None
        assert synced_runtime.store.has_process("process_inst:purchase_2_remote")
        assert await sync.load_process("process_inst:nowhere") is None

    async def test_delete_removes_remote_copy(self, synced_runtime, sync, couch):
        instance = await create_purchase(synced_runtime)
        await sync.sync_pending_processes()

        assert await sync.delete_process(instance.id)

        assert instance.id not in couch.only_db().docs
        assert not synced_runtime.store.has_process(instance.id)

    async def test_database_info(self, synced_runtime, sync):
        await create_purchase(synced_runtime)
        info = await sync.get_database_info()
        assert info["processCount"] == 1
        assert info["remote"]["db_name"] == "bpm_org_test-org"
        assert info["local"] is None

    async def test_switch_organization(self, synced_runtime, couch):
        instance = await create_purchase(synced_runtime)

        await synced_runtime.switch_organization("other-org")

        assert instance.id in couch.db("bpm_org_test-org").docs
        assert "bpm_org_other-org" in couch.databases
        assert synced_runtime.store.count() == 0
        assert synced_runtime.sync.get_sync_status()["orgId"] == "other-org"


class MemoryRepository:
    """Local mirror double keyed by process id"""

    def __init__(self, instances=(), fail_on_load=False):
        self.docs = {i.id: i for i in instances}
        self.fail_on_load = fail_on_load

    async def ensure_indexes(self):
        pass

    async def load_all(self):
        if self.fail_on_load:
            raise ConnectionError("mongo down")
        return list(self.docs.values())

    async def load(self, process_id):
        return self.docs.get(process_id)

    async def save(self, instance):
        self.docs[instance.id] = instance

    async def delete(self, process_id):
        return self.docs.pop(process_id, None) is not None

    async def info(self):
        return {"count": len(self.docs)}


class TestLocalPersistence:
    async def start(self, settings, repository, definition):
        rt = create_runtime(
            settings.model_copy(update={"local_persistence_enabled": True}),
            repository_factory=lambda org_id, s: repository,
        )
        rt.service.register_definition(definition)
        await rt.start("test-org")
        return rt

    async def test_mirror_is_loaded_and_written(self, settings, approval_definition):
        existing = make_instance(id="process_inst:purchase_0_saved", variables={"amount": 7})
        repository = MemoryRepository([existing])
        rt = await self.start(settings, repository, approval_definition)
        try:
            assert rt.store.has_process(existing.id)
            created = await create_purchase(rt)
            assert created.id in repository.docs
            assert (await rt.sync.get_database_info())["local"] == {"count": 2}
        finally:
            await rt.stop()

    async def test_unavailable_mirror_falls_back_to_memory(self, settings, approval_definition):
        rt = await self.start(settings, MemoryRepository(fail_on_load=True), approval_definition)
        try:
            assert rt.sync.repository is None
            assert (await create_purchase(rt)).current_state == "draft"
        finally:
            await rt.stop()
