"""In-memory process store tests"""
from datetime import timedelta

import pytest

from bpm_engine.domain.enums import ProcessStatus, StoreChange, SyncStatus
from bpm_engine.domain.errors import ConflictError, ProcessNotFoundError
from bpm_engine.domain.models import ProcessQuery
from bpm_engine.repositories.process_store import ProcessStore, resolve_field
from bpm_engine.utils.time import utc_now

from ...factories import make_instance


class RecordingRepository:
    """Captures mirrored writes"""

    def __init__(self, fail=False):
        self.saved = []
        self.deleted = []
        self.fail = fail

    async def save(self, instance):
        if self.fail:
            raise RuntimeError("disk full")
        self.saved.append(instance.id)

    async def delete(self, process_id):
        self.deleted.append(process_id)


@pytest.fixture
def store():
    return ProcessStore()


async def seed(store, count=3):
    base = utc_now()
    for index in range(count):
        await store.add(make_instance(
            id=f"process_inst:purchase_{index}",
            current_state="draft" if index % 2 == 0 else "submitted",
            variables={"amount": (index + 1) * 100, "buyerId": f"u{index}"},
            created_at=base + timedelta(seconds=index),
        ))


class TestMutations:
    async def test_reads_return_copies(self, store):
        await store.add(make_instance(variables={"amount": 1}))

        borrowed = store.get("process_inst:test_1_abc")
        borrowed.variables["amount"] = 2

        assert store.get("process_inst:test_1_abc").variables["amount"] == 1

    async def test_add_rejects_duplicates(self, store):
        await store.add(make_instance())
        with pytest.raises(ConflictError):
            await store.add(make_instance())

    async def test_update_requires_existing(self, store):
        with pytest.raises(ProcessNotFoundError):
            await store.update(make_instance())

    async def test_update_writes_back(self, store):
        await store.add(make_instance())
        borrowed = store.require("process_inst:test_1_abc")
        borrowed.current_state = "submitted"

        await store.update(borrowed)

        assert store.require("process_inst:test_1_abc").current_state == "submitted"

    async def test_update_sync_status_keeps_updated_at(self, store):
        await store.add(make_instance())
        before = store.require("process_inst:test_1_abc").updated_at

        synced = await store.update_sync_status("process_inst:test_1_abc", SyncStatus.SYNCED, "3-abc")

        assert synced.sync_status == SyncStatus.SYNCED
        assert synced.rev == "3-abc"
        assert synced.last_sync_at is not None
        assert synced.updated_at == before

    async def test_remove_and_clear(self, store):
        await seed(store)
        assert await store.remove("process_inst:purchase_0")
        assert not await store.remove("process_inst:purchase_0")
        assert store.count() == 2

        await store.clear()
        assert store.count() == 0

    async def test_load_replaces_contents(self, store):
        await seed(store)
        loaded = await store.load_processes([make_instance()])
        assert loaded == 1
        assert [p.id for p in store.get_all()] == ["process_inst:test_1_abc"]


class TestSubscriptions:
    async def test_subscribers_see_changes(self, store):
        seen = []
        unsubscribe = store.subscribe(lambda change, instance: seen.append((change, instance and instance.id)))

        await store.add(make_instance())
        await store.remove("process_inst:test_1_abc")
        unsubscribe()
        await store.add(make_instance())

        assert seen == [
            (StoreChange.ADDED, "process_inst:test_1_abc"),
            (StoreChange.REMOVED, "process_inst:test_1_abc"),
        ]

    async def test_failing_subscriber_does_not_break_writes(self, store):
        def broken(change, instance):
            raise RuntimeError("listener bug")

        store.subscribe(broken)
        await store.add(make_instance())
        assert store.has_process("process_inst:test_1_abc")


class TestMirroring:
    async def test_writes_are_mirrored(self):
        repository = RecordingRepository()
        store = ProcessStore(repository)

        await store.add(make_instance())
        await store.remove("process_inst:test_1_abc")

        assert repository.saved == ["process_inst:test_1_abc"]
        assert repository.deleted == ["process_inst:test_1_abc"]

    async def test_mirror_failure_is_not_raised(self):
        store = ProcessStore(RecordingRepository(fail=True))
        await store.add(make_instance())
        assert store.count() == 1

    async def test_upsert_can_skip_mirror(self):
        repository = RecordingRepository()
        store = ProcessStore(repository)
        await store.upsert(make_instance(), mirror=False)
        assert repository.saved == []


class TestQueries:
    async def test_filters(self, store):
        await seed(store)
        assert len(store.get_by_state("draft")) == 2
        assert len(store.get_by_status("active")) == 3
        assert store.count_by_status(ProcessStatus.COMPLETED) == 0
        assert [p.id for p in store.search({"buyerId": "u1"})] == ["process_inst:purchase_1"]
        assert len(store.search({"status": "active", "currentState": "submitted"})) == 1
        assert len(store.get_processes_needing_sync()) == 3

    async def test_query_defaults_to_newest_first(self, store):
        await seed(store)
        page = store.query()
        assert [p.id for p in page.items][0] == "process_inst:purchase_2"
        assert page.total == 3
        assert not page.has_more

    async def test_query_filters_and_pages(self, store):
        await seed(store, count=5)
        page = store.query(ProcessQuery(current_state="draft", sort_by="variables.amount", sort_order="asc", offset=1, limit=1))
        assert page.total == 3
        assert [p.variables["amount"] for p in page.items] == [300]
        assert page.has_more

    async def test_missing_sort_values_go_last(self, store):
        await store.add(make_instance(id="a", variables={"rank": 2}))
        await store.add(make_instance(id="b", variables={}))
        await store.add(make_instance(id="c", variables={"rank": 1}))
        for order in ("asc", "desc"):
            page = store.query(ProcessQuery(sort_by="variables.rank", sort_order=order))
            assert page.items[-1].id == "b"

    async def test_statistics(self, store):
        await seed(store)
        stats = store.get_statistics()
        assert stats["total"] == 3
        assert stats["active"] == 3
        assert stats["needingSync"] == 3


def test_resolve_field_accepts_camel_and_snake():
    instance = make_instance(current_state="draft", variables={"order": {"total": 5}})
    assert resolve_field(instance, "currentState") == "draft"
    assert resolve_field(instance, "current_state") == "draft"
    assert resolve_field(instance, "variables.order.total") == 5
    assert resolve_field(instance, "status") == "active"
    assert resolve_field(instance, "variables.order.total.deep") is None
