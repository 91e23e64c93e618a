from __future__ import annotations

from typing import Callable, Dict, List, Optional

import pytest

from common.connectivity import Connectivity
from common.remote import NetworkError, ServerError
from state.models import MutationAction, Record
from state.sqlite_store import SqliteStore, StorageError
from sync.config import SyncConfig
from sync.orchestrator import SyncOrchestrator, SyncState


def _rec(i: int) -> Record:
    return Record(id=i, username=f"user{i}", password=f"h{i}", first_name=f"U{i}", email=f"u{i}@x.io")


class FakeRemote:
    """Serves fixed page sizes and records every call."""

    def __init__(self, page_sizes: List[int], *, fail_on_page: Optional[int] = None) -> None:
        self.page_sizes = page_sizes
        self.fail_on_page = fail_on_page
        self.pages_requested: List[int] = []
        self.writes: List[tuple] = []
        self.failing_writes: set = set()
        self.during_fetch: Optional[Callable[[], None]] = None

    def fetch_page(self, resource: str, page: int) -> List[Record]:
        self.pages_requested.append(page)
        if self.during_fetch is not None:
            self.during_fetch()
        if self.fail_on_page == page:
            raise ServerError("HTTP 500 from /users")
        size = self.page_sizes[page - 1] if page <= len(self.page_sizes) else 0
        start = sum(self.page_sizes[: page - 1]) + 1
        return [_rec(i) for i in range(start, start + size)]

    def _write(self, op: str, arg) -> None:
        ident = arg if isinstance(arg, int) else arg.id
        if ident in self.failing_writes:
            raise NetworkError("connection reset")
        self.writes.append((op, ident))

    def create_user(self, record: Record) -> None:
        self._write("create", record)

    def update_user(self, record: Record) -> None:
        self._write("update", record)

    def delete_user(self, record_id: int) -> None:
        self._write("delete", record_id)


@pytest.fixture
def store():
    s = SqliteStore(":memory:")
    s.init(online=True)
    yield s
    s.close()


def _orchestrator(store, remote, *, online: bool = True, **cfg) -> SyncOrchestrator:
    return SyncOrchestrator(
        store,
        remote,
        connectivity=Connectivity(online=online),
        config=SyncConfig(**cfg),
    )


def test_offline_pass_keeps_mirror_and_records_offline_status(store):
    store.save_records([_rec(1)])
    remote = FakeRemote([10])
    orch = _orchestrator(store, remote, online=False)

    result = orch.start_sync()

    assert result.state is SyncState.DEGRADED
    assert remote.pages_requested == []
    status = store.get_sync_status()
    assert (status.total_records, status.is_online) == (1, False)
    assert [r.id for r in store.get_all()] == [1]
    assert orch.snapshot().state is SyncState.DEGRADED


def test_pulls_until_empty_page_and_completes(store):
    remote = FakeRemote([10, 10, 0])
    orch = _orchestrator(store, remote)

    result = orch.start_sync()

    assert result.state is SyncState.COMPLETED
    assert (result.fetched, result.pages) == (20, 3)
    assert remote.pages_requested == [1, 2, 3]
    assert store.count() == 20
    status = store.get_sync_status()
    assert (status.total_records, status.is_online) == (20, True)
    snap = orch.snapshot()
    assert snap.state is SyncState.COMPLETED
    assert snap.total_records == 20
    assert snap.is_online is True
    assert not orch.is_syncing


def test_page_crossing_record_cap_is_kept_whole(store):
    remote = FakeRemote([20] * 10)
    orch = _orchestrator(store, remote, max_pages=3, max_records=50)

    result = orch.start_sync()

    assert remote.pages_requested == [1, 2, 3]
    assert result.fetched == 60
    assert store.count() == 60


def test_record_cap_stops_before_page_cap(store):
    remote = FakeRemote([20] * 10)
    orch = _orchestrator(store, remote, max_pages=10, max_records=50)

    result = orch.start_sync()

    assert remote.pages_requested == [1, 2, 3]
    assert result.fetched == 60


def test_page_cap_stops_pull(store):
    remote = FakeRemote([5] * 10)
    orch = _orchestrator(store, remote, max_pages=2)

    result = orch.start_sync()

    assert remote.pages_requested == [1, 2]
    assert result.fetched == 10


def test_overlapping_start_is_a_no_op(store):
    remote = FakeRemote([3, 0])
    orch = _orchestrator(store, remote)
    nested: Dict[str, object] = {}

    def reenter() -> None:
        if "result" not in nested:
            nested["status_before"] = store.get_sync_status()
            nested["syncing"] = orch.is_syncing
            nested["result"] = orch.start_sync()
            nested["status_after"] = store.get_sync_status()

    remote.during_fetch = reenter
    result = orch.start_sync()

    assert nested["syncing"] is True
    assert nested["result"] is None
    assert nested["status_after"] == nested["status_before"]
    assert result.state is SyncState.COMPLETED
    assert remote.pages_requested == [1, 2]


def test_remote_failure_degrades_without_raising(store):
    store.save_records([_rec(1), _rec(2)])
    remote = FakeRemote([10, 10], fail_on_page=2)
    orch = _orchestrator(store, remote)

    result = orch.start_sync()

    assert result.state is SyncState.DEGRADED
    assert "HTTP 500" in result.error
    # partial pull is discarded, mirror untouched
    assert store.count() == 2
    status = store.get_sync_status()
    assert (status.total_records, status.is_online) == (2, False)
    assert orch.snapshot().error == result.error
    assert not orch.is_syncing


def test_queue_replayed_after_successful_pull(store):
    store.enqueue_mutation(MutationAction.CREATE, _rec(100).model_dump())
    store.enqueue_mutation(MutationAction.UPDATE, _rec(101).model_dump())
    store.enqueue_mutation(MutationAction.DELETE, {"id": 102})
    remote = FakeRemote([2, 0])
    remote.failing_writes = {101}
    orch = _orchestrator(store, remote)

    result = orch.start_sync()

    assert result.state is SyncState.COMPLETED
    assert remote.writes == [("create", 100), ("delete", 102)]
    assert result.replay.replayed == 2
    assert len(result.replay.failed) == 1
    assert result.replay.failed[0].startswith("update-")
    # failed entry is dropped with the rest
    assert store.queue_length() == 0


def test_storage_failure_during_replay_degrades_and_keeps_queue():
    class BrokenDrain(SqliteStore):
        def drain_queue(self):
            raise StorageError("disk I/O error")

    broken = BrokenDrain(":memory:")
    broken.init(online=True)
    broken.enqueue_mutation(MutationAction.DELETE, {"id": 7})
    orch = _orchestrator(broken, FakeRemote([1, 0]))

    result = orch.start_sync()

    assert result.state is SyncState.DEGRADED
    assert broken.queue_length() == 1
    assert broken.get_sync_status().is_online is False
    broken.close()


def test_listeners_see_state_transitions(store):
    orch = _orchestrator(store, FakeRemote([1, 0]))
    seen: List[SyncState] = []

    def boom(_snap) -> None:
        raise RuntimeError("listener bug")

    orch.subscribe(boom)
    unsubscribe = orch.subscribe(lambda snap: seen.append(snap.state))
    orch.start_sync()
    unsubscribe()
    orch.start_sync()

    assert seen == [SyncState.SYNCING, SyncState.COMPLETED]


def test_load_status_restores_snapshot_from_store(store):
    store.update_sync_status(7, True)
    orch = _orchestrator(store, FakeRemote([]))

    snap = orch.load_status()

    assert snap.state is SyncState.IDLE
    assert snap.total_records == 7
    assert snap.is_online is True
    assert snap.last_sync_time == store.get_sync_status().last_sync


def test_mark_offline_writes_offline_status(store):
    store.save_records([_rec(1), _rec(2), _rec(3)])
    orch = _orchestrator(store, FakeRemote([]))

    assert orch.mark_offline() is True

    status = store.get_sync_status()
    assert (status.total_records, status.is_online) == (3, False)
    assert orch.snapshot().is_online is False


def test_mark_offline_is_skipped_while_a_pass_runs(store):
    remote = FakeRemote([1, 0])
    orch = _orchestrator(store, remote)
    seen: List[bool] = []
    remote.during_fetch = lambda: seen.append(orch.mark_offline())

    result = orch.start_sync()

    assert seen == [False, False]
    assert result.state is SyncState.COMPLETED
    assert store.get_sync_status().is_online is True


def test_start_sync_during_offline_write_still_runs():
    class SyncOnStatusWrite(SqliteStore):
        orch: Optional[SyncOrchestrator] = None
        nested: List[object]

        def update_sync_status(self, total_records: int, online: bool):
            status = super().update_sync_status(total_records, online)
            if not online and self.orch is not None and not self.nested:
                self.nested.append(self.orch.start_sync())
            return status

    s = SyncOnStatusWrite(":memory:")
    s.nested = []
    s.init(online=True)
    orch = _orchestrator(s, FakeRemote([2, 0]))
    s.orch = orch

    assert orch.mark_offline() is True

    assert len(s.nested) == 1
    assert s.nested[0] is not None
    assert s.nested[0].state is SyncState.COMPLETED
    assert s.count() == 2
    s.close()
