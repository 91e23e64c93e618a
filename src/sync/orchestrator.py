from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Protocol, Tuple

from common.connectivity import Connectivity
from state.models import Record, SyncStatus
from state.sqlite_store import SqliteStore

from .config import SyncConfig
from .replay import MutationTarget, ReplayReport, replay_queue


logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    COMPLETED = "completed"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class SyncSnapshot:
    """Point-in-time view of the sync status, safe to hand to any thread."""

    state: SyncState = SyncState.IDLE
    last_sync_time: Optional[int] = None
    total_records: int = 0
    is_online: bool = False
    error: Optional[str] = None

    @property
    def is_syncing(self) -> bool:
        return self.state is SyncState.SYNCING


@dataclass(frozen=True)
class SyncResult:
    state: SyncState
    fetched: int = 0
    pages: int = 0
    replay: Optional[ReplayReport] = None
    error: Optional[str] = None


class RecordSource(MutationTarget, Protocol):
    def fetch_page(self, resource: str, page: int) -> List[Record]: ...


Listener = Callable[[SyncSnapshot], None]


class SyncOrchestrator:
    """
    Runs sync passes: paginated pull, merge into the store, status
    bookkeeping, offline queue replay.

    States: IDLE -> SYNCING -> COMPLETED | DEGRADED.

    - Only one pass runs at a time. `start_sync()` while a pass is running
      returns None immediately and changes nothing.
    - Offline, or on any failure during a pass, the existing mirror is kept,
      the status is written as offline with the mirror's count, and the pass
      ends DEGRADED. Failures are logged, never raised.
    - Holds no durable state of its own; `load_status()` rebuilds the
      snapshot from the store.
    """

    def __init__(
        self,
        store: SqliteStore,
        remote: RecordSource,
        *,
        connectivity: Connectivity,
        config: Optional[SyncConfig] = None,
        resource: str = "users",
    ) -> None:
        self._store = store
        self._remote = remote
        self._connectivity = connectivity
        self._config = config or SyncConfig()
        self._resource = resource
        self._guard = threading.Lock()
        self._state_lock = threading.Lock()
        self._snapshot = SyncSnapshot()
        self._listeners: List[Listener] = []

    # -------- Observation --------
    @property
    def is_syncing(self) -> bool:
        return self._guard.locked()

    def snapshot(self) -> SyncSnapshot:
        with self._state_lock:
            return self._snapshot

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._state_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._state_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, **changes) -> SyncSnapshot:
        with self._state_lock:
            self._snapshot = dataclasses.replace(self._snapshot, **changes)
            snap = self._snapshot
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snap)
            except Exception:
                logger.exception("Sync status listener failed")
        return snap

    def _publish_status(self, status: SyncStatus, state: SyncState, error: Optional[str] = None) -> None:
        self._publish(
            state=state,
            last_sync_time=status.last_sync,
            total_records=status.total_records,
            is_online=status.is_online,
            error=error,
        )

    def load_status(self) -> SyncSnapshot:
        """Refresh the snapshot from the persisted status singleton."""
        status = self._store.get_sync_status()
        if status is None:
            return self.snapshot()
        return self._publish(
            last_sync_time=status.last_sync,
            total_records=status.total_records,
            is_online=status.is_online,
        )

    # -------- Passes --------
    def start_sync(self) -> Optional[SyncResult]:
        if not self._guard.acquire(blocking=False):
            logger.debug("Sync already in progress; ignoring request")
            return None
        try:
            self._publish(state=SyncState.SYNCING, error=None)
            return self._run_pass()
        finally:
            self._guard.release()

    def _run_pass(self) -> SyncResult:
        if not self._connectivity.is_online():
            logger.info("Offline; keeping cached mirror")
            self._degrade(None)
            return SyncResult(state=SyncState.DEGRADED)

        try:
            records, pages = self._pull()
            self._store.save_records(records)
            status = self._store.update_sync_status(len(records), True)
            self._publish_status(status, SyncState.COMPLETED)
            report = replay_queue(self._store, self._remote)
        except Exception as exc:
            logger.error("Sync failed: %s", exc, exc_info=True)
            self._degrade(str(exc))
            return SyncResult(state=SyncState.DEGRADED, error=str(exc))

        logger.info("Sync completed: %d record(s) from %d page(s)", len(records), pages)
        return SyncResult(state=SyncState.COMPLETED, fetched=len(records), pages=pages, replay=report)

    def _pull(self) -> Tuple[List[Record], int]:
        cfg = self._config
        accumulated: List[Record] = []
        page = 1
        pages = 0
        while page <= cfg.max_pages and len(accumulated) < cfg.max_records:
            logger.info("Fetching %s page %d...", self._resource, page)
            batch = self._remote.fetch_page(self._resource, page)
            pages += 1
            logger.info("Received %d %s from page %d", len(batch), self._resource, page)
            if not batch:
                break
            accumulated.extend(batch)
            page += 1
        return accumulated, pages

    def _degrade(self, error: Optional[str]) -> None:
        try:
            status = self._store.update_sync_status(self._store.count(), False)
        except Exception as exc:
            logger.error("Could not record degraded sync status: %s", exc)
            self._publish(state=SyncState.DEGRADED, is_online=False, error=error)
            return
        self._publish_status(status, SyncState.DEGRADED, error)

    def mark_offline(self) -> bool:
        """Record an offline status for the current mirror unless a pass is running."""
        # Only checks the guard; a pass starting meanwhile still runs and
        # writes its own status afterwards.
        if self._guard.locked():
            return False
        status = self._store.update_sync_status(self._store.count(), False)
        self._publish(last_sync_time=status.last_sync, total_records=status.total_records, is_online=False)
        return True


__all__ = ["RecordSource", "SyncOrchestrator", "SyncResult", "SyncSnapshot", "SyncState"]
