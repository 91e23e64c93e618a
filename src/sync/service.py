from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, List, Optional

from common.connectivity import Connectivity
from common.credentials import BcryptVerifier, CredentialVerifier
from common.remote import AuthError, Credentials, RemoteClient
from state.models import MutationAction, Record
from state.sqlite_store import SqliteStore

from .orchestrator import SyncOrchestrator, SyncResult, SyncSnapshot


logger = logging.getLogger(__name__)


class MutationOutcome(str, Enum):
    APPLIED = "applied"  # accepted by the remote
    PENDING = "pending"  # queued locally, not yet sent


class SyncService:
    """
    Entry point for callers (UI, CLI, scheduler).

    Owns no state beyond the logged-in session; components are injected and
    shared by reference. Mutations go to the remote when online and to the
    offline queue otherwise. Connectivity transitions trigger a pass
    (offline -> online) or an offline status write (online -> offline), and
    are ignored while a pass is running. Records handed to callers never
    carry the credential hash.
    """

    def __init__(
        self,
        store: SqliteStore,
        remote: RemoteClient,
        orchestrator: SyncOrchestrator,
        connectivity: Connectivity,
        *,
        verifier: Optional[CredentialVerifier] = None,
    ) -> None:
        self._store = store
        self._remote = remote
        self._orchestrator = orchestrator
        self._connectivity = connectivity
        self._verifier = verifier or BcryptVerifier()
        self._user: Optional[Record] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    # -------- Lifecycle --------
    def initialize(self) -> SyncSnapshot:
        self._store.init(online=self._connectivity.is_online())
        if self._unsubscribe is None:
            self._unsubscribe = self._connectivity.subscribe(self._on_connectivity_change)
        return self._orchestrator.load_status()

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._store.close()
        self._remote.close()
        self._connectivity.close()

    # -------- Session --------
    @property
    def current_user(self) -> Optional[Record]:
        return self._user

    @property
    def is_authenticated(self) -> bool:
        return self._user is not None

    def login(self, username: str, password: str) -> Record:
        """
        Authenticate, preferring the cached mirror.

        1. A cached record whose hash matches `password` logs in without a
           network call.
        2. Offline without a matching cached record raises AuthError.
        3. Otherwise the remote is asked, the returned record is cached, and
           its hash must match `password`.
        Remote errors propagate unchanged.
        """
        cached = self._store.get_by_username(username)
        if cached is not None and self._verifier.verify(password, cached.password):
            logger.info("Logged in %s from cached credentials", username)
            self._user = cached.public()
            return self._user

        if not self._connectivity.is_online():
            raise AuthError("No internet connection and no valid cached credentials found")

        record = self._remote.login(Credentials(username=username, password=password))
        self._store.save_records([record])
        if not self._verifier.verify(password, record.password):
            raise AuthError("Invalid credentials")

        logger.info("Logged in %s against the remote", username)
        self._user = record.public()
        return self._user

    def logout(self) -> None:
        self._user = None

    # -------- Sync --------
    def start_sync(self) -> Optional[SyncResult]:
        return self._orchestrator.start_sync()

    def snapshot(self) -> SyncSnapshot:
        return self._orchestrator.snapshot()

    def subscribe(self, listener: Callable[[SyncSnapshot], None]) -> Callable[[], None]:
        return self._orchestrator.subscribe(listener)

    def get_users(self) -> List[Record]:
        return [r.public() for r in self._store.get_all()]

    def _on_connectivity_change(self, online: bool) -> None:
        if self._orchestrator.is_syncing:
            logger.debug("Ignoring connectivity change during sync")
            return
        if online:
            self._orchestrator.start_sync()
        else:
            self._orchestrator.mark_offline()

    # -------- Mutations --------
    def create_user(self, record: Record) -> MutationOutcome:
        if not self._connectivity.is_online():
            self._store.enqueue_mutation(MutationAction.CREATE, record.model_dump())
            return MutationOutcome.PENDING
        self._remote.create_user(record)
        return MutationOutcome.APPLIED

    def update_user(self, record: Record) -> MutationOutcome:
        if not self._connectivity.is_online():
            self._store.enqueue_mutation(MutationAction.UPDATE, record.model_dump())
            return MutationOutcome.PENDING
        self._remote.update_user(record)
        return MutationOutcome.APPLIED

    def delete_user(self, record_id: int) -> MutationOutcome:
        if not self._connectivity.is_online():
            self._store.enqueue_mutation(MutationAction.DELETE, {"id": record_id})
            return MutationOutcome.PENDING
        self._remote.delete_user(record_id)
        return MutationOutcome.APPLIED


__all__ = ["MutationOutcome", "SyncService"]
