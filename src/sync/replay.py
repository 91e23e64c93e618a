from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Protocol

from state.models import MutationAction, QueuedMutation, Record
from state.sqlite_store import SqliteStore


logger = logging.getLogger(__name__)


class MutationTarget(Protocol):
    def create_user(self, record: Record) -> None: ...

    def update_user(self, record: Record) -> None: ...

    def delete_user(self, record_id: int) -> None: ...


@dataclass
class ReplayReport:
    replayed: int = 0
    failed: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.replayed + len(self.failed)


def apply_mutation(target: MutationTarget, item: QueuedMutation) -> None:
    """Send one queued mutation to the matching remote operation."""
    if item.action is MutationAction.CREATE:
        target.create_user(item.record())
    elif item.action is MutationAction.UPDATE:
        target.update_user(item.record())
    elif item.action is MutationAction.DELETE:
        target.delete_user(item.record_id())
    else:  # pragma: no cover - MutationAction is closed
        raise ValueError(f"Unhandled mutation action: {item.action!r}")


def replay_queue(store: SqliteStore, target: MutationTarget) -> ReplayReport:
    """
    Replay every queued mutation in enqueue order, then clear the queue.

    Best effort, at most once: an entry that fails is logged and skipped, and
    is dropped along with the rest when the queue is cleared. Storage errors
    are not caught; they abort the replay and leave the queue in place.
    """
    report = ReplayReport()
    items = store.drain_queue()
    if not items:
        return report

    logger.info("Replaying %d queued mutation(s)", len(items))
    for item in items:
        try:
            apply_mutation(target, item)
        except Exception as exc:
            logger.warning("Failed to replay %s mutation %s: %s", item.action.value, item.key, exc)
            report.failed.append(item.key)
            continue
        report.replayed += 1

    store.clear_queue()
    logger.info("Offline queue cleared (%d replayed, %d skipped)", report.replayed, len(report.failed))
    return report


__all__ = ["MutationTarget", "ReplayReport", "apply_mutation", "replay_queue"]
