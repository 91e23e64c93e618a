"""
Offline-first synchronization of the remote user set into the local store.

Modules:
- config: SyncConfig (env / SSM backed)
- orchestrator: sync passes, status snapshot, reentrancy guard
- replay: offline mutation queue replay
- periodic: fixed-interval re-trigger
- service: caller-facing facade (login, sync, mutations)
- handler: wiring and process entrypoints
"""

__all__ = [
    "config",
    "handler",
    "orchestrator",
    "periodic",
    "replay",
    "service",
]
