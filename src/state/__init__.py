"""
Local persistence for the record mirror.

This package defines the mirrored record schema, the sync status singleton,
the offline mutation queue entries, and the SQLite store that owns them.
"""

from .models import MutationAction, QueuedMutation, Record, RemoteUser, SyncStatus

__all__ = ["MutationAction", "QueuedMutation", "Record", "RemoteUser", "SyncStatus"]
