"""Sync operations between the local store and the remote store.

Architecture:
    SyncOrchestrator → SyncEngine → DeletionQueue, PushEngine
                     → PullEngine (seed), LiveSync (subscriptions)

Components:
- **SyncRegistry**: Which local tables sync to which remote collections
- **DeletionQueue**: Durable remote deletes, drained before any upsert
- **PushEngine**: Batched upsert-merge of ``pending`` rows, table by table
- **PullEngine**: Full-collection seed at session start
- **LiveSync**: Applies remote change events as they arrive
- **SyncEngine**: One cycle (deletions, then upserts) and the pending metric
- **SyncOrchestrator**: Timer, connectivity and session handling

All public symbols are re-exported here.
"""

from clinicsync.client.sync.deletions import DeletionQueue
from clinicsync.client.sync.engine import SyncEngine, count_pending_changes, pending_breakdown
from clinicsync.client.sync.orchestrator import SyncOrchestrator
from clinicsync.client.sync.pull import LiveSync, PullEngine
from clinicsync.client.sync.push import PushEngine
from clinicsync.client.sync.registry import (
    DEFAULT_DEPARTMENTS,
    SYNC_STATUS_FIELD,
    SYNC_TABLES,
    SyncRegistry,
    SyncTable,
)
from clinicsync.client.sync.retry import NETWORK_EXCEPTIONS, retry_with_backoff
from clinicsync.client.sync.types import (
    DrainResult,
    PushError,
    PushResult,
    SeedError,
    SeedResult,
    SyncError,
    SyncResult,
)

__all__ = [
    # Components
    "DeletionQueue",
    "LiveSync",
    "PullEngine",
    "PushEngine",
    "SyncEngine",
    "SyncOrchestrator",
    "count_pending_changes",
    "pending_breakdown",
    # Registry
    "DEFAULT_DEPARTMENTS",
    "SYNC_STATUS_FIELD",
    "SYNC_TABLES",
    "SyncRegistry",
    "SyncTable",
    # Retry
    "NETWORK_EXCEPTIONS",
    "retry_with_backoff",
    # Types
    "DrainResult",
    "PushError",
    "PushResult",
    "SeedError",
    "SeedResult",
    "SyncError",
    "SyncResult",
]
