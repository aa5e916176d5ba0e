"""Shared types for clinicsync.

This module defines enums used by the client, the sync engine and the
reference server.
"""

from __future__ import annotations

from enum import Enum


class SyncStatus(str, Enum):
    """Per-record synchronization tag.

    Every syncable entity carries exactly one of these values in its
    ``syncStatus`` field.
    """

    SYNCED = "synced"
    PENDING = "pending"
    ERROR = "error"


class SyncState(str, Enum):
    """Overall state of the sync orchestrator.

    Shown to the user as a status indicator, never raised as an error.
    """

    IDLE = "idle"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"
    OFFLINE = "offline"


class ChangeType(str, Enum):
    """Type of a remote change event delivered by a live subscription."""

    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"
