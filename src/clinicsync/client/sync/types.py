"""Shared types and dataclasses for sync operations.

This module provides:
- SyncError, PushError, SeedError: Exception classes
- PushResult, DrainResult, SeedResult: Per-phase result dataclasses
- SyncResult: Overall sync cycle result
- Type aliases for callbacks
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from clinicsync.core.types import SyncState


class SyncError(Exception):
    """Base exception for sync errors."""


class PushError(SyncError):
    """One or more tables failed to push."""

    def __init__(self, errors: dict[str, str]) -> None:
        self.errors = errors
        super().__init__(
            "Push failed for " + ", ".join(f"{table} ({error})" for table, error in errors.items())
        )


class SeedError(SyncError):
    """One or more collections failed to seed."""


@dataclass
class PushResult:
    """Result of pushing pending rows.

    Attributes:
        pushed: Rows confirmed remotely, per table.
        deferred: Rows modified locally during the push, left pending.
        skipped: Rows without a primary key, per table.
        errors: Error message per failed table.
    """

    pushed: dict[str, int] = field(default_factory=dict)
    deferred: dict[str, int] = field(default_factory=dict)
    skipped: dict[str, int] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def total_pushed(self) -> int:
        return sum(self.pushed.values())

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class DrainResult:
    """Result of draining the deletion queue."""

    deleted: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SeedResult:
    """Result of a full-collection seed."""

    seeded: dict[str, int] = field(default_factory=dict)
    bootstrapped: dict[str, int] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def total_seeded(self) -> int:
        return sum(self.seeded.values())

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class SyncResult:
    """Result of one sync cycle (deletions, then upserts)."""

    deletions: DrainResult
    push: PushResult

    @property
    def ok(self) -> bool:
        return self.deletions.ok and self.push.ok

    @property
    def errors(self) -> list[str]:
        errors = []
        if self.deletions.error:
            errors.append(f"deletions: {self.deletions.error}")
        errors.extend(f"{table}: {error}" for table, error in self.push.errors.items())
        return errors


# Type alias for status listeners
StatusCallback = Callable[[SyncState], None]

# Type alias for the pending-changes metric listener
PendingCallback = Callable[[int], None]
