"""Audit log writer.

Entries are append-only: written once, never mutated except for the
``syncStatus`` flip, never deleted.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from clinicsync.client.schema import AUDIT_LOGS

if TYPE_CHECKING:
    from clinicsync.client.records import RecordWriter
    from clinicsync.client.store import Entity

logger = logging.getLogger(__name__)


class AuditLogger:
    """Records user actions such as ``DELETE_PATIENT`` in the audit log."""

    def __init__(self, writer: RecordWriter) -> None:
        self._writer = writer

    def log_action(
        self,
        user: dict[str, Any] | None,
        action: str,
        details: str,
    ) -> Entity | None:
        """Write an audit entry, trying the remote store right away.

        The entry is always persisted locally; it stays ``pending`` when the
        immediate remote write fails or times out.

        Args:
            user: Acting user (needs ``uid``; ``displayName`` is recorded).
            action: Short action code, e.g. ``CREATE_PATIENT``.
            details: Human-readable description.

        Returns:
            The entry as written, or None if no user was given.
        """
        if not user or not user.get("uid"):
            logger.warning("Attempted to log action %s without a user: %s", action, details)
            return None

        entry: Entity = {
            "uid": f"log_{int(time.time() * 1000)}_{user['uid']}",
            "timestamp": datetime.now(timezone.utc),
            "userUid": user["uid"],
            "userDisplayName": user.get("displayName"),
            "action": action,
            "details": details,
        }
        status = self._writer.save_through(AUDIT_LOGS, entry)
        entry["syncStatus"] = status.value
        logger.debug("Audit %s by %s (%s)", action, user["uid"], status.value)
        return entry
