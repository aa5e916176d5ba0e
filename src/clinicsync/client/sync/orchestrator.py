"""Sync orchestrator: decides when a sync cycle runs.

This module provides:
- SyncOrchestrator: status flag, periodic timer, connectivity and session
  handling around SyncEngine, PullEngine and LiveSync

A cycle is serialized against itself: ``trigger_sync`` is a no-op while a
cycle is in flight or while offline. Local writes are never blocked by a
cycle; rows changed mid-cycle are picked up by the next one.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from clinicsync.client.remote import RemoteError
from clinicsync.client.store import StoreError
from clinicsync.client.sync.types import StatusCallback, SyncError
from clinicsync.core.config import SyncSettings
from clinicsync.core.types import SyncState

if TYPE_CHECKING:
    from clinicsync.client.store import LocalStore
    from clinicsync.client.undo import UndoCoordinator
    from clinicsync.client.sync.engine import SyncEngine
    from clinicsync.client.sync.pull import LiveSync, PullEngine
    from clinicsync.client.sync.types import SeedResult

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """Runs sync cycles on a timer and on connectivity/session events.

    Usage:
        orchestrator = SyncOrchestrator(store, engine, pull, live)
        orchestrator.add_listener(lambda state: print(state.value))
        orchestrator.start_session({"uid": "u1", "displayName": "Ada"})
        ...
        orchestrator.set_online(False)  # timer and subscriptions stop
        orchestrator.set_online(True)   # immediate sync, timer restarts
        ...
        orchestrator.end_session()      # stops everything, clears local data
    """

    def __init__(
        self,
        store: LocalStore,
        engine: SyncEngine,
        pull: PullEngine | None = None,
        live: LiveSync | None = None,
        settings: SyncSettings | None = None,
        online: bool = True,
        undo: UndoCoordinator | None = None,
    ) -> None:
        self._store = store
        self._engine = engine
        self._pull = pull
        self._live = live
        self._settings = settings or SyncSettings()
        self._undo = undo

        self._lock = threading.RLock()
        self._status = SyncState.IDLE if online else SyncState.OFFLINE
        self._online = online
        self._in_flight = False
        self._last_sync: datetime | None = None
        self._last_error: str | None = None
        self._user: dict[str, Any] | None = None

        # Periodic timer thread
        self._stop_event = threading.Event()
        self._timer: threading.Thread | None = None

        self._listeners: list[StatusCallback] = []

    # === State ===

    @property
    def status(self) -> SyncState:
        return self._status

    @property
    def last_sync(self) -> datetime | None:
        return self._last_sync

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def is_syncing(self) -> bool:
        return self._in_flight

    @property
    def user(self) -> dict[str, Any] | None:
        return self._user

    @property
    def timer_running(self) -> bool:
        return self._timer is not None and self._timer.is_alive()

    def pending_changes_count(self) -> int:
        return self._engine.pending_changes_count()

    def add_listener(self, callback: StatusCallback) -> None:
        """Register a callback invoked with the new state on every change."""
        self._listeners.append(callback)

    def remove_listener(self, callback: StatusCallback) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _set_status(self, status: SyncState) -> None:
        with self._lock:
            if status == self._status:
                return
            self._status = status
        logger.debug("Sync status: %s", status.value)
        for callback in list(self._listeners):
            try:
                callback(status)
            except Exception:
                logger.exception("Status listener failed")

    # === Cycle ===

    def trigger_sync(self) -> bool:
        """Run one sync cycle in the calling thread.

        Returns:
            False if the cycle was skipped (already in flight or offline),
            True if it ran, whatever its outcome.
        """
        with self._lock:
            if self._in_flight or not self._online:
                return False
            self._in_flight = True
        self._set_status(SyncState.SYNCING)

        status = SyncState.ERROR
        try:
            self._engine.sync_all()
            status = SyncState.SYNCED
        except (SyncError, RemoteError) as e:
            logger.warning("Sync failed: %s", e)
            self._last_error = str(e)
        finally:
            if status == SyncState.SYNCED:
                self._last_sync = datetime.now(timezone.utc)
                self._last_error = None
            self._finish(status)
        return True

    def _finish(self, status: SyncState) -> None:
        with self._lock:
            self._in_flight = False
            if not self._online:
                # Connectivity was lost while the cycle ran
                status = SyncState.OFFLINE
        self._set_status(status)

    # === Timer ===

    def _start_timer(self) -> None:
        """(Re)start the periodic timer; its first tick syncs immediately."""
        self._stop_timer()
        with self._lock:
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._timer = threading.Thread(
                target=self._run_timer,
                args=(stop_event,),
                name="SyncTimer",
                daemon=True,
            )
            self._timer.start()
        logger.debug("Sync timer started (every %.0fs)", self._settings.sync_interval)

    def _stop_timer(self) -> None:
        with self._lock:
            timer = self._timer
            self._stop_event.set()
            self._timer = None
        if timer is not None and timer is not threading.current_thread():
            # An in-flight cycle is not cancelled; we only stop waiting on it
            timer.join(timeout=0.1)

    def _run_timer(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.trigger_sync()
            except StoreError as e:
                logger.error("Periodic sync aborted by local store failure: %s", e)
            if stop_event.wait(self._settings.sync_interval):
                break

    # === Connectivity and session ===

    def set_online(self, online: bool) -> None:
        """Report a connectivity change.

        Going online syncs immediately, restarts the timer and re-opens live
        subscriptions (if a session is active). Going offline stops both; a
        cycle already in flight is left to finish or fail on its own.
        """
        with self._lock:
            if online == self._online:
                return
            self._online = online
            has_session = self._user is not None

        if online:
            logger.info("Connectivity restored")
            if not self._in_flight:
                self._set_status(SyncState.IDLE)
            if has_session:
                self._resume()
        else:
            logger.info("Connectivity lost")
            self._stop_timer()
            if self._live is not None:
                self._live.unsubscribe_all()
            if not self._in_flight:
                self._set_status(SyncState.OFFLINE)

    def start_session(self, user: dict[str, Any], seed: bool = True) -> SeedResult | None:
        """Start a user session.

        Seeds the local store from the remote (when online and ``seed``),
        then opens live subscriptions and starts the timer, which syncs
        immediately.

        Returns:
            The seed result, or None if no seed ran.
        """
        with self._lock:
            self._user = user
            online = self._online
        logger.info("Session started for %s", user.get("uid"))

        result = None
        if online and seed and self._pull is not None:
            result = self._pull.seed_all()
        if online:
            self._resume()
        return result

    def end_session(self, clear: bool = True) -> None:
        """End the session: stop the timer and subscriptions, clear local data.

        A live undo toast is dismissed first, so a previous session's record
        can no longer be restored into the next one.
        """
        with self._lock:
            user = self._user
            self._user = None
        self._stop_timer()
        if self._live is not None:
            self._live.unsubscribe_all()
        if self._undo is not None:
            self._undo.dismiss_toast()
            self._undo.user = None
        if clear:
            self._store.clear_all()
        if user is not None:
            logger.info("Session ended for %s", user.get("uid"))
        if not self._in_flight:
            self._set_status(SyncState.IDLE if self._online else SyncState.OFFLINE)

    def _resume(self) -> None:
        if self._live is not None:
            try:
                self._live.subscribe_live()
            except RemoteError as e:
                logger.warning("Could not open live subscriptions: %s", e)
        self._start_timer()

    def stop(self) -> None:
        """Stop the timer and subscriptions without ending the session."""
        self._stop_timer()
        if self._live is not None:
            self._live.unsubscribe_all()
