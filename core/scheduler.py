"""Background controller that triggers sync passes on events and on a timer."""
from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Optional

from core.sync_engine import SyncEngine, SyncResult

logger = logging.getLogger(__name__)


StatusPayload = Dict[str, object]
StatusCallback = Callable[[str, StatusPayload], None]


class SyncScheduler:
    """Run :meth:`SyncEngine.sync_all` when connectivity or visibility changes.

    The periodic timer only syncs while the client is visible, and regaining
    visibility only syncs when the last successful sync is older than
    ``stale_after_seconds``. With ``background=False`` triggers run on the
    calling thread, which is what the command line and tests use.
    """

    def __init__(
        self,
        engine: SyncEngine,
        *,
        interval_seconds: float = 600,
        stale_after_seconds: float = 300,
        visible: bool = True,
        background: bool = True,
        status_callback: Optional[StatusCallback] = None,
    ) -> None:
        self._engine = engine
        self._interval = max(1.0, float(interval_seconds))
        self._stale_after = float(stale_after_seconds)
        self._visible = visible
        self._background = background
        self._status_callback = status_callback
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def visible(self) -> bool:
        return self._visible

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="sync-timer", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2)
            self._thread = None

    def join(self, timeout: Optional[float] = None) -> None:
        """Block until the timer thread stops or ``timeout`` elapses."""

        thread = self._thread
        if thread is not None:
            thread.join(timeout)

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self.tick()
            except Exception:  # pragma: no cover - timer thread guard
                logger.exception("Periodic sync tick failed")
                self._notify_status("error", {"message": "unexpected failure"})

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------
    def tick(self) -> Optional[SyncResult]:
        """Timer trigger: sync only while the client is visible."""

        if not self._visible:
            logger.debug("Skipping periodic sync - client hidden")
            return None
        return self._trigger("timer")

    def handle_online(self) -> Optional[SyncResult]:
        self._engine.set_online(True)
        self._notify_status("online", {})
        return self._trigger("online")

    def handle_offline(self) -> None:
        self._engine.set_online(False)
        self._notify_status("offline", {})

    def handle_visibility(self, visible: bool) -> Optional[SyncResult]:
        self._visible = visible
        if not visible:
            return None
        elapsed = self._engine.seconds_since_last_sync()
        if elapsed is not None and elapsed <= self._stale_after:
            logger.debug("Visible again; last sync %.0fs ago, not stale", elapsed)
            return None
        return self._trigger("visibility")

    def _trigger(self, reason: str) -> Optional[SyncResult]:
        logger.info("Sync triggered by %s", reason)
        if self._background:
            threading.Thread(target=self._execute, args=(reason,), daemon=True).start()
            return None
        return self._execute(reason)

    def _execute(self, reason: str) -> SyncResult:
        result = self._engine.sync_all()
        payload: StatusPayload = {"reason": reason, "result": result}
        if result.skipped:
            self._notify_status("skipped", payload)
        elif result.ok:
            self._notify_status("synced", payload)
        else:
            self._notify_status("failed", payload)
        return result

    def _notify_status(self, status: str, payload: StatusPayload) -> None:
        if self._status_callback:
            try:
                self._status_callback(status, payload)
            except Exception:  # pragma: no cover - UI callback guard
                logger.debug("Sync status callback failed", exc_info=True)


__all__ = ["SyncScheduler"]
