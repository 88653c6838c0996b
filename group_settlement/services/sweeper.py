"""
Abandoned split sweeper.

Cancels split sessions left open or partially settled beyond the inactivity
window (diners walked away mid-payment). Each cancellation takes the
per-session lock and re-checks the split, so a payment arriving at the same
moment is never lost.

Can run:
1. As a background thread next to the request workers (start/stop)
2. As a periodic job (``group-settlement sweep``)
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from shared.config.logging import get_logger
from shared.config.settings import Settings, settings as default_settings
from shared.infrastructure.events import Notifier
from shared.infrastructure.locks import KeyedLockManager
from group_settlement.models import utcnow
from group_settlement.services.domain.settlement_service import SettlementService

logger = get_logger(__name__)


class SplitSweeper:
    """
    Periodically cancels abandoned split sessions.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        locks: KeyedLockManager,
        notifier: Notifier,
        config: Settings | None = None,
    ):
        self._session_factory = session_factory
        self._locks = locks
        self._notifier = notifier
        self._settings = config or default_settings
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def sweep_once(self, now: datetime | None = None) -> list[int]:
        """
        Run one pass. Returns the ids of the cancelled split sessions.
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self._settings.split_inactivity_timeout_seconds)
        cancelled = []

        db = self._session_factory()
        try:
            service = SettlementService(
                db, locks=self._locks, notifier=self._notifier, config=self._settings
            )
            for split_id, table_session_id in service.stale_split_ids(cutoff):
                db.rollback()
                try:
                    if service.cancel_if_abandoned(split_id, cutoff):
                        cancelled.append(split_id)
                except Exception as e:
                    # One bad split must not stop the pass
                    logger.error(
                        "Failed to cancel abandoned split session",
                        split_session_id=split_id,
                        table_session_id=table_session_id,
                        error=str(e),
                    )
        finally:
            db.close()

        if cancelled:
            logger.info("Abandoned split sessions cancelled", count=len(cancelled), split_session_ids=cancelled)
        return cancelled

    def start(self) -> None:
        """Start sweeping in a daemon thread."""
        if self.running:
            logger.warning("Split sweeper already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="split-sweeper", daemon=True)
        self._thread.start()
        logger.info("Split sweeper started", interval_seconds=self._settings.split_sweep_interval_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop the loop and wait for the current pass to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Split sweeper stopped")

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.sweep_once()
            except Exception as e:
                logger.error("Split sweeper error", error=str(e))
            self._stop_event.wait(self._settings.split_sweep_interval_seconds)
