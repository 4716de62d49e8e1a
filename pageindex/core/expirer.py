"""Periodic eviction of stale visits and orphaned favicons."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from pageindex.core.storage import DB

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 3 * 60
DEFAULT_RETENTION_SECONDS = 90 * 24 * 60 * 60


@dataclass
class ExpireResult:
    """Counts from one sweep. A failed step leaves its count at 0."""

    cutoff: int
    pages_deleted: int = 0
    favicons_deleted: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "cutoff": self.cutoff,
            "pages_deleted": self.pages_deleted,
            "favicons_deleted": self.favicons_deleted,
            "errors": list(self.errors),
        }


class Expirer:
    """Owns the expiration schedule.

    One daemon thread wakes every ``interval_seconds`` and runs a sweep.
    Sweeps never overlap: a call that finds one in flight is skipped.
    """

    def __init__(
        self,
        db: DB,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db = db
        self.retention_seconds = retention_seconds
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._sweep_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the timer thread. No-op if already running."""
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="pageindex-expirer", daemon=True)
        self._thread.start()
        logger.info(f"Expirer started (every {self.interval_seconds}s, retention {self.retention_seconds}s)")

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop the timer thread and wait for an in-flight sweep to finish."""
        thread = self._thread
        if thread is None:
            return
        self._stop.set()
        thread.join(timeout)
        self._thread = None
        logger.info("Expirer stopped")

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception:
                logger.exception("Expiration sweep crashed")

    def run_once(self) -> ExpireResult | None:
        """Run both sweeps now.

        Returns None without doing anything if another sweep is in flight.
        """
        if not self._sweep_lock.acquire(blocking=False):
            logger.debug("Expiration sweep still running, skipping tick")
            return None
        try:
            return self._sweep()
        finally:
            self._sweep_lock.release()

    def _sweep(self) -> ExpireResult:
        result = ExpireResult(cutoff=int(self._clock()) - self.retention_seconds)

        pages = self._db.execute(
            "DELETE FROM autocomplete_page WHERE last_visited < ?",
            (result.cutoff,),
        )
        if pages.ok:
            result.pages_deleted = pages.rowcount
        else:
            result.errors.append("pages")

        favicons = self._db.execute(
            """
            DELETE FROM favicon WHERE id NOT IN (
              SELECT DISTINCT favicon_id
              FROM autocomplete_page
              WHERE favicon_id IS NOT NULL
            )
            """
        )
        if favicons.ok:
            result.favicons_deleted = favicons.rowcount
        else:
            result.errors.append("favicons")

        if result.errors:
            logger.warning(f"Expiration sweep failed for: {', '.join(result.errors)}")
        if result.pages_deleted or result.favicons_deleted:
            logger.info(
                f"Expired {result.pages_deleted} pages and "
                f"{result.favicons_deleted} orphaned favicons"
            )
        return result
