# FILE: secretlink/cleanup.py
"""
Background removal of expired ledger records.

Redemption never depends on this: consumption checks expiry on its own.
Sweeping only keeps the tables small.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Optional

from .storage import LinkLedger

_log = logging.getLogger(__name__)


def sweep_expired_links(ledger: LinkLedger, now: Optional[datetime] = None) -> int:
    """Run one sweep; log the outcome and re-raise storage failures."""
    try:
        n = ledger.sweep(now)
    except Exception:
        _log.exception("expired link cleanup failed")
        raise
    if n > 0:
        _log.info("deleted %d expired links", n)
    else:
        _log.debug("no expired links found")
    return n


class ExpiredLinkSweeper:
    """
    Periodic sweeper on a daemon thread.

    start() sweeps once immediately, then every interval_s seconds until
    stop(). With interval_s <= 0 only the initial sweep runs. A failed sweep
    is logged and the next tick tries again.
    """

    def __init__(self, ledger: LinkLedger, interval_s: float = 300.0) -> None:
        self._ledger = ledger
        self._interval_s = float(interval_s)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="secretlink-sweeper",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        t = self._thread
        if t is not None:
            t.join(timeout)
        self._thread = None

    def run_once(self) -> int:
        self.runs += 1
        try:
            return sweep_expired_links(self._ledger)
        except Exception:
            self.failures += 1
            return 0

    def _run(self) -> None:
        _log.info("expired link sweeper starting (interval %.1fs)", self._interval_s)
        try:
            self.run_once()
            if self._interval_s <= 0:
                return
            while not self._stop.wait(self._interval_s):
                self.run_once()
        finally:
            _log.info("expired link sweeper stopping")
