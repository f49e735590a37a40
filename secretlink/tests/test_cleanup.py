# secretlink/tests/test_cleanup.py
import logging
import threading
from datetime import datetime, timezone

import pytest

from secretlink.cleanup import ExpiredLinkSweeper, sweep_expired_links
from secretlink.storage import InMemoryLinkLedger, LedgerUnavailable
from secretlink.tokens import new_jti


def _utc(ts):
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class FlakyLedger(InMemoryLinkLedger):
    """Fails the first `failures` sweeps, then behaves."""

    def __init__(self, failures=1, **kwargs):
        super().__init__(**kwargs)
        self._failures = failures
        self.sweeps = threading.Semaphore(0)

    def sweep(self, now=None):
        self.sweeps.release()
        if self._failures > 0:
            self._failures -= 1
            raise LedgerUnavailable("locked")
        return super().sweep(now)


def test_sweep_expired_links_counts_and_logs(ledger, clock, caplog):
    ledger.create(new_jti(), 1, _utc(clock() - 1))
    ledger.create(new_jti(), 3, _utc(clock() - 1))
    keep = new_jti()
    ledger.create(keep, 1, _utc(clock() + 60))
    with caplog.at_level(logging.INFO, logger="secretlink.cleanup"):
        assert sweep_expired_links(ledger) == 2
    assert "deleted 2 expired links" in caplog.text
    assert ledger.peek(keep) is not None


def test_sweep_expired_links_reraises(clock, caplog):
    ledger = FlakyLedger(clock=clock)
    with caplog.at_level(logging.ERROR, logger="secretlink.cleanup"):
        with pytest.raises(LedgerUnavailable):
            sweep_expired_links(ledger)
    assert "expired link cleanup failed" in caplog.text


def test_run_once_survives_failure(clock):
    ledger = FlakyLedger(clock=clock)
    ledger.create(new_jti(), 1, _utc(clock() - 1))
    sweeper = ExpiredLinkSweeper(ledger, interval_s=0)
    assert sweeper.run_once() == 0
    assert sweeper.failures == 1
    assert sweeper.run_once() == 1
    assert sweeper.runs == 2
    assert sweeper.failures == 1


def test_sweeper_sweeps_immediately_on_start(clock):
    ledger = InMemoryLinkLedger(clock=clock)
    jti = new_jti()
    ledger.create(jti, 1, _utc(clock() - 1))
    sweeper = ExpiredLinkSweeper(ledger, interval_s=0)
    sweeper.start()
    sweeper.stop(timeout=5)
    assert ledger.peek(jti) is None
    assert sweeper.runs == 1
    assert not sweeper.running


def test_sweeper_retries_after_failure(clock):
    ledger = FlakyLedger(failures=1, clock=clock)
    sweeper = ExpiredLinkSweeper(ledger, interval_s=0.01)
    sweeper.start()
    try:
        for _ in range(3):
            assert ledger.sweeps.acquire(timeout=5)
        assert sweeper.running
    finally:
        sweeper.stop(timeout=5)
    assert not sweeper.running
    assert sweeper.failures == 1
    assert sweeper.runs >= 3


def test_start_is_idempotent(clock):
    ledger = FlakyLedger(failures=0, clock=clock)
    sweeper = ExpiredLinkSweeper(ledger, interval_s=60)
    sweeper.start()
    try:
        assert ledger.sweeps.acquire(timeout=5)
        first = sweeper._thread
        sweeper.start()
        assert sweeper._thread is first
    finally:
        sweeper.stop(timeout=5)
    assert not sweeper.running
