"""
Scheduler — keep the catalog fresh without a caller asking for a bundle.

A BlockingScheduler (APScheduler 3.x) fires one synchronization cycle per cron
tick. Missed ticks are coalesced into a single run and two cycles never
overlap: a refresh rewrites the catalog, so running it twice at once would
only race on the lock.

A failed cycle is logged and left for the next tick; RemoteSync never
touches the cache marker on failure, so nothing needs undoing.

SIGINT/SIGTERM stop the scheduler and exit cleanly.
"""

from __future__ import annotations

import signal
import sys
import time
from collections.abc import Callable
from pathlib import Path

import structlog
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from certainty.result import FailureDescription, Result

log = structlog.get_logger()

JOB_ID = "certainty_refresh"

RefreshFn = Callable[[], Result[list[Path]]]


class RefreshJob:
    """One scheduled sync cycle, timed and logged."""

    def __init__(self, refresh_fn: RefreshFn) -> None:
        self._refresh_fn = refresh_fn

    def __call__(self) -> None:
        started = time.monotonic()
        try:
            result = self._refresh_fn()
        except Exception as e:
            # Keep the scheduler alive; the next tick starts from scratch.
            log.exception("scheduler.job_crashed", error=str(e), elapsed=self._since(started))
            return
        elapsed = self._since(started)
        result.either(
            on_success=lambda files: self._completed(files, elapsed),
            on_failure=lambda failure: self._failed(failure, elapsed),
        )

    @staticmethod
    def _since(started: float) -> float:
        return round(time.monotonic() - started, 3)

    @staticmethod
    def _completed(files: list[Path], elapsed: float) -> None:
        log.info("scheduler.job_completed", downloaded=[p.name for p in files], elapsed=elapsed)

    @staticmethod
    def _failed(failure: FailureDescription, elapsed: float) -> None:
        log.error("scheduler.job_failed", code=failure.code.value, failure=failure.message, elapsed=elapsed)


def create_scheduler(
    refresh_fn: RefreshFn,
    cron: str = "0 */6 * * *",
    run_on_startup: bool = True,
) -> BlockingScheduler:
    """
    Build (but do not start) the refresh scheduler.

    Args:
        refresh_fn: Zero-argument callable running one sync cycle.
        cron: Standard 5-field crontab expression.
        run_on_startup: Run one cycle right away, before the first tick.
    """
    job = RefreshJob(refresh_fn)
    scheduler = BlockingScheduler(job_defaults={"coalesce": True, "max_instances": 1})
    scheduler.add_job(
        job,
        trigger=CronTrigger.from_crontab(cron),
        id=JOB_ID,
        name="CA bundle catalog refresh",
        replace_existing=True,
    )

    if run_on_startup:
        log.info("scheduler.startup_run", cron=cron)
        job()

    _install_signal_handlers(scheduler)
    return scheduler


def _install_signal_handlers(scheduler: BlockingScheduler) -> None:
    def _stop(signum: int, frame: object) -> None:
        log.info("scheduler.stopping", signal=signal.Signals(signum).name)
        scheduler.shutdown(wait=False)
        sys.exit(0)

    for signum in (signal.SIGINT, signal.SIGTERM):
        signal.signal(signum, _stop)
