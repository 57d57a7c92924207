# app/infra/unbid_monitor.py
"""
Unbid monitor: in-process periodic task that alerts dispatchers about
jobs still waiting for a first bid.

Each scan picks the oldest unassigned, non-cancelled jobs that have been
open for bids longer than ``alert_minutes`` and were never alerted.  A job
is claimed with a conditional update on ``unbid_alert_sent_at`` before the
alert goes out, so several instances can run the monitor without sending
duplicates.  A failure on one job is logged and the scan moves on.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable

from app.core.dispatch.domain import utcnow
from app.core.dispatch.ports import BidRepository, JobRepository
from app.core.dispatch.services import DispatchNotifier
from app.infra.logging_config import get_logger
from app.infra.metrics import DispatchMetrics, inc_counter

logger = get_logger(__name__)


class UnbidMonitor:
    """
    Usage:
        monitor = UnbidMonitor(jobs, bids, notifier, interval_seconds=60)
        await monitor.start()
        ...
        await monitor.stop()
    """

    def __init__(
        self,
        jobs: JobRepository,
        bids: BidRepository,
        notifier: DispatchNotifier,
        *,
        interval_seconds: float = 60.0,
        alert_minutes: int = 10,
        batch_size: int = 25,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._jobs = jobs
        self._bids = bids
        self._notifier = notifier
        self._interval = interval_seconds
        self._alert_minutes = alert_minutes
        self._batch_size = batch_size
        self._clock = clock
        self._task: asyncio.Task | None = None
        self._running = False
        self._scan_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="unbid_monitor")
        self._task.add_done_callback(self._on_task_done)
        logger.info(
            f"Unbid monitor started: interval={self._interval:g}s, "
            f"alert={self._alert_minutes}m, batch={self._batch_size}"
        )

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Unbid monitor stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.scan_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Unbid monitor scan failed: {exc}", exc_info=True)
                inc_counter("unbid_monitor_scan_errors")
            await asyncio.sleep(self._interval)

    async def scan_once(self) -> int:
        """Run one scan.  Returns the number of alerts sent; 0 if a scan is already running."""
        if self._scan_lock.locked():
            logger.debug("Unbid scan already in progress, skipping")
            return 0

        async with self._scan_lock:
            now = self._clock()
            cutoff = now - timedelta(minutes=self._alert_minutes)
            candidates = await self._jobs.list_unbid_candidates(cutoff, self._batch_size)

            alerted = 0
            for job in candidates:
                try:
                    if job.vendor_id:
                        continue
                    if await self._bids.count_for_job(job.id) > 0:
                        continue
                    if not await self._jobs.claim_unbid_alert(job.id, now):
                        continue

                    result = await self._notifier.unbid_alert(job, self._alert_minutes)
                    DispatchMetrics.unbid_alert(result)
                    alerted += 1
                    logger.info(f"Unbid alert sent ({result})", extra={"job_id": job.id})
                except Exception:
                    logger.error("Unbid monitor failed to process job", extra={"job_id": job.id}, exc_info=True)
                    DispatchMetrics.unbid_alert("error")

            return alerted

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Unbid monitor task died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
