"""
Background renewal loop.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

from ..core.logging_config import get_logger
from ..db import utcnow
from .billing import BillingEngine, RenewalReport
from .payments import PaymentService

logger = get_logger(__name__)


class RenewalScheduler:
    """
    Runs the renewal cycle on a fixed interval as one long-lived task.

    A failing tick is logged and the loop carries on. Stopping waits for the
    tick in progress, so no subscription is left half-updated.
    """

    def __init__(self, engine: BillingEngine, payments: PaymentService, interval_seconds: float):
        self.engine = engine
        self.payments = payments
        self.interval_seconds = interval_seconds

        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._tick_lock = asyncio.Lock()

        self.ticks = 0
        self.failed_ticks = 0
        self.last_report: Optional[RenewalReport] = None
        self.last_run_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="renewal_scheduler")
        logger.info(f"Renewal scheduler started, interval {self.interval_seconds}s")

    async def stop(self, timeout: float = 30) -> None:
        if not self.is_running:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Renewal tick did not finish in time, cancelling")
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Renewal scheduler stopped")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def run_once(self, now: Optional[datetime] = None) -> Optional[RenewalReport]:
        """One tick: renewals, then payment reminders, then pending expiry."""
        now = now or utcnow()
        async with self._tick_lock:
            self.ticks += 1
            self.last_run_at = now
            report = None
            try:
                report = await self.engine.run_renewal_cycle(now)
                self.last_report = report
            except Exception as e:
                self.failed_ticks += 1
                logger.error(f"Renewal tick failed: {e}", exc_info=True)

            try:
                self.payments.send_payment_reminders(now)
                self.payments.expire_stale_pending_transactions(now)
            except Exception as e:
                logger.error(f"Pending transaction housekeeping failed: {e}", exc_info=True)
            return report

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "interval_seconds": self.interval_seconds,
            "ticks": self.ticks,
            "failed_ticks": self.failed_ticks,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_report": self.last_report.to_dict() if self.last_report else None,
        }
