"""
Polling scheduler.

One loop drives every gateway family concurrently. Each cycle first asks
the store whether anything is pending inside the lookback window, then:

- atlantic: status check per transaction older than the webhook grace delay
- qiospay / orderkuota: one mutation-feed fetch per bot, shared by all of
  that bot's pending transactions

The interval is short while pending transactions exist and long when idle.
"""
import asyncio
import signal
import time
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog

from qris_reconciler.config import Settings, get_settings
from qris_reconciler.core.reconciliation import FEED_FAMILIES, ReconciliationEngine
from qris_reconciler.database.connection import close_db
from qris_reconciler.database.models import Transaction, family_codes
from qris_reconciler.database.repository import TransactionRepository
from qris_reconciler.monitoring.logging import setup_logging
from qris_reconciler.monitoring.metrics import metrics
from qris_reconciler.timeutils import utcnow

logger = structlog.get_logger(__name__)

POLLED_FAMILIES = ("atlantic",) + FEED_FAMILIES


def group_by_bot(transactions: List[Transaction]) -> Dict[int, List[Transaction]]:
    """Group transactions by bot, keeping FIFO order inside each group."""
    groups: Dict[int, List[Transaction]] = OrderedDict()
    for transaction in transactions:
        groups.setdefault(transaction.bot_id, []).append(transaction)
    return groups


class PollingScheduler:
    """
    Adaptive-interval polling loop over all gateway families.

    Shutdown is cooperative: ``stop()`` lets the current cycle drain and
    wakes the inter-cycle sleep immediately.
    """

    def __init__(
        self,
        engine: Optional[ReconciliationEngine] = None,
        repository: Optional[TransactionRepository] = None,
        settings: Optional[Settings] = None,
        interval: Optional[float] = None,
        idle_interval: Optional[float] = None,
    ):
        """
        Initialize scheduler.

        Args:
            engine: Reconciliation engine
            repository: Transaction store (defaults to the engine's)
            settings: Optional settings
            interval: Seconds between cycles while payments are pending
            idle_interval: Seconds between cycles when nothing is pending
        """
        self.settings = settings or get_settings()
        self.engine = engine or ReconciliationEngine(settings=self.settings)
        self.repository = repository or self.engine.repository
        self.interval = interval if interval is not None else self.settings.poll_interval_seconds
        self.idle_interval = (
            idle_interval if idle_interval is not None else self.settings.idle_interval_seconds
        )
        self._running = False
        self._stop_event = asyncio.Event()

        logger.info(
            "polling_scheduler_initialized",
            interval=self.interval,
            idle_interval=self.idle_interval,
            lookback_minutes=self.settings.lookback_minutes,
        )

    def next_interval(self, busy: bool) -> float:
        return self.interval if busy else self.idle_interval

    async def poll_atlantic(self, since: datetime, now: datetime) -> int:
        """
        Status-check Atlantic transactions the webhook has not settled.

        Only transactions older than the fallback delay are checked, which
        leaves the webhook its chance first.

        Returns:
            int: Number of transactions settled
        """
        start = time.time()
        created_before = now - timedelta(seconds=self.settings.atlantic_fallback_delay_seconds)
        pending = await self.repository.list_pending(
            family_codes("atlantic"), since, created_before=created_before
        )
        pending = [t for t in pending if t.payment_ref]

        settled = 0
        for transaction in pending:
            if await self.engine.reconcile_status(transaction):
                settled += 1

        metrics.record_poll_cycle("atlantic", time.time() - start, len(pending))
        if pending:
            logger.info("atlantic_poll_completed", checked=len(pending), settled=settled)
        return settled

    async def poll_feed(self, family: str, since: datetime) -> int:
        """
        Reconcile one feed-based family, one statement fetch per bot.

        Returns:
            int: Number of transactions settled
        """
        start = time.time()
        pending = await self.repository.list_pending(family_codes(family), since)

        settled = 0
        for bot_id, transactions in group_by_bot(pending).items():
            result = await self.engine.reconcile_scope(family, bot_id, transactions)
            settled += len(result.matched)

        metrics.record_poll_cycle(family, time.time() - start, len(pending))
        if pending:
            logger.info(
                "feed_poll_completed",
                gateway=family,
                checked=len(pending),
                settled=settled,
            )
        return settled

    async def run_cycle(self) -> bool:
        """
        Run one polling cycle across all families.

        Returns:
            bool: True if pending transactions existed (busy interval next)
        """
        now = utcnow()
        since = now - timedelta(minutes=self.settings.lookback_minutes)

        if not await self.repository.has_pending(since):
            logger.debug("poll_cycle_idle")
            return False

        results = await asyncio.gather(
            self.poll_atlantic(since, now),
            *(self.poll_feed(family, since) for family in FEED_FAMILIES),
            return_exceptions=True,
        )

        for family, result in zip(POLLED_FAMILIES, results):
            if isinstance(result, Exception):
                logger.error(
                    "poll_family_failed",
                    gateway=family,
                    error=str(result),
                    error_type=type(result).__name__,
                )

        return True

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def start(self) -> None:
        """Run cycles until stopped."""
        self._running = True
        logger.info("polling_scheduler_started")

        try:
            while self._running:
                busy = False
                try:
                    busy = await self.run_cycle()
                except Exception as e:
                    logger.error("poll_cycle_error", error=str(e), error_type=type(e).__name__)

                if not self._running:
                    break
                await self._sleep(self.next_interval(busy))

        finally:
            logger.info("polling_scheduler_stopped")

    def stop(self) -> None:
        """Stop after the current cycle."""
        self._running = False
        self._stop_event.set()
        logger.info("polling_scheduler_stop_requested")


async def start_polling_scheduler(
    interval: Optional[float] = None,
    idle_interval: Optional[float] = None,
    once: bool = False,
) -> None:
    """
    Start the polling daemon.

    Args:
        interval: Busy interval override in seconds
        idle_interval: Idle interval override in seconds
        once: Run a single cycle and exit
    """
    setup_logging()

    logger.info("polling_daemon_starting", interval=interval, idle_interval=idle_interval, once=once)

    scheduler = PollingScheduler(interval=interval, idle_interval=idle_interval)

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("polling_daemon_shutdown_signal_received", signal=sig)
        scheduler.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        if once:
            await scheduler.run_cycle()
        else:
            await scheduler.start()
    except Exception as e:
        logger.error("polling_daemon_error", error=str(e))
        raise
    finally:
        await scheduler.engine.replay_cache.close()
        await close_db()
        logger.info("polling_daemon_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Payment polling daemon")
    parser.add_argument(
        "--interval", type=float, default=None, help="Seconds between cycles while payments are pending"
    )
    parser.add_argument(
        "--idle-interval", type=float, default=None, help="Seconds between cycles when idle"
    )
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    args = parser.parse_args()

    asyncio.run(
        start_polling_scheduler(
            interval=args.interval, idle_interval=args.idle_interval, once=args.once
        )
    )


if __name__ == "__main__":
    main()
