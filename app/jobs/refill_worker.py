"""Background worker that fills the report cache for a list of items.

Runs fire-and-forget on the event loop. Cache and ledger calls are handed to
the threadpool so a slow database round trip never stalls the loop. Items are
processed in fixed-size batches, one at a time, with a growing delay while
upstream keeps throttling. Each result is written to the cache as soon as it
arrives. Failures are logged and never raised to whoever spawned the run.

``RefillRegistry`` keeps at most one running worker per (user, timeframe):
a second trigger for the same key folds its items into the running job.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional

from fastapi.concurrency import run_in_threadpool

from app.config import BACKGROUND_REFILL
from app.integrations.base import ReportSource
from app.jobs.refill_job import RefillJob
from app.services.rate_limit_ledger import RateLimitLedger
from app.services.report_cache import PartialCacheStore
from app.services.report_fetcher import ReportFetcher
from app.utils import get_logger, log_business_event
from app.utils.backoff import RefillBackoff

logger = get_logger(__name__)


@dataclass
class RefillSummary:
    key: str
    batches: int = 0
    fetched: int = 0
    rate_limited: int = 0
    failed: int = 0
    skipped: int = 0
    cooldowns: int = 0
    delays: list[float] = field(default_factory=list)
    error: Optional[str] = None
    duration_ms: float = 0.0


class BackgroundRefillWorker:
    def __init__(
        self,
        source: ReportSource,
        cache: PartialCacheStore,
        ledger: RateLimitLedger,
        *,
        batch_size: Optional[int] = None,
        batch_cooldown_seconds: Optional[float] = None,
        backoff_factory: Callable[[], RefillBackoff] = RefillBackoff.from_config,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.source = source
        self.cache = cache
        self.ledger = ledger
        self.batch_size = int(batch_size or BACKGROUND_REFILL["batch_size"])
        self.batch_cooldown_seconds = float(
            batch_cooldown_seconds if batch_cooldown_seconds is not None else BACKGROUND_REFILL["batch_cooldown_seconds"]
        )
        self._backoff_factory = backoff_factory
        self._sleep = sleep

    async def run(self, job: RefillJob) -> RefillSummary:
        summary = RefillSummary(key=job.key())
        start = time.time()
        logger.info(
            "Background refill started",
            user_id=job.user_id,
            timeframe=job.timeframe,
            items=len(job.items),
            correlation_id=job.correlation_id,
        )
        try:
            await self._process(job, summary)
        except Exception as e:
            summary.error = str(e)
            logger.error("Background refill failed", key=summary.key, error=str(e), exc_info=True)
        summary.duration_ms = (time.time() - start) * 1000
        log_business_event(
            "refill_completed",
            {
                "timeframe": job.timeframe,
                "batches": summary.batches,
                "fetched": summary.fetched,
                "rate_limited": summary.rate_limited,
                "failed": summary.failed,
                "skipped": summary.skipped,
                "duration_ms": round(summary.duration_ms, 2),
            },
            user_id=job.user_id,
            request_id=job.correlation_id,
        )
        return summary

    async def _process(self, job: RefillJob, summary: RefillSummary) -> None:
        fetcher = ReportFetcher(self.source)
        backoff = self._backoff_factory()
        first_request = True

        while True:
            batch = job.next_batch(self.batch_size)
            if not batch:
                return
            summary.batches += 1
            screen = await run_in_threadpool(self.ledger.filter, job.user_id, job.timeframe, batch)
            if screen.blocked:
                summary.skipped += len(screen.blocked)
                logger.info(
                    "Skipping quarantined items",
                    key=summary.key,
                    blocked=len(screen.blocked),
                    batch=summary.batches,
                )

            throttled = []
            for item in screen.available:
                if not first_request:
                    delay = backoff.next_delay()
                    summary.delays.append(delay)
                    await self._sleep(delay)
                first_request = False

                outcome = await fetcher.fetch(item, job.timeframe)
                if outcome.success:
                    backoff.record_success()
                    summary.fetched += 1
                elif outcome.rate_limited:
                    throttled.append(item)
                    summary.rate_limited += 1
                    if backoff.record_rate_limited():
                        summary.cooldowns += 1
                        logger.warning(
                            "Repeated upstream throttling; cooling down",
                            key=summary.key,
                            cooldown_seconds=backoff.long_cooldown,
                        )
                        await self._sleep(backoff.long_cooldown)
                else:
                    summary.failed += 1

                if outcome.record is not None:
                    await run_in_threadpool(self.cache.write, job.user_id, job.timeframe, [outcome.record])

            if throttled:
                await run_in_threadpool(self.ledger.record, job.user_id, job.timeframe, throttled)
                if job.remaining:
                    logger.info(
                        "Batch had throttled items; pausing before next batch",
                        key=summary.key,
                        cooldown_seconds=self.batch_cooldown_seconds,
                    )
                    await self._sleep(self.batch_cooldown_seconds)


@dataclass
class _Running:
    job: RefillJob
    task: asyncio.Task


class RefillRegistry:
    """Tracks running refill tasks, one per (user, timeframe)."""

    def __init__(self) -> None:
        self._running: Dict[str, _Running] = {}

    def spawn(self, job: RefillJob, worker: BackgroundRefillWorker) -> bool:
        """Start ``worker`` on ``job`` unless one is running for the same key.

        Returns True when a new task was started. Otherwise the job's items are
        appended to the running job.
        """
        key = job.key()
        current = self._running.get(key)
        if current is not None and not current.task.done():
            added = current.job.extend(job.items)
            logger.info("Refill already running; merged items", key=key, added=added, remaining=current.job.remaining)
            return False

        task = asyncio.get_running_loop().create_task(worker.run(job), name=key)
        self._running[key] = _Running(job=job, task=task)
        task.add_done_callback(lambda t, k=key: self._discard(k, t))
        return True

    def _discard(self, key: str, task: asyncio.Task) -> None:
        current = self._running.get(key)
        if current is not None and current.task is task:
            del self._running[key]

    def is_running(self, user_id: str, timeframe: str) -> bool:
        current = self._running.get(RefillJob(user_id, timeframe).key())
        return current is not None and not current.task.done()

    def get_task(self, user_id: str, timeframe: str) -> Optional[asyncio.Task]:
        current = self._running.get(RefillJob(user_id, timeframe).key())
        return current.task if current is not None else None

    def running(self) -> list[dict]:
        return [
            {
                "user_id": r.job.user_id,
                "timeframe": r.job.timeframe,
                "items": len(r.job.items),
                "remaining": r.job.remaining,
            }
            for r in self._running.values()
            if not r.task.done()
        ]

    async def shutdown(self) -> None:
        tasks = [r.task for r in self._running.values() if not r.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled running refill tasks", count=len(tasks))
        self._running.clear()


__all__ = ["BackgroundRefillWorker", "RefillRegistry", "RefillSummary"]
