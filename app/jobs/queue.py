"""Single-consumer FIFO queue serialising every outbound Ortto request.

Callers ``submit`` a coroutine factory and await its result. One drain task
takes requests in order, waits on the injected ``UpstreamRateLimiter`` and
runs them one at a time.

Throttling:
  - A request failing with ``UpstreamRateLimitError`` blocks the whole queue
    for ``Retry-After`` seconds (fallback when absent), resets the limiter
    window and goes back to the *head* of the queue.
  - A request throttled more than ``max_requeues`` times is rejected to its
    caller with the rate-limit error so it can be quarantined.
  - Any other failure is handed straight to the caller. No retries.
"""
from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Optional

from app.config import UPSTREAM_RATE_LIMIT
from app.integrations.base import UpstreamRateLimitError
from app.utils import get_logger
from app.utils.ratelimiter import UpstreamRateLimiter

logger = get_logger(__name__)

RequestFactory = Callable[[], Awaitable[Any]]


@dataclass(slots=True)
class QueuedRequest:
    call: RequestFactory
    future: asyncio.Future
    label: str = ""
    requeues: int = 0


class UpstreamRequestQueue:
    def __init__(
        self,
        limiter: UpstreamRateLimiter,
        *,
        retry_after_fallback: Optional[float] = None,
        max_requeues: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.limiter = limiter
        self.retry_after_fallback = float(
            retry_after_fallback if retry_after_fallback is not None else UPSTREAM_RATE_LIMIT["retry_after_fallback_seconds"]
        )
        self.max_requeues = int(max_requeues if max_requeues is not None else UPSTREAM_RATE_LIMIT["max_requeues"])
        self._sleep = sleep
        self._pending: Deque[QueuedRequest] = deque()
        self._drain_task: Optional[asyncio.Task] = None
        self._shutdown = False
        self._processed = 0
        self._throttled = 0

    # ----------------------------- public API ----------------------------- #
    async def submit(self, call: RequestFactory, *, label: str = "") -> Any:
        if self._shutdown:
            raise RuntimeError("Queue shutdown")
        loop = asyncio.get_running_loop()
        request = QueuedRequest(call=call, future=loop.create_future(), label=label)
        self._pending.append(request)
        self._ensure_drain(loop)
        return await request.future

    async def shutdown(self) -> None:
        self._shutdown = True
        task = self._drain_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        while self._pending:
            request = self._pending.popleft()
            if not request.future.done():
                request.future.set_exception(RuntimeError("Queue shutdown"))

    # ----------------------------- internals ----------------------------- #
    def _ensure_drain(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = loop.create_task(self._drain())

    async def _drain(self) -> None:
        while self._pending:
            request = self._pending.popleft()
            if request.future.done():
                # Caller went away (cancelled) while queued.
                continue
            try:
                await self._run(request)
            except asyncio.CancelledError:
                # Cancelled mid-call or mid Retry-After wait; the request is in no queue now.
                if not request.future.done():
                    request.future.set_exception(RuntimeError("Queue shutdown"))
                raise

    async def _run(self, request: QueuedRequest) -> None:
        await self.limiter.acquire()
        try:
            result = await request.call()
        except UpstreamRateLimitError as exc:
            self._throttled += 1
            self.limiter.reset_window()
            request.requeues += 1
            if request.requeues > self.max_requeues:
                logger.warning(
                    "Upstream request rejected after repeated throttling",
                    label=request.label,
                    requeues=request.requeues - 1,
                )
                if not request.future.done():
                    request.future.set_exception(exc)
                return
            wait = exc.retry_after if exc.retry_after is not None else self.retry_after_fallback
            logger.warning(
                "Upstream rate limit hit; pausing queue",
                label=request.label,
                retry_after_seconds=wait,
                requeues=request.requeues,
                depth=len(self._pending) + 1,
            )
            await self._sleep(wait)
            self._pending.appendleft(request)
        except Exception as exc:
            if not request.future.done():
                request.future.set_exception(exc)
        else:
            self._processed += 1
            if not request.future.done():
                request.future.set_result(result)

    # ----------------------------- inspection ----------------------------- #
    def depth(self) -> int:
        return len(self._pending)

    def __len__(self) -> int:  # pragma: no cover
        return self.depth()

    def snapshot(self) -> dict:
        return {
            "depth": self.depth(),
            "draining": self._drain_task is not None and not self._drain_task.done(),
            "processed": self._processed,
            "throttled": self._throttled,
            "shutdown": self._shutdown,
            "limiter": self.limiter.snapshot(),
        }


__all__ = ["UpstreamRequestQueue", "QueuedRequest"]
