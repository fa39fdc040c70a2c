# /crm_dialer/utils/queue.py

import asyncio
import inspect
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set

from crm_dialer.errors import CapacityExceeded, DispatchError
from crm_dialer.utils.metrics import (
    dispatch_batches_counter,
    dispatch_inflight_gauge,
    dispatch_queue_depth_gauge,
    token_wait_histogram,
)
from crm_dialer.utils.rate_limiter import TokenBucket

# Bounded, rate-controlled batch pipeline in front of the dialer and CRM APIs.
# A bounded buffer absorbs bursts, a token bucket decides how fast batches are
# released, and a semaphore caps how many are in flight at once.

logger = logging.getLogger(__name__)

BatchHandler = Callable[[List[Any]], Awaitable[Any]]
BatchCallback = Callable[["BatchRequest", Optional[BaseException]], Any]


@dataclass
class BatchRequest:
    request_type: str
    entities: List[Any]
    callback: Optional[BatchCallback] = None
    index: int = 0
    total: int = 1
    submitted_at: float = field(default_factory=time.monotonic)


def split_batches(entities: List[Any], batch_size: int) -> List[List[Any]]:
    """Order-preserving split into slices of at most `batch_size` entities."""
    if batch_size <= 0:
        raise ValueError("batch_size must be greater than zero")
    return [entities[i:i + batch_size] for i in range(0, len(entities), batch_size)]


class RateLimitedDispatchQueue:
    def __init__(
        self,
        token_bucket: TokenBucket,
        max_batch_size: int = 200,
        capacity: int = 1000,
        max_concurrency: Optional[int] = None,
        handlers: Optional[Dict[str, BatchHandler]] = None,
    ):
        self.token_bucket = token_bucket
        self.max_batch_size = max_batch_size
        self.capacity = capacity
        self.max_concurrency = max_concurrency or token_bucket.rate
        self.handlers: Dict[str, BatchHandler] = dict(handlers or {})
        self.running = False

        self._buffer: Deque[BatchRequest] = deque()
        self._changed = asyncio.Condition()
        self._slots = asyncio.Semaphore(self.max_concurrency)
        self._accepting = False
        self._closing = False
        self._dispatcher: Optional[asyncio.Task] = None
        self._workers: Set[asyncio.Task] = set()

    def register_handler(self, request_type: str, handler: BatchHandler):
        self.handlers[request_type] = handler

    @property
    def depth(self) -> int:
        return len(self._buffer)

    @property
    def in_flight(self) -> int:
        return len(self._workers)

    async def start_workers(self):
        if self.running:
            return
        self.running = True
        self._accepting = True
        self._closing = False
        self._dispatcher = asyncio.create_task(self._dispatch_loop())
        logger.info(
            f"Dispatch queue started: {self.token_bucket.rate} req/s, "
            f"batch<={self.max_batch_size}, capacity={self.capacity}, concurrency={self.max_concurrency}."
        )

    async def submit(
        self,
        request_type: str,
        entities: Iterable[Any],
        *,
        batch_size: Optional[int] = None,
        timeout: Optional[float] = None,
        callback: Optional[BatchCallback] = None,
    ) -> int:
        """
        Splits `entities` into batches and enqueues all of them, or none.

        Blocks while the buffer is full. Raises CapacityExceeded when the
        batches cannot fit before `timeout` (or can never fit), DispatchError
        for unknown request types or a stopped queue. Cancelling the caller
        leaves nothing enqueued. Returns the number of batches enqueued.
        """
        if request_type not in self.handlers:
            raise DispatchError(f"No handler registered for request type '{request_type}'", action_type=request_type)
        if not self._accepting:
            raise DispatchError("Dispatch queue is not accepting submissions", action_type=request_type)

        items = list(entities)
        if not items:
            return 0
        size = min(batch_size or self.max_batch_size, self.max_batch_size)
        slices = split_batches(items, size)
        if len(slices) > self.capacity:
            raise CapacityExceeded(
                f"{len(slices)} batches exceed the queue capacity of {self.capacity}", action_type=request_type
            )
        batches = [
            BatchRequest(request_type=request_type, entities=chunk, callback=callback, index=i, total=len(slices))
            for i, chunk in enumerate(slices)
        ]

        async with self._changed:
            try:
                await asyncio.wait_for(
                    self._changed.wait_for(
                        lambda: not self._accepting or self.capacity - len(self._buffer) >= len(batches)
                    ),
                    timeout,
                )
            except asyncio.TimeoutError:
                raise CapacityExceeded(
                    f"Dispatch queue full: {len(batches)} batch(es) not accepted within {timeout}s",
                    action_type=request_type,
                ) from None
            if not self._accepting:
                raise DispatchError("Dispatch queue stopped while waiting for capacity", action_type=request_type)

            self._buffer.extend(batches)
            dispatch_queue_depth_gauge.set(len(self._buffer))
            self._changed.notify_all()

        logger.debug(f"Enqueued {len(batches)} '{request_type}' batch(es) for {len(items)} entities.")
        return len(batches)

    async def stop_workers(self, drain: bool = True, timeout: Optional[float] = None):
        """
        Stops accepting work. With `drain` the buffered batches are still
        released at the configured rate; otherwise they are reported as failed.
        In-flight batches are always allowed to finish within `timeout`.
        """
        if not self.running:
            return
        deadline = None if timeout is None else time.monotonic() + timeout
        self._accepting = False

        dropped: List[BatchRequest] = []
        async with self._changed:
            if not drain:
                dropped = list(self._buffer)
                self._buffer.clear()
                dispatch_queue_depth_gauge.set(0)
            self._closing = True
            self._changed.notify_all()

        if self._dispatcher is not None:
            done, _ = await asyncio.wait({self._dispatcher}, timeout=_remaining(deadline))
            if not done:
                self._dispatcher.cancel()
                await asyncio.gather(self._dispatcher, return_exceptions=True)
                async with self._changed:
                    dropped.extend(self._buffer)
                    self._buffer.clear()
                    dispatch_queue_depth_gauge.set(0)
            self._dispatcher = None

        for batch in dropped:
            await self._complete(batch, DispatchError("Batch dropped: dispatch queue stopped", action_type=batch.request_type))
        if dropped:
            logger.error(f"Dispatch queue stopped with {len(dropped)} undelivered batch(es).")

        if self._workers:
            workers = set(self._workers)
            done, pending = await asyncio.wait(workers, timeout=_remaining(deadline))
            if pending:
                logger.error(f"{len(pending)} dispatch worker(s) still running at shutdown deadline; cancelling.")
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        self.running = False
        logger.info("Dispatch queue stopped.")

    async def _dispatch_loop(self):
        while True:
            async with self._changed:
                await self._changed.wait_for(lambda: self._buffer or self._closing)
                if not self._buffer:
                    return

            await self._slots.acquire()
            try:
                waited = await self.token_bucket.acquire()
            except BaseException:
                self._slots.release()
                raise
            token_wait_histogram.observe(waited)

            async with self._changed:
                if not self._buffer:
                    self._slots.release()
                    continue
                batch = self._buffer.popleft()
                dispatch_queue_depth_gauge.set(len(self._buffer))
                self._changed.notify_all()

            task = asyncio.create_task(self._run_batch(batch))
            self._workers.add(task)
            task.add_done_callback(self._workers.discard)

    async def _run_batch(self, batch: BatchRequest):
        error: Optional[BaseException] = None
        dispatch_inflight_gauge.inc()
        try:
            await self.handlers[batch.request_type](batch.entities)
        except Exception as e:
            error = e
        finally:
            dispatch_inflight_gauge.dec()
            self._slots.release()
        await self._complete(batch, error)

    async def _complete(self, batch: BatchRequest, error: Optional[BaseException]):
        status = "success" if error is None else "error"
        dispatch_batches_counter.labels(request_type=batch.request_type, status=status).inc()
        if error is None:
            logger.info(
                f"Batch {batch.index + 1}/{batch.total} of '{batch.request_type}' "
                f"({len(batch.entities)} entities) processed."
            )
        else:
            logger.error(
                f"Batch {batch.index + 1}/{batch.total} of '{batch.request_type}' "
                f"({len(batch.entities)} entities) failed: {error}"
            )

        if batch.callback is None:
            return
        try:
            result = batch.callback(batch, error)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Completion callback for '{batch.request_type}' batch raised: {e}", exc_info=True)


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())
