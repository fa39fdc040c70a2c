# /crm_dialer/services/batch_processor.py

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, TypedDict

from crm_dialer.errors import DispatchError
from crm_dialer.models.domain import LeadUpdate
from crm_dialer.utils.metrics import (
    coalescer_chunk_counter,
    coalescer_flush_counter,
    pending_updates_gauge,
)

# Coalesces lead updates produced by flows so that many changes to the same
# lead within one window become a single CRM entity in a single batch call.

logger = logging.getLogger(__name__)

ChunkSender = Callable[[List[Dict[str, Any]]], Awaitable[Any]]


class FlushResult(TypedDict):
    flushed: int
    chunks: int
    failed_chunks: int
    errors: List[str]


class LeadBatchProcessor:
    """
    Pending lead updates keyed by lead id.

    Every mutation of the pending set happens under one asyncio.Lock with no
    awaits inside the critical section, so a flush swaps the whole set out
    atomically and later updates start a fresh window.
    """

    def __init__(
        self,
        send_chunk: ChunkSender,
        flush_threshold: int = 100,
        window_seconds: float = 5.0,
        max_batch_size: int = 200,
    ):
        self.send_chunk = send_chunk
        self.flush_threshold = flush_threshold
        self.window_seconds = window_seconds
        self.max_batch_size = max_batch_size
        self._pending: Dict[int, LeadUpdate] = {}
        self._lock = asyncio.Lock()
        self._ticker: Optional[asyncio.Task] = None
        self._flush_tasks: Set[asyncio.Task] = set()
        self._active_flushes = 0
        self._stopped = False

    @property
    def state(self) -> str:
        if self._active_flushes:
            return "flushing"
        return "accumulating" if self._pending else "idle"

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def start(self):
        if self._ticker is not None:
            return
        self._stopped = False
        self._ticker = asyncio.create_task(self._run_ticker())
        logger.info(f"Lead batch processor started (window={self.window_seconds}s, threshold={self.flush_threshold}).")

    async def add_update(self, update: LeadUpdate) -> None:
        if self._stopped:
            raise DispatchError(f"Lead batch processor is stopped; update for lead {update.lead_id} rejected", action_type="update_lead")

        async with self._lock:
            existing = self._pending.get(update.lead_id)
            if existing is None:
                self._pending[update.lead_id] = update.model_copy(deep=True)
            else:
                existing.merge(update)
            size = len(self._pending)
            pending_updates_gauge.set(size)

        if size >= self.flush_threshold:
            self._schedule_flush()

    async def flush(self, trigger: str = "manual") -> FlushResult:
        """
        Drains the pending set and sends it downstream in chunks of at most
        `max_batch_size`. A failing chunk is logged and counted while the
        remaining chunks still go out.
        """
        async with self._lock:
            batch = list(self._pending.values())
            self._pending = {}
            pending_updates_gauge.set(0)

        result: FlushResult = {"flushed": 0, "chunks": 0, "failed_chunks": 0, "errors": []}
        if not batch:
            return result

        coalescer_flush_counter.labels(trigger=trigger).inc()
        logger.info(f"Flushing {len(batch)} lead update(s) (trigger={trigger}).")

        chunks = [batch[i:i + self.max_batch_size] for i in range(0, len(batch), self.max_batch_size)]
        self._active_flushes += 1
        try:
            for index, chunk in enumerate(chunks):
                try:
                    await self.send_chunk([update.to_crm_payload() for update in chunk])
                except asyncio.CancelledError:
                    await self._requeue([update for rest in chunks[index:] for update in rest])
                    raise
                except Exception as e:
                    lead_ids = [update.lead_id for update in chunk]
                    logger.error(
                        f"Lead update chunk {index + 1}/{len(chunks)} failed for leads {lead_ids}: {e}",
                        exc_info=True,
                    )
                    coalescer_chunk_counter.labels(status="error").inc()
                    result["failed_chunks"] += 1
                    result["errors"].append(str(e))
                else:
                    coalescer_chunk_counter.labels(status="success").inc()
                    result["flushed"] += len(chunk)
                result["chunks"] += 1
        finally:
            self._active_flushes -= 1

        if result["failed_chunks"]:
            logger.warning(
                f"Partial flush: {result['failed_chunks']} of {result['chunks']} chunk(s) failed, "
                f"{result['flushed']} update(s) handed off."
            )
        return result

    async def stop(self, timeout: Optional[float] = None) -> FlushResult:
        """Stops the interval ticker and flushes whatever is still pending."""
        self._stopped = True
        if self._ticker is not None:
            self._ticker.cancel()
            await asyncio.gather(self._ticker, return_exceptions=True)
            self._ticker = None

        async def _drain() -> FlushResult:
            if self._flush_tasks:
                await asyncio.gather(*self._flush_tasks, return_exceptions=True)
            return await self.flush("shutdown")

        try:
            result = await asyncio.wait_for(_drain(), timeout)
        except asyncio.TimeoutError:
            logger.error(f"Lead batch processor shutdown flush timed out; {self.pending_count} update(s) still pending.")
            raise
        logger.info(f"Lead batch processor stopped; final flush sent {result['flushed']} update(s).")
        return result

    def _schedule_flush(self):
        task = asyncio.create_task(self.flush("size"))
        self._flush_tasks.add(task)
        task.add_done_callback(self._on_flush_done)

    def _on_flush_done(self, task: asyncio.Task):
        self._flush_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Out-of-band flush failed: {task.exception()}", exc_info=task.exception())

    async def _requeue(self, updates: List[LeadUpdate]):
        # Updates that arrived after the swap are newer and must win.
        async with self._lock:
            for update in updates:
                newer = self._pending.get(update.lead_id)
                if newer is not None:
                    update.merge(newer)
                self._pending[update.lead_id] = update
            pending_updates_gauge.set(len(self._pending))

    async def _run_ticker(self):
        while True:
            await asyncio.sleep(self.window_seconds)
            try:
                await self.flush("interval")
            except Exception as e:
                logger.error(f"Periodic lead flush failed: {e}", exc_info=True)
