# /crm_dialer/workers/event_listener.py

import asyncio
import uuid
import logging
from fnmatch import fnmatchcase
from typing import Any, Dict, List, Optional

from crm_dialer.models.domain import InputEvent, as_int
from crm_dialer.utils.metrics import events_processed_counter
from crm_dialer.workflows.definitions import (
    ACTION_TOPICS,
    REQUEST_ADD_NOTES,
    REQUEST_PUSH_CONTACTS,
)

# Consumes the bus: lead events go through the flow engine, while dialer and
# note messages published by flow actions are handed to the rate-controlled
# dispatch queue that talks to the external platforms.

logger = logging.getLogger(__name__)

CONTACT_PUSH_SUBJECTS = (ACTION_TOPICS["send_to_dialer"], ACTION_TOPICS["add_to_bucket"])
NOTE_SUBJECTS = (ACTION_TOPICS["add_note"],)


class EventListener:
    def __init__(
        self,
        bus,
        engine,
        dispatch_queue,
        event_pattern: str = "events.leads.*",
        max_workers: int = 4,
        buffer_size: int = 1000,
        submit_timeout: Optional[float] = 30.0,
    ):
        self.bus = bus
        self.engine = engine
        self.dispatch_queue = dispatch_queue
        self.event_pattern = event_pattern
        self.max_workers = max_workers
        self.submit_timeout = submit_timeout
        self.workers: List[asyncio.Task] = []
        self.running = False
        self._inbox: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)
        self._reader: Optional[asyncio.Task] = None

    @property
    def subjects(self) -> List[str]:
        return [self.event_pattern, *CONTACT_PUSH_SUBJECTS, *NOTE_SUBJECTS]

    async def start_workers(self):
        await self.bus.subscribe(self.subjects)
        self.running = True
        self._reader = asyncio.create_task(self._read_loop())
        for i in range(self.max_workers):
            self.workers.append(asyncio.create_task(self._worker(f"worker-{i}-{uuid.uuid4().hex[:4]}")))
        logger.info(f"Started {self.max_workers} event listener workers.")

    async def stop_workers(self, timeout: Optional[float] = None):
        self.running = False
        if self._reader is not None:
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None
        try:
            await asyncio.wait_for(self._inbox.join(), timeout)
        except asyncio.TimeoutError:
            logger.error(f"Event listener stopped with {self._inbox.qsize()} message(s) unprocessed.")
        for worker in self.workers:
            worker.cancel()
        await asyncio.gather(*self.workers, return_exceptions=True)
        self.workers = []

    async def _read_loop(self):
        while self.running:
            try:
                async for subject, payload in self.bus.messages():
                    await self._inbox.put((subject, payload))
            except Exception as e:
                if self.running:
                    logger.error(f"Bus subscription error: {e}")
                    await asyncio.sleep(5)

    async def _worker(self, consumer_name: str):
        while True:
            subject, payload = await self._inbox.get()
            try:
                await self.handle_message(subject, payload)
            except Exception as e:
                logger.error(f"Worker '{consumer_name}' failed on '{subject}': {e}", exc_info=True)
            finally:
                self._inbox.task_done()

    async def handle_message(self, subject: str, payload: Dict[str, Any]):
        """Routes one decoded bus message by subject."""
        if fnmatchcase(subject, self.event_pattern):
            await self._process_lead_event(subject, payload)
        elif subject in CONTACT_PUSH_SUBJECTS:
            await self._submit_contact_push(payload)
        elif subject in NOTE_SUBJECTS:
            await self._submit_notes(payload)
        else:
            logger.debug(f"Ignoring message on unrouted subject '{subject}'")

    async def _process_lead_event(self, subject: str, payload: Dict[str, Any]):
        event = InputEvent.from_payload(payload)
        try:
            results = await self.engine.process_event(event)
        except Exception:
            events_processed_counter.labels(status="error").inc()
            raise
        events_processed_counter.labels(status="success").inc()
        completed = sum(1 for result in results if result["completed"])
        logger.info(f"Event '{subject}' for lead {event.lead_id}: {completed}/{len(results)} flow(s) completed.")

    async def _submit_contact_push(self, payload: Dict[str, Any]):
        params = payload.get("parameters") or {}
        request = {
            "scheduler_id": params.get("scheduler_id", ""),
            "campaign_id": params.get("campaign_id", ""),
            "bucket_id": params.get("bucket_id", ""),
            "contact": params.get("contact") or {},
        }
        # The dialer API accepts exactly one contact per request.
        await self.dispatch_queue.submit(REQUEST_PUSH_CONTACTS, [request], batch_size=1, timeout=self.submit_timeout)

    async def _submit_notes(self, payload: Dict[str, Any]):
        params = payload.get("parameters") or {}
        text = params.get("text")
        if not text:
            logger.warning(f"Skipping empty note for entities {payload.get('entity_ids')}")
            return
        notes = [
            {"entity_id": entity_id, "note_type": params.get("note_type", "common"), "params": {"text": text}}
            for entity_id in (as_int(raw) for raw in payload.get("entity_ids") or [])
            if entity_id is not None
        ]
        if notes:
            await self.dispatch_queue.submit(REQUEST_ADD_NOTES, notes, timeout=self.submit_timeout)
