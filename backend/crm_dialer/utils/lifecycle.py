# /crm_dialer/utils/lifecycle.py

import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from crm_dialer.config.settings import settings
from crm_dialer.services.batch_processor import LeadBatchProcessor
from crm_dialer.services.crm_service import CrmService
from crm_dialer.services.dialer_service import DialerService
from crm_dialer.services.flow_repository import FlowRepository
from crm_dialer.services.message_bus import RedisMessageBus
from crm_dialer.utils.logging import setup_logging
from crm_dialer.utils.queue import RateLimitedDispatchQueue
from crm_dialer.utils.rate_limiter import TokenBucket
from crm_dialer.workers.event_listener import EventListener
from crm_dialer.workflows.actions import ActionDispatcher
from crm_dialer.workflows.definitions import (
    REQUEST_ADD_NOTES,
    REQUEST_PUSH_CONTACTS,
    REQUEST_UPDATE_LEADS,
)
from crm_dialer.workflows.engine import FlowEngine, FlowExecutor

# Builds the service graph on startup and tears it down in reverse order on
# shutdown. Stateful components (token bucket, dispatch queue, batch
# processor) are owned by the app instance, never by module globals.

logger = logging.getLogger(__name__)


def build_components(app: FastAPI):
    """Instantiates every collaborator and stores it on `app.state`."""
    bus = RedisMessageBus(settings.redis_url)
    repository = FlowRepository(settings.mongo_uri, settings.mongo_database, settings.flows_collection)
    crm = CrmService(settings.crm_base_url, settings.crm_access_token, timeout=settings.http_timeout_seconds)
    dialer = DialerService(settings.dialer_api_url, settings.dialer_api_key, timeout=settings.http_timeout_seconds)

    dispatch_queue = RateLimitedDispatchQueue(
        TokenBucket(settings.requests_per_second),
        max_batch_size=settings.max_entities_per_batch,
        capacity=settings.dispatch_queue_capacity,
        max_concurrency=settings.effective_max_concurrency,
        handlers={
            REQUEST_UPDATE_LEADS: crm.update_leads,
            REQUEST_ADD_NOTES: crm.add_notes,
            REQUEST_PUSH_CONTACTS: dialer.push_contacts,
        },
    )

    async def send_lead_chunk(chunk):
        await dispatch_queue.submit(REQUEST_UPDATE_LEADS, chunk, timeout=settings.shutdown_timeout_seconds)

    batch_processor = LeadBatchProcessor(
        send_lead_chunk,
        flush_threshold=settings.coalesce_flush_threshold,
        window_seconds=settings.coalesce_window_seconds,
        max_batch_size=settings.max_entities_per_batch,
    )
    engine = FlowEngine(repository, FlowExecutor(ActionDispatcher(bus, batch_processor)))
    listener = EventListener(
        bus,
        engine,
        dispatch_queue,
        event_pattern=settings.event_subject_pattern,
        max_workers=settings.subscriber_workers,
        buffer_size=settings.subscriber_buffer_size,
        submit_timeout=settings.shutdown_timeout_seconds,
    )

    app.state.bus = bus
    app.state.flow_repository = repository
    app.state.crm_service = crm
    app.state.dialer_service = dialer
    app.state.dispatch_queue = dispatch_queue
    app.state.batch_processor = batch_processor
    app.state.flow_engine = engine
    app.state.event_listener = listener


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()
    logger.info("Application starting up...")

    build_components(app)
    state = app.state

    await state.dispatch_queue.start_workers()
    await state.batch_processor.start()
    await state.event_listener.start_workers()

    logger.info("Application startup complete. Ready to accept events.")

    yield

    logger.info("Application shutting down...")
    timeout = settings.shutdown_timeout_seconds

    # Upstream first so nothing new reaches a stopped component.
    await state.event_listener.stop_workers(timeout=timeout)
    try:
        await state.batch_processor.stop(timeout=timeout)
    except asyncio.TimeoutError:
        logger.error("Lead updates were still pending when the shutdown deadline passed.")
    await state.dispatch_queue.stop_workers(drain=True, timeout=timeout)

    await state.crm_service.close()
    await state.dialer_service.close()
    await state.bus.close()
    state.flow_repository.close()
    logger.info("Shutdown complete.")
