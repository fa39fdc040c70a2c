# /crm_dialer/services/message_bus.py

import json
import logging
from typing import Any, AsyncIterator, Dict, Optional, Sequence, Tuple
import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from crm_dialer.utils.circuit_breaker import CircuitBreaker
from crm_dialer.utils.metrics import external_requests_counter

# Redis pub/sub transport between the flow engine and the dispatch side.
# Subjects follow `<platform>.<category>[.<kind>]`, e.g. `events.leads.status_changed`.

logger = logging.getLogger(__name__)


class RedisMessageBus:
    def __init__(self, redis_url: str, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        if client is not None:
            self.redis = client
        else:
            self.redis_pool = redis.ConnectionPool.from_url(redis_url, max_connections=20)
            self.redis = redis.Redis(connection_pool=self.redis_pool)
        self.circuit_breaker = CircuitBreaker("redis-bus", trip_on=(RedisConnectionError, RedisTimeoutError))
        self._pubsub = None

    async def ping(self) -> bool:
        return bool(await self.redis.ping())

    async def publish(self, subject: str, payload: Dict[str, Any]) -> int:
        """Publishes a JSON payload; returns the number of subscribers that received it."""
        data = json.dumps(payload, default=str)
        try:
            receivers = await self.circuit_breaker.call(self.redis.publish, subject, data)
        except Exception:
            external_requests_counter.labels(platform="redis", operation="publish", status="error").inc()
            raise
        external_requests_counter.labels(platform="redis", operation="publish", status="success").inc()
        if not receivers:
            logger.warning(f"Message on '{subject}' had no subscribers.")
        return receivers

    async def subscribe(self, patterns: Sequence[str]):
        self._pubsub = self.redis.pubsub(ignore_subscribe_messages=True)
        await self._pubsub.psubscribe(*patterns)
        logger.info(f"Subscribed to {', '.join(patterns)}")

    async def messages(self, poll_timeout: float = 1.0) -> AsyncIterator[Tuple[str, Dict[str, Any]]]:
        """
        Yields `(subject, payload)` for every JSON object received on the
        subscribed patterns. Undecodable messages are logged and skipped.
        """
        if self._pubsub is None:
            raise RuntimeError("subscribe() must be called before reading messages")
        while True:
            message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=poll_timeout)
            if message is None:
                continue
            subject = _text(message.get("channel"))
            try:
                payload = json.loads(_text(message.get("data")))
            except (TypeError, ValueError) as e:
                logger.error(f"Dropping undecodable message on '{subject}': {e}")
                continue
            if not isinstance(payload, dict):
                logger.error(f"Dropping non-object message on '{subject}'")
                continue
            yield subject, payload

    async def close(self):
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        await self.redis.aclose()


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return "" if value is None else str(value)
