# /crm_dialer/utils/circuit_breaker.py

import asyncio
import time
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from crm_dialer.errors import DispatchError
from crm_dialer.utils.metrics import circuit_rejections_counter, circuit_state_gauge

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = 0
    HALF_OPEN = 1
    OPEN = 2


class CircuitOpenError(DispatchError):
    """Raised instead of calling a platform that keeps failing."""

    def __init__(self, name: str, retry_after: float):
        super().__init__(f"Circuit '{name}' is open; retry in {retry_after:.1f}s", action_type=name)
        self.retry_after = retry_after


class CircuitBreaker:
    """
    Per-platform breaker shared by every call a client makes.

    Only exceptions listed in `trip_on` count as platform failures, so a
    rejected payload never opens the circuit. After `reset_timeout` one
    trial call is let through; `success_threshold` consecutive successes
    close the circuit again and any failure reopens it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        success_threshold: int = 1,
        trip_on: Tuple[Type[BaseException], ...] = (Exception,),
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.success_threshold = success_threshold
        self.trip_on = trip_on
        self.state = CircuitState.CLOSED
        self.failures = 0
        self.successes = 0
        self.opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._lock = asyncio.Lock()
        circuit_state_gauge.labels(circuit=name).set(self.state.value)

    @property
    def retry_after(self) -> float:
        if self.state != CircuitState.OPEN or self.opened_at is None:
            return 0.0
        return max(0.0, self.opened_at + self.reset_timeout - time.monotonic())

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        await self._admit()
        try:
            result = await func(*args, **kwargs)
        except self.trip_on:
            await self._record(success=False)
            raise
        except BaseException:
            # Not a platform failure; just give back a half-open trial slot.
            self._trial_in_flight = False
            raise
        await self._record(success=True)
        return result

    async def _admit(self):
        async with self._lock:
            if self.state == CircuitState.OPEN:
                if self.retry_after > 0:
                    circuit_rejections_counter.labels(circuit=self.name).inc()
                    raise CircuitOpenError(self.name, self.retry_after)
                self._transition(CircuitState.HALF_OPEN)

            if self.state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    circuit_rejections_counter.labels(circuit=self.name).inc()
                    raise CircuitOpenError(self.name, 0.0)
                self._trial_in_flight = True

    async def _record(self, success: bool):
        async with self._lock:
            self._trial_in_flight = False
            if success:
                if self.state == CircuitState.HALF_OPEN:
                    self.successes += 1
                    if self.successes >= self.success_threshold:
                        self._transition(CircuitState.CLOSED)
                else:
                    self.failures = 0
                return

            self.failures += 1
            if self.state == CircuitState.HALF_OPEN or self.failures >= self.failure_threshold:
                self._transition(CircuitState.OPEN)

    def _transition(self, state: CircuitState):
        previous, self.state = self.state, state
        if state == CircuitState.OPEN:
            self.opened_at = time.monotonic()
            logger.error(f"Circuit '{self.name}' opened after {self.failures} failure(s); cooling down {self.reset_timeout}s.")
        elif state == CircuitState.HALF_OPEN:
            self.successes = 0
            logger.info(f"Circuit '{self.name}' half-open; admitting a trial call.")
        else:
            self.failures = 0
            self.opened_at = None
            logger.info(f"Circuit '{self.name}' closed (was {previous.name.lower()}).")
        circuit_state_gauge.labels(circuit=self.name).set(state.value)
