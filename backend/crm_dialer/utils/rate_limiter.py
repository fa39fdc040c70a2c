# /crm_dialer/utils/rate_limiter.py

import asyncio
import time
from collections import deque
from typing import Callable, Deque, Optional, Tuple

# Outbound admission control for the dialer / CRM APIs, which reject clients
# that exceed a fixed number of requests per second.


class TokenBucket:
    """
    Token bucket with capacity == rate where every spent token comes back
    exactly one period after it was spent.

    Unlike a continuously refilled bucket this never lets more than `rate`
    acquisitions into any sliding window of `period` seconds, which is the
    limit the downstream platforms actually enforce.
    """

    def __init__(self, rate: int, period: float = 1.0, clock: Callable[[], float] = time.monotonic):
        if rate <= 0:
            raise ValueError("rate must be greater than zero")
        if period <= 0:
            raise ValueError("period must be greater than zero")
        self.rate = rate
        self.period = period
        self._clock = clock
        self._spent: Deque[float] = deque()
        # Waiters queue on the lock, so tokens are handed out in arrival order.
        self._lock = asyncio.Lock()

    @property
    def capacity(self) -> int:
        return self.rate

    @property
    def available(self) -> int:
        self._release_expired(self._clock())
        return self.rate - len(self._spent)

    def try_acquire(self) -> Tuple[bool, float]:
        """Takes a token if one is free; otherwise returns the seconds until the next one."""
        now = self._clock()
        self._release_expired(now)
        if len(self._spent) < self.rate:
            self._spent.append(now)
            return True, 0.0
        return False, max(0.0, self.period - (now - self._spent[0]))

    async def acquire(self, timeout: Optional[float] = None) -> float:
        """
        Waits for a token and returns how long the caller waited.

        Raises asyncio.TimeoutError if no token can be obtained within `timeout`.
        A cancelled or timed-out wait never consumes a token.
        """
        if timeout is None:
            return await self._acquire()
        return await asyncio.wait_for(self._acquire(), timeout)

    async def _acquire(self) -> float:
        started = self._clock()
        async with self._lock:
            while True:
                acquired, wait = self.try_acquire()
                if acquired:
                    return self._clock() - started
                await asyncio.sleep(wait)

    def _release_expired(self, now: float):
        while self._spent and now - self._spent[0] >= self.period:
            self._spent.popleft()
