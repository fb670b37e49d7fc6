# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Global send-spacing limiter.

The email provider enforces one rate limit for the whole application, so
every send, whatever the school, goes through a single shared permit. The
permit is held for the duration of one transport call and is only granted
once ``min_interval`` seconds have passed since the previous call finished.

Within one process this is a hard guarantee. Across processes the limiter is
seeded from the newest ``sent_at`` in the store before each pass
(:meth:`SendRateLimiter.observe`), which keeps independent dispatchers close
to the global cadence without a distributed lock.

Example:
    Using the limiter around a send::

        limiter = SendRateLimiter(min_interval=2.0)
        limiter.observe(await store.latest_sent_at())
        async with limiter.permit():
            await transport.send(recipients, subject, html)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from .logger import get_logger

DEFAULT_MIN_SEND_INTERVAL = 2.0

logger = get_logger("SendRateLimiter")


class SendRateLimiter:
    """Single-permit limiter enforcing a minimum spacing between sends.

    Attributes:
        min_interval: Minimum seconds between the end of one send and the
            start of the next.
    """

    def __init__(
        self,
        min_interval: float = DEFAULT_MIN_SEND_INTERVAL,
        *,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        """Initialize the limiter.

        Args:
            min_interval: Minimum spacing in seconds. Zero disables waiting.
            clock: Returns the current epoch time. Defaults to ``time.time``.
            sleep: Awaitable sleep. Defaults to ``asyncio.sleep``.
        """
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        self.min_interval = float(min_interval)
        self._clock = clock or time.time
        self._sleep = sleep or asyncio.sleep
        self._lock = asyncio.Lock()
        self._last_send: float | None = None

    @property
    def last_send(self) -> float | None:
        return self._last_send

    def observe(self, sent_at: float | None) -> None:
        """Fold an externally observed send time into the limiter state.

        Only moves the last-send mark forward; older observations are ignored.
        """
        if sent_at is None:
            return
        if self._last_send is None or sent_at > self._last_send:
            self._last_send = float(sent_at)

    def time_until_next(self) -> float:
        """Seconds to wait before the next send may start (0 when free)."""
        if self._last_send is None:
            return 0.0
        elapsed = self._clock() - self._last_send
        return max(0.0, self.min_interval - elapsed)

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        """Hold the global send permit for one transport call.

        Waits for the spacing window, yields, and stamps the completion time
        on exit whether the send succeeded or raised.
        """
        async with self._lock:
            wait = self.time_until_next()
            if wait > 0:
                logger.debug("Send spacing: waiting %.3fs", wait)
                await self._sleep(wait)
            try:
                yield
            finally:
                self._last_send = self._clock()
