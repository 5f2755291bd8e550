"""
Readiness probe for sandbox dev servers.

Any HTTP response, including 4xx/5xx, proves something is listening; only
transport failures (refused, reset, timeout) count as "not ready yet".
"""

import asyncio
from typing import Awaitable, Callable, Optional

import httpx

from pilot.core.config import settings
from pilot.core.logging_config import logger


class ReadinessProbe:
    def __init__(self,
                 attempts: Optional[int] = None,
                 interval: Optional[float] = None,
                 request_timeout: Optional[float] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.attempts = attempts or settings.READINESS_ATTEMPTS
        self.interval = settings.READINESS_INTERVAL_SECONDS if interval is None else interval
        self.request_timeout = request_timeout or settings.READINESS_REQUEST_TIMEOUT
        self._sleep = sleep
        self._transport = transport

    async def wait_until_ready(self, url: str) -> bool:
        async with httpx.AsyncClient(timeout=self.request_timeout,
                                     transport=self._transport,
                                     follow_redirects=False) as client:
            for attempt in range(1, self.attempts + 1):
                try:
                    response = await client.get(url)
                    logger.info(f"[ReadinessProbe] {url} answered {response.status_code} "
                                f"on attempt {attempt}")
                    return True
                except httpx.TransportError as e:
                    logger.debug(f"[ReadinessProbe] {url} not ready (attempt {attempt}/"
                                 f"{self.attempts}): {type(e).__name__}")
                if attempt < self.attempts:
                    await self._sleep(self.interval)

        logger.warning(f"[ReadinessProbe] {url} not ready after {self.attempts} attempts")
        return False
