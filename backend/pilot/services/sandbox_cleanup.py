"""
Session Reaper - periodic reclamation of idle sessions

Every SESSION_SWEEP_INTERVAL_SECONDS the registry is swept for sessions idle
longer than SESSION_MAX_INACTIVITY_SECONDS (default one hour). Each swept
session has its picker injection rolled back and its sandbox destroyed.
This loop is the only automatic reclamation; abandoned browser tabs rely
on it.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pilot.core.config import settings
from pilot.core.logging_config import logger


class SessionReaper:
    """
    Background sweep service.

    Owns nothing itself: the sweep and teardown live on the orchestrator so
    the explicit cleanup-all endpoint and this loop behave identically.
    """

    def __init__(
        self,
        orchestrator,
        max_inactivity_seconds: Optional[float] = None,
        interval_seconds: Optional[float] = None,
    ):
        self.orchestrator = orchestrator
        self.max_inactivity_seconds = (
            settings.SESSION_MAX_INACTIVITY_SECONDS
            if max_inactivity_seconds is None else max_inactivity_seconds
        )
        self.interval_seconds = (
            settings.SESSION_SWEEP_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        )

        self.running = False
        self._task: Optional[asyncio.Task] = None

        self.stats: Dict[str, Any] = {
            "total_reaped": 0,
            "sweeps": 0,
            "last_sweep": None,
        }

    async def start(self):
        """Start the background sweep loop"""
        if self.running:
            logger.warning("[SessionReaper] Service already running")
            return

        self.running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(f"[SessionReaper] Started - Max inactivity: {self.max_inactivity_seconds}s, "
                    f"Interval: {self.interval_seconds}s")

    async def stop(self):
        """Stop the sweep loop"""
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("[SessionReaper] Stopped")

    async def _sweep_loop(self):
        while self.running:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error(f"[SessionReaper] Error in sweep loop: {e}", exc_info=True)

    async def sweep_once(self) -> List[str]:
        reaped = await self.orchestrator.cleanup_stale_sessions(self.max_inactivity_seconds)

        self.stats["sweeps"] += 1
        self.stats["total_reaped"] += len(reaped)
        self.stats["last_sweep"] = datetime.now(timezone.utc).isoformat()

        if reaped:
            logger.info(f"[SessionReaper] Reaped {len(reaped)} idle session(s): {', '.join(reaped)}")
        return reaped

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "running": self.running,
            "max_inactivity_seconds": self.max_inactivity_seconds,
            "interval_seconds": self.interval_seconds,
        }
