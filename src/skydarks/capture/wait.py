from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)


class WaitService:
    """Pauses for a number of seconds or until a wall-clock time.

    Callers account for elapsed time using the value returned by :meth:`delay`,
    which lets tests substitute a waiter that returns instantly.
    """

    async def delay(self, seconds: float) -> float:
        if seconds <= 0:
            return 0.0
        logger.debug("capture.wait.delay", seconds=seconds)
        await asyncio.sleep(seconds)
        return seconds

    async def delay_until(self, target: datetime, *, now: Optional[datetime] = None) -> float:
        remaining = (target - (now or datetime.now())).total_seconds()
        if remaining <= 0:
            logger.debug("capture.wait.target_passed", target=target.isoformat())
            return 0.0
        logger.info("capture.wait.until", target=target.isoformat(), seconds=round(remaining))
        return await self.delay(remaining)


__all__ = ["WaitService"]
