"""Background sweeper that auto-submits attempts whose time limit has elapsed."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .service import AssessmentService

log = logging.getLogger(__name__)


class ExpirySweeper:
    """Periodically calls `AssessmentService.expire_overdue`.

    Args:
        service: The assessment service to drive.
        interval: Seconds between sweeps.
        batch: Maximum attempts expired per sweep.
    """

    def __init__(self, service: AssessmentService, interval: float, batch: int = 100) -> None:
        self.service = service
        self.interval = interval
        self.batch = batch
        self._task: Optional[asyncio.Task] = None

    async def sweep_once(self) -> int:
        n = await self.service.expire_overdue(limit=self.batch)
        if n:
            log.info("expired overdue attempts", extra={"ctx": {"count": n}})
        return n

    async def run(self) -> None:
        while True:
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("expiry sweep failed")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
