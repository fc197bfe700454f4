# housekeeping.py
"""
Cierre de posiciones viejas (por defecto más de un año abiertas).

Es un cierre contable, no una venta: se usa el último precio que vio el
monitor y, si nunca lo hubo, el P&L queda marcado como desconocido.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from models import Position
from position_ledger import PositionLedger

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0


class Housekeeping:
    def __init__(
        self,
        ledger: PositionLedger,
        *,
        stale_position_days: float = 365.0,
        interval_sec: float = 3600.0,
    ) -> None:
        self.ledger = ledger
        self.horizon_sec = stale_position_days * SECONDS_PER_DAY
        self.interval_sec = interval_sec
        self._task: Optional[asyncio.Task] = None

    async def run_once(self, now: Optional[float] = None) -> List[Position]:
        closed = await self.ledger.close_stale(self.horizon_sec, now)
        if closed:
            logger.info("[Housekeeping] %d posiciones cerradas por antigüedad", len(closed))
        return closed

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as exc:
                logger.exception("[Housekeeping] Error: %r", exc)
            await asyncio.sleep(self.interval_sec)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name="housekeeping")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
