# analytics.py
"""
Reporte periódico de sólo lectura sobre el ledger.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from models import PositionStatus
from notifier import Notifier
from pnl import win_rate
from position_ledger import PositionLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalyticsReport:
    total_positions: int
    open_positions: int
    closed_positions: int
    profitable_positions: int
    unknown_pnl_positions: int
    win_rate: float
    realized_pnl: float

    def format(self) -> str:
        return (
            "📊 *Reporte*\n"
            f"Posiciones: {self.total_positions} "
            f"(abiertas {self.open_positions}, cerradas {self.closed_positions})\n"
            f"Ganadoras: {self.profitable_positions}\n"
            f"Win rate: {self.win_rate:.2f}%\n"
            f"P&L realizado: {self.realized_pnl:.6f}"
        )


async def build_report(ledger: PositionLedger, owner_id: Optional[str] = None) -> AnalyticsReport:
    positions = await ledger.list_positions(owner_id)
    closed = [p for p in positions if p.status == PositionStatus.CLOSED]
    known = [p for p in closed if p.pnl_known]
    profitable = sum(1 for p in known if p.pnl > 0)
    return AnalyticsReport(
        total_positions=len(positions),
        open_positions=len(positions) - len(closed),
        closed_positions=len(closed),
        profitable_positions=profitable,
        unknown_pnl_positions=len(closed) - len(known),
        win_rate=win_rate(profitable, len(known)),
        # incluye lo realizado en ventas parciales de posiciones aún abiertas
        realized_pnl=sum(p.pnl for p in positions if p.pnl_known),
    )


class AnalyticsJob:
    """Reporte global al log y, con notificador, el reporte propio a cada dueño."""

    def __init__(
        self,
        ledger: PositionLedger,
        *,
        interval_sec: float = 86400.0,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.ledger = ledger
        self.interval_sec = interval_sec
        self.notifier = notifier
        self.last_report: Optional[AnalyticsReport] = None
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> AnalyticsReport:
        report = await build_report(self.ledger)
        self.last_report = report
        logger.info(
            "[Analytics] posiciones=%d abiertas=%d cerradas=%d win_rate=%.2f%% pnl=%.6f",
            report.total_positions, report.open_positions, report.closed_positions,
            report.win_rate, report.realized_pnl,
        )
        if self.notifier is not None:
            await self._send_owner_reports()
        return report

    async def _send_owner_reports(self) -> None:
        owners = sorted({p.owner_id for p in await self.ledger.list_positions()})
        for owner_id in owners:
            owner_report = await build_report(self.ledger, owner_id)
            await self.notifier.notify(owner_id, owner_report.format())

    def snapshot(self) -> Dict[str, float]:
        if self.last_report is None:
            return {}
        return {
            "win_rate": round(self.last_report.win_rate, 2),
            "realized_pnl": self.last_report.realized_pnl,
            "closed_positions": self.last_report.closed_positions,
        }

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as exc:
                logger.exception("[Analytics] Error generando reporte: %r", exc)
            await asyncio.sleep(self.interval_sec)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name="analytics")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
