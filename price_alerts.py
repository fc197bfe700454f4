# price_alerts.py
"""
Alertas de precio: una task por alerta activa que consulta el oráculo cada
`interval_sec` y avisa al dueño cuando el precio cruza el objetivo.

Una alerta dispara una sola vez; después queda inactiva. Sin precio no hay
aviso.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, List, Optional

from errors import TradingError
from models import AlertCondition, PriceAlert
from notifier import format_price_alert
from trading_engine import TradingEngine

logger = logging.getLogger(__name__)


class PriceAlertMonitor:
    def __init__(self, engine: TradingEngine, *, interval_sec: float = 30.0) -> None:
        self.engine = engine
        self.interval_sec = interval_sec
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def store(self):
        return self.engine.ledger.store

    async def start(self) -> None:
        alerts = await self.store.list_alerts()
        for alert in alerts:
            self._watch(alert)
        logger.info("[Alerts] ✅ %d alertas de precio activas", len(alerts))

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    @property
    def active(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    # ------------------------------------------------------------------
    # API
    # ------------------------------------------------------------------

    async def add(
        self,
        owner_id: str,
        token_address: str,
        target_price: float,
        condition: AlertCondition = AlertCondition.ABOVE,
        *,
        symbol: str = "",
    ) -> PriceAlert:
        alert = PriceAlert(owner_id, token_address, target_price, condition, symbol=symbol)
        await self.store.save_alert(alert)
        self._watch(alert)
        logger.info(
            "[Alerts] 🔔 Alerta %s: %s %s %.10f (owner=%s)",
            alert.id, token_address, alert.condition.value, target_price, owner_id,
        )
        return alert

    async def cancel(self, alert_id: str) -> bool:
        task = self._tasks.pop(alert_id, None)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        alert = await self.store.get_alert(alert_id)
        if alert is None or not alert.is_active:
            return False
        alert.is_active = False
        await self.store.save_alert(alert)
        logger.info("[Alerts] Alerta %s cancelada", alert_id)
        return True

    async def list_for(self, owner_id: str) -> List[PriceAlert]:
        return [a for a in await self.store.list_alerts() if a.owner_id == owner_id]

    # ------------------------------------------------------------------
    # Evaluación
    # ------------------------------------------------------------------

    def _watch(self, alert: PriceAlert) -> None:
        task = self._tasks.get(alert.id)
        if task is not None and not task.done():
            return
        self._tasks[alert.id] = asyncio.create_task(
            self._run(alert.id), name=f"alert-{alert.id[:8]}"
        )

    async def _run(self, alert_id: str) -> None:
        while True:
            try:
                done = await self.check(alert_id)
            except TradingError as exc:
                logger.warning("[Alerts] %s: ciclo omitido (%r)", alert_id, exc)
                done = False
            except Exception as exc:
                logger.exception("[Alerts] %s: error inesperado: %r", alert_id, exc)
                done = False
            if done:
                self._tasks.pop(alert_id, None)
                return
            await asyncio.sleep(self.interval_sec)

    async def check(self, alert_id: str) -> bool:
        """Un ciclo. True si la alerta terminó (disparada, cancelada o borrada)."""
        alert = await self.store.get_alert(alert_id)
        if alert is None or not alert.is_active:
            return True

        price: Optional[float] = await self.engine.oracle.get_price(alert.token_address)
        if price is None or price <= 0 or not alert.is_reached(price):
            return False

        alert.is_active = False
        alert.is_triggered = True
        alert.triggered_at = time.time()
        alert.triggered_price = price
        await self.store.save_alert(alert)
        logger.info("[Alerts] 🔔 Alerta %s disparada a %.10f", alert.id, price)
        await self.engine.notifier.notify(alert.owner_id, format_price_alert(alert))
        return True
