# position_monitor.py
"""
PositionMonitor: una task por posición abierta que evalúa TP / SL / trailing
stop cada `interval_sec`.

Estado por posición:
    WATCHING -> (TP_TRIGGERED | SL_TRIGGERED | TRAILING_TRIGGERED) -> EXECUTING
             -> (CLOSED | PARTIAL | WATCHING si falla)

Sin precio no hay acción: la falta de datos nunca es un trigger.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from enum import Enum
from typing import Dict, Optional

from config import TradingSettings
from errors import ErrorKind, PositionNotFound, TradingError
from models import Position, TradeStatus
from pnl import price_change_pct, should_stop_loss, should_take_profit, trailing_stop_price
from trading_engine import TradingEngine

logger = logging.getLogger(__name__)


class MonitorState(str, Enum):
    WATCHING = "watching"
    TP_TRIGGERED = "take_profit"
    SL_TRIGGERED = "stop_loss"
    TRAILING_TRIGGERED = "trailing_stop"
    EXECUTING = "executing"
    PARTIAL = "partial"
    CLOSED = "closed"
    STOPPED = "stopped"        # automatización desactivada (sin balance)


_TRIGGERS = (MonitorState.TP_TRIGGERED, MonitorState.SL_TRIGGERED, MonitorState.TRAILING_TRIGGERED)


def decide(position: Position, price: float, settings: TradingSettings) -> MonitorState:
    """TP, SL y trailing se evalúan contra la MISMA muestra de precio."""
    buy = position.buy_price
    if buy <= 0 or price <= 0:
        return MonitorState.WATCHING

    if should_take_profit(buy, price, settings.take_profit_percent):
        return MonitorState.TP_TRIGGERED
    if should_stop_loss(buy, price, settings.stop_loss_percent):
        return MonitorState.SL_TRIGGERED

    if settings.trailing_stop_percent > 0:
        highest = max(position.highest_price, price)
        if highest > buy and price <= trailing_stop_price(highest, settings.trailing_stop_percent):
            return MonitorState.TRAILING_TRIGGERED

    return MonitorState.WATCHING


class PositionMonitor:
    def __init__(
        self,
        engine: TradingEngine,
        *,
        interval_sec: float = 10.0,
        max_missing_price_cycles: int = 30,
    ) -> None:
        self.engine = engine
        self.interval_sec = interval_sec
        self.max_missing_price_cycles = max_missing_price_cycles

        self._tasks: Dict[str, asyncio.Task] = {}
        self._missing: Dict[str, int] = defaultdict(int)
        self.states: Dict[str, MonitorState] = {}

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self.engine.add_position_listener(self.watch)
        positions = await self.engine.ledger.list_all_open()
        for pos in positions:
            self.watch(pos)
        logger.info("[Monitor] ✅ Vigilando %d posiciones abiertas", len(positions))

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def watch(self, position: Position) -> None:
        task = self._tasks.get(position.id)
        if task is not None and not task.done():
            return
        self.states[position.id] = MonitorState.WATCHING
        self._tasks[position.id] = asyncio.create_task(
            self._run(position.id), name=f"monitor-{position.id[:8]}"
        )

    def unwatch(self, position_id: str) -> None:
        task = self._tasks.pop(position_id, None)
        if task is not None:
            task.cancel()
        self._missing.pop(position_id, None)

    @property
    def watched(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    # ------------------------------------------------------------------
    # Evaluación
    # ------------------------------------------------------------------

    async def _run(self, position_id: str) -> None:
        while True:
            try:
                state = await self.evaluate(position_id)
            except TradingError as exc:
                logger.warning("[Monitor] %s: ciclo omitido (%r)", position_id, exc)
                state = MonitorState.WATCHING
            except Exception as exc:
                logger.exception("[Monitor] %s: error inesperado: %r", position_id, exc)
                state = MonitorState.WATCHING

            self.states[position_id] = state
            if state in (MonitorState.CLOSED, MonitorState.STOPPED):
                self._tasks.pop(position_id, None)
                self._missing.pop(position_id, None)
                return
            await asyncio.sleep(self.interval_sec)

    async def evaluate(self, position_id: str) -> MonitorState:
        """Un ciclo de evaluación para una posición."""
        try:
            pos = await self.engine.ledger.get(position_id)
        except PositionNotFound:
            return MonitorState.CLOSED
        if not pos.is_open:
            return MonitorState.CLOSED

        # snapshot de ajustes para todo el ciclo
        settings = await self.engine.settings_for(pos.owner_id)

        price = await self.engine.oracle.get_price(pos.token_address)
        if price is None or price <= 0:
            self._note_missing(pos)
            return MonitorState.WATCHING
        self._missing[position_id] = 0

        if pos.buy_price <= 0:
            await self.engine.ledger.set_entry_price(position_id, price, settings)
            return MonitorState.WATCHING

        state = decide(pos, price, settings)
        await self.engine.ledger.note_price(position_id, price)

        if state not in _TRIGGERS:
            return MonitorState.WATCHING
        if not settings.auto_sell:
            logger.debug("[Monitor] %s: %s ignorado (auto_sell off)", position_id, state.value)
            return MonitorState.WATCHING

        logger.info(
            "[Monitor] %s %s: precio=%.10f compra=%.10f (%.2f%%)",
            state.value.upper(), pos.token_address, price, pos.buy_price,
            price_change_pct(pos.buy_price, price),
        )
        self.states[position_id] = MonitorState.EXECUTING
        result = await self.engine.sell_position(position_id, trigger_price=price, reason=state.value)

        if result.status == TradeStatus.BUSY:
            logger.info("[Monitor] %s ocupado, se omite este ciclo", position_id)
            return MonitorState.WATCHING
        if result.status == TradeStatus.EXECUTED and result.position is not None:
            return MonitorState.PARTIAL if result.position.is_open else MonitorState.CLOSED
        if (
            result.status == TradeStatus.FAILED
            and result.outcome is not None
            and result.outcome.error_kind == ErrorKind.INSUFFICIENT_BALANCE
        ):
            logger.warning("[Monitor] %s sin balance, se deja de vigilar", position_id)
            return MonitorState.STOPPED
        return MonitorState.WATCHING

    def _note_missing(self, pos: Position) -> None:
        count = self._missing[pos.id] + 1
        self._missing[pos.id] = count
        logger.debug("[Monitor] Sin precio para %s (%d ciclos)", pos.token_address, count)
        if self.max_missing_price_cycles and count % self.max_missing_price_cycles == 0:
            logger.warning(
                "[Monitor] %s lleva %d ciclos sin precio; sin acción", pos.token_address, count
            )

    def get_state(self, position_id: str) -> Optional[MonitorState]:
        return self.states.get(position_id)
