# snipe_evaluator.py
"""
SnipeEvaluator: evalúa tokens recién lanzados contra los criterios de cada
usuario y compra el primero que los cumpla.

Una task por criterio activo. Los lanzamientos se agrupan en ventanas de
`batch_window_sec`; en cada pasada un usuario compra como mucho un token.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

from errors import ErrorKind, TradingError
from models import CandidateToken, LaunchEvent, SnipeCriteria, TradeResult, TradeStatus
from trading_engine import TradingEngine

logger = logging.getLogger(__name__)

# tokens enriquecidos que se recuerdan (compartidos entre usuarios)
_CANDIDATE_CACHE_SIZE = 512


def meets_criteria(token: CandidateToken, criteria: SnipeCriteria) -> Tuple[bool, str]:
    if token.address in criteria.blacklist:
        return False, "blacklist"
    if criteria.whitelist and token.address not in criteria.whitelist:
        return False, "fuera de whitelist"
    if token.liquidity < criteria.min_liquidity:
        return False, f"liquidez {token.liquidity:.0f} < {criteria.min_liquidity:.0f}"
    if token.market_cap > criteria.max_market_cap:
        return False, f"market cap {token.market_cap:.0f} > {criteria.max_market_cap:.0f}"
    if token.holders < criteria.min_holders:
        return False, f"holders {token.holders} < {criteria.min_holders}"
    if token.supply > criteria.max_supply:
        return False, f"supply {token.supply:.0f} > {criteria.max_supply:.0f}"
    return True, "ok"


class SnipeEvaluator:
    def __init__(self, engine: TradingEngine, *, batch_window_sec: float = 1.0) -> None:
        self.engine = engine
        self.batch_window_sec = batch_window_sec

        self._criteria: Dict[str, SnipeCriteria] = {}
        self._queues: Dict[str, asyncio.Queue] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._candidates: "OrderedDict[str, asyncio.Future]" = OrderedDict()

    @property
    def store(self):
        return self.engine.ledger.store

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    async def start(self) -> None:
        for criteria in await self.store.list_criteria(active_only=True):
            self._activate(criteria)
        logger.info("[Snipe] ✅ %d criterios activos", len(self._criteria))

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._queues.clear()

    @property
    def active_owners(self) -> List[str]:
        return list(self._criteria)

    async def set_criteria(self, criteria: SnipeCriteria) -> SnipeCriteria:
        """Crea o reemplaza los criterios de un usuario (snapshot inmutable)."""
        criteria = dataclasses.replace(criteria, is_active=True)
        await self.store.save_criteria(criteria)
        self._activate(criteria)
        logger.info("[Snipe] Criterios de %s actualizados (buy=%s SOL)", criteria.owner_id, criteria.buy_amount)
        return criteria

    async def deactivate(self, owner_id: str) -> None:
        criteria = self._retire(owner_id, cancel=True)
        if criteria is not None:
            await self.store.save_criteria(dataclasses.replace(criteria, is_active=False))
            logger.info("[Snipe] Sniping de %s desactivado", owner_id)

    def _activate(self, criteria: SnipeCriteria) -> None:
        owner = criteria.owner_id
        self._criteria[owner] = criteria
        if owner not in self._tasks:
            self._queues[owner] = asyncio.Queue()
            self._tasks[owner] = asyncio.create_task(self._run(owner), name=f"snipe-{owner}")

    def _retire(self, owner_id: str, *, cancel: bool) -> Optional[SnipeCriteria]:
        criteria = self._criteria.pop(owner_id, None)
        self._queues.pop(owner_id, None)
        task = self._tasks.pop(owner_id, None)
        if task is not None and cancel:
            task.cancel()
        return criteria

    # ------------------------------------------------------------------
    # Entrada de lanzamientos
    # ------------------------------------------------------------------

    def publish(self, event: LaunchEvent) -> None:
        for queue in self._queues.values():
            queue.put_nowait(event)

    def publish_threadsafe(self, loop: asyncio.AbstractEventLoop, event: LaunchEvent) -> None:
        """Para callbacks que llegan desde otro thread (websocket de Flintr)."""
        loop.call_soon_threadsafe(self.publish, event)

    # ------------------------------------------------------------------
    # Evaluación
    # ------------------------------------------------------------------

    async def _fetch_candidate(self, event: LaunchEvent) -> Optional[CandidateToken]:
        md = await self.engine.oracle.get_market_data(event.token_address)
        if md is None:
            logger.debug("[Snipe] Sin datos de mercado para %s", event.token_address)
            return None
        try:
            supply = await self.engine.chain.get_token_supply(event.token_address)
        except TradingError as exc:
            logger.debug("[Snipe] Sin supply para %s: %r", event.token_address, exc)
            return None
        return CandidateToken(
            address=event.token_address,
            symbol=event.symbol,
            liquidity=md.liquidity,
            market_cap=md.market_cap,
            # holders desconocidos cuentan como 0
            holders=event.holders or 0,
            supply=supply.ui_amount,
            price=md.price,
        )

    async def enrich(self, event: LaunchEvent) -> Optional[CandidateToken]:
        fut = self._candidates.get(event.token_address)
        if fut is None:
            fut = asyncio.ensure_future(self._fetch_candidate(event))
            self._candidates[event.token_address] = fut
            while len(self._candidates) > _CANDIDATE_CACHE_SIZE:
                self._candidates.popitem(last=False)
        try:
            return await asyncio.shield(fut)
        except TradingError as exc:
            logger.debug("[Snipe] Error enriqueciendo %s: %r", event.token_address, exc)
            self._candidates.pop(event.token_address, None)
            return None

    async def evaluate_pass(self, criteria: SnipeCriteria, events: List[LaunchEvent]) -> Optional[TradeResult]:
        """Compra el primer token que cumpla; como mucho una compra por pasada."""
        for event in events:
            candidate = await self.enrich(event)
            if candidate is None:
                continue
            ok, reason = meets_criteria(candidate, criteria)
            if not ok:
                logger.debug("[Snipe] %s rechazado para %s: %s", event.token_address, criteria.owner_id, reason)
                continue

            logger.info("[Snipe] 🎯 %s (%s) cumple criterios de %s", candidate.symbol, candidate.address, criteria.owner_id)
            result = await self.engine.buy(
                criteria.owner_id,
                candidate.address,
                criteria.buy_amount,
                slippage_percent=criteria.max_slippage,
                symbol=candidate.symbol,
                source="snipe",
            )
            if result.status in (TradeStatus.EXECUTED, TradeStatus.PENDING):
                return result
            if (
                result.status == TradeStatus.FAILED
                and result.outcome is not None
                and result.outcome.error_kind == ErrorKind.INSUFFICIENT_BALANCE
            ):
                return result
        return None

    async def _collect_batch(self, queue: asyncio.Queue) -> List[LaunchEvent]:
        batch = [await queue.get()]
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.batch_window_sec
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                batch.append(await asyncio.wait_for(queue.get(), remaining))
            except asyncio.TimeoutError:
                break
        return batch

    async def _run(self, owner_id: str) -> None:
        queue = self._queues[owner_id]
        while True:
            batch = await self._collect_batch(queue)
            criteria = self._criteria.get(owner_id)
            if criteria is None:
                return
            try:
                result = await self.evaluate_pass(criteria, batch)
            except Exception as exc:
                logger.exception("[Snipe] Error evaluando para %s: %r", owner_id, exc)
                continue

            if (
                result is not None
                and result.status == TradeStatus.FAILED
                and result.outcome is not None
                and result.outcome.error_kind == ErrorKind.INSUFFICIENT_BALANCE
            ):
                logger.warning("[Snipe] %s sin balance, sniping desactivado", owner_id)
                await self.engine.notifier.notify(owner_id, "⚠️ Sniping pausado: balance insuficiente")
                self._retire(owner_id, cancel=False)
                await self.store.save_criteria(dataclasses.replace(criteria, is_active=False))
                return
