# copy_trade_monitor.py
"""
CopyTradeMonitor

- Una task de vigilancia por wallet objetivo, compartida por todas las
  suscripciones que la siguen.
- Una cola FIFO + worker por suscripción: el delay se espera dentro del
  worker, así que desactivar la suscripción cancela lo que esté esperando.
- Las estadísticas salen del resultado real del swap, nunca de la intención.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

from activity_feed import WalletActivityFeed
from errors import ErrorKind
from models import CopyTradeSubscription, TradeEvent, TradeResult, TradeSide, TradeStatus
from trading_engine import TradingEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CopyPlan:
    subscription_id: str
    side: TradeSide
    token_address: str
    sol_amount: float          # sólo compras
    event: TradeEvent


def plan_copy(sub: CopyTradeSubscription, event: TradeEvent) -> Optional[CopyPlan]:
    """Filtros + escalado. None si el trade no se copia."""
    if not sub.is_active or event.wallet != sub.target_wallet:
        return None
    if sub.only_buys and event.side != TradeSide.BUY:
        return None
    if sub.only_sells and event.side != TradeSide.SELL:
        return None
    if event.sol_amount < sub.min_trade_amount:
        return None

    amount = 0.0
    if event.side == TradeSide.BUY:
        amount = min(event.sol_amount * sub.copy_ratio, sub.max_amount)
    return CopyPlan(sub.id, event.side, event.token_address, amount, event)


class CopyTradeMonitor:
    def __init__(
        self,
        engine: TradingEngine,
        feed: WalletActivityFeed,
        *,
        max_delay_sec: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.engine = engine
        self.feed = feed
        self.max_delay_sec = max_delay_sec
        self._clock = clock

        self._subs: Dict[str, CopyTradeSubscription] = {}
        self._by_wallet: Dict[str, Set[str]] = {}
        self._wallet_tasks: Dict[str, asyncio.Task] = {}
        self._queues: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}

    @property
    def store(self):
        return self.engine.ledger.store

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    async def start(self) -> None:
        subs = await self.store.list_subscriptions(active_only=True)
        for sub in subs:
            self._register(sub)
        logger.info(
            "[Copy] ✅ %d suscripciones activas sobre %d wallets",
            len(self._subs), len(self._wallet_tasks),
        )

    async def stop(self) -> None:
        tasks = list(self._wallet_tasks.values()) + list(self._workers.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._wallet_tasks.clear()
        self._workers.clear()
        self._queues.clear()

    @property
    def watched_wallets(self) -> List[str]:
        return list(self._wallet_tasks)

    def get(self, subscription_id: str) -> Optional[CopyTradeSubscription]:
        return self._subs.get(subscription_id)

    # ------------------------------------------------------------------
    # Suscripciones
    # ------------------------------------------------------------------

    async def subscribe(self, sub: CopyTradeSubscription) -> CopyTradeSubscription:
        sub.is_active = True
        await self.store.save_subscription(sub)
        self._register(sub)
        logger.info(
            "[Copy] ➕ %s sigue a %s (ratio=%s, max=%s SOL, delay=%ss)",
            sub.owner_id, sub.target_wallet, sub.copy_ratio, sub.max_amount, sub.delay_seconds,
        )
        return sub

    async def deactivate(self, subscription_id: str) -> None:
        sub = self._subs.get(subscription_id)
        if sub is None:
            return
        self._unregister(sub, cancel_worker=True)
        await self.store.save_subscription(sub)
        logger.info("[Copy] ➖ Suscripción %s desactivada", subscription_id)

    def _register(self, sub: CopyTradeSubscription) -> None:
        self._subs[sub.id] = sub
        self._by_wallet.setdefault(sub.target_wallet, set()).add(sub.id)

        if sub.id not in self._workers:
            self._queues[sub.id] = asyncio.Queue()
            self._workers[sub.id] = asyncio.create_task(
                self._worker(sub.id), name=f"copy-{sub.id[:8]}"
            )

        wallet = sub.target_wallet
        if wallet not in self._wallet_tasks:
            self._wallet_tasks[wallet] = asyncio.create_task(
                self.feed.watch(wallet, self.on_trade_event), name=f"wallet-{wallet[:8]}"
            )

    def _unregister(self, sub: CopyTradeSubscription, *, cancel_worker: bool) -> None:
        sub.is_active = False
        self._subs.pop(sub.id, None)
        self._queues.pop(sub.id, None)
        worker = self._workers.pop(sub.id, None)
        if worker is not None and cancel_worker:
            worker.cancel()

        followers = self._by_wallet.get(sub.target_wallet)
        if followers is not None:
            followers.discard(sub.id)
            if not followers:
                del self._by_wallet[sub.target_wallet]
                watcher = self._wallet_tasks.pop(sub.target_wallet, None)
                if watcher is not None:
                    watcher.cancel()

    # ------------------------------------------------------------------
    # Eventos
    # ------------------------------------------------------------------

    async def on_trade_event(self, event: TradeEvent) -> int:
        """Reparte un trade observado a las suscripciones de esa wallet."""
        queued = 0
        for sub_id in sorted(self._by_wallet.get(event.wallet, ())):
            sub = self._subs.get(sub_id)
            queue = self._queues.get(sub_id)
            if sub is None or queue is None:
                continue
            plan = plan_copy(sub, event)
            if plan is None:
                logger.debug("[Copy] %s filtrado para %s", event.signature, sub_id)
                continue
            queue.put_nowait(plan)
            queued += 1
        if queued:
            logger.info(
                "[Copy] %s %s de %s (%.4f SOL) -> %d copias",
                event.side.value.upper(), event.token_address, event.wallet, event.sol_amount, queued,
            )
        return queued

    async def _worker(self, sub_id: str) -> None:
        queue = self._queues[sub_id]
        while True:
            plan: CopyPlan = await queue.get()
            sub = self._subs.get(sub_id)
            if sub is None:
                return

            delay = min(sub.delay_seconds, self.max_delay_sec)
            remaining = plan.event.observed_at + delay - self._clock()
            if remaining > 0:
                await asyncio.sleep(remaining)

            try:
                keep_going = await self._execute(sub, plan)
            except Exception as exc:
                logger.exception("[Copy] Error copiando %s: %r", plan.event.signature, exc)
                keep_going = True
            if not keep_going:
                return

    async def _execute(self, sub: CopyTradeSubscription, plan: CopyPlan) -> bool:
        if not sub.is_active:
            return False

        if plan.side == TradeSide.BUY:
            results = [await self.engine.buy(
                sub.owner_id, plan.token_address, plan.sol_amount, source="copy"
            )]
        else:
            results = await self.engine.sell_token(sub.owner_id, plan.token_address, reason="copy")
            if not results:
                logger.info("[Copy] %s no tiene %s, venta no copiada", sub.owner_id, plan.token_address)
                return True

        self._apply_stats(sub, results)
        await self.store.save_subscription(sub)

        if any(_insufficient(r) for r in results) and plan.side == TradeSide.BUY:
            logger.warning("[Copy] %s sin balance, suscripción %s desactivada", sub.owner_id, sub.id)
            await self.engine.notifier.notify(
                sub.owner_id, f"⚠️ Copy trading de `{sub.target_wallet}` pausado: balance insuficiente"
            )
            self._unregister(sub, cancel_worker=False)
            await self.store.save_subscription(sub)
            return False
        return True

    @staticmethod
    def _apply_stats(sub: CopyTradeSubscription, results: List[TradeResult]) -> None:
        attempted = [r for r in results if r.status not in (TradeStatus.BUSY, TradeStatus.SKIPPED)]
        if not attempted:
            return
        sub.total_copied += 1
        executed = [r for r in attempted if r.status == TradeStatus.EXECUTED]
        if executed:
            sub.successful_copies += 1
        for r in executed:
            pos = r.position
            if pos is not None and r.outcome is not None and pos.sell_signatures and pos.pnl_known:
                if r.outcome.signature in pos.sell_signatures:
                    sub.total_pnl += pos.pnl


def _insufficient(result: TradeResult) -> bool:
    return (
        result.status == TradeStatus.FAILED
        and result.outcome is not None
        and result.outcome.error_kind == ErrorKind.INSUFFICIENT_BALANCE
    )
