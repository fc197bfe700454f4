# trading_engine.py
from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from config import BotConfig, TradingSettings
from errors import ErrorKind, InsufficientBalance, TradingError
from models import (
    LAMPORTS_PER_SOL,
    SOL_MINT,
    OutcomeStatus,
    PendingTrade,
    Position,
    SwapOutcome,
    TradeIntent,
    TradeResult,
    TradeSide,
    TradeStatus,
)
from notifier import LoggingNotifier, Notifier
from position_ledger import PositionLedger
from signer import SignerRegistry
from swap_executor import SwapExecutor

logger = logging.getLogger(__name__)

EMERGENCY_SLIPPAGE_PERCENT = 5.0

# Una TX no vista por la red pasado este tiempo ya no puede entrar (blockhash expirado)
DROP_HORIZON_SEC = 600.0

PositionListener = Callable[[Position], None]


class TradingEngine:
    """
    Motor principal de trading.

    - Todo trade (manual, TP/SL, copy, snipe) pasa por aquí: lease por
      (owner, token) -> SwapExecutor -> PositionLedger -> aviso al dueño.
    - Un swap en vuelo corre en su propia task protegida con shield: cancelar
      al que lo pidió no abandona una TX ya enviada ni su registro.
    - Resultados UNKNOWN (timeout de confirmación) quedan como PendingTrade
      y se reconcilian consultando la cadena, nunca reenviando.
    """

    def __init__(
        self,
        config: BotConfig,
        *,
        ledger: PositionLedger,
        executor: SwapExecutor,
        signers: SignerRegistry,
        notifier: Optional[Notifier] = None,
        reconcile_interval_sec: float = 30.0,
    ) -> None:
        self.config = config
        self.ledger = ledger
        self.executor = executor
        self.signers = signers
        self.notifier = notifier or LoggingNotifier()
        self.reconcile_interval_sec = reconcile_interval_sec

        self._inflight: Set[asyncio.Task] = set()
        self._listeners: List[PositionListener] = []
        self._reconcile_task: Optional[asyncio.Task] = None

        self.started_at: Optional[float] = None
        self._stats: Dict[str, int] = {
            "executed": 0,
            "failed": 0,
            "pending": 0,
            "busy": 0,
            "skipped": 0,
        }

    # -------------------------------------------------------------------------
    # Ciclo de vida
    # -------------------------------------------------------------------------

    @property
    def oracle(self):
        return self.executor.oracle

    @property
    def chain(self):
        return self.executor.chain

    async def start(self) -> None:
        await self.ledger.start()
        await self.executor.router.start()
        await self.executor.chain.start()
        await self.executor.oracle.start()
        await self.notifier.start()
        self.started_at = time.time()
        self._reconcile_task = asyncio.create_task(self._reconcile_loop(), name="reconcile")
        logger.info("[Engine] ✅ Motor iniciado (mode=%s)", self.config.mode)

    async def stop(self) -> None:
        if self._reconcile_task is not None:
            self._reconcile_task.cancel()
            await asyncio.gather(self._reconcile_task, return_exceptions=True)
            self._reconcile_task = None

        # los swaps en vuelo terminan: una TX enviada no se puede des-enviar
        if self._inflight:
            logger.info("[Engine] Esperando %d trades en vuelo...", len(self._inflight))
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

        await self.notifier.close()
        await self.executor.oracle.close()
        await self.executor.chain.close()
        await self.executor.router.close()
        await self.ledger.close()
        logger.info("[Engine] Motor detenido")

    def add_position_listener(self, listener: PositionListener) -> None:
        """`listener(position)` se llama cada vez que se abre una posición."""
        self._listeners.append(listener)

    # -------------------------------------------------------------------------
    # Ajustes (snapshots inmutables)
    # -------------------------------------------------------------------------

    async def settings_for(self, owner_id: str) -> TradingSettings:
        stored = await self.ledger.store.get_settings(owner_id)
        return stored or self.config.default_settings

    async def update_settings(self, owner_id: str, **changes: Any) -> TradingSettings:
        current = await self.settings_for(owner_id)
        updated = dataclasses.replace(current, **changes)
        await self.ledger.store.save_settings(owner_id, updated)
        logger.info("[Engine] Ajustes de %s actualizados: %s", owner_id, changes)
        return updated

    # -------------------------------------------------------------------------
    # Compras
    # -------------------------------------------------------------------------

    async def buy(
        self,
        owner_id: str,
        token_address: str,
        sol_amount: Optional[float] = None,
        *,
        slippage_percent: Optional[float] = None,
        symbol: str = "",
        source: str = "manual",
    ) -> TradeResult:
        settings = await self.settings_for(owner_id)
        amount = sol_amount if sol_amount is not None else settings.default_buy_amount_sol
        slippage = slippage_percent if slippage_percent is not None else settings.slippage_percent

        open_positions = await self.ledger.list_open(owner_id)
        if len(open_positions) >= settings.max_positions:
            logger.info("[Engine] %s: max posiciones (%d) alcanzado", owner_id, settings.max_positions)
            return self._count(TradeResult(TradeStatus.SKIPPED, reason="max posiciones alcanzado"))

        intent = TradeIntent.buy(owner_id, token_address, amount, slippage)
        pending = PendingTrade(
            signature="",
            side=TradeSide.BUY,
            owner_id=owner_id,
            token_address=token_address,
            price=0.0,
            source=source,
        )

        async def work() -> TradeResult:
            md = await self.oracle.get_market_data(token_address)
            pending.price = md.price if md is not None else 0.0
            return await self._execute(intent, pending, "Compra", symbol=symbol)

        return await self._guarded(owner_id, token_address, work)

    # -------------------------------------------------------------------------
    # Ventas
    # -------------------------------------------------------------------------

    async def sell_position(
        self,
        position_id: str,
        *,
        fraction: float = 1.0,
        slippage_percent: Optional[float] = None,
        trigger_price: Optional[float] = None,
        reason: str = "manual",
    ) -> TradeResult:
        """
        Vende `fraction` de una posición. `trigger_price` es la muestra de
        precio que disparó la venta (TP/SL); si falta se consulta el oráculo.
        """
        if not (0 < fraction <= 1):
            raise ValueError(f"fraction fuera de rango: {fraction}")

        pos = await self.ledger.get(position_id)
        if not pos.is_open:
            return self._count(TradeResult(TradeStatus.SKIPPED, position=pos, reason="posición cerrada"))

        async def work() -> TradeResult:
            return await self._sell_locked(position_id, fraction, slippage_percent, trigger_price, reason)

        return await self._guarded(pos.owner_id, pos.token_address, work)

    async def sell_token(self, owner_id: str, token_address: str, *, reason: str = "manual") -> List[TradeResult]:
        """Cierra todas las posiciones abiertas de `owner_id` en `token_address`."""
        results = []
        for pos in await self.ledger.list_open(owner_id):
            if pos.token_address == token_address:
                results.append(await self.sell_position(pos.id, reason=reason))
        return results

    async def emergency_sell_all(self, owner_id: str) -> List[TradeResult]:
        positions = await self.ledger.list_open(owner_id)
        logger.warning("[Engine] 🚨 Venta de emergencia de %d posiciones de %s", len(positions), owner_id)
        return list(await asyncio.gather(*[
            self.sell_position(
                p.id, slippage_percent=EMERGENCY_SLIPPAGE_PERCENT, reason="emergency"
            )
            for p in positions
        ]))

    async def _sell_locked(
        self,
        position_id: str,
        fraction: float,
        slippage_percent: Optional[float],
        trigger_price: Optional[float],
        reason: str,
    ) -> TradeResult:
        # releer bajo el lease: el estado pudo cambiar mientras esperábamos
        pos = await self.ledger.get(position_id)
        if not pos.is_open:
            return self._count(TradeResult(TradeStatus.SKIPPED, position=pos, reason="posición cerrada"))

        if pos.pending_signature:
            pending = await self._find_pending(pos.pending_signature)
            if pending is not None:
                prior = await self._reconcile_one(pending)
                if prior.status == TradeStatus.PENDING:
                    return self._count(TradeResult(
                        TradeStatus.SKIPPED, position=pos, reason="venta anterior pendiente de verificación"
                    ))
                pos = await self.ledger.get(position_id)
                if not pos.is_open:
                    return self._count(TradeResult(TradeStatus.SKIPPED, position=pos, reason="posición cerrada"))
            else:
                await self.ledger.mark_pending(position_id, None)

        settings = await self.settings_for(pos.owner_id)
        slippage = slippage_percent if slippage_percent is not None else settings.slippage_percent

        try:
            decimals = pos.decimals if pos.decimals is not None else await self.chain.get_decimals(pos.token_address)
            wanted_ui = pos.amount * fraction
            raw = int(wanted_ui * 10 ** decimals)
            if not self.config.simulation:
                signer = self.signers.get(pos.owner_id)
                balance = await self.chain.get_token_balance(signer.public_key, pos.token_address)
                raw = min(raw, balance)
            if raw <= 0:
                raise InsufficientBalance(f"sin balance de {pos.token_address}")
        except TradingError as exc:
            result = TradeResult(TradeStatus.FAILED, outcome=SwapOutcome.failed(exc), position=pos, reason=str(exc))
            await self._report(pos.owner_id, "Venta", pos.token_address, result)
            return result

        price = trigger_price
        if price is None:
            price = await self.oracle.get_price(pos.token_address)

        # al cerrar se vende el balance real; en el ledger se cierra el amount completo
        sold_ui = pos.amount if fraction >= 1 else raw / 10 ** decimals

        intent = TradeIntent.sell(pos.owner_id, pos.token_address, raw, slippage, pos.id)
        pending = PendingTrade(
            signature="",
            side=TradeSide.SELL,
            owner_id=pos.owner_id,
            token_address=pos.token_address,
            price=price if price is not None else 0.0,
            position_id=pos.id,
            sold_amount=sold_ui,
            source=reason,
        )
        logger.info(
            "[Engine] Venta (%s) de %s: %.6f tokens (%d raw) slippage=%.2f%%",
            reason, pos.id, sold_ui, raw, slippage,
        )
        return await self._execute(intent, pending, "Venta", known_price=price is not None)

    # -------------------------------------------------------------------------
    # Ejecución común
    # -------------------------------------------------------------------------

    async def _guarded(
        self, owner_id: str, token_address: str, work: Callable[[], Awaitable[TradeResult]]
    ) -> TradeResult:
        lease = await self.ledger.acquire_execution_lock(owner_id, token_address)
        if lease is None:
            return self._count(TradeResult(TradeStatus.BUSY, reason="trade en vuelo"))

        async def run() -> TradeResult:
            try:
                async with self.ledger.keep_alive(lease):
                    return await work()
            finally:
                await self.ledger.release(lease)

        task = asyncio.create_task(run())
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    async def _execute(
        self,
        intent: TradeIntent,
        pending: PendingTrade,
        action: str,
        *,
        symbol: str = "",
        known_price: bool = True,
    ) -> TradeResult:
        try:
            signer = self.signers.get(intent.owner_id)
        except TradingError as exc:
            outcome = SwapOutcome.failed(exc)
        else:
            outcome = await self.executor.execute(intent, signer)

        pending = dataclasses.replace(
            pending,
            signature=outcome.signature or "",
            in_amount=outcome.in_amount,
            out_amount=outcome.out_amount,
            submitted_at=time.time(),
        )

        if outcome.success:
            result = await self._settle(pending, outcome, symbol=symbol, known_price=known_price)
        elif outcome.unknown:
            await self._park(pending)
            result = TradeResult(TradeStatus.PENDING, outcome=outcome, reason=outcome.error or "")
        else:
            result = TradeResult(TradeStatus.FAILED, outcome=outcome, reason=outcome.error or "")

        await self._report(intent.owner_id, action, intent.token_address, result)
        return result

    async def _settle(
        self,
        pending: PendingTrade,
        outcome: SwapOutcome,
        *,
        symbol: str = "",
        known_price: bool = True,
    ) -> TradeResult:
        """Lleva un swap confirmado al ledger. Idempotente por signature."""
        try:
            if pending.side == TradeSide.BUY:
                position = await self._record_buy(pending, symbol)
            else:
                price = pending.price if known_price and pending.price > 0 else None
                if price is None:
                    price = await self._fill_price(pending)
                position = await self.ledger.record_sell(
                    pending.position_id,
                    price,
                    pending.sold_amount,
                    pending.signature,
                )
        except TradingError as exc:
            # swap confirmado pero sin registrar: se reintenta en la reconciliación
            logger.warning("[Engine] Swap %s confirmado sin registrar: %r", pending.signature, exc)
            await self._park(pending)
            return TradeResult(TradeStatus.PENDING, outcome=outcome, reason=str(exc))

        await self.ledger.store.delete_pending(pending.signature)
        return TradeResult(TradeStatus.EXECUTED, outcome=outcome, position=position)

    async def _record_buy(self, pending: PendingTrade, symbol: str) -> Position:
        decimals = await self.chain.get_decimals(pending.token_address)
        amount = pending.out_amount / 10 ** decimals
        settings = await self.settings_for(pending.owner_id)
        position = await self.ledger.open(
            pending.owner_id,
            pending.token_address,
            amount,
            pending.price,
            pending.signature,
            symbol=symbol,
            decimals=decimals,
            settings=settings,
        )
        for listener in self._listeners:
            listener(position)
        return position

    async def _fill_price(self, pending: PendingTrade) -> Optional[float]:
        """Precio USD por token implícito en la venta ejecutada (SOL recibido / tokens vendidos)."""
        if pending.in_amount <= 0 or pending.out_amount <= 0:
            return None
        try:
            sol_usd = await self.oracle.get_price(SOL_MINT)
            if sol_usd is None:
                return None
            decimals = await self.chain.get_decimals(pending.token_address)
        except TradingError as exc:
            logger.debug("[Engine] Sin precio de ejecución para %s: %r", pending.signature, exc)
            return None
        tokens = pending.in_amount / 10 ** decimals
        sol = pending.out_amount / LAMPORTS_PER_SOL
        price = sol / tokens * sol_usd
        logger.info("[Engine] Precio de ejecución de %s: %.10f USD", pending.signature, price)
        return price

    async def _park(self, pending: PendingTrade) -> None:
        await self.ledger.store.save_pending(pending)
        if pending.side == TradeSide.SELL and pending.position_id:
            await self.ledger.mark_pending(pending.position_id, pending.signature)
        logger.info("[Engine] ⏳ %s pendiente de verificación", pending.signature)

    async def _report(self, owner_id: str, action: str, token_address: str, result: TradeResult) -> None:
        self._count(result)
        await self.notifier.trade_result(owner_id, action, token_address, result)

    def _count(self, result: TradeResult) -> TradeResult:
        key = {
            TradeStatus.EXECUTED: "executed",
            TradeStatus.FAILED: "failed",
            TradeStatus.PENDING: "pending",
            TradeStatus.BUSY: "busy",
            TradeStatus.SKIPPED: "skipped",
        }[result.status]
        self._stats[key] += 1
        return result

    # -------------------------------------------------------------------------
    # Reconciliación de resultados UNKNOWN
    # -------------------------------------------------------------------------

    async def _find_pending(self, signature: str) -> Optional[PendingTrade]:
        for p in await self.ledger.store.list_pending():
            if p.signature == signature:
                return p
        return None

    async def reconcile_pending(self) -> List[TradeResult]:
        results = []
        for pending in await self.ledger.store.list_pending():
            async with self.ledger.execution_lease(pending.owner_id, pending.token_address) as lease:
                if lease is None:
                    continue
                results.append(await self._reconcile_one(pending))
        return results

    async def _reconcile_one(self, pending: PendingTrade) -> TradeResult:
        """Debe llamarse con el lease (owner, token) tomado."""
        action = "Compra" if pending.side == TradeSide.BUY else "Venta"
        checked = await self.executor.reconcile(pending.signature)

        if checked.success:
            outcome = dataclasses.replace(
                checked, in_amount=pending.in_amount, out_amount=pending.out_amount
            )
            result = await self._settle(pending, outcome, known_price=pending.price > 0)
            if result.status == TradeStatus.EXECUTED:
                await self._report(pending.owner_id, action, pending.token_address, result)
            return result

        expired = (
            checked.error_kind == ErrorKind.NOT_FOUND
            and time.time() - pending.submitted_at >= DROP_HORIZON_SEC
        )
        if checked.status == OutcomeStatus.FAILED or expired:
            await self.ledger.store.delete_pending(pending.signature)
            if pending.side == TradeSide.SELL and pending.position_id:
                await self.ledger.mark_pending(pending.position_id, None)
            reason = checked.error if checked.status == OutcomeStatus.FAILED else "TX descartada por la red"
            result = TradeResult(TradeStatus.FAILED, outcome=checked, reason=reason or "")
            await self._report(pending.owner_id, action, pending.token_address, result)
            return result

        return TradeResult(TradeStatus.PENDING, outcome=checked)

    async def _reconcile_loop(self) -> None:
        while True:
            await asyncio.sleep(self.reconcile_interval_sec)
            try:
                await self.reconcile_pending()
            except TradingError as exc:
                logger.warning("[Engine] Reconciliación fallida: %r", exc)
            except Exception as exc:
                logger.exception("[Engine] Error inesperado en reconciliación: %r", exc)

    # -------------------------------------------------------------------------
    # Snapshots para health / monitoreo
    # -------------------------------------------------------------------------

    async def get_stats_snapshot(self) -> Dict[str, Any]:
        open_positions = await self.ledger.list_all_open()
        pending = await self.ledger.store.list_pending()
        return {
            "mode": self.config.mode,
            "started_at": self.started_at,
            "uptime_seconds": int(time.time() - self.started_at) if self.started_at else 0,
            "open_positions": len(open_positions),
            "pending_verification": len(pending),
            "inflight_trades": len(self._inflight),
            "trades": dict(self._stats),
        }
