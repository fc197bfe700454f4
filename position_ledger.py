# position_ledger.py
"""
PositionLedger: vista autoritativa de las posiciones de cada usuario,
sincronizada con el PersistentStore.

Reglas:
- Una posición se crea sólo tras una compra confirmada (`open`).
- `amount` / `status` sólo cambian en `record_sell`, después de un
  SwapOutcome confirmado. Nada de mutaciones optimistas.
- `record_sell` es idempotente por signature.
- El lease (owner, token) garantiza un único trade en vuelo por par; vive en
  el store y caduca por TTL, así que sobrevive a un reinicio.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Optional

from config import TradingSettings
from errors import PositionNotFound
from models import (
    CloseReason,
    Lease,
    OwnerStats,
    Position,
    PositionStatus,
    new_id,
)
from pnl import calculate_pnl, win_rate
from store import PersistentStore

logger = logging.getLogger(__name__)

# por debajo de esta fracción del amount inicial la posición se da por cerrada
_DUST_FRACTION = 1e-9


class PositionLedger:
    def __init__(
        self,
        store: PersistentStore,
        *,
        lease_ttl_sec: float = 180.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.lease_ttl_sec = lease_ttl_sec
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def start(self) -> None:
        await self.store.start()

    async def close(self) -> None:
        await self.store.close()

    # ------------------------------------------------------------------
    # Lecturas
    # ------------------------------------------------------------------

    async def get(self, position_id: str) -> Position:
        pos = await self.store.get_position(position_id)
        if pos is None:
            raise PositionNotFound(f"posición {position_id} no existe")
        return pos

    async def list_open(self, owner_id: str) -> List[Position]:
        return await self.store.list_positions(owner_id, open_only=True)

    async def list_all_open(self) -> List[Position]:
        return await self.store.list_positions(None, open_only=True)

    async def list_positions(self, owner_id: Optional[str] = None) -> List[Position]:
        return await self.store.list_positions(owner_id)

    async def owner_stats(self, owner_id: str) -> OwnerStats:
        closed = [
            p for p in await self.store.list_positions(owner_id)
            if p.status == PositionStatus.CLOSED and p.pnl_known
        ]
        total = len(closed)
        wins = sum(1 for p in closed if p.pnl > 0)
        return OwnerStats(
            total_trades=total,
            winning_trades=wins,
            total_pnl=sum(p.pnl for p in closed),
            win_rate=win_rate(wins, total),
        )

    # ------------------------------------------------------------------
    # Escrituras
    # ------------------------------------------------------------------

    async def open(
        self,
        owner_id: str,
        token_address: str,
        amount: float,
        buy_price: float,
        signature: str,
        *,
        symbol: str = "",
        decimals: Optional[int] = None,
        settings: Optional[TradingSettings] = None,
    ) -> Position:
        """Registra una compra confirmada. Idempotente por signature de compra."""
        existing = await self.store.find_position_by_buy_signature(signature)
        if existing is not None:
            logger.info("[Ledger] Compra %s ya registrada (posición %s)", signature, existing.id)
            return existing

        if amount <= 0:
            raise ValueError(f"amount inválido: {amount}")

        tp_price = sl_price = None
        if settings is not None and buy_price > 0:
            tp_price = buy_price * (1 + settings.take_profit_percent / 100.0)
            sl_price = buy_price * (1 - settings.stop_loss_percent / 100.0)

        pos = Position(
            id=new_id(),
            owner_id=owner_id,
            token_address=token_address,
            amount=amount,
            initial_amount=amount,
            buy_price=buy_price,
            buy_timestamp=self._clock(),
            buy_signature=signature,
            symbol=symbol,
            decimals=decimals,
            take_profit_price=tp_price,
            stop_loss_price=sl_price,
            highest_price=buy_price,
        )
        await self.store.insert_position(pos)
        logger.info(
            "[Ledger] 🟢 Posición abierta %s owner=%s token=%s amount=%s precio=%.10f",
            pos.id, owner_id, token_address, amount, buy_price,
        )
        return pos

    async def record_sell(
        self,
        position_id: str,
        sell_price: Optional[float],
        sold_amount: float,
        signature: str,
    ) -> Position:
        """`sell_price=None`: venta confirmada sin precio de mercado; el P&L queda desconocido."""
        async with self._locks[position_id]:
            pos = await self.get(position_id)

            if signature in pos.sell_signatures:
                logger.info("[Ledger] Venta %s ya registrada, sin cambios", signature)
                return pos
            if not pos.is_open:
                logger.warning(
                    "[Ledger] Venta %s sobre posición cerrada %s ignorada", signature, position_id
                )
                return pos

            sold = min(max(sold_amount, 0.0), pos.amount)
            if sell_price is None:
                pos.pnl_known = False
            else:
                pos.pnl += calculate_pnl(pos.buy_price, sell_price, sold)
                pos.sell_price = sell_price
            pos.amount -= sold
            pos.sell_signatures.append(signature)
            pos.sell_timestamp = self._clock()
            if pos.pending_signature == signature:
                pos.pending_signature = None

            cost = pos.buy_price * pos.initial_amount
            pos.pnl_percentage = pos.pnl / cost * 100.0 if cost else 0.0

            if pos.amount <= pos.initial_amount * _DUST_FRACTION:
                pos.amount = 0.0
                pos.status = PositionStatus.CLOSED
                pos.close_reason = CloseReason.SOLD
            else:
                pos.status = PositionStatus.PARTIAL

            await self.store.update_position(pos)

        if not pos.is_open:
            self._locks.pop(position_id, None)
        logger.info(
            "[Ledger] 🔴 Venta registrada %s: %s vendidos a %s, estado=%s, P&L=%.6f (%.2f%%)",
            position_id, sold, sell_price, pos.status.value, pos.pnl, pos.pnl_percentage,
        )
        return pos

    async def note_price(self, position_id: str, price: float) -> Optional[Position]:
        """Guarda último precio visto y máximo (trailing stop). No toca amount/status."""
        async with self._locks[position_id]:
            pos = await self.store.get_position(position_id)
            if pos is None or not pos.is_open:
                self._locks.pop(position_id, None)
                return pos
            pos.last_price = price
            if price > pos.highest_price:
                pos.highest_price = price
            await self.store.update_position(pos)
            return pos

    async def set_entry_price(
        self, position_id: str, price: float, settings: Optional[TradingSettings] = None
    ) -> Optional[Position]:
        """Fija el precio de compra si no se conocía al abrir (oráculo sin datos)."""
        async with self._locks[position_id]:
            pos = await self.store.get_position(position_id)
            if pos is None or pos.buy_price > 0 or price <= 0:
                return pos
            pos.buy_price = price
            pos.highest_price = max(pos.highest_price, price)
            if settings is not None:
                pos.take_profit_price = price * (1 + settings.take_profit_percent / 100.0)
                pos.stop_loss_price = price * (1 - settings.stop_loss_percent / 100.0)
            await self.store.update_position(pos)
        logger.info("[Ledger] Fijando precio de entrada para %s: %.10f", position_id, price)
        return pos

    async def mark_pending(self, position_id: str, signature: Optional[str]) -> None:
        async with self._locks[position_id]:
            pos = await self.store.get_position(position_id)
            if pos is None:
                return
            pos.pending_signature = signature
            await self.store.update_position(pos)

    async def close_stale(self, horizon_sec: float, now: Optional[float] = None) -> List[Position]:
        """
        Cierre de housekeeping para posiciones más viejas que `horizon_sec`.

        No es una venta: no hay consulta de mercado. Si el monitor vio algún
        precio se usa como precio de cierre; si no, el P&L queda desconocido.
        """
        now = self._clock() if now is None else now
        closed: List[Position] = []
        for pos in await self.list_all_open():
            if now - pos.buy_timestamp < horizon_sec:
                continue
            async with self.execution_lease(pos.owner_id, pos.token_address) as lease:
                if lease is None:
                    logger.info("[Ledger] Posición %s ocupada, cierre stale pospuesto", pos.id)
                    continue
                async with self._locks[pos.id]:
                    current = await self.get(pos.id)
                    if not current.is_open:
                        continue
                    if current.last_price is not None:
                        current.pnl += calculate_pnl(current.buy_price, current.last_price, current.amount)
                        cost = current.buy_price * current.initial_amount
                        current.pnl_percentage = current.pnl / cost * 100.0 if cost else 0.0
                        current.sell_price = current.last_price
                    else:
                        current.pnl_known = False
                    current.amount = 0.0
                    current.status = PositionStatus.CLOSED
                    current.close_reason = CloseReason.STALE
                    current.sell_timestamp = now
                    await self.store.update_position(current)
                self._locks.pop(pos.id, None)
                logger.info(
                    "[Ledger] Posición %s cerrada por antigüedad (precio=%s)",
                    current.id, current.sell_price,
                )
                closed.append(current)
        return closed

    # ------------------------------------------------------------------
    # Leases
    # ------------------------------------------------------------------

    async def acquire_execution_lock(
        self, owner_id: str, token_address: str, holder: Optional[str] = None
    ) -> Optional[Lease]:
        """Devuelve el Lease, o None si otro trade ya está en vuelo (Busy)."""
        lease = await self.store.try_acquire_lease(
            owner_id, token_address, holder or new_id(), self.lease_ttl_sec
        )
        if lease is None:
            logger.debug("[Ledger] Lease ocupado para %s/%s", owner_id, token_address)
        return lease

    async def renew(self, lease: Lease) -> Optional[Lease]:
        """Extiende el TTL. None si el lease ya no es nuestro."""
        renewed = await self.store.renew_lease(lease, self.lease_ttl_sec)
        if renewed is None:
            logger.error(
                "[Ledger] ⚠️ Lease perdido para %s/%s (holder=%s)",
                lease.owner_id, lease.token_address, lease.holder,
            )
        return renewed

    async def _heartbeat(self, lease: Lease) -> None:
        interval = max(self.lease_ttl_sec / 3.0, 0.01)
        while True:
            await asyncio.sleep(interval)
            try:
                if await self.renew(lease) is None:
                    return
            except Exception as exc:
                logger.warning("[Ledger] Error renovando lease %s/%s: %r", lease.owner_id, lease.token_address, exc)

    @asynccontextmanager
    async def keep_alive(self, lease: Lease) -> AsyncIterator[Lease]:
        """Renueva el lease en segundo plano mientras dura el bloque."""
        task = asyncio.create_task(self._heartbeat(lease), name=f"lease-{lease.token_address[:8]}")
        try:
            yield lease
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def release(self, lease: Lease) -> None:
        await self.store.release_lease(lease)

    @asynccontextmanager
    async def execution_lease(self, owner_id: str, token_address: str) -> AsyncIterator[Optional[Lease]]:
        lease = await self.acquire_execution_lock(owner_id, token_address)
        if lease is None:
            yield None
            return
        try:
            async with self.keep_alive(lease):
                yield lease
        finally:
            await self.release(lease)
