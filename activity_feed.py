# activity_feed.py
"""
Feed de actividad de wallets (polling de signatures vía RPC).

Reconocer un swap dentro de una TX depende de cada DEX, así que el feed no
lo intenta: recibe un `TradeParser` inyectado que convierte la TX parseada
(jsonParsed) en un TradeEvent, o None si no es un trade.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from chain_client import SolanaChainClient
from errors import TradingError
from models import TradeEvent

logger = logging.getLogger(__name__)

TradeParser = Callable[[str, str, Dict[str, Any]], Optional[TradeEvent]]
EventHandler = Callable[[TradeEvent], Awaitable[None]]


class WalletActivityFeed:
    def __init__(
        self,
        chain: SolanaChainClient,
        parser: TradeParser,
        *,
        poll_interval_sec: float = 3.0,
        batch_limit: int = 20,
    ) -> None:
        self.chain = chain
        self.parser = parser
        self.poll_interval_sec = poll_interval_sec
        self.batch_limit = batch_limit

    async def prime(self, wallet: str) -> Optional[str]:
        """Signature más reciente: el historial anterior a la suscripción no se copia."""
        sigs = await self.chain.get_recent_signatures(wallet, limit=1)
        return sigs[0] if sigs else None

    async def poll(self, wallet: str, since: Optional[str]) -> Tuple[List[TradeEvent], Optional[str]]:
        """
        Eventos nuevos desde `since`, del más viejo al más nuevo, y el nuevo
        cursor. Si una TX falla a mitad de lote el cursor se queda en la última
        procesada y el resto se reintenta en el siguiente poll.
        """
        sigs = await self.chain.get_signatures_since(wallet, since, page_size=self.batch_limit)
        events: List[TradeEvent] = []
        cursor = since
        for sig in reversed(sigs):
            try:
                tx = await self.chain.get_parsed_transaction(sig)
            except TradingError as exc:
                logger.warning("[Feed] %s: no se pudo leer %s (%r)", wallet, sig, exc)
                break
            cursor = sig
            if tx is None:
                continue
            try:
                event = self.parser(wallet, sig, tx)
            except (KeyError, TypeError, ValueError) as exc:
                logger.debug("[Feed] TX %s no parseable: %r", sig, exc)
                continue
            if event is not None:
                events.append(event)
        return events, cursor

    async def watch(self, wallet: str, on_event: EventHandler) -> None:
        """Cuerpo de la task por wallet: corre hasta que la cancelen."""
        cursor: Optional[str] = None
        primed = False
        while True:
            try:
                if not primed:
                    cursor = await self.prime(wallet)
                    primed = True
                    logger.info("[Feed] 👀 Vigilando %s", wallet)
                else:
                    events, cursor = await self.poll(wallet, cursor)
                    for event in events:
                        await on_event(event)
            except TradingError as exc:
                logger.warning("[Feed] %s: poll fallido (%r)", wallet, exc)
            await asyncio.sleep(self.poll_interval_sec)
