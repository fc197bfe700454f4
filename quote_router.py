# quote_router.py
"""
QuoteRouter sobre la Swap API de Jupiter.

    GET  {base}/quote  -> ruta + precio (tiempo limitado)
    POST {base}/swap   -> TX sin firmar (base64, VersionedTransaction)

Los errores HTTP / de red se clasifican aquí; nunca salen excepciones de aiohttp.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from typing import Any, Dict, Optional

import aiohttp
from solders.transaction import VersionedTransaction

from errors import QuoteUnavailable, RateLimitExceeded, StaleQuote, TransientNetwork
from models import Quote
from rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


def parse_quote(data: Dict[str, Any], slippage_bps: int) -> Quote:
    if not data or data.get("error"):
        raise QuoteUnavailable(str((data or {}).get("error") or "quote vacía"))

    try:
        in_amount = int(data["inAmount"])
        out_amount = int(data["outAmount"])
    except (KeyError, TypeError, ValueError) as exc:
        raise QuoteUnavailable(f"quote inválida: {exc!r}") from exc

    if in_amount <= 0 or out_amount <= 0:
        raise QuoteUnavailable("quote sin salida")

    try:
        impact = float(data.get("priceImpactPct") or 0.0) * 100.0
    except (TypeError, ValueError):
        impact = 0.0

    return Quote(
        input_mint=data.get("inputMint", ""),
        output_mint=data.get("outputMint", ""),
        in_amount=in_amount,
        out_amount=out_amount,
        slippage_bps=int(data.get("slippageBps", slippage_bps)),
        price_impact_pct=impact,
        raw=data,
        fetched_at=time.time(),
    )


class QuoteRouter:
    def __init__(
        self,
        base_url: str,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        quote_ttl_sec: float = 20.0,
        timeout_sec: float = 15.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.quote_ttl_sec = quote_ttl_sec
        self._limiter = rate_limiter
        self._timeout = timeout_sec
        self._session: Optional[aiohttp.ClientSession] = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout, connect=5)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------
    # API pública
    # ------------------------------------------------------------------

    async def quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> Quote:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(int(amount)),
            "slippageBps": str(int(slippage_bps)),
        }
        status, data = await self._request("GET", "/quote", params=params)

        if status in (400, 404):
            raise QuoteUnavailable(str(data.get("error") or f"sin ruta (HTTP {status})"))

        quote = parse_quote(data, slippage_bps)
        logger.debug(
            "[Router] Quote %s -> %s in=%s out=%s impact=%.3f%%",
            input_mint[:6], output_mint[:6], quote.in_amount, quote.out_amount,
            quote.price_impact_pct,
        )
        return quote

    async def build_swap_transaction(self, quote: Quote, owner_public_key: str) -> VersionedTransaction:
        if quote.age() > self.quote_ttl_sec:
            raise StaleQuote(f"quote expirada ({quote.age():.1f}s)")

        payload = {
            "quoteResponse": quote.raw,
            "userPublicKey": owner_public_key,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": "auto",
        }
        status, data = await self._request("POST", "/swap", json=payload)

        if 400 <= status < 500:
            # la quote ya no es ejecutable; el executor pide una nueva
            raise StaleQuote(str(data.get("error") or f"swap rechazado (HTTP {status})"))

        swap_tx = data.get("swapTransaction")
        if not swap_tx:
            raise StaleQuote("respuesta de swap sin transacción")

        try:
            return VersionedTransaction.from_bytes(base64.b64decode(swap_tx))
        except (ValueError, TypeError) as exc:
            raise StaleQuote(f"transacción inválida: {exc!r}") from exc

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> tuple[int, Dict[str, Any]]:
        if self._limiter is not None:
            await self._limiter.acquire("jupiter")

        await self.start()
        url = f"{self.base_url}{path}"
        try:
            async with self._session.request(method, url, **kwargs) as resp:
                status = resp.status
                if status == 429:
                    raise RateLimitExceeded("Jupiter 429")
                if status >= 500:
                    raise TransientNetwork(f"Jupiter HTTP {status}")
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = {}
                return status, data or {}
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientNetwork(f"Jupiter {method} {path}: {exc!r}") from exc
