# price_oracle.py
"""
Oráculo de precios para tokens en Solana.

- Intenta primero DexScreener: {dexscreener_url}/tokens/{mint}
- Si falla o no hay pares válidos, hace fallback a Jupiter Price API v3:
  {jupiter_price_url}?ids={mint},{SOL_MINT}
- "Sin datos" no es un error: se devuelve None y el caller salta el ciclo.
- Guarda el último dato conocido por token (lo usa el guard de price impact).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from errors import RateLimitExceeded
from models import SOL_MINT, TokenMarketData
from rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value) if value is not None else default
    except (TypeError, ValueError):
        return default


def _liq_usd(pair: dict) -> float:
    return _to_float((pair.get("liquidity") or {}).get("usd"))


def parse_dexscreener_pairs(data: Dict[str, Any]) -> Optional[TokenMarketData]:
    pairs = data.get("pairs") or []
    if not pairs:
        return None

    sol_pairs = [p for p in pairs if p.get("chainId") == "solana"] or pairs

    # Raydium si existe; si no, el par con mayor liquidez en USD
    raydium = [p for p in sol_pairs if p.get("dexId") == "raydium"]
    best = max(raydium or sol_pairs, key=_liq_usd)

    price = _to_float(best.get("priceUsd"))
    if price <= 0:
        return None

    price_native: Optional[float] = None
    if (best.get("quoteToken") or {}).get("symbol") == "SOL":
        native = _to_float(best.get("priceNative"))
        price_native = native if native > 0 else None

    return TokenMarketData(
        price=price,
        price_native=price_native,
        price_change_24h=_to_float((best.get("priceChange") or {}).get("h24")),
        volume_24h=_to_float((best.get("volume") or {}).get("h24")),
        market_cap=_to_float(best.get("marketCap") or best.get("fdv")),
        liquidity=_liq_usd(best),
        source="dexscreener",
    )


def parse_jupiter_prices(data: Dict[str, Any], mint: str) -> Optional[TokenMarketData]:
    token_info = data.get(mint)
    if not token_info:
        return None

    token_usd = _to_float(token_info.get("usdPrice"))
    if token_usd <= 0:
        return None

    sol_usd = _to_float((data.get(SOL_MINT) or {}).get("usdPrice"))
    return TokenMarketData(
        price=token_usd,
        price_native=token_usd / sol_usd if sol_usd > 0 else None,
        price_change_24h=_to_float(token_info.get("priceChange24h")),
        source="jupiter",
    )


class PriceOracle:
    """Datos de mercado actuales de un token: {price, priceChange24h, volume24h, marketCap, liquidity}."""

    def __init__(
        self,
        dexscreener_url: str,
        jupiter_price_url: str,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout_sec: float = 8.0,
    ) -> None:
        self.dexscreener_url = dexscreener_url.rstrip("/")
        self.jupiter_price_url = jupiter_price_url.rstrip("/")
        self._limiter = rate_limiter
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout_sec
        self._last_known: Dict[str, TokenMarketData] = {}

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def last_known(self, mint: str) -> Optional[TokenMarketData]:
        return self._last_known.get(mint)

    async def get_market_data(self, mint: str) -> Optional[TokenMarketData]:
        """DexScreener primero; si no hay precio, fallback Jupiter. None = sin datos."""
        data = await self._fetch_dexscreener(mint)
        if data is None:
            data = await self._fetch_jupiter(mint)

        if data is None:
            logger.debug("[Oracle] Sin precio para mint %s (DexScreener+Jupiter)", mint)
            return None

        self._last_known[mint] = data
        return data

    async def get_price(self, mint: str) -> Optional[float]:
        data = await self.get_market_data(mint)
        return data.price if data else None

    # ------------------------------------------------------------------
    # Proveedores
    # ------------------------------------------------------------------

    async def _get_json(self, provider: str, url: str) -> Optional[Dict[str, Any]]:
        if self._client is None:
            await self.start()

        if self._limiter is not None:
            try:
                await self._limiter.acquire(provider)
            except RateLimitExceeded:
                logger.debug("[Oracle] %s sin cupo, se salta la consulta", provider)
                return None

        try:
            resp = await self._client.get(url)
        except httpx.HTTPError as exc:
            logger.debug("[Oracle] %s error de red: %r", provider, exc)
            return None

        if resp.status_code != 200:
            logger.debug("[Oracle] %s status %s (%s)", provider, resp.status_code, url)
            return None

        try:
            return resp.json()
        except ValueError as exc:
            logger.debug("[Oracle] %s JSON inválido: %r", provider, exc)
            return None

    async def _fetch_dexscreener(self, mint: str) -> Optional[TokenMarketData]:
        data = await self._get_json("dexscreener", f"{self.dexscreener_url}/tokens/{mint}")
        return parse_dexscreener_pairs(data) if data else None

    async def _fetch_jupiter(self, mint: str) -> Optional[TokenMarketData]:
        data = await self._get_json("jupiter", f"{self.jupiter_price_url}?ids={mint},{SOL_MINT}")
        return parse_jupiter_prices(data, mint) if data else None
