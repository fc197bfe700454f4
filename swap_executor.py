# swap_executor.py
"""
SwapExecutor: quote -> guard de price impact -> TX -> firma -> envío -> confirmación.

- Cada paso de red se reintenta con backoff exponencial acotado
  (TransientNetwork, max_attempts intentos, base backoff_base_sec).
- StaleQuote: se pide una quote nueva una sola vez.
- SigningFailure: aborta el intento, no se reintenta.
- Timeout de confirmación: el resultado es UNKNOWN, nunca FAILED. Hay que
  reconciliar consultando la cadena; reenviar podría duplicar la operación.

Todas las excepciones terminan aquí convertidas en SwapOutcome.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

from chain_client import SignatureState, SolanaChainClient, classify_rpc_error
from errors import (
    ConfirmationTimeout,
    ErrorKind,
    ImpactTooHigh,
    StaleQuote,
    TradingError,
    TransientNetwork,
)
from models import LAMPORTS_PER_SOL, OutcomeStatus, Quote, SwapOutcome, TradeIntent, TradeSide
from pnl import price_deviation_pct
from price_oracle import PriceOracle
from quote_router import QuoteRouter
from signer import Signer, signature_of

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SwapExecutor:
    def __init__(
        self,
        router: QuoteRouter,
        chain: SolanaChainClient,
        oracle: PriceOracle,
        *,
        max_attempts: int = 3,
        backoff_base_sec: float = 0.5,
        confirm_timeout_sec: float = 60.0,
        reconcile_timeout_sec: float = 30.0,
        max_price_deviation_percent: float = 25.0,
        simulation: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.router = router
        self.chain = chain
        self.oracle = oracle
        self.max_attempts = max(1, max_attempts)
        self.backoff_base_sec = backoff_base_sec
        self.confirm_timeout_sec = confirm_timeout_sec
        self.reconcile_timeout_sec = reconcile_timeout_sec
        self.max_price_deviation_percent = max_price_deviation_percent
        self.simulation = simulation
        self._sleep = sleep

    # ------------------------------------------------------------------
    # API pública
    # ------------------------------------------------------------------

    async def execute(self, intent: TradeIntent, signer: Signer) -> SwapOutcome:
        logger.info(
            "[Swap] %s owner=%s token=%s amount=%s slippage=%.2f%%",
            intent.side.value.upper(), intent.owner_id, intent.token_address,
            intent.amount, intent.slippage_percent,
        )
        signature: Optional[str] = None
        quote: Optional[Quote] = None
        try:
            quote = await self._checked_quote(intent)
            try:
                tx = await self._retry(
                    "build", lambda: self.router.build_swap_transaction(quote, signer.public_key)
                )
            except StaleQuote as exc:
                logger.info("[Swap] Quote expirada (%s), pidiendo una nueva", exc)
                quote = await self._checked_quote(intent)
                tx = await self._retry(
                    "build", lambda: self.router.build_swap_transaction(quote, signer.public_key)
                )

            signed = signer.sign(tx)
            signature = signature_of(signed)

            if self.simulation:
                logger.info("[Swap] (SIM) Swap simulado, no se envía")
                return SwapOutcome(
                    status=OutcomeStatus.SUCCESS,
                    signature=f"dry-run-{int(time.time() * 1000)}",
                    in_amount=quote.in_amount,
                    out_amount=quote.out_amount,
                )

            try:
                await self._submit(signed, signature)
            except TransientNetwork as exc:
                # la TX firmada pudo llegar a algún nodo: se verifica, no se da por fallida
                logger.warning("[Swap] Envío sin respuesta para %s: pendiente de verificación", signature)
                return self._unknown(signature, exc, quote)
            await self.chain.confirm(signature, self.confirm_timeout_sec)

        except ConfirmationTimeout as exc:
            logger.warning("[Swap] Confirmación expirada para %s: pendiente de verificación", exc.signature)
            return self._unknown(exc.signature, exc, quote)
        except TradingError as exc:
            logger.warning("[Swap] %s falló (%s): %s", intent.side.value, exc.kind.value, exc)
            return SwapOutcome.failed(exc, signature)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("[Swap] Error inesperado: %r", exc)
            return SwapOutcome(
                status=OutcomeStatus.FAILED,
                signature=signature,
                error=repr(exc),
                error_kind=ErrorKind.UNEXPECTED,
            )

        logger.info("[Swap] ✅ Confirmado %s", signature)
        return SwapOutcome(
            status=OutcomeStatus.SUCCESS,
            signature=signature,
            in_amount=quote.in_amount,
            out_amount=quote.out_amount,
        )

    async def reconcile(self, signature: str, timeout_sec: Optional[float] = None) -> SwapOutcome:
        """
        Consulta el estado final de una signature ya enviada. Nunca reenvía.
        UNKNOWN con error_kind=NOT_FOUND significa que la red no la ha visto.
        """
        timeout = self.reconcile_timeout_sec if timeout_sec is None else timeout_sec
        deadline = time.monotonic() + timeout
        while True:
            try:
                status = await self.chain.get_signature_status(signature)
            except TradingError as exc:
                logger.debug("[Swap] Reconcile %s sin respuesta: %r", signature, exc)
                state, error = SignatureState.PENDING, None
            else:
                state, error = status.state, status.error

            if state == SignatureState.CONFIRMED:
                logger.info("[Swap] Reconciliado %s: confirmado", signature)
                return SwapOutcome(status=OutcomeStatus.SUCCESS, signature=signature)
            if state == SignatureState.FAILED:
                logger.info("[Swap] Reconciliado %s: fallido (%s)", signature, error)
                return SwapOutcome.failed(classify_rpc_error(error or "TX fallida"), signature)

            if time.monotonic() >= deadline:
                kind = ErrorKind.NOT_FOUND if state == SignatureState.NOT_FOUND else ErrorKind.CONFIRMATION_TIMEOUT
                return SwapOutcome(
                    status=OutcomeStatus.UNKNOWN,
                    signature=signature,
                    error=f"sin estado final ({state.value})",
                    error_kind=kind,
                )
            await self._sleep(self.chain.poll_interval_sec)

    # ------------------------------------------------------------------
    # Pasos
    # ------------------------------------------------------------------

    @staticmethod
    def _unknown(signature: str, exc: TradingError, quote: Optional[Quote]) -> SwapOutcome:
        return SwapOutcome(
            status=OutcomeStatus.UNKNOWN,
            signature=signature,
            error=str(exc),
            error_kind=exc.kind,
            in_amount=quote.in_amount if quote else 0,
            out_amount=quote.out_amount if quote else 0,
        )

    async def _checked_quote(self, intent: TradeIntent) -> Quote:
        quote = await self._retry(
            "quote",
            lambda: self.router.quote(
                intent.input_mint, intent.output_mint, intent.amount, intent.slippage_bps
            ),
        )
        await self._check_price_impact(intent, quote)
        return quote

    async def _check_price_impact(self, intent: TradeIntent, quote: Quote) -> None:
        limit = self.max_price_deviation_percent
        if quote.price_impact_pct > limit:
            raise ImpactTooHigh(f"price impact {quote.price_impact_pct:.2f}% > {limit}%")

        ref = self.oracle.last_known(intent.token_address)
        if ref is None:
            ref = await self.oracle.get_market_data(intent.token_address)
        if ref is None or not ref.price_native:
            logger.debug("[Swap] Sin precio de referencia para %s, guard omitido", intent.token_address)
            return

        decimals = await self._retry("decimals", lambda: self.chain.get_decimals(intent.token_address))
        if intent.side == TradeSide.BUY:
            sol = quote.in_amount / LAMPORTS_PER_SOL
            tokens = quote.out_amount / 10 ** decimals
        else:
            sol = quote.out_amount / LAMPORTS_PER_SOL
            tokens = quote.in_amount / 10 ** decimals
        if tokens <= 0:
            raise ImpactTooHigh("quote sin tokens")

        implied = sol / tokens
        deviation = price_deviation_pct(ref.price_native, implied)
        if deviation > limit:
            raise ImpactTooHigh(
                f"precio implícito {implied:.10f} SOL se desvía {deviation:.1f}% "
                f"del oráculo ({ref.price_native:.10f} SOL)"
            )

    async def _submit(self, signed, signature: str) -> None:
        # Reenviar la MISMA TX firmada es idempotente (misma signature); antes
        # de reintentar se mira si la red ya la tiene.
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.chain.submit(signed)
                return
            except TransientNetwork as exc:
                try:
                    status = await self.chain.get_signature_status(signature)
                except TransientNetwork:
                    status = None
                if status is not None and status.state in (SignatureState.CONFIRMED, SignatureState.PENDING):
                    logger.info("[Swap] Envío con error de red pero la TX ya está en la red: %s", signature)
                    return
                if status is not None and status.state == SignatureState.FAILED:
                    raise classify_rpc_error(status.error or "TX fallida") from exc
                if attempt >= self.max_attempts:
                    raise
                await self._backoff("submit", attempt, exc)

    async def _retry(self, step: str, fn: Callable[[], Awaitable[T]]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await fn()
            except TransientNetwork as exc:
                if attempt >= self.max_attempts:
                    raise
                await self._backoff(step, attempt, exc)
        raise AssertionError("unreachable")

    async def _backoff(self, step: str, attempt: int, exc: Exception) -> None:
        delay = self.backoff_base_sec * (2 ** (attempt - 1))
        logger.warning(
            "[Swap] %s intento %d/%d falló (%r), reintento en %.2fs",
            step, attempt, self.max_attempts, exc, delay,
        )
        await self._sleep(delay)
