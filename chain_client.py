# chain_client.py
"""
Frontera con la RPC de Solana (solana-py AsyncClient).

- submit / confirm de transacciones firmadas
- estado de una signature (para reconciliar resultados desconocidos)
- balances SPL, supply y decimales de un mint
- historial de signatures de una wallet (feed de actividad)
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TokenAccountOpts, TxOpts
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from errors import ConfirmationTimeout, InsufficientBalance, TransactionFailed, TransientNetwork
from rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SignatureState(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    PENDING = "pending"       # vista pero sin el commitment requerido
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class SignatureStatus:
    state: SignatureState
    error: Optional[str] = None


@dataclass(frozen=True)
class TokenSupply:
    amount: int
    decimals: int
    ui_amount: float


def classify_rpc_error(message: str) -> Exception:
    text = message.lower()
    if "insufficient" in text:
        return InsufficientBalance(message)
    return TransactionFailed(message)


class SolanaChainClient:
    def __init__(
        self,
        rpc_url: str,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        poll_interval_sec: float = 1.0,
        client: Optional[AsyncClient] = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.poll_interval_sec = poll_interval_sec
        self._limiter = rate_limiter
        self._client = client
        self._decimals: Dict[str, int] = {}

    async def start(self) -> None:
        if self._client is None:
            self._client = AsyncClient(self.rpc_url, commitment=Confirmed)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def _call(self, fn: Callable[[AsyncClient], Awaitable[T]]) -> T:
        if self._limiter is not None:
            await self._limiter.acquire("rpc")
        if self._client is None:
            await self.start()
        try:
            return await fn(self._client)
        except (SolanaRpcException, httpx.HTTPError, asyncio.TimeoutError) as exc:
            raise TransientNetwork(f"RPC: {exc!r}") from exc

    # ------------------------------------------------------------------
    # Transacciones
    # ------------------------------------------------------------------

    async def submit(self, signed_tx: VersionedTransaction) -> str:
        opts = TxOpts(skip_preflight=False, preflight_commitment=Confirmed, max_retries=2)
        try:
            resp = await self._call(lambda c: c.send_raw_transaction(bytes(signed_tx), opts=opts))
        except RPCException as exc:
            raise classify_rpc_error(str(exc)) from exc
        sig = str(resp.value)
        logger.info("[Chain] TX enviada, signature=%s", sig)
        return sig

    async def get_signature_status(self, signature: str) -> SignatureStatus:
        sig = Signature.from_string(signature)
        resp = await self._call(
            lambda c: c.get_signature_statuses([sig], search_transaction_history=True)
        )
        status = resp.value[0] if resp.value else None
        if status is None:
            return SignatureStatus(SignatureState.NOT_FOUND)
        if status.err is not None:
            return SignatureStatus(SignatureState.FAILED, str(status.err))
        if status.confirmation_status in (
            TransactionConfirmationStatus.Confirmed,
            TransactionConfirmationStatus.Finalized,
        ):
            return SignatureStatus(SignatureState.CONFIRMED)
        return SignatureStatus(SignatureState.PENDING)

    async def confirm(self, signature: str, timeout_sec: float) -> None:
        """
        Espera la confirmación. Lanza TransactionFailed/InsufficientBalance si la
        TX falló on-chain, ConfirmationTimeout si el plazo vence sin respuesta.
        """
        deadline = time.monotonic() + timeout_sec
        while True:
            try:
                status = await self.get_signature_status(signature)
            except TransientNetwork as exc:
                logger.debug("[Chain] Error consultando %s: %r", signature, exc)
                status = SignatureStatus(SignatureState.PENDING)

            if status.state == SignatureState.CONFIRMED:
                return
            if status.state == SignatureState.FAILED:
                raise classify_rpc_error(status.error or "TX fallida on-chain")

            if time.monotonic() >= deadline:
                raise ConfirmationTimeout(signature)
            await asyncio.sleep(self.poll_interval_sec)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def get_token_balance(self, owner: str, mint: str) -> int:
        """Balance SPL (unidades base) de `owner` para `mint`."""
        opts = TokenAccountOpts(mint=Pubkey.from_string(mint))
        resp = await self._call(
            lambda c: c.get_token_accounts_by_owner_json_parsed(Pubkey.from_string(owner), opts)
        )
        total = 0
        for acc in resp.value or []:
            try:
                info = acc.account.data.parsed["info"]
                total += int(info["tokenAmount"]["amount"])
            except (AttributeError, KeyError, TypeError, ValueError):
                continue
        return total

    async def get_token_supply(self, mint: str) -> TokenSupply:
        resp = await self._call(lambda c: c.get_token_supply(Pubkey.from_string(mint)))
        value = resp.value
        supply = TokenSupply(
            amount=int(value.amount),
            decimals=int(value.decimals),
            ui_amount=float(value.ui_amount_string or 0),
        )
        self._decimals[mint] = supply.decimals
        return supply

    async def get_decimals(self, mint: str) -> int:
        if mint not in self._decimals:
            await self.get_token_supply(mint)
        return self._decimals[mint]

    # ------------------------------------------------------------------
    # Historial
    # ------------------------------------------------------------------

    async def get_recent_signatures(
        self,
        address: str,
        limit: int = 20,
        until: Optional[str] = None,
    ) -> List[str]:
        """Signatures exitosas más recientes primero (hasta `until`, exclusivo)."""
        until_sig = Signature.from_string(until) if until else None
        resp = await self._call(
            lambda c: c.get_signatures_for_address(
                Pubkey.from_string(address), limit=limit, until=until_sig
            )
        )
        return [str(item.signature) for item in resp.value or [] if item.err is None]

    async def get_signatures_since(
        self,
        address: str,
        until: Optional[str],
        page_size: int = 100,
        max_pages: int = 10,
    ) -> List[str]:
        """
        Todas las signatures exitosas posteriores a `until` (exclusivo), más
        recientes primero. Pagina hacia atrás con `before` hasta llegar a `until`.
        """
        account = Pubkey.from_string(address)
        until_sig = Signature.from_string(until) if until else None
        before: Optional[Signature] = None
        out: List[str] = []
        for _ in range(max_pages):
            resp = await self._call(
                lambda c: c.get_signatures_for_address(
                    account, limit=page_size, before=before, until=until_sig
                )
            )
            items = resp.value or []
            out.extend(str(item.signature) for item in items if item.err is None)
            if len(items) < page_size:
                return out
            before = items[-1].signature
        logger.warning(
            "[Chain] %s: más de %d signatures nuevas, se procesan las %d más recientes",
            address, page_size * max_pages, len(out),
        )
        return out

    async def get_parsed_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        sig = Signature.from_string(signature)
        resp = await self._call(
            lambda c: c.get_transaction(
                sig, encoding="jsonParsed", max_supported_transaction_version=0
            )
        )
        if resp.value is None:
            return None
        return json.loads(resp.value.to_json())

    async def get_version(self) -> str:
        resp = await self._call(lambda c: c.get_version())
        return str(resp.value.solana_core)
