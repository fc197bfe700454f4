"""
Fakes compartidos: ningún test toca red, RPC ni base de datos.
"""

import asyncio
import dataclasses
from typing import Dict, List, Optional

import pytest

from chain_client import SignatureState, SignatureStatus, TokenSupply
from config import TradingSettings, load_config
from errors import ConfirmationTimeout
from models import Quote, TokenMarketData
from notifier import Notifier
from position_ledger import PositionLedger
from signer import Signer, SignerRegistry
from store import MemoryStore
from swap_executor import SwapExecutor
from trading_engine import TradingEngine

OWNER = "owner-1"
TOKEN = "TokenMint1111111111111111111111111111111111"


class FakeOracle:
    def __init__(self) -> None:
        self.prices: Dict[str, Optional[float]] = {}
        self.market: Dict[str, TokenMarketData] = {}
        self._last: Dict[str, TokenMarketData] = {}
        self.calls = 0

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass

    def last_known(self, mint):
        return self._last.get(mint)

    async def get_market_data(self, mint):
        self.calls += 1
        if mint in self.market:
            data = self.market[mint]
        else:
            price = self.prices.get(mint)
            if price is None:
                return None
            data = TokenMarketData(price=price)
        self._last[mint] = data
        return data

    async def get_price(self, mint):
        data = await self.get_market_data(mint)
        return data.price if data else None


class FakeRouter:
    def __init__(self, out_amount: int = 1_000_000) -> None:
        self.out_amount = out_amount
        self.quote_errors: List[Exception] = []
        self.build_errors: List[Exception] = []
        self.quotes = 0
        self.builds = 0
        self.price_impact_pct = 0.0
        # para bloquear un trade a mitad de camino
        self.gate: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def quote(self, input_mint, output_mint, amount, slippage_bps):
        self.quotes += 1
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.quote_errors:
            raise self.quote_errors.pop(0)
        return Quote(
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=amount,
            out_amount=self.out_amount,
            slippage_bps=slippage_bps,
            price_impact_pct=self.price_impact_pct,
        )

    async def build_swap_transaction(self, quote, owner_public_key):
        self.builds += 1
        if self.build_errors:
            raise self.build_errors.pop(0)
        return {"quote": quote, "owner": owner_public_key}


class FakeSignedTx:
    def __init__(self, signature: str) -> None:
        self.signatures = [signature]


class FakeSigner(Signer):
    def __init__(self, public_key: str = "OwnerPubkey1111") -> None:
        self.public_key = public_key
        self.signed = 0
        self.error: Optional[Exception] = None

    def sign(self, transaction):
        if self.error is not None:
            raise self.error
        self.signed += 1
        return FakeSignedTx(f"sig-{self.signed}")


class FakeChain:
    def __init__(self) -> None:
        self.poll_interval_sec = 0.0
        self.submitted: List[str] = []
        self.submit_errors: List[Exception] = []
        self.statuses: Dict[str, SignatureStatus] = {}
        self.confirm_timeout = False
        self.balances: Dict[str, int] = {}
        self.decimals = 6
        self.supply = TokenSupply(amount=10**15, decimals=6, ui_amount=1_000_000_000.0)
        self.recent: Dict[str, List[str]] = {}
        self.transactions: Dict[str, dict] = {}

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def submit(self, signed_tx):
        sig = signed_tx.signatures[0]
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        self.submitted.append(sig)
        return sig

    async def confirm(self, signature, timeout_sec):
        if self.confirm_timeout:
            raise ConfirmationTimeout(signature)
        self.statuses[signature] = SignatureStatus(SignatureState.CONFIRMED)

    async def get_signature_status(self, signature):
        return self.statuses.get(signature, SignatureStatus(SignatureState.NOT_FOUND))

    async def get_token_balance(self, owner, mint):
        return self.balances.get(mint, 10**18)

    async def get_decimals(self, mint):
        return self.decimals

    async def get_token_supply(self, mint):
        return self.supply

    async def get_recent_signatures(self, address, limit=20, until=None):
        sigs = self.recent.get(address, [])
        if until is not None and until in sigs:
            sigs = sigs[: sigs.index(until)]
        return sigs[:limit]

    async def get_signatures_since(self, address, until, page_size=100):
        sigs = self.recent.get(address, [])
        if until is not None and until in sigs:
            sigs = sigs[: sigs.index(until)]
        return list(sigs)

    async def get_parsed_transaction(self, signature):
        return self.transactions.get(signature)

    async def get_version(self):
        return "1.18.0"


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.messages: List[tuple] = []

    async def notify(self, owner_id, text):
        self.messages.append((owner_id, text))


async def no_sleep(_delay):
    await asyncio.sleep(0)


async def wait_until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condición no alcanzada")
        await asyncio.sleep(0.01)


@pytest.fixture
def oracle():
    o = FakeOracle()
    o.prices[TOKEN] = 1.0
    return o


@pytest.fixture
def router():
    return FakeRouter()


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def signer():
    return FakeSigner()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def ledger(store):
    return PositionLedger(store, lease_ttl_sec=60)


@pytest.fixture
def executor(router, chain, oracle):
    return SwapExecutor(
        router,
        chain,
        oracle,
        max_attempts=3,
        backoff_base_sec=0.5,
        confirm_timeout_sec=1,
        reconcile_timeout_sec=0,
        simulation=False,
        sleep=no_sleep,
    )


@pytest.fixture
def config():
    return dataclasses.replace(
        load_config(),
        mode="real",
        default_settings=TradingSettings(
            slippage_percent=1.0,
            take_profit_percent=100.0,
            stop_loss_percent=50.0,
            max_positions=10,
            default_buy_amount_sol=0.1,
        ),
    )


@pytest.fixture
def engine(config, ledger, executor, signer, notifier):
    return TradingEngine(
        config,
        ledger=ledger,
        executor=executor,
        signers=SignerRegistry({OWNER: signer}),
        notifier=notifier,
    )
