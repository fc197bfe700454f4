# models.py
from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from errors import ErrorKind, TradingError

# WSOL mint en Solana mainnet
SOL_MINT = "So11111111111111111111111111111111111111112"
LAMPORTS_PER_SOL = 1_000_000_000


def new_id() -> str:
    return uuid.uuid4().hex


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class PositionStatus(str, Enum):
    OPEN = "open"
    PARTIAL = "partial"
    CLOSED = "closed"


class CloseReason(str, Enum):
    SOLD = "sold"
    STALE = "stale"


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    UNKNOWN = "unknown"   # enviada, pendiente de verificación


def _from_dict(cls, data: Dict[str, Any]):
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in names})


# -----------------------------------------------------------------------------
# Posiciones
# -----------------------------------------------------------------------------

@dataclass
class Position:
    id: str
    owner_id: str
    token_address: str
    amount: float                 # tokens (unidades UI) que quedan abiertos
    initial_amount: float
    buy_price: float              # USD por token
    buy_timestamp: float
    buy_signature: str
    status: PositionStatus = PositionStatus.OPEN
    symbol: str = ""
    decimals: Optional[int] = None

    take_profit_price: Optional[float] = None
    stop_loss_price: Optional[float] = None

    sell_price: Optional[float] = None
    sell_timestamp: Optional[float] = None
    sell_signatures: List[str] = field(default_factory=list)
    close_reason: Optional[CloseReason] = None

    # P&L realizado (acumulado en ventas parciales)
    pnl: float = 0.0
    pnl_percentage: float = 0.0
    pnl_known: bool = True

    # auditoría del monitor
    highest_price: float = 0.0
    last_price: Optional[float] = None
    pending_signature: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status != PositionStatus.CLOSED

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        d["close_reason"] = self.close_reason.value if self.close_reason else None
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        pos = _from_dict(cls, data)
        pos.status = PositionStatus(pos.status)
        if pos.close_reason is not None:
            pos.close_reason = CloseReason(pos.close_reason)
        pos.sell_signatures = list(pos.sell_signatures or [])
        return pos


@dataclass(frozen=True)
class Lease:
    """Token de exclusión mutua para un par (owner, token)."""

    owner_id: str
    token_address: str
    holder: str
    expires_at: float

    def expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at


@dataclass
class OwnerStats:
    total_trades: int = 0
    winning_trades: int = 0
    total_pnl: float = 0.0
    win_rate: float = 0.0


class AlertCondition(str, Enum):
    ABOVE = "above"
    BELOW = "below"


@dataclass
class PriceAlert:
    owner_id: str
    token_address: str
    target_price: float                # USD
    condition: AlertCondition = AlertCondition.ABOVE
    symbol: str = ""
    is_active: bool = True
    is_triggered: bool = False
    triggered_at: Optional[float] = None
    triggered_price: Optional[float] = None
    id: str = field(default_factory=new_id)

    def __post_init__(self) -> None:
        if self.target_price <= 0:
            raise ValueError(f"target_price inválido: {self.target_price}")
        self.condition = AlertCondition(self.condition)

    def is_reached(self, price: float) -> bool:
        if self.condition == AlertCondition.ABOVE:
            return price >= self.target_price
        return price <= self.target_price

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["condition"] = self.condition.value
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PriceAlert":
        return _from_dict(cls, data)


# -----------------------------------------------------------------------------
# Copy trading / sniping
# -----------------------------------------------------------------------------

@dataclass
class CopyTradeSubscription:
    owner_id: str
    target_wallet: str
    copy_ratio: float = 1.0
    max_amount: float = 1.0            # SOL
    delay_seconds: float = 5.0
    only_buys: bool = False
    only_sells: bool = False
    min_trade_amount: float = 0.01     # SOL de la operación observada
    is_active: bool = True
    id: str = field(default_factory=new_id)

    total_copied: int = 0
    successful_copies: int = 0
    total_pnl: float = 0.0

    def __post_init__(self) -> None:
        if not (0.1 <= self.copy_ratio <= 10):
            raise ValueError(f"copy_ratio fuera de rango: {self.copy_ratio}")
        if not (0.01 <= self.max_amount <= 100):
            raise ValueError(f"max_amount fuera de rango: {self.max_amount}")
        if not (0 <= self.delay_seconds <= 300):
            raise ValueError(f"delay_seconds fuera de rango: {self.delay_seconds}")
        if self.only_buys and self.only_sells:
            raise ValueError("only_buys y only_sells son excluyentes")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CopyTradeSubscription":
        return _from_dict(cls, data)


@dataclass(frozen=True)
class SnipeCriteria:
    owner_id: str
    buy_amount: float                  # SOL
    max_slippage: float = 10.0         # %
    min_liquidity: float = 1000.0      # USD
    max_market_cap: float = 1_000_000.0
    min_holders: int = 50
    max_supply: float = 1_000_000_000.0
    blacklist: FrozenSet[str] = frozenset()
    whitelist: FrozenSet[str] = frozenset()
    is_active: bool = True

    def __post_init__(self) -> None:
        if not (0.01 <= self.buy_amount <= 10):
            raise ValueError(f"buy_amount fuera de rango: {self.buy_amount}")
        if not (1 <= self.max_slippage <= 50):
            raise ValueError(f"max_slippage fuera de rango: {self.max_slippage}")
        # admitir listas/sets al construir desde JSON
        object.__setattr__(self, "blacklist", frozenset(self.blacklist))
        object.__setattr__(self, "whitelist", frozenset(self.whitelist))

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["blacklist"] = sorted(self.blacklist)
        d["whitelist"] = sorted(self.whitelist)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SnipeCriteria":
        return _from_dict(cls, data)


@dataclass(frozen=True)
class TradeEvent:
    """Operación observada en una wallet objetivo."""

    wallet: str
    signature: str
    side: TradeSide
    token_address: str
    sol_amount: float
    token_amount: Optional[int] = None
    observed_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class LaunchEvent:
    """Token recién lanzado (p.ej. mint de pump.fun vía Flintr)."""

    token_address: str
    symbol: str = ""
    name: str = ""
    holders: Optional[int] = None
    received_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class CandidateToken:
    address: str
    symbol: str
    liquidity: float
    market_cap: float
    holders: int
    supply: float
    price: Optional[float] = None


# -----------------------------------------------------------------------------
# Mercado / swaps
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class TokenMarketData:
    price: float                       # USD
    price_native: Optional[float] = None   # SOL por token
    price_change_24h: float = 0.0
    volume_24h: float = 0.0
    market_cap: float = 0.0
    liquidity: float = 0.0
    source: str = ""
    fetched_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class Quote:
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    slippage_bps: int
    price_impact_pct: float = 0.0
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)
    fetched_at: float = field(default_factory=time.time)

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.fetched_at


@dataclass(frozen=True)
class TradeIntent:
    """Unidad de trabajo para SwapExecutor. `amount` va en unidades base del activo de entrada."""

    side: TradeSide
    owner_id: str
    token_address: str
    amount: int
    slippage_percent: float
    originating_position_id: Optional[str] = None

    @classmethod
    def buy(cls, owner_id: str, token_address: str, sol_amount: float,
            slippage_percent: float) -> "TradeIntent":
        return cls(
            side=TradeSide.BUY,
            owner_id=owner_id,
            token_address=token_address,
            amount=int(sol_amount * LAMPORTS_PER_SOL),
            slippage_percent=slippage_percent,
        )

    @classmethod
    def sell(cls, owner_id: str, token_address: str, raw_amount: int,
             slippage_percent: float, position_id: Optional[str] = None) -> "TradeIntent":
        return cls(
            side=TradeSide.SELL,
            owner_id=owner_id,
            token_address=token_address,
            amount=int(raw_amount),
            slippage_percent=slippage_percent,
            originating_position_id=position_id,
        )

    @property
    def input_mint(self) -> str:
        return SOL_MINT if self.side == TradeSide.BUY else self.token_address

    @property
    def output_mint(self) -> str:
        return self.token_address if self.side == TradeSide.BUY else SOL_MINT

    @property
    def slippage_bps(self) -> int:
        return int(round(self.slippage_percent * 100))


@dataclass(frozen=True)
class SwapOutcome:
    status: OutcomeStatus
    signature: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    in_amount: int = 0
    out_amount: int = 0

    @property
    def success(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS

    @property
    def unknown(self) -> bool:
        return self.status == OutcomeStatus.UNKNOWN

    @classmethod
    def failed(cls, exc: TradingError, signature: Optional[str] = None) -> "SwapOutcome":
        return cls(
            status=OutcomeStatus.FAILED,
            signature=signature,
            error=str(exc) or exc.__class__.__name__,
            error_kind=exc.kind,
        )


@dataclass
class PendingTrade:
    """Swap enviado cuyo resultado aún no se conoce (timeout de confirmación)."""

    signature: str
    side: TradeSide
    owner_id: str
    token_address: str
    price: float                      # precio del oráculo al disparar
    in_amount: int = 0
    out_amount: int = 0
    position_id: Optional[str] = None
    sold_amount: float = 0.0          # sólo ventas, unidades UI
    source: str = ""
    submitted_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["side"] = self.side.value
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingTrade":
        p = _from_dict(cls, data)
        p.side = TradeSide(p.side)
        return p


class TradeStatus(str, Enum):
    EXECUTED = "executed"
    FAILED = "failed"
    PENDING = "pending_verification"
    BUSY = "busy"
    SKIPPED = "skipped"


@dataclass
class TradeResult:
    """Resultado de una operación completa (lease + swap + ledger)."""

    status: TradeStatus
    outcome: Optional[SwapOutcome] = None
    position: Optional[Position] = None
    reason: str = ""

    @property
    def executed(self) -> bool:
        return self.status == TradeStatus.EXECUTED
