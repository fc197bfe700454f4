# pnl.py
"""
Cálculo de P&L. Funciones puras, sin efectos secundarios: las usan el monitor
de posiciones, el ledger, los reportes y los tests exactamente igual.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class PositionValue:
    initial_value: float
    current_value: float
    pnl: float
    pnl_percentage: float

    @property
    def is_profit(self) -> bool:
        return self.pnl > 0


def calculate_pnl(buy_price: float, current_price: float, amount: float) -> float:
    return (current_price - buy_price) * amount


def pnl_percentage(buy_price: float, current_price: float, amount: float) -> float:
    cost = buy_price * amount
    if cost == 0:
        return 0.0
    return calculate_pnl(buy_price, current_price, amount) / cost * 100.0


def calculate_position(buy_price: float, current_price: float, amount: float) -> PositionValue:
    return PositionValue(
        initial_value=buy_price * amount,
        current_value=current_price * amount,
        pnl=calculate_pnl(buy_price, current_price, amount),
        pnl_percentage=pnl_percentage(buy_price, current_price, amount),
    )


def price_change_pct(buy_price: float, current_price: float) -> float:
    if buy_price <= 0:
        return 0.0
    return (current_price - buy_price) / buy_price * 100.0


def win_rate(winning_trades: int, total_trades: int) -> float:
    if total_trades <= 0:
        return 0.0
    return winning_trades / total_trades * 100.0


def should_take_profit(buy_price: float, current_price: float, tp_percentage: float) -> bool:
    return buy_price > 0 and price_change_pct(buy_price, current_price) >= tp_percentage


def should_stop_loss(buy_price: float, current_price: float, sl_percentage: float) -> bool:
    return buy_price > 0 and price_change_pct(buy_price, current_price) <= -sl_percentage


def trailing_stop_price(highest_price: float, trailing_percentage: float) -> float:
    return highest_price - highest_price * (trailing_percentage / 100.0)


def price_deviation_pct(reference_price: float, price: float) -> float:
    """Desviación absoluta en % de `price` respecto a `reference_price`."""
    if reference_price <= 0:
        return 0.0
    return abs(price - reference_price) / reference_price * 100.0
