# notifier.py
"""
Avisos al dueño de cada operación: éxito, fallo con motivo o
"pendiente de verificación". Ningún trigger fallido se descarta en silencio.
"""

from __future__ import annotations

import logging
from typing import Optional

from telegram import Bot
from telegram.error import TelegramError

from models import AlertCondition, PriceAlert, TradeResult, TradeStatus

logger = logging.getLogger(__name__)


def _short(address: str) -> str:
    return f"{address[:6]}…{address[-4:]}" if len(address) > 12 else address


def format_trade_result(action: str, token_address: str, result: TradeResult) -> str:
    token = f"`{_short(token_address)}`"
    outcome = result.outcome
    sig = outcome.signature if outcome and outcome.signature else None

    if result.status == TradeStatus.EXECUTED:
        lines = [f"✅ *{action}* ejecutada en {token}"]
        pos = result.position
        if pos is not None and not pos.is_open:
            lines.append(f"P&L: {pos.pnl:.6f} ({pos.pnl_percentage:.2f}%)")
        if sig:
            lines.append(f"TX: `{sig}`")
        return "\n".join(lines)

    if result.status == TradeStatus.PENDING:
        lines = [f"⏳ *{action}* en {token} pendiente de verificación"]
        if sig:
            lines.append(f"TX: `{sig}`")
        return "\n".join(lines)

    reason = result.reason or (outcome.error if outcome else "") or "desconocido"
    reason = reason.replace("`", "'")
    return f"❌ *{action}* en {token} falló\nMotivo: `{reason}`"


def format_price_alert(alert: PriceAlert) -> str:
    name = alert.symbol or _short(alert.token_address)
    op = ">=" if alert.condition == AlertCondition.ABOVE else "<="
    return (
        f"🔔 *Alerta de precio* `{name}`\n"
        f"Precio: {alert.triggered_price:.10f} USD\n"
        f"Objetivo: {op} {alert.target_price:.10f} USD"
    )


class Notifier:
    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def ping(self) -> bool:
        return True

    async def notify(self, owner_id: str, text: str) -> None:
        raise NotImplementedError

    async def trade_result(self, owner_id: str, action: str, token_address: str, result: TradeResult) -> None:
        # BUSY / SKIPPED no llegan al usuario
        if result.status in (TradeStatus.BUSY, TradeStatus.SKIPPED):
            return
        await self.notify(owner_id, format_trade_result(action, token_address, result))


class LoggingNotifier(Notifier):
    async def notify(self, owner_id: str, text: str) -> None:
        logger.info("[Notify] owner=%s\n%s", owner_id, text)


class TelegramNotifier(Notifier):
    """owner_id == chat id de Telegram."""

    def __init__(self, token: str, bot: Optional[Bot] = None) -> None:
        if not token and bot is None:
            raise RuntimeError("TELEGRAM_BOT_TOKEN no configurado")
        self.bot = bot or Bot(token)

    async def start(self) -> None:
        await self.bot.initialize()

    async def close(self) -> None:
        await self.bot.shutdown()

    async def ping(self) -> bool:
        me = await self.bot.get_me()
        return bool(me.id)

    async def notify(self, owner_id: str, text: str) -> None:
        try:
            await self.bot.send_message(chat_id=owner_id, text=text, parse_mode="Markdown")
        except TelegramError as exc:
            # best-effort: el trade ya quedó registrado
            logger.warning("[Notify] No se pudo avisar a %s: %r", owner_id, exc)
