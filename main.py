# main.py
import asyncio
import importlib
import logging
import signal
from typing import Optional, Tuple

from dotenv import load_dotenv

from activity_feed import TradeParser, WalletActivityFeed
from analytics import AnalyticsJob
from chain_client import SolanaChainClient
from config import BotConfig, load_config
from copy_trade_monitor import CopyTradeMonitor
from flintr_client import FlintrClient, start_flintr_thread
from health_server import HealthServer, build_app, check_dependencies
from housekeeping import Housekeeping
from notifier import LoggingNotifier, Notifier, TelegramNotifier
from position_ledger import PositionLedger
from position_monitor import PositionMonitor
from price_alerts import PriceAlertMonitor
from price_oracle import PriceOracle
from quote_router import QuoteRouter
from rate_limiter import RateLimiter
from signer import KeypairSigner, SignerRegistry
from snipe_evaluator import SnipeEvaluator
from store import MemoryStore, PersistentStore, PostgresStore
from swap_executor import SwapExecutor
from trading_engine import TradingEngine

logger = logging.getLogger("main")


def load_trade_parser(target: Optional[str]) -> Optional[TradeParser]:
    """COPY_TRADE_PARSER="paquete.modulo:funcion"."""
    if not target:
        return None
    module_name, _, attr = target.partition(":")
    if not attr:
        raise RuntimeError(f"COPY_TRADE_PARSER inválido: {target!r} (formato modulo:funcion)")
    return getattr(importlib.import_module(module_name), attr)


def build_engine(config: BotConfig) -> Tuple[TradingEngine, RateLimiter]:
    limiter = RateLimiter(
        {
            "jupiter": config.jupiter_rpm,
            "dexscreener": config.dexscreener_rpm,
            "rpc": config.rpc_rpm,
        },
        max_wait_sec=config.rate_limit_max_wait_sec,
    )

    store: PersistentStore
    if config.database_url:
        store = PostgresStore(config.database_url)
    else:
        logger.warning("⚠️ DATABASE_URL no configurado: posiciones sólo en memoria")
        store = MemoryStore()

    oracle = PriceOracle(
        config.dexscreener_api_url,
        config.jupiter_price_api_url,
        rate_limiter=limiter,
    )
    router = QuoteRouter(
        config.jupiter_swap_api_url,
        rate_limiter=limiter,
        quote_ttl_sec=config.quote_ttl_sec,
    )
    chain = SolanaChainClient(config.rpc_url, rate_limiter=limiter)
    executor = SwapExecutor(
        router,
        chain,
        oracle,
        max_attempts=config.swap_max_attempts,
        backoff_base_sec=config.swap_backoff_base_sec,
        confirm_timeout_sec=config.confirm_timeout_sec,
        reconcile_timeout_sec=config.reconcile_timeout_sec,
        max_price_deviation_percent=config.max_price_deviation_percent,
        simulation=config.simulation,
    )

    signers = SignerRegistry()
    if config.wallet_private_key and config.owner_id:
        signers.register(config.owner_id, KeypairSigner.from_base58(config.wallet_private_key))
    else:
        logger.warning("⚠️ WALLET_PRIVATE_KEY / OWNER_ID no configurados: no se podrá operar")

    notifier: Notifier
    if config.telegram_bot_token:
        notifier = TelegramNotifier(config.telegram_bot_token)
    else:
        notifier = LoggingNotifier()

    engine = TradingEngine(
        config,
        ledger=PositionLedger(store, lease_ttl_sec=config.lease_ttl_sec),
        executor=executor,
        signers=signers,
        notifier=notifier,
    )
    return engine, limiter


async def run(config: BotConfig) -> None:
    engine, limiter = build_engine(config)
    await engine.start()

    deps = await check_dependencies(engine)
    logger.info("🔎 Dependencias: %s", deps)

    monitor = PositionMonitor(
        engine,
        interval_sec=config.monitor_interval_sec,
        max_missing_price_cycles=config.max_missing_price_cycles,
    )
    housekeeping = Housekeeping(
        engine.ledger,
        stale_position_days=config.stale_position_days,
        interval_sec=config.housekeeping_interval_sec,
    )
    analytics = AnalyticsJob(
        engine.ledger, interval_sec=config.analytics_interval_sec, notifier=engine.notifier
    )
    alerts = PriceAlertMonitor(engine, interval_sec=config.price_alert_interval_sec)
    snipe = SnipeEvaluator(engine, batch_window_sec=config.snipe_batch_window_sec)

    copy_monitor: Optional[CopyTradeMonitor] = None
    parser = load_trade_parser(config.copy_trade_parser)
    if parser is not None:
        feed = WalletActivityFeed(engine.chain, parser, poll_interval_sec=config.copy_poll_interval_sec)
        copy_monitor = CopyTradeMonitor(engine, feed, max_delay_sec=config.max_copy_delay_sec)
    else:
        logger.warning("⚠️ COPY_TRADE_PARSER no configurado: copy trading desactivado")

    await monitor.start()
    await alerts.start()
    await snipe.start()
    if copy_monitor is not None:
        await copy_monitor.start()
    housekeeping.start()
    analytics.start()

    # -------------------------------------------------------------------------
    # Flintr WebSocket en un thread aparte (lanzamientos en tiempo real)
    # -------------------------------------------------------------------------
    loop = asyncio.get_running_loop()
    flintr: Optional[FlintrClient] = None
    if config.flintr_api_key:
        flintr = FlintrClient(
            api_key=config.flintr_api_key,
            platform_filter="pump.fun",
            on_launch=lambda event: snipe.publish_threadsafe(loop, event),
        )
        start_flintr_thread(flintr)
    else:
        logger.warning("⚠️ FLINTR_API_KEY no configurado: sniping sin feed de lanzamientos")

    app = build_app(
        engine,
        extras={
            "monitor": lambda: {"watched_positions": monitor.watched},
            "price_alerts": lambda: {"active": alerts.active},
            "copy_trading": lambda: {
                "enabled": copy_monitor is not None,
                "wallets": len(copy_monitor.watched_wallets) if copy_monitor else 0,
            },
            "sniping": lambda: {"active_owners": len(snipe.active_owners)},
            "analytics": analytics.snapshot,
            "rate_limits": limiter.snapshot,
        },
    )
    health = HealthServer(app, port=config.health_port)
    health.start()

    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows
            pass

    logger.info("✅ Motor en marcha (mode=%s)", config.mode)
    try:
        await stop_event.wait()
    finally:
        logger.info("⏹️  Deteniendo...")
        if flintr is not None:
            flintr.stop()
        await health.stop()
        if copy_monitor is not None:
            await copy_monitor.stop()
        await snipe.stop()
        await monitor.stop()
        await alerts.stop()
        await analytics.stop()
        await housekeeping.stop()
        await engine.stop()


def main() -> None:
    # Localmente lee .env; en Railway usas variables de entorno directas
    load_dotenv()

    config = load_config()

    # Logging global
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        logger.info("⏹️  Bot detenido por el usuario (Ctrl+C).")


if __name__ == "__main__":
    main()
