import os
from dataclasses import dataclass


def _get_env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value


def _get_env_float(name: str, default: float) -> float:
    v = _get_env(name)
    if v is None:
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _get_env_int(name: str, default: int) -> int:
    v = _get_env(name)
    if v is None:
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _get_env_bool(name: str, default: bool = False) -> bool:
    v = _get_env(name)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")


def _check_range(name: str, value: float, low: float, high: float) -> None:
    if not (low <= value <= high):
        raise ValueError(f"{name}={value} fuera de rango [{low}, {high}]")


@dataclass(frozen=True)
class TradingSettings:
    """
    Snapshot inmutable de los ajustes de trading de un usuario.

    Se lee una sola vez al inicio de cada ciclo de evaluación; un cambio
    concurrente de ajustes sólo afecta al ciclo siguiente.
    """

    slippage_percent: float = 0.5
    take_profit_percent: float = 100.0
    stop_loss_percent: float = 50.0
    trailing_stop_percent: float = 0.0   # 0 = desactivado
    auto_sell: bool = True
    max_positions: int = 10
    default_buy_amount_sol: float = 0.1

    def __post_init__(self) -> None:
        _check_range("slippage_percent", self.slippage_percent, 0.1, 50)
        _check_range("take_profit_percent", self.take_profit_percent, 1, 1000)
        _check_range("stop_loss_percent", self.stop_loss_percent, 1, 99)
        _check_range("trailing_stop_percent", self.trailing_stop_percent, 0, 99)
        _check_range("max_positions", self.max_positions, 1, 50)
        _check_range("default_buy_amount_sol", self.default_buy_amount_sol, 0.01, 100)


@dataclass
class BotConfig:
    mode: str
    rpc_url: str
    wallet_private_key: str | None
    owner_id: str | None

    database_url: str | None

    telegram_bot_token: str
    flintr_api_key: str

    jupiter_swap_api_url: str
    jupiter_price_api_url: str
    dexscreener_api_url: str

    # ajustes por defecto de cada usuario
    default_settings: TradingSettings

    # motor
    monitor_interval_sec: float
    max_missing_price_cycles: int
    lease_ttl_sec: float
    swap_max_attempts: int
    swap_backoff_base_sec: float
    confirm_timeout_sec: float
    reconcile_timeout_sec: float
    quote_ttl_sec: float
    max_price_deviation_percent: float

    # housekeeping
    stale_position_days: float
    housekeeping_interval_sec: float
    analytics_interval_sec: float
    price_alert_interval_sec: float

    # copy trading / sniping
    copy_poll_interval_sec: float
    max_copy_delay_sec: float
    copy_trade_parser: str | None     # "modulo:funcion"
    snipe_batch_window_sec: float

    # rate limits (requests por minuto)
    jupiter_rpm: int
    dexscreener_rpm: int
    rpc_rpm: int
    rate_limit_max_wait_sec: float

    health_port: int
    log_level: str

    @property
    def simulation(self) -> bool:
        return self.mode != "real"


def load_config() -> BotConfig:
    mode = (_get_env("MODE", "simulation") or "simulation").lower()
    if mode not in ("simulation", "real"):
        mode = "simulation"

    default_settings = TradingSettings(
        slippage_percent=_get_env_float("SLIPPAGE_PERCENT", 0.5),
        take_profit_percent=_get_env_float("TAKE_PROFIT_PERCENT", 100.0),
        stop_loss_percent=_get_env_float("STOP_LOSS_PERCENT", 50.0),
        trailing_stop_percent=_get_env_float("TRAILING_STOP_PERCENT", 0.0),
        auto_sell=_get_env_bool("AUTO_SELL", True),
        max_positions=_get_env_int("MAX_POSITIONS", 10),
        default_buy_amount_sol=_get_env_float("DEFAULT_BUY_AMOUNT_SOL", 0.1),
    )

    return BotConfig(
        mode=mode,
        rpc_url=_get_env("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com") or "",
        wallet_private_key=_get_env("WALLET_PRIVATE_KEY"),
        owner_id=_get_env("OWNER_ID"),

        database_url=_get_env("DATABASE_URL"),

        telegram_bot_token=_get_env("TELEGRAM_BOT_TOKEN", "") or "",
        flintr_api_key=_get_env("FLINTR_API_KEY", "") or "",

        jupiter_swap_api_url=_get_env("JUPITER_SWAP_API_URL", "https://lite-api.jup.ag/swap/v1") or "",
        jupiter_price_api_url=_get_env("JUPITER_PRICE_API_URL", "https://lite-api.jup.ag/price/v3") or "",
        dexscreener_api_url=_get_env("DEXSCREENER_API_URL", "https://api.dexscreener.com/latest/dex") or "",

        default_settings=default_settings,

        monitor_interval_sec=_get_env_float("MONITOR_INTERVAL_SEC", 10.0),
        max_missing_price_cycles=_get_env_int("MAX_MISSING_PRICE_CYCLES", 30),
        lease_ttl_sec=_get_env_float("LEASE_TTL_SEC", 180.0),
        swap_max_attempts=_get_env_int("SWAP_MAX_ATTEMPTS", 3),
        swap_backoff_base_sec=_get_env_float("SWAP_BACKOFF_BASE_SEC", 0.5),
        confirm_timeout_sec=_get_env_float("CONFIRM_TIMEOUT_SEC", 60.0),
        reconcile_timeout_sec=_get_env_float("RECONCILE_TIMEOUT_SEC", 30.0),
        quote_ttl_sec=_get_env_float("QUOTE_TTL_SEC", 20.0),
        max_price_deviation_percent=_get_env_float("MAX_PRICE_DEVIATION_PERCENT", 25.0),

        stale_position_days=_get_env_float("STALE_POSITION_DAYS", 365.0),
        housekeeping_interval_sec=_get_env_float("HOUSEKEEPING_INTERVAL_SEC", 3600.0),
        analytics_interval_sec=_get_env_float("ANALYTICS_INTERVAL_SEC", 86400.0),
        price_alert_interval_sec=_get_env_float("PRICE_ALERT_INTERVAL_SEC", 30.0),

        copy_poll_interval_sec=_get_env_float("COPY_POLL_INTERVAL_SEC", 3.0),
        max_copy_delay_sec=_get_env_float("MAX_COPY_DELAY_SEC", 300.0),
        copy_trade_parser=_get_env("COPY_TRADE_PARSER"),
        snipe_batch_window_sec=_get_env_float("SNIPE_BATCH_WINDOW_SEC", 1.0),

        jupiter_rpm=_get_env_int("JUPITER_RPM", 60),
        dexscreener_rpm=_get_env_int("DEXSCREENER_RPM", 300),
        rpc_rpm=_get_env_int("RPC_RPM", 600),
        rate_limit_max_wait_sec=_get_env_float("RATE_LIMIT_MAX_WAIT_SEC", 5.0),

        health_port=_get_env_int("HEALTH_PORT", 8080),
        log_level=_get_env("LOG_LEVEL", "INFO") or "INFO",
    )
