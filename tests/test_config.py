import dataclasses

import pytest

from config import TradingSettings, load_config


def test_defaults(monkeypatch):
    for name in ("MODE", "SLIPPAGE_PERCENT", "DATABASE_URL", "COPY_TRADE_PARSER"):
        monkeypatch.delenv(name, raising=False)
    cfg = load_config()
    assert cfg.mode == "simulation"
    assert cfg.simulation
    assert cfg.database_url is None
    assert cfg.copy_trade_parser is None
    assert cfg.default_settings.slippage_percent == 0.5
    assert cfg.stale_position_days == 365.0


def test_unknown_mode_falls_back_to_simulation(monkeypatch):
    monkeypatch.setenv("MODE", "yolo")
    assert load_config().mode == "simulation"
    monkeypatch.setenv("MODE", "REAL")
    assert not load_config().simulation


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("TAKE_PROFIT_PERCENT", "250")
    monkeypatch.setenv("AUTO_SELL", "no")
    monkeypatch.setenv("MAX_POSITIONS", "not-a-number")
    cfg = load_config()
    assert cfg.default_settings.take_profit_percent == 250
    assert cfg.default_settings.auto_sell is False
    assert cfg.default_settings.max_positions == 10


@pytest.mark.parametrize(
    "field, value",
    [
        ("slippage_percent", 0.05),
        ("slippage_percent", 51),
        ("take_profit_percent", 0.5),
        ("take_profit_percent", 1001),
        ("stop_loss_percent", 100),
        ("max_positions", 0),
        ("max_positions", 51),
        ("default_buy_amount_sol", 0.001),
    ],
)
def test_settings_ranges(field, value):
    with pytest.raises(ValueError):
        TradingSettings(**{field: value})


def test_settings_are_immutable_snapshots():
    settings = TradingSettings()
    with pytest.raises(dataclasses.FrozenInstanceError):
        settings.slippage_percent = 5
    assert dataclasses.replace(settings, slippage_percent=5).slippage_percent == 5
