import asyncio
import logging

import pytest
import pytest_asyncio

from config import TradingSettings
from models import Position, PositionStatus
from position_monitor import MonitorState, PositionMonitor, decide

from conftest import OWNER, TOKEN, wait_until


def _position(buy=1.0, highest=1.0):
    return Position(
        id="p1",
        owner_id=OWNER,
        token_address=TOKEN,
        amount=1.0,
        initial_amount=1.0,
        buy_price=buy,
        buy_timestamp=0.0,
        buy_signature="b1",
        highest_price=highest,
    )


@pytest.fixture
def monitor(engine):
    return PositionMonitor(engine, interval_sec=60, max_missing_price_cycles=2)


@pytest_asyncio.fixture
async def position(engine):
    return (await engine.buy(OWNER, TOKEN)).position


def test_decide_take_profit_and_stop_loss():
    settings = TradingSettings(take_profit_percent=100, stop_loss_percent=50)
    pos = _position()
    assert decide(pos, 2.0, settings) == MonitorState.TP_TRIGGERED
    assert decide(pos, 0.5, settings) == MonitorState.SL_TRIGGERED
    assert decide(pos, 1.2, settings) == MonitorState.WATCHING


def test_decide_trailing_stop():
    settings = TradingSettings(take_profit_percent=1000, stop_loss_percent=50, trailing_stop_percent=20)
    assert decide(_position(highest=2.0), 1.5, settings) == MonitorState.TRAILING_TRIGGERED
    assert decide(_position(highest=2.0), 1.7, settings) == MonitorState.WATCHING
    # sin subida previa no hay trailing
    assert decide(_position(highest=1.0), 0.75, settings) == MonitorState.WATCHING


def test_decide_needs_known_prices():
    settings = TradingSettings()
    assert decide(_position(buy=0.0), 5.0, settings) == MonitorState.WATCHING
    assert decide(_position(), 0.0, settings) == MonitorState.WATCHING


@pytest.mark.asyncio
async def test_take_profit_closes_position(monitor, position, oracle, engine):
    oracle.prices[TOKEN] = 2.0
    state = await monitor.evaluate(position.id)
    assert state == MonitorState.CLOSED

    closed = await engine.ledger.get(position.id)
    assert closed.status == PositionStatus.CLOSED
    assert closed.pnl_percentage == pytest.approx(100.0)
    assert closed.sell_price == 2.0


@pytest.mark.asyncio
async def test_stop_loss_closes_position(monitor, position, oracle, engine):
    oracle.prices[TOKEN] = 0.5
    assert await monitor.evaluate(position.id) == MonitorState.CLOSED
    assert (await engine.ledger.get(position.id)).pnl_percentage == pytest.approx(-50.0)


@pytest.mark.asyncio
async def test_no_price_means_no_action(monitor, position, oracle, chain, caplog):
    oracle.prices[TOKEN] = None
    with caplog.at_level(logging.WARNING):
        assert await monitor.evaluate(position.id) == MonitorState.WATCHING
        assert await monitor.evaluate(position.id) == MonitorState.WATCHING
    assert chain.submitted == ["sig-1"]
    assert "ciclos sin precio" in caplog.text


@pytest.mark.asyncio
async def test_auto_sell_disabled(monitor, position, oracle, engine, chain):
    await engine.update_settings(OWNER, auto_sell=False)
    oracle.prices[TOKEN] = 3.0
    assert await monitor.evaluate(position.id) == MonitorState.WATCHING
    assert chain.submitted == ["sig-1"]
    assert (await engine.ledger.get(position.id)).highest_price == 3.0


@pytest.mark.asyncio
async def test_entry_price_fixed_on_first_sample(monitor, engine, oracle):
    oracle.prices[TOKEN] = None
    pos = (await engine.buy(OWNER, TOKEN)).position
    assert pos.buy_price == 0

    oracle.prices[TOKEN] = 1.5
    assert await monitor.evaluate(pos.id) == MonitorState.WATCHING
    assert (await engine.ledger.get(pos.id)).buy_price == 1.5


@pytest.mark.asyncio
async def test_busy_position_is_skipped(monitor, position, oracle, engine, chain):
    lease = await engine.ledger.acquire_execution_lock(OWNER, TOKEN)
    oracle.prices[TOKEN] = 2.0
    assert await monitor.evaluate(position.id) == MonitorState.WATCHING
    assert chain.submitted == ["sig-1"]
    await engine.ledger.release(lease)


@pytest.mark.asyncio
async def test_manual_sell_and_trigger_sell_only_once(monitor, position, oracle, router, engine, chain):
    router.gate = asyncio.Event()
    router.entered = asyncio.Event()
    manual = asyncio.create_task(engine.sell_position(position.id))
    await router.entered.wait()

    oracle.prices[TOKEN] = 2.0
    assert await monitor.evaluate(position.id) == MonitorState.WATCHING

    router.gate.set()
    result = await manual
    assert result.executed
    assert chain.submitted == ["sig-1", "sig-2"]
    assert await monitor.evaluate(position.id) == MonitorState.CLOSED


@pytest.mark.asyncio
async def test_no_balance_stops_automation(monitor, position, oracle, chain):
    chain.balances[TOKEN] = 0
    oracle.prices[TOKEN] = 2.0
    assert await monitor.evaluate(position.id) == MonitorState.STOPPED


@pytest.mark.asyncio
async def test_closed_position_is_not_evaluated(monitor, position, engine):
    await engine.sell_position(position.id)
    assert await monitor.evaluate(position.id) == MonitorState.CLOSED
    assert await monitor.evaluate("missing") == MonitorState.CLOSED


@pytest.mark.asyncio
async def test_monitor_watches_new_and_existing_positions(monitor, position, oracle, engine):
    await monitor.start()
    assert monitor.watched == 1

    oracle.prices["Mint2"] = 1.0
    await engine.buy(OWNER, "Mint2")
    assert monitor.watched == 2

    # subida: el TP de la primera posición se dispara en su task
    oracle.prices[TOKEN] = 2.0
    monitor.unwatch(position.id)
    monitor.watch(await engine.ledger.get(position.id))
    await wait_until(lambda: monitor.get_state(position.id) == MonitorState.CLOSED)
    assert monitor.watched == 1

    await monitor.stop()
    assert monitor.watched == 0
