import asyncio

import pytest

from chain_client import SignatureState, SignatureStatus
from errors import ErrorKind, TransientNetwork
from models import SOL_MINT, PositionStatus, TradeStatus
from position_ledger import PositionLedger
from signer import SignerRegistry
from trading_engine import DROP_HORIZON_SEC, TradingEngine

from conftest import OWNER, TOKEN

OTHER = "OtherMint111111111111111111111111111111111"


@pytest.mark.asyncio
async def test_buy_opens_position_and_notifies(engine, notifier):
    opened = []
    engine.add_position_listener(opened.append)

    result = await engine.buy(OWNER, TOKEN, 0.1, symbol="TKN")
    assert result.status == TradeStatus.EXECUTED
    pos = result.position
    assert pos.amount == pytest.approx(1.0)
    assert pos.buy_price == 1.0
    assert pos.decimals == 6
    assert pos.symbol == "TKN"
    assert pos.take_profit_price == pytest.approx(2.0)
    assert opened == [pos]

    assert len(notifier.messages) == 1
    owner, text = notifier.messages[0]
    assert owner == OWNER
    assert text.startswith("✅")
    assert "sig-1" in text


@pytest.mark.asyncio
async def test_buy_skipped_at_max_positions(engine, oracle, router, notifier):
    oracle.prices[OTHER] = 1.0
    await engine.update_settings(OWNER, max_positions=1)
    await engine.buy(OWNER, TOKEN)

    result = await engine.buy(OWNER, OTHER)
    assert result.status == TradeStatus.SKIPPED
    assert router.quotes == 1
    assert len(notifier.messages) == 1


@pytest.mark.asyncio
async def test_update_settings_validates_ranges(engine):
    with pytest.raises(ValueError):
        await engine.update_settings(OWNER, slippage_percent=80)
    assert (await engine.settings_for(OWNER)).slippage_percent == 1.0


@pytest.mark.asyncio
async def test_busy_when_trade_in_flight(engine, ledger, router, notifier):
    lease = await ledger.acquire_execution_lock(OWNER, TOKEN)
    result = await engine.buy(OWNER, TOKEN)
    assert result.status == TradeStatus.BUSY
    assert router.quotes == 0
    assert notifier.messages == []
    await ledger.release(lease)


@pytest.mark.asyncio
async def test_unknown_owner_fails_with_signing_error(engine, chain):
    result = await engine.buy("nobody", TOKEN)
    assert result.status == TradeStatus.FAILED
    assert result.outcome.error_kind == ErrorKind.SIGNING_FAILURE
    assert chain.submitted == []


@pytest.mark.asyncio
async def test_unconfirmed_buy_reconciles_exactly_once(engine, ledger, store, chain, notifier):
    chain.confirm_timeout = True
    result = await engine.buy(OWNER, TOKEN)
    assert result.status == TradeStatus.PENDING
    assert await ledger.list_open(OWNER) == []
    assert [p.signature for p in await store.list_pending()] == ["sig-1"]
    assert notifier.messages[-1][1].startswith("⏳")

    # aún sin estado: sigue pendiente
    results = await engine.reconcile_pending()
    assert [r.status for r in results] == [TradeStatus.PENDING]

    chain.statuses["sig-1"] = SignatureStatus(SignatureState.CONFIRMED)
    results = await engine.reconcile_pending()
    assert [r.status for r in results] == [TradeStatus.EXECUTED]
    assert await engine.reconcile_pending() == []

    positions = await ledger.list_open(OWNER)
    assert len(positions) == 1
    assert positions[0].amount == pytest.approx(1.0)
    assert positions[0].buy_price == 1.0
    assert chain.submitted == ["sig-1"]
    assert notifier.messages[-1][1].startswith("✅")


@pytest.mark.asyncio
async def test_reconcile_failed_transaction(engine, ledger, store, chain, notifier):
    chain.confirm_timeout = True
    await engine.buy(OWNER, TOKEN)
    chain.statuses["sig-1"] = SignatureStatus(SignatureState.FAILED, "slippage exceeded")

    results = await engine.reconcile_pending()
    assert [r.status for r in results] == [TradeStatus.FAILED]
    assert await store.list_pending() == []
    assert await ledger.list_open(OWNER) == []
    assert notifier.messages[-1][1].startswith("❌")


@pytest.mark.asyncio
async def test_reconcile_drops_unseen_transaction_after_horizon(engine, store, chain):
    chain.confirm_timeout = True
    await engine.buy(OWNER, TOKEN)
    pending = (await store.list_pending())[0]
    pending.submitted_at -= DROP_HORIZON_SEC + 1
    await store.save_pending(pending)

    results = await engine.reconcile_pending()
    assert results[0].status == TradeStatus.FAILED
    assert "descartada" in results[0].reason
    assert await store.list_pending() == []


@pytest.mark.asyncio
async def test_sell_position_closes_with_pnl(engine, oracle, notifier):
    pos = (await engine.buy(OWNER, TOKEN)).position
    oracle.prices[TOKEN] = 2.0

    result = await engine.sell_position(pos.id)
    assert result.status == TradeStatus.EXECUTED
    assert result.position.status == PositionStatus.CLOSED
    assert result.position.pnl_percentage == pytest.approx(100.0)
    assert "P&L" in notifier.messages[-1][1]


@pytest.mark.asyncio
async def test_partial_sell(engine):
    pos = (await engine.buy(OWNER, TOKEN)).position
    result = await engine.sell_position(pos.id, fraction=0.5)
    assert result.position.status == PositionStatus.PARTIAL
    assert result.position.amount == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_sell_without_any_price_leaves_pnl_unknown(engine, oracle):
    pos = (await engine.buy(OWNER, TOKEN)).position
    oracle.prices[TOKEN] = None
    result = await engine.sell_position(pos.id)
    assert result.status == TradeStatus.EXECUTED
    assert result.position.pnl_known is False


@pytest.mark.asyncio
async def test_sell_without_oracle_price_uses_fill_price(engine, oracle):
    pos = (await engine.buy(OWNER, TOKEN)).position
    oracle.prices[TOKEN] = None
    oracle.prices[SOL_MINT] = 100.0

    # 1 token -> 1_000_000 lamports (0.001 SOL) a 100 USD/SOL
    result = await engine.sell_position(pos.id)
    closed = result.position
    assert closed.status == PositionStatus.CLOSED
    assert closed.pnl_known
    assert closed.sell_price == pytest.approx(0.1)
    assert closed.sell_timestamp is not None
    assert closed.pnl == pytest.approx(-0.9)


@pytest.mark.asyncio
async def test_lease_outlives_its_ttl_while_trade_runs(config, store, executor, signer, notifier, router, chain):
    ledger = PositionLedger(store, lease_ttl_sec=0.05)
    engine = TradingEngine(
        config, ledger=ledger, executor=executor,
        signers=SignerRegistry({OWNER: signer}), notifier=notifier,
    )
    pos = (await engine.buy(OWNER, TOKEN)).position

    router.gate = asyncio.Event()
    router.entered.clear()
    first = asyncio.create_task(engine.sell_position(pos.id))
    await router.entered.wait()
    await asyncio.sleep(0.15)        # tres TTL con el primer trade aún en el quote

    second = await engine.sell_position(pos.id)
    assert second.status == TradeStatus.BUSY

    router.gate.set()
    assert (await first).status == TradeStatus.EXECUTED
    assert chain.submitted == ["sig-1", "sig-2"]   # compra + una única venta


@pytest.mark.asyncio
async def test_unanswered_submit_is_parked_not_failed(engine, ledger, store, chain):
    pos = (await engine.buy(OWNER, TOKEN)).position
    chain.submit_errors = [TransientNetwork("reset") for _ in range(3)]

    result = await engine.sell_position(pos.id)
    assert result.status == TradeStatus.PENDING
    assert [p.signature for p in await store.list_pending()] == ["sig-2"]
    assert (await ledger.get(pos.id)).pending_signature == "sig-2"

    # la siguiente venta no envía otra TX mientras la anterior no se resuelva
    again = await engine.sell_position(pos.id)
    assert again.status == TradeStatus.SKIPPED
    assert chain.submitted == ["sig-1"]


@pytest.mark.asyncio
async def test_sell_without_balance_reports_failure(engine, chain, ledger, notifier):
    pos = (await engine.buy(OWNER, TOKEN)).position
    chain.balances[TOKEN] = 0

    result = await engine.sell_position(pos.id)
    assert result.status == TradeStatus.FAILED
    assert result.outcome.error_kind == ErrorKind.INSUFFICIENT_BALANCE
    assert (await ledger.get(pos.id)).is_open
    assert notifier.messages[-1][1].startswith("❌")


@pytest.mark.asyncio
async def test_sell_of_closed_position_is_skipped(engine, chain):
    pos = (await engine.buy(OWNER, TOKEN)).position
    await engine.sell_position(pos.id)
    result = await engine.sell_position(pos.id)
    assert result.status == TradeStatus.SKIPPED
    assert len(chain.submitted) == 2


@pytest.mark.asyncio
async def test_pending_sell_is_reconciled_before_selling_again(engine, ledger, chain):
    pos = (await engine.buy(OWNER, TOKEN)).position
    chain.confirm_timeout = True

    first = await engine.sell_position(pos.id)
    assert first.status == TradeStatus.PENDING
    assert (await ledger.get(pos.id)).pending_signature == "sig-2"

    again = await engine.sell_position(pos.id)
    assert again.status == TradeStatus.SKIPPED
    assert chain.submitted == ["sig-1", "sig-2"]

    chain.statuses["sig-2"] = SignatureStatus(SignatureState.CONFIRMED)
    third = await engine.sell_position(pos.id)
    assert third.status == TradeStatus.SKIPPED
    closed = await ledger.get(pos.id)
    assert closed.status == PositionStatus.CLOSED
    assert closed.pending_signature is None
    assert chain.submitted == ["sig-1", "sig-2"]


@pytest.mark.asyncio
async def test_sell_token_closes_matching_positions(engine, oracle, ledger):
    oracle.prices[OTHER] = 1.0
    await engine.buy(OWNER, TOKEN)
    await engine.buy(OWNER, OTHER)

    results = await engine.sell_token(OWNER, TOKEN)
    assert [r.status for r in results] == [TradeStatus.EXECUTED]
    assert [p.token_address for p in await ledger.list_open(OWNER)] == [OTHER]


@pytest.mark.asyncio
async def test_emergency_sell_all(engine, oracle, ledger):
    oracle.prices[OTHER] = 1.0
    await engine.buy(OWNER, TOKEN)
    await engine.buy(OWNER, OTHER)

    results = await engine.emergency_sell_all(OWNER)
    assert [r.status for r in results] == [TradeStatus.EXECUTED, TradeStatus.EXECUTED]
    assert await ledger.list_open(OWNER) == []


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_abandon_trade(engine, router, ledger, chain):
    router.gate = asyncio.Event()
    task = asyncio.create_task(engine.buy(OWNER, TOKEN))
    await router.entered.wait()

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    router.gate.set()
    await asyncio.gather(*list(engine._inflight))

    assert len(await ledger.list_open(OWNER)) == 1
    assert chain.submitted == ["sig-1"]
    # lease liberado
    assert await ledger.acquire_execution_lock(OWNER, TOKEN) is not None


@pytest.mark.asyncio
async def test_stats_snapshot(engine, chain):
    await engine.buy(OWNER, TOKEN)
    chain.confirm_timeout = True
    await engine.buy(OWNER, TOKEN)

    snap = await engine.get_stats_snapshot()
    assert snap["mode"] == "real"
    assert snap["open_positions"] == 1
    assert snap["pending_verification"] == 1
    assert snap["trades"]["executed"] == 1
    assert snap["trades"]["pending"] == 1
