import asyncio

import pytest

from config import TradingSettings
from errors import PositionNotFound
from models import CloseReason, PositionStatus
from position_ledger import PositionLedger
from store import MemoryStore

from conftest import OWNER, TOKEN


async def _open(ledger, amount=10.0, price=1.0, sig="buy-1", settings=None):
    return await ledger.open(OWNER, TOKEN, amount, price, sig, settings=settings)


@pytest.mark.asyncio
async def test_open_sets_targets_from_settings(ledger):
    settings = TradingSettings(take_profit_percent=100.0, stop_loss_percent=25.0)
    pos = await _open(ledger, price=2.0, settings=settings)
    assert pos.status == PositionStatus.OPEN
    assert pos.take_profit_price == pytest.approx(4.0)
    assert pos.stop_loss_price == pytest.approx(1.5)
    assert pos.highest_price == 2.0
    assert (await ledger.list_open(OWNER))[0].id == pos.id


@pytest.mark.asyncio
async def test_open_is_idempotent_by_buy_signature(ledger):
    first = await _open(ledger)
    again = await _open(ledger)
    assert again.id == first.id
    assert len(await ledger.list_positions(OWNER)) == 1


@pytest.mark.asyncio
async def test_open_rejects_empty_amount(ledger):
    with pytest.raises(ValueError):
        await _open(ledger, amount=0)


@pytest.mark.asyncio
async def test_get_unknown_position(ledger):
    with pytest.raises(PositionNotFound):
        await ledger.get("missing")


@pytest.mark.asyncio
async def test_partial_then_closed(ledger):
    pos = await _open(ledger, amount=10.0, price=1.0)

    pos = await ledger.record_sell(pos.id, 2.0, 4.0, "sell-1")
    assert pos.status == PositionStatus.PARTIAL
    assert pos.amount == pytest.approx(6.0)
    assert pos.pnl == pytest.approx(4.0)

    pos = await ledger.record_sell(pos.id, 2.0, 6.0, "sell-2")
    assert pos.status == PositionStatus.CLOSED
    assert pos.close_reason == CloseReason.SOLD
    assert pos.amount == 0
    assert pos.pnl == pytest.approx(10.0)
    assert pos.pnl_percentage == pytest.approx(100.0)
    assert pos.sell_signatures == ["sell-1", "sell-2"]
    assert await ledger.list_open(OWNER) == []


@pytest.mark.asyncio
async def test_record_sell_is_idempotent(ledger):
    pos = await _open(ledger, amount=10.0)
    await ledger.record_sell(pos.id, 1.5, 4.0, "sell-1")
    again = await ledger.record_sell(pos.id, 1.5, 4.0, "sell-1")
    assert again.amount == pytest.approx(6.0)
    assert again.sell_signatures == ["sell-1"]


@pytest.mark.asyncio
async def test_sell_on_closed_position_is_ignored(ledger):
    pos = await _open(ledger, amount=1.0)
    await ledger.record_sell(pos.id, 2.0, 1.0, "sell-1")
    after = await ledger.record_sell(pos.id, 3.0, 1.0, "sell-2")
    assert after.sell_signatures == ["sell-1"]
    assert after.pnl == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_sell_without_price_leaves_pnl_unknown(ledger):
    pos = await _open(ledger, amount=1.0)
    pos = await ledger.record_sell(pos.id, None, 1.0, "sell-1")
    assert pos.status == PositionStatus.CLOSED
    assert pos.pnl_known is False
    stats = await ledger.owner_stats(OWNER)
    assert stats.total_trades == 0


@pytest.mark.asyncio
async def test_sold_amount_is_clamped(ledger):
    pos = await _open(ledger, amount=1.0)
    pos = await ledger.record_sell(pos.id, 1.0, 5.0, "sell-1")
    assert pos.amount == 0
    assert pos.status == PositionStatus.CLOSED


@pytest.mark.asyncio
async def test_note_price_tracks_highest(ledger):
    pos = await _open(ledger, price=1.0)
    await ledger.note_price(pos.id, 1.8)
    pos = await ledger.note_price(pos.id, 1.2)
    assert pos.highest_price == pytest.approx(1.8)
    assert pos.last_price == pytest.approx(1.2)


@pytest.mark.asyncio
async def test_set_entry_price_only_when_unknown(ledger):
    settings = TradingSettings(take_profit_percent=50.0, stop_loss_percent=10.0)
    pos = await _open(ledger, price=0.0)
    pos = await ledger.set_entry_price(pos.id, 2.0, settings)
    assert pos.buy_price == 2.0
    assert pos.take_profit_price == pytest.approx(3.0)

    pos = await ledger.set_entry_price(pos.id, 5.0, settings)
    assert pos.buy_price == 2.0


@pytest.mark.asyncio
async def test_lease_is_exclusive_until_released(ledger):
    lease = await ledger.acquire_execution_lock(OWNER, TOKEN)
    assert lease is not None
    assert await ledger.acquire_execution_lock(OWNER, TOKEN) is None
    # otro token del mismo owner no está bloqueado
    other = await ledger.acquire_execution_lock(OWNER, "OtherMint")
    assert other is not None

    await ledger.release(lease)
    assert await ledger.acquire_execution_lock(OWNER, TOKEN) is not None


@pytest.mark.asyncio
async def test_expired_lease_can_be_taken_over():
    ledger = PositionLedger(MemoryStore(), lease_ttl_sec=0)
    stale = await ledger.acquire_execution_lock(OWNER, TOKEN, holder="crashed")
    fresh = await ledger.acquire_execution_lock(OWNER, TOKEN, holder="new")
    assert fresh is not None
    # liberar el lease viejo no suelta el nuevo
    await ledger.release(stale)
    assert ledger.store._leases[(OWNER, TOKEN)].holder == "new"


@pytest.mark.asyncio
async def test_execution_lease_context_releases(ledger):
    async with ledger.execution_lease(OWNER, TOKEN) as lease:
        assert lease is not None
        async with ledger.execution_lease(OWNER, TOKEN) as busy:
            assert busy is None
    assert await ledger.acquire_execution_lock(OWNER, TOKEN) is not None


@pytest.mark.asyncio
async def test_lease_is_renewed_while_held():
    ledger = PositionLedger(MemoryStore(), lease_ttl_sec=0.05)
    async with ledger.execution_lease(OWNER, TOKEN) as lease:
        assert lease is not None
        await asyncio.sleep(0.15)
        assert await ledger.acquire_execution_lock(OWNER, TOKEN) is None
    assert await ledger.acquire_execution_lock(OWNER, TOKEN) is not None


@pytest.mark.asyncio
async def test_taken_over_lease_cannot_be_renewed():
    ledger = PositionLedger(MemoryStore(), lease_ttl_sec=0)
    stale = await ledger.acquire_execution_lock(OWNER, TOKEN, holder="crashed")
    await ledger.acquire_execution_lock(OWNER, TOKEN, holder="new")
    assert await ledger.renew(stale) is None
    assert ledger.store._leases[(OWNER, TOKEN)].holder == "new"


@pytest.mark.asyncio
async def test_position_lock_dropped_on_close(ledger):
    pos = await _open(ledger, amount=1.0)
    await ledger.note_price(pos.id, 1.2)
    assert pos.id in ledger._locks

    await ledger.record_sell(pos.id, 1.2, 0.5, "sell-1")
    assert pos.id in ledger._locks
    await ledger.record_sell(pos.id, 1.2, 0.5, "sell-2")
    assert pos.id not in ledger._locks


@pytest.mark.asyncio
async def test_close_stale_uses_last_seen_price(store):
    now = [1000.0]
    ledger = PositionLedger(store, clock=lambda: now[0])
    seen = await _open(ledger, amount=2.0, price=1.0, sig="buy-a")
    await ledger.note_price(seen.id, 1.5)
    unseen = await ledger.open(OWNER, "OtherMint", 1.0, 1.0, "buy-b")

    closed = await ledger.close_stale(100.0, now=1200.0)
    assert {p.id for p in closed} == {seen.id, unseen.id}

    seen = await ledger.get(seen.id)
    assert seen.close_reason == CloseReason.STALE
    assert seen.sell_price == 1.5
    assert seen.pnl == pytest.approx(1.0)

    unseen = await ledger.get(unseen.id)
    assert unseen.pnl_known is False
    assert unseen.sell_price is None


@pytest.mark.asyncio
async def test_close_stale_skips_recent_and_busy(store):
    ledger = PositionLedger(store, clock=lambda: 1000.0)
    recent = await ledger.open(OWNER, "Recent", 1.0, 1.0, "buy-r")
    busy = await _open(ledger, sig="buy-busy")
    lease = await ledger.acquire_execution_lock(OWNER, TOKEN)

    closed = await ledger.close_stale(100.0, now=1050.0)
    assert closed == []
    closed = await ledger.close_stale(10.0, now=1050.0)
    assert [p.id for p in closed] == [recent.id]
    assert (await ledger.get(busy.id)).is_open
    await ledger.release(lease)


@pytest.mark.asyncio
async def test_owner_stats(ledger):
    win = await ledger.open(OWNER, "A", 1.0, 1.0, "b1")
    loss = await ledger.open(OWNER, "B", 1.0, 1.0, "b2")
    await ledger.open(OWNER, "C", 1.0, 1.0, "b3")
    await ledger.record_sell(win.id, 3.0, 1.0, "s1")
    await ledger.record_sell(loss.id, 0.5, 1.0, "s2")

    stats = await ledger.owner_stats(OWNER)
    assert stats.total_trades == 2
    assert stats.winning_trades == 1
    assert stats.total_pnl == pytest.approx(1.5)
    assert stats.win_rate == pytest.approx(50.0)
