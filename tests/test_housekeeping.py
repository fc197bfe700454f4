import pytest

from analytics import AnalyticsJob, build_report
from housekeeping import SECONDS_PER_DAY, Housekeeping
from models import CloseReason
from position_ledger import PositionLedger

from conftest import OWNER


@pytest.mark.asyncio
async def test_year_old_positions_are_closed(store):
    ledger = PositionLedger(store, clock=lambda: 0.0)
    old = await ledger.open(OWNER, "Old", 1.0, 1.0, "b-old")
    job = Housekeeping(ledger, stale_position_days=365)

    assert await job.run_once(now=364 * SECONDS_PER_DAY) == []
    closed = await job.run_once(now=366 * SECONDS_PER_DAY)
    assert [p.id for p in closed] == [old.id]
    assert closed[0].close_reason == CloseReason.STALE
    assert closed[0].pnl_known is False


@pytest.mark.asyncio
async def test_report(ledger):
    win = await ledger.open(OWNER, "A", 2.0, 1.0, "b1")
    loss = await ledger.open(OWNER, "B", 1.0, 1.0, "b2")
    blind = await ledger.open(OWNER, "C", 1.0, 1.0, "b3")
    partial = await ledger.open("owner-2", "D", 2.0, 1.0, "b4")
    await ledger.open(OWNER, "E", 1.0, 1.0, "b5")

    await ledger.record_sell(win.id, 2.0, 2.0, "s1")       # +2
    await ledger.record_sell(loss.id, 0.5, 1.0, "s2")      # -0.5
    await ledger.record_sell(blind.id, None, 1.0, "s3")
    await ledger.record_sell(partial.id, 1.5, 1.0, "s4")   # +0.5, sigue abierta

    report = await build_report(ledger)
    assert report.total_positions == 5
    assert report.open_positions == 2
    assert report.closed_positions == 3
    assert report.unknown_pnl_positions == 1
    assert report.win_rate == pytest.approx(50.0)
    assert report.realized_pnl == pytest.approx(2.0)
    assert "Win rate: 50.00%" in report.format()

    mine = await build_report(ledger, OWNER)
    assert mine.total_positions == 4


@pytest.mark.asyncio
async def test_analytics_job_snapshot(ledger):
    job = AnalyticsJob(ledger)
    assert job.snapshot() == {}
    await job.run_once()
    assert job.snapshot() == {"win_rate": 0.0, "realized_pnl": 0.0, "closed_positions": 0}


@pytest.mark.asyncio
async def test_analytics_job_sends_each_owner_its_report(ledger, notifier):
    win = await ledger.open(OWNER, "A", 1.0, 1.0, "b1")
    await ledger.record_sell(win.id, 3.0, 1.0, "s1")
    await ledger.open("owner-2", "B", 1.0, 1.0, "b2")

    await AnalyticsJob(ledger, notifier=notifier).run_once()
    sent = dict(notifier.messages)
    assert set(sent) == {OWNER, "owner-2"}
    assert "P&L realizado: 2.000000" in sent[OWNER]
    assert "(abiertas 1, cerradas 0)" in sent["owner-2"]
