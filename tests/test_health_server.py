import httpx
import pytest

from health_server import build_app, check_dependencies

from conftest import OWNER, TOKEN


class BrokenChain:
    async def get_version(self):
        raise ConnectionError("rpc down")


def _client(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://health")


@pytest.mark.asyncio
async def test_health_always_ok(engine):
    async with _client(build_app(engine)) as client:
        resp = await client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["engine_running"] is False
    assert body["mode"] == "real"


@pytest.mark.asyncio
async def test_status_includes_snapshot_and_extras(engine):
    await engine.buy(OWNER, TOKEN)
    app = build_app(engine, {"monitor": lambda: {"watched": 3}, "broken": lambda: 1 / 0})
    async with _client(app) as client:
        resp = await client.get("/status")
    body = resp.json()
    assert body["open_positions"] == 1
    assert body["trades"]["executed"] == 1
    assert body["monitor"] == {"watched": 3}
    assert "error" in body["broken"]


@pytest.mark.asyncio
async def test_ping(engine):
    async with _client(build_app(engine)) as client:
        resp = await client.get("/ping")
    assert resp.json()["ping"] == "pong"


@pytest.mark.asyncio
async def test_check_dependencies(engine):
    result = await check_dependencies(engine)
    assert result == {"store": True, "solana_rpc": "1.18.0", "notifier": True, "healthy": True}


@pytest.mark.asyncio
async def test_check_dependencies_reports_failures(engine):
    engine.executor.chain = BrokenChain()
    result = await check_dependencies(engine)
    assert result["solana_rpc"] is False
    assert result["healthy"] is False
