# store.py
"""
Persistencia: posiciones, suscripciones de copy trading, criterios de snipe,
ajustes por usuario, alertas de precio, trades pendientes de verificación y
leases de ejecución.

- MemoryStore: tests / modo simulación.
- PostgresStore: asyncpg, cuerpos JSONB; las tablas se crean en start().
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict
from typing import Dict, List, Optional, Tuple

import asyncpg

from config import TradingSettings
from models import CopyTradeSubscription, Lease, PendingTrade, Position, PriceAlert, SnipeCriteria

logger = logging.getLogger(__name__)


class PersistentStore:
    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def ping(self) -> bool:
        return True

    # posiciones
    async def insert_position(self, position: Position) -> None:
        raise NotImplementedError

    async def update_position(self, position: Position) -> None:
        raise NotImplementedError

    async def get_position(self, position_id: str) -> Optional[Position]:
        raise NotImplementedError

    async def find_position_by_buy_signature(self, signature: str) -> Optional[Position]:
        raise NotImplementedError

    async def list_positions(self, owner_id: Optional[str] = None, open_only: bool = False) -> List[Position]:
        raise NotImplementedError

    # leases
    async def try_acquire_lease(
        self, owner_id: str, token_address: str, holder: str, ttl_sec: float
    ) -> Optional[Lease]:
        raise NotImplementedError

    async def renew_lease(self, lease: Lease, ttl_sec: float) -> Optional[Lease]:
        """Extiende el lease sólo si `lease.holder` sigue siendo el titular."""
        raise NotImplementedError

    async def release_lease(self, lease: Lease) -> None:
        raise NotImplementedError

    # copy trading
    async def save_subscription(self, sub: CopyTradeSubscription) -> None:
        raise NotImplementedError

    async def get_subscription(self, subscription_id: str) -> Optional[CopyTradeSubscription]:
        raise NotImplementedError

    async def list_subscriptions(self, active_only: bool = True) -> List[CopyTradeSubscription]:
        raise NotImplementedError

    # sniping
    async def save_criteria(self, criteria: SnipeCriteria) -> None:
        raise NotImplementedError

    async def list_criteria(self, active_only: bool = True) -> List[SnipeCriteria]:
        raise NotImplementedError

    # alertas de precio
    async def save_alert(self, alert: PriceAlert) -> None:
        raise NotImplementedError

    async def get_alert(self, alert_id: str) -> Optional[PriceAlert]:
        raise NotImplementedError

    async def list_alerts(self, active_only: bool = True) -> List[PriceAlert]:
        raise NotImplementedError

    # ajustes
    async def get_settings(self, owner_id: str) -> Optional[TradingSettings]:
        raise NotImplementedError

    async def save_settings(self, owner_id: str, settings: TradingSettings) -> None:
        raise NotImplementedError

    # pendientes de verificación
    async def save_pending(self, pending: PendingTrade) -> None:
        raise NotImplementedError

    async def list_pending(self) -> List[PendingTrade]:
        raise NotImplementedError

    async def delete_pending(self, signature: str) -> None:
        raise NotImplementedError


class MemoryStore(PersistentStore):
    """Copias en cada lectura/escritura: nadie comparte objetos mutables con el store."""

    def __init__(self) -> None:
        self._positions: Dict[str, dict] = {}
        self._leases: Dict[Tuple[str, str], Lease] = {}
        self._subs: Dict[str, dict] = {}
        self._criteria: Dict[str, dict] = {}
        self._settings: Dict[str, TradingSettings] = {}
        self._pending: Dict[str, dict] = {}
        self._alerts: Dict[str, dict] = {}

    async def insert_position(self, position: Position) -> None:
        if position.id in self._positions:
            raise ValueError(f"posición duplicada {position.id}")
        self._positions[position.id] = position.to_dict()

    async def update_position(self, position: Position) -> None:
        self._positions[position.id] = position.to_dict()

    async def get_position(self, position_id: str) -> Optional[Position]:
        d = self._positions.get(position_id)
        return Position.from_dict(d) if d else None

    async def find_position_by_buy_signature(self, signature: str) -> Optional[Position]:
        for d in self._positions.values():
            if d["buy_signature"] == signature:
                return Position.from_dict(d)
        return None

    async def list_positions(self, owner_id: Optional[str] = None, open_only: bool = False) -> List[Position]:
        out = []
        for d in self._positions.values():
            pos = Position.from_dict(d)
            if owner_id is not None and pos.owner_id != owner_id:
                continue
            if open_only and not pos.is_open:
                continue
            out.append(pos)
        return sorted(out, key=lambda p: p.buy_timestamp)

    async def try_acquire_lease(
        self, owner_id: str, token_address: str, holder: str, ttl_sec: float
    ) -> Optional[Lease]:
        key = (owner_id, token_address)
        now = time.time()
        current = self._leases.get(key)
        if current is not None and not current.expired(now):
            return None
        lease = Lease(owner_id, token_address, holder, now + ttl_sec)
        self._leases[key] = lease
        return lease

    async def renew_lease(self, lease: Lease, ttl_sec: float) -> Optional[Lease]:
        key = (lease.owner_id, lease.token_address)
        current = self._leases.get(key)
        if current is None or current.holder != lease.holder:
            return None
        renewed = Lease(lease.owner_id, lease.token_address, lease.holder, time.time() + ttl_sec)
        self._leases[key] = renewed
        return renewed

    async def release_lease(self, lease: Lease) -> None:
        key = (lease.owner_id, lease.token_address)
        current = self._leases.get(key)
        if current is not None and current.holder == lease.holder:
            del self._leases[key]

    async def save_subscription(self, sub: CopyTradeSubscription) -> None:
        self._subs[sub.id] = sub.to_dict()

    async def get_subscription(self, subscription_id: str) -> Optional[CopyTradeSubscription]:
        d = self._subs.get(subscription_id)
        return CopyTradeSubscription.from_dict(d) if d else None

    async def list_subscriptions(self, active_only: bool = True) -> List[CopyTradeSubscription]:
        subs = [CopyTradeSubscription.from_dict(d) for d in self._subs.values()]
        return [s for s in subs if s.is_active or not active_only]

    async def save_criteria(self, criteria: SnipeCriteria) -> None:
        self._criteria[criteria.owner_id] = criteria.to_dict()

    async def list_criteria(self, active_only: bool = True) -> List[SnipeCriteria]:
        items = [SnipeCriteria.from_dict(d) for d in self._criteria.values()]
        return [c for c in items if c.is_active or not active_only]

    async def save_alert(self, alert: PriceAlert) -> None:
        self._alerts[alert.id] = alert.to_dict()

    async def get_alert(self, alert_id: str) -> Optional[PriceAlert]:
        d = self._alerts.get(alert_id)
        return PriceAlert.from_dict(d) if d else None

    async def list_alerts(self, active_only: bool = True) -> List[PriceAlert]:
        alerts = [PriceAlert.from_dict(d) for d in self._alerts.values()]
        return [a for a in alerts if a.is_active or not active_only]

    async def get_settings(self, owner_id: str) -> Optional[TradingSettings]:
        return self._settings.get(owner_id)

    async def save_settings(self, owner_id: str, settings: TradingSettings) -> None:
        self._settings[owner_id] = settings

    async def save_pending(self, pending: PendingTrade) -> None:
        self._pending[pending.signature] = pending.to_dict()

    async def list_pending(self) -> List[PendingTrade]:
        return [PendingTrade.from_dict(d) for d in self._pending.values()]

    async def delete_pending(self, signature: str) -> None:
        self._pending.pop(signature, None)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS positions (
    id VARCHAR(64) PRIMARY KEY,
    owner_id VARCHAR(64) NOT NULL,
    token_address VARCHAR(64) NOT NULL,
    status VARCHAR(16) NOT NULL,
    buy_signature VARCHAR(128) NOT NULL,
    buy_timestamp DOUBLE PRECISION NOT NULL,
    data JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS positions_owner_status ON positions (owner_id, status);
CREATE INDEX IF NOT EXISTS positions_buy_signature ON positions (buy_signature);

CREATE TABLE IF NOT EXISTS execution_leases (
    owner_id VARCHAR(64) NOT NULL,
    token_address VARCHAR(64) NOT NULL,
    holder VARCHAR(64) NOT NULL,
    expires_at DOUBLE PRECISION NOT NULL,
    PRIMARY KEY (owner_id, token_address)
);

CREATE TABLE IF NOT EXISTS copy_trades (
    id VARCHAR(64) PRIMARY KEY,
    owner_id VARCHAR(64) NOT NULL,
    target_wallet VARCHAR(64) NOT NULL,
    is_active BOOLEAN NOT NULL,
    data JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS copy_trades_target ON copy_trades (target_wallet, is_active);

CREATE TABLE IF NOT EXISTS snipe_configs (
    owner_id VARCHAR(64) PRIMARY KEY,
    is_active BOOLEAN NOT NULL,
    data JSONB NOT NULL
);

CREATE TABLE IF NOT EXISTS user_settings (
    owner_id VARCHAR(64) PRIMARY KEY,
    data JSONB NOT NULL
);

CREATE TABLE IF NOT EXISTS pending_trades (
    signature VARCHAR(128) PRIMARY KEY,
    data JSONB NOT NULL
);

CREATE TABLE IF NOT EXISTS price_alerts (
    id VARCHAR(64) PRIMARY KEY,
    owner_id VARCHAR(64) NOT NULL,
    token_address VARCHAR(64) NOT NULL,
    is_active BOOLEAN NOT NULL,
    data JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS price_alerts_active ON price_alerts (is_active);
"""


class PostgresStore(PersistentStore):
    def __init__(self, database_url: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.database_url = database_url
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def start(self) -> None:
        self._pool = await asyncpg.create_pool(
            self.database_url, min_size=self._min_size, max_size=self._max_size
        )
        async with self._pool.acquire() as conn:
            await conn.execute(_SCHEMA)
        logger.info("[Store] ✅ Database inicializada")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ping(self) -> bool:
        async with self._pool.acquire() as conn:
            return await conn.fetchval("SELECT 1") == 1

    # ---------------- posiciones ----------------

    async def insert_position(self, position: Position) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO positions (id, owner_id, token_address, status, buy_signature, buy_timestamp, data)
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
                """,
                position.id, position.owner_id, position.token_address, position.status.value,
                position.buy_signature, position.buy_timestamp, json.dumps(position.to_dict()),
            )

    async def update_position(self, position: Position) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                "UPDATE positions SET status = $2, data = $3::jsonb WHERE id = $1",
                position.id, position.status.value, json.dumps(position.to_dict()),
            )

    async def get_position(self, position_id: str) -> Optional[Position]:
        async with self._pool.acquire() as conn:
            raw = await conn.fetchval("SELECT data FROM positions WHERE id = $1", position_id)
        return Position.from_dict(json.loads(raw)) if raw else None

    async def find_position_by_buy_signature(self, signature: str) -> Optional[Position]:
        async with self._pool.acquire() as conn:
            raw = await conn.fetchval(
                "SELECT data FROM positions WHERE buy_signature = $1 LIMIT 1", signature
            )
        return Position.from_dict(json.loads(raw)) if raw else None

    async def list_positions(self, owner_id: Optional[str] = None, open_only: bool = False) -> List[Position]:
        query = "SELECT data FROM positions WHERE ($1::varchar IS NULL OR owner_id = $1)"
        if open_only:
            query += " AND status <> 'closed'"
        query += " ORDER BY buy_timestamp"
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, owner_id)
        return [Position.from_dict(json.loads(r["data"])) for r in rows]

    # ---------------- leases ----------------

    async def try_acquire_lease(
        self, owner_id: str, token_address: str, holder: str, ttl_sec: float
    ) -> Optional[Lease]:
        now = time.time()
        expires_at = now + ttl_sec
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO execution_leases (owner_id, token_address, holder, expires_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (owner_id, token_address) DO UPDATE
                    SET holder = EXCLUDED.holder, expires_at = EXCLUDED.expires_at
                    WHERE execution_leases.expires_at <= $5
                RETURNING holder
                """,
                owner_id, token_address, holder, expires_at, now,
            )
        if row is None or row["holder"] != holder:
            return None
        return Lease(owner_id, token_address, holder, expires_at)

    async def renew_lease(self, lease: Lease, ttl_sec: float) -> Optional[Lease]:
        expires_at = time.time() + ttl_sec
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE execution_leases SET expires_at = $4
                WHERE owner_id = $1 AND token_address = $2 AND holder = $3
                RETURNING holder
                """,
                lease.owner_id, lease.token_address, lease.holder, expires_at,
            )
        if row is None:
            return None
        return Lease(lease.owner_id, lease.token_address, lease.holder, expires_at)

    async def release_lease(self, lease: Lease) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                "DELETE FROM execution_leases WHERE owner_id = $1 AND token_address = $2 AND holder = $3",
                lease.owner_id, lease.token_address, lease.holder,
            )

    # ---------------- copy trading ----------------

    async def save_subscription(self, sub: CopyTradeSubscription) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO copy_trades (id, owner_id, target_wallet, is_active, data)
                VALUES ($1, $2, $3, $4, $5::jsonb)
                ON CONFLICT (id) DO UPDATE
                    SET is_active = EXCLUDED.is_active, data = EXCLUDED.data
                """,
                sub.id, sub.owner_id, sub.target_wallet, sub.is_active, json.dumps(sub.to_dict()),
            )

    async def get_subscription(self, subscription_id: str) -> Optional[CopyTradeSubscription]:
        async with self._pool.acquire() as conn:
            raw = await conn.fetchval("SELECT data FROM copy_trades WHERE id = $1", subscription_id)
        return CopyTradeSubscription.from_dict(json.loads(raw)) if raw else None

    async def list_subscriptions(self, active_only: bool = True) -> List[CopyTradeSubscription]:
        query = "SELECT data FROM copy_trades"
        if active_only:
            query += " WHERE is_active"
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query)
        return [CopyTradeSubscription.from_dict(json.loads(r["data"])) for r in rows]

    # ---------------- sniping ----------------

    async def save_criteria(self, criteria: SnipeCriteria) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO snipe_configs (owner_id, is_active, data) VALUES ($1, $2, $3::jsonb)
                ON CONFLICT (owner_id) DO UPDATE SET is_active = EXCLUDED.is_active, data = EXCLUDED.data
                """,
                criteria.owner_id, criteria.is_active, json.dumps(criteria.to_dict()),
            )

    async def list_criteria(self, active_only: bool = True) -> List[SnipeCriteria]:
        query = "SELECT data FROM snipe_configs"
        if active_only:
            query += " WHERE is_active"
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query)
        return [SnipeCriteria.from_dict(json.loads(r["data"])) for r in rows]

    # ---------------- alertas ----------------

    async def save_alert(self, alert: PriceAlert) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO price_alerts (id, owner_id, token_address, is_active, data)
                VALUES ($1, $2, $3, $4, $5::jsonb)
                ON CONFLICT (id) DO UPDATE
                    SET is_active = EXCLUDED.is_active, data = EXCLUDED.data
                """,
                alert.id, alert.owner_id, alert.token_address, alert.is_active,
                json.dumps(alert.to_dict()),
            )

    async def get_alert(self, alert_id: str) -> Optional[PriceAlert]:
        async with self._pool.acquire() as conn:
            raw = await conn.fetchval("SELECT data FROM price_alerts WHERE id = $1", alert_id)
        return PriceAlert.from_dict(json.loads(raw)) if raw else None

    async def list_alerts(self, active_only: bool = True) -> List[PriceAlert]:
        query = "SELECT data FROM price_alerts"
        if active_only:
            query += " WHERE is_active"
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query)
        return [PriceAlert.from_dict(json.loads(r["data"])) for r in rows]

    # ---------------- ajustes ----------------

    async def get_settings(self, owner_id: str) -> Optional[TradingSettings]:
        async with self._pool.acquire() as conn:
            raw = await conn.fetchval("SELECT data FROM user_settings WHERE owner_id = $1", owner_id)
        return TradingSettings(**json.loads(raw)) if raw else None

    async def save_settings(self, owner_id: str, settings: TradingSettings) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO user_settings (owner_id, data) VALUES ($1, $2::jsonb)
                ON CONFLICT (owner_id) DO UPDATE SET data = EXCLUDED.data
                """,
                owner_id, json.dumps(asdict(settings)),
            )

    # ---------------- pendientes ----------------

    async def save_pending(self, pending: PendingTrade) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO pending_trades (signature, data) VALUES ($1, $2::jsonb)
                ON CONFLICT (signature) DO UPDATE SET data = EXCLUDED.data
                """,
                pending.signature, json.dumps(pending.to_dict()),
            )

    async def list_pending(self) -> List[PendingTrade]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch("SELECT data FROM pending_trades")
        return [PendingTrade.from_dict(json.loads(r["data"])) for r in rows]

    async def delete_pending(self, signature: str) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute("DELETE FROM pending_trades WHERE signature = $1", signature)
