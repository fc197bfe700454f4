# health_server.py
"""
🏥 HEALTH CHECK SERVER
======================
Servidor HTTP ligero para healthchecks y monitoreo del motor.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from notifier import Notifier
from trading_engine import TradingEngine

logger = logging.getLogger(__name__)

ExtraStatus = Callable[[], Dict[str, Any]]


# ═══════════════════════════════════════════════════════════════
# DEPENDENCIAS
# ═══════════════════════════════════════════════════════════════

async def check_dependencies(engine: TradingEngine, notifier: Optional[Notifier] = None) -> Dict[str, Any]:
    """Comprueba store, RPC de Solana y Telegram. Nunca lanza."""
    results: Dict[str, Any] = {}

    try:
        results["store"] = bool(await engine.ledger.store.ping())
    except Exception as exc:
        logger.warning("[Health] Store no disponible: %r", exc)
        results["store"] = False

    try:
        results["solana_rpc"] = await engine.chain.get_version()
    except Exception as exc:
        logger.warning("[Health] RPC no disponible: %r", exc)
        results["solana_rpc"] = False

    notifier = notifier or engine.notifier
    try:
        results["notifier"] = bool(await notifier.ping())
    except Exception as exc:
        logger.warning("[Health] Notificador no disponible: %r", exc)
        results["notifier"] = False

    results["healthy"] = all(v is not False for v in results.values())
    return results


# ═══════════════════════════════════════════════════════════════
# FASTAPI APP
# ═══════════════════════════════════════════════════════════════

def build_app(engine: TradingEngine, extras: Optional[Dict[str, ExtraStatus]] = None) -> FastAPI:
    extras = extras or {}
    app = FastAPI(
        title="Solana Trading Engine",
        docs_url=None,  # Desactivar docs para producción
        redoc_url=None,
    )

    @app.get("/health")
    async def health_check():
        """
        Healthcheck principal.
        IMPORTANTE: Retorna 200 SIEMPRE para evitar reinicios
        """
        return JSONResponse(
            status_code=200,
            content={
                "status": "healthy",
                "engine_running": engine.started_at is not None,
                "mode": engine.config.mode,
                "timestamp": datetime.now().isoformat(),
            },
        )

    @app.get("/status")
    async def get_status():
        """Status detallado del motor"""
        try:
            snapshot = await engine.get_stats_snapshot()
        except Exception as exc:
            logger.warning("[Health] No se pudo leer el estado: %r", exc)
            snapshot = {"error": repr(exc)}
        for name, provider in extras.items():
            try:
                snapshot[name] = provider()
            except Exception as exc:
                snapshot[name] = {"error": repr(exc)}
        return JSONResponse(snapshot)

    @app.get("/ping")
    async def ping():
        """Ping simple para verificar que el servidor está vivo"""
        return {"ping": "pong", "timestamp": datetime.now().isoformat()}

    return app


# ═══════════════════════════════════════════════════════════════
# SERVIDOR
# ═══════════════════════════════════════════════════════════════

class HealthServer:
    def __init__(self, app: FastAPI, port: int = 8080) -> None:
        self.port = port
        self._server = uvicorn.Server(
            uvicorn.Config(
                app,
                host="0.0.0.0",
                port=port,
                log_level="warning",
                access_log=False,
                timeout_keep_alive=60,
            )
        )
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._server.serve(), name="health-server")
        logger.info(f"✅ Health server iniciado en puerto {self.port}")
        logger.info(f"🏥 Healthcheck disponible en: http://0.0.0.0:{self.port}/health")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._server.should_exit = True
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
