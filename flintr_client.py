# flintr_client.py
import json
import logging
import threading
from typing import Any, Callable, Dict, Optional

from websocket import WebSocketApp

from models import LaunchEvent

logger = logging.getLogger(__name__)

LaunchCallback = Callable[[LaunchEvent], None]


def parse_mint_event(data: Dict[str, Any]) -> Optional[LaunchEvent]:
    payload = data.get("data") or {}
    mint = payload.get("mint")
    if not mint:
        return None
    meta = payload.get("metaData") or {}
    token_data = payload.get("tokenData") or {}

    holders = token_data.get("holders")
    try:
        holders = int(holders) if holders not in (None, "") else None
    except (TypeError, ValueError):
        holders = None

    return LaunchEvent(
        token_address=mint,
        symbol=meta.get("symbol") or "",
        name=meta.get("name") or "",
        holders=holders,
    )


class FlintrClient:
    """
    Cliente WebSocket para Flintr: lanzamientos de tokens (mints de pump.fun).

    Corre en su propio thread (run_forever bloquea); `on_launch` se invoca en
    ese thread, así que el receptor debe pasarlo al event loop.
    """

    def __init__(
        self,
        api_key: str,
        *,
        platform_filter: str = "pump.fun",
        on_launch: Optional[LaunchCallback] = None,
        debug: bool = False,
        reconnect_delay: float = 5.0,
    ) -> None:
        if not api_key:
            raise RuntimeError("FLINTR_API_KEY vacío")

        self.api_key = api_key
        self.ws_url = f"wss://api-v1.flintr.io/sub?token={self.api_key}"

        self.platform_filter = platform_filter
        self.on_launch = on_launch

        self.debug = debug
        self.reconnect_delay = reconnect_delay

        self._stop = threading.Event()
        self._ws: Optional[WebSocketApp] = None

    # ----------------- API pública -----------------

    def run_forever(self) -> None:
        """Loop con reconexión automática hasta stop()."""
        while not self._stop.is_set():
            logger.info("[Flintr] Conectando...")

            self._ws = WebSocketApp(
                self.ws_url,
                on_open=self._on_open,
                on_message=self._on_message,
                on_error=self._on_error,
                on_close=self._on_close,
            )

            self._ws.run_forever(ping_interval=30, ping_timeout=10)

            if self._stop.is_set():
                break
            logger.warning("[Flintr] Desconectado. Reintentando en %ss...", self.reconnect_delay)
            self._stop.wait(self.reconnect_delay)

    def stop(self) -> None:
        self._stop.set()
        if self._ws is not None:
            self._ws.close()

    # ----------------- Callbacks internos -----------------

    def _on_open(self, ws: WebSocketApp) -> None:
        logger.info("[Flintr] ✅ Conectado → escuchando lanzamientos…")

    def _on_message(self, ws: WebSocketApp, message: str) -> None:
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.warning("[Flintr] ⚠️ JSON inválido: %s", message[:200])
            return
        self.handle_message(data)

    def _on_error(self, ws: WebSocketApp, error: Exception) -> None:
        logger.warning("[Flintr] ⚠️ Error WebSocket: %r", error)

    def _on_close(
        self,
        ws: WebSocketApp,
        close_status_code: int,
        close_msg: Optional[str],
    ) -> None:
        logger.warning("[Flintr] 🔴 Cerrado (code=%s, msg=%s)", close_status_code, close_msg)

    # ----------------- Lógica de eventos token -----------------

    def handle_message(self, data: Dict[str, Any]) -> Optional[LaunchEvent]:
        event = data.get("event") or {}
        event_class = event.get("class")

        # Ping keep-alive
        if event_class == "ping":
            if self.debug:
                logger.debug("[Flintr] 🔁 Ping: %s", data.get("time"))
            return None

        if event_class != "token":
            if self.debug:
                logger.debug("[Flintr] Evento ignorado: %s", event_class)
            return None

        if self.platform_filter and event.get("platform") != self.platform_filter:
            return None
        if event.get("type") != "mint":
            return None

        launch = parse_mint_event(data)
        if launch is None:
            return None

        logger.info(
            "🟢 [Flintr] MINT %s → %s (%s) mint=%s",
            self.platform_filter, launch.symbol, launch.name, launch.token_address,
        )
        if self.on_launch:
            try:
                self.on_launch(launch)
            except Exception as exc:
                logger.exception("[Flintr] Error en on_launch: %r", exc)
        return launch


def start_flintr_thread(client: FlintrClient) -> threading.Thread:
    def _run() -> None:
        logger.info("🚀 Flintr WebSocket thread iniciado...")
        client.run_forever()

    t = threading.Thread(target=_run, name="flintr", daemon=True)
    t.start()
    return t
