# rate_limiter.py
"""
Rate limiting por proveedor (token bucket), compartido por todas las tareas.

Best-effort y en memoria: el estado no sobrevive a un reinicio.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from errors import RateLimitExceeded

logger = logging.getLogger(__name__)


@dataclass
class TokenBucket:
    capacity: float               # requests por minuto
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    tokens: float = field(default=-1.0)
    last_update: float = field(default=0.0)
    requests_made: int = 0
    requests_blocked: int = 0

    def __post_init__(self) -> None:
        if self.tokens < 0:
            self.tokens = float(self.capacity)
        self.last_update = self.clock()

    @property
    def refill_rate(self) -> float:
        """Tokens por segundo."""
        return self.capacity / 60.0

    def refill(self) -> None:
        now = self.clock()
        elapsed = now - self.last_update
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_update = now

    def consume(self, tokens: float = 1.0) -> bool:
        self.refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            self.requests_made += 1
            return True
        self.requests_blocked += 1
        return False

    def wait_time(self, tokens: float = 1.0) -> float:
        self.refill()
        if self.tokens >= tokens:
            return 0.0
        if self.refill_rate <= 0:
            return float("inf")
        return (tokens - self.tokens) / self.refill_rate


class RateLimiter:
    """Registro de buckets por proveedor ("jupiter", "dexscreener", "rpc", ...)."""

    def __init__(
        self,
        limits: Dict[str, int],
        *,
        default_limit: int = 60,
        max_wait_sec: float = 5.0,
    ) -> None:
        self._limits = dict(limits)
        self._default_limit = default_limit
        self.max_wait_sec = max_wait_sec
        self._buckets: Dict[str, TokenBucket] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def bucket(self, provider: str) -> TokenBucket:
        b = self._buckets.get(provider)
        if b is None:
            b = TokenBucket(capacity=self._limits.get(provider, self._default_limit))
            self._buckets[provider] = b
        return b

    def try_acquire(self, provider: str) -> bool:
        """No bloqueante: False si el bucket está agotado (el caller salta el ciclo)."""
        return self.bucket(provider).consume()

    async def acquire(self, provider: str, max_wait_sec: Optional[float] = None) -> None:
        """
        Bloquea (acotado) hasta obtener un token. Si la espera necesaria
        supera `max_wait_sec` lanza RateLimitExceeded.
        """
        limit = self.max_wait_sec if max_wait_sec is None else max_wait_sec
        lock = self._locks.setdefault(provider, asyncio.Lock())
        deadline = time.monotonic() + limit

        async with lock:
            bucket = self.bucket(provider)
            while not bucket.consume():
                wait = bucket.wait_time()
                if time.monotonic() + wait > deadline:
                    logger.warning("[RateLimit] %s agotado (espera %.2fs)", provider, wait)
                    raise RateLimitExceeded(f"rate limit de {provider} agotado")
                await asyncio.sleep(wait)

    def snapshot(self) -> Dict[str, Dict[str, float]]:
        return {
            name: {
                "capacity": b.capacity,
                "tokens": round(b.tokens, 2),
                "requests_made": b.requests_made,
                "requests_blocked": b.requests_blocked,
            }
            for name, b in self._buckets.items()
        }
