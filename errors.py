# errors.py
"""
Taxonomía de errores del motor de trading.

Los adaptadores de proveedores (precio, quotes, RPC) traducen sus excepciones
a estas clases. SwapExecutor las convierte en SwapOutcome, de modo que los
monitores nunca ven una excepción cruda de un proveedor.
"""

from enum import Enum


class ErrorKind(str, Enum):
    TRANSIENT_NETWORK = "transient_network"
    RATE_LIMITED = "rate_limited"
    QUOTE_UNAVAILABLE = "quote_unavailable"
    IMPACT_TOO_HIGH = "impact_too_high"
    STALE_QUOTE = "stale_quote"
    SIGNING_FAILURE = "signing_failure"
    CONFIRMATION_TIMEOUT = "confirmation_timeout"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    TRANSACTION_FAILED = "transaction_failed"
    NOT_FOUND = "not_found"
    UNEXPECTED = "unexpected"


class TradingError(Exception):
    kind: ErrorKind = ErrorKind.UNEXPECTED
    retryable: bool = False


class TransientNetwork(TradingError):
    """Error de red / HTTP 5xx / timeout: se reintenta con backoff."""

    kind = ErrorKind.TRANSIENT_NETWORK
    retryable = True


class RateLimitExceeded(TransientNetwork):
    kind = ErrorKind.RATE_LIMITED


class QuoteUnavailable(TradingError):
    """Sin ruta para el swap. Se salta el ciclo."""

    kind = ErrorKind.QUOTE_UNAVAILABLE


class ImpactTooHigh(TradingError):
    kind = ErrorKind.IMPACT_TOO_HIGH


class StaleQuote(TradingError):
    """La quote expiró antes de construir la TX: pedir una nueva (una vez)."""

    kind = ErrorKind.STALE_QUOTE


class SigningFailure(TradingError):
    kind = ErrorKind.SIGNING_FAILURE


class ConfirmationTimeout(TradingError):
    """
    La TX se envió pero no se confirmó a tiempo. El resultado es desconocido
    y debe reconciliarse consultando la cadena, nunca reenviando.
    """

    kind = ErrorKind.CONFIRMATION_TIMEOUT

    def __init__(self, signature: str, message: str = "") -> None:
        super().__init__(message or f"confirmación expirada para {signature}")
        self.signature = signature


class InsufficientBalance(TradingError):
    kind = ErrorKind.INSUFFICIENT_BALANCE


class TransactionFailed(TradingError):
    """La TX fue rechazada (preflight o ejecución on-chain)."""

    kind = ErrorKind.TRANSACTION_FAILED


class PositionNotFound(TradingError):
    kind = ErrorKind.NOT_FOUND
