"""Exception hierarchy for the candle engine.

All custom exceptions inherit from CandleEngineError for easy catching and
handling. Input and spike problems on ticks are reported through result
objects, not exceptions; the classes here cover configuration, data
integrity, provider and storage failures.
"""

from typing import Any, Dict


class CandleEngineError(Exception):
    """Base exception for all candle engine errors.

    All custom exceptions in the engine inherit from this class, allowing
    for easy catching of any engine related errors.
    """

    def __init__(self, message: str, **context: Any):
        """Initialize the exception with a message and optional context.

        Args:
            message: Error message describing what went wrong
            **context: Additional context information for logging and debugging
        """
        super().__init__(message)
        self.context: Dict[str, Any] = context

    def __str__(self) -> str:
        """Return string representation including context."""
        if self.context:
            ctx = ', '.join(f'{k}={v}' for k, v in self.context.items())
            return f"{super().__str__()} [{ctx}]"
        return super().__str__()


# ============================================================================
# Configuration Exceptions
# ============================================================================

class ConfigError(CandleEngineError):
    """Base class for configuration problems."""


class InvalidConfigError(ConfigError):
    """Raised when configuration contains invalid values.

    This exception is raised when configuration values fail validation,
    such as negative intervals or a coverage ratio outside 0..1.
    """


class MissingConfigError(ConfigError):
    """Raised when required configuration is missing.

    This exception is raised when mandatory configuration keys or sections
    are not found in the configuration file or environment variables.
    """


# ============================================================================
# Data Exceptions
# ============================================================================

class DataValidationError(CandleEngineError):
    """Raised when market data fails validation."""


class InvalidCandleError(DataValidationError):
    """Raised when a candle violates OHLC integrity.

    A candle is invalid when low > min(open, close), high < max(open, close),
    any price is non-positive, or volume is negative. Invalid candles are
    never written.
    """


class InvalidTickError(DataValidationError):
    """Raised when a tick cannot be constructed from its raw fields."""


class MessageValidationError(DataValidationError):
    """Raised when an inbound feed message has an unrecognized shape."""


class ClosedPeriodError(CandleEngineError):
    """Raised when an accumulate write targets a period that has closed.

    Closed periods accept only overwrite writes (healing or rebuild), so a
    late live tick can never clobber authoritative data.
    """


class UnknownResolutionError(CandleEngineError):
    """Raised when a resolution string is not part of the build chain."""


class UnknownInstrumentError(CandleEngineError):
    """Raised when an instrument is not present in the symbol catalog."""


# ============================================================================
# Provider Exceptions
# ============================================================================

class ProviderError(CandleEngineError):
    """Base class for historical provider failures."""


class TransientProviderError(ProviderError):
    """Raised on recoverable network failures (connection reset, DNS).

    Retried a bounded number of times with a fixed backoff.
    """


class ProviderTimeoutError(TransientProviderError):
    """Raised when a provider call exceeds its hard timeout."""


class RateLimitError(ProviderError):
    """Raised when a provider explicitly rejects a request as rate-limited.

    Never retried immediately. The orchestrator's circuit breaker counts it
    and imposes a cooldown.
    """


class UnsupportedInstrumentError(ProviderError):
    """Raised when no configured provider can serve an instrument."""


class CircuitOpenError(CandleEngineError):
    """Raised when a provider call is attempted while the breaker is open."""


# ============================================================================
# Storage Exceptions
# ============================================================================

class StorageError(CandleEngineError):
    """Raised when a persistence operation fails."""
