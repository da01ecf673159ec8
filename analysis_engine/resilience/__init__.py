"""Fault handling: error taxonomy, rate limiting and circuit breaking."""

from analysis_engine.resilience.errors import (
    CacheError,
    ConfigurationError,
    DownstreamError,
    EngineError,
    ErrorCategory,
    ErrorInfo,
    MessageCatalog,
    StoreError,
    categorize_error,
    describe_error,
)
from analysis_engine.resilience.circuit import (
    CircuitBreaker,
    CircuitRecord,
    CircuitState,
    ExecutionResult,
    ResultSource,
)
from analysis_engine.resilience.ratelimit import RateDecision, RateLimiter, Window, WindowStatus

__all__ = [
    # Errors
    "ErrorCategory",
    "ErrorInfo",
    "EngineError",
    "StoreError",
    "CacheError",
    "DownstreamError",
    "ConfigurationError",
    "MessageCatalog",
    "categorize_error",
    "describe_error",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitRecord",
    "CircuitState",
    "ExecutionResult",
    "ResultSource",
    # Rate limiter
    "RateLimiter",
    "RateDecision",
    "Window",
    "WindowStatus",
]
