"""Error taxonomy shared by the circuit breaker and operator reporting.

Every fault that reaches an operator is first mapped to an ErrorCategory,
then rendered as an ErrorInfo with a stable code and a message taken from
a MessageCatalog. The catalog's English defaults can be overridden per
deployment (the `messages:` configuration section) for localization.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional


class ErrorCategory(Enum):
    """Categories of failure, used to pick fallbacks and messages."""

    STORAGE = "storage"
    CACHE = "cache"
    RESOURCE_EXHAUSTION = "resource-exhaustion"
    TIMEOUT = "timeout"
    DOWNSTREAM = "downstream-domain-error"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


class EngineError(Exception):
    """Base class for faults raised by engine components."""

    category = ErrorCategory.UNKNOWN


class StoreError(EngineError):
    """The durable key-value store could not be read or written."""

    category = ErrorCategory.STORAGE


class CacheError(EngineError):
    """A cache layer failed."""

    category = ErrorCategory.CACHE


class DownstreamError(EngineError):
    """The embedding e-commerce system reported an error."""

    category = ErrorCategory.DOWNSTREAM


class ConfigurationError(EngineError):
    """The engine or a collaborator is misconfigured."""

    category = ErrorCategory.CONFIGURATION


CIRCUIT_OPEN_CODE = "CIRCUIT_BREAKER_OPEN"

ERROR_CODES: dict[ErrorCategory, str] = {
    ErrorCategory.STORAGE: "DATABASE_CONNECTION_FAILED",
    ErrorCategory.CACHE: "CACHE_OPERATION_FAILED",
    ErrorCategory.RESOURCE_EXHAUSTION: "MEMORY_LIMIT_EXCEEDED",
    ErrorCategory.TIMEOUT: "OPERATION_TIMEOUT",
    ErrorCategory.DOWNSTREAM: "DOWNSTREAM_ERROR",
    ErrorCategory.VALIDATION: "INVALID_INPUT",
    ErrorCategory.CONFIGURATION: "CONFIGURATION_ERROR",
    ErrorCategory.UNKNOWN: "INTERNAL_ERROR",
}

# Keyword fallbacks for faults raised by code that does not use the
# EngineError hierarchy. Checked in order; first match wins.
_MESSAGE_KEYWORDS: list[tuple[ErrorCategory, tuple[str, ...]]] = [
    (ErrorCategory.STORAGE, ("database", "mysql", "sqlite", "connection", "storage")),
    (ErrorCategory.CACHE, ("cache", "transient")),
    (ErrorCategory.RESOURCE_EXHAUSTION, ("memory", "out of resources")),
    (ErrorCategory.TIMEOUT, ("timeout", "timed out", "time limit", "execution time")),
    (ErrorCategory.DOWNSTREAM, ("woocommerce", "wc_", "shop", "store api")),
    (ErrorCategory.CONFIGURATION, ("config", "setting")),
]


def categorize_error(error: BaseException) -> ErrorCategory:
    """
    Map an exception to an error category.

    Exception types are consulted first; message keywords only decide for
    exceptions that carry no type information of their own.

    Args:
        error: The exception raised by a primary operation

    Returns:
        The matching ErrorCategory (UNKNOWN when nothing matches)
    """
    if isinstance(error, EngineError):
        return error.category
    if isinstance(error, MemoryError):
        return ErrorCategory.RESOURCE_EXHAUSTION
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return ErrorCategory.TIMEOUT

    message = str(error).lower()
    for category, keywords in _MESSAGE_KEYWORDS:
        if any(keyword in message for keyword in keywords):
            return category

    if isinstance(error, (ValueError, TypeError)):
        return ErrorCategory.VALIDATION

    return ErrorCategory.UNKNOWN


@dataclass(frozen=True)
class Message:
    """Operator-facing wording for one error code."""

    message: str
    details: str


DEFAULT_MESSAGES: dict[str, Message] = {
    "DATABASE_CONNECTION_FAILED": Message(
        "Could not reach the database",
        "Stored data could not be read or written. Cached data is used where available.",
    ),
    "CACHE_OPERATION_FAILED": Message(
        "Cache failure",
        "The cache layer failed. Data is read directly from the primary source.",
    ),
    "MEMORY_LIMIT_EXCEEDED": Message(
        "Not enough memory",
        "The system ran short of memory. Try a smaller request or try again later.",
    ),
    "OPERATION_TIMEOUT": Message(
        "Operation timed out",
        "The operation took too long and was stopped. Please try again later.",
    ),
    "DOWNSTREAM_ERROR": Message(
        "Shop system error",
        "The shop system reported an error while loading data. Please try again later.",
    ),
    "INVALID_INPUT": Message(
        "Invalid input",
        "The submitted parameters are not valid. Please check them and retry.",
    ),
    "CONFIGURATION_ERROR": Message(
        "Configuration error",
        "The engine settings are not valid. Please contact the site administrator.",
    ),
    "INTERNAL_ERROR": Message(
        "Internal error",
        "An unexpected problem occurred. Please try again later.",
    ),
    CIRCUIT_OPEN_CODE: Message(
        "Service protection is active",
        "Repeated failures put this operation on hold. Please try again later.",
    ),
}


class MessageCatalog:
    """Lookup of operator messages by error code, with overrides."""

    def __init__(self, overrides: Optional[Mapping[str, Mapping[str, str]]] = None) -> None:
        self._messages = dict(DEFAULT_MESSAGES)
        for code, entry in (overrides or {}).items():
            base = self._messages.get(code, DEFAULT_MESSAGES["INTERNAL_ERROR"])
            self._messages[code] = Message(
                message=entry.get("message", base.message),
                details=entry.get("details", base.details),
            )

    def lookup(self, code: str) -> Message:
        return self._messages.get(code, self._messages["INTERNAL_ERROR"])


@dataclass(frozen=True)
class ErrorInfo:
    """Structured, categorized error suitable for operators."""

    code: str
    message: str
    details: str
    category: ErrorCategory
    operation: str
    timestamp: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "category": self.category.value,
            "operation": self.operation,
            "timestamp": self.timestamp,
        }


def describe_error(
    error: BaseException,
    operation: str,
    timestamp: float,
    catalog: Optional[MessageCatalog] = None,
    category: Optional[ErrorCategory] = None,
) -> ErrorInfo:
    """
    Build the operator-facing description of a fault.

    Validation errors keep the exception's own text as details since it
    usually names the offending parameter.
    """
    catalog = catalog or MessageCatalog()
    category = category or categorize_error(error)
    code = ERROR_CODES[category]
    wording = catalog.lookup(code)

    details = wording.details
    if category is ErrorCategory.VALIDATION and str(error):
        details = str(error)

    return ErrorInfo(
        code=code,
        message=wording.message,
        details=details,
        category=category,
        operation=operation,
        timestamp=timestamp,
    )


def circuit_open_error(
    operation: str,
    timestamp: float,
    catalog: Optional[MessageCatalog] = None,
) -> ErrorInfo:
    """The error returned when a circuit refuses to call its primary."""
    wording = (catalog or MessageCatalog()).lookup(CIRCUIT_OPEN_CODE)
    return ErrorInfo(
        code=CIRCUIT_OPEN_CODE,
        message=wording.message,
        details=wording.details,
        category=ErrorCategory.UNKNOWN,
        operation=operation,
        timestamp=timestamp,
    )
