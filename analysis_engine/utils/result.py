"""Result type for the engine's public boundary.

Starting and cancelling jobs and loading configuration return Ok or Err
instead of raising, so callers (the CLI, an embedding application) have to
look at the outcome before using it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, NoReturn, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


class ResultError(Exception):
    """Raised when the wrong side of a Result is unwrapped."""

    pass


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_err(self) -> NoReturn:
        raise ResultError(f"Expected an error, got Ok({self.value!r})")


@dataclass(frozen=True)
class Err(Generic[E]):
    """Failed outcome carrying a structured error."""

    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> NoReturn:
        raise ResultError(f"Expected a value, got Err({self.error})")

    def unwrap_err(self) -> E:
        return self.error


Result = Union[Ok[T], Err[E]]


@dataclass(frozen=True)
class JobError:
    """Why a job operation (start, cancel) was refused."""

    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        if self.details:
            extras = ", ".join(f"{k}={v}" for k, v in sorted(self.details.items()))
            return f"[{self.code}] {self.message} ({extras})"
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": dict(self.details),
        }


@dataclass(frozen=True)
class ConfigError:
    """A configuration value or file that could not be used."""

    field: str
    message: str

    def __str__(self) -> str:
        return f"Config error in '{self.field}': {self.message}"


class JobErrorCode:
    """Codes surfaced to callers of start_job / cancel_job."""

    JOB_ALREADY_RUNNING = "JOB_ALREADY_RUNNING"
    NO_JOB_RUNNING = "NO_JOB_RUNNING"
    MODULE_DISABLED = "MODULE_DISABLED"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    NO_WORK_FOUND = "NO_WORK_FOUND"
    INVALID_KIND = "INVALID_KIND"
    ENTITY_LISTING_FAILED = "ENTITY_LISTING_FAILED"
    STORAGE_FAILURE = "STORAGE_FAILURE"


class ExitCode:
    """Exit codes for CLI."""

    SUCCESS = 0
    GENERAL_ERROR = 1

    # Configuration errors (10-19)
    CONFIG_INVALID = 10
    ANALYZER_IMPORT = 11

    # Job errors (20-29)
    JOB_REJECTED = 20
    JOB_FAILED = 21
    JOB_CANCELLED = 22
