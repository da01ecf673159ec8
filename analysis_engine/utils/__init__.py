"""Utility modules for the analysis engine."""

from analysis_engine.utils.atomic import (
    AtomicWriteError,
    atomic_write_json,
)
from analysis_engine.utils.logging import (
    configure_logging,
    current_correlation_id,
    get_logger,
    log_batch_timing,
    set_hook,
    set_job_context,
)
from analysis_engine.utils.result import (
    ConfigError,
    Err,
    ExitCode,
    JobError,
    JobErrorCode,
    Ok,
    Result,
)

__all__ = [
    # Logging
    "configure_logging",
    "get_logger",
    "current_correlation_id",
    "set_job_context",
    "set_hook",
    "log_batch_timing",
    # Atomic writes
    "AtomicWriteError",
    "atomic_write_json",
    # Results
    "Ok",
    "Err",
    "Result",
    "JobError",
    "JobErrorCode",
    "ConfigError",
    "ExitCode",
]
