"""Durable batch analysis engine.

Drives long-running AI analysis runs over large entity sets through a
resumable job state machine, guarded by a sliding-window rate limiter and
per-operation circuit breakers.
"""

__version__ = "0.3.0"
