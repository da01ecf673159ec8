"""CLI entry point for the analysis engine."""

from __future__ import annotations

import asyncio
import importlib
import json
import sys
from pathlib import Path
from typing import Any, Optional

import click

from analysis_engine import __version__
from analysis_engine.config import EngineConfig, load_config
from analysis_engine.engine import JobManager, JobStatus, build_job_manager
from analysis_engine.engine.contracts import Analyzer
from analysis_engine.resilience import ConfigurationError, Window
from analysis_engine.scheduling import AsyncioScheduler
from analysis_engine.utils.logging import configure_logging, get_logger
from analysis_engine.utils.result import ExitCode

# Default paths
DEFAULT_CONFIG = "./config"
DEFAULT_STATE = "./state"

# Seconds between job status polls while driving a job
POLL_INTERVAL = 0.5


class Context:
    """CLI context for sharing state between commands."""

    def __init__(
        self,
        config_dir: Path,
        config: EngineConfig,
        log_level: str,
        log_format: str,
    ) -> None:
        self.config_dir = config_dir
        self.config = config
        self.log_level = log_level
        self.log_format = log_format
        self.logger = get_logger("cli")

    def build_manager(
        self,
        scheduler: AsyncioScheduler,
        with_analyzers: bool = False,
    ) -> JobManager:
        analyzers = load_analyzers(self.config) if with_analyzers else {}
        return build_job_manager(self.config, analyzers, scheduler)


pass_context = click.make_pass_decorator(Context)


def output_json(data: dict) -> None:
    """Output JSON to stdout."""
    click.echo(json.dumps(data, indent=2, default=str))


def load_analyzers(config: EngineConfig) -> dict[str, Analyzer]:
    """
    Instantiate the analyzers named in the `analyzers:` section.

    Each entry maps an entity class to a "package.module:factory" path; the
    factory is called without arguments.

    Raises:
        ConfigurationError: If an entry cannot be imported or called
    """
    analyzers: dict[str, Analyzer] = {}
    for entity_class, target in config.analyzers.items():
        module_name, _, attr = target.partition(":")
        if not module_name or not attr:
            raise ConfigurationError(
                f"Analyzer for {entity_class} must look like 'module:factory', got {target!r}"
            )
        try:
            factory = getattr(importlib.import_module(module_name), attr)
        except (ImportError, AttributeError) as e:
            raise ConfigurationError(f"Cannot import analyzer {target!r}: {e}") from e
        analyzers[entity_class] = factory()
    return analyzers


def _exit_code_for(status: JobStatus) -> int:
    if status is JobStatus.FAILED:
        return ExitCode.JOB_FAILED
    if status is JobStatus.CANCELLED:
        return ExitCode.JOB_CANCELLED
    return ExitCode.SUCCESS


async def _drive(manager: JobManager, scheduler: AsyncioScheduler) -> None:
    """Keep the hooks armed in this process until the job leaves running."""
    scheduler.schedule_once(manager.PROCESS_HOOK, 0)
    scheduler.schedule_recurring(
        manager.LIVENESS_HOOK,
        manager.config.batch.liveness_interval_seconds,
    )
    try:
        while manager.is_active():
            await asyncio.sleep(POLL_INTERVAL)
        await scheduler.wait_idle()
    finally:
        scheduler.close()


@click.group()
@click.option(
    "--config",
    type=click.Path(exists=False, path_type=Path),
    default=DEFAULT_CONFIG,
    help="Path to config directory",
)
@click.option(
    "--state-dir",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Directory for persisted engine state (overrides config)",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warn", "error"], case_sensitive=False),
    default=None,
    help="Logging level (overrides config)",
)
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"], case_sensitive=False),
    default=None,
    help="Log format (overrides config)",
)
@click.version_option(version=__version__)
@click.pass_context
def cli(
    ctx: click.Context,
    config: Path,
    state_dir: Optional[Path],
    log_level: Optional[str],
    log_format: Optional[str],
) -> None:
    """
    Analysis Engine - durable batch analysis over large entity sets.

    Starts, drives and inspects the single analysis job, and reports on the
    rate limiter and circuit breakers that protect the external API.
    """
    result = load_config(config)
    if result.is_err():
        configure_logging(level=log_level or "info", format_type=log_format or "json")
        output_json({
            "status": "error",
            "message": str(result.unwrap_err()),
        })
        sys.exit(ExitCode.CONFIG_INVALID)

    engine_config = result.unwrap()
    if state_dir is None and engine_config.storage.state_dir is None:
        state_dir = Path(DEFAULT_STATE)
    engine_config = engine_config.with_state_dir(state_dir)

    log_level = log_level or engine_config.logging.level
    log_format = log_format or engine_config.logging.format
    configure_logging(level=log_level, format_type=log_format)

    ctx.obj = Context(
        config_dir=config,
        config=engine_config,
        log_level=log_level,
        log_format=log_format,
    )


@cli.command()
@click.option(
    "--kind",
    default="all",
    help="Entity class to analyze, or 'all'",
)
@click.option(
    "--limit",
    type=int,
    default=None,
    help="Maximum entities per class (clamped to the configured maximum)",
)
@click.option(
    "--entity-limit",
    "entity_limits",
    multiple=True,
    help="Per-class limit as CLASS=N (can be repeated)",
)
@click.option(
    "--wait",
    is_flag=True,
    default=False,
    help="Drive the job in this process until it finishes",
)
@pass_context
def start(
    ctx: Context,
    kind: str,
    limit: Optional[int],
    entity_limits: tuple[str, ...],
    wait: bool,
) -> None:
    """Start a new analysis job."""
    options: dict[str, Any] = {}
    if limit is not None:
        options["limit"] = limit
    for entry in entity_limits:
        entity_class, sep, value = entry.partition("=")
        if not sep or not value.isdigit():
            raise click.BadParameter(f"Expected CLASS=N, got {entry!r}", param_hint="--entity-limit")
        options[f"{entity_class}_limit"] = int(value)

    try:
        scheduler = AsyncioScheduler()
        manager = ctx.build_manager(scheduler, with_analyzers=True)
    except ConfigurationError as e:
        ctx.logger.error("analyzer_load_failed", error=str(e))
        output_json({"status": "error", "message": str(e)})
        sys.exit(ExitCode.ANALYZER_IMPORT)

    async def run() -> Any:
        result = await manager.start_job(kind, options)
        if result.is_ok() and wait:
            await _drive(manager, scheduler)
        else:
            scheduler.close()
        return result

    result = asyncio.run(run())

    if result.is_err():
        error = result.unwrap_err()
        output_json({"status": "rejected", "error": error.to_dict()})
        sys.exit(ExitCode.JOB_REJECTED)

    if not wait:
        output_json({
            "status": "started",
            "job_id": result.unwrap(),
            "message": "Run 'analysis-engine run' to process the job",
        })
        return

    progress = manager.get_progress()
    output_json({"status": progress.status.value, "progress": progress.to_dict()})
    sys.exit(_exit_code_for(progress.status))


@cli.command()
@pass_context
def run(ctx: Context) -> None:
    """Drive the current job until it completes, fails or is cancelled."""
    try:
        scheduler = AsyncioScheduler()
        manager = ctx.build_manager(scheduler, with_analyzers=True)
    except ConfigurationError as e:
        ctx.logger.error("analyzer_load_failed", error=str(e))
        output_json({"status": "error", "message": str(e)})
        sys.exit(ExitCode.ANALYZER_IMPORT)

    if not manager.is_active():
        output_json({
            "status": "idle",
            "message": "No running job. Start one with 'analysis-engine start'.",
        })
        return

    asyncio.run(_drive(manager, scheduler))

    progress = manager.get_progress()
    output_json({"status": progress.status.value, "progress": progress.to_dict()})
    sys.exit(_exit_code_for(progress.status))


@cli.command()
@click.option("--history", is_flag=True, default=False, help="Include completed run history")
@pass_context
def status(ctx: Context, history: bool) -> None:
    """Show progress of the current job."""
    manager = ctx.build_manager(AsyncioScheduler())
    data: dict[str, Any] = manager.get_progress().to_dict()
    if history:
        data["history"] = [run.to_dict() for run in manager.history()]
    output_json(data)


@cli.command()
@pass_context
def cancel(ctx: Context) -> None:
    """Cancel the running job."""
    manager = ctx.build_manager(AsyncioScheduler())
    result = manager.cancel_job()

    if result.is_err():
        output_json({"status": "error", "error": result.unwrap_err().to_dict()})
        sys.exit(ExitCode.GENERAL_ERROR)

    output_json({"status": result.unwrap().value})


@cli.command()
@pass_context
def acknowledge(ctx: Context) -> None:
    """Clear a finished job so a new one can start."""
    manager = ctx.build_manager(AsyncioScheduler())
    output_json({"acknowledged": manager.acknowledge()})


@cli.command()
@pass_context
def reset(ctx: Context) -> None:
    """Delete the job record regardless of its state."""
    manager = ctx.build_manager(AsyncioScheduler())
    output_json({"reset": manager.reset()})


@cli.command()
@click.option(
    "--clear",
    type=click.Choice([w.value for w in Window], case_sensitive=False),
    default=None,
    help="Clear the current bucket of a window",
)
@pass_context
def limits(ctx: Context, clear: Optional[str]) -> None:
    """Show rate limiter windows and daily usage."""
    manager = ctx.build_manager(AsyncioScheduler())
    if clear:
        manager.rate_limiter.reset(Window(clear.lower()))

    data: dict[str, Any] = {
        name: window.to_dict()
        for name, window in manager.rate_limiter.get_status().items()
    }
    usage_today = getattr(manager.gate, "usage_today", None)
    if usage_today is not None:
        data["analyses_today"] = {
            "used": usage_today(),
            "limit": ctx.config.features.analyses_per_day,
        }
    output_json(data)


@cli.command()
@pass_context
def circuits(ctx: Context) -> None:
    """Show every tracked circuit."""
    manager = ctx.build_manager(AsyncioScheduler())
    output_json({"circuits": manager.circuit_breaker.stats()})


@cli.command("reset-circuit")
@click.argument("operation")
@pass_context
def reset_circuit(ctx: Context, operation: str) -> None:
    """Close the circuit of OPERATION (e.g. analyze.products)."""
    manager = ctx.build_manager(AsyncioScheduler())
    output_json({"operation": operation, "reset": manager.circuit_breaker.reset(operation)})


def main() -> None:
    """Main entry point."""
    try:
        cli()
    except Exception as e:
        logger = get_logger("cli")
        logger.error("cli_error", error=str(e))
        sys.exit(2)


if __name__ == "__main__":
    main()
