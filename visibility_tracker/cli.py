"""
CLI entrypoint for the visibility tracker.

Dual-mode output:
- Human (--format text): rich spinners, tables and panels
- Agent (--format json): one JSON document on stdout
- Quiet (--quiet): tab-separated values for scripts

Commands:
    init-db: Create or migrate the tracking database
    add-config: Register a domain, its prompts and a recurrence
    run: Execute one config now (on-demand trigger)
    tick: Execute every due config once (scheduled trigger)
    scheduler: Keep ticking on an interval until interrupted
    usage: Show an owner's prompt quota usage
    show-run: Show the results of a run

Exit codes:
    0: Success
    1: Configuration error (invalid YAML, missing API keys, unknown config,
       bad trigger credentials)
    2: Database error
    3: Partial failure (run completed but some provider calls failed)
    4: Complete failure (run failed)
    5: Quota denied

Examples:
    visibility-tracker add-config -c tracker.config.yaml --owner acme \\
        --domain-url interhyp.de --brand Interhyp --prompt "Best mortgage broker?" \\
        --interval weekly
    visibility-tracker run -c tracker.config.yaml --owner acme --format json
"""

import asyncio
import logging
import os
import sqlite3
from pathlib import Path

import typer
from rich.traceback import install as install_rich_traceback

from visibility_tracker.config import RuntimeConfig, load_config, load_settings
from visibility_tracker.config.constants import ERROR_RESPONSE_PREFIX, INTERVALS
from visibility_tracker.engine import (
    QuotaGuard,
    RunOrchestrator,
    Scheduler,
    enrich_cited_domains,
    trigger_on_demand,
    trigger_scheduled,
)
from visibility_tracker.engine.notifications import build_notifier
from visibility_tracker.exceptions import (
    ConfigNotFoundError,
    ConfigurationError,
    DatabaseError,
    QuotaExceededError,
    UnauthorizedTriggerError,
)
from visibility_tracker.providers import Provider, build_adapters
from visibility_tracker.storage import RunStatus, TrackingStore
from visibility_tracker.utils.console import (
    error,
    info,
    output_mode,
    print_results_table,
    print_run_summary,
    print_usage,
    spinner,
    success,
    warning,
)
from visibility_tracker.utils.logging import setup_logging
from visibility_tracker.utils.time import format_timestamp, utc_now

install_rich_traceback(show_locals=False)

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_CONFIG_ERROR = 1
EXIT_DB_ERROR = 2
EXIT_PARTIAL_FAILURE = 3
EXIT_COMPLETE_FAILURE = 4
EXIT_QUOTA_DENIED = 5

app = typer.Typer(
    name="visibility-tracker",
    help="Track how often AI assistants mention and cite your brand",
    add_completion=False,
)

CONFIG_OPTION = typer.Option(
    ...,
    "--config",
    "-c",
    help="Path to YAML configuration file",
    exists=True,
    file_okay=True,
    dir_okay=False,
)
FORMAT_OPTION = typer.Option(
    "text",
    "--format",
    "-f",
    help="Output format: 'text' (human-friendly) or 'json' (machine-readable)",
)
QUIET_OPTION = typer.Option(False, "--quiet", "-q", help="Minimal output (tab-separated values)")
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Enable debug logging")


def _configure_output(format: str, quiet: bool, verbose: bool) -> None:
    if format not in ("text", "json"):
        error(f"Invalid format: {format}. Must be 'text' or 'json'")
        raise typer.Exit(EXIT_CONFIG_ERROR)
    output_mode.format = format
    output_mode.quiet = quiet
    # JSON log lines would interleave with rich output in human mode
    setup_logging(verbose=verbose, quiet_logs=output_mode.is_human())


def _fail(message: str, code: int) -> typer.Exit:
    error(message)
    output_mode.flush_json()
    return typer.Exit(code)


def _load(config: Path, with_keys: bool):
    try:
        with spinner("Loading configuration..."):
            return load_config(config) if with_keys else load_settings(config)
    except ConfigurationError as e:
        raise _fail(f"Configuration error: {e}", EXIT_CONFIG_ERROR) from e


def _open_store(database_path: str) -> TrackingStore:
    store = TrackingStore(database_path)
    try:
        with spinner("Initializing database..."):
            store.initialize()
    except DatabaseError as e:
        raise _fail(str(e), EXIT_DB_ERROR) from e
    return store


def build_engine(runtime_config: RuntimeConfig, store: TrackingStore):
    """
    Wire orchestrator, quota guard, notifier and provider list from config.

    Returns:
        (orchestrator, quota_guard, notifier, providers)
    """
    orchestrator = RunOrchestrator(
        store,
        build_adapters(runtime_config.providers),
        batch_size=runtime_config.engine.batch_size,
        call_timeout=runtime_config.engine.call_timeout_seconds,
        enrichment=enrich_cited_domains,
        adapter_factory=lambda country: build_adapters(runtime_config.providers, country=country),
    )
    quota_guard = QuotaGuard(store, runtime_config.quota)
    notifier = build_notifier(runtime_config.notifications)
    providers = [Provider(entry.provider) for entry in runtime_config.providers]
    return orchestrator, quota_guard, notifier, providers


def _result_rows(results) -> list[dict]:
    return [
        {
            "prompt": result.prompt,
            "provider": result.provider,
            "mention_count": result.mention_count,
            "visibility_score": result.visibility_score,
            "citations": result.citations,
            "response": result.response,
        }
        for result in results
    ]


def _average_score(results) -> float:
    if not results:
        return 0.0
    return sum(result.visibility_score for result in results) / len(results)


@app.command("init-db")
def init_db(
    config: Path = CONFIG_OPTION,
    format: str = FORMAT_OPTION,
    quiet: bool = QUIET_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """Create the tracking database or migrate it to the current schema."""
    _configure_output(format, quiet, verbose)
    settings = _load(config, with_keys=False)
    _open_store(settings.database_path)

    success(f"Database ready: {settings.database_path}")
    output_mode.add_json("database_path", settings.database_path)
    output_mode.flush_json()
    raise typer.Exit(EXIT_SUCCESS)


@app.command("add-config")
def add_config(
    config: Path = CONFIG_OPTION,
    owner: str = typer.Option(..., "--owner", help="Owner id"),
    domain_url: str = typer.Option(..., "--domain-url", help="Tracked domain, e.g. interhyp.de"),
    brand: str = typer.Option(..., "--brand", help="Brand name used for mention matching"),
    prompt: list[str] = typer.Option(None, "--prompt", "-p", help="Prompt (repeatable)"),
    prompts_file: Path | None = typer.Option(
        None, "--prompts-file", help="File with one prompt per line", exists=True, dir_okay=False
    ),
    interval: str = typer.Option("on_demand", "--interval", help=f"One of: {', '.join(INTERVALS)}"),
    country: str | None = typer.Option(None, "--country", help="Localize answers, e.g. DE"),
    format: str = FORMAT_OPTION,
    quiet: bool = QUIET_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """
    Register a domain, a prompt set and a tracking config.

    Recurring configs are due immediately and picked up by the next tick.
    """
    _configure_output(format, quiet, verbose)
    settings = _load(config, with_keys=False)
    store = _open_store(settings.database_path)

    prompts = list(prompt or [])
    if prompts_file is not None:
        prompts.extend(
            line.strip()
            for line in prompts_file.read_text(encoding="utf-8").splitlines()
            if line.strip()
        )
    if not prompts:
        raise _fail("At least one --prompt or a --prompts-file is required", EXIT_CONFIG_ERROR)

    async def _create():
        domain = await store.add_domain(owner, brand, domain_url)
        prompt_set = await store.add_prompt_set(owner, f"{brand} prompts", prompts)
        next_run_at = None if interval == "on_demand" else utc_now()
        return await store.add_tracking_config(
            owner, domain.id, prompt_set.id, interval, next_run_at, country
        )

    try:
        tracking_config = asyncio.run(_create())
    except ValueError as e:
        raise _fail(str(e), EXIT_CONFIG_ERROR) from e
    except (sqlite3.Error, DatabaseError) as e:
        raise _fail(f"Database error: {e}", EXIT_DB_ERROR) from e

    success(
        f"Created config {tracking_config.id}: {len(prompts)} prompts, {interval}"
        + (f", country {tracking_config.country}" if tracking_config.country else "")
    )
    if output_mode.quiet and not output_mode.is_agent():
        print(tracking_config.id)
    output_mode.add_json("config_id", tracking_config.id)
    output_mode.add_json("prompt_count", len(prompts))
    output_mode.add_json("interval", interval)
    output_mode.flush_json()
    raise typer.Exit(EXIT_SUCCESS)


@app.command()
def run(
    config: Path = CONFIG_OPTION,
    owner: str = typer.Option(..., "--owner", help="Owner id"),
    config_id: int | None = typer.Option(
        None, "--config-id", help="Tracking config to run (default: the owner's first)"
    ),
    trial: bool = typer.Option(False, "--trial", help="Apply the trial allowance"),
    max_duration: float | None = typer.Option(
        None, "--max-duration", help="Wall-clock ceiling in seconds (default from config)"
    ),
    format: str = FORMAT_OPTION,
    quiet: bool = QUIET_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """
    Execute one tracking config now and wait for the results.

    Exit codes: 0 success, 1 config error, 2 database error,
    3 some provider calls failed, 4 run failed, 5 quota denied.
    """
    _configure_output(format, quiet, verbose)
    runtime_config = _load(config, with_keys=True)
    store = _open_store(runtime_config.database_path)
    orchestrator, quota_guard, notifier, providers = build_engine(runtime_config, store)
    deadline = max_duration or runtime_config.engine.max_run_seconds

    async def _run():
        # On timeout the trigger marks its own run failed
        async with asyncio.timeout(deadline):
            result = await trigger_on_demand(
                store,
                orchestrator,
                quota_guard,
                notifier,
                owner,
                trial,
                config_id=config_id,
                providers=providers,
            )
        await orchestrator.drain_background_tasks()
        return result, await store.list_results(result.run_id)

    try:
        with spinner(f"Querying {len(providers)} providers..."):
            result, results = asyncio.run(_run())
    except QuotaExceededError as e:
        output_mode.add_json("usage", _usage_dict(e.decision.usage))
        raise _fail(str(e), EXIT_QUOTA_DENIED) from e
    except ConfigNotFoundError as e:
        raise _fail(str(e), EXIT_CONFIG_ERROR) from e
    except TimeoutError as e:
        raise _fail(f"Run exceeded {deadline:g}s and was marked failed", EXIT_COMPLETE_FAILURE) from e
    except (sqlite3.Error, DatabaseError) as e:
        raise _fail(f"Database error: {e}", EXIT_DB_ERROR) from e

    print_results_table(_result_rows(results))
    print_run_summary(
        result.run_id, str(result.status), result.results_written, result.errors, _average_score(results)
    )

    if result.status == RunStatus.FAILED:
        raise typer.Exit(EXIT_COMPLETE_FAILURE)
    if result.errors > 0:
        raise typer.Exit(EXIT_PARTIAL_FAILURE)
    raise typer.Exit(EXIT_SUCCESS)


def _build_scheduler(runtime_config: RuntimeConfig, store: TrackingStore) -> Scheduler:
    orchestrator, quota_guard, notifier, providers = build_engine(runtime_config, store)
    return Scheduler(store, orchestrator, quota_guard, notifier, providers)


@app.command()
def tick(
    config: Path = CONFIG_OPTION,
    token: str | None = typer.Option(
        None,
        "--token",
        envvar="TRACKER_TRIGGER_TOKEN",
        help="Bearer token presented by the caller",
    ),
    format: str = FORMAT_OPTION,
    quiet: bool = QUIET_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """
    Execute every due tracking config once (the scheduled trigger).

    The token must match the secret in the environment variable named by
    scheduler.cron_secret_env (CRON_SECRET by default).
    """
    _configure_output(format, quiet, verbose)
    runtime_config = _load(config, with_keys=True)
    store = _open_store(runtime_config.database_path)
    scheduler = _build_scheduler(runtime_config, store)
    secret = os.environ.get(runtime_config.scheduler.cron_secret_env)

    async def _tick():
        response = await trigger_scheduled(
            scheduler, f"Bearer {token}" if token else None, secret
        )
        await scheduler.orchestrator.drain_background_tasks()
        return response

    try:
        with spinner("Running due configs..."):
            response = asyncio.run(_tick())
    except UnauthorizedTriggerError as e:
        raise _fail(str(e), EXIT_CONFIG_ERROR) from e
    except (sqlite3.Error, DatabaseError) as e:
        raise _fail(f"Database error: {e}", EXIT_DB_ERROR) from e

    success(f"Processed {response['processed']} configs")
    if output_mode.quiet and not output_mode.is_agent():
        print(response["processed"])
    output_mode.add_json("processed", response["processed"])
    output_mode.flush_json()
    raise typer.Exit(EXIT_SUCCESS)


@app.command("scheduler")
def scheduler_command(
    config: Path = CONFIG_OPTION,
    poll_seconds: int | None = typer.Option(
        None, "--poll-seconds", help="Seconds between ticks (default from config)"
    ),
    verbose: bool = VERBOSE_OPTION,
):
    """Run the scheduler daemon until interrupted (Ctrl+C)."""
    _configure_output("text", False, verbose)
    runtime_config = _load(config, with_keys=True)
    store = _open_store(runtime_config.database_path)
    scheduler = _build_scheduler(runtime_config, store)
    interval = poll_seconds or runtime_config.scheduler.poll_seconds

    info(f"Scheduler polling every {interval}s. Press Ctrl+C to stop.")
    try:
        asyncio.run(scheduler.run_forever(interval))
    except KeyboardInterrupt:
        warning("Scheduler stopped")
    raise typer.Exit(EXIT_SUCCESS)


def _usage_dict(usage) -> dict:
    return {
        "used": usage.used,
        "limit": usage.limit,
        "remaining": usage.remaining,
        "period_start": format_timestamp(usage.period_start),
        "period_end": format_timestamp(usage.period_end),
    }


@app.command()
def usage(
    config: Path = CONFIG_OPTION,
    owner: str = typer.Option(..., "--owner", help="Owner id"),
    trial: bool = typer.Option(False, "--trial", help="Apply the trial allowance"),
    format: str = FORMAT_OPTION,
    quiet: bool = QUIET_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """Show how many prompts an owner has used in the current period."""
    _configure_output(format, quiet, verbose)
    settings = _load(config, with_keys=False)
    store = _open_store(settings.database_path)
    guard = QuotaGuard(store, settings.quota)

    try:
        prompt_usage = asyncio.run(guard.get_usage(owner, trial))
    except (sqlite3.Error, DatabaseError) as e:
        raise _fail(f"Database error: {e}", EXIT_DB_ERROR) from e

    print_usage(_usage_dict(prompt_usage))
    raise typer.Exit(EXIT_SUCCESS)


@app.command("show-run")
def show_run(
    config: Path = CONFIG_OPTION,
    run_id: int = typer.Option(..., "--run-id", help="Run to show"),
    format: str = FORMAT_OPTION,
    quiet: bool = QUIET_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """Show the stored results of a run."""
    _configure_output(format, quiet, verbose)
    settings = _load(config, with_keys=False)
    store = _open_store(settings.database_path)

    async def _fetch():
        return await store.get_run(run_id), await store.list_results(run_id)

    try:
        tracking_run, results = asyncio.run(_fetch())
    except (sqlite3.Error, DatabaseError) as e:
        raise _fail(f"Database error: {e}", EXIT_DB_ERROR) from e

    if tracking_run is None:
        raise _fail(f"Run {run_id} not found", EXIT_CONFIG_ERROR)

    errors = sum(1 for result in results if result.response.startswith(ERROR_RESPONSE_PREFIX))
    print_results_table(_result_rows(results))
    print_run_summary(
        tracking_run.id, str(tracking_run.status), len(results), errors, _average_score(results)
    )
    raise typer.Exit(EXIT_SUCCESS)


def main():
    app()


if __name__ == "__main__":
    main()
