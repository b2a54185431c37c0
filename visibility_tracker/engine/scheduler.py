"""
Recurring execution of tracking configs.

A tick selects every recurring config whose next_run_at has passed (on_demand
configs are never due) and, per config:

1. Loads its domain and prompt set (skipped with a warning if missing)
2. Checks the owner's quota (denied: skipped, next_run_at untouched)
3. Creates a run and executes it
4. Re-arms next_run_at = now + interval for completed recurring runs
5. Emits a RunCompletion to the notifier

Ticks are driven by an APScheduler AsyncIOScheduler interval job
(run_forever) or by the scheduled trigger (engine.triggers).

Note:
    There is no per-config lock. Two overlapping ticks, or a tick racing an
    on-demand trigger, can run the same config twice.
"""

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from visibility_tracker.providers import Provider
from visibility_tracker.storage import (
    Domain,
    PromptSet,
    RunStatus,
    TrackingConfig,
    TrackingStore,
)
from visibility_tracker.utils.time import add_interval, utc_now

from .notifications import Notifier, RunCompletion, safe_notify
from .orchestrator import RunOrchestrator, RunOutcome
from .quota import QuotaGuard

logger = logging.getLogger(__name__)

TrialLookup = Callable[[str], bool]

TICK_JOB_ID = "tracking_tick"


def _paid_owner(owner_id: str) -> bool:
    return False


async def load_config_inputs(
    store: TrackingStore, config: TrackingConfig
) -> tuple[Domain, PromptSet] | None:
    """Return the config's domain and prompt set, or None if either is gone."""
    domain = await store.get_domain(config.domain_id)
    prompt_set = await store.get_prompt_set(config.prompt_set_id)
    if domain is None or prompt_set is None:
        logger.warning(
            f"Config {config.id} references a missing "
            f"{'domain' if domain is None else 'prompt set'}; skipping"
        )
        return None
    return domain, prompt_set


async def execute_config(
    store: TrackingStore,
    orchestrator: RunOrchestrator,
    notifier: Notifier,
    providers: Sequence[Provider],
    config: TrackingConfig,
    domain: Domain,
    prompt_set: PromptSet,
    now: datetime,
) -> RunOutcome:
    """
    Create and execute one run for a config, then reschedule and notify.

    Quota must already have been checked by the caller. If the caller cancels
    (e.g. an outer asyncio.timeout), this run, and only this run, is marked
    failed before the cancellation propagates.
    """
    run = await store.create_run(config.id, now)
    try:
        outcome = await orchestrator.execute(
            run, prompt_set.prompts, providers, domain, country=config.country
        )
    except asyncio.CancelledError:
        # Abandoned by the caller (deadline or shutdown); never left running
        logger.warning(f"Run {run.id} for config {config.id} was cancelled; marking failed")
        await store.finish_run(run.id, RunStatus.FAILED, utc_now())
        raise

    if outcome.status == RunStatus.COMPLETED and config.interval != "on_demand":
        next_run_at = add_interval(now, config.interval)
        await store.update_next_run_at(config.id, next_run_at)
        logger.info(f"Config {config.id} next run at {next_run_at.isoformat()}")

    await safe_notify(
        notifier,
        RunCompletion(
            run_id=run.id,
            config_id=config.id,
            owner_id=config.owner_id,
            domain_name=domain.name,
            prompt_count=len(prompt_set.prompts),
            status=str(outcome.status),
        ),
    )
    return outcome


class Scheduler:
    """
    Runs due tracking configs.

    Args:
        store: Tracking database
        orchestrator: Executes runs
        quota_guard: Prompt allowance checks
        notifier: Receives a RunCompletion per executed config
        providers: Providers every prompt is sent to
        is_trial: Owner directory lookup; owners are treated as paying by default
    """

    def __init__(
        self,
        store: TrackingStore,
        orchestrator: RunOrchestrator,
        quota_guard: QuotaGuard,
        notifier: Notifier,
        providers: Sequence[Provider],
        is_trial: TrialLookup | None = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.quota_guard = quota_guard
        self.notifier = notifier
        self.providers = list(providers)
        self.is_trial = is_trial or _paid_owner

    async def tick(self, now: datetime | None = None) -> int:
        """
        Execute every due config once.

        Returns:
            int: Number of configs for which a run was executed
        """
        now = now or utc_now()
        due = await self.store.list_due_configs(now)
        logger.info(f"Scheduler tick at {now.isoformat()}: {len(due)} due configs")

        processed = 0
        for config in due:
            try:
                if await self._process(config, now):
                    processed += 1
            except Exception as e:
                logger.error(f"Scheduled run for config {config.id} failed: {e}", exc_info=True)

        return processed

    async def _process(self, config: TrackingConfig, now: datetime) -> bool:
        inputs = await load_config_inputs(self.store, config)
        if inputs is None:
            return False
        domain, prompt_set = inputs

        decision = await self.quota_guard.check_quota(
            config.owner_id, self.is_trial(config.owner_id), len(prompt_set.prompts), now
        )
        if not decision.allowed:
            logger.warning(f"Skipping config {config.id}: {decision.reason}")
            return False

        # Failed runs count as processed too
        await execute_config(
            self.store,
            self.orchestrator,
            self.notifier,
            self.providers,
            config,
            domain,
            prompt_set,
            now,
        )
        return True

    def build_scheduler(self, poll_seconds: int = 60) -> AsyncIOScheduler:
        """
        Build an AsyncIOScheduler that ticks every poll_seconds.

        Returns a configured but not yet started scheduler. Overlapping ticks
        are coalesced into one.
        """
        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_job(
            self.tick,
            trigger="interval",
            seconds=poll_seconds,
            id=TICK_JOB_ID,
            name="Run due tracking configs",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=utc_now(),
        )
        return scheduler

    async def run_forever(
        self, poll_seconds: int = 60, stop_event: asyncio.Event | None = None
    ) -> None:
        """Tick every poll_seconds until stop_event is set (or forever)."""
        stop_event = stop_event or asyncio.Event()
        scheduler = self.build_scheduler(poll_seconds)
        scheduler.start()
        logger.info(f"Scheduler started, polling every {poll_seconds}s")
        try:
            await stop_event.wait()
        finally:
            scheduler.shutdown(wait=False)
            await self.orchestrator.drain_background_tasks()
            logger.info("Scheduler stopped")
