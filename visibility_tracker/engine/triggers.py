"""
Entry points that start runs.

- trigger_on_demand: a user asks for an immediate run of one config
- trigger_scheduled: the cron caller asks for one scheduler tick, guarded by
  a bearer secret
"""

import hmac
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime

from visibility_tracker.exceptions import (
    ConfigNotFoundError,
    QuotaExceededError,
    UnauthorizedTriggerError,
)
from visibility_tracker.providers import ALL_PROVIDERS, Provider
from visibility_tracker.storage import RunStatus, TrackingStore
from visibility_tracker.utils.time import utc_now

from .notifications import Notifier
from .orchestrator import RunOrchestrator
from .quota import QuotaGuard
from .scheduler import Scheduler, execute_config, load_config_inputs

logger = logging.getLogger(__name__)


@dataclass
class RunTriggerResult:
    run_id: int
    status: RunStatus
    results_written: int = 0
    errors: int = 0


async def trigger_on_demand(
    store: TrackingStore,
    orchestrator: RunOrchestrator,
    quota_guard: QuotaGuard,
    notifier: Notifier,
    owner_id: str,
    is_trial: bool,
    config_id: int | None = None,
    providers: Sequence[Provider] = ALL_PROVIDERS,
) -> RunTriggerResult:
    """
    Run a config now and wait for it to finish.

    Args:
        owner_id: Requesting owner; the config must belong to them
        is_trial: Whether the owner is on a trial
        config_id: Config to run; defaults to the owner's first config
        providers: Providers to query

    Raises:
        ConfigNotFoundError: If no config (or its domain/prompt set) resolves
        QuotaExceededError: If the owner's allowance cannot cover the prompts
    """
    if config_id is not None:
        config = await store.get_tracking_config(config_id)
        if config is not None and config.owner_id != owner_id:
            logger.warning(f"Owner {owner_id} requested config {config_id} of another owner")
            config = None
    else:
        config = await store.get_first_config_for_owner(owner_id)

    if config is None:
        raise ConfigNotFoundError(
            f"Tracking config {config_id} not found"
            if config_id is not None
            else f"No tracking config found for owner {owner_id}"
        )

    inputs = await load_config_inputs(store, config)
    if inputs is None:
        raise ConfigNotFoundError(f"Tracking config {config.id} has no domain or prompt set")
    domain, prompt_set = inputs

    now = utc_now()
    decision = await quota_guard.check_quota(owner_id, is_trial, len(prompt_set.prompts), now)
    if not decision.allowed:
        raise QuotaExceededError(decision)

    outcome = await execute_config(
        store, orchestrator, notifier, providers, config, domain, prompt_set, now
    )
    return RunTriggerResult(
        run_id=outcome.run_id,
        status=outcome.status,
        results_written=outcome.results_written,
        errors=outcome.errors,
    )


def verify_cron_secret(authorization_header: str | None, secret: str | None) -> bool:
    """
    Check an Authorization header against "Bearer <secret>" in constant time.

    A missing or empty secret never authorizes.
    """
    if not secret or not authorization_header:
        return False
    return hmac.compare_digest(
        authorization_header.encode("utf-8"), f"Bearer {secret}".encode("utf-8")
    )


async def trigger_scheduled(
    scheduler: Scheduler,
    authorization_header: str | None,
    secret: str | None,
    now: datetime | None = None,
) -> dict:
    """
    Run one scheduler tick for an authorized caller.

    Returns:
        {"processed": <configs executed>}

    Raises:
        UnauthorizedTriggerError: If the bearer credential does not match
    """
    if not verify_cron_secret(authorization_header, secret):
        raise UnauthorizedTriggerError("Invalid or missing scheduled-trigger credentials")

    processed = await scheduler.tick(now)
    return {"processed": processed}
