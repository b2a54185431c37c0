"""Run execution, quota enforcement and scheduling."""

from .enrichment import enrich_cited_domains
from .notifications import LoggingNotifier, Notifier, RunCompletion, WebhookNotifier
from .orchestrator import RunOrchestrator, RunOutcome, partition_prompts
from .quota import PromptUsage, QuotaDecision, QuotaGuard
from .scheduler import Scheduler
from .triggers import (
    RunTriggerResult,
    trigger_on_demand,
    trigger_scheduled,
    verify_cron_secret,
)

__all__ = [
    "LoggingNotifier",
    "Notifier",
    "PromptUsage",
    "QuotaDecision",
    "QuotaGuard",
    "RunCompletion",
    "RunOrchestrator",
    "RunOutcome",
    "RunTriggerResult",
    "Scheduler",
    "WebhookNotifier",
    "enrich_cited_domains",
    "partition_prompts",
    "trigger_on_demand",
    "trigger_scheduled",
    "verify_cron_secret",
]
