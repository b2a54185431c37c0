"""
Typed records for tracking data.

Rows are converted to these dataclasses at the storage boundary so the
engine works with datetimes and lists instead of ISO strings and JSON.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class RunStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset([RunStatus.COMPLETED, RunStatus.FAILED])


@dataclass
class Domain:
    """A tracked brand/domain. name is the brand name used for matching."""

    id: int
    owner_id: str
    name: str
    domain_url: str
    created_at: datetime | None = None


@dataclass
class PromptSet:
    id: int
    owner_id: str
    name: str
    prompts: list[str]
    created_at: datetime | None = None


@dataclass
class TrackingConfig:
    """
    Ties a domain to a prompt set with a recurrence.

    next_run_at is only meaningful for daily/weekly/monthly configs.
    """

    id: int
    owner_id: str
    domain_id: int
    prompt_set_id: int
    interval: str
    next_run_at: datetime | None = None
    country: str | None = None
    created_at: datetime | None = None


@dataclass
class TrackingRun:
    id: int
    config_id: int
    status: RunStatus
    started_at: datetime
    completed_at: datetime | None = None


@dataclass
class TrackingResult:
    """
    One (prompt, provider) answer of a run. Append-only.

    Failed calls are stored with an "Error: " response and zero scores.
    """

    run_id: int
    provider: str
    prompt: str
    response: str
    mention_count: int = 0
    visibility_score: int = 0
    citations: list[str] = field(default_factory=list)
    sentiment: str | None = None
    sentiment_score: int | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class Subscription:
    owner_id: str
    plan: str
    current_period_start: datetime
    current_period_end: datetime
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class CitedDomain:
    hostname: str
    first_seen_at: datetime
    last_seen_at: datetime
    citation_count: int
