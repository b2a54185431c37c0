"""SQLite persistence for domains, configs, runs and results."""

from .records import (
    CitedDomain,
    Domain,
    PromptSet,
    RunStatus,
    Subscription,
    TrackingConfig,
    TrackingResult,
    TrackingRun,
)
from .store import TrackingStore

__all__ = [
    "CitedDomain",
    "Domain",
    "PromptSet",
    "RunStatus",
    "Subscription",
    "TrackingConfig",
    "TrackingResult",
    "TrackingRun",
    "TrackingStore",
]
