"""
Async facade over storage.db.

Every call opens a short-lived connection in a worker thread
(asyncio.to_thread), so the event loop never blocks on SQLite and no
connection is shared between concurrent coroutines.
"""

import asyncio
import logging
import sqlite3
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import TypeVar

from visibility_tracker.exceptions import DatabaseInitError

from . import db
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

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TrackingStore:
    """
    Connection-per-call access to the tracking database.

    Example:
        >>> store = TrackingStore("./data/tracker.db")
        >>> store.initialize()
        >>> run = await store.create_run(config.id, utc_now())
    """

    def __init__(self, db_path: str):
        self.db_path = str(db_path)

    def initialize(self) -> None:
        """
        Create or migrate the schema.

        Raises:
            DatabaseInitError: If the database cannot be created or migrated
        """
        try:
            db.init_db_if_needed(self.db_path)
        except (sqlite3.Error, OSError, ValueError) as e:
            raise DatabaseInitError(f"Failed to initialize database {self.db_path}: {e}") from e

    def run_sync(self, fn: Callable[..., T], *args) -> T:
        with db.connect(self.db_path) as conn:
            return fn(conn, *args)

    async def _call(self, fn: Callable[..., T], *args) -> T:
        return await asyncio.to_thread(self.run_sync, fn, *args)

    async def add_domain(self, owner_id: str, name: str, domain_url: str) -> Domain:
        return await self._call(db.insert_domain, owner_id, name, domain_url)

    async def get_domain(self, domain_id: int) -> Domain | None:
        return await self._call(db.get_domain, domain_id)

    async def add_prompt_set(self, owner_id: str, name: str, prompts: list[str]) -> PromptSet:
        return await self._call(db.insert_prompt_set, owner_id, name, prompts)

    async def get_prompt_set(self, prompt_set_id: int) -> PromptSet | None:
        return await self._call(db.get_prompt_set, prompt_set_id)

    async def add_tracking_config(
        self,
        owner_id: str,
        domain_id: int,
        prompt_set_id: int,
        interval: str,
        next_run_at: datetime | None = None,
        country: str | None = None,
    ) -> TrackingConfig:
        return await self._call(
            db.insert_tracking_config,
            owner_id,
            domain_id,
            prompt_set_id,
            interval,
            next_run_at,
            country,
        )

    async def get_tracking_config(self, config_id: int) -> TrackingConfig | None:
        return await self._call(db.get_tracking_config, config_id)

    async def get_first_config_for_owner(self, owner_id: str) -> TrackingConfig | None:
        return await self._call(db.get_first_config_for_owner, owner_id)

    async def list_due_configs(self, now: datetime) -> list[TrackingConfig]:
        return await self._call(db.list_due_configs, now)

    async def update_next_run_at(self, config_id: int, next_run_at: datetime | None) -> None:
        await self._call(db.update_next_run_at, config_id, next_run_at)

    async def create_run(self, config_id: int, started_at: datetime) -> TrackingRun:
        return await self._call(db.create_run, config_id, started_at)

    async def finish_run(self, run_id: int, status: RunStatus, completed_at: datetime) -> None:
        await self._call(db.finish_run, run_id, status, completed_at)

    async def get_run(self, run_id: int) -> TrackingRun | None:
        return await self._call(db.get_run, run_id)

    async def list_runs_for_config(self, config_id: int) -> list[TrackingRun]:
        return await self._call(db.list_runs_for_config, config_id)

    async def insert_result(self, result: TrackingResult) -> int:
        return await self._call(db.insert_result, result)

    async def list_results(self, run_id: int) -> list[TrackingResult]:
        return await self._call(db.list_results, run_id)

    async def count_executed_prompts(
        self, owner_id: str, period_start: datetime, period_end: datetime
    ) -> int:
        return await self._call(db.count_executed_prompts, owner_id, period_start, period_end)

    async def add_subscription(
        self,
        owner_id: str,
        plan: str,
        current_period_start: datetime,
        current_period_end: datetime,
    ) -> Subscription:
        return await self._call(
            db.insert_subscription, owner_id, plan, current_period_start, current_period_end
        )

    async def get_active_subscription(self, owner_id: str) -> Subscription | None:
        return await self._call(db.get_active_subscription, owner_id)

    async def upsert_cited_domains(self, hostnames: Iterable[str], seen_at: datetime) -> int:
        return await self._call(db.upsert_cited_domains, list(hostnames), seen_at)

    async def list_cited_domains(self) -> list[CitedDomain]:
        return await self._call(db.list_cited_domains)
