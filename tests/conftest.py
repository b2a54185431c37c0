"""Shared fixtures for the visibility tracker test suite."""

import asyncio
from datetime import UTC, datetime

import pytest

from visibility_tracker.providers import Provider, ProviderReply
from visibility_tracker.storage import TrackingStore, db


class FakeAdapter:
    """
    Scripted provider adapter.

    replies maps prompt -> ProviderReply or an exception instance; prompts not
    listed get a default reply mentioning nothing.
    """

    def __init__(self, provider: Provider, replies=None, delay: float = 0.0, default_text=None):
        self.provider = provider
        self.replies = replies or {}
        self.delay = delay
        self.default_text = default_text or f"{provider} has no opinion."
        self.calls: list[tuple[str, str]] = []
        self.transports = []

    async def chat(self, prompt, domain_url, transport=None):
        self.calls.append((prompt, domain_url))
        self.transports.append(transport)
        if self.delay:
            await asyncio.sleep(self.delay)
        reply = self.replies.get(prompt)
        if isinstance(reply, BaseException):
            raise reply
        return reply or ProviderReply(text=self.default_text, citations=[])


class RecordingNotifier:
    def __init__(self):
        self.events = []

    async def notify(self, event):
        self.events.append(event)


@pytest.fixture
def store(tmp_path):
    tracking_store = TrackingStore(str(tmp_path / "tracker.db"))
    tracking_store.initialize()
    return tracking_store


@pytest.fixture
def fake_adapters():
    return {provider: FakeAdapter(provider) for provider in Provider}


@pytest.fixture
def recording_notifier():
    return RecordingNotifier()


def seed_config(
    store: TrackingStore,
    prompts,
    owner_id="owner-1",
    interval="weekly",
    next_run_at=None,
    domain_url="interhyp.de",
    brand="Interhyp",
    country=None,
):
    """Insert a domain, prompt set and config; returns (domain, prompt_set, config)."""
    domain = store.run_sync(db.insert_domain, owner_id, brand, domain_url)
    prompt_set = store.run_sync(db.insert_prompt_set, owner_id, "prompts", list(prompts))
    config = store.run_sync(
        db.insert_tracking_config,
        owner_id,
        domain.id,
        prompt_set.id,
        interval,
        next_run_at,
        country,
    )
    return domain, prompt_set, config


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


def subscribe(store: TrackingStore, owner_id="owner-1", plan="professional"):
    """Give owner_id a paid plan whose period covers any test clock."""
    return store.run_sync(
        db.insert_subscription, owner_id, plan, utc(2020, 1, 1), utc(2100, 1, 1)
    )
