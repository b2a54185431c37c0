"""
Run orchestration: fan prompts out to providers and persist the results.

Execution model:
- Prompts are split into batches (default 5) executed strictly in order
- Within a batch every prompt x provider call runs concurrently
- Each call has its own deadline; a late answer is discarded
- A failed or timed-out call becomes an "Error: ..." result with zero
  scores, and the batch carries on
- Anything failing outside a call (e.g. persisting a result) fails the run

After a completed run the cited-domain enrichment runs as a detached task.

Example:
    >>> orchestrator = RunOrchestrator(store, adapters, enrichment=enrich_cited_domains)
    >>> run = await store.create_run(config.id, utc_now())
    >>> outcome = await orchestrator.execute(run, prompts, list(adapters), domain)
    >>> outcome.status, outcome.results_written
    (<RunStatus.COMPLETED: 'completed'>, 28)
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime

import httpx

from visibility_tracker.config.constants import (
    ERROR_RESPONSE_PREFIX,
    PROMPT_BATCH_SIZE,
    PROVIDER_CALL_TIMEOUT,
)
from visibility_tracker.exceptions import (
    OrchestratorFatalError,
    ProviderError,
    ProviderTimeoutError,
)
from visibility_tracker.extractor import normalize_response, score_response
from visibility_tracker.providers import Provider, ProviderAdapter, ProviderReply
from visibility_tracker.providers.routing import transport_for_country
from visibility_tracker.storage import (
    Domain,
    RunStatus,
    TrackingResult,
    TrackingRun,
    TrackingStore,
)
from visibility_tracker.utils.logging import log_with_context
from visibility_tracker.utils.time import utc_now

from .sentiment import SentimentAnalyzer

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[str | None], Mapping[Provider, ProviderAdapter]]
EnrichmentHook = Callable[[TrackingStore, int], Awaitable[object]]


@dataclass
class RunOutcome:
    """
    Summary of one executed run.

    Attributes:
        errors: Number of error results written (failed or timed-out calls)
        error: Message of the exception that failed the run, if any
    """

    run_id: int
    status: RunStatus
    results_written: int
    errors: int
    batches: int
    started_at: datetime
    completed_at: datetime | None
    error: str | None = None


def partition_prompts(prompts: Sequence[str], batch_size: int = PROMPT_BATCH_SIZE) -> list[list[str]]:
    """
    Split prompts into ordered batches of at most batch_size.

    Example:
        >>> partition_prompts(["a", "b", "c", "d", "e", "f", "g"], 5)
        [['a', 'b', 'c', 'd', 'e'], ['f', 'g']]
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be at least 1, got: {batch_size}")
    return [list(prompts[i : i + batch_size]) for i in range(0, len(prompts), batch_size)]


def error_response(exc: BaseException) -> str:
    message = str(exc).strip() or type(exc).__name__
    return f"{ERROR_RESPONSE_PREFIX}{message}"


class RunOrchestrator:
    """
    Executes runs against a set of provider adapters.

    Args:
        store: Persistence for results and run status
        adapters: Default adapter per provider
        batch_size: Prompts per concurrent batch
        call_timeout: Deadline in seconds for a single provider call
        sentiment: Optional analyzer applied to successful answers
        enrichment: Optional side task started after a completed run
        adapter_factory: Builds country-localized adapters for configs
            that set a country
    """

    def __init__(
        self,
        store: TrackingStore,
        adapters: Mapping[Provider, ProviderAdapter],
        batch_size: int = PROMPT_BATCH_SIZE,
        call_timeout: float = PROVIDER_CALL_TIMEOUT,
        sentiment: SentimentAnalyzer | None = None,
        enrichment: EnrichmentHook | None = None,
        adapter_factory: AdapterFactory | None = None,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got: {batch_size}")
        if call_timeout <= 0:
            raise ValueError(f"call_timeout must be positive, got: {call_timeout}")

        self.store = store
        self.adapters = dict(adapters)
        self.batch_size = batch_size
        self.call_timeout = call_timeout
        self.sentiment = sentiment
        self.enrichment = enrichment
        self.adapter_factory = adapter_factory
        self._background_tasks: set[asyncio.Task] = set()

    def adapters_for(self, country: str | None) -> Mapping[Provider, ProviderAdapter]:
        if country and self.adapter_factory is not None:
            return self.adapter_factory(country)
        return self.adapters

    async def execute(
        self,
        run: TrackingRun,
        prompts: Sequence[str],
        providers: Sequence[Provider],
        domain: Domain,
        transport: httpx.AsyncBaseTransport | None = None,
        country: str | None = None,
    ) -> RunOutcome:
        """
        Execute a running run to completion and record its final status.

        Args:
            run: Run created in the running state
            prompts: Prompts to send, in order
            providers: Providers every prompt is sent to
            domain: Tracked domain used for scoring
            transport: Optional transport for every call (overrides country routing)
            country: Optional country; selects localized adapters and proxy egress

        Returns:
            RunOutcome with the final status. Fatal errors are reported through
            the outcome instead of raised.
        """
        adapters = self.adapters_for(country)
        owned_transport = None
        if transport is None and country:
            transport = owned_transport = transport_for_country(country)

        try:
            return await self._execute(run, prompts, providers, domain, adapters, transport)
        finally:
            if owned_transport is not None:
                await owned_transport.aclose()

    async def _execute(
        self,
        run: TrackingRun,
        prompts: Sequence[str],
        providers: Sequence[Provider],
        domain: Domain,
        adapters: Mapping[Provider, ProviderAdapter],
        transport: httpx.AsyncBaseTransport | None,
    ) -> RunOutcome:
        batches = partition_prompts(prompts, self.batch_size)
        results_written = 0
        errors = 0

        log_with_context(
            logger,
            logging.INFO,
            f"Starting run: {len(prompts)} prompts x {len(providers)} providers "
            f"in {len(batches)} batches",
            context={"domain": domain.domain_url, "providers": [str(p) for p in providers]},
            run_id=run.id,
        )

        try:
            for index, batch in enumerate(batches, start=1):
                calls = [(prompt, provider) for prompt in batch for provider in providers]
                replies = await asyncio.gather(
                    *(
                        self._call_provider(adapters, provider, prompt, domain, transport)
                        for prompt, provider in calls
                    ),
                    return_exceptions=True,
                )

                for (prompt, provider), reply in zip(calls, replies, strict=True):
                    result = await self._build_result(run.id, prompt, provider, reply, domain)
                    try:
                        await self.store.insert_result(result)
                    except Exception as e:
                        raise OrchestratorFatalError(str(e) or type(e).__name__) from e
                    results_written += 1
                    if isinstance(reply, BaseException):
                        errors += 1

                logger.debug(f"Run {run.id}: batch {index}/{len(batches)} done")

            completed_at = utc_now()
            await self.store.finish_run(run.id, RunStatus.COMPLETED, completed_at)

        except Exception as e:
            logger.error(f"Run {run.id} failed: {e}", exc_info=True)
            completed_at = utc_now()
            try:
                await self.store.finish_run(run.id, RunStatus.FAILED, completed_at)
            except Exception as finish_error:
                logger.error(f"Could not mark run {run.id} as failed: {finish_error}")
            return RunOutcome(
                run_id=run.id,
                status=RunStatus.FAILED,
                results_written=results_written,
                errors=errors,
                batches=len(batches),
                started_at=run.started_at,
                completed_at=completed_at,
                error=str(e) or type(e).__name__,
            )

        log_with_context(
            logger,
            logging.INFO,
            f"Run completed: {results_written} results, {errors} errors",
            run_id=run.id,
        )

        if self.enrichment is not None:
            self._start_background(self._enrich(run.id), name=f"enrich-run-{run.id}")

        return RunOutcome(
            run_id=run.id,
            status=RunStatus.COMPLETED,
            results_written=results_written,
            errors=errors,
            batches=len(batches),
            started_at=run.started_at,
            completed_at=completed_at,
        )

    async def _call_provider(
        self,
        adapters: Mapping[Provider, ProviderAdapter],
        provider: Provider,
        prompt: str,
        domain: Domain,
        transport: httpx.AsyncBaseTransport | None,
    ) -> ProviderReply:
        adapter = adapters.get(provider)
        if adapter is None:
            raise ProviderError(f"No adapter configured for {provider}")

        try:
            async with asyncio.timeout(self.call_timeout):
                return await adapter.chat(prompt, domain.domain_url, transport=transport)
        except TimeoutError as e:
            raise ProviderTimeoutError(str(provider), self.call_timeout) from e

    async def _build_result(
        self,
        run_id: int,
        prompt: str,
        provider: Provider,
        reply: ProviderReply | BaseException,
        domain: Domain,
    ) -> TrackingResult:
        if isinstance(reply, BaseException):
            if not isinstance(reply, Exception):
                raise reply
            logger.warning(f"Run {run_id}: {provider} failed for prompt: {reply}")
            return TrackingResult(
                run_id=run_id,
                provider=str(provider),
                prompt=prompt,
                response=error_response(reply),
            )

        normalized = normalize_response(reply.text, reply.citations)
        mention_count, visibility_score = score_response(
            normalized.text, domain.domain_url, domain.name, normalized.citations
        )

        result = TrackingResult(
            run_id=run_id,
            provider=str(provider),
            prompt=prompt,
            response=normalized.text,
            mention_count=mention_count,
            visibility_score=visibility_score,
            citations=normalized.citations,
        )

        if self.sentiment is not None:
            try:
                sentiment = await self.sentiment.analyze(normalized.text, domain.name)
            except Exception as e:
                logger.warning(f"Sentiment analysis failed for run {run_id} ({provider}): {e}")
                sentiment = None
            if sentiment is not None:
                result.sentiment = sentiment.label
                result.sentiment_score = sentiment.score

        return result

    async def _enrich(self, run_id: int) -> None:
        try:
            await self.enrichment(self.store, run_id)
        except Exception as e:
            logger.error(f"Cited-domain enrichment failed for run {run_id}: {e}")

    def _start_background(self, coro: Awaitable[None], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def drain_background_tasks(self) -> None:
        """Wait for outstanding side tasks (enrichment) to finish."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
