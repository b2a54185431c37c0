"""
Cited-domain enrichment.

After a run completes, the hostnames of every cited source are recorded in
cited_domains. This is a side task: it runs detached from the run and its
failures are logged, never surfaced.
"""

import logging
from collections.abc import Iterable
from urllib.parse import urlparse

from visibility_tracker.storage import TrackingStore
from visibility_tracker.utils.time import utc_now

logger = logging.getLogger(__name__)


def cited_hostnames(citations: Iterable[str]) -> list[str]:
    """
    Return unique lower-case hostnames without "www.", in first-seen order.

    Invalid or non-http(s) URLs are skipped.

    Example:
        >>> cited_hostnames(["https://www.a.com/x", "https://a.com/y", "not a url"])
        ['a.com']
    """
    seen: set[str] = set()
    hostnames = []
    for url in citations:
        try:
            parsed = urlparse(url.strip())
            hostname = parsed.hostname
        except ValueError:
            continue
        if parsed.scheme not in ("http", "https") or not hostname:
            continue
        hostname = hostname.lower().removeprefix("www.")
        if hostname not in seen:
            seen.add(hostname)
            hostnames.append(hostname)
    return hostnames


async def enrich_cited_domains(store: TrackingStore, run_id: int) -> int:
    """
    Upsert every hostname cited by a run's results.

    Returns:
        int: Number of distinct hostnames recorded
    """
    results = await store.list_results(run_id)
    hostnames = cited_hostnames(url for result in results for url in result.citations)
    if not hostnames:
        logger.debug(f"Run {run_id} cited no domains")
        return 0

    written = await store.upsert_cited_domains(hostnames, utc_now())
    logger.info(f"Recorded {written} cited domains for run {run_id}")
    return written
