"""
Brand mention counting and visibility scoring.

A tracked domain is matched through several terms (brand name, registrable
label, bare host, www host). Each term is counted independently with a
left word-boundary regex over the answer text plus its citation URLs, and
the highest count wins. Counts are not summed: "Interhyp" and "interhyp.de"
overlap, so summing would double count a single mention.

Security:
- Always uses re.escape() to prevent regex injection
"""

import re
from collections.abc import Sequence
from urllib.parse import urlparse

# Points per mention; four mentions reach the cap
POINTS_PER_MENTION = 25
MAX_VISIBILITY_SCORE = 100

MIN_TERM_LENGTH = 2


def _host_of(domain_url: str) -> str:
    candidate = domain_url.strip()
    if "://" not in candidate:
        candidate = f"//{candidate}"
    host = urlparse(candidate).hostname or ""
    return host.lower().rstrip(".")


def build_match_terms(domain_url: str, brand_name: str | None = None) -> list[str]:
    """
    Build the terms that count as a mention of the tracked domain.

    Order: brand name, registrable label, bare host, www host (only if the
    URL had one). De-duplicated case-insensitively; terms shorter than two
    characters are dropped.

    Example:
        >>> build_match_terms("https://www.interhyp.de/baufinanzierung", "Interhyp")
        ['Interhyp', 'interhyp.de', 'www.interhyp.de']
    """
    host = _host_of(domain_url)
    bare_host = host.removeprefix("www.")
    label = bare_host.split(".")[0] if bare_host else ""

    candidates = [brand_name or "", label, bare_host]
    if host.startswith("www."):
        candidates.append(host)

    terms: list[str] = []
    seen: set[str] = set()
    for term in candidates:
        term = term.strip()
        if len(term) < MIN_TERM_LENGTH or term.lower() in seen:
            continue
        seen.add(term.lower())
        terms.append(term)
    return terms


def count_term(term: str, text: str) -> int:
    """Count case-insensitive occurrences of term starting at a word boundary."""
    pattern = re.compile(r"\b" + re.escape(term), re.IGNORECASE)
    return len(pattern.findall(text))


def count_mentions(
    text: str,
    domain_url: str,
    brand_name: str | None = None,
    citations: Sequence[str] = (),
) -> int:
    """
    Count mentions of the tracked domain in text and citation URLs.

    Returns:
        Maximum per-term count (0 when no term matches)

    Example:
        >>> count_mentions("Interhyp and interhyp.de", "interhyp.de", "Interhyp")
        2
    """
    haystack = text + " " + " ".join(citations)
    counts = [count_term(term, haystack) for term in build_match_terms(domain_url, brand_name)]
    return max(counts, default=0)


def compute_visibility_score(mention_count: int) -> int:
    """
    Map a mention count to a 0-100 visibility score.

    0 -> 0, 1 -> 25, 2 -> 50, 3 -> 75, 4+ -> 100
    """
    if mention_count < 0:
        raise ValueError(f"mention_count must be >= 0, got: {mention_count}")
    return round(min(MAX_VISIBILITY_SCORE, mention_count * POINTS_PER_MENTION))


def score_response(
    text: str,
    domain_url: str,
    brand_name: str | None = None,
    citations: Sequence[str] = (),
) -> tuple[int, int]:
    """Return (mention_count, visibility_score) for one normalized answer."""
    mention_count = count_mentions(text, domain_url, brand_name, citations)
    return mention_count, compute_visibility_score(mention_count)
