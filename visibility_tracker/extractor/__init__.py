"""Answer normalization and mention scoring."""

from .mention_detector import (
    build_match_terms,
    compute_visibility_score,
    count_mentions,
    score_response,
)
from .normalizer import (
    NormalizedResponse,
    extract_urls,
    normalize_response,
    resolve_citation_markers,
    strip_markup,
)

__all__ = [
    "NormalizedResponse",
    "build_match_terms",
    "compute_visibility_score",
    "count_mentions",
    "extract_urls",
    "normalize_response",
    "resolve_citation_markers",
    "score_response",
    "strip_markup",
]
