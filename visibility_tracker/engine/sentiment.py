"""
Sentiment hook for tracking results.

Sentiment modeling is outside the engine; an analyzer only has to turn an
answer into a label and a score in [-100, 100]. The default analyzer
returns nothing, leaving the sentiment columns empty.
"""

from dataclasses import dataclass
from typing import Protocol

SENTIMENT_LABELS = ("positive", "neutral", "negative")


@dataclass
class SentimentResult:
    label: str
    score: int

    def __post_init__(self):
        if self.label not in SENTIMENT_LABELS:
            raise ValueError(f"label must be one of {SENTIMENT_LABELS}, got: {self.label}")
        if not -100 <= self.score <= 100:
            raise ValueError(f"score must be within [-100, 100], got: {self.score}")


class SentimentAnalyzer(Protocol):
    async def analyze(self, text: str, brand_name: str) -> SentimentResult | None: ...


class NullSentimentAnalyzer:
    async def analyze(self, text: str, brand_name: str) -> SentimentResult | None:
        return None
