"""
Response normalization: turn raw provider answers into plain text.

Provider answers arrive as Markdown with inline [n] citation markers. Before
scoring and persistence they are normalized:

1. [n] markers are resolved to "[n: <url>]" against the citation list
2. Markdown markup is stripped (links keep their URL as "text (url)")
3. If the provider returned no citations, URLs found in the text are used

All functions are pure and total: any string input produces a string output.

Example:
    >>> normalize_response("**Interhyp** is popular [1].", ["https://interhyp.de"])
    NormalizedResponse(text='Interhyp is popular [1: https://interhyp.de].',
                       citations=['https://interhyp.de'])
"""

import re
from dataclasses import dataclass, field

CITATION_MARKER_PATTERN = re.compile(r"\[(\d+)\]")

URL_PATTERN = re.compile(r"https?://[^\s<>\"'`]+", re.IGNORECASE)

URL_TRAILING_PUNCTUATION = ".,;:!?'\""

# Fixed-point iteration cap for nested markup like ***bold italic***
MAX_STRIP_PASSES = 10

_LINK_PATTERN = re.compile(r"!?\[([^\[\]]*)\]\(\s*([^()\s]+)\s*\)")
_CODE_FENCE_PATTERN = re.compile(r"^[ \t]*(```|~~~).*$", re.MULTILINE)
_HORIZONTAL_RULE_PATTERN = re.compile(r"^[ \t]*([-*_])(?:[ \t]*\1){2,}[ \t]*$", re.MULTILINE)
_LINE_PREFIX_PATTERNS = (
    re.compile(r"^\s*>\s?"),
    re.compile(r"^\s*#{1,6}\s+"),
    re.compile(r"^\s*[-*+]\s+"),
    re.compile(r"^\s*\d+[.)]\s+"),
)
_INLINE_PATTERNS = (
    (re.compile(r"\*\*(?=\S)(.+?)(?<=\S)\*\*"), r"\1"),
    (re.compile(r"(?<!\w)__(?=\S)(.+?)(?<=\S)__(?!\w)"), r"\1"),
    (re.compile(r"~~(?=\S)(.+?)(?<=\S)~~"), r"\1"),
    (re.compile(r"`([^`\n]+)`"), r"\1"),
    (re.compile(r"(?<![*\w])\*(?=\S)([^*\n]+?)(?<=\S)\*(?![*\w])"), r"\1"),
    (re.compile(r"(?<!\w)_(?=\S)([^_\n]+?)(?<=\S)_(?!\w)"), r"\1"),
)

# Emphasis delimiters inside URLs (e.g. /__init__.py) are part of the URL
_URL_PLACEHOLDER_PATTERN = re.compile(r"\x00(\d+)\x00")


@dataclass
class NormalizedResponse:
    """Plain answer text plus the effective citation list."""

    text: str
    citations: list[str] = field(default_factory=list)


def resolve_citation_markers(text: str, citations: list[str]) -> str:
    """
    Rewrite [n] markers as [n: <url>] for 1 <= n <= len(citations).

    Out-of-range markers are left untouched. With no citations the text is
    returned unchanged.

    Example:
        >>> resolve_citation_markers("See [1] and [3].", ["https://a.com", "https://b.com"])
        'See [1: https://a.com] and [3].'
    """
    if not citations:
        return text

    def replace(match: re.Match) -> str:
        index = int(match.group(1))
        if 1 <= index <= len(citations):
            return f"[{index}: {citations[index - 1]}]"
        return match.group(0)

    return CITATION_MARKER_PATTERN.sub(replace, text)


def _strip_line_prefixes(line: str) -> str:
    previous = None
    while previous != line:
        previous = line
        for pattern in _LINE_PREFIX_PATTERNS:
            line = pattern.sub("", line, count=1)
    return line


def _protect_urls(text: str) -> tuple[str, list[str]]:
    urls: list[str] = []

    def replace(match: re.Match) -> str:
        raw = match.group(0)
        url = raw
        while True:
            trimmed = _trim_url(url).rstrip("*_~")
            if trimmed == url:
                break
            url = trimmed
        if len(url) <= len("https://"):
            return raw
        urls.append(url)
        return f"\x00{len(urls) - 1}\x00{raw[len(url):]}"

    return URL_PATTERN.sub(replace, text), urls


def _strip_once(text: str) -> str:
    text = _CODE_FENCE_PATTERN.sub("", text)
    text = _HORIZONTAL_RULE_PATTERN.sub("", text)
    text = _LINK_PATTERN.sub(lambda m: f"{m.group(1)} ({m.group(2)})" if m.group(1) else m.group(2), text)

    lines = [_strip_line_prefixes(line).rstrip() for line in text.split("\n")]
    text = "\n".join(lines)

    text, urls = _protect_urls(text)
    for pattern, replacement in _INLINE_PATTERNS:
        text = pattern.sub(replacement, text)
    text = _URL_PLACEHOLDER_PATTERN.sub(lambda m: urls[int(m.group(1))], text)

    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def strip_markup(text: str) -> str:
    """
    Remove Markdown markup, keeping link targets as "text (url)".

    Strips heading markers, emphasis/strikethrough/inline-code delimiters,
    list and blockquote prefixes, code fences and horizontal rules; collapses
    runs of blank lines to a single blank line and trims the result.

    Idempotent: strip_markup(strip_markup(t)) == strip_markup(t).
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\x00", "")
    # Nested markup can expose new delimiters once the outer ones are gone
    for _ in range(MAX_STRIP_PASSES):
        stripped = _strip_once(text)
        if stripped == text:
            break
        text = stripped
    return text


def _trim_url(url: str) -> str:
    while url:
        if url[-1] in URL_TRAILING_PUNCTUATION:
            url = url[:-1]
        elif url[-1] == ")" and url.count("(") < url.count(")"):
            url = url[:-1]
        elif url[-1] == "]" and url.count("[") < url.count("]"):
            url = url[:-1]
        else:
            break
    return url


def extract_urls(text: str) -> list[str]:
    """
    Find absolute http(s) URLs in order of first appearance, de-duplicated.

    Example:
        >>> extract_urls("Visit https://a.com/x. Or (https://b.com) or https://a.com/x!")
        ['https://a.com/x', 'https://b.com']
    """
    seen: set[str] = set()
    urls = []
    for match in URL_PATTERN.finditer(text):
        url = _trim_url(match.group(0))
        if len(url) > len("https://") and url not in seen:
            seen.add(url)
            urls.append(url)
    return urls


def normalize_response(raw_text: str, citations: list[str] | None) -> NormalizedResponse:
    """
    Resolve citation markers, then strip markup.

    Args:
        raw_text: Answer text as returned by the provider
        citations: Provider-reported citation URLs (may be empty)

    Returns:
        NormalizedResponse whose citations are the provider list, or the URLs
        found in raw_text when the provider reported none
    """
    effective = list(citations) if citations else extract_urls(raw_text)
    resolved = resolve_citation_markers(raw_text, effective)
    return NormalizedResponse(text=strip_markup(resolved), citations=effective)
