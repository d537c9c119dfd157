from __future__ import annotations

import re
from urllib.parse import urlparse

YEAR_RE = re.compile(r"\b20\d{2}\b")
PUNCTUATION_RE = re.compile(r"[^\w\s]")
WHITESPACE_RE = re.compile(r"\s+")
PROGRAMME_LOCATION_RE = re.compile(r"\b(?:london|new york|nyc|birmingham|manchester|edinburgh|dublin)\b")


def normalize_url(raw_url: str | None) -> str:
    """Reduce a URL to scheme, lowercased host and path.

    Query strings and fragments carry tracking parameters and session ids, so
    they never take part in identity. Anything that does not parse as an
    absolute URL comes back unchanged.
    """
    if not raw_url:
        return ""
    candidate = raw_url.strip()
    try:
        parsed = urlparse(candidate)
        host = parsed.hostname
    except ValueError:
        return raw_url
    if not parsed.scheme or not host:
        return raw_url
    return f"{parsed.scheme.lower()}://{host}{parsed.path or '/'}"


def canonical_name(title: str | None) -> str:
    if not title:
        return ""
    cleaned = YEAR_RE.sub("", title)
    cleaned = PUNCTUATION_RE.sub(" ", cleaned)
    return WHITESPACE_RE.sub(" ", cleaned).strip().lower()


def normalize_programme_name(name: str | None) -> str:
    if not name:
        return ""
    cleaned = name.lower().replace("programme", "program")
    cleaned = YEAR_RE.sub("", cleaned)
    cleaned = PROGRAMME_LOCATION_RE.sub("", cleaned)
    cleaned = PUNCTUATION_RE.sub(" ", cleaned)
    return WHITESPACE_RE.sub(" ", cleaned).strip()


def contains_year(value: str) -> bool:
    return YEAR_RE.search(value) is not None
