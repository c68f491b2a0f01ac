"""
Normalization utilities for program deduplication.

Handles:
- Text cleanup for title/category comparison
- URL canonicalization (scheme, tracking params, host aliases)
- Stable hashing for content-derived keys
- Date parsing for heterogeneous feed timestamps
"""

import hashlib
import html
import re
from datetime import date, datetime, timezone
from typing import Iterable, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import structlog

logger = structlog.get_logger(__name__)


DEFAULT_TRACKING_PARAMS = ("gclid", "fbclid")
DEFAULT_TRACKING_PREFIXES = ("utm_",)
DEFAULT_HOST_ALIASES = {
    "www.grants.gov": "grants.gov",
    "www.usda.gov": "usda.gov",
    "www.fns.usda.gov": "fns.usda.gov",
    "www.rd.usda.gov": "rd.usda.gov",
}

DEFAULT_HASH_LENGTH = 16

_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"\s+")


def normalize_text(text: Optional[str]) -> str:
    """
    Normalize text for comparison.

    - Strips HTML tags and unescapes entities
    - Lowercases
    - Collapses whitespace and trims

    Args:
        text: Raw text (may contain HTML)

    Returns:
        Normalized text, empty string for None
    """
    if not text:
        return ""

    cleaned = _TAG_RE.sub(" ", str(text))
    cleaned = html.unescape(cleaned)
    cleaned = _WS_RE.sub(" ", cleaned.lower())

    return cleaned.strip()


def canonicalize_url(
    url: Optional[str],
    tracking_params: Iterable[str] = DEFAULT_TRACKING_PARAMS,
    tracking_param_prefixes: Iterable[str] = DEFAULT_TRACKING_PREFIXES,
    host_aliases: Optional[Mapping[str, str]] = None,
    fold_www: bool = True,
) -> str:
    """
    Canonicalize a program URL.

    - Forces https scheme
    - Lowercases host and folds host aliases (and a leading www.)
    - Removes tracking query parameters

    Never raises: anything that does not parse as an absolute URL is
    returned unchanged.

    Args:
        url: Raw URL
        tracking_params: Exact query parameter names to drop
        tracking_param_prefixes: Query parameter prefixes to drop (utm_)
        host_aliases: Host -> canonical host table
        fold_www: Strip a leading "www." after alias folding

    Returns:
        Canonical URL string
    """
    if not url:
        return url or ""

    raw = url.strip()
    aliases = DEFAULT_HOST_ALIASES if host_aliases is None else host_aliases

    try:
        parts = urlsplit(raw)
        host = (parts.hostname or "").lower()
        port = parts.port
    except ValueError:
        return url

    if not parts.scheme or not host:
        return url

    host = aliases.get(host, host)
    if fold_www and host.startswith("www."):
        host = host[4:]

    netloc = host if port in (None, 80, 443) else f"{host}:{port}"

    drop = set(tracking_params)
    prefixes = tuple(tracking_param_prefixes)
    query = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key not in drop and not (prefixes and key.startswith(prefixes))
    ]

    return urlunsplit(("https", netloc, parts.path, urlencode(query), parts.fragment))


def extract_host(url: Optional[str]) -> str:
    """Return lowercase hostname of a URL, or empty string."""
    if not url:
        return ""
    try:
        return (urlsplit(url.strip()).hostname or "").lower()
    except ValueError:
        return ""


def url_path_depth(url: Optional[str]) -> int:
    """
    Count non-empty path segments of a URL.

    Falls back to counting slashes for strings that do not parse.
    """
    if not url:
        return 0
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return url.count("/")
    if not parts.netloc:
        return url.count("/")
    return len([seg for seg in parts.path.split("/") if seg])


def stable_hash(text: str, length: int = DEFAULT_HASH_LENGTH) -> str:
    """
    Deterministic SHA-1 hash truncated to a fixed length.

    Args:
        text: Content to hash
        length: Number of hex characters to keep

    Returns:
        Hex digest prefix
    """
    digest = hashlib.sha1((text or "").encode("utf-8")).hexdigest()
    return digest[:length]


def parse_datetime(value) -> Optional[datetime]:
    """
    Parse a date value into a timezone-aware UTC datetime.

    Accepts datetime, date, or ISO-8601 strings (with optional trailing Z).
    Naive values are assumed to be UTC.

    Returns:
        datetime or None if parsing fails
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        raw = str(value).strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            logger.warning("invalid_date", value=str(value))
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
