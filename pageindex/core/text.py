"""URL and search-text helpers shared by the visit index and favicon cache."""

from __future__ import annotations

import hashlib

SCHEME_SEPARATOR = "://"


def hash_string(value: str) -> str:
    """Fast-lookup fingerprint for a URL.

    Not collision-free, callers always compare the URL as well.
    """
    return hashlib.sha256(value.encode()).hexdigest()[:16]


def split_scheme(url: str) -> str | None:
    """Return the URL without its scheme prefix, or None if it has no scheme."""
    sep = url.find(SCHEME_SEPARATOR)
    if sep == -1:
        return None
    return url[sep + len(SCHEME_SEPARATOR):]


def quote_token(token: str) -> str:
    """Wrap a token as an FTS5 prefix term, doubling embedded quotes."""
    return '"' + token.replace('"', '""') + '"*'


def build_prefix_query(text: str | None) -> str:
    """Build an implicit-AND-of-prefixes FTS5 query from free text.

    - Trim and split on whitespace
    - Quote each token and add the prefix wildcard
    - Join with spaces

    Returns an empty string when there is nothing to search for.
    """
    tokens = (text or "").split()
    return " ".join(quote_token(t) for t in tokens)
