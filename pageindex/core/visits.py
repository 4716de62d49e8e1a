"""Visit history index ranked by frecency.

Frecency lives on the same scale as epoch seconds:

    frecency = last_visited + visit_count * visit_weight_seconds

so ``visit_weight_seconds`` is how much recency one extra visit is worth, and
a frequently visited older page can outrank a page seen once more recently.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from PIL import Image

from pageindex.core.favicons import FaviconCache, SourceIcon
from pageindex.core.storage import DB
from pageindex.core.text import build_prefix_query, hash_string, split_scheme

logger = logging.getLogger(__name__)

DEFAULT_VISIT_WEIGHT_SECONDS = 24 * 60 * 60


@dataclass
class AutocompletePage:
    url: str
    title: str
    favicon_url: str | None = None
    favicon: Image.Image | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "title": self.title,
            "favicon_url": self.favicon_url,
        }


@dataclass
class PageRecord:
    id: int
    url: str
    url_hash: str
    schemeless_url: str
    title: str
    favicon_id: int | None
    last_visited: int
    visit_count: int
    frecency: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "schemeless_url": self.schemeless_url,
            "title": self.title,
            "favicon_id": self.favicon_id,
            "last_visited": self.last_visited,
            "visit_count": self.visit_count,
            "frecency": self.frecency,
        }


class VisitIndex:
    """Records page visits and answers ranked autocomplete queries.

    ``mark_visit`` assumes single-writer discipline per URL: it updates the
    (url_hash, url) row and inserts when nothing was updated. Two concurrent
    first visits to the same URL can both insert, leaving duplicate rows.
    """

    def __init__(
        self,
        db: DB,
        favicons: FaviconCache,
        visit_weight_seconds: int = DEFAULT_VISIT_WEIGHT_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db = db
        self.favicons = favicons
        self.visit_weight_seconds = visit_weight_seconds
        self._clock = clock

    def autocomplete_suggest(self, text: str | None, limit: int = 10) -> list[AutocompletePage]:
        """Return up to ``limit`` pages matching every word of ``text`` as a prefix.

        Results are ordered by frecency, highest first. Blank input and
        storage errors both yield an empty list.
        """
        match = build_prefix_query(text)
        if not match or limit <= 0:
            return []

        result = self._db.query(
            """
            SELECT ap.url, ap.title, f.url AS favicon_url
            FROM autocomplete_page_fts apf
            JOIN autocomplete_page ap ON ap.id = apf.rowid
            LEFT JOIN favicon f ON f.id = ap.favicon_id
            WHERE autocomplete_page_fts MATCH ?
            ORDER BY ap.frecency DESC
            LIMIT ?
            """,
            (match, limit),
        )
        if not result.ok:
            return []

        return [
            AutocompletePage(
                url=r["url"],
                title=r["title"] or "",
                favicon_url=r["favicon_url"],
                favicon=self.favicons.fetch(r["favicon_url"]),
            )
            for r in result.rows
        ]

    def mark_visit(
        self,
        url: str,
        title: str,
        favicon_url: str = "",
        icon: SourceIcon | None = None,
    ) -> bool:
        """Record a visit to ``url``. Returns False for a URL without a scheme
        or when storage fails."""
        schemeless_url = split_scheme(url or "")
        if schemeless_url is None:
            logger.debug(f"Ignoring visit to URL without scheme: {url!r}")
            return False

        url_hash = hash_string(url)
        now = int(self._clock())
        favicon_id = self.favicons.upsert(favicon_url, icon)

        updated = self._db.execute(
            """
            UPDATE autocomplete_page SET
              schemeless_url = ?,
              title = ?,
              favicon_id = ?,
              last_visited = ?,
              visit_count = visit_count + 1,
              frecency = ? + ((visit_count + 1) * ?)
            WHERE url_hash = ? AND url = ?
            """,
            (schemeless_url, title, favicon_id, now, now, self.visit_weight_seconds, url_hash, url),
        )
        if not updated.ok:
            return False
        if updated.rowcount > 0:
            return True

        inserted = self._db.execute(
            """
            INSERT INTO autocomplete_page (
              url, url_hash, schemeless_url, title,
              favicon_id, last_visited, visit_count, frecency
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (url, url_hash, schemeless_url, title, favicon_id, now, 1, now + self.visit_weight_seconds),
        )
        return inserted.ok

    def get_page(self, url: str) -> PageRecord | None:
        """Look up the stored record for ``url``."""
        if not url:
            return None
        found = self._db.query_one(
            """
            SELECT id, url, url_hash, schemeless_url, title, favicon_id,
                   last_visited, visit_count, frecency
            FROM autocomplete_page
            WHERE url_hash = ? AND url = ?
            ORDER BY id
            """,
            (hash_string(url), url),
        )
        row = found.first()
        if row is None:
            return None
        return PageRecord(
            id=row["id"],
            url=row["url"],
            url_hash=row["url_hash"],
            schemeless_url=row["schemeless_url"],
            title=row["title"] or "",
            favicon_id=row["favicon_id"],
            last_visited=row["last_visited"],
            visit_count=row["visit_count"],
            frecency=row["frecency"],
        )
