"""Deduplicated favicon store with an in-process decoded-icon cache.

Favicons are keyed by their source URL. Each stored row carries a cheap
``data_key`` supplied by the caller so a changed icon can be detected
without re-encoding it on every visit.
"""

from __future__ import annotations

import io
import itertools
import logging
import threading
import weakref
from collections import OrderedDict
from dataclasses import dataclass

from PIL import Image

from pageindex.core.storage import DB
from pageindex.core.text import hash_string

logger = logging.getLogger(__name__)

ICON_SIZE = (16, 16)
ICON_FORMAT = "PNG"
DEFAULT_CACHE_SIZE = 200

# id(image) -> (weak ref, serial). Entries go away with the image so a
# recycled id always gets a fresh serial.
_icon_serials: dict[int, tuple[weakref.ref, int]] = {}
_icon_serial_counter = itertools.count(1)
_icon_serials_lock = threading.Lock()


def icon_serial(image: Image.Image) -> int:
    """Process-unique key for a live image object, stable while it lives."""
    image_id = id(image)
    with _icon_serials_lock:
        entry = _icon_serials.get(image_id)
        if entry is not None and entry[0]() is image:
            return entry[1]
        serial = next(_icon_serial_counter)
        _icon_serials[image_id] = (weakref.ref(image, _forget_serial(image_id, serial)), serial)
        return serial


def _forget_serial(image_id: int, serial: int):
    def forget(_ref: weakref.ref) -> None:
        with _icon_serials_lock:
            entry = _icon_serials.get(image_id)
            if entry is not None and entry[1] == serial:
                del _icon_serials[image_id]

    return forget


@dataclass(frozen=True)
class SourceIcon:
    """An icon handed over by the browser shell.

    ``key`` is an identity/version tag, not a content hash. It must change
    whenever the underlying image changes.
    """

    image: Image.Image
    key: int

    @classmethod
    def from_image(cls, image: Image.Image) -> SourceIcon:
        return cls(image=image, key=icon_serial(image))


def encode_icon(image: Image.Image) -> bytes:
    """Scale down to ICON_SIZE (never up) and encode as PNG."""
    icon = image.copy()
    icon.thumbnail(ICON_SIZE)
    if icon.mode not in ("1", "L", "LA", "P", "RGB", "RGBA"):
        icon = icon.convert("RGBA")
    buf = io.BytesIO()
    icon.save(buf, format=ICON_FORMAT)
    return buf.getvalue()


def decode_icon(data: bytes | None) -> Image.Image | None:
    """Decode stored icon bytes. Returns None if they are not a readable image."""
    if not data:
        return None
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        logger.warning(f"Failed to decode favicon ({len(data)} bytes): {e}")
        return None
    return image


class IconMemoryCache:
    """LRU map of favicon URL to decoded image. Thread-safe."""

    def __init__(self, max_items: int = DEFAULT_CACHE_SIZE) -> None:
        self._max_items = max(1, max_items)
        self._items: OrderedDict[str, Image.Image] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, url: str) -> Image.Image | None:
        with self._lock:
            image = self._items.get(url)
            if image is not None:
                self._items.move_to_end(url)
            return image

    def put(self, url: str, image: Image.Image) -> None:
        with self._lock:
            self._items[url] = image
            self._items.move_to_end(url)
            while len(self._items) > self._max_items:
                self._items.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __contains__(self, url: object) -> bool:
        with self._lock:
            return url in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class FaviconCache:
    def __init__(
        self,
        db: DB,
        memory_cache: IconMemoryCache | None = None,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ) -> None:
        self._db = db
        self.memory_cache = memory_cache if memory_cache is not None else IconMemoryCache(cache_size)

    def upsert(self, url: str, icon: SourceIcon | None) -> int | None:
        """Resolve the favicon id for ``url``, storing or refreshing the icon.

        Returns None if there is no URL, no icon, or the store failed.
        """
        if not url or icon is None:
            return None
        url_hash = hash_string(url)

        found = self._db.query_one(
            "SELECT id, data_key FROM favicon WHERE url_hash = ? AND url = ?",
            (url_hash, url),
        )
        if not found.ok:
            return None

        row = found.first()
        if row is not None:
            if row["data_key"] != icon.key:
                self._refresh(row["id"], icon)
            return row["id"]

        try:
            data = encode_icon(icon.image)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to encode favicon {url}: {e}")
            return None
        inserted = self._db.execute(
            "INSERT INTO favicon (url, url_hash, data_key, data) VALUES (?, ?, ?, ?)",
            (url, url_hash, icon.key, data),
        )
        if not inserted.ok:
            return None
        return inserted.lastrowid

    def _refresh(self, favicon_id: int, icon: SourceIcon) -> None:
        # Best effort, a stale icon does not make the visit wrong
        try:
            data = encode_icon(icon.image)
        except (OSError, ValueError) as e:
            logger.debug(f"Skipping favicon {favicon_id} refresh: {e}")
            return
        updated = self._db.execute(
            "UPDATE favicon SET data_key = ?, data = ? WHERE id = ?",
            (icon.key, data, favicon_id),
        )
        if not updated.ok:
            logger.debug(f"Favicon {favicon_id} refresh failed, keeping old data")

    def fetch(self, url: str | None) -> Image.Image | None:
        """Return the decoded icon for ``url`` or None if it is unknown."""
        if not url:
            return None
        cached = self.memory_cache.get(url)
        if cached is not None:
            return cached

        found = self._db.query_one(
            "SELECT data FROM favicon WHERE url_hash = ? AND url = ?",
            (hash_string(url), url),
        )
        row = found.first()
        if row is None:
            return None
        image = decode_icon(row["data"])
        if image is None:
            return None
        self.memory_cache.put(url, image)
        return image

    def fetch_bytes(self, url: str | None) -> bytes | None:
        """Return the stored PNG bytes for ``url`` without decoding."""
        if not url:
            return None
        found = self._db.query_one(
            "SELECT data FROM favicon WHERE url_hash = ? AND url = ?",
            (hash_string(url), url),
        )
        row = found.first()
        return row["data"] if row is not None else None
