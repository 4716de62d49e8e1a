from __future__ import annotations

import io
import logging
import zlib

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.responses import Response
from PIL import Image, UnidentifiedImageError

from pageindex.core.expirer import Expirer
from pageindex.core.favicons import FaviconCache, SourceIcon
from pageindex.core.settings import Settings
from pageindex.core.storage import get_db, init_db
from pageindex.core.visits import VisitIndex

logger = logging.getLogger(__name__)

app = FastAPI(title="pageindex")

_index: VisitIndex | None = None
_expirer: Expirer | None = None


@app.on_event("startup")
def _startup() -> None:
    global _index, _expirer
    s = Settings.from_env()
    logging.basicConfig(level=s.log_level)

    db = init_db(s)
    favicons = FaviconCache(db, cache_size=s.favicon_cache_size)
    _index = VisitIndex(db, favicons, visit_weight_seconds=s.visit_weight_seconds)
    _expirer = Expirer(
        db,
        retention_seconds=s.retention_seconds,
        interval_seconds=s.expire_interval_seconds,
    )
    if s.expirer_enabled:
        _expirer.start()


@app.on_event("shutdown")
def _shutdown() -> None:
    if _expirer is not None:
        _expirer.stop()


def get_index() -> VisitIndex:
    assert _index is not None, "Visit index not initialized"
    return _index


def get_expirer() -> Expirer:
    assert _expirer is not None, "Expirer not initialized"
    return _expirer


@app.get("/health")
def health():
    stats = get_db().get_stats()
    return {"status": "ok", **stats}


@app.get("/api/autocomplete")
def autocomplete(q: str = "", limit: int = 10):
    """Ranked suggestions for the address bar.

    Each item carries ``favicon_url``, fetch the icon itself from /api/favicon.
    """
    pages = get_index().autocomplete_suggest(q, limit=min(limit, 100))
    return [p.to_dict() for p in pages]


@app.post("/api/visits")
async def mark_visit(
    url: str = Form(...),
    title: str = Form(""),
    favicon_url: str = Form(""),
    favicon_key: int | None = Form(None),
    favicon: UploadFile | None = File(None),
):
    """Record a navigation. The favicon upload is optional."""
    icon = None
    if favicon is not None:
        raw = await favicon.read()
        if raw:
            try:
                image = Image.open(io.BytesIO(raw))
                image.load()
            except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
                logger.info(f"Ignoring unreadable favicon for {url}: {e}")
            else:
                key = favicon_key if favicon_key is not None else zlib.crc32(raw)
                icon = SourceIcon(image=image, key=key)

    index = get_index()
    if not index.mark_visit(url, title, favicon_url, icon):
        raise HTTPException(status_code=400, detail="Visit not recorded")
    page = index.get_page(url)
    return {"ok": True, "page": page.to_dict() if page else None}


@app.get("/api/favicon")
def get_favicon(url: str = ""):
    """Serve the stored PNG bytes as is.

    Reads storage directly instead of the decoded-icon memory cache, which
    only holds decoded images for suggestion rendering.
    """
    data = get_index().favicons.fetch_bytes(url)
    if data is None:
        raise HTTPException(status_code=404, detail="Unknown favicon")
    return Response(content=data, media_type="image/png")


@app.get("/api/pages")
def get_page_record(url: str):
    record = get_index().get_page(url)
    if record is None:
        raise HTTPException(status_code=404, detail="Unknown page")
    return record.to_dict()


@app.post("/admin/expire")
def admin_expire():
    """Run an expiration sweep now instead of waiting for the timer."""
    result = get_expirer().run_once()
    if result is None:
        return {"skipped": True}
    return {"skipped": False, **result.to_dict()}


@app.post("/admin/fts/rebuild")
def admin_fts_rebuild():
    """Rebuild the autocomplete search index from the page table."""
    count = get_db().rebuild_fts()
    return {"indexed": count}
