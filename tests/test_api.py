"""Tests for the HTTP surface in main.py"""

import io
import struct
import zlib

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from pageindex.main import app, get_index


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("DB_PATH", ":memory:")
    monkeypatch.setenv("EXPIRER_ENABLED", "0")
    monkeypatch.setenv("RETENTION_SECONDS", "3600")
    with TestClient(app) as c:
        yield c


def png_bytes(color=(255, 0, 0, 255), size=(32, 32)):
    buf = io.BytesIO()
    Image.new("RGBA", size, color).save(buf, format="PNG")
    return buf.getvalue()


def oversized_png_header(width=30000, height=30000):
    def chunk(kind, data):
        return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", zlib.crc32(kind + data))

    ihdr = struct.pack(">IIBBBBB", width, height, 8, 6, 0, 0, 0)
    return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", ihdr) + chunk(b"IDAT", b"") + chunk(b"IEND", b"")


def visit(client, url, title, favicon_url="", favicon=None, favicon_key=None):
    data = {"url": url, "title": title, "favicon_url": favicon_url}
    if favicon_key is not None:
        data["favicon_key"] = str(favicon_key)
    files = {"favicon": ("favicon.png", favicon, "image/png")} if favicon is not None else None
    return client.post("/api/visits", data=data, files=files)


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "pages": 0, "favicons": 0}


def test_visit_then_autocomplete(client):
    resp = visit(client, "https://example.com/a", "Example A", "https://example.com/favicon.ico", png_bytes())
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["page"]["visit_count"] == 1
    assert body["page"]["favicon_id"] is not None

    resp = client.get("/api/autocomplete", params={"q": "exam", "limit": 5})
    assert resp.status_code == 200
    assert resp.json() == [
        {
            "url": "https://example.com/a",
            "title": "Example A",
            "favicon_url": "https://example.com/favicon.ico",
        }
    ]


def test_repeat_visit_counts(client):
    visit(client, "https://example.com/a", "Example A")
    resp = visit(client, "https://example.com/a", "Example A")
    page = resp.json()["page"]
    assert page["visit_count"] == 2

    resp = client.get("/api/pages", params={"url": "https://example.com/a"})
    assert resp.json()["visit_count"] == 2


def test_bad_url_is_rejected(client):
    resp = visit(client, "not-a-url", "T")
    assert resp.status_code == 400
    assert client.get("/health").json()["pages"] == 0


def test_unreadable_favicon_is_ignored(client):
    resp = visit(client, "https://example.com/a", "A", "https://example.com/favicon.ico", b"junk")
    assert resp.status_code == 200
    assert resp.json()["page"]["favicon_id"] is None


def test_favicon_endpoint(client):
    visit(client, "https://example.com/a", "A", "https://example.com/favicon.ico", png_bytes(), favicon_key=7)

    resp = client.get("/api/favicon", params={"url": "https://example.com/favicon.ico"})
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/png"
    assert Image.open(io.BytesIO(resp.content)).size == (16, 16)

    assert client.get("/api/favicon", params={"url": "https://nowhere.example/x.ico"}).status_code == 404


def test_blank_autocomplete(client):
    visit(client, "https://example.com/a", "A")
    assert client.get("/api/autocomplete", params={"q": "  "}).json() == []


def test_unknown_page(client):
    assert client.get("/api/pages", params={"url": "https://example.com/none"}).status_code == 404


def test_admin_expire(client):
    visit(client, "https://example.com/a", "A")
    resp = client.post("/admin/expire")
    assert resp.status_code == 200
    body = resp.json()
    assert body["skipped"] is False
    assert body["pages_deleted"] == 0
    assert body["errors"] == []


def test_admin_fts_rebuild(client):
    visit(client, "https://example.com/a", "A")
    visit(client, "https://example.org/b", "B")
    assert client.post("/admin/fts/rebuild").json() == {"indexed": 2}
    assert len(client.get("/api/autocomplete", params={"q": "example"}).json()) == 2


def test_oversized_favicon_is_ignored(client):
    resp = visit(client, "https://example.com/a", "A", "https://example.com/favicon.ico", oversized_png_header())
    assert resp.status_code == 200
    assert resp.json()["page"]["favicon_id"] is None
    assert client.get("/health").json()["favicons"] == 0


def test_favicon_endpoint_serves_stored_bytes(client):
    visit(client, "https://example.com/a", "A", "https://example.com/favicon.ico", png_bytes(), favicon_key=3)

    stored = get_index().favicons.fetch_bytes("https://example.com/favicon.ico")
    resp = client.get("/api/favicon", params={"url": "https://example.com/favicon.ico"})
    assert resp.content == stored
