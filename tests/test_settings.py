"""Tests for settings.py"""

from pageindex.core.settings import Settings


def test_defaults(monkeypatch):
    for name in (
        "DB_PATH",
        "VISIT_WEIGHT_SECONDS",
        "RETENTION_SECONDS",
        "EXPIRE_INTERVAL_SECONDS",
        "FAVICON_CACHE_SIZE",
        "EXPIRER_ENABLED",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)

    s = Settings.from_env()
    assert s.visit_weight_seconds == 86400
    assert s.retention_seconds == 90 * 24 * 60 * 60
    assert s.expire_interval_seconds == 180.0
    assert s.favicon_cache_size == 200
    assert s.expirer_enabled is True
    assert s.log_level == "INFO"


def test_overrides(monkeypatch):
    monkeypatch.setenv("DB_PATH", ":memory:")
    monkeypatch.setenv("VISIT_WEIGHT_SECONDS", " 60 ")
    monkeypatch.setenv("RETENTION_SECONDS", "3600")
    monkeypatch.setenv("EXPIRE_INTERVAL_SECONDS", "0.5")
    monkeypatch.setenv("EXPIRER_ENABLED", "0")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    s = Settings.from_env()
    assert s.db_path == ":memory:"
    assert s.visit_weight_seconds == 60
    assert s.retention_seconds == 3600
    assert s.expire_interval_seconds == 0.5
    assert s.expirer_enabled is False
    assert s.log_level == "DEBUG"
