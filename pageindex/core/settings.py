from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    app_env: str
    db_path: str
    visit_weight_seconds: int
    retention_seconds: int
    expire_interval_seconds: float
    favicon_cache_size: int
    expirer_enabled: bool
    log_level: str

    @staticmethod
    def from_env() -> "Settings":
        def _b(name: str, default: str) -> bool:
            return os.getenv(name, default).strip() in ("1", "true", "True", "yes", "YES")

        def _i(name: str, default: str) -> int:
            return int(os.getenv(name, default).strip())

        return Settings(
            app_env=os.getenv("APP_ENV", "dev").strip(),
            db_path=os.getenv("DB_PATH", "/app/_local/data/pageindex.db").strip(),
            # One extra visit is worth a day of recency
            visit_weight_seconds=_i("VISIT_WEIGHT_SECONDS", "86400"),
            retention_seconds=_i("RETENTION_SECONDS", str(90 * 24 * 60 * 60)),
            expire_interval_seconds=float(os.getenv("EXPIRE_INTERVAL_SECONDS", "180").strip()),
            favicon_cache_size=_i("FAVICON_CACHE_SIZE", "200"),
            expirer_enabled=_b("EXPIRER_ENABLED", "1"),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
        )
