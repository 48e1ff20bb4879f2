import os
from typing import List, Optional


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv("APP_ENV", "local")
        # No default DSN: an unconfigured deployment must fail loudly instead of
        # quietly serving empty results.
        self.db_url: Optional[str] = (os.getenv("DATABASE_URL") or "").strip() or None
        self.db_pool_min = _env_int("DB_POOL_MIN_SIZE", 1)
        self.db_pool_max = _env_int("DB_POOL_MAX_SIZE", 10)
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://localhost:5173", "http://127.0.0.1:5173"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        # All "today / this week / this month" windows are cut in this zone.
        self.timezone = os.getenv("KIOSK_TIMEZONE", "UTC").strip() or "UTC"
        self.store_dir = os.getenv("KIOSK_STORE_DIR", ".kioskpro/store").strip() or ".kioskpro/store"
        self.session_days = _env_int("SESSION_DAYS", 7)
        self.dashboard_refresh_seconds = _env_int("DASHBOARD_REFRESH_SECONDS", 30)

    @property
    def expose_errors(self) -> bool:
        return self.env in {"local", "dev"}


settings = Settings()
