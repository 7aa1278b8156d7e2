import os
from functools import lru_cache
from pathlib import Path


DEFAULT_GRANULARITIES = ("WEEKLY", "MONTHLY")


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        granularities: tuple[str, ...],
        bulk_regeneration_threshold: int,
        regeneration_chunk_days: int,
        log_level: str,
        default_tenant: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.granularities = granularities
        self.bulk_regeneration_threshold = bulk_regeneration_threshold
        self.regeneration_chunk_days = regeneration_chunk_days
        self.log_level = log_level
        self.default_tenant = default_tenant


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("TRENDCUBE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _parse_granularities(raw: str) -> tuple[str, ...]:
    names = tuple(part.strip().upper() for part in raw.split(",") if part.strip())
    return names or DEFAULT_GRANULARITIES


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "trendcube.db"
    database_url = os.getenv("TRENDCUBE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("TRENDCUBE_TIMEZONE", "UTC")
    granularities = _parse_granularities(
        os.getenv("TRENDCUBE_GRANULARITIES", ",".join(DEFAULT_GRANULARITIES))
    )
    bulk_threshold = int(os.getenv("TRENDCUBE_BULK_THRESHOLD", "500"))
    chunk_days = int(os.getenv("TRENDCUBE_REGEN_CHUNK_DAYS", "92"))
    log_level = os.getenv("TRENDCUBE_LOG_LEVEL", "INFO").upper()
    default_tenant = os.getenv("TRENDCUBE_DEFAULT_TENANT", "default")
    if chunk_days <= 0:
        raise ValueError("TRENDCUBE_REGEN_CHUNK_DAYS must be positive")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        granularities=granularities,
        bulk_regeneration_threshold=bulk_threshold,
        regeneration_chunk_days=chunk_days,
        log_level=log_level,
        default_tenant=default_tenant,
    )
