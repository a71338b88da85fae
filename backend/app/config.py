import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

DEFAULT_SCRAPER_API_URL = "https://api.scraperapi.com/structured/youtube/search"
DEFAULT_CORS_ORIGIN = "http://localhost:5173"
DEFAULT_QUOTA_DAILY_LIMIT = 10_000
DEFAULT_INGEST_KEYWORDS_LIMIT = 3
DEFAULT_INGEST_MAX_RESULTS = 15
DEFAULT_INGEST_TIME_BUDGET_SECONDS = 50


class ConfigurationError(Exception):
    """A required setting is missing. Raised before any job or query work starts."""

    def __init__(self, key: str):
        super().__init__(f"Missing required configuration: {key}")
        self.key = key


def get_env(key: str, default: str | None = None) -> str | None:
    value = (os.getenv(key) or "").strip()
    return value or default


def require_env(key: str) -> str:
    value = get_env(key)
    if not value:
        raise ConfigurationError(key)
    return value


def get_int_env(key: str, default: int) -> int:
    raw = get_env(key)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def parse_cors_origins() -> tuple[list[str], bool]:
    raw = get_env("CORS_ALLOWED_ORIGINS") or ""
    if not raw:
        return [DEFAULT_CORS_ORIGIN], True
    if raw == "*":
        return ["*"], False
    origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    if not origins:
        return [DEFAULT_CORS_ORIGIN], True
    return origins, True


def get_admin_secret() -> str | None:
    return get_env("ADMIN_SECRET") or get_env("CRON_SECRET")


@dataclass(frozen=True)
class IngestSettings:
    daily_quota_limit: int = DEFAULT_QUOTA_DAILY_LIMIT
    keywords_limit: int = DEFAULT_INGEST_KEYWORDS_LIMIT
    max_results: int = DEFAULT_INGEST_MAX_RESULTS
    time_budget_seconds: int = DEFAULT_INGEST_TIME_BUDGET_SECONDS
    trigger: str = "cron"


def load_ingest_settings() -> IngestSettings:
    return IngestSettings(
        daily_quota_limit=get_int_env("QUOTA_DAILY_LIMIT", DEFAULT_QUOTA_DAILY_LIMIT),
        keywords_limit=get_int_env("INGEST_KEYWORDS_LIMIT", DEFAULT_INGEST_KEYWORDS_LIMIT),
        max_results=get_int_env("INGEST_MAX_RESULTS", DEFAULT_INGEST_MAX_RESULTS),
        time_budget_seconds=get_int_env("INGEST_TIME_BUDGET_SECONDS", DEFAULT_INGEST_TIME_BUDGET_SECONDS),
    )
