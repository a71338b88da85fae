import hmac
import logging
import time
from collections import deque
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

try:
    from backend.app.config import (
        ConfigurationError,
        get_admin_secret,
        get_env,
        load_ingest_settings,
        parse_cors_origins,
        require_env,
        DEFAULT_SCRAPER_API_URL,
    )
    from backend.app.db import DataStoreUnavailableError, get_engine, init_db, insert_seed_keywords
    from backend.app.services.ingestion_job import run_ingestion_job
    from backend.app.services.ingestion_providers import ScraperProvider, YouTubeProvider
    from backend.app.services.keyword_seeds import generate_seed_keywords
    from backend.app.services.search_planner import (
        DEFAULT_SEARCH_MODE,
        SEARCH_MODES,
        STRICT_MULTIPLIER,
        search_from_db,
    )
except ModuleNotFoundError:
    from app.config import (
        ConfigurationError,
        get_admin_secret,
        get_env,
        load_ingest_settings,
        parse_cors_origins,
        require_env,
        DEFAULT_SCRAPER_API_URL,
    )
    from app.db import DataStoreUnavailableError, get_engine, init_db, insert_seed_keywords
    from app.services.ingestion_job import run_ingestion_job
    from app.services.ingestion_providers import ScraperProvider, YouTubeProvider
    from app.services.keyword_seeds import generate_seed_keywords
    from app.services.search_planner import (
        DEFAULT_SEARCH_MODE,
        SEARCH_MODES,
        STRICT_MULTIPLIER,
        search_from_db,
    )


logging.basicConfig(level=get_env("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)


# ---------------------------
# Helpers
# ---------------------------

CACHE: dict[str, tuple[float, Any]] = {}

DEMO_CACHE_KEY = "demo_search_best"
DEMO_CACHE_TTL_SECONDS = 60 * 60 * 6  # 6 hours
DEMO_NICHES = [
    "Notion templates",
    "faceless history shorts",
    "ChatGPT workflows",
    "productivity app reviews",
]

SUGGESTED_SEARCHES = [
    {"term": "AI Agents", "score": 5},
    {"term": "Deep Research", "score": 3},
    {"term": "Faceless Travel", "score": 2},
    {"term": "SaaS Micro-scripts", "score": 1},
]

SEARCH_QUERY_MAX_CHARS = 100

API_RATE_LIMIT_WINDOW_SECONDS = 60
API_RATE_LIMIT_MAX_REQUESTS = 10
API_RATE_LIMIT_BUCKETS: dict[str, deque] = {}


def cache_get(key: str):
    hit = CACHE.get(key)
    if not hit:
        return None
    expires_at, value = hit
    if time.time() > expires_at:
        CACHE.pop(key, None)
        return None
    return value


def cache_set_custom(key: str, value: Any, ttl: int):
    CACHE[key] = (time.time() + ttl, value)


class ApiError(HTTPException):
    """HTTPException that also carries a stable `error_code` for the JSON body."""

    def __init__(self, status_code: int, detail: str, error_code: str):
        super().__init__(status_code=status_code, detail=detail)
        self.error_code = error_code


def get_client_ip(request: Request) -> str:
    forwarded = (request.headers.get("x-forwarded-for") or "").strip()
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def enforce_api_rate_limit(request: Request, scope: str = "search") -> None:
    now_ts = time.time()
    key = f"{scope}:{get_client_ip(request)}"
    bucket = API_RATE_LIMIT_BUCKETS.get(key)
    if bucket is None:
        bucket = deque()
        API_RATE_LIMIT_BUCKETS[key] = bucket

    cutoff = now_ts - API_RATE_LIMIT_WINDOW_SECONDS
    while bucket and bucket[0] < cutoff:
        bucket.popleft()

    if len(bucket) >= API_RATE_LIMIT_MAX_REQUESTS:
        raise ApiError(429, "Too many requests. Please wait a minute and try again.", "rate_limited")

    bucket.append(now_ts)


def require_bearer(request: Request, secret: str) -> None:
    provided = request.headers.get("authorization") or ""
    if not hmac.compare_digest(provided.encode(), f"Bearer {secret}".encode()):
        raise ApiError(401, "Unauthorized", "unauthorized")


def build_secondary_provider() -> ScraperProvider | None:
    api_key = get_env("SCRAPER_API_KEY")
    if not api_key:
        return None
    return ScraperProvider(api_key, get_env("SCRAPER_API_URL", DEFAULT_SCRAPER_API_URL))


# ---------------------------
# App setup
# ---------------------------

app = FastAPI()

cors_origins, cors_credentials = parse_cors_origins()

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=cors_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ApiError)
async def api_error_handler(_request: Request, exc: ApiError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error_code": exc.error_code},
    )


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(_request: Request, exc: ConfigurationError):
    logger.error(f"Configuration error: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Server is not configured for this request.", "error_code": "misconfigured"},
    )


@app.exception_handler(DataStoreUnavailableError)
async def datastore_unavailable_handler(_request: Request, _exc: DataStoreUnavailableError):
    return JSONResponse(
        status_code=503,
        content={
            "detail": "Data is temporarily unavailable. Please try again shortly.",
            "error_code": "datastore_unavailable",
        },
    )


@app.on_event("startup")
def on_startup_create_tables():
    if not get_env("DATABASE_URL"):
        logger.warning("DATABASE_URL is not set; search and ingestion are disabled")
        return
    try:
        init_db(get_engine())
    except DataStoreUnavailableError:
        logger.warning("Data store unavailable at startup; tables not created")


# ---------------------------
# Routes
# ---------------------------

@app.get("/health")
def health():
    return {"ok": True}


@app.get("/api/cron/ingest")
@app.post("/api/cron/ingest")
def cron_ingest(request: Request):
    secret = get_env("CRON_SECRET")
    if not secret:
        raise ConfigurationError("CRON_SECRET")
    require_bearer(request, secret)

    api_key = require_env("YOUTUBE_API_KEY")
    require_env("DATABASE_URL")

    settings = load_ingest_settings()
    primary = YouTubeProvider(api_key, settings.max_results)
    secondary = build_secondary_provider()

    try:
        return run_ingestion_job(get_engine(), primary, secondary, settings, trigger="cron")
    except DataStoreUnavailableError:
        raise
    except Exception:
        # Details stay in the job row and the log
        raise ApiError(500, "Ingestion failed.", "ingestion_failed")


@app.get("/api/search")
def search(
    request: Request,
    q: str = Query(default=""),
    mode: str = Query(default=DEFAULT_SEARCH_MODE),
):
    query = (q or "").strip()
    if not query:
        raise ApiError(400, "Search query is required.", "invalid_query")
    if len(query) > SEARCH_QUERY_MAX_CHARS:
        raise ApiError(400, f"Search query must be {SEARCH_QUERY_MAX_CHARS} characters or fewer.", "invalid_query")

    search_mode = (mode or DEFAULT_SEARCH_MODE).strip().lower()
    if search_mode not in SEARCH_MODES:
        raise ApiError(400, "mode must be one of: momentum, proven.", "invalid_mode")

    enforce_api_rate_limit(request, scope="search")
    return search_from_db(get_engine(), query, search_mode)


@app.get("/api/admin/seed-keywords")
@app.post("/api/admin/seed-keywords")
def seed_keywords(request: Request):
    secret = get_admin_secret()
    if not secret:
        raise ConfigurationError("ADMIN_SECRET")
    require_bearer(request, secret)

    keywords = generate_seed_keywords()
    inserted = insert_seed_keywords(get_engine(), keywords)
    logger.info(f"Seeded keywords: {inserted} inserted of {len(keywords)}")
    return {
        "ok": True,
        "total": len(keywords),
        "inserted": inserted,
        "skipped": len(keywords) - inserted,
    }


@app.get("/api/suggested-searches")
def suggested_searches():
    return [dict(item) for item in SUGGESTED_SEARCHES]


@app.get("/api/demo-search")
def demo_search():
    cached = cache_get(DEMO_CACHE_KEY)
    if cached:
        return cached

    fallback = {"query": DEMO_NICHES[0], "count": 0}
    try:
        engine = get_engine()
        counted = []
        for niche in DEMO_NICHES:
            response = search_from_db(engine, niche, "momentum")
            count = sum(1 for item in response["results"] if item["multiplier"] >= STRICT_MULTIPLIER)
            counted.append({"query": niche, "count": count})
    except (ConfigurationError, DataStoreUnavailableError) as e:
        logger.warning(f"Demo search unavailable: {type(e).__name__}")
        return fallback

    best = sorted(counted, key=lambda item: item["count"], reverse=True)[0] if counted else fallback
    cache_set_custom(DEMO_CACHE_KEY, best, DEMO_CACHE_TTL_SECONDS)
    return best
