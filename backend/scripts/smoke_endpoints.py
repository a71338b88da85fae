from __future__ import annotations

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

from starlette.requests import Request

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import backend.main as main_module
from backend.app.db import init_db, make_engine
from backend.app.services.ingestion_providers import SearchResult, enrich_video

SMOKE_SECRET = "smoke-secret"


def make_request(ip: str = "127.0.0.1", token: str | None = None) -> Request:
    headers = [(b"authorization", f"Bearer {token}".encode())] if token else []
    return Request(
        {
            "type": "http",
            "method": "GET",
            "path": "/",
            "headers": headers,
            "client": (ip, 8000),
            "query_string": b"",
            "server": ("test", 80),
            "scheme": "http",
            "http_version": "1.1",
        }
    )


def make_video(video_id: str, channel_id: str, views: int, subscribers: int, days_ago: int):
    now = datetime.now(timezone.utc)
    return enrich_video(
        youtube_video_id=video_id,
        youtube_channel_id=channel_id,
        channel_title="Smoke Channel",
        title=f"Video {video_id}",
        thumbnail_url=f"https://img/{video_id}.jpg",
        views=views,
        subscribers=subscribers,
        likes=views // 20,
        published_at=now - timedelta(days=days_ago),
        now=now,
    )


class SmokeProvider:
    name = "youtube"

    def __init__(self, *_args, **_kwargs):
        pass

    def search_and_enrich(self, query: str) -> SearchResult:
        return SearchResult(
            videos=[
                make_video(f"{query[:8]}-hit", "UC_SMALL", 40_000, 2_000, 4),
                make_video(f"{query[:8]}-flat", "UC_BIG", 20_000, 900_000, 12),
            ],
            quota_units_used=102,
        )


def assert_true(condition: bool, message: str) -> None:
    if not condition:
        raise AssertionError(message)


def reset_state() -> None:
    main_module.CACHE.clear()
    main_module.API_RATE_LIMIT_BUCKETS.clear()


ENGINE = make_engine("sqlite://")


def test_health() -> None:
    payload = main_module.health()
    assert_true(payload.get("ok") is True, "/health should return ok=true")


def test_seed_keywords() -> None:
    reset_state()
    payload = main_module.seed_keywords(make_request(token=SMOKE_SECRET))
    assert_true(payload["total"] == 300, "/api/admin/seed-keywords should generate 300 keywords")
    again = main_module.seed_keywords(make_request(token=SMOKE_SECRET))
    assert_true(again["inserted"] == 0, "/api/admin/seed-keywords should be idempotent")


def test_cron_ingest() -> None:
    reset_state()
    with patch.object(main_module, "YouTubeProvider", SmokeProvider):
        payload = main_module.cron_ingest(make_request(token=SMOKE_SECRET))
    assert_true(payload["ok"] is True, "/api/cron/ingest should complete")
    assert_true(payload["keywords_processed"] == 3, "/api/cron/ingest should process the keyword batch")
    assert_true(payload["quota_units_used"] == 306, "/api/cron/ingest should charge 102 units per keyword")


def test_search_after_ingest() -> None:
    reset_state()
    payload = main_module.search(make_request(), q="how to", mode="momentum")
    assert_true(payload["searchType"] == "strict", "/api/search should find strict outliers")
    assert_true(all(item["multiplier"] >= 3 for item in payload["results"]), "/api/search strict results are >= 3x")
    assert_true(len(payload["results"]) > 0, "/api/search should return ingested breakouts")


def test_demo_search_cache() -> None:
    reset_state()
    payload_1 = main_module.demo_search()
    payload_2 = main_module.demo_search()
    assert_true(payload_1 == payload_2, "/api/demo-search cached response should be identical")
    assert_true(main_module.DEMO_CACHE_KEY in main_module.CACHE, "/api/demo-search should cache its answer")


def run() -> int:
    os.environ.update(
        {
            "CRON_SECRET": SMOKE_SECRET,
            "ADMIN_SECRET": SMOKE_SECRET,
            "YOUTUBE_API_KEY": "smoke-key",
            "DATABASE_URL": "sqlite://",
        }
    )
    os.environ.pop("SCRAPER_API_KEY", None)
    init_db(ENGINE)

    checks = [
        ("health", test_health),
        ("seed keywords", test_seed_keywords),
        ("cron ingest", test_cron_ingest),
        ("search after ingest", test_search_after_ingest),
        ("demo search cache", test_demo_search_cache),
    ]
    failures = []

    with patch.object(main_module, "get_engine", return_value=ENGINE):
        for check_name, check_fn in checks:
            try:
                check_fn()
                print(f"[PASS] {check_name}")
            except Exception as exc:  # pragma: no cover - smoke script output path
                failures.append((check_name, str(exc)))
                print(f"[FAIL] {check_name}: {exc}")

    if failures:
        print(f"\nSmoke checks failed: {len(failures)}")
        for check_name, message in failures:
            print(f"- {check_name}: {message}")
        return 1

    print("\nAll smoke checks passed.")
    return 0


if __name__ == "__main__":
    sys.exit(run())
