import asyncio
import json

import pytest
from fastapi import HTTPException
from starlette.requests import Request

import backend.main as main_module
from backend.app.config import ConfigurationError
from backend.app.db import DataStoreUnavailableError
from backend.main import API_RATE_LIMIT_BUCKETS, CACHE, ApiError


def make_request(ip: str = "127.0.0.1", headers=None) -> Request:
    return Request(
        {
            "type": "http",
            "method": "GET",
            "path": "/",
            "headers": headers or [],
            "client": (ip, 8000),
            "query_string": b"",
            "server": ("test", 80),
            "scheme": "http",
            "http_version": "1.1",
        }
    )


def bearer(token: str):
    return [(b"authorization", f"Bearer {token}".encode())]


@pytest.fixture(autouse=True)
def clean_state(monkeypatch):
    CACHE.clear()
    API_RATE_LIMIT_BUCKETS.clear()
    for key in ("CRON_SECRET", "ADMIN_SECRET", "SCRAPER_API_KEY", "YOUTUBE_API_KEY", "DATABASE_URL"):
        monkeypatch.delenv(key, raising=False)
    yield
    CACHE.clear()
    API_RATE_LIMIT_BUCKETS.clear()


def test_health():
    assert main_module.health() == {"ok": True}


def test_cron_without_secret_is_misconfigured():
    with pytest.raises(ConfigurationError) as exc_info:
        main_module.cron_ingest(make_request(headers=bearer("anything")))
    assert exc_info.value.key == "CRON_SECRET"


def test_cron_rejects_wrong_bearer(monkeypatch):
    monkeypatch.setenv("CRON_SECRET", "s3cret")
    for headers in (None, bearer("nope"), [(b"authorization", b"s3cret")]):
        with pytest.raises(ApiError) as exc_info:
            main_module.cron_ingest(make_request(headers=headers))
        assert exc_info.value.status_code == 401
        assert exc_info.value.error_code == "unauthorized"


def test_cron_requires_api_key_after_auth(monkeypatch):
    monkeypatch.setenv("CRON_SECRET", "s3cret")
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    with pytest.raises(ConfigurationError) as exc_info:
        main_module.cron_ingest(make_request(headers=bearer("s3cret")))
    assert exc_info.value.key == "YOUTUBE_API_KEY"


def test_cron_runs_ingestion_job(monkeypatch, engine):
    monkeypatch.setenv("CRON_SECRET", "s3cret")
    monkeypatch.setenv("YOUTUBE_API_KEY", "yt-key")
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setenv("SCRAPER_API_KEY", "scrape-key")
    monkeypatch.setattr(main_module, "get_engine", lambda: engine)
    seen = {}

    def fake_run(run_engine, primary, secondary, settings, trigger=None):
        seen.update(engine=run_engine, primary=primary, secondary=secondary, settings=settings, trigger=trigger)
        return {"ok": True, "job_id": 1}

    monkeypatch.setattr(main_module, "run_ingestion_job", fake_run)

    assert main_module.cron_ingest(make_request(headers=bearer("s3cret"))) == {"ok": True, "job_id": 1}
    assert seen["engine"] is engine
    assert seen["primary"].name == "youtube"
    assert seen["secondary"].name == "scraper"
    assert seen["trigger"] == "cron"
    assert seen["settings"].daily_quota_limit == 10_000


def test_cron_wraps_unexpected_failure(monkeypatch, engine):
    monkeypatch.setenv("CRON_SECRET", "s3cret")
    monkeypatch.setenv("YOUTUBE_API_KEY", "yt-key")
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setattr(main_module, "get_engine", lambda: engine)

    def explode(*_args, **_kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(main_module, "run_ingestion_job", explode)
    with pytest.raises(ApiError) as exc_info:
        main_module.cron_ingest(make_request(headers=bearer("s3cret")))
    assert exc_info.value.status_code == 500
    assert exc_info.value.error_code == "ingestion_failed"


def test_search_validation():
    cases = [
        ("", "momentum", "invalid_query"),
        ("   ", "momentum", "invalid_query"),
        ("x" * 101, "momentum", "invalid_query"),
        ("cooking", "sideways", "invalid_mode"),
    ]
    for q, mode, code in cases:
        with pytest.raises(ApiError) as exc_info:
            main_module.search(request=make_request(), q=q, mode=mode)
        assert exc_info.value.status_code == 400
        assert isinstance(exc_info.value, HTTPException)
        assert exc_info.value.error_code == code


def test_search_rate_limit(monkeypatch):
    calls = []
    monkeypatch.setattr(main_module, "get_engine", lambda: "engine")
    monkeypatch.setattr(
        main_module,
        "search_from_db",
        lambda engine, q, mode: calls.append((q, mode)) or {"results": [], "searchType": "strict"},
    )

    for _ in range(10):
        main_module.search(request=make_request("10.0.0.1"), q="cooking", mode="momentum")
    with pytest.raises(ApiError) as exc_info:
        main_module.search(request=make_request("10.0.0.1"), q="cooking", mode="momentum")
    assert exc_info.value.status_code == 429
    assert exc_info.value.error_code == "rate_limited"

    # other clients have their own window
    main_module.search(request=make_request("10.0.0.2"), q="cooking", mode="PROVEN")
    assert calls[-1] == ("cooking", "proven")
    assert len(calls) == 11


def test_forwarded_for_header_sets_client_ip():
    request = make_request(headers=[(b"x-forwarded-for", b"203.0.113.9, 10.0.0.1")])
    assert main_module.get_client_ip(request) == "203.0.113.9"


def test_seed_keywords(monkeypatch, engine):
    monkeypatch.setenv("CRON_SECRET", "cron-only")
    monkeypatch.setattr(main_module, "get_engine", lambda: engine)

    first = main_module.seed_keywords(make_request(headers=bearer("cron-only")))
    assert first == {"ok": True, "total": 300, "inserted": 300, "skipped": 0}

    monkeypatch.setenv("ADMIN_SECRET", "admin")
    with pytest.raises(ApiError):
        main_module.seed_keywords(make_request(headers=bearer("cron-only")))
    second = main_module.seed_keywords(make_request(headers=bearer("admin")))
    assert second == {"ok": True, "total": 300, "inserted": 0, "skipped": 300}


def test_suggested_searches():
    items = main_module.suggested_searches()
    assert [item["term"] for item in items] == ["AI Agents", "Deep Research", "Faceless Travel", "SaaS Micro-scripts"]
    items[0]["score"] = 99
    assert main_module.suggested_searches()[0]["score"] == 5


def test_demo_search_picks_best_niche_and_caches(monkeypatch):
    counts = {"Notion templates": 1, "faceless history shorts": 4, "ChatGPT workflows": 2, "productivity app reviews": 0}
    calls = []

    def fake_search(_engine, query, mode):
        calls.append(query)
        results = [{"multiplier": 3.5} for _ in range(counts[query])] + [{"multiplier": 2.6}]
        return {"results": results}

    monkeypatch.setattr(main_module, "get_engine", lambda: "engine")
    monkeypatch.setattr(main_module, "search_from_db", fake_search)

    assert main_module.demo_search() == {"query": "faceless history shorts", "count": 4}
    assert main_module.demo_search() == {"query": "faceless history shorts", "count": 4}
    assert len(calls) == 4


def test_demo_search_falls_back_without_database():
    assert main_module.demo_search() == {"query": "Notion templates", "count": 0}
    assert main_module.DEMO_CACHE_KEY not in CACHE


def test_demo_search_falls_back_when_datastore_is_down(monkeypatch):
    monkeypatch.setattr(main_module, "get_engine", lambda: "engine")

    def down(*_args, **_kwargs):
        raise DataStoreUnavailableError("connection refused")

    monkeypatch.setattr(main_module, "search_from_db", down)
    assert main_module.demo_search() == {"query": "Notion templates", "count": 0}


def test_error_handlers_shape_json():
    response = asyncio.run(main_module.api_error_handler(make_request(), ApiError(429, "slow down", "rate_limited")))
    assert response.status_code == 429
    assert json.loads(response.body) == {"detail": "slow down", "error_code": "rate_limited"}

    response = asyncio.run(main_module.configuration_error_handler(make_request(), ConfigurationError("DATABASE_URL")))
    assert response.status_code == 500
    assert json.loads(response.body)["error_code"] == "misconfigured"

    response = asyncio.run(
        main_module.datastore_unavailable_handler(make_request(), DataStoreUnavailableError("down"))
    )
    assert response.status_code == 503
    assert json.loads(response.body)["error_code"] == "datastore_unavailable"
