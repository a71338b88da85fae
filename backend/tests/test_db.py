from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import event, select
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError

from backend.app.db import (
    DataStoreUnavailableError,
    complete_job,
    create_job,
    escape_like,
    fail_job,
    fetch_search_candidates,
    get_job,
    get_today_quota_used,
    insert_seed_keywords,
    is_datastore_unavailable,
    load_due_keywords,
    make_engine,
    persist_keyword_results,
)
from backend.app.models import Channel, Keyword, VideoKeyword
from backend.app.services.ingestion_providers import EnrichedVideo

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_video(video_id, channel_id="c1", views=5000, subscribers=100, multiplier=50.0, days_ago=5):
    return EnrichedVideo(
        youtube_video_id=video_id,
        youtube_channel_id=channel_id,
        channel_title=f"Channel {channel_id}",
        title=f"Video {video_id}",
        thumbnail_url=None,
        views=views,
        subscribers=subscribers,
        published_at=NOW - timedelta(days=days_ago),
        multiplier=multiplier,
        views_per_day=views / days_ago,
        like_ratio=None,
        outlier_score=1.0,
        outlier_tier=["breakout"],
    )


def add_keyword(engine, keyword, priority=2, last_ingested_at=None, niche="general"):
    with engine.begin() as conn:
        result = conn.execute(
            Keyword.__table__.insert().values(
                keyword=keyword,
                niche=niche,
                priority=priority,
                last_ingested_at=last_ingested_at,
                created_at=NOW,
            )
        )
        return result.inserted_primary_key[0]


def test_load_due_keywords_order_and_cooldown(engine):
    add_keyword(engine, "fresh", priority=3, last_ingested_at=NOW - timedelta(hours=2))
    add_keyword(engine, "stale-low", priority=1, last_ingested_at=NOW - timedelta(days=3))
    add_keyword(engine, "stale-high", priority=3, last_ingested_at=NOW - timedelta(days=2))
    add_keyword(engine, "never-high", priority=3)
    add_keyword(engine, "older-high", priority=3, last_ingested_at=NOW - timedelta(days=5))

    due = load_due_keywords(engine, limit=10, now=NOW)
    assert [k["keyword"] for k in due] == ["never-high", "older-high", "stale-high", "stale-low"]
    assert due[1]["last_ingested_at"].tzinfo is not None
    assert len(load_due_keywords(engine, limit=2, now=NOW)) == 2


def test_persist_is_idempotent(engine):
    keyword_id = add_keyword(engine, "cooking")
    videos = [make_video("v1"), make_video("v2", channel_id="c2", views=300, subscribers=1000, multiplier=0.3)]

    assert persist_keyword_results(engine, keyword_id, videos, NOW) == 2
    first = fetch_search_candidates(engine, "cook")
    assert persist_keyword_results(engine, keyword_id, videos, NOW + timedelta(hours=1)) == 2
    second = fetch_search_candidates(engine, "cook")

    assert first == second
    with engine.connect() as conn:
        links = conn.execute(select(VideoKeyword.__table__)).all()
        channels = conn.execute(select(Channel.__table__)).all()
    assert len(links) == 2
    assert len(channels) == 2


def test_persist_overwrites_subscriber_count(engine):
    keyword_id = add_keyword(engine, "cooking")
    persist_keyword_results(engine, keyword_id, [make_video("v1", subscribers=100)], NOW)
    persist_keyword_results(engine, keyword_id, [make_video("v1", subscribers=2500, multiplier=2.0)], NOW)
    (row,) = fetch_search_candidates(engine, "cooking")
    assert row["subscribers"] == 2500
    assert row["multiplier"] == 2.0


def test_persist_skips_videos_without_channel(engine):
    keyword_id = add_keyword(engine, "cooking")
    assert persist_keyword_results(engine, keyword_id, [make_video("orphan", channel_id="")], NOW) == 0
    (kw,) = load_due_keywords(engine, limit=5, now=NOW + timedelta(days=2))
    assert kw["last_ingested_at"] == NOW


def test_search_candidates_match_keyword_substring(engine):
    cooking = add_keyword(engine, "Quick Cooking Hacks")
    other = add_keyword(engine, "100%_pure")
    persist_keyword_results(engine, cooking, [make_video("v1", multiplier=5.0), make_video("v2", multiplier=9.0)], NOW)
    persist_keyword_results(engine, other, [make_video("v3", multiplier=1.0), make_video("v1", multiplier=5.0)], NOW)

    rows = fetch_search_candidates(engine, "cooking")
    assert [r["id"] for r in rows] == ["v2", "v1"]
    assert rows[0]["published_at"].tzinfo is not None

    # wildcards in the query are literal
    assert [r["id"] for r in fetch_search_candidates(engine, "0%_")] == ["v1", "v3"]
    assert fetch_search_candidates(engine, "_") != []
    assert fetch_search_candidates(engine, "%x") == []


def test_escape_like():
    assert escape_like("50%_off\\") == "50\\%\\_off\\\\"


def test_job_lifecycle_and_daily_quota(engine):
    job_id = create_job(engine, "cron", NOW)
    assert get_job(engine, job_id)["status"] == "running"
    complete_job(engine, job_id, 204, {"errors": []}, NOW)
    job = get_job(engine, job_id)
    assert job["status"] == "completed"
    assert job["job_type"] == "youtube_keyword_ingest"
    assert job["query"] == "cron"
    assert job["metadata"] == {"errors": []}

    failed = create_job(engine, "cron", NOW)
    fail_job(engine, failed, 102, "boom" * 1000, None, NOW)
    assert len(get_job(engine, failed)["error_message"]) == 2000

    yesterday = create_job(engine, "cron", NOW - timedelta(days=1))
    complete_job(engine, yesterday, 5000, {}, NOW - timedelta(days=1))

    # only today's completed jobs count
    assert get_today_quota_used(engine, NOW) == 204


def test_insert_seed_keywords_skips_existing(engine):
    seeds = [
        {"keyword": "how to budget", "niche": "Finance", "priority": 3},
        {"keyword": "how to budget", "niche": "Fitness", "priority": 2},
    ]
    assert insert_seed_keywords(engine, seeds) == 2
    assert insert_seed_keywords(engine, seeds + [{"keyword": "gym", "niche": "Fitness", "priority": 2}]) == 1


def test_missing_tables_are_reported_as_unavailable():
    bare = make_engine("sqlite://")
    with pytest.raises(DataStoreUnavailableError):
        load_due_keywords(bare, limit=3)


def test_is_datastore_unavailable():
    assert is_datastore_unavailable(OperationalError("select 1", {}, Exception("connection refused")))
    assert is_datastore_unavailable(ProgrammingError("select", {}, Exception('relation "videos" does not exist')))
    assert not is_datastore_unavailable(ValueError("bad input"))


class DriverError(Exception):
    def __init__(self, message, pgcode=None):
        super().__init__(message)
        self.pgcode = pgcode


def test_lock_conflicts_are_not_outages():
    assert not is_datastore_unavailable(
        OperationalError("INSERT INTO channels ...", {}, DriverError("deadlock detected", pgcode="40P01"))
    )
    assert not is_datastore_unavailable(
        OperationalError("UPDATE videos ...", {}, DriverError("could not serialize access", pgcode="40001"))
    )
    assert not is_datastore_unavailable(OperationalError("INSERT ...", {}, DriverError("deadlock detected")))


def test_statement_parameters_never_classify_an_error():
    error = IntegrityError("INSERT INTO videos ...", ("Why my stream timed out",), Exception("UNIQUE constraint failed"))
    assert "timed out" in str(error)
    assert not is_datastore_unavailable(error)
    missing_column = ProgrammingError("SELECT ...", {}, DriverError('column "x" does not exist', pgcode="42703"))
    assert not is_datastore_unavailable(missing_column)


def test_driver_outages_are_detected():
    assert is_datastore_unavailable(OperationalError("SELECT 1", {}, DriverError("server gone", pgcode="08006")))
    assert is_datastore_unavailable(OperationalError("SELECT 1", {}, DriverError("canceling statement", pgcode="57014")))
    assert is_datastore_unavailable(ProgrammingError("SELECT 1", {}, DriverError("missing", pgcode="42P01")))
    assert is_datastore_unavailable(
        OperationalError("SELECT 1", {}, DriverError("ssl error"), connection_invalidated=True)
    )


def test_upserts_write_rows_in_natural_key_order(engine):
    keyword_id = add_keyword(engine, "cooking")
    written = []

    @event.listens_for(engine, "before_cursor_execute")
    def capture(_conn, _cursor, statement, parameters, _context, executemany):
        if statement.startswith("INSERT INTO channels") or statement.startswith("INSERT INTO videos"):
            batches = parameters if executemany else [parameters]
            written.append([value for batch in batches for value in batch if value in ids])

    ids = {"c1", "c2", "c3", "v1", "v2", "v3"}
    videos = [
        make_video("v3", channel_id="c3"),
        make_video("v1", channel_id="c1"),
        make_video("v2", channel_id="c2"),
    ]
    try:
        persist_keyword_results(engine, keyword_id, videos, NOW)
    finally:
        event.remove(engine, "before_cursor_execute", capture)

    assert written == [["c1", "c2", "c3"], ["v1", "v2", "v3"]]
