import logging
import re
from contextlib import contextmanager
from datetime import datetime, time as dt_time, timedelta, timezone
from typing import Any, Iterable, Iterator, Sequence

from sqlalchemy import create_engine, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, InterfaceError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from .config import require_env
from .models import Base, Channel, IngestionJob, Keyword, Video, VideoKeyword

logger = logging.getLogger(__name__)

KEYWORD_COOLDOWN = timedelta(hours=24)
JOB_TYPE_KEYWORD_INGEST = "youtube_keyword_ingest"
ERROR_MESSAGE_MAX_CHARS = 2000

UNAVAILABLE_MARKERS = (
    "connection refused",
    "could not connect",
    "server closed the connection",
    "connection reset",
    "timeout expired",
    "timed out",
    "no such table",
    "unable to open database",
)
UNDEFINED_RELATION_RE = re.compile(r'relation "[^"]+" does not exist')

# PostgreSQL SQLSTATE: undefined_table, plus the connection (08), resources (53)
# and operator intervention (57, includes statement timeout) classes.
# Deadlocks (40P01) and serialization failures (40001) are not outages.
UNDEFINED_TABLE_PGCODE = "42P01"
UNAVAILABLE_PGCODE_CLASSES = ("08", "53", "57")


class DataStoreUnavailableError(Exception):
    """The relational store cannot be reached or is missing its tables."""


# ------------------------
# Engine
# ------------------------

_engines: dict[str, Engine] = {}


def make_engine(db_url: str) -> Engine:
    in_memory = db_url in {"sqlite://", "sqlite:///"} or (db_url.startswith("sqlite") and ":memory:" in db_url)
    if in_memory:
        # One shared connection, otherwise every checkout sees a fresh empty database
        return create_engine(
            db_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(db_url, pool_pre_ping=True, pool_recycle=3600)


def get_engine() -> Engine:
    db_url = require_env("DATABASE_URL")
    engine = _engines.get(db_url)
    if engine is None:
        engine = make_engine(db_url)
        _engines[db_url] = engine
    return engine


def init_db(engine: Engine) -> None:
    with transaction(engine) as conn:
        Base.metadata.create_all(conn)


def is_datastore_unavailable(exc: BaseException) -> bool:
    """
    Decided from the driver error only. `str(exc)` on a SQLAlchemy error also
    renders the statement and its parameters, so it is never matched.
    """
    if isinstance(exc, DataStoreUnavailableError):
        return True
    if not isinstance(exc, DBAPIError):
        return False
    if exc.connection_invalidated:
        return True

    orig = exc.orig
    pgcode = getattr(orig, "pgcode", None)
    if pgcode:
        return pgcode == UNDEFINED_TABLE_PGCODE or pgcode[:2] in UNAVAILABLE_PGCODE_CLASSES
    if isinstance(exc, InterfaceError):
        return True

    message = str(orig).lower()
    if UNDEFINED_RELATION_RE.search(message):
        return True
    return any(marker in message for marker in UNAVAILABLE_MARKERS)


@contextmanager
def transaction(engine: Engine) -> Iterator[Connection]:
    try:
        with engine.begin() as conn:
            yield conn
    except SQLAlchemyError as e:
        if is_datastore_unavailable(e):
            logger.error(f"Data store unavailable: {type(e).__name__}")
            raise DataStoreUnavailableError(str(getattr(e, "orig", None) or e)) from e
        raise


def _insert(conn: Connection, table):
    if conn.dialect.name == "postgresql":
        return pg_insert(table)
    return sqlite_insert(table)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands timestamps back naive; everything stored here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _utcnow(now: datetime | None = None) -> datetime:
    return now or datetime.now(timezone.utc)


# ------------------------
# Keywords
# ------------------------

def load_due_keywords(engine: Engine, limit: int, now: datetime | None = None) -> list[dict[str, Any]]:
    """
    Keywords never ingested or idle past the cooldown, highest priority first,
    then the longest idle (never-ingested before everything else).
    """
    cutoff = _utcnow(now) - KEYWORD_COOLDOWN
    stmt = (
        select(Keyword.id, Keyword.keyword, Keyword.niche, Keyword.priority, Keyword.last_ingested_at)
        .where((Keyword.last_ingested_at.is_(None)) | (Keyword.last_ingested_at < cutoff))
        .order_by(
            Keyword.priority.desc(),
            Keyword.last_ingested_at.asc().nulls_first(),
            Keyword.id.asc(),
        )
        .limit(limit)
    )
    with transaction(engine) as conn:
        rows = conn.execute(stmt).mappings().all()
    return [{**row, "last_ingested_at": as_utc(row["last_ingested_at"])} for row in rows]


def mark_keyword_ingested(conn: Connection, keyword_id: int, now: datetime | None = None) -> None:
    conn.execute(
        Keyword.__table__.update()
        .where(Keyword.__table__.c.id == keyword_id)
        .values(last_ingested_at=_utcnow(now))
    )


def insert_seed_keywords(engine: Engine, seeds: Sequence[dict[str, Any]]) -> int:
    """Insert seed keywords, skipping (keyword, niche) pairs that already exist. Returns inserted count."""
    if not seeds:
        return 0
    table = Keyword.__table__
    with transaction(engine) as conn:
        before = conn.execute(select(func.count()).select_from(table)).scalar_one()
        stmt = _insert(conn, table).on_conflict_do_nothing(index_elements=["keyword", "niche"])
        conn.execute(
            stmt,
            [
                {
                    "keyword": seed["keyword"],
                    "niche": seed.get("niche") or "general",
                    "priority": int(seed.get("priority") or 2),
                    "created_at": datetime.now(timezone.utc),
                }
                for seed in seeds
            ],
        )
        after = conn.execute(select(func.count()).select_from(table)).scalar_one()
    return int(after) - int(before)


# ------------------------
# Channels / videos
# ------------------------

def upsert_channels(conn: Connection, videos: Iterable[Any], now: datetime | None = None) -> dict[str, int]:
    """Upsert the owning channels of `videos`; returns youtube_channel_id -> internal id."""
    now = _utcnow(now)
    rows: dict[str, dict[str, Any]] = {}
    for video in videos:
        # A video without a known owner cannot be stored
        if not video.youtube_channel_id:
            continue
        rows[video.youtube_channel_id] = {
            "youtube_channel_id": video.youtube_channel_id,
            "title": video.channel_title,
            "subscriber_count": int(video.subscribers or 0),
            "created_at": now,
            "updated_at": now,
        }
    if not rows:
        return {}

    table = Channel.__table__
    stmt = _insert(conn, table)
    stmt = stmt.on_conflict_do_update(
        index_elements=["youtube_channel_id"],
        set_={
            "title": func.coalesce(stmt.excluded.title, table.c.title),
            "subscriber_count": stmt.excluded.subscriber_count,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    # Lock order is the natural key, same for every run
    conn.execute(stmt, [rows[key] for key in sorted(rows)])

    result = conn.execute(
        select(table.c.youtube_channel_id, table.c.id).where(table.c.youtube_channel_id.in_(list(rows)))
    )
    return {external_id: internal_id for external_id, internal_id in result}


def upsert_videos(
    conn: Connection,
    videos: Iterable[Any],
    channel_ids: dict[str, int],
    now: datetime | None = None,
) -> dict[str, int]:
    """Upsert videos keyed on youtube_video_id, replacing every derived field. Returns external -> internal id."""
    now = _utcnow(now)
    rows: dict[str, dict[str, Any]] = {}
    for video in videos:
        channel_id = channel_ids.get(video.youtube_channel_id)
        if channel_id is None:
            continue
        rows[video.youtube_video_id] = {
            "youtube_video_id": video.youtube_video_id,
            "channel_id": channel_id,
            "title": video.title,
            "thumbnail_url": video.thumbnail_url,
            "views": int(video.views or 0),
            "published_at": video.published_at,
            "multiplier": float(video.multiplier or 0.0),
            "views_per_day": video.views_per_day,
            "like_ratio": video.like_ratio,
            "outlier_score": video.outlier_score,
            "outlier_tier": list(video.outlier_tier) or None,
            "created_at": now,
            "updated_at": now,
        }
    if not rows:
        return {}

    table = Video.__table__
    stmt = _insert(conn, table)
    replaced = (
        "channel_id",
        "title",
        "thumbnail_url",
        "views",
        "published_at",
        "multiplier",
        "views_per_day",
        "like_ratio",
        "outlier_score",
        "outlier_tier",
        "updated_at",
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["youtube_video_id"],
        set_={column: stmt.excluded[column] for column in replaced},
    )
    conn.execute(stmt, [rows[key] for key in sorted(rows)])

    result = conn.execute(
        select(table.c.youtube_video_id, table.c.id).where(table.c.youtube_video_id.in_(list(rows)))
    )
    return {external_id: internal_id for external_id, internal_id in result}


def link_video_keywords(conn: Connection, video_ids: Iterable[int], keyword_id: int) -> None:
    rows = [{"video_id": video_id, "keyword_id": keyword_id} for video_id in sorted(set(video_ids))]
    if not rows:
        return
    stmt = _insert(conn, VideoKeyword.__table__).on_conflict_do_nothing(
        index_elements=["video_id", "keyword_id"]
    )
    conn.execute(stmt, rows)


def persist_keyword_results(
    engine: Engine,
    keyword_id: int,
    videos: Sequence[Any],
    now: datetime | None = None,
) -> int:
    """
    Store one keyword's provider output in a single transaction and stamp the
    keyword as ingested. An empty `videos` only stamps the keyword.
    Returns the number of videos written.
    """
    now = _utcnow(now)
    with transaction(engine) as conn:
        video_ids: dict[str, int] = {}
        if videos:
            channel_ids = upsert_channels(conn, videos, now)
            video_ids = upsert_videos(conn, videos, channel_ids, now)
            link_video_keywords(conn, video_ids.values(), keyword_id)
        mark_keyword_ingested(conn, keyword_id, now)
    return len(video_ids)


# ------------------------
# Ingestion jobs
# ------------------------

def create_job(engine: Engine, trigger: str, now: datetime | None = None) -> int:
    now = _utcnow(now)
    with transaction(engine) as conn:
        result = conn.execute(
            IngestionJob.__table__.insert().values(
                status="running",
                job_type=JOB_TYPE_KEYWORD_INGEST,
                query=trigger,
                quota_units_used=0,
                started_at=now,
                created_at=now,
                updated_at=now,
            )
        )
        return int(result.inserted_primary_key[0])


def complete_job(
    engine: Engine,
    job_id: int,
    quota_units_used: int,
    metadata: dict[str, Any],
    now: datetime | None = None,
) -> None:
    now = _utcnow(now)
    table = IngestionJob.__table__
    with transaction(engine) as conn:
        conn.execute(
            table.update()
            .where(table.c.id == job_id)
            .values(
                status="completed",
                quota_units_used=quota_units_used,
                metadata=metadata,
                completed_at=now,
                updated_at=now,
            )
        )


def fail_job(
    engine: Engine,
    job_id: int,
    quota_units_used: int,
    error_message: str,
    metadata: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> None:
    now = _utcnow(now)
    table = IngestionJob.__table__
    with transaction(engine) as conn:
        conn.execute(
            table.update()
            .where(table.c.id == job_id)
            .values(
                status="failed",
                quota_units_used=quota_units_used,
                error_message=(error_message or "")[:ERROR_MESSAGE_MAX_CHARS],
                metadata=metadata,
                completed_at=now,
                updated_at=now,
            )
        )


def get_job(engine: Engine, job_id: int) -> dict[str, Any] | None:
    table = IngestionJob.__table__
    with transaction(engine) as conn:
        row = conn.execute(select(table).where(table.c.id == job_id)).mappings().first()
    return dict(row) if row else None


def get_today_quota_used(engine: Engine, now: datetime | None = None) -> int:
    """Units charged by jobs completed since 00:00 UTC today."""
    midnight = datetime.combine(_utcnow(now).astimezone(timezone.utc).date(), dt_time.min, tzinfo=timezone.utc)
    table = IngestionJob.__table__
    stmt = select(func.coalesce(func.sum(table.c.quota_units_used), 0)).where(
        table.c.status == "completed",
        table.c.completed_at >= midnight,
    )
    with transaction(engine) as conn:
        return int(conn.execute(stmt).scalar_one() or 0)


# ------------------------
# Search
# ------------------------

def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def fetch_search_candidates(engine: Engine, query: str) -> list[dict[str, Any]]:
    """
    Every stored video attached to a keyword containing `query` (case-insensitive),
    each video once, strongest multiplier first.
    """
    pattern = f"%{escape_like(query)}%"
    matching_videos = (
        select(VideoKeyword.video_id)
        .join(Keyword, Keyword.id == VideoKeyword.keyword_id)
        .where(Keyword.keyword.ilike(pattern, escape="\\"))
    )
    stmt = (
        select(
            Video.youtube_video_id,
            Video.title,
            Video.thumbnail_url,
            Video.views,
            Video.published_at,
            Video.multiplier,
            Video.views_per_day,
            Video.like_ratio,
            Video.outlier_score,
            Video.outlier_tier,
            Channel.title.label("channel_title"),
            Channel.subscriber_count,
        )
        .join(Channel, Channel.id == Video.channel_id)
        .where(Video.id.in_(matching_videos))
        .order_by(
            Video.multiplier.desc().nulls_last(),
            Video.published_at.desc().nulls_last(),
            Video.id.asc(),
        )
    )
    with transaction(engine) as conn:
        rows = conn.execute(stmt).mappings().all()

    return [
        {
            "id": row["youtube_video_id"],
            "title": row["title"],
            "thumbnail": row["thumbnail_url"],
            "channel_title": row["channel_title"],
            "views": int(row["views"] or 0),
            "subscribers": int(row["subscriber_count"] or 0),
            "published_at": as_utc(row["published_at"]),
            "multiplier": float(row["multiplier"] or 0.0),
            "views_per_day": row["views_per_day"],
            "like_ratio": row["like_ratio"],
            "outlier_score": row["outlier_score"],
            "outlier_tier": row["outlier_tier"] or [],
        }
        for row in rows
    ]
