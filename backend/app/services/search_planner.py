from datetime import datetime, timedelta, timezone
from typing import Any

from ..db import fetch_search_candidates
from .classifier import classify_outlier, parse_tier_names, tier_names
from .niche_analysis import analyze_niche
from .outlier import (
    NICHE_TOP_N,
    average_like_ratio,
    days_since,
    niche_average_multiplier,
    parse_iso8601_datetime,
)

SEARCH_MODES = ("momentum", "proven")
DEFAULT_SEARCH_MODE = "momentum"

STRICT_MULTIPLIER = 3.0
EXPANDED_MULTIPLIER = 2.5
MOMENTUM_STRICT_DAYS = 60
MOMENTUM_EXPANDED_DAYS = 90
NEAR_MISS_MIN = 2.5
NEAR_MISS_LIMIT = 3
RISING_MIN = 2.0
RISING_LIMIT = 10
FRESH_DAYS = 30

EXPANDED_MESSAGE = "No strict breakouts found. Showing expanded results (2.5×+, 90 days)."


def _multiplier(row: dict[str, Any]) -> float:
    try:
        return float(row.get("multiplier") or 0.0)
    except (TypeError, ValueError):
        return 0.0


def _within_window(row: dict[str, Any], momentum: bool, cutoff: datetime) -> bool:
    """Momentum mode drops rows known to be older than the window; unknown dates pass."""
    if not momentum:
        return True
    published = parse_iso8601_datetime(row.get("published_at"))
    return published is None or published >= cutoff


def _to_result(
    row: dict[str, Any],
    niche_multiplier: float | None,
    niche_like_ratio: float | None,
    breakout_count: int,
    is_strict: bool,
    now: datetime,
) -> dict[str, Any]:
    multiplier = _multiplier(row)
    views = int(row.get("views") or 0)
    subscribers = int(row.get("subscribers") or 0)
    published = parse_iso8601_datetime(row.get("published_at"))
    age = days_since(published, now)
    per_day = row.get("views_per_day")
    ratio = row.get("like_ratio")

    tiers = classify_outlier(
        views,
        subscribers,
        float(per_day) if per_day is not None else None,
        float(ratio) if ratio is not None else None,
        niche_average_multiplier=niche_multiplier,
        niche_average_like_ratio=niche_like_ratio,
        breakout_count=breakout_count,
        is_fresh=age is not None and age <= FRESH_DAYS,
    )
    if not tiers:
        tiers = parse_tier_names(row.get("outlier_tier"))

    threshold = STRICT_MULTIPLIER if is_strict else EXPANDED_MULTIPLIER
    return {
        "id": row.get("id"),
        "title": row.get("title") or "",
        "thumbnail": row.get("thumbnail") or "",
        "channelTitle": row.get("channel_title") or "",
        "views": views,
        "subscribers": subscribers,
        "multiplier": multiplier,
        "outlier": multiplier >= threshold,
        "publishedAt": published.isoformat() if published else None,
        "outlierTier": tier_names(tiers) or None,
        "viewsPerDay": per_day,
        "likeRatio": ratio,
        "outlierScore": row.get("outlier_score"),
        "nicheAverageMultiplier": niche_multiplier,
    }


def plan_search(
    rows: list[dict[str, Any]],
    query: str,
    mode: str = DEFAULT_SEARCH_MODE,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Two-tier acceptance over the candidate pool.

    `rows` are candidate videos in ranking order (see db.fetch_search_candidates).
    Strict is evaluated first; expanded is used only when strict is empty.
    Near misses and rising signals are drawn from what did not make the result set.
    """
    now = now or datetime.now(timezone.utc)
    momentum = mode == "momentum"
    strict_cutoff = now - timedelta(days=MOMENTUM_STRICT_DAYS)
    expanded_cutoff = now - timedelta(days=MOMENTUM_EXPANDED_DAYS)

    # One entry per video, keep the first (best ranked) occurrence
    seen: set[Any] = set()
    candidates = []
    for row in rows:
        if row.get("id") in seen:
            continue
        seen.add(row.get("id"))
        candidates.append(row)

    strict = [
        r for r in candidates
        if _multiplier(r) >= STRICT_MULTIPLIER and _within_window(r, momentum, strict_cutoff)
    ]
    search_type = "strict"
    chosen = strict
    if not strict:
        expanded = [
            r for r in candidates
            if _multiplier(r) >= EXPANDED_MULTIPLIER and _within_window(r, momentum, expanded_cutoff)
        ]
        if expanded:
            chosen = expanded
            search_type = "expanded"

    niche_multiplier = niche_average_multiplier([_multiplier(r) for r in chosen], top_n=NICHE_TOP_N)
    niche_like_ratio = average_like_ratio([r.get("like_ratio") for r in chosen])
    breakout_count = sum(1 for r in chosen if _multiplier(r) >= STRICT_MULTIPLIER)
    is_strict = search_type == "strict"

    results = [
        _to_result(r, niche_multiplier, niche_like_ratio, breakout_count, is_strict, now)
        for r in chosen
    ]
    chosen_ids = {r.get("id") for r in chosen}

    near_misses = []
    for r in candidates:
        if len(near_misses) >= NEAR_MISS_LIMIT:
            break
        multiplier = _multiplier(r)
        if not (NEAR_MISS_MIN <= multiplier < STRICT_MULTIPLIER) or r.get("id") in chosen_ids:
            continue
        if not _within_window(r, momentum, expanded_cutoff):
            continue
        item = _to_result(r, niche_multiplier, niche_like_ratio, breakout_count, False, now)
        item["reason"] = f"{multiplier:.1f}x_multiplier"
        near_misses.append(item)

    rising = []
    for r in candidates:
        if len(rising) >= RISING_LIMIT:
            break
        multiplier = _multiplier(r)
        if not (RISING_MIN <= multiplier < STRICT_MULTIPLIER) or r.get("id") in chosen_ids:
            continue
        if not _within_window(r, momentum, strict_cutoff):
            continue
        item = _to_result(r, niche_multiplier, niche_like_ratio, breakout_count, False, now)
        item["confidenceTier"] = "RISING"
        rising.append(item)

    response: dict[str, Any] = {
        "results": results,
        "searchType": search_type,
        "strict": {"minMultiplier": STRICT_MULTIPLIER, "maxDays": MOMENTUM_STRICT_DAYS},
        "expanded": {"minMultiplier": EXPANDED_MULTIPLIER, "maxDays": MOMENTUM_EXPANDED_DAYS},
    }
    if search_type == "expanded":
        response["message"] = EXPANDED_MESSAGE
    if near_misses:
        response["nearMisses"] = near_misses
    if rising:
        response["risingSignals"] = rising
    if not results and candidates:
        response["nicheAnalysis"] = analyze_niche(query, candidates, now)
    return response


def search_from_db(engine, query: str, mode: str = DEFAULT_SEARCH_MODE, now: datetime | None = None) -> dict[str, Any]:
    return plan_search(fetch_search_candidates(engine, query), query, mode, now)
