import re
from collections import Counter
from datetime import datetime, timedelta, timezone
from statistics import StatisticsError, pstdev
from typing import Any

from .outlier import parse_iso8601_datetime

SATURATED_MIN_AVG_SUBS = 50_000
SATURATED_MAX_MULTIPLIER = 2.5
QUIET_MAX_AVG_SUBS = 20_000
QUIET_MAX_UPLOAD_VELOCITY = 0.3
EMERGING_MAX_AVG_SUBS = 10_000
EMERGING_MIN_STDDEV = 1.0
BURST_MIN_SAME_DAY = 3
DECLINING_MAX_CANDIDATES = 10
DECLINING_BREAKOUT_MULTIPLIER = 2.5
RECENT_UPLOAD_DAYS = 30
DECLINING_WINDOW_DAYS = 90
MAX_SUGGESTIONS = 3

EVENT_DRIVEN_RE = re.compile(
    r"(gaming|game|tech|technology|ai|artificial intelligence|release|update|launch)"
)
FILLER_WORD_RE = re.compile(r"^(best|top|new|latest|\d{4}|review|reviews)$")


def _subscriber_stats(candidates: list[dict[str, Any]]) -> tuple[int, int]:
    subs = sorted(int(c.get("subscribers") or 0) for c in candidates if (c.get("subscribers") or 0) > 0)
    if not subs:
        return 0, 0
    average = round(sum(subs) / len(subs))
    dominant = subs[len(subs) // 2]
    return average, dominant


def _multiplier_spread(multipliers: list[float]) -> float:
    try:
        return pstdev(multipliers)
    except StatisticsError:
        return 0.0


def _published(candidate: dict[str, Any]) -> datetime | None:
    return parse_iso8601_datetime(candidate.get("published_at"))


def _is_bursty(published: list[datetime | None]) -> bool:
    days = Counter(p.astimezone(timezone.utc).date() for p in published if p is not None)
    if not days:
        return False
    return max(days.values()) >= BURST_MIN_SAME_DAY


def suggest_searches(query: str) -> list[str]:
    tokens = query.lower().split()
    words = [w for w in tokens if len(w) > 2]
    core = [w for w in words if not FILLER_WORD_RE.match(w)] or words or [query.strip().lower()]

    suggestions = [" ".join(core)]
    if "shorts" not in words:
        suggestions.append(f"{' '.join(core[:2])} shorts")
    if "tutorial" not in words:
        suggestions.append(f"{core[0]} tutorial")

    if "productivity" in tokens:
        suggestions.append("Notion alternatives")
    elif "ai" in tokens or "artificial" in tokens:
        suggestions.append("AI tools for creators")
    elif "gaming" in tokens or "game" in tokens:
        suggestions.append("gaming challenge")

    deduped: list[str] = []
    for suggestion in suggestions:
        suggestion = suggestion.strip()
        if suggestion and suggestion not in deduped:
            deduped.append(suggestion)
    return deduped[:MAX_SUGGESTIONS]


def analyze_niche(
    query: str,
    candidates: list[dict[str, Any]],
    now: datetime | None = None,
) -> dict[str, Any] | None:
    """
    Explain an empty result set from the raw candidate pool.

    Statuses are decided by an ordered rule chain; the first matching rule wins
    because several conditions can hold at once.
    """
    if not candidates:
        return None

    now = now or datetime.now(timezone.utc)
    scanned = len(candidates)
    average_subs, dominant_threshold = _subscriber_stats(candidates)
    multipliers = [float(c.get("multiplier") or 0.0) for c in candidates]
    max_multiplier = max(multipliers)
    spread = _multiplier_spread(multipliers)

    published = [_published(c) for c in candidates]
    recent_cutoff = now - timedelta(days=RECENT_UPLOAD_DAYS)
    upload_velocity = sum(1 for p in published if p is not None and p >= recent_cutoff) / scanned

    is_event_driven = bool(EVENT_DRIVEN_RE.search(query.lower()))
    is_bursty = _is_bursty(published)

    decline_cutoff = now - timedelta(days=DECLINING_WINDOW_DAYS)
    has_recent_breakout = any(
        p is not None and p >= decline_cutoff and m >= DECLINING_BREAKOUT_MULTIPLIER
        for p, m in zip(published, multipliers)
    )
    is_declining = scanned < DECLINING_MAX_CANDIDATES and not has_recent_breakout

    if average_subs > SATURATED_MIN_AVG_SUBS and max_multiplier < SATURATED_MAX_MULTIPLIER:
        status = "SATURATED"
        explanation = (
            f"We scanned {scanned} recent videos from channels averaging {average_subs:,} subscribers. "
            "None exceeded 2.5× multiplier, indicating high competition and established players. "
            "This niche is currently dominated by larger channels."
        )
        difficulty = "EXPERT"
    elif average_subs < QUIET_MAX_AVG_SUBS and upload_velocity < QUIET_MAX_UPLOAD_VELOCITY:
        status = "QUIET"
        explanation = (
            f"We scanned {scanned} videos from small channels (avg {average_subs:,} subscribers) "
            "with low recent activity. This pattern suggests either an untapped opportunity or a "
            "seasonal lull. Low competition may present an entry window."
        )
        difficulty = "BEGINNER" if average_subs < EMERGING_MAX_AVG_SUBS else "INTERMEDIATE"
    elif average_subs < EMERGING_MAX_AVG_SUBS and spread > EMERGING_MIN_STDDEV:
        status = "EMERGING"
        explanation = (
            f"We scanned {scanned} videos from small channels (avg {average_subs:,} subscribers) "
            "with high performance variance. Some videos are gaining traction, suggesting "
            "early-stage opportunity."
        )
        difficulty = "BEGINNER"
    elif is_event_driven and is_bursty:
        status = "EVENT_DRIVEN"
        explanation = (
            f"We scanned {scanned} videos with bursty upload patterns. This niche is event-driven, "
            "so timing and speed matter more than channel size. Breakouts here are tied to "
            "external events or releases."
        )
        difficulty = "INTERMEDIATE"
    elif is_declining:
        status = "DECLINING"
        explanation = (
            f"We scanned {scanned} videos with low volume and no recent breakouts. This niche may "
            "be past its peak or need a fresh angle."
        )
        difficulty = "EXPERT"
    else:
        status = "QUIET"
        explanation = (
            f"We scanned {scanned} recent videos. No clear breakout patterns detected. This could "
            "indicate low competition or a niche in transition."
        )
        difficulty = "BEGINNER" if average_subs < QUIET_MAX_AVG_SUBS else "INTERMEDIATE"

    return {
        "nicheStatus": status,
        "scannedVideos": scanned,
        "averageChannelSize": average_subs,
        "dominantChannelThreshold": dominant_threshold,
        "explanation": explanation,
        "difficultyLevel": difficulty,
        "suggestedSearches": suggest_searches(query),
    }
