import math
from datetime import datetime, timezone
from typing import Any, Iterable

SUBSCRIBER_FLOOR = 100
MIN_LIKE_RATIO_SAMPLES = 5
MIN_MULTIPLIER_SAMPLES = 5
MIN_VELOCITY_SAMPLES = 10
NICHE_TOP_N = 10
OUTLIER_MIN_VIEWS = 1_000
OUTLIER_MIN_MULTIPLIER = 3.0
SECONDS_PER_DAY = 24 * 60 * 60


def parse_iso8601_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def days_since(published_at: Any, now: datetime | None = None) -> float | None:
    published = parse_iso8601_datetime(published_at)
    if published is None:
        return None
    now = now or datetime.now(timezone.utc)
    return (now - published).total_seconds() / SECONDS_PER_DAY


def _as_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number):
        return None
    return number


def virality_multiplier(views: float, subscribers: float | None) -> float:
    """Views per subscriber, with a 100-subscriber floor for hidden or zero counts."""
    safe_views = max(0.0, _as_number(views) or 0.0)
    subs = _as_number(subscribers)
    if not subs or subs <= 0:
        subs = SUBSCRIBER_FLOOR
    return safe_views / subs


def views_per_day(views: float, published_at: Any, now: datetime | None = None) -> float | None:
    elapsed = days_since(published_at, now)
    if elapsed is None or elapsed <= 0:
        return None
    return (_as_number(views) or 0.0) / elapsed


def like_ratio(views: float, likes: float) -> float | None:
    view_count = _as_number(views) or 0.0
    like_count = _as_number(likes) or 0.0
    if view_count <= 0 or like_count <= 0:
        return None
    return like_count / view_count


def average_like_ratio(ratios: Iterable[float | None]) -> float | None:
    valid = []
    for ratio in ratios:
        number = _as_number(ratio)
        if number is not None and 0 <= number <= 1:
            valid.append(number)
    if len(valid) < MIN_LIKE_RATIO_SAMPLES:
        return None
    return sum(valid) / len(valid)


def niche_average_multiplier(multipliers: Iterable[float | None], top_n: int = NICHE_TOP_N) -> float | None:
    """
    Mean of the top-N positive multipliers in a candidate set.
    Only the top slice is averaged so the long tail does not drag the niche ceiling down.
    """
    valid = []
    for multiplier in multipliers:
        number = _as_number(multiplier)
        if number is not None and number > 0 and math.isfinite(number):
            valid.append(number)
    if len(valid) < MIN_MULTIPLIER_SAMPLES:
        return None
    top = sorted(valid, reverse=True)[: max(1, min(top_n, len(valid)))]
    return sum(top) / len(top)


def velocity_threshold(values: Iterable[float | None], percentile: float = 0.125) -> float | None:
    valid = sorted(
        (n for n in (_as_number(v) for v in values) if n is not None and n > 0),
        reverse=True,
    )
    if len(valid) < MIN_VELOCITY_SAMPLES:
        return None
    index = max(0, min(int(len(valid) * percentile), len(valid) - 1))
    return valid[index]


def is_accelerating(per_day: float | None, threshold: float | None) -> bool:
    if per_day is None or threshold is None:
        return False
    return per_day >= threshold


def _freshness_factor(published_at: Any, now: datetime | None) -> float:
    age_days = days_since(published_at, now)
    if age_days is None:
        return 1.0
    if age_days < 7:
        return 1.5
    if age_days < 30:
        return 1.2
    if age_days <= 90:
        return 1.0
    return 0.7


def _channel_penalty(subscribers: float) -> float:
    if subscribers > 1_000_000:
        return 0.5
    if subscribers > 100_000:
        return 0.7
    return 1.0


def composite_outlier_score(
    views: float,
    subscribers: float | None,
    published_at: Any = None,
    now: datetime | None = None,
) -> float:
    """
    base x confidence x freshness x channel_penalty

    - base: views / max(subscribers, 1)
    - confidence: log10(views), so scale counts without letting raw views dominate
    - freshness: 1.5 (<7d), 1.2 (<30d), 1.0 (<=90d or unknown), 0.7 (older)
    - channel_penalty: 0.5 (>1M subs), 0.7 (>100k), else 1.0
    """
    v = _as_number(views)
    if v is None or not math.isfinite(v) or v <= 0:
        return 0.0
    subs = _as_number(subscribers)
    subs = max(0.0, subs) if subs is not None and math.isfinite(subs) else 0.0

    base = v / max(subs, 1.0)
    confidence = math.log10(v) if v >= 1 else 0.0
    if not math.isfinite(confidence) or confidence < 0:
        confidence = 0.0

    score = base * confidence * _freshness_factor(published_at, now) * _channel_penalty(subs)
    if not math.isfinite(score) or score < 0:
        return 0.0
    return score


def is_outlier_video(
    views: float,
    subscribers: float | None,
    published_at: Any = None,
    max_days_old: int | None = None,
    use_velocity_weighting: bool = False,
    now: datetime | None = None,
) -> bool:
    if (_as_number(views) or 0) < OUTLIER_MIN_VIEWS:
        return False

    if max_days_old:
        age_days = days_since(published_at, now)
        if age_days is None or age_days > max_days_old:
            return False

    multiplier = virality_multiplier(views, subscribers)
    if multiplier >= OUTLIER_MIN_MULTIPLIER:
        return True

    if use_velocity_weighting and published_at:
        per_day = views_per_day(views, published_at, now)
        if per_day is not None and per_day > 1000 and multiplier >= 2:
            return True
    return False
