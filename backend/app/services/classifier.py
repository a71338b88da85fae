from enum import Enum
from typing import Iterable

from .outlier import OUTLIER_MIN_VIEWS, SUBSCRIBER_FLOOR, virality_multiplier


BREAKOUT_MULTIPLIER = 3.0
EMERGING_MIN_VIEWS_PER_DAY = 500
EMERGING_MIN_RELATIVE_VELOCITY = 0.1
HIGH_SIGNAL_LIKE_RATIO_FACTOR = 1.5
NICHE_OUTLIER_MIN_MULTIPLIER = 2.0
NICHE_OUTLIER_NICHE_FACTOR = 3.0


class OutlierTier(str, Enum):
    BREAKOUT = "breakout"
    EMERGING = "emerging"
    HIGH_SIGNAL = "high_signal"
    NICHE_OUTLIER = "niche_outlier"


TIER_ORDER = (
    OutlierTier.BREAKOUT,
    OutlierTier.EMERGING,
    OutlierTier.HIGH_SIGNAL,
    OutlierTier.NICHE_OUTLIER,
)


def classify_outlier(
    views: int,
    subscribers: int | None,
    views_per_day: float | None,
    like_ratio: float | None,
    niche_average_multiplier: float | None = None,
    niche_average_like_ratio: float | None = None,
    breakout_count: int = 0,
    is_fresh: bool = False,
) -> frozenset[OutlierTier]:
    """
    Additive tiers: a video can be a breakout and emerging at the same time.
    niche_outlier is the fallback signal for result sets with no breakout at all.
    `is_fresh` is accepted from callers; no tier rule reads it.
    """
    tiers: set[OutlierTier] = set()
    multiplier = virality_multiplier(views, subscribers)

    if multiplier >= BREAKOUT_MULTIPLIER and views >= OUTLIER_MIN_VIEWS:
        tiers.add(OutlierTier.BREAKOUT)

    if views_per_day is not None and views_per_day > EMERGING_MIN_VIEWS_PER_DAY:
        safe_subscribers = subscribers if subscribers and subscribers > 0 else SUBSCRIBER_FLOOR
        if views_per_day / max(safe_subscribers, SUBSCRIBER_FLOOR) > EMERGING_MIN_RELATIVE_VELOCITY:
            tiers.add(OutlierTier.EMERGING)

    if (
        like_ratio is not None
        and niche_average_like_ratio is not None
        and views >= OUTLIER_MIN_VIEWS
        and like_ratio > niche_average_like_ratio * HIGH_SIGNAL_LIKE_RATIO_FACTOR
    ):
        tiers.add(OutlierTier.HIGH_SIGNAL)

    if (
        breakout_count == 0
        and niche_average_multiplier is not None
        and multiplier >= NICHE_OUTLIER_MIN_MULTIPLIER
        and multiplier >= niche_average_multiplier * NICHE_OUTLIER_NICHE_FACTOR
        and OutlierTier.BREAKOUT not in tiers
    ):
        tiers.add(OutlierTier.NICHE_OUTLIER)

    return frozenset(tiers)


def tier_names(tiers: Iterable[OutlierTier]) -> list[str]:
    present = set(tiers)
    return [tier.value for tier in TIER_ORDER if tier in present]


def parse_tier_names(values: Iterable[str] | None) -> frozenset[OutlierTier]:
    if not values:
        return frozenset()
    parsed = set()
    for value in values:
        try:
            parsed.add(OutlierTier(str(value)))
        except ValueError:
            continue
    return frozenset(parsed)
