from datetime import datetime, timedelta, timezone

from backend.app.services.niche_analysis import analyze_niche, suggest_searches

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_candidate(subscribers, multiplier, days_ago=None):
    return {
        "subscribers": subscribers,
        "multiplier": multiplier,
        "published_at": NOW - timedelta(days=days_ago) if days_ago is not None else None,
    }


def test_no_candidates_means_no_analysis():
    assert analyze_niche("anything", [], NOW) is None


def test_saturated_niche():
    candidates = [make_candidate(200_000, 1.2, days_ago=5) for _ in range(12)]
    analysis = analyze_niche("budget travel", candidates, NOW)
    assert analysis["nicheStatus"] == "SATURATED"
    assert analysis["difficultyLevel"] == "EXPERT"
    assert analysis["scannedVideos"] == 12
    assert analysis["averageChannelSize"] == 200_000
    assert "200,000" in analysis["explanation"]


def test_quiet_niche_with_low_velocity():
    candidates = [make_candidate(5_000, 1.0, days_ago=200) for _ in range(12)]
    analysis = analyze_niche("pottery glazes", candidates, NOW)
    assert analysis["nicheStatus"] == "QUIET"
    assert analysis["difficultyLevel"] == "BEGINNER"


def test_quiet_rule_wins_over_emerging_when_both_hold():
    # Small channels with high variance, but nothing recent: rule 2 comes first
    candidates = [make_candidate(3_000, m, days_ago=200) for m in (0.1, 0.2, 4.0, 5.0, 0.1, 0.3)]
    assert analyze_niche("pottery", candidates, NOW)["nicheStatus"] == "QUIET"


def test_emerging_niche():
    multipliers = [0.1, 0.2, 4.0, 5.0, 0.1, 0.3, 0.2, 0.1, 0.4, 0.5, 0.2, 0.1]
    candidates = [make_candidate(3_000, m, days_ago=d) for d, m in enumerate(multipliers, start=1)]
    analysis = analyze_niche("sourdough starters", candidates, NOW)
    assert analysis["nicheStatus"] == "EMERGING"
    assert analysis["difficultyLevel"] == "BEGINNER"


def test_event_driven_niche():
    candidates = [make_candidate(30_000, 1.5, days_ago=3) for _ in range(4)]
    candidates += [make_candidate(30_000, 1.5, days_ago=d) for d in (10, 12, 14, 16, 18, 20, 22, 24)]
    analysis = analyze_niche("gaming news", candidates, NOW)
    assert analysis["nicheStatus"] == "EVENT_DRIVEN"
    assert analysis["difficultyLevel"] == "INTERMEDIATE"


def test_declining_niche():
    candidates = [make_candidate(30_000, 1.0, days_ago=d) for d in (1, 5, 9, 13, 200)]
    analysis = analyze_niche("fidget spinners", candidates, NOW)
    assert analysis["nicheStatus"] == "DECLINING"
    assert analysis["difficultyLevel"] == "EXPERT"


def test_fallback_is_quiet_with_size_based_difficulty():
    candidates = [make_candidate(30_000, 1.0, days_ago=d) for d in range(1, 13)]
    analysis = analyze_niche("home espresso", candidates, NOW)
    assert analysis["nicheStatus"] == "QUIET"
    assert analysis["difficultyLevel"] == "INTERMEDIATE"


def test_dominant_channel_threshold_is_middle_subscriber_count():
    candidates = [make_candidate(s, 1.0, days_ago=1) for s in (0, 100, 300, 900, 2_700)]
    analysis = analyze_niche("x", candidates, NOW)
    # subscribers of 0 are ignored
    assert analysis["averageChannelSize"] == round((100 + 300 + 900 + 2_700) / 4)
    assert analysis["dominantChannelThreshold"] == 900


def test_suggested_searches():
    assert suggest_searches("best budget travel 2025") == [
        "budget travel",
        "budget travel shorts",
        "budget tutorial",
    ]
    assert suggest_searches("productivity shorts tutorial") == [
        "productivity shorts tutorial",
        "Notion alternatives",
    ]
    assert len(suggest_searches("ai video editing")) == 3
