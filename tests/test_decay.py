import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from pagebridge.services.decay import (
    DEFAULT_RULES,
    DecayDetector,
    DecayMetrics,
    DecayRule,
    DecaySignal,
    QuietPeriodConfig,
    calculate_severity,
    deduplicate_signals,
    evaluate_rule,
    evaluate_rule_windows,
)
from pagebridge.services.metrics import PageMetrics

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)
POSITION_RULE = DEFAULT_RULES[0]
LOW_CTR_RULE = DEFAULT_RULES[1]
IMPRESSIONS_RULE = DEFAULT_RULES[2]


def _signal(page: str, severity: str, reason: str = "position_decay") -> DecaySignal:
    return DecaySignal(
        page=page,
        reason=reason,  # type: ignore[arg-type]
        severity=severity,  # type: ignore[arg-type]
        metrics=DecayMetrics(
            position_before=1, position_now=2, position_delta=1, ctr_before=0.1, ctr_now=0.1, impressions=100
        ),
    )


def test_default_rules() -> None:
    assert [(rule.type, rule.threshold, rule.min_impressions, rule.sustained_days) for rule in DEFAULT_RULES] == [
        ("position_decay", 3, 100, 14),
        ("low_ctr", 0.01, 1000, 7),
        ("impressions_drop", 0.5, 500, 14),
    ]
    assert all(rule.comparison_window_days == 28 for rule in DEFAULT_RULES)


def test_calculate_severity_cutpoints() -> None:
    cutpoints = (3, 5, 8)
    assert calculate_severity(3, cutpoints) == "low"
    assert calculate_severity(5, cutpoints) == "medium"
    assert calculate_severity(7.99, cutpoints) == "medium"
    assert calculate_severity(8, cutpoints) == "high"


def test_position_decay_fires_at_threshold_with_medium_severity() -> None:
    current = PageMetrics(page="/a", position=10.0, ctr=0.05, impressions=500)
    previous = PageMetrics(page="/a", position=5.0, ctr=0.08, impressions=600)

    signal = evaluate_rule(POSITION_RULE, current, previous)

    assert signal is not None
    assert signal.severity == "medium"
    assert signal.metrics.position_before == 5.0
    assert signal.metrics.position_now == 10.0
    assert signal.metrics.position_delta == 5.0
    assert signal.metrics.ctr_before == 0.08
    assert signal.metrics.impressions == 500


def test_position_decay_below_threshold_is_silent() -> None:
    current = PageMetrics(page="/a", position=7.9, ctr=0.05, impressions=500)
    previous = PageMetrics(page="/a", position=5.0, ctr=0.05, impressions=500)
    assert evaluate_rule(POSITION_RULE, current, previous) is None


def test_low_ctr_requires_first_page_position() -> None:
    previous = PageMetrics(page="/a", position=4, ctr=0.02, impressions=2000)
    on_page_one = PageMetrics(page="/a", position=4, ctr=0.001, impressions=2000)
    off_page_one = PageMetrics(page="/a", position=11, ctr=0.001, impressions=2000)

    signal = evaluate_rule(LOW_CTR_RULE, on_page_one, previous)

    assert signal is not None
    assert signal.severity == "low"
    assert evaluate_rule(LOW_CTR_RULE, off_page_one, previous) is None


def test_impressions_drop_severity_and_zero_previous() -> None:
    previous = PageMetrics(page="/a", position=4, ctr=0.02, impressions=1000)
    dropped = PageMetrics(page="/a", position=4, ctr=0.02, impressions=400)

    signal = evaluate_rule(IMPRESSIONS_RULE, dropped, previous)

    assert signal is not None
    assert signal.severity == "medium"
    empty_previous = PageMetrics(page="/a", position=4, ctr=0.0, impressions=0)
    assert evaluate_rule(IMPRESSIONS_RULE, dropped, empty_previous) is None


def test_unknown_rule_type_raises() -> None:
    rule = DecayRule(type="bounce_rate", threshold=1, min_impressions=0, comparison_window_days=1, sustained_days=1)  # type: ignore[arg-type]
    metrics = PageMetrics(page="/a", position=1, ctr=0.1, impressions=10)
    with pytest.raises(ValueError):
        evaluate_rule(rule, metrics, metrics)


def test_windows_skip_low_impressions_and_missing_previous() -> None:
    current = [
        PageMetrics(page="/quiet", position=20, ctr=0.01, impressions=99),
        PageMetrics(page="/new", position=20, ctr=0.01, impressions=500),
        PageMetrics(page="/decayed", position=20, ctr=0.01, impressions=500),
    ]
    previous = [
        PageMetrics(page="/quiet", position=2, ctr=0.1, impressions=900),
        PageMetrics(page="/decayed", position=2, ctr=0.1, impressions=900),
    ]

    signals = evaluate_rule_windows(POSITION_RULE, current, previous, now=NOW)

    assert [signal.page for signal in signals] == ["/decayed"]
    assert signals[0].severity == "high"


def test_quiet_period_suppresses_recently_published_pages() -> None:
    current = [PageMetrics(page="/fresh", position=20, ctr=0.01, impressions=500)]
    previous = [PageMetrics(page="/fresh", position=2, ctr=0.1, impressions=900)]
    published = {"/fresh": NOW - timedelta(days=44, hours=23)}

    quiet = evaluate_rule_windows(POSITION_RULE, current, previous, published_dates=published, now=NOW)
    disabled = evaluate_rule_windows(
        POSITION_RULE,
        current,
        previous,
        published_dates=published,
        quiet_period=QuietPeriodConfig(enabled=False),
        now=NOW,
    )
    elapsed = evaluate_rule_windows(
        POSITION_RULE, current, previous, published_dates={"/fresh": NOW - timedelta(days=45)}, now=NOW
    )

    assert quiet == []
    assert len(disabled) == 1
    assert len(elapsed) == 1


def test_deduplicate_keeps_strictly_higher_severity_and_first_on_ties() -> None:
    first_low = _signal("/a", "low", "position_decay")
    high = _signal("/a", "high", "impressions_drop")
    later_high = _signal("/a", "high", "low_ctr")
    other = _signal("/b", "medium")

    result = deduplicate_signals([first_low, high, later_high, other])

    assert result == [high, other]


class FakeMetricsRepository:
    def __init__(self, windows: dict[tuple[datetime, datetime], list[PageMetrics]]) -> None:
        self.windows = windows
        self.calls: list[tuple[str, datetime, datetime]] = []

    async def get_page_metrics(self, site_id: str, start: datetime, end: datetime) -> list[PageMetrics]:
        self.calls.append((site_id, start, end))
        return self.windows.get((start, end), [])


def test_detector_queries_current_and_previous_windows_per_rule() -> None:
    current_window = (NOW - timedelta(days=14), NOW)
    previous_window = (NOW - timedelta(days=42), NOW - timedelta(days=28))
    repository = FakeMetricsRepository(
        {
            current_window: [PageMetrics(page="/a", position=12, ctr=0.02, impressions=300)],
            previous_window: [PageMetrics(page="/a", position=6, ctr=0.05, impressions=400)],
        }
    )

    signals = asyncio.run(DecayDetector(repository).detect_decay("https://example.com/", now=NOW))

    assert [(signal.page, signal.reason, signal.severity) for signal in signals] == [("/a", "position_decay", "medium")]
    assert ("https://example.com/",) + current_window in repository.calls
    assert ("https://example.com/",) + previous_window in repository.calls
    assert len(repository.calls) == 6
