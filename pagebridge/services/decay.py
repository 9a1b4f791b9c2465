from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Protocol

from pagebridge.core.dates import days_ago, days_since, utcnow
from pagebridge.services.metrics import PageMetrics

logger = logging.getLogger(__name__)

RuleType = Literal["position_decay", "low_ctr", "impressions_drop"]
Severity = Literal["low", "medium", "high"]

SEVERITY_RANK: dict[str, int] = {"high": 3, "medium": 2, "low": 1}

POSITION_DECAY_CUTPOINTS = (3.0, 5.0, 8.0)
LOW_CTR_CUTPOINTS = (0.005, 0.01, 0.02)
IMPRESSIONS_DROP_CUTPOINTS = (0.3, 0.5, 0.7)
LOW_CTR_MAX_POSITION = 10


@dataclass(slots=True, frozen=True)
class DecayRule:
    type: RuleType
    threshold: float
    min_impressions: float
    comparison_window_days: int
    sustained_days: int


@dataclass(slots=True, frozen=True)
class QuietPeriodConfig:
    enabled: bool = True
    days: int = 45


@dataclass(slots=True, frozen=True)
class DecayMetrics:
    position_before: float
    position_now: float
    position_delta: float
    ctr_before: float
    ctr_now: float
    impressions: float


@dataclass(slots=True, frozen=True)
class DecaySignal:
    page: str
    reason: RuleType
    severity: Severity
    metrics: DecayMetrics


DEFAULT_RULES: tuple[DecayRule, ...] = (
    DecayRule(
        type="position_decay",
        threshold=3,
        min_impressions=100,
        comparison_window_days=28,
        sustained_days=14,
    ),
    DecayRule(
        type="low_ctr",
        threshold=0.01,
        min_impressions=1000,
        comparison_window_days=28,
        sustained_days=7,
    ),
    DecayRule(
        type="impressions_drop",
        threshold=0.5,
        min_impressions=500,
        comparison_window_days=28,
        sustained_days=14,
    ),
)


class MetricsSource(Protocol):
    async def get_page_metrics(self, site_id: str, start: datetime, end: datetime) -> list[PageMetrics]: ...


def calculate_severity(value: float, cutpoints: Sequence[float]) -> Severity:
    # cutpoints[0] is implied by the firing threshold and is not checked here.
    if value >= cutpoints[2]:
        return "high"
    if value >= cutpoints[1]:
        return "medium"
    return "low"


def _snapshot(current: PageMetrics, previous: PageMetrics) -> DecayMetrics:
    return DecayMetrics(
        position_before=previous.position,
        position_now=current.position,
        position_delta=current.position - previous.position,
        ctr_before=previous.ctr,
        ctr_now=current.ctr,
        impressions=current.impressions,
    )


def _position_decay(rule: DecayRule, current: PageMetrics, previous: PageMetrics) -> DecaySignal | None:
    delta = current.position - previous.position
    if delta < rule.threshold:
        return None
    return DecaySignal(
        page=current.page,
        reason="position_decay",
        severity=calculate_severity(delta, POSITION_DECAY_CUTPOINTS),
        metrics=_snapshot(current, previous),
    )


def _low_ctr(rule: DecayRule, current: PageMetrics, previous: PageMetrics) -> DecaySignal | None:
    if current.ctr >= rule.threshold or current.position > LOW_CTR_MAX_POSITION:
        return None
    return DecaySignal(
        page=current.page,
        reason="low_ctr",
        severity=calculate_severity(rule.threshold - current.ctr, LOW_CTR_CUTPOINTS),
        metrics=_snapshot(current, previous),
    )


def _impressions_drop(rule: DecayRule, current: PageMetrics, previous: PageMetrics) -> DecaySignal | None:
    if previous.impressions <= 0:
        return None
    drop_ratio = 1 - current.impressions / previous.impressions
    if drop_ratio < rule.threshold:
        return None
    return DecaySignal(
        page=current.page,
        reason="impressions_drop",
        severity=calculate_severity(drop_ratio, IMPRESSIONS_DROP_CUTPOINTS),
        metrics=_snapshot(current, previous),
    )


RULE_HANDLERS: dict[str, Callable[[DecayRule, PageMetrics, PageMetrics], DecaySignal | None]] = {
    "position_decay": _position_decay,
    "low_ctr": _low_ctr,
    "impressions_drop": _impressions_drop,
}


def evaluate_rule(rule: DecayRule, current: PageMetrics, previous: PageMetrics) -> DecaySignal | None:
    handler = RULE_HANDLERS.get(rule.type)
    if handler is None:
        raise ValueError(f"unknown decay rule type: {rule.type}")
    return handler(rule, current, previous)


def evaluate_rule_windows(
    rule: DecayRule,
    current_window: Iterable[PageMetrics],
    previous_window: Iterable[PageMetrics],
    *,
    published_dates: Mapping[str, datetime] | None = None,
    quiet_period: QuietPeriodConfig = QuietPeriodConfig(),
    now: datetime | None = None,
) -> list[DecaySignal]:
    now = now or utcnow()
    published_dates = published_dates or {}
    previous_by_page: dict[str, PageMetrics] = {}
    for metrics in previous_window:
        previous_by_page.setdefault(metrics.page, metrics)

    signals: list[DecaySignal] = []
    for current in current_window:
        if quiet_period.enabled:
            published = published_dates.get(current.page)
            if published is not None and days_since(published, now=now) < quiet_period.days:
                continue
        if current.impressions < rule.min_impressions:
            continue
        previous = previous_by_page.get(current.page)
        if previous is None:
            continue
        signal = evaluate_rule(rule, current, previous)
        if signal is not None:
            signals.append(signal)
    return signals


def deduplicate_signals(signals: Iterable[DecaySignal]) -> list[DecaySignal]:
    by_page: dict[str, DecaySignal] = {}
    for signal in signals:
        existing = by_page.get(signal.page)
        if existing is None or SEVERITY_RANK[signal.severity] > SEVERITY_RANK[existing.severity]:
            by_page[signal.page] = signal
    return list(by_page.values())


class DecayDetector:
    def __init__(self, repository: MetricsSource, rules: Sequence[DecayRule] = DEFAULT_RULES) -> None:
        self.repository = repository
        self.rules = tuple(rules)

    async def detect_decay(
        self,
        site_id: str,
        published_dates: Mapping[str, datetime] | None = None,
        quiet_period: QuietPeriodConfig = QuietPeriodConfig(),
        *,
        now: datetime | None = None,
    ) -> list[DecaySignal]:
        now = now or utcnow()
        signals: list[DecaySignal] = []
        for rule in self.rules:
            current_window, previous_window = await asyncio.gather(
                self.repository.get_page_metrics(site_id, days_ago(rule.sustained_days, now=now), now),
                self.repository.get_page_metrics(
                    site_id,
                    days_ago(rule.comparison_window_days + rule.sustained_days, now=now),
                    days_ago(rule.comparison_window_days, now=now),
                ),
            )
            fired = evaluate_rule_windows(
                rule,
                current_window,
                previous_window,
                published_dates=published_dates,
                quiet_period=quiet_period,
                now=now,
            )
            logger.debug("decay rule=%s site=%s pages=%s fired=%s", rule.type, site_id, len(current_window), len(fired))
            signals.extend(fired)

        deduplicated = deduplicate_signals(signals)
        logger.info("decay detection site=%s signals=%s raw=%s", site_id, len(deduplicated), len(signals))
        return deduplicated
