from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from pagebridge.core.dates import days_ago, utcnow
from pagebridge.services.metrics import PageMetrics, safe_ctr

logger = logging.getLogger(__name__)

AlertType = Literal["ctr_anomaly", "quick_win_available", "position_decay", "stale_content", "cannibalization"]
AnomalySeverity = Literal["low", "medium", "high"]

# Industry-average CTR for organic positions 1-10.
EXPECTED_CTR_BY_POSITION: dict[int, float] = {
    1: 0.319,
    2: 0.246,
    3: 0.185,
    4: 0.133,
    5: 0.095,
    6: 0.069,
    7: 0.052,
    8: 0.041,
    9: 0.033,
    10: 0.028,
}
_FALLBACK_EXPECTED_CTR = 0.028


@dataclass(slots=True, frozen=True)
class CtrAnomalyConfig:
    min_impressions: float = 100
    max_position: float = 10
    high_threshold: float = 0.25
    medium_threshold: float = 0.5
    low_threshold: float = 0.75


@dataclass(slots=True)
class CtrAnomaly:
    page: str
    actual_ctr: float
    expected_ctr: float
    position_bucket: int
    severity: AnomalySeverity
    message: str
    detected: bool = True


@dataclass(slots=True)
class InsightAlert:
    type: AlertType
    severity: AnomalySeverity
    message: str


def position_bucket(position: float) -> int:
    return int(math.floor(position + 0.5))


def evaluate_ctr(metrics: PageMetrics, config: CtrAnomalyConfig = CtrAnomalyConfig()) -> CtrAnomaly | None:
    if metrics.position > config.max_position or metrics.position < 1:
        return None
    if metrics.impressions < config.min_impressions:
        return None

    bucket = position_bucket(metrics.position)
    expected = EXPECTED_CTR_BY_POSITION.get(min(bucket, 10), _FALLBACK_EXPECTED_CTR)
    actual = safe_ctr(metrics.clicks, metrics.impressions)
    ratio = actual / expected if expected > 0 else 1.0
    if ratio >= config.low_threshold:
        return None

    if ratio < config.high_threshold:
        severity: AnomalySeverity = "high"
    elif ratio < config.medium_threshold:
        severity = "medium"
    else:
        severity = "low"

    return CtrAnomaly(
        page=metrics.page,
        actual_ctr=actual,
        expected_ctr=expected,
        position_bucket=bucket,
        severity=severity,
        message=f"CTR is {actual * 100:.1f}% vs {expected * 100:.1f}% expected for position {bucket}",
    )


def find_ctr_anomalies(rows: Iterable[PageMetrics], config: CtrAnomalyConfig = CtrAnomalyConfig()) -> dict[str, CtrAnomaly]:
    anomalies: dict[str, CtrAnomaly] = {}
    for row in rows:
        anomaly = evaluate_ctr(row, config)
        if anomaly is not None:
            anomalies[row.page] = anomaly
    return anomalies


def build_alerts(
    ctr_anomaly: CtrAnomaly | None = None,
    has_quick_wins: bool = False,
    has_decay: bool = False,
    has_cannibalization: bool = False,
) -> list[InsightAlert]:
    alerts: list[InsightAlert] = []
    if ctr_anomaly is not None and ctr_anomaly.detected:
        alerts.append(InsightAlert(type="ctr_anomaly", severity=ctr_anomaly.severity, message=ctr_anomaly.message))
    if has_quick_wins:
        alerts.append(
            InsightAlert(
                type="quick_win_available",
                severity="low",
                message="Page 1 opportunities found: queries at positions 8-20",
            )
        )
    if has_decay:
        alerts.append(
            InsightAlert(
                type="position_decay",
                severity="medium",
                message="Content decay detected: performance declining",
            )
        )
    if has_cannibalization:
        alerts.append(
            InsightAlert(
                type="cannibalization",
                severity="medium",
                message="Query cannibalization detected: multiple pages competing",
            )
        )
    return alerts


class CtrAnomalyAnalyzer:
    def __init__(self, repository: Any, config: CtrAnomalyConfig | None = None) -> None:
        self.repository = repository
        self.config = config or CtrAnomalyConfig()

    async def analyze(self, site_id: str, *, now: datetime | None = None) -> dict[str, CtrAnomaly]:
        now = now or utcnow()
        rows = await self.repository.get_page_metrics(site_id, days_ago(28, now=now), days_ago(3, now=now))
        anomalies = find_ctr_anomalies(rows, self.config)
        logger.info("ctr anomalies site=%s pages=%s anomalies=%s", site_id, len(rows), len(anomalies))
        return anomalies
