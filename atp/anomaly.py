# FILE: atp/anomaly.py
from __future__ import annotations

"""
Rolling-average spike detector.

For every thresholded metric on a tracked entity:
  - the history *before* this sample is the baseline;
  - the sample is appended (bounded, oldest dropped) whatever the outcome;
  - with fewer than `min_data_points` baseline samples nothing fires;
  - pct_change = (value - mean) / mean * 100, or 0 when mean <= 0;
  - fires when pct_change >= change_threshold.

The first metric (by name) that fires is reported.
"""

import datetime as _dt
import logging
from dataclasses import dataclass
from typing import List, Mapping, Optional

from .entity import TrackedEntity

logger = logging.getLogger(__name__)


def mean(values: List[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def percent_change(current: float, avg: float) -> float:
    if avg > 0:
        return (current - avg) / avg * 100.0
    return 0.0


@dataclass(frozen=True)
class AnomalyHit:
    metric: str
    value: float
    pct_change: float
    mean: float

    @property
    def reason(self) -> str:
        return f"{self.metric} anomaly: {self.value:.2f} ({self.pct_change:.1f}% change from avg {self.mean:.2f})"


class AnomalyDetector:
    def __init__(
        self,
        thresholds: Mapping[str, float],
        *,
        history_size: int = 10,
        change_threshold: float = 200.0,
        min_data_points: int = 3,
    ) -> None:
        self._thresholds = dict(thresholds)
        self.history_size = int(history_size)
        self.change_threshold = float(change_threshold)
        self.min_data_points = int(min_data_points)

    def check(
        self,
        entity: TrackedEntity,
        values: Mapping[str, float],
        now: _dt.datetime,
    ) -> Optional[AnomalyHit]:
        """
        Feed `values` into the entity's history and return the first spike,
        stamping `last_anomaly_detected` when one fires.
        """
        hit: Optional[AnomalyHit] = None
        for metric in sorted(values):
            if metric not in self._thresholds:
                continue
            value = values[metric]
            prior = entity.push_history(metric, value, self.history_size)
            if hit is not None or len(prior) < self.min_data_points:
                continue
            avg = mean(prior)
            pct = percent_change(value, avg)
            if pct >= self.change_threshold:
                hit = AnomalyHit(metric=metric, value=value, pct_change=pct, mean=avg)

        if hit is not None:
            entity.mark_anomaly(now)
            logger.debug(
                "anomaly detected",
                extra={
                    "resource_id": entity.identity,
                    "metric": hit.metric,
                    "value": hit.value,
                    "pct_change": hit.pct_change,
                    "avg": hit.mean,
                },
            )
        return hit


__all__ = ["AnomalyDetector", "AnomalyHit", "mean", "percent_change"]
