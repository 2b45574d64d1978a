# FILE: atp/thresholds.py
from __future__ import annotations

"""
Dynamic threshold engine.

Each metric with a positive static threshold gets a dynamic threshold seeded
from it; zero thresholds stay static. On every accepted update:

    target = static + batch_average * SCALING_FACTOR
    new    = alpha * target + (1 - alpha) * previous
    new    = clamp(new, min_thresholds[m], max_thresholds[m])   (bounds > 0 only)

Updates are throttled to at most one per UPDATE_INTERVAL_S / 2. Metrics
absent from the batch keep their previous threshold.
"""

import logging
import threading
import time
from typing import Callable, Dict, Mapping, Optional, Tuple

from .extraction import batch_gauge_averages
from .pdata import MetricsBatch

logger = logging.getLogger(__name__)

UPDATE_INTERVAL_S = 60.0
SCALING_FACTOR = 0.2

THRESHOLD_DYNAMIC = "dynamic"
THRESHOLD_STATIC = "static"


class DynamicThresholdEngine:
    def __init__(
        self,
        static: Mapping[str, float],
        *,
        enabled: bool,
        smoothing: float = 0.2,
        min_thresholds: Optional[Mapping[str, float]] = None,
        max_thresholds: Optional[Mapping[str, float]] = None,
        interval_s: float = UPDATE_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
        lock: Optional[threading.RLock] = None,
    ) -> None:
        self.enabled = bool(enabled)
        self.smoothing = float(smoothing)
        self._static = dict(static)
        self._min = dict(min_thresholds or {})
        self._max = dict(max_thresholds or {})
        self._interval_s = float(interval_s)
        self._clock = clock
        self._lock = lock or threading.RLock()
        self._table: Dict[str, float] = {}
        self._last_update = clock()
        if self.enabled:
            self._table = {m: t for m, t in self._static.items() if t > 0}

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def get(self, metric: str) -> Optional[float]:
        with self._lock:
            return self._table.get(metric)

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._table)

    def tracks(self, metric: str) -> bool:
        with self._lock:
            return self.enabled and metric in self._table

    def effective(self, metric: str, static: float) -> Tuple[float, str]:
        """
        Threshold to report for `metric`: the dynamic one when enabled and
        positive, else the static one.
        """
        if self.enabled:
            dyn = self.get(metric)
            if dyn is not None and dyn > 0:
                return dyn, THRESHOLD_DYNAMIC
        return static, THRESHOLD_STATIC

    # ------------------------------------------------------------------ #
    # Updates
    # ------------------------------------------------------------------ #

    def maybe_update(self, batch: MetricsBatch) -> bool:
        """Fold one batch's averages in, unless disabled or throttled."""
        if not self.enabled:
            return False
        # claim the window before aggregating so concurrent batches see it taken
        with self._lock:
            now = self._clock()
            if now - self._last_update < self._interval_s / 2.0:
                return False
            self._last_update = now

        averages = batch_gauge_averages(batch, self._static)
        self.apply_averages(averages)
        return True

    def apply_averages(self, averages: Mapping[str, float]) -> Dict[str, float]:
        """Apply one smoothing step per averaged metric. Returns the changed entries."""
        changed: Dict[str, float] = {}
        alpha = self.smoothing
        with self._lock:
            for metric, base in self._static.items():
                # zero thresholds mean "always include" and never drift
                if base <= 0 or metric not in averages:
                    continue
                prev = self._table.get(metric) or base
                target = base + averages[metric] * SCALING_FACTOR
                new = alpha * target + (1.0 - alpha) * prev

                lo = self._min.get(metric, 0.0)
                hi = self._max.get(metric, 0.0)
                if lo > 0 and new < lo:
                    new = lo
                if hi > 0 and new > hi:
                    new = hi

                self._table[metric] = new
                changed[metric] = new
        if changed:
            logger.debug("dynamic thresholds updated: %s", changed)
        return changed


__all__ = [
    "DynamicThresholdEngine",
    "UPDATE_INTERVAL_S",
    "SCALING_FACTOR",
    "THRESHOLD_DYNAMIC",
    "THRESHOLD_STATIC",
]
