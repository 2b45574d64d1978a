# FILE: atp/tracker.py
from __future__ import annotations

"""
Entity tracker and filter-stage evaluator.

Per resource, in order:
  1. no metric of interest          -> include, no stage
  2. defunct process                -> zombie_process
  3. include-list executable path   -> include_list
  4. anomaly detection              -> anomaly_detection
  5. dynamic / static threshold     -> dynamic_threshold | static_threshold
  6. composite score                -> multi_metric
  7. (known entities only) anomaly retention, then standard retention
  8. debug passthrough              -> debug_no_match
  9. exclude

All reads and writes of the entity table and the dynamic threshold table go
through one re-entrant lock, held for a single resource evaluation or a
single bulk update.
"""

import copy
import datetime as _dt
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Mapping, Optional, Tuple

from .anomaly import AnomalyDetector, AnomalyHit
from .composite import CompositeScore, CompositeScorer
from .config import FilterConfig
from .entity import TrackedEntity, utcnow
from .extraction import extract_values
from .identity import (
    build_identity,
    in_include_list,
    is_defunct,
    process_name,
    snapshot_attributes,
)
from .pdata import MetricsBatch, ResourceMetrics
from .thresholds import DynamicThresholdEngine

logger = logging.getLogger(__name__)


class FilterStage(str, Enum):
    INCLUDE_LIST = "include_list"
    ZOMBIE_PROCESS = "zombie_process"
    STATIC_THRESHOLD = "static_threshold"
    DYNAMIC_THRESHOLD = "dynamic_threshold"
    MULTI_METRIC = "multi_metric"
    ANOMALY_DETECTION = "anomaly_detection"
    ANOMALY_RETENTION = "anomaly_retention"
    STANDARD_RETENTION = "standard_retention"
    DEBUG_NO_MATCH = "debug_no_match"


@dataclass
class FilterDecision:
    included: bool
    stage: Optional[FilterStage] = None
    identity: str = ""
    reason: str = ""
    values: Optional[Dict[str, float]] = None
    composite: Optional[CompositeScore] = None

    @property
    def label(self) -> str:
        """Stage as reported on the resource; debug passthroughs carry their ratios."""
        if self.stage is None:
            return ""
        if self.stage is FilterStage.DEBUG_NO_MATCH and self.reason:
            return f"{self.stage.value}:{self.reason}"
        return self.stage.value


class EntityTracker:
    """
    Owns every TrackedEntity and the dynamic threshold table.

    `clock` returns the wall-clock time stamped onto entities; `monotonic`
    drives the dynamic-threshold throttle.
    """

    def __init__(
        self,
        config: FilterConfig,
        *,
        clock: Callable[[], _dt.datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._clock = clock
        self._lock = threading.RLock()
        self._entities: Dict[str, TrackedEntity] = {}
        self._retention = _dt.timedelta(minutes=config.retention_minutes)

        self.thresholds = DynamicThresholdEngine(
            config.metric_thresholds,
            enabled=config.enable_dynamic_thresholds,
            smoothing=config.dynamic_smoothing_factor,
            min_thresholds=config.min_thresholds,
            max_thresholds=config.max_thresholds,
            clock=monotonic,
            lock=self._lock,
        )
        self.anomaly: Optional[AnomalyDetector] = None
        if config.enable_anomaly_detection:
            self.anomaly = AnomalyDetector(
                config.metric_thresholds,
                history_size=config.anomaly_history_size,
                change_threshold=config.anomaly_change_threshold,
                min_data_points=config.anomaly_min_data_points,
            )
        self.scorer: Optional[CompositeScorer] = None
        if config.enable_multi_metric:
            self.scorer = CompositeScorer(
                config.weights,
                config.metric_thresholds,
                dynamic_lookup=self.thresholds.get if config.enable_dynamic_thresholds else None,
            )

    # ------------------------------------------------------------------ #
    # Table access
    # ------------------------------------------------------------------ #

    def __len__(self) -> int:
        with self._lock:
            return len(self._entities)

    def get(self, identity: str) -> Optional[TrackedEntity]:
        """Copy of one entity, for inspection."""
        with self._lock:
            e = self._entities.get(identity)
            return copy.deepcopy(e) if e is not None else None

    def snapshot(self) -> Dict[str, TrackedEntity]:
        with self._lock:
            return copy.deepcopy(self._entities)

    def restore(self, entities: Mapping[str, TrackedEntity]) -> int:
        """Merge persisted entities in; live entries win over restored ones."""
        with self._lock:
            added = 0
            for ident, e in entities.items():
                if ident not in self._entities:
                    self._entities[ident] = copy.deepcopy(e)
                    added += 1
            return added

    def update_thresholds(self, batch: MetricsBatch) -> bool:
        return self.thresholds.maybe_update(batch)

    def cleanup_expired(self, now: Optional[_dt.datetime] = None) -> int:
        """
        Drop entities whose last qualifying event (threshold, composite,
        include-list or anomaly; else first sighting) is outside retention.
        """
        now = now or self._clock()
        removed = 0
        with self._lock:
            for ident in list(self._entities):
                e = self._entities[ident]
                stamps = [t for t in (e.last_exceeded, e.last_anomaly_detected) if t is not None]
                last_event = max(stamps) if stamps else e.first_seen
                if now - last_event >= self._retention:
                    del self._entities[ident]
                    removed += 1
        if removed:
            logger.info("expired %d tracked entities", removed)
        return removed

    # ------------------------------------------------------------------ #
    # Evaluation
    # ------------------------------------------------------------------ #

    def extract(self, resource: ResourceMetrics) -> Dict[str, float]:
        cfg = self.config
        return extract_values(
            resource,
            cfg.metric_thresholds,
            cfg.weights,
            multi_metric=cfg.enable_multi_metric,
        )

    def evaluate(self, resource: ResourceMetrics) -> FilterDecision:
        values = self.extract(resource)
        attrs = resource.attributes
        if not values:
            return FilterDecision(included=True, values=values)

        identity = build_identity(attrs)
        now = self._clock()

        with self._lock:
            if is_defunct(attrs):
                self._upsert_bypass(identity, values, attrs, now)
                decision = FilterDecision(True, FilterStage.ZOMBIE_PROCESS, identity)
            elif self.config.include_process_list and in_include_list(
                attrs, self.config.include_process_list
            ):
                self._upsert_bypass(identity, values, attrs, now)
                decision = FilterDecision(
                    True,
                    FilterStage.INCLUDE_LIST,
                    identity,
                    reason=f"process {process_name(attrs) or '?'} in include list",
                )
            else:
                entity = self._entities.get(identity)
                if entity is not None:
                    decision = self._evaluate_known(entity, values, now)
                else:
                    decision = self._evaluate_new(identity, values, attrs, now)

        decision.values = values
        if decision.included:
            logger.debug(
                "resource included",
                extra={"resource_id": identity, "filter_stage": decision.label, "reason": decision.reason},
            )
        return decision

    def _upsert_bypass(
        self,
        identity: str,
        values: Mapping[str, float],
        attrs: Mapping[str, object],
        now: _dt.datetime,
    ) -> None:
        entity = self._entities.get(identity)
        if entity is None:
            entity = TrackedEntity(identity=identity, first_seen=now, attributes=snapshot_attributes(attrs))
            self._entities[identity] = entity
        entity.observe(values)
        entity.mark_exceeded(now)

    def _evaluate_known(
        self,
        entity: TrackedEntity,
        values: Mapping[str, float],
        now: _dt.datetime,
    ) -> FilterDecision:
        ident = entity.identity
        entity.observe(values)

        hit = self._anomaly_stage(entity, values, now)
        if hit is not None:
            return FilterDecision(True, FilterStage.ANOMALY_DETECTION, ident, reason=hit.reason)

        found = self._threshold_stage(values)
        if found is not None:
            entity.mark_exceeded(now)
            stage, reason = found
            return FilterDecision(True, stage, ident, reason=reason)

        composite = self._composite_stage(values)
        if composite is not None:
            entity.mark_exceeded(now)
            return FilterDecision(True, FilterStage.MULTI_METRIC, ident, reason=composite.reason, composite=composite)

        if self.anomaly is not None and entity.last_anomaly_detected is not None:
            if now - entity.last_anomaly_detected < self._retention:
                return FilterDecision(True, FilterStage.ANOMALY_RETENTION, ident)

        if entity.last_exceeded is not None and now - entity.last_exceeded < self._retention:
            return FilterDecision(True, FilterStage.STANDARD_RETENTION, ident)

        if self.config.debug_show_all_filter_stages:
            return FilterDecision(True, FilterStage.DEBUG_NO_MATCH, ident, reason=self._near_miss(values))

        return FilterDecision(False, None, ident)

    def _evaluate_new(
        self,
        identity: str,
        values: Mapping[str, float],
        attrs: Mapping[str, object],
        now: _dt.datetime,
    ) -> FilterDecision:
        entity = TrackedEntity(identity=identity, first_seen=now, attributes=snapshot_attributes(attrs))
        entity.observe(values)

        decision: FilterDecision
        hit = self._anomaly_stage(entity, values, now)
        found = None if hit is not None else self._threshold_stage(values)
        composite = None if hit is not None or found is not None else self._composite_stage(values)

        if hit is not None:
            decision = FilterDecision(True, FilterStage.ANOMALY_DETECTION, identity, reason=hit.reason)
        elif found is not None:
            entity.mark_exceeded(now)
            decision = FilterDecision(True, found[0], identity, reason=found[1])
        elif composite is not None:
            entity.mark_exceeded(now)
            decision = FilterDecision(
                True, FilterStage.MULTI_METRIC, identity, reason=composite.reason, composite=composite
            )
        elif self.config.debug_show_all_filter_stages:
            decision = FilterDecision(True, FilterStage.DEBUG_NO_MATCH, identity, reason=self._near_miss(values))
        else:
            return FilterDecision(False, None, identity)

        self._entities[identity] = entity
        return decision

    # ------------------------------------------------------------------ #
    # Stages
    # ------------------------------------------------------------------ #

    def _anomaly_stage(
        self,
        entity: TrackedEntity,
        values: Mapping[str, float],
        now: _dt.datetime,
    ) -> Optional[AnomalyHit]:
        if self.anomaly is None:
            return None
        return self.anomaly.check(entity, values, now)

    def _threshold_stage(self, values: Mapping[str, float]) -> Optional[Tuple[FilterStage, str]]:
        static = self.config.metric_thresholds
        dynamic = self.thresholds.snapshot() if self.config.enable_dynamic_thresholds else {}
        for metric in sorted(values):
            if metric not in static:
                continue
            value = values[metric]
            if metric in dynamic:
                if value >= dynamic[metric]:
                    return (
                        FilterStage.DYNAMIC_THRESHOLD,
                        f"{metric}={value:.2f} >= dynamic {dynamic[metric]:.2f}",
                    )
                continue
            threshold = static[metric]
            if threshold == 0 or value >= threshold:
                return (
                    FilterStage.STATIC_THRESHOLD,
                    f"{metric}={value:.2f} >= static {threshold:.2f}",
                )
        return None

    def _composite_stage(self, values: Mapping[str, float]) -> Optional[CompositeScore]:
        if self.scorer is None:
            return None
        result = self.scorer.score(values)
        if result.terms and result.score >= self.config.composite_threshold:
            return result
        return None

    def _near_miss(self, values: Mapping[str, float]) -> str:
        """Diagnostic summary for resources that matched nothing."""
        dynamic_on = self.config.enable_dynamic_thresholds
        dynamic = self.thresholds.snapshot() if dynamic_on else {}
        max_ratio = 0.0
        for metric, value in values.items():
            if metric not in self.config.metric_thresholds:
                continue
            t = dynamic.get(metric, self.config.metric_thresholds[metric])
            if t > 0:
                max_ratio = max(max_ratio, value / t)
        kind = "dynamic_max_ratio" if dynamic_on else "static_max_ratio"
        parts = [f"{kind}={max_ratio:.2f}"]
        if self.scorer is not None:
            score = self.scorer.score(values).score
            parts.append(f"multi_metric={score:.2f}/{self.config.composite_threshold:.2f}")
        if self.anomaly is not None:
            parts.append("anomaly=none")
        return "[" + " ".join(parts) + "]"


__all__ = ["EntityTracker", "FilterDecision", "FilterStage"]
