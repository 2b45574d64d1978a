# FILE: atp/processor.py
from __future__ import annotations

"""
Adaptive telemetry processor: the pipeline stage the host calls.

    proc = AdaptiveTelemetryProcessor(FilterConfig(metric_thresholds={"process.cpu.utilization": 5.0}))
    proc.start()
    out = proc.consume(batch)          # never loses telemetry
    proc.shutdown()

`process_batch` is the strict form: it raises BatchCancelled (carrying the
original batch) when the host's deadline or cancel event fires. `consume`
wraps it and forwards the unfiltered batch on cancellation, on any
evaluation error, and when a non-empty input would yield nothing.

Background work (expired-entity cleanup, state snapshots) runs on short
daemon threads started from the batch path: cleanup with a small fixed
probability per batch, snapshots at most once per persist interval.

Environment knobs:
- ATP_CLEANUP_PROBABILITY     (default: 0.01, clamped into [0, 1])
- ATP_PERSIST_INTERVAL_S      (default: 60)
"""

import copy
import json
import logging
import os
import random
import threading
import time
import uuid
from collections import Counter
from typing import Callable, Dict, List, Optional

from .config import FilterConfig
from .entity import utcnow
from .exporter import ATPPrometheusExporter
from .logging import bind, unbind
from .pdata import MetricsBatch, ResourceMetrics
from .storage import (
    EntityStore,
    FileEntityStore,
    PathConfinementError,
    StorageError,
)
from .summary import build_summary
from .tracker import EntityTracker, FilterDecision

logger = logging.getLogger(__name__)

FILTER_STAGE_ATTRIBUTE = "process.atp.filter.stage"
THRESHOLD_ATTRIBUTE_PREFIX = "process.atp.threshold."
COMPOSITE_SCORE_ATTRIBUTE = "multi_metric.composite_score"
COMPOSITE_THRESHOLD_ATTRIBUTE = "multi_metric.threshold"

# Resources evaluated between cancellation checks.
CANCEL_CHECK_EVERY = 25


def _env_float(name: str, default: float, lo: float, hi: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        v = float(raw)
    except ValueError:
        return default
    return min(max(v, lo), hi)


class BatchCancelled(Exception):
    """The host's deadline or cancel event fired; `batch` is the untouched input."""

    def __init__(self, batch: MetricsBatch, reason: str = "cancelled") -> None:
        super().__init__(reason)
        self.batch = batch
        self.reason = reason


class AdaptiveTelemetryProcessor:
    """
    One filtering stage instance.

    Without an explicit `exporter` the self-metrics register on the global
    prometheus REGISTRY. Only the first instance in a process gets them; later
    ones log a duplicate-registration warning and record nothing. Give each
    additional instance an exporter with its own CollectorRegistry.
    """

    def __init__(
        self,
        config: FilterConfig,
        *,
        store: Optional[EntityStore] = None,
        storage_base_dir: Optional[str] = None,
        exporter: Optional[ATPPrometheusExporter] = None,
        clock=utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
        cleanup_probability: Optional[float] = None,
        persist_interval_s: Optional[float] = None,
        background: bool = True,
    ) -> None:
        # ConfigError here is fatal to startup
        self.config = config.prepared(storage_base_dir=storage_base_dir)
        self.tracker = EntityTracker(self.config, clock=clock, monotonic=monotonic)
        self.exporter = exporter or ATPPrometheusExporter()

        self._clock = clock
        self._monotonic = monotonic
        self._rng = rng or random.Random()
        self._background = background
        self._cleanup_probability = (
            cleanup_probability
            if cleanup_probability is not None
            else _env_float("ATP_CLEANUP_PROBABILITY", 0.01, 0.0, 1.0)
        )
        self._persist_interval_s = (
            persist_interval_s
            if persist_interval_s is not None
            else _env_float("ATP_PERSIST_INTERVAL_S", 60.0, 0.0, 86400.0)
        )

        if store is None and self.config.persistence_enabled:
            store = FileEntityStore(self.config.storage_path, base_dir=storage_base_dir)
        self._store = store

        self._lock = threading.Lock()
        self._threads: List[threading.Thread] = []
        self._persist_running = False
        self._last_persist = monotonic()
        self._shut_down = False

        self._load_state()

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        logger.info(
            "adaptive telemetry processor started",
            extra={"metrics": sorted(self.config.metric_thresholds), "persistence": self._store is not None},
        )

    def shutdown(self, *, timeout: Optional[float] = 5.0) -> None:
        """Wait for background work, write a final snapshot, release the store."""
        with self._lock:
            if self._shut_down:
                return
            self._shut_down = True
            threads = list(self._threads)
            self._threads.clear()
        for t in threads:
            t.join(timeout=timeout)

        if self._store is not None:
            self.persist()
            self._store.close()
        logger.info("adaptive telemetry processor stopped")

    # ------------------------------------------------------------------ #
    # Batch path
    # ------------------------------------------------------------------ #

    def _cancelled(self, deadline: Optional[float], cancel: Optional[threading.Event]) -> Optional[str]:
        if cancel is not None and cancel.is_set():
            return "cancelled"
        if deadline is not None and self._monotonic() >= deadline:
            return "deadline exceeded"
        return None

    def process_batch(
        self,
        batch: MetricsBatch,
        *,
        deadline: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> MetricsBatch:
        """
        Filter one batch. `deadline` is a value of the processor's monotonic
        clock. Raises BatchCancelled before any partial result escapes.
        """
        total = batch.resource_count()
        if total == 0:
            return batch

        why = self._cancelled(deadline, cancel)
        if why:
            raise BatchCancelled(batch, why)

        bind(batch_id=uuid.uuid4().hex[:16])
        try:
            self.tracker.update_thresholds(batch)

            out = MetricsBatch()
            hits: Dict[str, int] = Counter()
            for i, rm in enumerate(batch.resource_metrics):
                if i and i % CANCEL_CHECK_EVERY == 0:
                    why = self._cancelled(deadline, cancel)
                    if why:
                        raise BatchCancelled(batch, why)
                decision = self.tracker.evaluate(rm)
                if not decision.included:
                    continue
                if decision.stage is not None:
                    hits[decision.stage.value] += 1
                out.resource_metrics.append(self._forwarded_copy(rm, decision))

            included = out.resource_count()
            host_attrs = out.resource_metrics[0].attributes if out.resource_metrics else None
            summary = build_summary(total, included, hits, host_attributes=host_attrs)
            if summary is not None:
                out.resource_metrics.append(summary)

            self.exporter.record_resources(included=included, filtered=total - included)
            self.exporter.record_stage_hits(dict(hits))
            logger.debug(
                "batch filtered",
                extra={"resources_in": total, "resources_out": included},
            )
        finally:
            unbind("batch_id")

        self._after_batch()
        return out

    def consume(
        self,
        batch: MetricsBatch,
        *,
        deadline: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> MetricsBatch:
        """Fail-open wrapper: whatever goes wrong, the host gets telemetry."""
        t0 = time.perf_counter()
        try:
            out = self.process_batch(batch, deadline=deadline, cancel=cancel)
        except BatchCancelled as e:
            logger.warning("batch %s; forwarding unfiltered", e.reason)
            self.exporter.record_batch("cancelled")
            return e.batch
        except Exception:
            logger.exception("filtering failed; forwarding unfiltered batch")
            self.exporter.record_fail_open(reason="error")
            self.exporter.record_batch("fail_open")
            return batch

        if batch.resource_count() > 0 and out.resource_count() == 0:
            logger.warning("filtering produced no resources from a non-empty batch; forwarding unfiltered")
            self.exporter.record_fail_open(reason="empty_result")
            self.exporter.record_batch("fail_open")
            return batch

        outcome = "filtered" if out is not batch else "passthrough"
        self.exporter.record_batch(outcome, latency_s=time.perf_counter() - t0)
        return out

    def _forwarded_copy(self, rm: ResourceMetrics, decision: FilterDecision) -> ResourceMetrics:
        """Copy for the downstream batch: internal stage attribute removed, threshold detail added."""
        fwd = ResourceMetrics(
            attributes=dict(rm.attributes),
            scope_metrics=copy.deepcopy(rm.scope_metrics),
        )
        fwd.attributes.pop(FILTER_STAGE_ATTRIBUTE, None)

        if decision.values:
            self._attach_threshold_detail(fwd, decision.values)
        if decision.composite is not None:
            fwd.attributes[COMPOSITE_SCORE_ATTRIBUTE] = decision.composite.score
            fwd.attributes[COMPOSITE_THRESHOLD_ATTRIBUTE] = self.config.composite_threshold
        return fwd

    def _attach_threshold_detail(self, rm: ResourceMetrics, values: Dict[str, float]) -> None:
        ts = int(self._clock().timestamp())
        for metric, value in values.items():
            static = self.config.metric_thresholds.get(metric)
            if static is None:
                continue
            threshold, kind = self.tracker.thresholds.effective(metric, static)
            if threshold <= 0:
                continue
            rm.attributes[THRESHOLD_ATTRIBUTE_PREFIX + metric] = json.dumps(
                {
                    "threshold": threshold,
                    "observed_value": value,
                    "threshold_type": kind,
                    "evaluation_timestamp": ts,
                },
                sort_keys=True,
            )

    # ------------------------------------------------------------------ #
    # Maintenance
    # ------------------------------------------------------------------ #

    def _spawn(self, target: Callable[[], object], name: str) -> None:
        if not self._background:
            target()
            return
        with self._lock:
            if self._shut_down:
                return
            self._threads = [t for t in self._threads if t.is_alive()]
            t = threading.Thread(target=target, name=name, daemon=True)
            self._threads.append(t)
        t.start()

    def _after_batch(self) -> None:
        self.exporter.set_tracked_entities(len(self.tracker))

        if self._rng.random() < self._cleanup_probability:
            self._spawn(self.tracker.cleanup_expired, "atp-cleanup")

        if self._store is None or self._store.disabled:
            return
        now = self._monotonic()
        with self._lock:
            due = not self._persist_running and now - self._last_persist >= self._persist_interval_s
            if due:
                self._persist_running = True
                self._last_persist = now
        if due:
            self._spawn(self._persist_task, "atp-persist")

    def _persist_task(self) -> None:
        try:
            self.persist()
        finally:
            with self._lock:
                self._persist_running = False

    def persist(self) -> bool:
        """Write a snapshot now. Storage problems are logged, never raised."""
        store = self._store
        if store is None or store.disabled:
            return False
        snapshot = self.tracker.snapshot()
        try:
            store.save(snapshot)
        except PathConfinementError as e:
            logger.error("persistence disabled: %s", e)
            self.exporter.record_persistence("save", "disabled")
            return False
        except StorageError as e:
            logger.warning("snapshot save failed: %s", e)
            self.exporter.record_persistence("save", "error")
            return False
        self.exporter.record_persistence("save", "ok")
        logger.debug("snapshot saved", extra={"entities": len(snapshot)})
        return True

    def _load_state(self) -> None:
        if self._store is None:
            return
        try:
            entities = self._store.load()
        except StorageError as e:
            logger.warning("could not load tracked state, starting empty: %s", e)
            self.exporter.record_persistence("load", "error")
            return
        added = self.tracker.restore(entities)
        self.exporter.record_persistence("load", "ok")
        logger.info("restored %d tracked entities", added)


__all__ = [
    "AdaptiveTelemetryProcessor",
    "BatchCancelled",
    "FILTER_STAGE_ATTRIBUTE",
    "THRESHOLD_ATTRIBUTE_PREFIX",
    "COMPOSITE_SCORE_ATTRIBUTE",
    "COMPOSITE_THRESHOLD_ATTRIBUTE",
]
