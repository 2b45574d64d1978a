# FILE: atp/exporter.py
# Prometheus self-metrics for the adaptive telemetry processor.
#
# Design:
# - Metrics describe the filter itself, not the telemetry it forwards:
#     * batch outcomes (filtered, passthrough, cancelled, fail-open),
#     * per-resource include/filter counts and per-stage hits,
#     * tracked-table size and persistence health,
#     * exporter self-health (observe errors).
# - Label sets are small and whitelisted; unknown label keys are dropped.
# - Exporter can be disabled globally via ATP_METRICS_DISABLE.
# - Metric updates never raise into the filtering path.
#
# No HTTP endpoint is started unless ATP_PROM_STANDALONE_SERVER is set; hosts
# normally expose the default registry themselves.

from __future__ import annotations

import logging
import os
import threading
from typing import Any, Dict, Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
)

logger = logging.getLogger(__name__)

# Global switch: allow disabling all metrics.
_METRICS_DISABLED = os.getenv("ATP_METRICS_DISABLE", "").strip().lower() in {"1", "true", "yes"}

_STANDALONE_SERVER_STARTED = False
_STANDALONE_SERVER_LOCK = threading.Lock()


def _safe_str(value: Any) -> str:
    """
    Convert values to short strings for labels.

    - None -> ""
    - Long strings are truncated to 64 characters to limit label explosion.
    """
    if value is None:
        return ""
    s = str(value)
    if len(s) > 64:
        s = s[:61] + "..."
    return s


_METRIC_LABEL_WHITELIST: Dict[str, set] = {
    "atp_batches_total": {"outcome"},
    "atp_resources_total": {"status"},
    "atp_stage_hits_total": {"stage"},
    "atp_persistence_total": {"op", "result"},
    "atp_fail_open_total": {"reason"},
    "atp_metrics_observe_errors_total": {"metric_name"},
    # atp_batch_latency_seconds and atp_tracked_entities have no labels.
}


class ATPPrometheusExporter:
    """
    Self-metrics for one processor instance.

        exporter = ATPPrometheusExporter(version="1.0.0", registry=CollectorRegistry())

    Metrics are created lazily on first use. Pass a private registry when
    more than one processor lives in the same process (tests, embedding).
    """

    def __init__(
        self,
        *,
        version: str = "dev",
        port: int = 9464,
        registry: Optional[CollectorRegistry] = None,
        enabled: Optional[bool] = None,
    ) -> None:
        self.version = str(version)
        self.port = int(port)
        self.registry = registry if registry is not None else REGISTRY
        self._enabled = (not _METRICS_DISABLED) if enabled is None else bool(enabled)

        self._lock = threading.Lock()
        self._initialized = False

        self._build_info: Optional[Info] = None
        self._batches: Optional[Counter] = None
        self._resources: Optional[Counter] = None
        self._stage_hits: Optional[Counter] = None
        self._latency: Optional[Histogram] = None
        self._tracked: Optional[Gauge] = None
        self._persistence: Optional[Counter] = None
        self._fail_open: Optional[Counter] = None
        self._observe_errors: Optional[Counter] = None

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _metric_labels(self, metric_name: str, label_values: Dict[str, Any]) -> Dict[str, str]:
        allowed = _METRIC_LABEL_WHITELIST.get(metric_name)
        if not allowed:
            return {k: _safe_str(v) for k, v in label_values.items()}
        return {k: _safe_str(v) for k, v in label_values.items() if k in allowed}

    def _record_observe_error(self, metric_name: str, exc: Exception) -> None:
        if self._observe_errors is None:
            return
        try:
            self._observe_errors.labels(metric_name=_safe_str(metric_name)).inc()
        except ValueError:
            return
        logger.debug("Metric update error for %s: %s", metric_name, exc)

    def _register(self, factory, name: str, doc: str, **kwargs: Any):
        try:
            return factory(name, doc, registry=self.registry, **kwargs)
        except ValueError as e:
            # duplicate name in this registry
            logger.warning("Failed to register %s: %s", name, e)
            return None

    def _init_metrics_if_needed(self) -> None:
        """Create metric objects once; idempotent and guarded by a lock."""
        if not self._enabled or self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            self._build_info = self._register(Info, "atp_build", "Adaptive telemetry processor build metadata")
            if self._build_info is not None:
                self._build_info.info({"version": self.version})

            self._batches = self._register(
                Counter, "atp_batches_total", "Batches handled, by outcome", labelnames=("outcome",)
            )
            self._resources = self._register(
                Counter, "atp_resources_total", "Resources evaluated, by status", labelnames=("status",)
            )
            self._stage_hits = self._register(
                Counter, "atp_stage_hits_total", "Resources included, by deciding stage", labelnames=("stage",)
            )
            self._latency = self._register(
                Histogram,
                "atp_batch_latency_seconds",
                "Wall time spent filtering one batch",
                buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
            )
            self._tracked = self._register(Gauge, "atp_tracked_entities", "Entities in the tracked table")
            self._persistence = self._register(
                Counter,
                "atp_persistence_total",
                "Snapshot loads and saves, by result",
                labelnames=("op", "result"),
            )
            self._fail_open = self._register(
                Counter, "atp_fail_open_total", "Batches forwarded unfiltered, by reason", labelnames=("reason",)
            )
            self._observe_errors = self._register(
                Counter,
                "atp_metrics_observe_errors_total",
                "Failed self-metric updates",
                labelnames=("metric_name",),
            )
            self._initialized = True

    def _inc(self, metric_name: str, amount: float = 1.0, **labels: Any) -> None:
        if not self._enabled:
            return
        self._init_metrics_if_needed()
        counter: Optional[Counter] = getattr(self, _COUNTER_ATTRS[metric_name])
        if counter is None or amount <= 0:
            return
        try:
            if labels:
                counter.labels(**self._metric_labels(metric_name, labels)).inc(amount)
            else:
                counter.inc(amount)
        except ValueError as e:
            self._record_observe_error(metric_name, e)

    # -----------------------------------------------------------------------
    # Public entry points
    # -----------------------------------------------------------------------

    def ensure_server(self) -> bool:
        """
        Initialize metrics and, when ATP_PROM_STANDALONE_SERVER is set,
        start one HTTP endpoint per process on self.port.
        """
        if not self._enabled:
            return False
        self._init_metrics_if_needed()

        flag = os.getenv("ATP_PROM_STANDALONE_SERVER", "").strip().lower()
        if flag not in {"1", "true", "yes"}:
            return True

        global _STANDALONE_SERVER_STARTED
        with _STANDALONE_SERVER_LOCK:
            if _STANDALONE_SERVER_STARTED:
                return True
            try:
                start_http_server(self.port, registry=self.registry)
            except OSError as e:
                logger.error("Failed to start Prometheus server on port %d: %s", self.port, e)
                return False
            _STANDALONE_SERVER_STARTED = True
            logger.info("Prometheus server started on port %d", self.port)
            return True

    def record_batch(self, outcome: str, *, latency_s: Optional[float] = None) -> None:
        self._inc("atp_batches_total", outcome=outcome or "unknown")
        if latency_s is None or not self._enabled or self._latency is None:
            return
        try:
            self._latency.observe(max(0.0, float(latency_s)))
        except ValueError as e:
            self._record_observe_error("atp_batch_latency_seconds", e)

    def record_resources(self, *, included: int, filtered: int) -> None:
        self._inc("atp_resources_total", included, status="included")
        self._inc("atp_resources_total", filtered, status="filtered")

    def record_stage_hits(self, hits: Dict[str, int]) -> None:
        for stage, n in hits.items():
            self._inc("atp_stage_hits_total", n, stage=stage)

    def record_persistence(self, op: str, result: str) -> None:
        self._inc("atp_persistence_total", op=op, result=result)

    def record_fail_open(self, *, reason: str = "") -> None:
        self._inc("atp_fail_open_total", reason=reason or "unspecified")

    def set_tracked_entities(self, n: int) -> None:
        if not self._enabled:
            return
        self._init_metrics_if_needed()
        if self._tracked is None:
            return
        self._tracked.set(max(0, int(n)))


_COUNTER_ATTRS = {
    "atp_batches_total": "_batches",
    "atp_resources_total": "_resources",
    "atp_stage_hits_total": "_stage_hits",
    "atp_persistence_total": "_persistence",
    "atp_fail_open_total": "_fail_open",
}


__all__ = ["ATPPrometheusExporter"]
