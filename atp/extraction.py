# FILE: atp/extraction.py
from __future__ import annotations

import math
from typing import Dict, List, Mapping

from .pdata import SCALAR_TYPES, MetricsBatch, MetricType, ResourceMetrics


def _point_sum(metric) -> float:
    total = 0.0
    for dp in metric.data_points:
        v = dp.value
        if isinstance(v, (int, float)) and math.isfinite(v):
            total += float(v)
    return total


def extract_values(
    resource: ResourceMetrics,
    thresholds: Mapping[str, float],
    weights: Mapping[str, float],
    *,
    multi_metric: bool = False,
) -> Dict[str, float]:
    """
    Current value per metric of interest on one resource.

    A metric is of interest when it has a static threshold, or a weight
    while multi-metric scoring is enabled. Gauge and sum points within one
    metric are summed; a name repeated in a later scope replaces the earlier
    value. Histogram-like kinds are skipped. Non-finite points are ignored.
    """
    out: Dict[str, float] = {}
    for metric in resource.iter_metrics():
        name = metric.name
        if name not in thresholds and not (multi_metric and name in weights):
            continue
        if metric.type not in SCALAR_TYPES:
            continue
        # last occurrence wins when a name repeats across scopes
        out[name] = _point_sum(metric)
    return out


def batch_gauge_averages(batch: MetricsBatch, metrics: Mapping[str, float]) -> Dict[str, float]:
    """
    Batch-wide average per metric named in `metrics`, over gauge metrics only.

    Each (resource, metric) contributes one sample: the sum of its points.
    Metrics that never appear are absent from the result.
    """
    samples: Dict[str, List[float]] = {}
    for rm in batch.resource_metrics:
        for metric in rm.iter_metrics():
            if metric.name not in metrics or metric.type != MetricType.GAUGE:
                continue
            if not metric.data_points:
                continue
            samples.setdefault(metric.name, []).append(_point_sum(metric))
    return {name: sum(vals) / len(vals) for name, vals in samples.items() if vals}


__all__ = ["extract_values", "batch_gauge_averages"]
