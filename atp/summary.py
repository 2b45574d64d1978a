# FILE: atp/summary.py
from __future__ import annotations

from typing import Any, Mapping, Optional

from .pdata import MetricType, ResourceMetrics

EFFICIENCY_RATIO_METRIC = "process.atp.filter.efficiency_ratio"
RESOURCE_COUNT_METRIC = "process.atp.filter.resource_count"
THRESHOLD_TRIGGERS_METRIC = "process.atp.filter.threshold_triggers"

ATTR_SOURCE = "process.atp.source"
ATTR_METRIC_TYPE = "process.atp.metric_type"
ATTR_STATUS = "process.atp.status"
ATTR_STAGE = "process.atp.stage"

SOURCE_VALUE = "adaptive_telemetry_processor"
METRIC_TYPE_VALUE = "filter_summary"
SCOPE_NAME = "process.atp.processor"
SCOPE_VERSION = "1.0.0"

STATUS_INCLUDED = "included"
STATUS_FILTERED = "filtered"

# Copied from the first forwarded resource so the summary lands on the same host entity.
COPIED_ATTRIBUTES = ("host.id", "host.name", "newrelic.source", "container.id", "service.name")


def build_summary(
    total: int,
    included: int,
    stage_hits: Mapping[str, int],
    *,
    host_attributes: Optional[Mapping[str, Any]] = None,
) -> Optional[ResourceMetrics]:
    """
    Synthetic resource describing one batch's filtering outcome.

    Returns None for an empty input batch. Stages with zero hits are left out,
    and the triggers metric is omitted when no stage fired.
    """
    if total <= 0:
        return None
    filtered = max(total - included, 0)

    attrs = {ATTR_SOURCE: SOURCE_VALUE, ATTR_METRIC_TYPE: METRIC_TYPE_VALUE}
    for key in COPIED_ATTRIBUTES:
        if host_attributes and key in host_attributes:
            attrs[key] = host_attributes[key]

    rm = ResourceMetrics(attributes=attrs)
    sm = rm.add_scope(SCOPE_NAME, SCOPE_VERSION)

    ratio = sm.add_metric(
        EFFICIENCY_RATIO_METRIC,
        MetricType.GAUGE,
        unit="1",
        description="Percentage of resources filtered out by adaptive telemetry processor",
    )
    ratio.add_point(filtered / total)

    counts = sm.add_metric(
        RESOURCE_COUNT_METRIC,
        MetricType.GAUGE,
        description="Count of resources by filter status",
    )
    counts.add_point(included, **{ATTR_STATUS: STATUS_INCLUDED})
    counts.add_point(filtered, **{ATTR_STATUS: STATUS_FILTERED})

    hits = {stage: n for stage, n in stage_hits.items() if n > 0}
    if hits:
        triggers = sm.add_metric(
            THRESHOLD_TRIGGERS_METRIC,
            MetricType.GAUGE,
            description="Count of resources included by each filter stage",
        )
        for stage in sorted(hits):
            triggers.add_point(hits[stage], **{ATTR_STAGE: stage})

    return rm


__all__ = [
    "build_summary",
    "EFFICIENCY_RATIO_METRIC",
    "RESOURCE_COUNT_METRIC",
    "THRESHOLD_TRIGGERS_METRIC",
]
