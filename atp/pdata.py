# FILE: atp/pdata.py
from __future__ import annotations

"""
In-memory metric batch model.

A batch is a list of resources; each resource carries flat attributes and a
list of scopes, each scope a list of named metrics, each metric a list of
numeric data points. Only the shape the filter needs is modelled; wire
encodings belong to the host pipeline.

`to_dict` / `from_dict` give a plain JSON mapping used by the offline tools
and tests:

    {"resource_metrics": [
        {"attributes": {...},
         "scope_metrics": [
            {"name": "...", "version": "...",
             "metrics": [{"name": "...", "type": "gauge", "unit": "",
                          "description": "",
                          "data_points": [{"value": 1.0, "attributes": {}}]}]}]}]}
"""

import copy
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional


class MetricType(str, Enum):
    GAUGE = "gauge"
    SUM = "sum"
    HISTOGRAM = "histogram"
    SUMMARY = "summary"
    EXPONENTIAL_HISTOGRAM = "exponential_histogram"


# Kinds whose point values are summed when a metric is scored.
SCALAR_TYPES = frozenset({MetricType.GAUGE, MetricType.SUM})


@dataclass
class DataPoint:
    value: float = 0.0
    attributes: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "attributes": dict(self.attributes),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DataPoint":
        try:
            value = float(data.get("value", 0.0))
        except (TypeError, ValueError):
            value = 0.0
        return cls(
            value=value,
            attributes=dict(data.get("attributes") or {}),
            timestamp=float(data.get("timestamp") or time.time()),
        )


@dataclass
class Metric:
    name: str
    type: MetricType = MetricType.GAUGE
    data_points: List[DataPoint] = field(default_factory=list)
    unit: str = ""
    description: str = ""

    def add_point(self, value: float, **attributes: Any) -> DataPoint:
        dp = DataPoint(value=float(value), attributes=dict(attributes))
        self.data_points.append(dp)
        return dp

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type.value,
            "unit": self.unit,
            "description": self.description,
            "data_points": [dp.to_dict() for dp in self.data_points],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Metric":
        return cls(
            name=str(data.get("name", "")),
            type=MetricType(data.get("type", MetricType.GAUGE.value)),
            data_points=[DataPoint.from_dict(d) for d in data.get("data_points") or []],
            unit=str(data.get("unit", "")),
            description=str(data.get("description", "")),
        )


@dataclass
class ScopeMetrics:
    name: str = ""
    version: str = ""
    metrics: List[Metric] = field(default_factory=list)

    def add_metric(
        self,
        name: str,
        type: MetricType = MetricType.GAUGE,
        *,
        unit: str = "",
        description: str = "",
    ) -> Metric:
        m = Metric(name=name, type=type, unit=unit, description=description)
        self.metrics.append(m)
        return m

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "metrics": [m.to_dict() for m in self.metrics],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ScopeMetrics":
        return cls(
            name=str(data.get("name", "")),
            version=str(data.get("version", "")),
            metrics=[Metric.from_dict(m) for m in data.get("metrics") or []],
        )


@dataclass
class ResourceMetrics:
    attributes: Dict[str, Any] = field(default_factory=dict)
    scope_metrics: List[ScopeMetrics] = field(default_factory=list)

    def add_scope(self, name: str = "", version: str = "") -> ScopeMetrics:
        sm = ScopeMetrics(name=name, version=version)
        self.scope_metrics.append(sm)
        return sm

    def iter_metrics(self) -> Iterator[Metric]:
        for sm in self.scope_metrics:
            yield from sm.metrics

    def metric_count(self) -> int:
        return sum(len(sm.metrics) for sm in self.scope_metrics)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attributes": dict(self.attributes),
            "scope_metrics": [sm.to_dict() for sm in self.scope_metrics],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ResourceMetrics":
        return cls(
            attributes=dict(data.get("attributes") or {}),
            scope_metrics=[ScopeMetrics.from_dict(s) for s in data.get("scope_metrics") or []],
        )


@dataclass
class MetricsBatch:
    resource_metrics: List[ResourceMetrics] = field(default_factory=list)

    def add_resource(self, attributes: Optional[Mapping[str, Any]] = None) -> ResourceMetrics:
        rm = ResourceMetrics(attributes=dict(attributes or {}))
        self.resource_metrics.append(rm)
        return rm

    def resource_count(self) -> int:
        return len(self.resource_metrics)

    def copy(self) -> "MetricsBatch":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {"resource_metrics": [rm.to_dict() for rm in self.resource_metrics]}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MetricsBatch":
        return cls(
            resource_metrics=[
                ResourceMetrics.from_dict(r) for r in data.get("resource_metrics") or []
            ]
        )


__all__ = [
    "MetricType",
    "SCALAR_TYPES",
    "DataPoint",
    "Metric",
    "ScopeMetrics",
    "ResourceMetrics",
    "MetricsBatch",
]
