# atp/tests/conftest.py
import datetime as dt

import pytest
from prometheus_client import CollectorRegistry

from atp.exporter import ATPPrometheusExporter
from atp.pdata import MetricsBatch, MetricType


class FakeClock:
    """Wall clock and monotonic clock that only move when told to."""

    def __init__(self):
        self.now = dt.datetime(2024, 1, 1, 12, 0, 0, tzinfo=dt.timezone.utc)
        self.mono = 1000.0

    def __call__(self):
        return self.now

    def monotonic(self):
        return self.mono

    def advance(self, *, minutes=0.0, seconds=0.0):
        delta = dt.timedelta(minutes=minutes, seconds=seconds)
        self.now += delta
        self.mono += delta.total_seconds()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def exporter():
    return ATPPrometheusExporter(registry=CollectorRegistry())


def _fill(batch, attrs, metrics, mtype):
    rm = batch.add_resource(attrs)
    sm = rm.add_scope("hostmetrics")
    for name, value in metrics.items():
        m = sm.add_metric(name, mtype)
        values = value if isinstance(value, (list, tuple)) else [value]
        for v in values:
            m.add_point(v)
    return rm


@pytest.fixture
def make_batch():
    """make_batch((attrs, {metric: value_or_values}), ...) -> MetricsBatch of gauges."""

    def _make(*resources, mtype=MetricType.GAUGE):
        batch = MetricsBatch()
        for attrs, metrics in resources:
            _fill(batch, attrs, metrics, mtype)
        return batch

    return _make


@pytest.fixture
def proc_resource():
    """proc_resource(pid, host="h1", **attrs) -> attribute dict for a process resource."""

    def _attrs(pid, host="h1", **extra):
        attrs = {"process.pid": pid, "host.name": host}
        attrs.update({k.replace("_", "."): v for k, v in extra.items()})
        return attrs

    return _attrs
