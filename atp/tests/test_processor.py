# atp/tests/test_processor.py
import json
import random
import threading

import pytest

from atp.config import ConfigError, FilterConfig
from atp.pdata import MetricsBatch
from atp.processor import (
    CANCEL_CHECK_EVERY,
    COMPOSITE_SCORE_ATTRIBUTE,
    COMPOSITE_THRESHOLD_ATTRIBUTE,
    FILTER_STAGE_ATTRIBUTE,
    THRESHOLD_ATTRIBUTE_PREFIX,
    AdaptiveTelemetryProcessor,
    BatchCancelled,
)
from atp.storage import FileEntityStore, InMemoryEntityStore
from atp.summary import (
    EFFICIENCY_RATIO_METRIC,
    RESOURCE_COUNT_METRIC,
    THRESHOLD_TRIGGERS_METRIC,
)

CPU = "process.cpu.utilization"
MEM = "process.memory.utilization"


def _processor(clock, exporter, *, store=None, persist_interval_s=60.0, **cfg):
    cfg.setdefault("enable_storage", False)
    return AdaptiveTelemetryProcessor(
        FilterConfig(**cfg),
        store=store,
        exporter=exporter,
        clock=clock,
        monotonic=clock.monotonic,
        rng=random.Random(0),
        cleanup_probability=0.0,
        persist_interval_s=persist_interval_s,
        background=False,
    )


def _summary(out):
    rm = out.resource_metrics[-1]
    assert rm.attributes["process.atp.metric_type"] == "filter_summary"
    return {m.name: m for m in rm.iter_metrics()}, rm


def test_invalid_config_fails_construction(clock, exporter):
    with pytest.raises(ConfigError):
        _processor(clock, exporter, metric_thresholds={CPU: -1.0})


def test_empty_batch_gets_no_summary(clock, exporter):
    proc = _processor(clock, exporter, metric_thresholds={CPU: 5.0})
    out = proc.consume(MetricsBatch())
    assert out.resource_count() == 0


def test_filters_and_appends_summary(clock, exporter, make_batch, proc_resource):
    proc = _processor(clock, exporter, metric_thresholds={CPU: 5.0})
    batch = make_batch(
        (proc_resource(1, host_id="hid-1"), {CPU: 10.0}),
        (proc_resource(2), {CPU: 1.0}),
        (proc_resource(3), {CPU: 2.0}),
    )
    out = proc.consume(batch)

    assert out.resource_count() == 2
    assert out.resource_metrics[0].attributes["process.pid"] == 1

    metrics, rm = _summary(out)
    assert rm.attributes["process.atp.source"] == "adaptive_telemetry_processor"
    assert rm.attributes["host.name"] == "h1"
    assert rm.attributes["host.id"] == "hid-1"
    assert rm.scope_metrics[0].name == "process.atp.processor"

    ratio = metrics[EFFICIENCY_RATIO_METRIC]
    assert ratio.unit == "1"
    assert ratio.data_points[0].value == pytest.approx(2 / 3)

    counts = {dp.attributes["process.atp.status"]: dp.value for dp in metrics[RESOURCE_COUNT_METRIC].data_points}
    assert counts == {"included": 1, "filtered": 2}

    triggers = {dp.attributes["process.atp.stage"]: dp.value for dp in metrics[THRESHOLD_TRIGGERS_METRIC].data_points}
    assert triggers == {"static_threshold": 1}


def test_input_batch_is_not_mutated(clock, exporter, make_batch, proc_resource):
    proc = _processor(clock, exporter, metric_thresholds={CPU: 5.0})
    batch = make_batch((proc_resource(1), {CPU: 10.0}))
    before = batch.to_dict()
    proc.consume(batch)
    assert batch.to_dict() == before


def test_summary_omits_triggers_when_nothing_fired(clock, exporter, make_batch, proc_resource):
    proc = _processor(clock, exporter, metric_thresholds={CPU: 5.0})
    batch = make_batch((proc_resource(1), {"system.uptime": 1.0}))
    out = proc.consume(batch)
    metrics, _ = _summary(out)
    assert THRESHOLD_TRIGGERS_METRIC not in metrics
    assert metrics[EFFICIENCY_RATIO_METRIC].data_points[0].value == 0.0


def test_stage_attribute_stripped_and_detail_added(clock, exporter, make_batch, proc_resource):
    proc = _processor(clock, exporter, metric_thresholds={CPU: 5.0})
    attrs = proc_resource(1)
    attrs[FILTER_STAGE_ATTRIBUTE] = "stale"
    out = proc.consume(make_batch((attrs, {CPU: 10.0})))

    fwd = out.resource_metrics[0].attributes
    assert FILTER_STAGE_ATTRIBUTE not in fwd
    detail = json.loads(fwd[THRESHOLD_ATTRIBUTE_PREFIX + CPU])
    assert detail == {
        "threshold": 5.0,
        "observed_value": 10.0,
        "threshold_type": "static",
        "evaluation_timestamp": int(clock().timestamp()),
    }


def test_no_threshold_detail_for_zero_threshold(clock, exporter, make_batch, proc_resource):
    proc = _processor(clock, exporter, metric_thresholds={CPU: 5.0, MEM: 0.0})
    out = proc.consume(make_batch((proc_resource(1), {CPU: 10.0, MEM: 5.0})))

    fwd = out.resource_metrics[0].attributes
    assert THRESHOLD_ATTRIBUTE_PREFIX + CPU in fwd
    assert THRESHOLD_ATTRIBUTE_PREFIX + MEM not in fwd


def test_composite_attributes(clock, exporter, make_batch, proc_resource):
    proc = _processor(
        clock,
        exporter,
        metric_thresholds={CPU: 10.0, MEM: 50.0},
        weights={CPU: 1.0, MEM: 1.0},
        enable_multi_metric=True,
    )
    out = proc.consume(make_batch((proc_resource(1), {CPU: 9.0, MEM: 45.0})))
    fwd = out.resource_metrics[0].attributes
    assert fwd[COMPOSITE_SCORE_ATTRIBUTE] == pytest.approx(1.8)
    assert fwd[COMPOSITE_THRESHOLD_ATTRIBUTE] == 1.5


def test_all_filtered_still_forwards_summary(clock, exporter, make_batch, proc_resource):
    proc = _processor(clock, exporter, metric_thresholds={CPU: 5.0})
    batch = make_batch((proc_resource(1), {CPU: 1.0}))
    out = proc.consume(batch)
    assert out is not batch
    assert out.resource_count() == 1
    _summary(out)


def test_empty_result_fails_open(clock, exporter, make_batch, proc_resource, monkeypatch):
    monkeypatch.setattr("atp.processor.build_summary", lambda *a, **kw: None)
    proc = _processor(clock, exporter, metric_thresholds={CPU: 5.0})
    batch = make_batch((proc_resource(1), {CPU: 1.0}))

    assert proc.process_batch(batch).resource_count() == 0
    assert proc.consume(batch) is batch
    assert exporter.registry.get_sample_value("atp_fail_open_total", {"reason": "empty_result"}) == 1.0


def test_evaluation_error_fails_open(clock, exporter, make_batch, proc_resource, monkeypatch):
    proc = _processor(clock, exporter, metric_thresholds={CPU: 5.0})

    def boom(resource):
        raise RuntimeError("boom")

    monkeypatch.setattr(proc.tracker, "evaluate", boom)
    batch = make_batch((proc_resource(1), {CPU: 10.0}), (proc_resource(2), {CPU: 1.0}))
    out = proc.consume(batch)
    assert out is batch
    assert exporter.registry.get_sample_value("atp_fail_open_total", {"reason": "error"}) == 1.0


def test_cancel_event_returns_original(clock, exporter, make_batch, proc_resource):
    proc = _processor(clock, exporter, metric_thresholds={CPU: 5.0})
    batch = make_batch((proc_resource(1), {CPU: 10.0}))
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(BatchCancelled) as ei:
        proc.process_batch(batch, cancel=cancel)
    assert ei.value.batch is batch

    assert proc.consume(batch, cancel=cancel) is batch
    assert len(proc.tracker) == 0


def test_deadline_checked_during_evaluation(clock, exporter, make_batch, proc_resource, monkeypatch):
    proc = _processor(clock, exporter, metric_thresholds={CPU: 5.0})
    batch = make_batch(*[(proc_resource(i), {CPU: 10.0}) for i in range(CANCEL_CHECK_EVERY + 5)])
    deadline = clock.monotonic() + 1.0

    real = proc.tracker.evaluate
    seen = []

    def slow(resource):
        seen.append(resource)
        clock.advance(seconds=0.1)
        return real(resource)

    monkeypatch.setattr(proc.tracker, "evaluate", slow)
    assert proc.consume(batch, deadline=deadline) is batch
    assert len(seen) == CANCEL_CHECK_EVERY
    assert exporter.registry.get_sample_value("atp_batches_total", {"outcome": "cancelled"}) == 1.0


def test_persist_cadence(clock, exporter, make_batch, proc_resource):
    store = InMemoryEntityStore()
    proc = _processor(clock, exporter, store=store, metric_thresholds={CPU: 5.0}, persist_interval_s=60.0)
    batch = make_batch((proc_resource(1), {CPU: 10.0}))

    proc.consume(batch)
    assert store.saves == 0
    clock.advance(seconds=61)
    proc.consume(batch)
    assert store.saves == 1
    clock.advance(seconds=10)
    proc.consume(batch)
    assert store.saves == 1

    proc.shutdown()
    assert store.saves == 2
    assert "process.1@h1" in store.load()
    proc.shutdown()
    assert store.saves == 2


def test_state_survives_restart(clock, exporter, make_batch, proc_resource, tmp_path):
    path = str(tmp_path / "state" / "atp.db")

    def build():
        return AdaptiveTelemetryProcessor(
            FilterConfig(metric_thresholds={CPU: 5.0}, storage_path=path, retention_minutes=10),
            storage_base_dir=str(tmp_path),
            exporter=exporter,
            clock=clock,
            monotonic=clock.monotonic,
            cleanup_probability=0.0,
            background=False,
        )

    first = build()
    assert isinstance(first._store, FileEntityStore)
    first.consume(make_batch((proc_resource(1), {CPU: 10.0})))
    first.shutdown()

    clock.advance(minutes=5)
    second = build()
    assert len(second.tracker) == 1
    out = second.consume(make_batch((proc_resource(1), {CPU: 1.0}), (proc_resource(2), {CPU: 1.0})))
    assert out.resource_count() == 2
    triggers = {dp.attributes["process.atp.stage"]: dp.value for dp in _summary(out)[0][THRESHOLD_TRIGGERS_METRIC].data_points}
    assert triggers == {"standard_retention": 1}
    second.shutdown()


def test_cleanup_runs_when_drawn(clock, exporter, make_batch, proc_resource):
    proc = AdaptiveTelemetryProcessor(
        FilterConfig(metric_thresholds={CPU: 5.0}, enable_storage=False, retention_minutes=5),
        exporter=exporter,
        clock=clock,
        monotonic=clock.monotonic,
        cleanup_probability=1.0,
        background=False,
    )
    proc.consume(make_batch((proc_resource(1), {CPU: 10.0})))
    assert len(proc.tracker) == 1
    clock.advance(minutes=6)
    proc.consume(make_batch((proc_resource(2), {"system.uptime": 1.0})))
    assert len(proc.tracker) == 0
    assert exporter.registry.get_sample_value("atp_tracked_entities") == 1.0


def test_exporter_counts_resources(clock, exporter, make_batch, proc_resource):
    proc = _processor(clock, exporter, metric_thresholds={CPU: 5.0})
    proc.consume(make_batch((proc_resource(1), {CPU: 10.0}), (proc_resource(2), {CPU: 1.0})))
    reg = exporter.registry
    assert reg.get_sample_value("atp_resources_total", {"status": "included"}) == 1.0
    assert reg.get_sample_value("atp_resources_total", {"status": "filtered"}) == 1.0
    assert reg.get_sample_value("atp_stage_hits_total", {"stage": "static_threshold"}) == 1.0
    assert reg.get_sample_value("atp_batches_total", {"outcome": "filtered"}) == 1.0
