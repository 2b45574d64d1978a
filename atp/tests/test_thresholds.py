# atp/tests/test_thresholds.py
import threading

import pytest

from atp import thresholds
from atp.extraction import batch_gauge_averages, extract_values
from atp.pdata import MetricType
from atp.thresholds import THRESHOLD_DYNAMIC, THRESHOLD_STATIC, DynamicThresholdEngine

CPU = "process.cpu.utilization"
MEM = "process.memory.utilization"


def _engine(clock, **kw):
    kw.setdefault("enabled", True)
    return DynamicThresholdEngine({CPU: 10.0, MEM: 0.0}, clock=clock.monotonic, **kw)


def test_seeded_from_positive_static_only(clock):
    eng = _engine(clock)
    assert eng.snapshot() == {CPU: 10.0}
    assert eng.effective(CPU, 10.0) == (10.0, THRESHOLD_DYNAMIC)
    assert eng.effective(MEM, 0.0) == (0.0, THRESHOLD_STATIC)


def test_disabled_engine_is_static(clock):
    eng = _engine(clock, enabled=False)
    assert eng.snapshot() == {}
    assert eng.effective(CPU, 10.0) == (10.0, THRESHOLD_STATIC)
    assert not eng.tracks(CPU)


def test_absent_metric_keeps_previous_value(clock):
    eng = _engine(clock)
    assert eng.apply_averages({"other.metric": 100.0}) == {}
    assert eng.get(CPU) == 10.0


def test_converges_to_target_without_overshoot(clock):
    eng = _engine(clock, smoothing=0.2)
    # target = 10 + 15 * 0.2 = 13
    prev = eng.get(CPU)
    for _ in range(60):
        eng.apply_averages({CPU: 15.0})
        cur = eng.get(CPU)
        assert prev <= cur <= 13.0
        prev = cur
    assert cur == pytest.approx(13.0, abs=1e-3)


def test_first_step_value(clock):
    eng = _engine(clock, smoothing=0.2)
    eng.apply_averages({CPU: 15.0})
    assert eng.get(CPU) == pytest.approx(0.2 * 13.0 + 0.8 * 10.0)


def test_zero_threshold_never_drifts(clock):
    eng = _engine(clock)
    eng.apply_averages({MEM: 50.0})
    assert eng.get(MEM) is None


def test_clamped_to_bounds(clock):
    eng = _engine(clock, smoothing=1.0, max_thresholds={CPU: 12.0})
    eng.apply_averages({CPU: 100.0})
    assert eng.get(CPU) == 12.0

    eng = _engine(clock, smoothing=1.0, min_thresholds={CPU: 11.0})
    eng.apply_averages({CPU: 0.0})
    assert eng.get(CPU) == 11.0


def test_update_throttled_to_half_interval(clock, make_batch):
    eng = _engine(clock, interval_s=60.0)
    batch = make_batch(({"process.pid": 1}, {CPU: 15.0}))

    assert not eng.maybe_update(batch)
    clock.advance(seconds=29)
    assert not eng.maybe_update(batch)
    clock.advance(seconds=1)
    assert eng.maybe_update(batch)
    assert eng.get(CPU) > 10.0
    assert not eng.maybe_update(batch)


def test_concurrent_batches_share_one_throttle_window(clock, make_batch, monkeypatch):
    eng = _engine(clock, smoothing=0.2, interval_s=60.0)
    batch = make_batch(({"process.pid": 1}, {CPU: 15.0}))
    clock.advance(seconds=31)

    entered = threading.Event()
    release = threading.Event()
    real = thresholds.batch_gauge_averages

    def held(*args, **kwargs):
        entered.set()
        release.wait(timeout=5)
        return real(*args, **kwargs)

    monkeypatch.setattr(thresholds, "batch_gauge_averages", held)
    results = []
    first = threading.Thread(target=lambda: results.append(eng.maybe_update(batch)))
    second = threading.Thread(target=lambda: results.append(eng.maybe_update(batch)))

    first.start()
    assert entered.wait(timeout=5)
    second.start()
    second.join(timeout=1)
    release.set()
    first.join(timeout=5)
    second.join(timeout=5)

    assert sorted(results) == [False, True]
    assert eng.get(CPU) == pytest.approx(10.6)


def test_disabled_engine_ignores_batches(clock, make_batch):
    eng = _engine(clock, enabled=False)
    clock.advance(minutes=5)
    assert not eng.maybe_update(make_batch(({"process.pid": 1}, {CPU: 15.0})))


def test_batch_average_counts_gauges_only(make_batch):
    gauges = make_batch(
        ({"process.pid": 1}, {CPU: [2.0, 4.0]}),
        ({"process.pid": 2}, {CPU: 12.0}),
        ({"process.pid": 3}, {MEM: 1.0}),
    )
    assert batch_gauge_averages(gauges, {CPU: 10.0}) == {CPU: 9.0}

    sums = make_batch(({"process.pid": 1}, {CPU: 5.0}), mtype=MetricType.SUM)
    assert batch_gauge_averages(sums, {CPU: 10.0}) == {}


def test_extract_values_sums_scalar_points(make_batch):
    batch = make_batch(({"process.pid": 1}, {CPU: [1.0, 2.5], "ignored": 99.0}))
    rm = batch.resource_metrics[0]
    assert extract_values(rm, {CPU: 1.0}, {}) == {CPU: 3.5}
    # weighted-only metrics count only when multi-metric scoring is on
    assert extract_values(rm, {}, {"ignored": 1.0}) == {}
    assert extract_values(rm, {}, {"ignored": 1.0}, multi_metric=True) == {"ignored": 99.0}


def test_extract_values_later_scope_replaces_earlier(make_batch):
    batch = make_batch(({"process.pid": 1}, {CPU: [1.0, 2.0]}))
    rm = batch.resource_metrics[0]
    rm.add_scope("second").add_metric(CPU).add_point(7.0)
    assert extract_values(rm, {CPU: 1.0}, {}) == {CPU: 7.0}


def test_extract_values_skips_histograms(make_batch):
    batch = make_batch(({"process.pid": 1}, {CPU: 5.0}), mtype=MetricType.HISTOGRAM)
    assert extract_values(batch.resource_metrics[0], {CPU: 1.0}, {}) == {}
