from __future__ import annotations

import pytest

from modules.workers import scaling
from modules.workers.scaling import ScalingController, ScalingSample, ScalingThresholds

pytestmark = pytest.mark.unit


class Pool:
    def __init__(self, size=4, min_size=1, max_size=10):
        self.size = size
        self.min_size = min_size
        self.max_size = max_size
        self.resizes = []

    def resize(self, size):
        self.size = min(max(size, self.min_size), self.max_size)
        self.resizes.append(self.size)
        return self.size


class Counter:
    def __init__(self):
        self.value = 0

    def __call__(self):
        return self.value


@pytest.fixture()
def pool():
    return Pool()


@pytest.fixture()
def counter():
    return Counter()


@pytest.fixture()
def host(monkeypatch):
    metrics = {"cpu": 50.0, "memory": 50.0}
    monkeypatch.setattr(
        scaling.psutil, "cpu_percent", lambda interval=None: metrics["cpu"]
    )

    class _Memory:
        @property
        def percent(self):
            return metrics["memory"]

    monkeypatch.setattr(scaling.psutil, "virtual_memory", lambda: _Memory())
    return metrics


@pytest.fixture()
def controller(pool, counter, clock, host):
    return ScalingController(
        current_size=lambda: pool.size,
        resize=pool.resize,
        request_counter=counter,
        thresholds=ScalingThresholds(),
        check_interval=60,
        clock=clock,
    )


class TestDecisions:
    def test_any_metric_over_threshold_scales_up(self, controller):
        assert controller.should_scale_up(ScalingSample(81, 10, 0))
        assert controller.should_scale_up(ScalingSample(10, 81, 0))
        assert controller.should_scale_up(ScalingSample(10, 10, 1001))
        assert not controller.should_scale_up(ScalingSample(80, 80, 1000))

    def test_all_metrics_under_half_scale_down(self, controller):
        assert controller.should_scale_down(ScalingSample(39, 39, 499))
        assert not controller.should_scale_down(ScalingSample(39, 41, 0))


class TestCheckAndScale:
    def test_high_cpu_scales_up_by_step(self, controller, pool, host):
        host["cpu"] = 95.0
        assert controller.check_and_scale() == 7
        assert pool.resizes == [7]

    def test_idle_host_scales_down_by_step(self, controller, pool, host):
        host["cpu"], host["memory"] = 5.0, 10.0
        assert controller.check_and_scale() == 3

    def test_middle_band_keeps_size(self, controller, pool):
        assert controller.check_and_scale() is None
        assert pool.resizes == []

    def test_resize_is_clamped_by_pool(self, controller, pool, host):
        pool.size = 9
        host["memory"] = 99.0
        assert controller.check_and_scale() == 10

    def test_no_change_at_bound_reports_none(self, controller, pool, host):
        pool.size = 1
        host["cpu"], host["memory"] = 1.0, 1.0
        assert controller.check_and_scale() is None

    def test_enqueue_rate_drives_scale_up(self, controller, counter, clock, pool):
        controller.check_and_scale()  # baseline sample
        counter.value = 5000
        clock.advance(2)
        assert controller.request_rate() == 2500
        counter.value = 10000
        clock.advance(2)
        assert controller.check_and_scale() == 7

    def test_overlapping_evaluation_is_skipped(self, controller, pool, host):
        host["cpu"] = 95.0
        controller._guard.acquire()
        try:
            assert controller.check_and_scale() is None
        finally:
            controller._guard.release()
        assert pool.resizes == []
        assert controller.is_scaling is False

    def test_sampling_error_is_contained(self, controller, monkeypatch, pool):
        def _broken(interval=None):
            raise RuntimeError("no /proc")

        monkeypatch.setattr(scaling.psutil, "cpu_percent", _broken)
        assert controller.check_and_scale() is None
        assert controller.is_scaling is False


class TestTick:
    def test_tick_respects_interval(self, controller, clock, host, pool):
        host["cpu"] = 95.0
        assert controller.tick() == 7
        clock.advance(30)
        assert controller.tick() is None
        clock.advance(30)
        assert controller.tick() == 10
