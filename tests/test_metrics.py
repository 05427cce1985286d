import pytest

from ormkit.core.metrics import (
    get_counters,
    get_metrics,
    inc_counter,
    metrics_registry,
    set_instrumentation_enabled,
    timer,
)


@pytest.fixture(autouse=True)
def _instrumentation_on():
    set_instrumentation_enabled(True)
    yield
    set_instrumentation_enabled(True)


def test_registry_aggregates_timings():
    metrics_registry.observe("metrics.agg", 10.0)
    metrics_registry.observe("metrics.agg", 30.0)

    entry = get_metrics()["metrics.agg"]
    assert entry["count"] == 2.0
    assert entry["min_ms"] == pytest.approx(10.0)
    assert entry["total_ms"] == pytest.approx(40.0)
    assert entry["max_ms"] == pytest.approx(30.0)
    assert entry["avg_ms"] == pytest.approx(20.0)


def test_snapshot_reset_clears_values():
    inc_counter("metrics.reset", 2)
    assert get_counters(reset=True) == {"metrics.reset": 2.0}
    assert get_counters() == {}


def test_timer_and_counter_respect_toggle():
    set_instrumentation_enabled(False)
    with timer("metrics.disabled"):
        pass
    inc_counter("metrics.disabled")
    assert "metrics.disabled" not in get_metrics()
    assert get_counters() == {}

    set_instrumentation_enabled(True)
    with timer("metrics.enabled"):
        pass
    assert get_metrics()["metrics.enabled"]["count"] == 1.0
