"""Unit tests for background metrics drift."""

import time

import pytest

from superpod_sim.application.state_store import ClusterStore
from superpod_sim.domain.services.metrics_drift import MetricsDriftSimulator
from superpod_sim.domain.value_objects.health_rules import HealthStatus


@pytest.fixture
def drift(store):
    simulator = MetricsDriftSimulator(store, interval_seconds=0.01, seed=42)
    yield simulator
    simulator.stop()


def all_gpus(store):
    return [gpu for node in store.snapshot().nodes for gpu in node.gpus]


@pytest.mark.unit
class TestTick:
    """Test a single walk step."""

    def test_updates_every_gpu(self, drift):
        assert drift.tick() == 64
        assert drift.tick_count == 1

    def test_healthy_gpus_stay_healthy(self, store, drift):
        for _ in range(200):
            drift.tick()
        for gpu in all_gpus(store):
            assert gpu.health_status is HealthStatus.OK
            assert gpu.temperature < 85.0
            assert gpu.power_draw < 0.95 * gpu.power_limit
            assert 0.0 <= gpu.utilization <= 100.0
            assert 0 <= gpu.memory_used <= gpu.memory_total

    def test_same_seed_same_walk(self, clock):
        first, second = ClusterStore(clock=clock), ClusterStore(clock=clock)
        a = MetricsDriftSimulator(first, seed=7)
        b = MetricsDriftSimulator(second, seed=7)
        for _ in range(5):
            a.tick()
            b.tick()
        assert first.snapshot() == second.snapshot()

    def test_allocated_gpus_run_hot(self, store, drift):
        store.submit_job("train", gpus=8)
        drift.tick()
        for gpu in store.get_node("dgx-00").gpus:
            assert 75.0 <= gpu.utilization <= 95.0

    def test_faulted_readings_are_kept(self, store, faults, drift):
        faults.inject_fault("dgx-00", 0, "thermal")
        faults.inject_fault("dgx-00", 1, "power")
        for _ in range(20):
            drift.tick()
        thermal = store.get_gpu("dgx-00", 0)
        assert thermal.temperature == 88.0
        assert thermal.clocks_sm == 1260
        assert thermal.health_status is HealthStatus.WARNING
        assert store.get_gpu("dgx-00", 1).power_draw == 392.0

    def test_error_records_untouched(self, store, faults, drift):
        faults.inject_fault("dgx-01", 0, "xid")
        faults.inject_fault("dgx-01", 1, "ecc")
        faults.inject_fault("dgx-01", 2, "nvlink")
        before = store.get_node("dgx-01")
        drift.tick()
        after = store.get_node("dgx-01")
        for old, new in zip(before.gpus, after.gpus):
            assert new.xid_errors == old.xid_errors
            assert new.ecc_errors == old.ecc_errors
            assert new.nvlinks == old.nvlinks
            assert new.health_status is old.health_status

    def test_fallen_off_bus_skipped(self, store, faults, drift):
        faults.add_xid_error("dgx-00", 3, 79)
        before = store.get_gpu("dgx-00", 3)
        assert drift.tick() == 63
        assert store.get_gpu("dgx-00", 3) == before

    def test_callbacks_receive_count(self, drift):
        seen = []
        drift.register_tick_callback(seen.append)
        drift.tick()
        assert seen == [64]


@pytest.mark.unit
class TestLifecycle:
    """Test the background worker."""

    def test_start_and_stop(self, drift):
        drift.start()
        assert drift.is_running
        deadline = time.monotonic() + 5.0
        while drift.tick_count == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        drift.stop()
        assert not drift.is_running
        assert drift.tick_count > 0

    def test_start_is_idempotent(self, drift):
        drift.start()
        thread = drift._thread
        drift.start()
        assert drift._thread is thread

    def test_stop_without_start(self, drift):
        drift.stop()
        drift.stop()
        assert not drift.is_running
