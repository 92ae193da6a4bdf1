"""Unit tests for fault injection and clearing."""

import pytest

from superpod_sim.application.state_store import ClusterStore
from superpod_sim.domain.entities.gpu import NVLinkStatus
from superpod_sim.domain.entities.node import SlurmState
from superpod_sim.domain.exceptions import NotFoundError
from superpod_sim.domain.services.fault_injection import FaultInjector, FaultKind
from superpod_sim.domain.value_objects.health_rules import HealthStatus


EXPECTED_HEALTH = {
    FaultKind.XID: HealthStatus.CRITICAL,
    FaultKind.ECC: HealthStatus.CRITICAL,
    FaultKind.THERMAL: HealthStatus.WARNING,
    FaultKind.NVLINK: HealthStatus.WARNING,
    FaultKind.POWER: HealthStatus.WARNING,
    FaultKind.PCIE: HealthStatus.CRITICAL,
}


@pytest.mark.unit
class TestInjectFault:
    """Test each fault class."""

    @pytest.mark.parametrize("kind", list(FaultKind))
    def test_fault_health(self, faults, kind):
        gpu = faults.inject_fault("dgx-00", 0, kind)
        assert gpu.health_status is EXPECTED_HEALTH[kind]

    @pytest.mark.parametrize("kind", list(FaultKind))
    def test_clear_restores_exact_baseline(self, store, faults, kind):
        baseline = store.get_gpu("dgx-00", 0)
        faults.inject_fault("dgx-00", 0, kind)
        assert store.get_gpu("dgx-00", 0) != baseline
        assert faults.clear_faults("dgx-00", 0) == baseline

    def test_string_kind_accepted(self, faults):
        assert faults.inject_fault("dgx-00", 0, "thermal").temperature == 88.0

    def test_unknown_kind(self, faults):
        with pytest.raises(ValueError):
            faults.inject_fault("dgx-00", 0, "cosmic-ray")

    def test_unknown_gpu(self, faults):
        with pytest.raises(NotFoundError):
            faults.inject_fault("dgx-00", 9, FaultKind.XID)

    def test_xid_record(self, faults):
        gpu = faults.inject_fault("dgx-00", 0, FaultKind.XID)
        record = gpu.xid_errors[-1]
        assert record.code == 43
        assert record.description == "GPU Stopped Responding"
        assert record.timestamp == "2024-01-15T10:30:00Z"

    def test_ecc_counters(self, faults):
        gpu = faults.inject_fault("dgx-00", 0, FaultKind.ECC)
        assert gpu.ecc_errors.double_bit == 1
        assert gpu.ecc_errors.aggregated_double_bit == 1
        assert gpu.xid_errors == []

    def test_thermal_throttles_clock(self, faults):
        gpu = faults.inject_fault("dgx-00", 0, FaultKind.THERMAL)
        assert gpu.clocks_sm == 1260

    def test_nvlink_takes_first_link_down(self, faults):
        gpu = faults.inject_fault("dgx-00", 0, FaultKind.NVLINK)
        assert gpu.nvlinks[0].status is NVLinkStatus.DOWN
        assert gpu.nvlinks[0].tx_errors == 100
        assert gpu.active_nvlinks == 11

    def test_power_draw(self, faults):
        gpu = faults.inject_fault("dgx-00", 0, FaultKind.POWER)
        assert gpu.power_draw == 392.0

    def test_pcie_internal_error(self, faults):
        gpu = faults.inject_fault("dgx-00", 0, FaultKind.PCIE)
        assert [x.code for x in gpu.xid_errors] == [62]
        assert not gpu.has_fallen_off_bus

    def test_xid_79_falls_off_bus(self, faults):
        assert faults.add_xid_error("dgx-00", 0, 79).has_fallen_off_bus

    @pytest.mark.parametrize("kind", list(FaultKind))
    def test_clear_after_lowered_power_limit(self, store, faults, kind):
        """A cleared GPU stays OK under the lowest allowed power limit."""
        store.set_power_limit("dgx-00", [0], 100)
        before = store.get_gpu("dgx-00", 0)
        assert before.health_status is HealthStatus.OK

        faults.inject_fault("dgx-00", 0, kind)
        gpu = faults.clear_faults("dgx-00", 0)
        assert gpu.health_status is HealthStatus.OK
        assert gpu.power_draw == 90.0
        assert gpu == before

    def test_faults_never_drain(self, store, faults):
        for kind in FaultKind:
            faults.inject_fault("dgx-04", 1, kind)
        assert store.get_node("dgx-04").slurm_state is SlurmState.IDLE


@pytest.mark.unit
class TestXIDAndClearAll:
    """Test catalogued XIDs and bulk clearing."""

    def test_add_catalogued_xid(self, faults):
        gpu = faults.add_xid_error("dgx-00", 0, 48)
        assert gpu.xid_errors[0].description == "Double-Bit ECC Error"
        assert gpu.health_status is HealthStatus.CRITICAL

    def test_add_unknown_xid(self, faults):
        with pytest.raises(KeyError):
            faults.add_xid_error("dgx-00", 0, 9999)

    def test_critical_count_rises_per_gpu(self, store, faults):
        faults.inject_fault("dgx-00", 0, FaultKind.XID)
        faults.inject_fault("dgx-00", 0, FaultKind.ECC)
        assert store.stats().critical_gpus == 1
        faults.inject_fault("dgx-05", 7, FaultKind.PCIE)
        assert store.stats().critical_gpus == 2

    def test_clear_all(self, store, faults):
        faults.inject_fault("dgx-00", 0, FaultKind.XID)
        faults.inject_fault("dgx-07", 3, FaultKind.THERMAL)
        assert faults.clear_all_faults() == 64
        stats = store.stats()
        assert stats.healthy_gpus == 64
        assert stats.critical_gpus == 0

    def test_clear_equals_fresh_cluster(self, clock):
        store = ClusterStore(clock=clock)
        injector = FaultInjector(store, clock=clock)
        fresh = store.snapshot()
        for kind in FaultKind:
            injector.inject_fault("dgx-02", 5, kind)
        injector.clear_all_faults()
        assert store.snapshot() == fresh
