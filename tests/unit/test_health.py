"""Unit tests for health derivation and cluster aggregates."""

import dataclasses

import pytest

from superpod_sim.domain.entities.gpu import ECCErrors, NVLinkStatus, XIDError
from superpod_sim.domain.exceptions import InvariantViolation
from superpod_sim.domain.services.cluster_factory import create_default_cluster, create_node
from superpod_sim.domain.services.health import (
    compute_cluster_stats,
    derive_health,
    derive_node_health,
    health_findings,
    verify_gpu_health,
)
from superpod_sim.domain.value_objects.health_rules import HealthStatus, HealthThresholds


@pytest.fixture
def gpu():
    return create_node(0).gpus[0]


@pytest.mark.unit
class TestHealthStatus:
    """Test status ordering."""

    def test_worst(self):
        assert HealthStatus.worst() is HealthStatus.OK
        assert HealthStatus.worst(HealthStatus.OK, HealthStatus.WARNING) is HealthStatus.WARNING
        assert HealthStatus.worst(HealthStatus.CRITICAL, HealthStatus.WARNING) is HealthStatus.CRITICAL


@pytest.mark.unit
class TestDeriveHealth:
    """Test the central GPU health derivation."""

    def test_baseline_is_ok(self, gpu):
        assert health_findings(gpu) == []
        assert derive_health(gpu) is HealthStatus.OK

    def test_any_xid_is_critical(self, gpu):
        gpu.xid_errors.append(XIDError(13, "2024-01-15T10:30:00Z", "Graphics Engine Exception", "Warning"))
        findings = health_findings(gpu)
        assert derive_health(gpu) is HealthStatus.CRITICAL
        assert findings[0].category == "xid"
        assert "XID 13" in findings[0].reason

    def test_double_bit_ecc_is_critical(self, gpu):
        gpu.ecc_errors = ECCErrors(double_bit=1, aggregated_double_bit=1)
        assert derive_health(gpu) is HealthStatus.CRITICAL

    def test_single_bit_ecc_is_ok(self, gpu):
        gpu.ecc_errors = ECCErrors(single_bit=12, aggregated_single_bit=12)
        assert derive_health(gpu) is HealthStatus.OK

    def test_nvlink_down_is_warning(self, gpu):
        gpu.nvlinks[3].status = NVLinkStatus.DOWN
        findings = health_findings(gpu)
        assert derive_health(gpu) is HealthStatus.WARNING
        assert findings[0].category == "nvlink"
        assert "link 3" in findings[0].reason

    def test_thermal_threshold_is_inclusive(self, gpu):
        gpu.temperature = 84.9
        assert derive_health(gpu) is HealthStatus.OK
        gpu.temperature = 85.0
        assert derive_health(gpu) is HealthStatus.WARNING

    def test_power_threshold(self, gpu):
        gpu.power_draw = 0.94 * gpu.power_limit
        assert derive_health(gpu) is HealthStatus.OK
        gpu.power_draw = 0.95 * gpu.power_limit
        assert derive_health(gpu) is HealthStatus.WARNING

    def test_custom_thresholds(self, gpu):
        gpu.temperature = 80.0
        assert derive_health(gpu, HealthThresholds(thermal_warning_c=75.0)) is HealthStatus.WARNING

    def test_critical_findings_sort_first(self, gpu):
        gpu.temperature = 90.0
        gpu.ecc_errors = ECCErrors(double_bit=2)
        findings = health_findings(gpu)
        assert [f.category for f in findings] == ["ecc", "thermal"]
        assert derive_health(gpu) is HealthStatus.CRITICAL

    def test_verify_detects_stale_status(self, gpu):
        gpu.temperature = 88.0
        with pytest.raises(InvariantViolation, match="contradicts"):
            verify_gpu_health("dgx-00", gpu)


@pytest.mark.unit
class TestNodeAndClusterHealth:
    """Test node rollup and aggregates."""

    def test_node_health_is_worst_gpu(self):
        node = create_node(0)
        node.gpus[2].temperature = 86.0
        assert derive_node_health(node) is HealthStatus.WARNING
        node.gpus[5].xid_errors.append(XIDError(79, "t", "GPU Fallen Off Bus", "Critical"))
        assert derive_node_health(node) is HealthStatus.CRITICAL

    def test_default_cluster_stats(self):
        stats = compute_cluster_stats(create_default_cluster())
        assert stats.total_nodes == 8
        assert stats.total_gpus == 64
        assert stats.healthy_gpus == 64
        assert stats.warning_gpus == 0
        assert stats.critical_gpus == 0
        assert stats.active_nvlinks == 64 * 12
        assert stats.total_nvlinks == 64 * 12
        assert stats.total_power == pytest.approx(6400.0)
        assert stats.avg_temperature == pytest.approx(45.0)
        assert stats.nodes_by_slurm_state == {"idle": 8}

    def test_stats_verify_stored_health(self):
        cluster = create_default_cluster()
        cluster.nodes[1].gpus[0] = dataclasses.replace(cluster.nodes[1].gpus[0], temperature=89.0)
        with pytest.raises(InvariantViolation):
            compute_cluster_stats(cluster)

    def test_to_dict_rounds(self):
        stats = compute_cluster_stats(create_default_cluster())
        data = stats.to_dict()
        assert data["total_gpus"] == 64
        assert data["avg_temperature"] == 45.0
