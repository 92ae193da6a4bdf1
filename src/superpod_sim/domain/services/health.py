"""Central health derivation and cluster-wide aggregates.

``derive_health`` is the one place that decides whether a GPU is OK,
Warning or Critical. The store calls it on every GPU write and every
simulator calls it when rendering, so no tool can disagree with another
about a GPU's condition.

References:
    - NVIDIA DCGM health watch semantics (PCIe, memory, thermal, NVLink)
"""

from __future__ import annotations

from dataclasses import dataclass, field

from superpod_sim.domain.entities.cluster import Cluster, JobState
from superpod_sim.domain.entities.gpu import GPU
from superpod_sim.domain.entities.node import DGXNode
from superpod_sim.domain.exceptions import InvariantViolation
from superpod_sim.domain.services.fabric import gpu_links
from superpod_sim.domain.value_objects.health_rules import (
    DEFAULT_THRESHOLDS,
    HealthStatus,
    HealthThresholds,
)


@dataclass(frozen=True)
class HealthFinding:
    """One condition contributing to a GPU's health."""
    status: HealthStatus
    reason: str
    category: str                 # xid, ecc, nvlink, thermal or power


def health_findings(gpu: GPU, thresholds: HealthThresholds = DEFAULT_THRESHOLDS) -> list[HealthFinding]:
    """List every active condition on a GPU, most severe first.

    Args:
        gpu: GPU to evaluate.
        thresholds: Thermal and power limits.

    Returns:
        Findings ordered Critical before Warning. Empty when healthy.
    """
    findings: list[HealthFinding] = []

    for xid in gpu.xid_errors:
        findings.append(HealthFinding(HealthStatus.CRITICAL, f"XID {xid.code}: {xid.description}", "xid"))

    if gpu.ecc_errors.double_bit > 0:
        findings.append(
            HealthFinding(
                HealthStatus.CRITICAL,
                f"{gpu.ecc_errors.double_bit} uncorrectable (double-bit) ECC error(s)",
                "ecc",
            )
        )

    down = [link.link_id for link in gpu.nvlinks if not link.is_active]
    if down:
        links = ", ".join(str(i) for i in down)
        findings.append(HealthFinding(HealthStatus.WARNING, f"NVLink down: link {links}", "nvlink"))

    if gpu.temperature >= thresholds.thermal_warning_c:
        findings.append(
            HealthFinding(
                HealthStatus.WARNING,
                f"Temperature {round(gpu.temperature)}C at or above slowdown threshold "
                f"{round(thresholds.thermal_warning_c)}C",
                "thermal",
            )
        )

    if gpu.power_limit > 0 and gpu.power_draw >= thresholds.power_warning_fraction * gpu.power_limit:
        findings.append(
            HealthFinding(
                HealthStatus.WARNING,
                f"Power draw {gpu.power_draw:.0f}W at or above "
                f"{thresholds.power_warning_fraction:.0%} of limit {gpu.power_limit:.0f}W",
                "power",
            )
        )

    findings.sort(key=lambda f: -f.status.rank)
    return findings


def derive_health(gpu: GPU, thresholds: HealthThresholds = DEFAULT_THRESHOLDS) -> HealthStatus:
    """Derive a GPU's health as the worst of its active conditions."""
    return HealthStatus.worst(*(f.status for f in health_findings(gpu, thresholds)))


def derive_node_health(node: DGXNode, thresholds: HealthThresholds = DEFAULT_THRESHOLDS) -> HealthStatus:
    """Node health is the worst GPU health on the node."""
    return HealthStatus.worst(*(derive_health(g, thresholds) for g in node.gpus))


def verify_gpu_health(node_id: str, gpu: GPU, thresholds: HealthThresholds = DEFAULT_THRESHOLDS) -> None:
    """Check a stored health status against the derivation.

    Raises:
        InvariantViolation: If the stored status disagrees.
    """
    expected = derive_health(gpu, thresholds)
    if gpu.health_status != expected:
        raise InvariantViolation(
            f"{node_id} GPU {gpu.id}: stored health {gpu.health_status.value} "
            f"contradicts derived health {expected.value}"
        )


@dataclass
class ClusterStats:
    """Cluster-wide aggregates."""
    total_nodes: int = 0
    total_gpus: int = 0
    healthy_gpus: int = 0
    warning_gpus: int = 0
    critical_gpus: int = 0
    total_power: float = 0.0
    avg_temperature: float = 0.0
    avg_utilization: float = 0.0
    active_nvlinks: int = 0
    total_nvlinks: int = 0
    nodes_by_slurm_state: dict[str, int] = field(default_factory=dict)
    running_jobs: int = 0
    pending_jobs: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "total_nodes": self.total_nodes,
            "total_gpus": self.total_gpus,
            "healthy_gpus": self.healthy_gpus,
            "warning_gpus": self.warning_gpus,
            "critical_gpus": self.critical_gpus,
            "total_power": round(self.total_power, 2),
            "avg_temperature": round(self.avg_temperature, 2),
            "avg_utilization": round(self.avg_utilization, 2),
            "active_nvlinks": self.active_nvlinks,
            "total_nvlinks": self.total_nvlinks,
            "nodes_by_slurm_state": dict(self.nodes_by_slurm_state),
            "running_jobs": self.running_jobs,
            "pending_jobs": self.pending_jobs,
        }


def compute_cluster_stats(cluster: Cluster, thresholds: HealthThresholds = DEFAULT_THRESHOLDS) -> ClusterStats:
    """Aggregate health and telemetry across every GPU.

    Each stored GPU health is verified against the derivation while
    counting, so a stale status surfaces here instead of in a tool.

    Raises:
        InvariantViolation: If any stored GPU health is stale.
    """
    stats = ClusterStats(total_nodes=len(cluster.nodes))
    temperature_sum = 0.0
    utilization_sum = 0.0

    for node in cluster.nodes:
        key = node.slurm_state.value
        stats.nodes_by_slurm_state[key] = stats.nodes_by_slurm_state.get(key, 0) + 1
        for gpu in node.gpus:
            verify_gpu_health(node.id, gpu, thresholds)
            stats.total_gpus += 1
            if gpu.health_status == HealthStatus.CRITICAL:
                stats.critical_gpus += 1
            elif gpu.health_status == HealthStatus.WARNING:
                stats.warning_gpus += 1
            else:
                stats.healthy_gpus += 1
            stats.total_power += gpu.power_draw
            temperature_sum += gpu.temperature
            utilization_sum += gpu.utilization
            stats.active_nvlinks += gpu_links(gpu).active
            stats.total_nvlinks += len(gpu.nvlinks)

    if stats.total_gpus:
        stats.avg_temperature = temperature_sum / stats.total_gpus
        stats.avg_utilization = utilization_sum / stats.total_gpus

    for job in cluster.jobs:
        if job.state == JobState.RUNNING:
            stats.running_jobs += 1
        elif job.state == JobState.PENDING:
            stats.pending_jobs += 1

    return stats
