"""Domain services for the SuperPOD simulator.

Services implement the core rules:
- health: the single health derivation and cluster aggregates
- cluster_factory / cluster_schema: building and validating clusters
- FaultInjector: fault injection and exact clearing
- MetricsDriftSimulator: background telemetry random walk
"""

from superpod_sim.domain.services.cluster_factory import (
    create_default_cluster,
    create_node,
    healthy_gpu_baseline,
)
from superpod_sim.domain.services.cluster_schema import (
    parse_cluster_json,
    validate_cluster_document,
)
from superpod_sim.domain.services.fault_injection import FaultInjector, FaultKind
from superpod_sim.domain.services.health import (
    ClusterStats,
    HealthFinding,
    compute_cluster_stats,
    derive_health,
    derive_node_health,
    health_findings,
    verify_gpu_health,
)
from superpod_sim.domain.services.metrics_drift import DriftBounds, MetricsDriftSimulator

__all__ = [
    # Factory
    "create_default_cluster",
    "create_node",
    "healthy_gpu_baseline",
    # Schema
    "parse_cluster_json",
    "validate_cluster_document",
    # Faults
    "FaultInjector",
    "FaultKind",
    # Health
    "ClusterStats",
    "HealthFinding",
    "compute_cluster_stats",
    "derive_health",
    "derive_node_health",
    "health_findings",
    "verify_gpu_health",
    # Drift
    "DriftBounds",
    "MetricsDriftSimulator",
]
