"""Prometheus metrics for the SuperPOD simulator."""

from __future__ import annotations

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, Info, start_http_server

from superpod_sim.domain.entities.node import SlurmState
from superpod_sim.domain.services.health import ClusterStats


class MetricsRegistry:
    """Simulator metrics."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or REGISTRY

        self.commands_total = Counter("superpod_commands_total", "Commands executed", ["tool", "status"], registry=self._registry)
        self.command_duration_seconds = Histogram("superpod_command_duration_seconds", "Command execution time", ["tool"], buckets=(0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5), registry=self._registry)
        self.faults_injected_total = Counter("superpod_faults_injected_total", "Faults injected", ["kind"], registry=self._registry)
        self.faults_cleared_total = Counter("superpod_faults_cleared_total", "GPUs restored to baseline", registry=self._registry)
        self.drift_ticks_total = Counter("superpod_drift_ticks_total", "Metrics drift ticks", registry=self._registry)

        self.gpu_count = Gauge("superpod_gpu_count", "GPUs by derived health", ["health"], registry=self._registry)
        self.node_count = Gauge("superpod_node_count", "Nodes by Slurm state", ["state"], registry=self._registry)
        self.nvlinks_active = Gauge("superpod_nvlinks_active", "Active NVLinks", registry=self._registry)
        self.gpu_power_watts = Gauge("superpod_gpu_power_watts", "Total GPU power draw", registry=self._registry)

        self.info = Info("superpod_sim", "Simulator info", registry=self._registry)

    def record_command(self, tool: str, exit_code: int, seconds: float) -> None:
        self.commands_total.labels(tool=tool, status="ok" if exit_code == 0 else "error").inc()
        self.command_duration_seconds.labels(tool=tool).observe(seconds)

    def update_cluster(self, stats: ClusterStats) -> None:
        """Refresh the cluster gauges from an aggregate."""
        self.gpu_count.labels(health="ok").set(stats.healthy_gpus)
        self.gpu_count.labels(health="warning").set(stats.warning_gpus)
        self.gpu_count.labels(health="critical").set(stats.critical_gpus)
        for state in SlurmState:
            self.node_count.labels(state=state.value).set(stats.nodes_by_slurm_state.get(state.value, 0))
        self.nvlinks_active.set(stats.active_nvlinks)
        self.gpu_power_watts.set(stats.total_power)


_metrics: MetricsRegistry | None = None


def setup_metrics(port: int = 9108, registry: CollectorRegistry | None = None, serve: bool = True) -> MetricsRegistry:
    global _metrics
    _metrics = MetricsRegistry(registry)
    if serve:
        start_http_server(port, registry=registry or REGISTRY)
    return _metrics


def get_metrics() -> MetricsRegistry:
    global _metrics
    if _metrics is None:
        _metrics = MetricsRegistry()
    return _metrics


def reset_metrics() -> None:
    global _metrics
    _metrics = None
