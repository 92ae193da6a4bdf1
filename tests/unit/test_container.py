"""Unit tests for dependency wiring and metrics."""

import pytest
from prometheus_client import CollectorRegistry

from superpod_sim.adapters.inbound.command_router import CommandRouter
from superpod_sim.application.engine import SimulationEngine
from superpod_sim.application.state_store import ClusterStore
from superpod_sim.domain.services.fault_injection import FaultInjector
from superpod_sim.domain.services.metrics_drift import MetricsDriftSimulator
from superpod_sim.domain.value_objects.health_rules import HealthThresholds
from superpod_sim.infrastructure.config import ClusterConfig, Config, HealthConfig
from superpod_sim.infrastructure.container import Container, build_container
from superpod_sim.infrastructure.metrics import MetricsRegistry


@pytest.mark.unit
class TestContainer:
    """Test the DI container."""

    def test_singleton(self):
        container = Container()
        container.register_singleton(str, "value")
        assert container.resolve(str) == "value"
        assert container.has(str)

    def test_factory_resolves_once(self):
        container = Container()
        container.register_factory(list, lambda c: [])
        assert not container.is_resolved(list)
        assert container.resolve(list) is container.resolve(list)
        assert container.is_resolved(list)

    def test_unregistered(self):
        with pytest.raises(KeyError):
            Container().resolve(dict)

    def test_clear(self):
        container = Container()
        container.register_singleton(str, "value")
        container.clear()
        assert not container.has(str)


@pytest.mark.unit
class TestBuildContainer:
    """Test the simulator wiring."""

    def test_components_share_one_store(self, container):
        store = container.resolve(ClusterStore)
        engine = container.resolve(SimulationEngine)
        container.resolve(FaultInjector).inject_fault("dgx-00", 0, "xid")
        assert engine.stats().critical_gpus == 1
        assert store.stats().critical_gpus == 1

    def test_router_covers_every_command(self, container):
        assert len(container.resolve(CommandRouter).commands) == 53

    def test_cluster_shape_from_config(self, metrics):
        config = Config(cluster=ClusterConfig(name="Lab", node_count=2, system_type="DGX-H100"))
        store = build_container(config, metrics=metrics).resolve(ClusterStore)
        cluster = store.snapshot()
        assert cluster.name == "Lab"
        assert len(cluster.nodes) == 2

    def test_thresholds_from_config(self, metrics):
        config = Config(health=HealthConfig(thermal_warning_c=70.0))
        container = build_container(config, metrics=metrics)
        assert container.resolve(HealthThresholds).thermal_warning_c == 70.0
        store = container.resolve(ClusterStore)
        assert store.update_gpu("dgx-00", 0, {"temperature": 72.0}).health_status.value == "Warning"

    def test_drift_is_lazy(self, container):
        assert not container.is_resolved(MetricsDriftSimulator)
        container.resolve(SimulationEngine)
        assert container.is_resolved(MetricsDriftSimulator)


@pytest.mark.unit
class TestMetricsRegistry:
    """Test Prometheus instruments."""

    def test_record_command(self):
        registry = CollectorRegistry()
        metrics = MetricsRegistry(registry)
        metrics.record_command("nvidia-smi", 0, 0.001)
        metrics.record_command("nvidia-smi", 1, 0.001)
        ok = registry.get_sample_value("superpod_commands_total", {"tool": "nvidia-smi", "status": "ok"})
        err = registry.get_sample_value("superpod_commands_total", {"tool": "nvidia-smi", "status": "error"})
        assert ok == 1.0
        assert err == 1.0

    def test_engine_updates_gauges(self, engine, metrics, ctx):
        registry = metrics._registry
        engine.inject_fault("dgx-00", 0, "xid")
        assert registry.get_sample_value("superpod_gpu_count", {"health": "critical"}) == 1.0
        assert registry.get_sample_value("superpod_gpu_count", {"health": "ok"}) == 63.0
        assert registry.get_sample_value("superpod_faults_injected_total", {"kind": "xid"}) == 1.0
        engine.clear_all_faults()
        assert registry.get_sample_value("superpod_faults_cleared_total") == 64.0

    def test_engine_counts_commands(self, engine, metrics, ctx):
        engine.execute("hostname", ctx)
        engine.execute("bogus", ctx)
        registry = metrics._registry
        assert registry.get_sample_value("superpod_commands_total", {"tool": "hostname", "status": "ok"}) == 1.0
        assert registry.get_sample_value("superpod_commands_total", {"tool": "unknown", "status": "error"}) == 1.0
