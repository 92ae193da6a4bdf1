"""Unit tests for simulator configuration."""

import pytest
from pydantic import ValidationError

from superpod_sim.infrastructure.config import (
    ClusterConfig,
    Config,
    DriftConfig,
    EngineConfig,
    HealthConfig,
    ObservabilityConfig,
    ServerConfig,
)


@pytest.mark.unit
class TestConfig:
    """Test configuration loading and validation."""

    def test_cluster_config_defaults(self):
        """Test cluster configuration defaults."""
        config = ClusterConfig()
        assert config.name == "DGX SuperPOD"
        assert config.node_count == 8
        assert config.system_type == "DGX-A100"
        assert config.max_import_bytes == 5 * 1024 * 1024

    def test_health_config_defaults(self):
        config = HealthConfig()
        assert config.thermal_warning_c == 85.0
        assert config.power_warning_fraction == 0.95

    def test_drift_disabled_by_default(self):
        config = DriftConfig()
        assert config.enabled is False
        assert config.seed is None

    def test_engine_and_server_defaults(self):
        """Test engine and server configuration defaults."""
        assert EngineConfig().strict is False
        assert EngineConfig().history_limit == 1000
        server = ServerConfig()
        assert server.http_port == 8080
        assert server.metrics_port == 9108

    def test_observability_defaults(self):
        config = ObservabilityConfig()
        assert config.log_format == "json"
        assert config.enable_tracing is False

    def test_invalid_values_rejected(self):
        with pytest.raises(ValidationError):
            ClusterConfig(system_type="DGX-1")
        with pytest.raises(ValidationError):
            DriftConfig(interval_seconds=0)
        with pytest.raises(ValidationError):
            HealthConfig(power_warning_fraction=1.5)

    def test_environment_override(self, monkeypatch):
        """Test nested settings read from the environment."""
        monkeypatch.setenv("SUPERPOD_SIM_DRIFT__SEED", "1234")
        monkeypatch.setenv("SUPERPOD_SIM_CLUSTER__NODE_COUNT", "4")
        config = Config()
        assert config.drift.seed == 1234
        assert config.cluster.node_count == 4
