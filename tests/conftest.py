"""Pytest configuration and shared fixtures for SuperPOD simulator tests."""

from datetime import datetime, timezone

import pytest
from prometheus_client import CollectorRegistry

from superpod_sim.application.engine import SimulationEngine
from superpod_sim.application.state_store import ClusterStore
from superpod_sim.domain.entities.command import CommandContext
from superpod_sim.domain.services.fault_injection import FaultInjector
from superpod_sim.infrastructure.config import Config, EngineConfig
from superpod_sim.infrastructure.container import build_container, reset_container
from superpod_sim.infrastructure.metrics import MetricsRegistry
from superpod_sim.ports.outbound.clock import fixed_clock

FIXED_MOMENT = datetime(2024, 1, 15, 10, 30, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def reset_global_container():
    """Reset the DI container before each test."""
    reset_container()
    yield
    reset_container()


@pytest.fixture
def clock():
    """Clock frozen at a fixed moment so rendered output is stable."""
    return fixed_clock(FIXED_MOMENT)


@pytest.fixture
def test_config() -> Config:
    """Provide a test configuration running in strict mode."""
    return Config(engine=EngineConfig(strict=True))


@pytest.fixture
def store(clock) -> ClusterStore:
    """Provide a fresh default cluster."""
    return ClusterStore(clock=clock)


@pytest.fixture
def faults(store, clock) -> FaultInjector:
    return FaultInjector(store, clock=clock)


@pytest.fixture
def metrics() -> MetricsRegistry:
    """Metrics on a private registry so tests never collide."""
    return MetricsRegistry(CollectorRegistry())


@pytest.fixture
def container(test_config, metrics, clock):
    """Provide a fully wired container."""
    return build_container(test_config, metrics=metrics, clock=clock)


@pytest.fixture
def engine(container) -> SimulationEngine:
    engine = container.resolve(SimulationEngine)
    yield engine
    engine.stop_drift()


@pytest.fixture
def ctx() -> CommandContext:
    """A terminal session on the first node."""
    return CommandContext(current_node="dgx-00")


@pytest.fixture
def run(engine, ctx):
    """Run a command line in the shared session and return the result."""
    def _run(line: str):
        return engine.execute(line, ctx)
    return _run


# Pytest markers
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test")
