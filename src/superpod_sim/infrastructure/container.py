"""Dependency injection container."""

from __future__ import annotations

from functools import partial
from typing import Any, Callable, Optional, TypeVar

from opentelemetry import trace

from superpod_sim.adapters.inbound.command_parser import CommandParser
from superpod_sim.adapters.inbound.command_router import CommandRouter
from superpod_sim.adapters.inbound.simulators import build_simulators
from superpod_sim.application.engine import SimulationEngine
from superpod_sim.application.state_store import ClusterStore
from superpod_sim.domain.services.cluster_factory import create_default_cluster
from superpod_sim.domain.services.fault_injection import FaultInjector
from superpod_sim.domain.services.metrics_drift import MetricsDriftSimulator
from superpod_sim.domain.value_objects.hardware_specs import SystemSpec, get_system_spec
from superpod_sim.domain.value_objects.health_rules import HealthThresholds
from superpod_sim.infrastructure.config import Config, get_config
from superpod_sim.infrastructure.metrics import MetricsRegistry
from superpod_sim.ports.outbound.clock import Clock, system_clock

T = TypeVar("T")


class Container:
    """Simple dependency injection container."""

    def __init__(self) -> None:
        self._singletons: dict[type, Any] = {}
        self._factories: dict[type, Callable[[Container], Any]] = {}
        self._instances: dict[type, Any] = {}

    def register_singleton(self, interface: type[T], instance: T) -> None:
        """Register a singleton instance."""
        self._singletons[interface] = instance
        self._instances[interface] = instance

    def register_factory(self, interface: type[T], factory: Callable[[Container], T]) -> None:
        """Register a factory function. The first resolve caches the instance."""
        self._factories[interface] = factory

    def resolve(self, interface: type[T]) -> T:
        """Resolve a dependency.

        Raises:
            KeyError: If nothing is registered for ``interface``.
        """
        if interface in self._instances:
            return self._instances[interface]
        if interface in self._singletons:
            return self._singletons[interface]
        if interface in self._factories:
            instance = self._factories[interface](self)
            self._instances[interface] = instance
            return instance
        raise KeyError(f"No registration found for {interface}")

    def has(self, interface: type) -> bool:
        """Check if an interface is registered."""
        return interface in self._singletons or interface in self._factories or interface in self._instances

    def is_resolved(self, interface: type) -> bool:
        """Check if an instance has already been created."""
        return interface in self._instances

    def clear(self) -> None:
        """Clear all registrations."""
        self._singletons.clear()
        self._factories.clear()
        self._instances.clear()


def build_container(
    config: Optional[Config] = None,
    metrics: Optional[MetricsRegistry] = None,
    tracer: Optional[trace.Tracer] = None,
    clock: Clock = system_clock,
) -> Container:
    """Register every simulator component.

    Components are factories, so nothing is built until first resolved and
    each resolves to one shared instance.

    Args:
        config: Configuration. Defaults to the cached environment config.
        metrics: Metrics registry. None disables metrics.
        tracer: Tracer. None uses the global provider.
        clock: Clock shared by the store, faults and simulators.
    """
    config = config or get_config()
    container = Container()
    container.register_singleton(Config, config)

    spec = get_system_spec(config.cluster.system_type)
    container.register_singleton(SystemSpec, spec)
    container.register_singleton(
        HealthThresholds,
        HealthThresholds(
            thermal_warning_c=config.health.thermal_warning_c,
            power_warning_fraction=config.health.power_warning_fraction,
        ),
    )
    if metrics is not None:
        container.register_singleton(MetricsRegistry, metrics)

    container.register_factory(
        ClusterStore,
        lambda c: ClusterStore(
            cluster_factory=partial(
                create_default_cluster,
                name=config.cluster.name,
                node_count=config.cluster.node_count,
                spec=spec,
                domain=config.cluster.domain,
            ),
            thresholds=c.resolve(HealthThresholds),
            clock=clock,
            max_import_bytes=config.cluster.max_import_bytes,
        ),
    )
    container.register_factory(
        FaultInjector,
        lambda c: FaultInjector(c.resolve(ClusterStore), spec=spec, clock=clock),
    )
    container.register_factory(
        MetricsDriftSimulator,
        lambda c: MetricsDriftSimulator(
            c.resolve(ClusterStore),
            interval_seconds=config.drift.interval_seconds,
            seed=config.drift.seed,
            thresholds=c.resolve(HealthThresholds),
            spec=spec,
        ),
    )
    container.register_factory(CommandParser, lambda c: CommandParser())
    container.register_factory(
        CommandRouter,
        lambda c: CommandRouter(build_simulators(c.resolve(ClusterStore), clock=clock, strict=config.engine.strict)),
    )
    container.register_factory(
        SimulationEngine,
        lambda c: SimulationEngine(
            store=c.resolve(ClusterStore),
            parser=c.resolve(CommandParser),
            dispatcher=c.resolve(CommandRouter),
            faults=c.resolve(FaultInjector),
            drift=c.resolve(MetricsDriftSimulator),
            metrics=c.resolve(MetricsRegistry) if c.has(MetricsRegistry) else None,
            tracer=tracer,
            clock=clock,
            strict=config.engine.strict,
            history_limit=config.engine.history_limit,
        ),
    )
    return container


_container: Container | None = None


def get_container() -> Container:
    """Get the global container instance."""
    global _container
    if _container is None:
        _container = build_container()
    return _container


def reset_container() -> None:
    """Reset the global container, stopping drift if it was started."""
    global _container
    if _container is not None:
        if _container.is_resolved(MetricsDriftSimulator):
            _container.resolve(MetricsDriftSimulator).stop()
        _container.clear()
    _container = None
