"""Inbound ports - interfaces offered by the SuperPOD simulator."""

from superpod_sim.ports.inbound.api import SuperPODSimulatorAPI

__all__ = [
    "SuperPODSimulatorAPI",
]
