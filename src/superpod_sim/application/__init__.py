"""Application layer for the SuperPOD simulator.

Owns cluster state and runs commands and operator actions against it.
"""

from superpod_sim.application.engine import HistoryEntry, SimulationEngine
from superpod_sim.application.state_store import ClusterStore

__all__ = [
    "ClusterStore",
    "HistoryEntry",
    "SimulationEngine",
]
