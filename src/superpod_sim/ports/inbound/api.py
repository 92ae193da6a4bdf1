"""Inbound port interfaces for the SuperPOD simulator.

Inbound ports define what the simulator offers to external clients.
The REST adapter drives ``SimulationEngine`` through this contract.
"""

from __future__ import annotations

from typing import Optional, Protocol

from superpod_sim.domain.entities.cluster import Cluster
from superpod_sim.domain.entities.command import CommandContext, CommandResult
from superpod_sim.domain.entities.gpu import GPU
from superpod_sim.domain.entities.node import DGXNode, SlurmState
from superpod_sim.domain.services.fault_injection import FaultKind
from superpod_sim.domain.services.health import ClusterStats


class SuperPODSimulatorAPI(Protocol):
    """Main API offered by the simulator."""

    context: CommandContext  # Default terminal session

    @property
    def commands(self) -> list[str]:
        """Every command the simulator understands."""
        ...

    @property
    def drift_running(self) -> bool:
        ...

    def execute(self, raw: str, ctx: Optional[CommandContext] = None) -> CommandResult:
        """Run one terminal line.

        Args:
            raw: Command line as typed.
            ctx: Terminal session; the engine's own session when omitted.

        Returns:
            Output text and exit status.
        """
        ...

    def inject_fault(self, node_id: str, gpu_id: int, kind: FaultKind | str) -> GPU:
        """Inject a fault into one GPU.

        Returns:
            The GPU after the fault.
        """
        ...

    def add_xid_error(self, node_id: str, gpu_id: int, code: int) -> GPU:
        """Record a catalogued XID on one GPU.

        Raises:
            KeyError: If the code is not catalogued.
        """
        ...

    def clear_faults(self, node_id: str, gpu_id: int) -> GPU:
        """Restore one GPU to the healthy baseline."""
        ...

    def clear_all_faults(self) -> int:
        """Restore every GPU.

        Returns:
            Number of GPUs reset.
        """
        ...

    def set_slurm_state(self, node_id: str, state: SlurmState | str, reason: Optional[str] = None) -> DGXNode:
        """Set a node's scheduler state.

        Returns:
            The node after the update.
        """
        ...

    def reset_cluster(self) -> None:
        """Replace the cluster with a fresh default."""
        ...

    def export_cluster(self) -> str:
        """Serialise the cluster to JSON."""
        ...

    def import_cluster(self, raw: str | bytes) -> Cluster:
        """Replace the cluster from a JSON document.

        Raises:
            ClusterValidationError: If the document is rejected.
        """
        ...

    def snapshot(self) -> Cluster:
        """Get a deep copy of the cluster."""
        ...

    def stats(self) -> ClusterStats:
        """Get cluster-wide aggregates."""
        ...

    def start_drift(self) -> None:
        """Start the background telemetry walk."""
        ...

    def stop_drift(self) -> None:
        """Stop the background telemetry walk. Safe to call repeatedly."""
        ...
