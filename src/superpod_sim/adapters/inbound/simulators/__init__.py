"""Command simulators.

One simulator per tool family. ``build_simulators`` creates one instance of
each kind over a shared store and clock, ready for the command router.
"""

from __future__ import annotations

from superpod_sim.adapters.inbound.command_router import SimulatorKind
from superpod_sim.adapters.inbound.simulators.base import BaseSimulator, ToolError, ToolInfo
from superpod_sim.adapters.inbound.simulators.basic_system import BasicSystemSimulator
from superpod_sim.adapters.inbound.simulators.bcm import BCMSimulator
from superpod_sim.adapters.inbound.simulators.benchmark import BenchmarkSimulator
from superpod_sim.adapters.inbound.simulators.bug_report import BugReportSimulator
from superpod_sim.adapters.inbound.simulators.clusterkit import ClusterKitSimulator
from superpod_sim.adapters.inbound.simulators.container import ContainerSimulator
from superpod_sim.adapters.inbound.simulators.dcgmi import DcgmiSimulator
from superpod_sim.adapters.inbound.simulators.fabric_manager import FabricManagerSimulator
from superpod_sim.adapters.inbound.simulators.infiniband import InfiniBandSimulator
from superpod_sim.adapters.inbound.simulators.ipmitool import IpmitoolSimulator
from superpod_sim.adapters.inbound.simulators.mellanox import MellanoxSimulator
from superpod_sim.adapters.inbound.simulators.nvidia_smi import NvidiaSmiSimulator
from superpod_sim.adapters.inbound.simulators.nvlink_audit import NvlinkAuditSimulator
from superpod_sim.adapters.inbound.simulators.nvsm import NvsmSimulator
from superpod_sim.adapters.inbound.simulators.pci_tools import PCIToolsSimulator
from superpod_sim.adapters.inbound.simulators.slurm import SlurmSimulator
from superpod_sim.adapters.inbound.simulators.storage import StorageSimulator
from superpod_sim.application.state_store import ClusterStore
from superpod_sim.ports.outbound.clock import Clock, system_clock

SIMULATOR_CLASSES: dict[SimulatorKind, type[BaseSimulator]] = {
    SimulatorKind.NVIDIA_SMI: NvidiaSmiSimulator,
    SimulatorKind.DCGMI: DcgmiSimulator,
    SimulatorKind.FABRIC_MANAGER: FabricManagerSimulator,
    SimulatorKind.SLURM: SlurmSimulator,
    SimulatorKind.BCM: BCMSimulator,
    SimulatorKind.IPMITOOL: IpmitoolSimulator,
    SimulatorKind.INFINIBAND: InfiniBandSimulator,
    SimulatorKind.MELLANOX: MellanoxSimulator,
    SimulatorKind.BASIC_SYSTEM: BasicSystemSimulator,
    SimulatorKind.PCI_TOOLS: PCIToolsSimulator,
    SimulatorKind.CONTAINER: ContainerSimulator,
    SimulatorKind.STORAGE: StorageSimulator,
    SimulatorKind.BENCHMARK: BenchmarkSimulator,
    SimulatorKind.NVSM: NvsmSimulator,
    SimulatorKind.NVLINK_AUDIT: NvlinkAuditSimulator,
    SimulatorKind.BUG_REPORT: BugReportSimulator,
    SimulatorKind.CLUSTERKIT: ClusterKitSimulator,
}


def build_simulators(
    store: ClusterStore,
    clock: Clock = system_clock,
    strict: bool = False,
) -> dict[SimulatorKind, BaseSimulator]:
    """Create one simulator per kind sharing ``store`` and ``clock``."""
    return {kind: cls(store, clock=clock, strict=strict) for kind, cls in SIMULATOR_CLASSES.items()}


__all__ = [
    "SIMULATOR_CLASSES",
    "BaseSimulator",
    "BasicSystemSimulator",
    "BCMSimulator",
    "BenchmarkSimulator",
    "BugReportSimulator",
    "ClusterKitSimulator",
    "ContainerSimulator",
    "DcgmiSimulator",
    "FabricManagerSimulator",
    "InfiniBandSimulator",
    "IpmitoolSimulator",
    "MellanoxSimulator",
    "NvidiaSmiSimulator",
    "NvlinkAuditSimulator",
    "NvsmSimulator",
    "PCIToolsSimulator",
    "SlurmSimulator",
    "StorageSimulator",
    "ToolError",
    "ToolInfo",
    "build_simulators",
]
