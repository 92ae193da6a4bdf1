"""Command router.

Maps a base command to the simulator method that serves it. The table is
static and checked once at construction: every ``CommandName`` must be
routed, every ``SimulatorKind`` must have an instance, and every routed
method must exist on that instance.
"""

from __future__ import annotations

import functools
from enum import Enum
from typing import Mapping

from superpod_sim.domain.entities.command import ParsedCommand
from superpod_sim.domain.exceptions import InvariantViolation, UnknownCommandError
from superpod_sim.ports.outbound.commands import EntryPoint


class CommandName(Enum):
    """Every base command the simulator understands."""
    NVIDIA_SMI = "nvidia-smi"
    DCGMI = "dcgmi"
    NV_FABRICMANAGER = "nv-fabricmanager"
    # Slurm
    SINFO = "sinfo"
    SQUEUE = "squeue"
    SCONTROL = "scontrol"
    SBATCH = "sbatch"
    SRUN = "srun"
    SCANCEL = "scancel"
    SACCT = "sacct"
    # Base Command Manager
    BCM = "bcm"
    BCM_NODE = "bcm-node"
    CRM = "crm"
    CMSH = "cmsh"
    IPMITOOL = "ipmitool"
    # InfiniBand
    IBSTAT = "ibstat"
    IBPORTSTATE = "ibportstate"
    IBPORTERRORS = "ibporterrors"
    IBLINKINFO = "iblinkinfo"
    PERFQUERY = "perfquery"
    IBDIAGNET = "ibdiagnet"
    IBDEV2NETDEV = "ibdev2netdev"
    IBNETDISCOVER = "ibnetdiscover"
    # Mellanox firmware tools
    MST = "mst"
    MLXCONFIG = "mlxconfig"
    MLXLINK = "mlxlink"
    MLXCABLES = "mlxcables"
    MLXFWMANAGER = "mlxfwmanager"
    # Operating system
    LSCPU = "lscpu"
    FREE = "free"
    UPTIME = "uptime"
    UNAME = "uname"
    HOSTNAME = "hostname"
    DMESG = "dmesg"
    SYSTEMCTL = "systemctl"
    SENSORS = "sensors"
    LSPCI = "lspci"
    JOURNALCTL = "journalctl"
    # Containers
    DOCKER = "docker"
    ENROOT = "enroot"
    NVIDIA_CONTAINER_CLI = "nvidia-container-cli"
    # Storage
    DF = "df"
    MOUNT = "mount"
    LFS = "lfs"
    # Benchmarks
    HPL = "hpl"
    NCCL_TEST = "nccl-test"
    ALL_REDUCE_PERF = "all_reduce_perf"
    GPU_BURN = "gpu-burn"
    NEMO = "nemo"
    CLUSTERKIT = "clusterkit"
    NVSM = "nvsm"
    NVLINK_AUDIT = "nvlink-audit"
    NVIDIA_BUG_REPORT = "nvidia-bug-report.sh"


class SimulatorKind(Enum):
    """One simulator instance per kind."""
    NVIDIA_SMI = "nvidia_smi"
    DCGMI = "dcgmi"
    FABRIC_MANAGER = "fabric_manager"
    SLURM = "slurm"
    BCM = "bcm"
    IPMITOOL = "ipmitool"
    INFINIBAND = "infiniband"
    MELLANOX = "mellanox"
    BASIC_SYSTEM = "basic_system"
    PCI_TOOLS = "pci_tools"
    CONTAINER = "container"
    STORAGE = "storage"
    BENCHMARK = "benchmark"
    NVSM = "nvsm"
    NVLINK_AUDIT = "nvlink_audit"
    BUG_REPORT = "bug_report"
    CLUSTERKIT = "clusterkit"


ROUTES: Mapping[CommandName, tuple[SimulatorKind, str]] = {
    CommandName.NVIDIA_SMI: (SimulatorKind.NVIDIA_SMI, "execute"),
    CommandName.DCGMI: (SimulatorKind.DCGMI, "execute"),
    CommandName.NV_FABRICMANAGER: (SimulatorKind.FABRIC_MANAGER, "execute"),
    CommandName.SINFO: (SimulatorKind.SLURM, "execute_sinfo"),
    CommandName.SQUEUE: (SimulatorKind.SLURM, "execute_squeue"),
    CommandName.SCONTROL: (SimulatorKind.SLURM, "execute_scontrol"),
    CommandName.SBATCH: (SimulatorKind.SLURM, "execute_sbatch"),
    CommandName.SRUN: (SimulatorKind.SLURM, "execute_srun"),
    CommandName.SCANCEL: (SimulatorKind.SLURM, "execute_scancel"),
    CommandName.SACCT: (SimulatorKind.SLURM, "execute_sacct"),
    CommandName.BCM: (SimulatorKind.BCM, "execute_bcm"),
    CommandName.BCM_NODE: (SimulatorKind.BCM, "execute_bcm_node"),
    CommandName.CRM: (SimulatorKind.BCM, "execute_crm"),
    CommandName.CMSH: (SimulatorKind.BCM, "execute_cmsh"),
    CommandName.IPMITOOL: (SimulatorKind.IPMITOOL, "execute"),
    CommandName.IBSTAT: (SimulatorKind.INFINIBAND, "execute_ibstat"),
    CommandName.IBPORTSTATE: (SimulatorKind.INFINIBAND, "execute_ibportstate"),
    CommandName.IBPORTERRORS: (SimulatorKind.INFINIBAND, "execute_ibporterrors"),
    CommandName.IBLINKINFO: (SimulatorKind.INFINIBAND, "execute_iblinkinfo"),
    CommandName.PERFQUERY: (SimulatorKind.INFINIBAND, "execute_perfquery"),
    CommandName.IBDIAGNET: (SimulatorKind.INFINIBAND, "execute_ibdiagnet"),
    CommandName.IBDEV2NETDEV: (SimulatorKind.INFINIBAND, "execute_ibdev2netdev"),
    CommandName.IBNETDISCOVER: (SimulatorKind.INFINIBAND, "execute_ibnetdiscover"),
    CommandName.MST: (SimulatorKind.MELLANOX, "execute_mst"),
    CommandName.MLXCONFIG: (SimulatorKind.MELLANOX, "execute_mlxconfig"),
    CommandName.MLXLINK: (SimulatorKind.MELLANOX, "execute_mlxlink"),
    CommandName.MLXCABLES: (SimulatorKind.MELLANOX, "execute_mlxcables"),
    CommandName.MLXFWMANAGER: (SimulatorKind.MELLANOX, "execute_mlxfwmanager"),
    CommandName.LSCPU: (SimulatorKind.BASIC_SYSTEM, "execute_lscpu"),
    CommandName.FREE: (SimulatorKind.BASIC_SYSTEM, "execute_free"),
    CommandName.UPTIME: (SimulatorKind.BASIC_SYSTEM, "execute_uptime"),
    CommandName.UNAME: (SimulatorKind.BASIC_SYSTEM, "execute_uname"),
    CommandName.HOSTNAME: (SimulatorKind.BASIC_SYSTEM, "execute_hostname"),
    CommandName.DMESG: (SimulatorKind.BASIC_SYSTEM, "execute_dmesg"),
    CommandName.SYSTEMCTL: (SimulatorKind.BASIC_SYSTEM, "execute_systemctl"),
    CommandName.SENSORS: (SimulatorKind.BASIC_SYSTEM, "execute_sensors"),
    CommandName.LSPCI: (SimulatorKind.PCI_TOOLS, "execute_lspci"),
    CommandName.JOURNALCTL: (SimulatorKind.PCI_TOOLS, "execute_journalctl"),
    CommandName.DOCKER: (SimulatorKind.CONTAINER, "execute_docker"),
    CommandName.ENROOT: (SimulatorKind.CONTAINER, "execute_enroot"),
    CommandName.NVIDIA_CONTAINER_CLI: (SimulatorKind.CONTAINER, "execute_nvidia_container_cli"),
    CommandName.DF: (SimulatorKind.STORAGE, "execute_df"),
    CommandName.MOUNT: (SimulatorKind.STORAGE, "execute_mount"),
    CommandName.LFS: (SimulatorKind.STORAGE, "execute_lfs"),
    CommandName.HPL: (SimulatorKind.BENCHMARK, "execute_hpl"),
    CommandName.NCCL_TEST: (SimulatorKind.BENCHMARK, "execute_nccl_test"),
    CommandName.ALL_REDUCE_PERF: (SimulatorKind.BENCHMARK, "execute_nccl_test"),
    CommandName.GPU_BURN: (SimulatorKind.BENCHMARK, "execute_gpu_burn"),
    CommandName.NEMO: (SimulatorKind.BENCHMARK, "execute_nemo"),
    CommandName.CLUSTERKIT: (SimulatorKind.CLUSTERKIT, "execute"),
    CommandName.NVSM: (SimulatorKind.NVSM, "execute"),
    CommandName.NVLINK_AUDIT: (SimulatorKind.NVLINK_AUDIT, "execute"),
    CommandName.NVIDIA_BUG_REPORT: (SimulatorKind.BUG_REPORT, "execute"),
}


def lookup_command(name: str) -> CommandName:
    """Resolve a base command string.

    Raises:
        UnknownCommandError: If no command has that name.
    """
    try:
        return CommandName(name)
    except ValueError:
        raise UnknownCommandError(name) from None


class CommandRouter:
    """Resolve parsed commands to wrapped simulator entry points."""

    def __init__(
        self,
        simulators: Mapping[SimulatorKind, object],
        routes: Mapping[CommandName, tuple[SimulatorKind, str]] = ROUTES,
    ):
        """Initialize and verify the routing table.

        Args:
            simulators: One instance per simulator kind. Each must offer
                ``safe_execute(entry, cmd, ctx)``.
            routes: Command table.

        Raises:
            InvariantViolation: If a command is unrouted, a kind has no
                instance, or a routed method is missing.
        """
        missing_routes = [c.value for c in CommandName if c not in routes]
        if missing_routes:
            raise InvariantViolation(f"Commands without a route: {', '.join(missing_routes)}")

        missing_kinds = [k.value for k in SimulatorKind if k not in simulators]
        if missing_kinds:
            raise InvariantViolation(f"Simulator kinds without an instance: {', '.join(missing_kinds)}")

        self._entries: dict[CommandName, EntryPoint] = {}
        for command, (kind, method) in routes.items():
            simulator = simulators[kind]
            handler = getattr(simulator, method, None)
            if not callable(handler):
                raise InvariantViolation(
                    f"{type(simulator).__name__} has no method {method} for {command.value}"
                )
            self._entries[command] = functools.partial(simulator.safe_execute, handler)

    @property
    def commands(self) -> list[str]:
        return sorted(c.value for c in self._entries)

    def route(self, cmd: ParsedCommand) -> EntryPoint:
        """Return the wrapped entry point for a parsed command.

        Raises:
            UnknownCommandError: If the base command is not known.
        """
        return self._entries[lookup_command(cmd.base_command)]
