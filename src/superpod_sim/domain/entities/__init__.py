"""Domain entities for the SuperPOD simulator.

Entities represent the simulated hardware and scheduler state:
- GPU: telemetry, error counters, NVLinks and derived health
- DGXNode: GPUs, HCAs, BMC and Slurm state
- Cluster: nodes plus the Slurm job queue
- ParsedCommand / CommandContext / CommandResult: the command path
"""

from superpod_sim.domain.entities.cluster import (
    BCMHighAvailability,
    Cluster,
    FabricTopology,
    JobState,
    SlurmConfig,
    SlurmJob,
)
from superpod_sim.domain.entities.command import (
    CommandContext,
    CommandResult,
    ParsedCommand,
    StateAction,
    StateChange,
)
from superpod_sim.domain.entities.gpu import (
    GPU,
    ECCErrors,
    MIGInstance,
    NVLinkConnection,
    NVLinkStatus,
    XIDError,
)
from superpod_sim.domain.entities.node import (
    BMC,
    HCA,
    BMCSensor,
    DGXNode,
    InfiniBandPort,
    PortErrors,
    PortState,
    SlurmState,
)

__all__ = [
    # Cluster
    "BCMHighAvailability",
    "Cluster",
    "FabricTopology",
    "JobState",
    "SlurmConfig",
    "SlurmJob",
    # Command
    "CommandContext",
    "CommandResult",
    "ParsedCommand",
    "StateAction",
    "StateChange",
    # GPU
    "GPU",
    "ECCErrors",
    "MIGInstance",
    "NVLinkConnection",
    "NVLinkStatus",
    "XIDError",
    # Node
    "BMC",
    "BMCSensor",
    "DGXNode",
    "HCA",
    "InfiniBandPort",
    "PortErrors",
    "PortState",
    "SlurmState",
]
