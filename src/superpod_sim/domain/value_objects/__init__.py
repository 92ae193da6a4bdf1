"""Domain value objects for the SuperPOD simulator.

Value objects are immutable objects without identity: identifiers,
hardware templates, the XID catalog and health thresholds.
"""

from superpod_sim.domain.value_objects.hardware_specs import (
    DGX_A100,
    DGX_H100,
    MIG_PROFILES,
    MIGProfile,
    SystemSpec,
    find_mig_profile,
    get_system_spec,
)
from superpod_sim.domain.value_objects.health_rules import (
    DEFAULT_THRESHOLDS,
    HealthStatus,
    HealthThresholds,
)
from superpod_sim.domain.value_objects.identifiers import (
    GPUIndex,
    NodeId,
    PCIeBusId,
    SlurmJobId,
    create_node_id,
    create_pci_address,
)
from superpod_sim.domain.value_objects.xid_catalog import (
    XID_CATALOG,
    XID_FALLEN_OFF_BUS,
    XIDDefinition,
    XIDSeverity,
    get_xid,
)

__all__ = [
    # Hardware
    "DGX_A100",
    "DGX_H100",
    "MIG_PROFILES",
    "MIGProfile",
    "SystemSpec",
    "find_mig_profile",
    "get_system_spec",
    # Health
    "DEFAULT_THRESHOLDS",
    "HealthStatus",
    "HealthThresholds",
    # Identifiers
    "GPUIndex",
    "NodeId",
    "PCIeBusId",
    "SlurmJobId",
    "create_node_id",
    "create_pci_address",
    # XID
    "XID_CATALOG",
    "XID_FALLEN_OFF_BUS",
    "XIDDefinition",
    "XIDSeverity",
    "get_xid",
]
