"""GPU entities representing simulated GPU hardware.

A GPU carries live telemetry (utilization, temperature, power, clocks),
error state (XID records, ECC counters, NVLink counters) and the derived
health status. All records are plain dataclasses with ``to_dict``/``from_dict``
so a whole cluster can be exported and reloaded without loss.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from superpod_sim.domain.value_objects.health_rules import HealthStatus
from superpod_sim.domain.value_objects.xid_catalog import XID_FALLEN_OFF_BUS


class NVLinkStatus(Enum):
    """NVLink state."""
    ACTIVE = "Active"
    DOWN = "Down"


@dataclass
class XIDError:
    """Single XID event logged by the driver."""
    code: int
    timestamp: str                # ISO-8601, UTC
    description: str = ""
    severity: str = "Critical"

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "timestamp": self.timestamp,
            "description": self.description,
            "severity": self.severity,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> XIDError:
        return cls(
            code=int(data["code"]),
            timestamp=str(data["timestamp"]),
            description=data.get("description", ""),
            severity=data.get("severity", "Critical"),
        )


@dataclass
class ECCErrors:
    """ECC error counters (volatile since last reset, aggregate lifetime)."""
    single_bit: int = 0
    double_bit: int = 0
    aggregated_single_bit: int = 0
    aggregated_double_bit: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "single_bit": self.single_bit,
            "double_bit": self.double_bit,
            "aggregated_single_bit": self.aggregated_single_bit,
            "aggregated_double_bit": self.aggregated_double_bit,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ECCErrors:
        return cls(
            single_bit=int(data.get("single_bit", 0)),
            double_bit=int(data.get("double_bit", 0)),
            aggregated_single_bit=int(data.get("aggregated_single_bit", 0)),
            aggregated_double_bit=int(data.get("aggregated_double_bit", 0)),
        )


@dataclass
class NVLinkConnection:
    """One NVLink of a GPU."""
    link_id: int
    status: NVLinkStatus = NVLinkStatus.ACTIVE
    speed: int = 25               # GB/s
    tx_errors: int = 0
    rx_errors: int = 0
    replay_errors: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == NVLinkStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "link_id": self.link_id,
            "status": self.status.value,
            "speed": self.speed,
            "tx_errors": self.tx_errors,
            "rx_errors": self.rx_errors,
            "replay_errors": self.replay_errors,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NVLinkConnection:
        return cls(
            link_id=int(data["link_id"]),
            status=NVLinkStatus(data.get("status", "Active")),
            speed=int(data.get("speed", 25)),
            tx_errors=int(data.get("tx_errors", 0)),
            rx_errors=int(data.get("rx_errors", 0)),
            replay_errors=int(data.get("replay_errors", 0)),
        )


@dataclass
class MIGInstance:
    """MIG GPU instance carved out of a GPU."""
    instance_id: int
    profile_id: int
    uuid: str

    def to_dict(self) -> dict[str, Any]:
        return {"instance_id": self.instance_id, "profile_id": self.profile_id, "uuid": self.uuid}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MIGInstance:
        return cls(
            instance_id=int(data["instance_id"]),
            profile_id=int(data["profile_id"]),
            uuid=str(data["uuid"]),
        )


@dataclass
class GPU:
    """Simulated GPU with telemetry, error state and derived health."""
    id: int
    uuid: str
    name: str
    pci_address: str
    memory_total: int             # MiB
    power_limit: float            # Enforced limit, W
    max_power_limit: float        # Board TDP, W
    clocks_sm: int                # MHz
    clocks_mem: int               # MHz
    temperature: float = 45.0     # Celsius
    power_draw: float = 100.0     # W
    utilization: float = 0.0      # Percent
    memory_used: int = 0          # MiB
    ecc_enabled: bool = True
    ecc_errors: ECCErrors = field(default_factory=ECCErrors)
    xid_errors: list[XIDError] = field(default_factory=list)
    nvlinks: list[NVLinkConnection] = field(default_factory=list)
    health_status: HealthStatus = HealthStatus.OK
    persistence_mode: bool = True
    mig_mode: bool = False
    mig_instances: list[MIGInstance] = field(default_factory=list)
    allocated_job_id: Optional[int] = None

    @property
    def active_nvlinks(self) -> int:
        return sum(1 for link in self.nvlinks if link.is_active)

    @property
    def has_fallen_off_bus(self) -> bool:
        """True when an XID 79 removed the GPU from PCIe enumeration."""
        return any(x.code == XID_FALLEN_OFF_BUS for x in self.xid_errors)

    @property
    def memory_free(self) -> int:
        return self.memory_total - self.memory_used

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "uuid": self.uuid,
            "name": self.name,
            "pci_address": self.pci_address,
            "memory_total": self.memory_total,
            "power_limit": self.power_limit,
            "max_power_limit": self.max_power_limit,
            "clocks_sm": self.clocks_sm,
            "clocks_mem": self.clocks_mem,
            "temperature": self.temperature,
            "power_draw": self.power_draw,
            "utilization": self.utilization,
            "memory_used": self.memory_used,
            "ecc_enabled": self.ecc_enabled,
            "ecc_errors": self.ecc_errors.to_dict(),
            "xid_errors": [x.to_dict() for x in self.xid_errors],
            "nvlinks": [link.to_dict() for link in self.nvlinks],
            "health_status": self.health_status.value,
            "persistence_mode": self.persistence_mode,
            "mig_mode": self.mig_mode,
            "mig_instances": [m.to_dict() for m in self.mig_instances],
            "allocated_job_id": self.allocated_job_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GPU:
        return cls(
            id=int(data["id"]),
            uuid=str(data["uuid"]),
            name=str(data["name"]),
            pci_address=str(data["pci_address"]),
            memory_total=int(data["memory_total"]),
            power_limit=float(data["power_limit"]),
            max_power_limit=float(data.get("max_power_limit", data["power_limit"])),
            clocks_sm=int(data["clocks_sm"]),
            clocks_mem=int(data["clocks_mem"]),
            temperature=float(data.get("temperature", 45.0)),
            power_draw=float(data.get("power_draw", 100.0)),
            utilization=float(data.get("utilization", 0.0)),
            memory_used=int(data.get("memory_used", 0)),
            ecc_enabled=bool(data.get("ecc_enabled", True)),
            ecc_errors=ECCErrors.from_dict(data.get("ecc_errors", {})),
            xid_errors=[XIDError.from_dict(x) for x in data.get("xid_errors", [])],
            nvlinks=[NVLinkConnection.from_dict(link) for link in data.get("nvlinks", [])],
            health_status=HealthStatus(data.get("health_status", "OK")),
            persistence_mode=bool(data.get("persistence_mode", True)),
            mig_mode=bool(data.get("mig_mode", False)),
            mig_instances=[MIGInstance.from_dict(m) for m in data.get("mig_instances", [])],
            allocated_job_id=data.get("allocated_job_id"),
        )
