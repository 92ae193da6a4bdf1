"""DGX node entities: the node itself, its InfiniBand HCAs and its BMC.

References:
    - NVIDIA DGX A100 user guide (network ports, BMC)
    - InfiniBand Architecture Specification Vol. 1 (PortInfo, PortCounters)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from superpod_sim.domain.entities.gpu import GPU
from superpod_sim.domain.value_objects.health_rules import HealthStatus


class SlurmState(Enum):
    """Scheduler-visible node state."""
    IDLE = "idle"
    ALLOC = "alloc"
    MIX = "mix"
    DRAIN = "drain"
    DOWN = "down"


class PortState(Enum):
    """InfiniBand logical port state."""
    ACTIVE = "Active"
    INIT = "Init"
    DOWN = "Down"


@dataclass
class PortErrors:
    """InfiniBand port error counters."""
    symbol_errors: int = 0
    link_downed: int = 0
    port_rcv_errors: int = 0
    port_xmit_discards: int = 0
    port_xmit_wait: int = 0

    @property
    def total(self) -> int:
        return (
            self.symbol_errors
            + self.link_downed
            + self.port_rcv_errors
            + self.port_xmit_discards
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol_errors": self.symbol_errors,
            "link_downed": self.link_downed,
            "port_rcv_errors": self.port_rcv_errors,
            "port_xmit_discards": self.port_xmit_discards,
            "port_xmit_wait": self.port_xmit_wait,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PortErrors:
        return cls(**{k: int(data.get(k, 0)) for k in cls().to_dict()})


@dataclass
class InfiniBandPort:
    """One physical port of an HCA."""
    port_number: int
    state: PortState = PortState.ACTIVE
    physical_state: str = "LinkUp"
    rate: int = 200               # Gb/s
    lid: int = 0
    guid: str = ""
    link_layer: str = "InfiniBand"
    errors: PortErrors = field(default_factory=PortErrors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "port_number": self.port_number,
            "state": self.state.value,
            "physical_state": self.physical_state,
            "rate": self.rate,
            "lid": self.lid,
            "guid": self.guid,
            "link_layer": self.link_layer,
            "errors": self.errors.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InfiniBandPort:
        return cls(
            port_number=int(data["port_number"]),
            state=PortState(data.get("state", "Active")),
            physical_state=data.get("physical_state", "LinkUp"),
            rate=int(data.get("rate", 200)),
            lid=int(data.get("lid", 0)),
            guid=data.get("guid", ""),
            link_layer=data.get("link_layer", "InfiniBand"),
            errors=PortErrors.from_dict(data.get("errors", {})),
        )


@dataclass
class HCA:
    """InfiniBand Host Channel Adapter."""
    id: int
    ca_type: str                  # Device name, e.g. "mlx5_0"
    model: str                    # e.g. "ConnectX-6"
    device_id: str                # e.g. "MT4123"
    part_number: str
    firmware_version: str
    ports: list[InfiniBandPort] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ca_type": self.ca_type,
            "model": self.model,
            "device_id": self.device_id,
            "part_number": self.part_number,
            "firmware_version": self.firmware_version,
            "ports": [p.to_dict() for p in self.ports],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HCA:
        return cls(
            id=int(data["id"]),
            ca_type=data["ca_type"],
            model=data.get("model", "ConnectX-6"),
            device_id=data.get("device_id", "MT4123"),
            part_number=data.get("part_number", ""),
            firmware_version=data.get("firmware_version", ""),
            ports=[InfiniBandPort.from_dict(p) for p in data.get("ports", [])],
        )


@dataclass
class BMCSensor:
    """One IPMI sensor reading."""
    name: str
    reading: float
    unit: str                     # "degrees C", "Volts", "Watts", "RPM"
    status: str = "ok"
    lower_critical: Optional[float] = None
    upper_warning: Optional[float] = None
    upper_critical: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "reading": self.reading,
            "unit": self.unit,
            "status": self.status,
            "lower_critical": self.lower_critical,
            "upper_warning": self.upper_warning,
            "upper_critical": self.upper_critical,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BMCSensor:
        return cls(
            name=data["name"],
            reading=float(data["reading"]),
            unit=data["unit"],
            status=data.get("status", "ok"),
            lower_critical=data.get("lower_critical"),
            upper_warning=data.get("upper_warning"),
            upper_critical=data.get("upper_critical"),
        )


@dataclass
class BMC:
    """Baseboard management controller."""
    ip_address: str
    mac_address: str
    firmware_version: str
    power_state: str = "On"
    sensors: list[BMCSensor] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ip_address": self.ip_address,
            "mac_address": self.mac_address,
            "firmware_version": self.firmware_version,
            "power_state": self.power_state,
            "sensors": [s.to_dict() for s in self.sensors],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BMC:
        return cls(
            ip_address=data["ip_address"],
            mac_address=data["mac_address"],
            firmware_version=data["firmware_version"],
            power_state=data.get("power_state", "On"),
            sensors=[BMCSensor.from_dict(s) for s in data.get("sensors", [])],
        )


@dataclass
class DGXNode:
    """A DGX system: 8 GPUs, HCAs, BMC and scheduler-visible state."""
    id: str
    hostname: str
    system_type: str
    management_ip: str
    gpus: list[GPU]
    hcas: list[HCA]
    bmc: BMC
    cpu_model: str
    cpu_count: int                # Sockets
    cores_per_socket: int
    ram_total_gb: int
    ram_used_gb: int
    os_version: str
    kernel_version: str
    nvidia_driver_version: str
    cuda_version: str
    health_status: HealthStatus = HealthStatus.OK
    slurm_state: SlurmState = SlurmState.IDLE
    slurm_reason: Optional[str] = None

    @property
    def total_cores(self) -> int:
        return self.cpu_count * self.cores_per_socket

    def find_gpu(self, gpu_id: int) -> Optional[GPU]:
        for gpu in self.gpus:
            if gpu.id == gpu_id:
                return gpu
        return None

    def visible_gpus(self) -> list[GPU]:
        """GPUs still enumerated on PCIe (XID 79 hides a GPU)."""
        return [g for g in self.gpus if not g.has_fallen_off_bus]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "hostname": self.hostname,
            "system_type": self.system_type,
            "management_ip": self.management_ip,
            "gpus": [g.to_dict() for g in self.gpus],
            "hcas": [h.to_dict() for h in self.hcas],
            "bmc": self.bmc.to_dict(),
            "cpu_model": self.cpu_model,
            "cpu_count": self.cpu_count,
            "cores_per_socket": self.cores_per_socket,
            "ram_total_gb": self.ram_total_gb,
            "ram_used_gb": self.ram_used_gb,
            "os_version": self.os_version,
            "kernel_version": self.kernel_version,
            "nvidia_driver_version": self.nvidia_driver_version,
            "cuda_version": self.cuda_version,
            "health_status": self.health_status.value,
            "slurm_state": self.slurm_state.value,
            "slurm_reason": self.slurm_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DGXNode:
        return cls(
            id=data["id"],
            hostname=data["hostname"],
            system_type=data.get("system_type", "DGX-A100"),
            management_ip=data.get("management_ip", ""),
            gpus=[GPU.from_dict(g) for g in data["gpus"]],
            hcas=[HCA.from_dict(h) for h in data.get("hcas", [])],
            bmc=BMC.from_dict(data["bmc"]),
            cpu_model=data.get("cpu_model", ""),
            cpu_count=int(data.get("cpu_count", 2)),
            cores_per_socket=int(data.get("cores_per_socket", 64)),
            ram_total_gb=int(data.get("ram_total_gb", 1024)),
            ram_used_gb=int(data.get("ram_used_gb", 0)),
            os_version=data.get("os_version", ""),
            kernel_version=data.get("kernel_version", ""),
            nvidia_driver_version=data.get("nvidia_driver_version", ""),
            cuda_version=data.get("cuda_version", ""),
            health_status=HealthStatus(data.get("health_status", "OK")),
            slurm_state=SlurmState(data.get("slurm_state", "idle")),
            slurm_reason=data.get("slurm_reason"),
        )
