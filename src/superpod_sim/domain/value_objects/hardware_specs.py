"""Hardware specifications for supported DGX system types.

Defines the per-system templates the cluster factory stamps out, plus the
MIG profile table used by ``nvidia-smi mig``.

References:
    - NVIDIA DGX A100 / DGX H100 system user guides
    - NVIDIA Multi-Instance GPU user guide
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class GPUSpec:
    """GPU model parameters."""
    name: str                     # Product name as nvidia-smi prints it
    short_name: str               # e.g., "A100-80GB"
    architecture: str             # e.g., "Ampere"
    memory_mib: int
    tdp_watts: float
    boost_clock_mhz: int
    memory_clock_mhz: int
    nvlink_count: int             # NVLinks per GPU
    nvlink_speed_gbps: int        # Per-link bandwidth in GB/s
    device_id: str                # PCI device id
    max_clock_mhz: int = 0


@dataclass(frozen=True)
class HCASpec:
    """InfiniBand HCA parameters."""
    model: str
    device_id: str                # e.g., "MT4123"
    part_number: str
    firmware_version: str
    rate_gbps: int
    count: int


@dataclass(frozen=True)
class SystemSpec:
    """Full DGX system template."""
    system_type: str
    gpu: GPUSpec
    hca: HCASpec
    gpus_per_node: int
    nvswitch_count: int
    cpu_model: str
    cpu_sockets: int
    cores_per_socket: int
    ram_total_gb: int
    driver_version: str
    cuda_version: str
    bmc_firmware: str
    dpu_firmware: str


@dataclass(frozen=True)
class MIGProfile:
    """MIG GPU instance profile."""
    profile_id: int
    name: str
    memory_gib: float
    compute_slices: int
    max_instances: int


DGX_A100 = SystemSpec(
    system_type="DGX-A100",
    gpu=GPUSpec(
        name="NVIDIA A100-SXM4-80GB",
        short_name="A100-80GB",
        architecture="Ampere",
        memory_mib=81920,
        tdp_watts=400.0,
        boost_clock_mhz=1410,
        memory_clock_mhz=1593,
        nvlink_count=12,
        nvlink_speed_gbps=25,
        device_id="0x20B210DE",
        max_clock_mhz=1410,
    ),
    hca=HCASpec(
        model="ConnectX-6",
        device_id="MT4123",
        part_number="MCX653105A-HDAT",
        firmware_version="20.35.1012",
        rate_gbps=200,
        count=8,
    ),
    gpus_per_node=8,
    nvswitch_count=6,
    cpu_model="AMD EPYC 7742 64-Core Processor",
    cpu_sockets=2,
    cores_per_socket=64,
    ram_total_gb=1024,
    driver_version="535.129.03",
    cuda_version="12.2",
    bmc_firmware="3.47.00",
    dpu_firmware="24.35.2000",
)

DGX_H100 = SystemSpec(
    system_type="DGX-H100",
    gpu=GPUSpec(
        name="NVIDIA H100 80GB HBM3",
        short_name="H100-80GB",
        architecture="Hopper",
        memory_mib=81559,
        tdp_watts=700.0,
        boost_clock_mhz=1980,
        memory_clock_mhz=2619,
        nvlink_count=18,
        nvlink_speed_gbps=25,
        device_id="0x233010DE",
        max_clock_mhz=1980,
    ),
    hca=HCASpec(
        model="ConnectX-7",
        device_id="MT4129",
        part_number="MCX75310AAS-NEAT",
        firmware_version="28.39.1002",
        rate_gbps=400,
        count=8,
    ),
    gpus_per_node=8,
    nvswitch_count=4,
    cpu_model="Intel(R) Xeon(R) Platinum 8480C",
    cpu_sockets=2,
    cores_per_socket=56,
    ram_total_gb=2048,
    driver_version="535.129.03",
    cuda_version="12.2",
    bmc_firmware="3.47.00",
    dpu_firmware="24.35.2000",
)

SYSTEM_SPECS: dict[str, SystemSpec] = {
    DGX_A100.system_type: DGX_A100,
    DGX_H100.system_type: DGX_H100,
}

MIG_PROFILES: tuple[MIGProfile, ...] = (
    MIGProfile(19, "MIG 1g.10gb", 9.75, 14, 7),
    MIGProfile(20, "MIG 1g.10gb+me", 9.75, 14, 1),
    MIGProfile(15, "MIG 1g.20gb", 19.62, 14, 4),
    MIGProfile(14, "MIG 2g.20gb", 19.62, 28, 3),
    MIGProfile(9, "MIG 3g.40gb", 39.38, 42, 2),
    MIGProfile(5, "MIG 4g.40gb", 39.38, 56, 1),
    MIGProfile(0, "MIG 7g.80gb", 79.25, 98, 1),
)


def get_system_spec(system_type: str) -> SystemSpec:
    """Look up a system template by type name.

    Raises:
        KeyError: If the system type is unknown.
    """
    try:
        return SYSTEM_SPECS[system_type]
    except KeyError:
        raise KeyError(
            f"Unknown system type {system_type!r}; expected one of {sorted(SYSTEM_SPECS)}"
        ) from None


def find_mig_profile(profile_id: int) -> Optional[MIGProfile]:
    """Find a MIG profile by id."""
    for profile in MIG_PROFILES:
        if profile.profile_id == profile_id:
            return profile
    return None
