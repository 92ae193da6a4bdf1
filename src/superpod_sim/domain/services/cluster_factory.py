"""Cluster factory: builds the default SuperPOD from a hardware template.

The factory is deterministic. Every GPU starts at the canonical healthy
baseline, which is also the state ``clear_faults`` restores, so a freshly
reset cluster and a fully cleared one compare equal.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from superpod_sim.domain.entities.cluster import (
    BCMHighAvailability,
    Cluster,
    FabricTopology,
    SlurmConfig,
)
from superpod_sim.domain.entities.gpu import GPU, ECCErrors, NVLinkConnection
from superpod_sim.domain.entities.node import (
    BMC,
    HCA,
    BMCSensor,
    DGXNode,
    InfiniBandPort,
)
from superpod_sim.domain.value_objects.hardware_specs import DGX_A100, GPUSpec, SystemSpec
from superpod_sim.domain.value_objects.identifiers import (
    create_gpu_uuid,
    create_node_id,
    create_pci_address,
    create_port_guid,
)

logger = logging.getLogger(__name__)

BASELINE_TEMPERATURE_C = 45.0
BASELINE_POWER_W = 100.0
BASELINE_MAX_POWER_FRACTION = 0.9


def healthy_gpu_baseline(spec: GPUSpec, power_limit: Optional[float] = None) -> dict[str, Any]:
    """Field values of a healthy, idle GPU.

    Idle draw stays below ``BASELINE_MAX_POWER_FRACTION`` of ``power_limit``
    (the board TDP when omitted) so a lowered limit never leaves a cleared
    GPU above the power warning threshold.

    Returns fresh containers on every call so callers can hand the result
    straight to a store write.
    """
    limit = spec.tdp_watts if power_limit is None else power_limit
    return {
        "temperature": BASELINE_TEMPERATURE_C,
        "power_draw": min(BASELINE_POWER_W, round(BASELINE_MAX_POWER_FRACTION * limit, 1)),
        "utilization": 0.0,
        "memory_used": 0,
        "clocks_sm": spec.boost_clock_mhz,
        "clocks_mem": spec.memory_clock_mhz,
        "ecc_errors": ECCErrors(),
        "xid_errors": [],
        "nvlinks": [
            NVLinkConnection(link_id=i, speed=spec.nvlink_speed_gbps)
            for i in range(spec.nvlink_count)
        ],
    }


def _create_gpu(node_index: int, gpu_index: int, spec: SystemSpec) -> GPU:
    baseline = healthy_gpu_baseline(spec.gpu)
    return GPU(
        id=gpu_index,
        uuid=create_gpu_uuid(node_index, gpu_index),
        name=spec.gpu.name,
        pci_address=create_pci_address(gpu_index),
        memory_total=spec.gpu.memory_mib,
        power_limit=spec.gpu.tdp_watts,
        max_power_limit=spec.gpu.tdp_watts,
        **baseline,
    )


def _create_hcas(node_index: int, spec: SystemSpec) -> list[HCA]:
    hcas = []
    for i in range(spec.hca.count):
        port = InfiniBandPort(
            port_number=1,
            rate=spec.hca.rate_gbps,
            lid=100 + node_index * spec.hca.count + i,
            guid=create_port_guid(node_index, i),
        )
        hcas.append(
            HCA(
                id=i,
                ca_type=f"mlx5_{i}",
                model=spec.hca.model,
                device_id=spec.hca.device_id,
                part_number=spec.hca.part_number,
                firmware_version=spec.hca.firmware_version,
                ports=[port],
            )
        )
    return hcas


def _create_bmc(node_index: int, spec: SystemSpec) -> BMC:
    sensors = [
        BMCSensor("CPU1 Temp", 45.0, "degrees C", upper_warning=85.0, upper_critical=95.0),
        BMCSensor("CPU2 Temp", 47.0, "degrees C", upper_warning=85.0, upper_critical=95.0),
        BMCSensor("Inlet Temp", 22.0, "degrees C", upper_warning=35.0, upper_critical=40.0),
        BMCSensor("Exhaust Temp", 35.0, "degrees C", upper_warning=60.0, upper_critical=70.0),
        BMCSensor("PSU1 Input", 230.0, "Volts", lower_critical=180.0, upper_critical=264.0),
        BMCSensor("PSU2 Input", 229.0, "Volts", lower_critical=180.0, upper_critical=264.0),
        BMCSensor("PSU1 Power", 850.0, "Watts", upper_critical=3300.0),
        BMCSensor("PSU2 Power", 840.0, "Watts", upper_critical=3300.0),
    ]
    for fan, rpm in enumerate((5200.0, 5250.0, 5180.0, 5220.0), start=1):
        sensors.append(BMCSensor(f"Fan{fan}", rpm, "RPM", lower_critical=1000.0))
    return BMC(
        ip_address=f"192.168.0.{100 + node_index}",
        mac_address=f"00:0a:f7:{node_index:02x}:00:01",
        firmware_version=spec.bmc_firmware,
        sensors=sensors,
    )


def create_node(node_index: int, spec: SystemSpec = DGX_A100, domain: str = "cluster.local") -> DGXNode:
    """Create one DGX node at the healthy baseline."""
    node_id = create_node_id(node_index)
    return DGXNode(
        id=node_id,
        hostname=f"{node_id}.{domain}",
        system_type=spec.system_type,
        management_ip=f"10.0.0.{10 + node_index}",
        gpus=[_create_gpu(node_index, i, spec) for i in range(spec.gpus_per_node)],
        hcas=_create_hcas(node_index, spec),
        bmc=_create_bmc(node_index, spec),
        cpu_model=spec.cpu_model,
        cpu_count=spec.cpu_sockets,
        cores_per_socket=spec.cores_per_socket,
        ram_total_gb=spec.ram_total_gb,
        ram_used_gb=128,
        os_version="Ubuntu 22.04.3 LTS",
        kernel_version="5.15.0-91-generic",
        nvidia_driver_version=spec.driver_version,
        cuda_version=spec.cuda_version,
    )


def create_default_cluster(
    name: str = "DGX SuperPOD",
    node_count: int = 8,
    spec: SystemSpec = DGX_A100,
    domain: str = "cluster.local",
) -> Cluster:
    """Create the default cluster.

    Args:
        name: Cluster name.
        node_count: Number of DGX nodes.
        spec: Hardware template for every node.
        domain: DNS domain appended to hostnames.

    Returns:
        A cluster with every GPU healthy and every node idle.
    """
    cluster = Cluster(
        name=name,
        nodes=[create_node(i, spec, domain) for i in range(node_count)],
        fabric_topology=FabricTopology.FAT_TREE,
        bcm_ha=BCMHighAvailability(),
        slurm_config=SlurmConfig(),
    )
    logger.debug(f"Created cluster {name!r} with {node_count} {spec.system_type} nodes")
    return cluster
