"""Cluster-related type-safe identifiers.

These value objects provide type safety for node, GPU and job identifiers
using Python's NewType for zero-runtime overhead.
"""

from __future__ import annotations

from typing import NewType

# Node identifier (e.g., "dgx-00")
NodeId = NewType("NodeId", str)

# GPU index within a node (0..7)
GPUIndex = NewType("GPUIndex", int)

# Slurm job identifier
SlurmJobId = NewType("SlurmJobId", int)

# PCIe bus identifier (e.g., "00000000:10:00.0")
PCIeBusId = NewType("PCIeBusId", str)


def create_node_id(index: int) -> NodeId:
    """Create a node identifier from an index."""
    return NodeId(f"dgx-{index:02d}")


def create_pci_address(gpu_index: int) -> PCIeBusId:
    """Create the PCIe bus id of a GPU slot."""
    return PCIeBusId(f"00000000:{0x10 + gpu_index:02X}:00.0")


def create_gpu_uuid(node_index: int, gpu_index: int) -> str:
    """Create a stable GPU UUID for a node/GPU slot."""
    return f"GPU-{node_index:08x}-{gpu_index:04x}-4a8f-9c2e-{node_index * 8 + gpu_index:012x}"


def create_port_guid(node_index: int, hca_index: int) -> str:
    """Create a stable InfiniBand port GUID."""
    return f"0x0c42a10300{node_index:02x}{hca_index:04x}"
